import gc
import os

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import pytest
import shiboken6
from PySide6 import QtCore, QtWidgets

from audio.elements import ABORT_NEW_LOAD, ABORT_PAUSE, PlayRequest
from audio.hls import HlsError, HlsMediaSource


@pytest.fixture(scope="session")
def qapp():
    app = QtWidgets.QApplication.instance() or QtWidgets.QApplication([])
    yield app
    # Test doubles are wired into signal/partial cycles that Python's GC cannot
    # break, so they would otherwise be torn down in arbitrary order at
    # interpreter exit and crash the process. Destroy them while Qt is alive.
    gc.collect()
    for obj in [o for o in gc.get_objects() if isinstance(o, QtCore.QObject)]:
        if isinstance(obj, QtCore.QCoreApplication):
            continue
        if shiboken6.isValid(obj) and shiboken6.ownedByPython(obj) and obj.parent() is None:
            shiboken6.delete(obj)
    gc.collect()


class FakeElement(QtCore.QObject):
    """Element double: play() returns real PlayRequests, no decoding."""

    loadStarted = QtCore.Signal()
    canPlay = QtCore.Signal()
    playing = QtCore.Signal()
    paused = QtCore.Signal()
    ended = QtCore.Signal()
    errorOccurred = QtCore.Signal(str)

    def __init__(self, kind, auto_resolve=True, native_hls=False):
        super().__init__()
        self.kind = kind
        self.auto_resolve = auto_resolve
        self.native_hls = native_hls
        self.media_source = None
        self.volume = 1.0
        self.is_paused = True
        self.processor = None
        self.buffer_preset = None
        self.requests = []
        self.src_history = []
        self._src = ""

    @property
    def src(self):
        return self._src

    @src.setter
    def src(self, value):
        value = value or ""
        if value == self._src and self.media_source is None:
            return
        self._abort(ABORT_NEW_LOAD)
        self._src = value
        self.media_source = None
        self.is_paused = True
        self.src_history.append(value)

    @property
    def current_source(self):
        if self.media_source is not None:
            return self.media_source.url
        return self._src

    @property
    def active(self):
        return not self.is_paused and bool(self.current_source)

    def set_media_source(self, media_source):
        self._abort(ABORT_NEW_LOAD)
        self._src = ""
        self.media_source = media_source

    def set_buffer_preset(self, name):
        self.buffer_preset = name

    def can_play_type(self, mime):
        if "mpegurl" in mime:
            return "maybe" if self.native_hls else ""
        return "maybe"

    def attach_processor(self, processor):
        self.processor = processor

    def detach_processor(self, processor):
        if self.processor == processor:
            self.processor = None

    def play(self):
        request = PlayRequest()
        self.requests.append(request)
        if not self.current_source:
            request.reject("No media source assigned")
            return request
        self.is_paused = False
        if self.auto_resolve:
            request.resolve()
        return request

    def pause(self):
        self.is_paused = True
        self._abort(ABORT_PAUSE)

    def _abort(self, reason):
        for request in self.requests:
            if not request.settled:
                request.reject(reason, aborted=True)


class FakeGraph:
    def __init__(self):
        self.element = None
        self.analyser = None
        self.connects = []
        self.eq_updates = []
        self.resumes = 0
        self.closes = 0

    def connect(self, element):
        if element is self.element:
            return False
        self.element = element
        self.analyser = object()
        self.connects.append(element)
        return True

    def update_eq(self, settings):
        self.eq_updates.append(settings)

    def resume(self):
        self.resumes += 1

    def close(self):
        self.closes += 1
        self.element = None
        self.analyser = None


class FakeHls(QtCore.QObject):
    manifestParsed = QtCore.Signal(str)
    errorOccurred = QtCore.Signal(object)

    def __init__(self, log, low_latency=True, enable_worker=True):
        super().__init__()
        self.log = log
        self.low_latency = low_latency
        self.enable_worker = enable_worker
        self.url = None
        self.media = None
        self.destroyed_flag = False

    def load_source(self, url):
        self.url = url
        self.log.append(("load", url))

    def attach_media(self, element):
        self.media = element
        self.log.append(("attach", element.kind))

    def destroy(self):
        self.destroyed_flag = True
        self.log.append(("destroy", self.url))

    def parse(self, variant_url=None):
        variant_url = variant_url or self.url
        self.media.set_media_source(HlsMediaSource(variant_url))
        self.manifestParsed.emit(variant_url)

    def fail(self, details="Manifest load failed", fatal=True):
        self.errorOccurred.emit(HlsError(details, fatal=fatal))


class HlsFactory:
    def __init__(self):
        self.instances = []
        self.log = []

    def __call__(self, **kwargs):
        hls = FakeHls(self.log, **kwargs)
        self.instances.append(hls)
        return hls
