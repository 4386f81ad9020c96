import os

import pytest

import offline_cache
from offline_cache import (
    CACHE_AUDIO,
    CLEAR_AUDIO_CACHE,
    OfflineCacheWorker,
    cache_audio_for_offline,
    clear_offline_cache,
    register_worker,
    unregister_worker,
)

URL = "https://media.test/tracks/intro.mp3"


class _Fetch:
    def __init__(self, status=200, body=b"ID3 audio bytes"):
        self.status = status
        self.body = body
        self.calls = []

    def __call__(self, url):
        self.calls.append(url)
        return self.status, self.body


class _RecordingWorker(OfflineCacheWorker):
    def __init__(self, cache_dir, running=True):
        super().__init__(cache_dir, fetch=_Fetch())
        self._running = running
        self.messages = []

    @property
    def running(self):
        return self._running

    def post_message(self, message):
        self.messages.append(message)


@pytest.fixture(autouse=True)
def _no_active_worker():
    unregister_worker()
    yield
    unregister_worker()


def test_notifier_without_worker_is_silent():
    cache_audio_for_offline(URL)
    clear_offline_cache()
    assert offline_cache.active_worker() is None


def test_notifier_posts_only_to_running_worker(tmp_path):
    stopped = _RecordingWorker(str(tmp_path), running=False)
    register_worker(stopped)
    cache_audio_for_offline(URL)
    assert stopped.messages == []

    running = _RecordingWorker(str(tmp_path))
    register_worker(running)
    cache_audio_for_offline(URL)
    clear_offline_cache()
    assert running.messages == [{"type": CACHE_AUDIO, "url": URL}, {"type": CLEAR_AUDIO_CACHE}]


def test_unregister_only_removes_matching_worker(tmp_path):
    first = _RecordingWorker(str(tmp_path))
    second = _RecordingWorker(str(tmp_path))
    register_worker(first)
    unregister_worker(second)
    assert offline_cache.active_worker() is first


def test_cache_audio_writes_file_and_resolves(tmp_path):
    fetch = _Fetch()
    worker = OfflineCacheWorker(str(tmp_path / "audio"), fetch=fetch)
    assert worker.resolve(URL) == URL

    assert worker.cache_audio(URL)
    path = worker.path_for(URL)
    assert path.endswith(".mp3")
    with open(path, "rb") as handle:
        assert handle.read() == b"ID3 audio bytes"
    assert worker.resolve(URL) == path

    assert worker.cache_audio(URL)
    assert fetch.calls == [URL]


def test_cache_audio_skips_failures_and_non_http(tmp_path):
    worker = OfflineCacheWorker(str(tmp_path), fetch=_Fetch(status=404))
    assert not worker.cache_audio(URL)
    assert not os.path.exists(worker.path_for(URL))
    assert not worker.cache_audio("file:///music/intro.mp3")
    assert not worker.cache_audio("")


def test_path_for_defaults_extension(tmp_path):
    worker = OfflineCacheWorker(str(tmp_path))
    assert worker.path_for("https://media.test/stream").endswith(".bin")
    assert worker.path_for(URL) != worker.path_for(URL + "?v=2")


def test_clear_audio_cache(tmp_path):
    worker = OfflineCacheWorker(str(tmp_path), fetch=_Fetch())
    worker.cache_audio(URL)
    worker.clear_audio_cache()
    assert os.listdir(tmp_path) == []
    assert worker.resolve(URL) == URL


def test_worker_thread_processes_queue_before_stopping(tmp_path):
    worker = OfflineCacheWorker(str(tmp_path), fetch=_Fetch())
    worker.start()
    assert worker.running
    worker.post_message({"type": CACHE_AUDIO, "url": URL})
    worker.post_message({"type": "SOMETHING_ELSE"})
    worker.stop()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert not worker.running
    assert os.path.exists(worker.path_for(URL))
    worker.post_message({"type": CLEAR_AUDIO_CACHE})
    assert os.path.exists(worker.path_for(URL))
