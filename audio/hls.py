"""
Software HLS support for the video element.

The engine resolves a master playlist to its best variant, hands the variant
URL to the element as an engine-driven media source and keeps polling the
media playlist so load failures surface as engine errors. ffmpeg does the
segment fetching and demuxing.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from http.client import HTTPException
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin, urlparse
from urllib.request import Request, urlopen

from PySide6 import QtCore

from config import (
    HLS_DEFAULT_TARGET_DURATION,
    HLS_LIVE_START_INDEX,
    HLS_MAX_LOAD_FAILURES,
    REQUEST_TIMEOUT_SEC,
    USER_AGENT,
)
from utils import have_exe, safe_float, safe_int

logger = logging.getLogger(__name__)

HLS_MIME_TYPES = ("application/vnd.apple.mpegurl", "application/x-mpegurl")

NETWORK_ERROR = "networkError"
MEDIA_ERROR = "mediaError"
OTHER_ERROR = "otherError"


def is_hls_url(url: str) -> bool:
    try:
        path = urlparse(url or "").path
    except ValueError:
        return False
    return path.lower().endswith(".m3u8")


class HlsError(Exception):
    def __init__(self, details: str, *, fatal: bool = False, error_type: str = NETWORK_ERROR):
        super().__init__(details)
        self.details = details
        self.fatal = fatal
        self.error_type = error_type

    def __repr__(self) -> str:
        return f"HlsError({self.details!r}, fatal={self.fatal}, type={self.error_type})"


@dataclass(frozen=True)
class HlsVariant:
    uri: str
    bandwidth: int = 0
    resolution: Optional[Tuple[int, int]] = None
    codecs: str = ""


@dataclass
class MediaPlaylist:
    target_duration: float = HLS_DEFAULT_TARGET_DURATION
    media_sequence: int = 0
    segments: List[str] = field(default_factory=list)
    ended: bool = False


@dataclass(frozen=True)
class HlsMediaSource:
    """What the engine hands to an element in place of a plain src."""
    url: str
    input_args: Tuple[str, ...] = ()


# -----------------------------
# Playlist parsing
# -----------------------------

def parse_attribute_list(text: str) -> Dict[str, str]:
    attrs: Dict[str, str] = {}
    i = 0
    n = len(text)
    while i < n:
        eq = text.find("=", i)
        if eq < 0:
            break
        key = text[i:eq].strip().upper()
        i = eq + 1
        if i < n and text[i] == '"':
            end = text.find('"', i + 1)
            if end < 0:
                end = n
            value = text[i + 1:end]
            i = end + 1
        else:
            end = text.find(",", i)
            if end < 0:
                end = n
            value = text[i:end].strip()
            i = end
        if i < n and text[i] == ",":
            i += 1
        if key:
            attrs[key] = value
    return attrs


def _lines(text: str) -> List[str]:
    lines = [line.strip() for line in (text or "").splitlines()]
    lines = [line for line in lines if line]
    if not lines or not lines[0].lstrip("\ufeff").startswith("#EXTM3U"):
        raise HlsError("Manifest is missing the #EXTM3U header", fatal=True, error_type=MEDIA_ERROR)
    return lines


def is_master_playlist(text: str) -> bool:
    return "#EXT-X-STREAM-INF" in (text or "")


def parse_master_playlist(text: str, base_url: str) -> List[HlsVariant]:
    lines = _lines(text)
    variants: List[HlsVariant] = []
    pending: Optional[Dict[str, str]] = None
    for line in lines[1:]:
        if line.startswith("#EXT-X-STREAM-INF:"):
            pending = parse_attribute_list(line.split(":", 1)[1])
            continue
        if line.startswith("#"):
            continue
        if pending is None:
            continue
        resolution = None
        res = pending.get("RESOLUTION", "")
        if "x" in res:
            width, height = res.lower().split("x", 1)
            w, h = safe_int(width), safe_int(height)
            if w and h:
                resolution = (w, h)
        variants.append(
            HlsVariant(
                uri=urljoin(base_url, line),
                bandwidth=safe_int(pending.get("BANDWIDTH"), 0) or 0,
                resolution=resolution,
                codecs=pending.get("CODECS", ""),
            )
        )
        pending = None
    if not variants:
        raise HlsError("Master playlist has no variants", fatal=True, error_type=MEDIA_ERROR)
    return variants


def parse_media_playlist(text: str, base_url: str) -> MediaPlaylist:
    lines = _lines(text)
    playlist = MediaPlaylist()
    for line in lines[1:]:
        if line.startswith("#EXT-X-TARGETDURATION:"):
            playlist.target_duration = safe_float(line.split(":", 1)[1], HLS_DEFAULT_TARGET_DURATION)
        elif line.startswith("#EXT-X-MEDIA-SEQUENCE:"):
            playlist.media_sequence = safe_int(line.split(":", 1)[1], 0) or 0
        elif line.startswith("#EXT-X-ENDLIST"):
            playlist.ended = True
        elif not line.startswith("#"):
            playlist.segments.append(urljoin(base_url, line))
    return playlist


def select_variant(variants: List[HlsVariant]) -> HlsVariant:
    return max(variants, key=lambda v: v.bandwidth)


def _http_get_text(url: str) -> str:
    req = Request(url, headers={"User-Agent": USER_AGENT})
    with urlopen(req, timeout=REQUEST_TIMEOUT_SEC) as resp:
        return resp.read().decode("utf-8", errors="replace")


# -----------------------------
# Manifest worker
# -----------------------------

class ManifestWorker(threading.Thread):
    """
    Loads the manifest, then refreshes the media playlist until ENDLIST.

    Events go through emit(kind, payload):
      ("parsed", (variant_url, playlist)), ("level", media_sequence),
      ("error", HlsError)
    """
    RETRY_DELAY_SEC = 1.0
    MIN_POLL_SEC = 0.5

    def __init__(
        self,
        url: str,
        emit: Callable[[str, object], None],
        fetch: Callable[[str], str] = _http_get_text,
        *,
        poll: bool = True,
        max_failures: int = HLS_MAX_LOAD_FAILURES,
    ):
        super().__init__(daemon=True)
        self.url = url
        self._emit = emit
        self._fetch = fetch
        self._poll = poll
        self._max_failures = max(1, int(max_failures))
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _fetch_with_retries(self, url: str) -> str:
        last_error: Optional[Exception] = None
        for attempt in range(self._max_failures):
            if self._stop_event.is_set():
                raise HlsError("Stopped")
            try:
                return self._fetch(url)
            except (HTTPError, URLError, HTTPException, OSError) as exc:
                last_error = exc
                logger.warning("HLS manifest load failed (%d/%d): %s", attempt + 1, self._max_failures, exc)
                if attempt + 1 < self._max_failures:
                    self._stop_event.wait(min(self.RETRY_DELAY_SEC * (attempt + 1), 3.0))
        raise HlsError(f"Manifest load failed: {last_error}", fatal=True)

    def load_initial(self) -> Tuple[str, MediaPlaylist]:
        try:
            return self._load_manifest()
        except HlsError:
            raise
        except Exception as exc:
            logger.warning("HLS manifest load failed: %s", exc, exc_info=True)
            raise HlsError(f"Manifest load failed: {exc}", fatal=True, error_type=OTHER_ERROR) from exc

    def _load_manifest(self) -> Tuple[str, MediaPlaylist]:
        text = self._fetch_with_retries(self.url)
        variant_url = self.url
        if is_master_playlist(text):
            variant = select_variant(parse_master_playlist(text, self.url))
            variant_url = variant.uri
            logger.debug("HLS variant selected: %s (%d bps)", variant.uri, variant.bandwidth)
            text = self._fetch_with_retries(variant_url)
        return variant_url, parse_media_playlist(text, variant_url)

    def run(self) -> None:
        try:
            variant_url, playlist = self.load_initial()
        except HlsError as exc:
            if not self._stop_event.is_set():
                self._emit("error", exc)
            return
        if self._stop_event.is_set():
            return
        self._emit("parsed", (variant_url, playlist))
        if self._poll:
            self._poll_level(variant_url, playlist)

    def _poll_level(self, variant_url: str, playlist: MediaPlaylist) -> None:
        failures = 0
        sequence = playlist.media_sequence
        while not playlist.ended and not self._stop_event.wait(max(self.MIN_POLL_SEC, playlist.target_duration)):
            try:
                playlist = parse_media_playlist(self._fetch(variant_url), variant_url)
            except HlsError as exc:
                self._emit("error", exc)
                return
            except (HTTPError, URLError, HTTPException, OSError) as exc:
                failures += 1
                fatal = failures >= self._max_failures
                self._emit("error", HlsError(f"Level load failed: {exc}", fatal=fatal))
                if fatal:
                    return
                continue
            except Exception as exc:
                logger.warning("HLS level load failed: %s", exc, exc_info=True)
                self._emit("error", HlsError(f"Level load failed: {exc}", fatal=True, error_type=OTHER_ERROR))
                return
            failures = 0
            if playlist.media_sequence != sequence:
                sequence = playlist.media_sequence
                self._emit("level", sequence)


# -----------------------------
# Engine
# -----------------------------

@dataclass
class HlsConfig:
    low_latency: bool = True
    enable_worker: bool = True


class HlsEngine(QtCore.QObject):
    manifestParsed = QtCore.Signal(str)
    errorOccurred = QtCore.Signal(object)
    levelUpdated = QtCore.Signal(int)
    _workerEvent = QtCore.Signal(str, object)

    def __init__(
        self,
        low_latency: bool = True,
        enable_worker: bool = True,
        fetch: Callable[[str], str] = _http_get_text,
        parent=None,
    ):
        super().__init__(parent)
        self.config = HlsConfig(low_latency=low_latency, enable_worker=enable_worker)
        self._fetch = fetch
        self._url: Optional[str] = None
        self._variant_url: Optional[str] = None
        self._media = None
        self._worker: Optional[ManifestWorker] = None
        self._destroyed = False
        self._published = False
        self._workerEvent.connect(self._on_worker_event)

    @staticmethod
    def is_supported() -> bool:
        return have_exe("ffmpeg")

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def media(self):
        return self._media

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def input_args(self) -> Tuple[str, ...]:
        if not self.config.low_latency:
            return ()
        return ("-fflags", "nobuffer", "-flags", "low_delay", "-live_start_index", str(HLS_LIVE_START_INDEX))

    def load_source(self, url: str) -> None:
        if self._destroyed:
            raise RuntimeError("HlsEngine has been destroyed")
        self._stop_worker()
        self._url = url
        self._variant_url = None
        self._published = False
        logger.debug("HLS load_source %s (worker=%s)", url, self.config.enable_worker)
        worker = ManifestWorker(url, self._workerEvent.emit, self._fetch, poll=self.config.enable_worker)
        if self.config.enable_worker:
            self._worker = worker
            worker.start()
            return
        try:
            variant_url, playlist = worker.load_initial()
        except HlsError as exc:
            self._on_worker_event("error", exc)
            return
        self._on_worker_event("parsed", (variant_url, playlist))

    def attach_media(self, element) -> None:
        if self._destroyed:
            raise RuntimeError("HlsEngine has been destroyed")
        self._media = element
        self._maybe_publish()

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._stop_worker()
        self._media = None
        logger.debug("HLS engine destroyed (%s)", self._url)

    def _stop_worker(self) -> None:
        if self._worker is not None:
            self._worker.stop()
            self._worker = None

    def _maybe_publish(self) -> None:
        if self._published or self._media is None or self._variant_url is None:
            return
        self._published = True
        self._media.set_media_source(HlsMediaSource(self._variant_url, self.input_args()))
        self.manifestParsed.emit(self._variant_url)

    @QtCore.Slot(str, object)
    def _on_worker_event(self, kind: str, payload: object) -> None:
        if self._destroyed:
            return
        if kind == "parsed":
            variant_url, playlist = payload
            self._variant_url = variant_url
            logger.debug(
                "HLS manifest parsed: %s (%d segments, target %.1fs)",
                variant_url,
                len(playlist.segments),
                playlist.target_duration,
            )
            self._maybe_publish()
        elif kind == "level":
            self.levelUpdated.emit(int(payload))
        elif kind == "error":
            if not payload.fatal:
                logger.warning("HLS non-fatal error: %s", payload.details)
            self.errorOccurred.emit(payload)
