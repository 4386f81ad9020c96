"""
Background audio cache.

The worker runs on its own thread and only takes one-way messages:
{"type": "CACHE_AUDIO", "url": ...} and {"type": "CLEAR_AUDIO_CACHE"}.
Cached files are keyed by the SHA-1 of the URL; elements look them up
through resolve() before decoding.
"""

from __future__ import annotations

import hashlib
import logging
import os
import queue
import shutil
import threading
from typing import Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from config import AUDIO_CACHE_DIR, REQUEST_TIMEOUT_SEC, USER_AGENT

logger = logging.getLogger(__name__)

CACHE_AUDIO = "CACHE_AUDIO"
CLEAR_AUDIO_CACHE = "CLEAR_AUDIO_CACHE"
DOWNLOAD_TIMEOUT_SEC = max(REQUEST_TIMEOUT_SEC, 60)

Fetch = Callable[[str], "tuple[int, bytes]"]

_active_worker: Optional["OfflineCacheWorker"] = None
_worker_lock = threading.Lock()


def _http_fetch(url: str) -> tuple[int, bytes]:
    req = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(req, timeout=DOWNLOAD_TIMEOUT_SEC) as response:
            return int(getattr(response, "status", 200)), response.read()
    except HTTPError as exc:
        return int(exc.code), b""


class OfflineCacheWorker(threading.Thread):
    def __init__(self, cache_dir: str = AUDIO_CACHE_DIR, fetch: Optional[Fetch] = None):
        super().__init__(daemon=True, name="offline-cache")
        self.cache_dir = cache_dir
        self._fetch = fetch or _http_fetch
        self._queue: "queue.Queue[Optional[dict]]" = queue.Queue()
        self._stop_event = threading.Event()

    def post_message(self, message: dict) -> None:
        if self._stop_event.is_set():
            return
        self._queue.put(dict(message))

    def stop(self) -> None:
        self._stop_event.set()
        self._queue.put(None)

    @property
    def running(self) -> bool:
        return self.is_alive() and not self._stop_event.is_set()

    def run(self) -> None:
        while True:
            message = self._queue.get()
            if message is None:
                break
            try:
                self.handle_message(message)
            except Exception:
                logger.warning("Offline cache message failed: %r", message, exc_info=True)

    def handle_message(self, message: dict) -> None:
        kind = message.get("type")
        if kind == CACHE_AUDIO:
            self.cache_audio(str(message.get("url") or ""))
        elif kind == CLEAR_AUDIO_CACHE:
            self.clear_audio_cache()
        else:
            logger.debug("Ignoring unknown cache message type: %r", kind)

    def path_for(self, url: str) -> str:
        digest = hashlib.sha1(url.encode("utf-8", "ignore")).hexdigest()
        ext = os.path.splitext(urlparse(url).path)[1].lower()
        if not ext or len(ext) > 6:
            ext = ".bin"
        return os.path.join(self.cache_dir, f"{digest}{ext}")

    def resolve(self, url: str) -> str:
        if not url:
            return url
        path = self.path_for(url)
        if os.path.exists(path):
            return path
        return url

    def cache_audio(self, url: str) -> bool:
        if urlparse(url).scheme not in ("http", "https"):
            return False
        path = self.path_for(url)
        if os.path.exists(path):
            return True
        try:
            status, body = self._fetch(url)
        except (URLError, OSError) as exc:
            logger.warning("Offline cache download failed for %s: %s", url, exc)
            return False
        if not 200 <= status < 300:
            logger.warning("Offline cache download for %s returned HTTP %s", url, status)
            return False
        os.makedirs(self.cache_dir, exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "wb") as handle:
            handle.write(body)
        os.replace(tmp_path, path)
        logger.debug("Cached %s (%d bytes)", url, len(body))
        return True

    def clear_audio_cache(self) -> None:
        if not os.path.isdir(self.cache_dir):
            return
        for name in os.listdir(self.cache_dir):
            path = os.path.join(self.cache_dir, name)
            try:
                if os.path.isdir(path):
                    shutil.rmtree(path)
                else:
                    os.remove(path)
            except OSError as exc:
                logger.warning("Could not remove cached file %s: %s", path, exc)
        logger.info("Offline audio cache cleared")


def register_worker(worker: OfflineCacheWorker) -> None:
    global _active_worker
    with _worker_lock:
        _active_worker = worker


def unregister_worker(worker: Optional[OfflineCacheWorker] = None) -> None:
    global _active_worker
    with _worker_lock:
        if worker is None or _active_worker is worker:
            _active_worker = None


def active_worker() -> Optional[OfflineCacheWorker]:
    with _worker_lock:
        return _active_worker


def cache_audio_for_offline(url: str) -> None:
    worker = active_worker()
    if worker is None or not worker.running:
        return
    worker.post_message({"type": CACHE_AUDIO, "url": url})


def clear_offline_cache() -> None:
    worker = active_worker()
    if worker is None or not worker.running:
        return
    worker.post_message({"type": CLEAR_AUDIO_CACHE})
