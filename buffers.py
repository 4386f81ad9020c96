from __future__ import annotations

import threading
from typing import Optional

import numpy as np
from PySide6 import QtGui


class AudioRingBuffer:
    """
    Fixed-capacity PCM ring shared by one decoder thread and the output callback.

    push_blocking(frames, stop_event): waits while the ring is full
    push(frames): never waits; overwrites the oldest audio when full
    pop_into(out): fills out, zero-padded on underrun
    mark_eof(): no more frames will arrive; drained() turns True once empty
    """

    def __init__(self, channels: int, max_seconds: float, sample_rate: int):
        self.channels = channels
        self.sample_rate = sample_rate
        self.max_frames = max(1, int(max_seconds * sample_rate))
        self._data = np.zeros((self.max_frames, channels), dtype=np.float32)
        self._read = 0
        self._count = 0
        self._underruns = 0
        self._eof = False
        self._cond = threading.Condition()

    def clear(self) -> None:
        with self._cond:
            self._read = 0
            self._count = 0
            self._eof = False
            self._cond.notify_all()

    def frames_available(self) -> int:
        with self._cond:
            return self._count

    def seconds_available(self) -> float:
        return self.frames_available() / float(self.sample_rate)

    def mark_eof(self) -> None:
        with self._cond:
            self._eof = True

    def drained(self) -> bool:
        with self._cond:
            return self._eof and self._count == 0

    def _as_pcm(self, frames: np.ndarray) -> np.ndarray:
        if frames.dtype != np.float32:
            frames = frames.astype(np.float32, copy=False)
        if frames.ndim != 2 or frames.shape[1] != self.channels:
            raise ValueError(f"frames must be (n,{self.channels}) float32, got {frames.shape} {frames.dtype}")
        return frames

    def _write(self, frames: np.ndarray) -> None:
        # Lock held; caller guarantees room for all of frames.
        n = frames.shape[0]
        start = (self._read + self._count) % self.max_frames
        first = min(n, self.max_frames - start)
        self._data[start : start + first] = frames[:first]
        if first < n:
            self._data[: n - first] = frames[first:]
        self._count += n

    def push(self, frames: np.ndarray) -> None:
        if frames.size == 0:
            return
        frames = self._as_pcm(frames)
        if frames.shape[0] > self.max_frames:
            frames = frames[-self.max_frames :]
        with self._cond:
            overflow = self._count + frames.shape[0] - self.max_frames
            if overflow > 0:
                self._read = (self._read + overflow) % self.max_frames
                self._count -= overflow
            self._write(frames)

    def push_blocking(self, frames: np.ndarray, stop_event: Optional[threading.Event]) -> None:
        if frames.size == 0:
            return
        frames = self._as_pcm(frames)
        offset = 0
        total = frames.shape[0]
        with self._cond:
            while offset < total:
                if stop_event is not None and stop_event.is_set():
                    return
                space = self.max_frames - self._count
                if space <= 0:
                    self._cond.wait(timeout=0.05)
                    continue
                take = min(space, total - offset)
                self._write(frames[offset : offset + take])
                offset += take

    def pop(self, n: int) -> np.ndarray:
        out = np.zeros((max(0, n), self.channels), dtype=np.float32)
        self.pop_into(out)
        return out

    def pop_into(self, out: np.ndarray) -> int:
        if out.ndim != 2 or out.shape[1] != self.channels or out.dtype != np.float32:
            raise ValueError(f"out must be (n,{self.channels}) float32, got {out.shape} {out.dtype}")
        n = out.shape[0]
        if n <= 0:
            return 0

        with self._cond:
            take = min(n, self._count)
            first = min(take, self.max_frames - self._read)
            out[:first] = self._data[self._read : self._read + first]
            if take > first:
                out[first:take] = self._data[: take - first]
            self._read = (self._read + take) % self.max_frames
            self._count -= take
            if take < n and not self._eof:
                self._underruns += 1
            if take:
                self._cond.notify_all()

        if take < n:
            out[take:].fill(0)
        return take

    def consume_underruns(self) -> int:
        with self._cond:
            underruns = self._underruns
            self._underruns = 0
            return underruns


class VisualizerBuffer:
    """
    Thread-safe mono window of the most recent output samples.

    Written from the audio callback, read by the analyser on the UI thread.
    """

    def __init__(self, size: int):
        self.size = max(1, int(size))
        self._buffer = np.zeros(self.size, dtype=np.float32)
        self._write_index = 0
        self._lock = threading.Lock()

    def clear(self) -> None:
        with self._lock:
            self._buffer.fill(0.0)
            self._write_index = 0

    def push(self, frames: np.ndarray) -> None:
        if frames.size == 0:
            return
        if frames.ndim == 2:
            mono = frames.mean(axis=1, dtype=np.float32)
        else:
            mono = frames.astype(np.float32, copy=False)
        if mono.shape[0] > self.size:
            mono = mono[-self.size :]

        n = mono.shape[0]
        with self._lock:
            end = self._write_index + n
            if end <= self.size:
                self._buffer[self._write_index : end] = mono
            else:
                first = self.size - self._write_index
                self._buffer[self._write_index :] = mono[:first]
                self._buffer[: end - self.size] = mono[first:]
            self._write_index = end % self.size

    def snapshot(self) -> np.ndarray:
        """Oldest-to-newest copy of the window."""
        with self._lock:
            return np.concatenate((self._buffer[self._write_index :], self._buffer[: self._write_index]))


class VideoFrameBuffer:
    """
    Thread-safe buffer for the most recent video frame.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._image: Optional[QtGui.QImage] = None
        self._timestamp: Optional[float] = None

    def clear(self) -> None:
        with self._lock:
            self._image = None
            self._timestamp = None

    def update(self, image: QtGui.QImage, timestamp: float) -> None:
        with self._lock:
            self._image = image
            self._timestamp = float(timestamp)

    def get_latest(self) -> tuple[Optional[QtGui.QImage], Optional[float]]:
        with self._lock:
            return self._image, self._timestamp
