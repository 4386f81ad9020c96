"""
Media elements: the player's two output slots.

Each element owns an ffmpeg decoder thread that fills an AudioRingBuffer and
a sounddevice output stream that drains it. VideoElement adds a second
decoder producing RGBA frames. All decoder events are marshalled back to the
Qt thread the element lives on before any state changes.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import Callable, Optional, Sequence

import numpy as np
from PySide6 import QtCore, QtGui

try:
    import sounddevice as sd
    _sounddevice_import_error = None
except Exception as e:
    sd = None
    _sounddevice_import_error = e

from buffers import AudioRingBuffer, VideoFrameBuffer
from config import (
    BUFFER_PRESETS,
    CHANNELS,
    DEBUG_METRICS,
    DEFAULT_BUFFER_PRESET,
    SAMPLE_RATE,
    VIDEO_FPS,
    VIDEO_HEIGHT,
    VIDEO_WIDTH,
)
from dsp import make_ffmpeg_cmd, make_ffmpeg_video_cmd
from models import BufferPreset
from utils import clamp, have_exe

logger = logging.getLogger(__name__)

ABORT_NEW_LOAD = "The play() request was interrupted by a new load request."
ABORT_PAUSE = "The play() request was interrupted by a call to pause()."

SUPPORTED_MIME_TYPES = {
    "audio/mpeg",
    "audio/mp3",
    "audio/aac",
    "audio/mp4",
    "audio/ogg",
    "audio/wav",
    "audio/flac",
    "audio/webm",
    "video/mp4",
    "video/webm",
    "video/ogg",
}


class PlayRequest(QtCore.QObject):
    """Outcome of one play() call. Settles exactly once."""

    resolved = QtCore.Signal()
    rejected = QtCore.Signal(str)

    def __init__(self, parent=None):
        super().__init__(parent)
        self._settled = False
        self._succeeded = False
        self._aborted = False
        self._error: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self._settled

    @property
    def succeeded(self) -> bool:
        return self._succeeded

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def error(self) -> Optional[str]:
        return self._error

    def resolve(self) -> None:
        if self._settled:
            return
        self._settled = True
        self._succeeded = True
        self.resolved.emit()

    def reject(self, reason: str, *, aborted: bool = False) -> None:
        if self._settled:
            return
        self._settled = True
        self._aborted = aborted
        self._error = reason
        self.rejected.emit(reason)

    def then(
        self,
        on_resolved: Callable[[], None],
        on_rejected: Optional[Callable[[str], None]] = None,
    ) -> "PlayRequest":
        if self._settled:
            if self._succeeded:
                on_resolved()
            elif on_rejected is not None:
                on_rejected(self._error or "")
            return self
        self.resolved.connect(on_resolved)
        if on_rejected is not None:
            self.rejected.connect(on_rejected)
        return self


# -----------------------------
# Decoder threads
# -----------------------------

class DecoderThread(threading.Thread):
    """
    Reads float32 PCM from ffmpeg and pushes it into the ring buffer.
    """
    def __init__(self,
                 source: str,
                 sample_rate: int,
                 channels: int,
                 ring: AudioRingBuffer,
                 buffer_preset: BufferPreset,
                 state_cb: Callable[[str, Optional[str]], None],
                 input_args: Sequence[str] = ()):
        super().__init__(daemon=True)
        self.source = source
        self.sample_rate = sample_rate
        self.channels = channels
        self.ring = ring
        self.input_args = tuple(input_args)
        self._buffer_preset = buffer_preset
        self._state_cb = state_cb
        self._stop_event = threading.Event()
        self._proc: Optional[subprocess.Popen] = None
        self._read_frames = max(1, buffer_preset.blocksize_frames * 2)
        self._read_bytes = self._read_frames * channels * 4
        self._frame_bytes = channels * 4
        self._byte_buffer = bytearray()

    def stop(self):
        self._stop_event.set()
        try:
            if self._proc and self._proc.poll() is None:
                self._proc.terminate()
        except OSError:
            pass

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _read_pcm_chunk(self, stdout) -> Optional[np.ndarray]:
        if self._stop_event.is_set():
            return None
        while len(self._byte_buffer) < self._frame_bytes:
            chunk = stdout.read(self._read_bytes)
            if not chunk:
                break
            self._byte_buffer.extend(chunk)
        if len(self._byte_buffer) < self._frame_bytes:
            return None
        available_frames = len(self._byte_buffer) // self._frame_bytes
        frames_to_take = min(available_frames, self._read_frames)
        take_bytes = frames_to_take * self._frame_bytes
        data = bytes(self._byte_buffer[:take_bytes])
        del self._byte_buffer[:take_bytes]
        x = np.frombuffer(data, dtype=np.float32)
        if x.size == 0:
            return None
        return x.reshape((-1, self.channels))

    def _exit_error(self) -> Optional[str]:
        proc = self._proc
        if proc is None:
            return None
        try:
            returncode = proc.wait(timeout=2.0)
        except subprocess.TimeoutExpired:
            return None
        if returncode == 0:
            return None
        detail = ""
        if proc.stderr is not None:
            try:
                detail = proc.stderr.read().decode("utf-8", errors="ignore").strip()
            except (OSError, ValueError):
                detail = ""
        last_line = detail.splitlines()[-1] if detail else f"ffmpeg exited with code {returncode}"
        return last_line

    def run(self):
        cmd = make_ffmpeg_cmd(self.source, self.sample_rate, self.channels, input_args=self.input_args)
        logger.debug("Starting decoder: %s", " ".join(cmd))
        try:
            self._proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            self._state_cb("error", f"Failed to start ffmpeg: {e}")
            return

        stdout = self._proc.stdout
        if stdout is None:
            self._state_cb("error", "ffmpeg stdout not available")
            return

        self._state_cb("loading", None)
        prebuffer_frames = int(min(self._buffer_preset.prebuffer_sec, self._buffer_preset.target_sec) * self.sample_rate)
        target_frames = int(self._buffer_preset.target_sec * self.sample_rate)
        high_frames = min(int(self._buffer_preset.high_sec * self.sample_rate), self.ring.max_frames)
        ready = False

        try:
            while not self._stop_event.is_set():
                x = self._read_pcm_chunk(stdout)
                if x is None:
                    break
                self.ring.push_blocking(x, stop_event=self._stop_event)
                if not ready and self.ring.frames_available() >= prebuffer_frames:
                    ready = True
                    self._state_cb("ready", None)

                # Backpressure: let the output drain back to the target level.
                if self.ring.frames_available() > high_frames:
                    while (not self._stop_event.is_set()) and self.ring.frames_available() > target_frames:
                        time.sleep(0.01)

            if self._stop_event.is_set():
                return
            error = self._exit_error()
            if error and not ready:
                self._state_cb("error", error)
                return
            if error:
                logger.warning("Decoder ended with error after playback started: %s", error)
            self.ring.mark_eof()
            self._state_cb("eof", None)
        except Exception as e:
            if not self._stop_event.is_set():
                self._state_cb("error", f"Decoder error: {e}")
        finally:
            try:
                if self._proc and self._proc.poll() is None:
                    self._proc.terminate()
            except OSError:
                pass


class VideoDecoderThread(threading.Thread):
    """
    Decodes letterboxed RGBA frames from ffmpeg at real-time pace.
    """
    def __init__(
        self,
        source: str,
        fps: float,
        width: int,
        height: int,
        frames: VideoFrameBuffer,
        state_cb: Callable[[str, Optional[str]], None],
        input_args: Sequence[str] = (),
    ):
        super().__init__(daemon=True)
        self.source = source
        self.fps = float(max(1e-3, fps))
        self.width = int(width)
        self.height = int(height)
        self.input_args = tuple(input_args)
        self._frames = frames
        self._state_cb = state_cb
        self._stop_event = threading.Event()
        self._paused = threading.Event()
        self._proc: Optional[subprocess.Popen] = None
        self._frame_bytes = max(0, self.width * self.height * 4)
        self._byte_buffer = bytearray()

    def stop(self) -> None:
        self._stop_event.set()
        try:
            if self._proc and self._proc.poll() is None:
                self._proc.terminate()
        except OSError:
            pass

    def set_paused(self, paused: bool) -> None:
        if paused:
            self._paused.set()
        else:
            self._paused.clear()

    def _read_frame(self, stdout) -> Optional[bytes]:
        if self._stop_event.is_set() or self._frame_bytes <= 0:
            return None
        while len(self._byte_buffer) < self._frame_bytes:
            chunk = stdout.read(self._frame_bytes - len(self._byte_buffer))
            if not chunk:
                break
            self._byte_buffer.extend(chunk)
        if len(self._byte_buffer) < self._frame_bytes:
            return None
        data = bytes(self._byte_buffer[:self._frame_bytes])
        del self._byte_buffer[:self._frame_bytes]
        return data

    def run(self) -> None:
        cmd = make_ffmpeg_video_cmd(self.source, self.fps, self.width, self.height, input_args=self.input_args)
        try:
            self._proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
        except OSError as e:
            self._state_cb("error", f"Failed to start video ffmpeg: {e}")
            return

        stdout = self._proc.stdout
        if stdout is None:
            self._state_cb("error", "ffmpeg video stdout not available")
            return

        frame_index = 0
        frame_duration = 1.0 / self.fps
        try:
            while not self._stop_event.is_set():
                data = self._read_frame(stdout)
                if data is None:
                    break
                # Live sources keep flowing while paused; drop frames instead of stalling ffmpeg.
                if self._paused.is_set():
                    continue
                image = QtGui.QImage(
                    data,
                    self.width,
                    self.height,
                    QtGui.QImage.Format.Format_RGBA8888,
                ).copy()
                self._frames.update(image, frame_index * frame_duration)
                frame_index += 1
        except Exception as e:
            if not self._stop_event.is_set():
                self._state_cb("error", f"Video decode error: {e}")
        finally:
            try:
                if self._proc and self._proc.poll() is None:
                    self._proc.terminate()
            except OSError:
                pass


# -----------------------------
# Elements
# -----------------------------

class MediaElement(QtCore.QObject):
    loadStarted = QtCore.Signal()
    canPlay = QtCore.Signal()
    playing = QtCore.Signal()
    paused = QtCore.Signal()
    ended = QtCore.Signal()
    errorOccurred = QtCore.Signal(str)
    _decoderEvent = QtCore.Signal(int, str, str)
    _drained = QtCore.Signal(int)

    kind = "audio"

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        channels: int = CHANNELS,
        url_resolver: Optional[Callable[[str], str]] = None,
        native_hls: bool = False,
        parent=None,
    ):
        super().__init__(parent)
        self.sample_rate = sample_rate
        self.channels = channels
        self.url_resolver = url_resolver
        self.native_hls = native_hls
        self._src = ""
        self._media_source = None
        self._volume = 1.0
        self._is_paused = True
        self._ready = False
        self._ended = False
        self._generation = 0
        self._pending: list[PlayRequest] = []
        self._processor: Optional[Callable[[np.ndarray], np.ndarray]] = None
        self._processor_lock = threading.Lock()
        self._buffer_preset = BUFFER_PRESETS[DEFAULT_BUFFER_PRESET]
        self.buffer = AudioRingBuffer(
            channels,
            max_seconds=self._buffer_preset.ring_max_seconds,
            sample_rate=sample_rate,
        )
        self._decoder: Optional[DecoderThread] = None
        self._stream = None
        self._drain_reported = False
        self._callback_underflows = 0
        self._last_error: Optional[str] = None
        self._decoderEvent.connect(self._on_decoder_event)
        self._drained.connect(self._on_drained)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} src={self.current_source!r}>"

    # -- attributes -------------------------------------------------------

    @property
    def src(self) -> str:
        return self._src

    @src.setter
    def src(self, value: str) -> None:
        value = value or ""
        if value == self._src and self._media_source is None:
            return
        self._reset_media(ABORT_NEW_LOAD)
        self._src = value
        self._media_source = None
        if value:
            logger.debug("%s src set to %s", self.kind, value)

    @property
    def media_source(self):
        return self._media_source

    @property
    def current_source(self) -> str:
        if self._media_source is not None:
            return self._media_source.url
        return self._src

    def set_media_source(self, media_source) -> None:
        """Engine-driven input (HLS). Replaces any src."""
        self._reset_media(ABORT_NEW_LOAD)
        self._src = ""
        self._media_source = media_source

    @property
    def volume(self) -> float:
        return self._volume

    @volume.setter
    def volume(self, value: float) -> None:
        self._volume = clamp(float(value), 0.0, 1.0)

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    @property
    def is_ended(self) -> bool:
        return self._ended

    @property
    def processor(self) -> Optional[Callable[[np.ndarray], np.ndarray]]:
        return self._processor

    def attach_processor(self, processor: Callable[[np.ndarray], np.ndarray]) -> None:
        with self._processor_lock:
            if self._processor is not None:
                raise RuntimeError("A processor is already attached")
            self._processor = processor

    def detach_processor(self, processor: Callable[[np.ndarray], np.ndarray]) -> None:
        with self._processor_lock:
            if self._processor == processor:
                self._processor = None

    def can_play_type(self, mime: str) -> str:
        mime = (mime or "").split(";", 1)[0].strip().lower()
        if mime in ("application/vnd.apple.mpegurl", "application/x-mpegurl"):
            return "maybe" if self.native_hls else ""
        if mime in SUPPORTED_MIME_TYPES:
            return "maybe"
        return ""

    def set_buffer_preset(self, preset_name: str) -> None:
        preset = BUFFER_PRESETS.get(preset_name, BUFFER_PRESETS[DEFAULT_BUFFER_PRESET])
        if preset == self._buffer_preset:
            return
        self._reset_media(ABORT_NEW_LOAD)
        self._buffer_preset = preset
        self.buffer = AudioRingBuffer(
            self.channels,
            max_seconds=preset.ring_max_seconds,
            sample_rate=self.sample_rate,
        )

    # -- transport ---------------------------------------------------------

    def play(self) -> PlayRequest:
        request = PlayRequest()
        if not self.current_source:
            request.reject("No media source assigned")
            return request

        was_paused = self._is_paused
        self._is_paused = False
        if self._ended:
            self._reset_media(ABORT_NEW_LOAD)
            self._is_paused = False

        if self._ready:
            if not self._start_output():
                request.reject(self._last_error or "Audio output error")
                return request
            self._set_decoders_paused(False)
            request.resolve()
            if was_paused:
                self.playing.emit()
            return request

        self._pending.append(request)
        if self._decoder is None:
            self._start_decoders()
        return request

    def pause(self) -> None:
        if self._is_paused:
            return
        self._is_paused = True
        self._reject_pending(ABORT_PAUSE, aborted=True)
        self._set_decoders_paused(True)
        if self._stream is not None:
            try:
                self._stream.stop()
            except Exception:
                logger.debug("Output stream stop failed", exc_info=True)
        self.paused.emit()

    def render(self, frames: int) -> np.ndarray:
        """Pull one output block: ring -> volume -> bound processor."""
        out = np.zeros((frames, self.channels), dtype=np.float32)
        self._render_into(out)
        return out

    # -- internals ---------------------------------------------------------

    def _render_into(self, outdata: np.ndarray) -> int:
        if self._is_paused:
            outdata.fill(0)
            return 0
        filled = self.buffer.pop_into(outdata)
        vol = self._volume
        if vol == 0.0:
            outdata.fill(0)
        elif vol != 1.0:
            outdata *= vol
        processor = self._processor
        if processor is not None:
            outdata[:] = processor(outdata)
        if filled < outdata.shape[0] and not self._drain_reported and self.buffer.drained():
            self._drain_reported = True
            self._drained.emit(self._generation)
        return filled

    def _input(self) -> tuple[str, tuple[str, ...]]:
        if self._media_source is not None:
            return self._media_source.url, tuple(self._media_source.input_args)
        source = self._src
        if self.url_resolver is not None:
            source = self.url_resolver(source)
        return source, ()

    def _state_callback(self, generation: int) -> Callable[[str, Optional[str]], None]:
        def state_cb(kind, msg):
            self._decoderEvent.emit(generation, kind, msg or "")
        return state_cb

    def _start_decoders(self) -> None:
        if not have_exe("ffmpeg"):
            self._fail("ffmpeg not found in PATH.")
            return
        source, input_args = self._input()
        self.buffer.clear()
        self._drain_reported = False
        self._decoder = DecoderThread(
            source=source,
            sample_rate=self.sample_rate,
            channels=self.channels,
            ring=self.buffer,
            buffer_preset=self._buffer_preset,
            state_cb=self._state_callback(self._generation),
            input_args=input_args,
        )
        self._decoder.start()

    def _set_decoders_paused(self, paused: bool) -> None:
        pass

    def _stop_decoders(self) -> None:
        if self._decoder is not None:
            self._decoder.stop()
            self._decoder = None

    def _reset_media(self, abort_reason: str) -> None:
        self._generation += 1
        self._reject_pending(abort_reason, aborted=True)
        self._stop_decoders()
        self._close_stream()
        self.buffer.clear()
        self._ready = False
        self._ended = False
        self._drain_reported = False
        self._is_paused = True

    def _reject_pending(self, reason: str, *, aborted: bool = False) -> None:
        pending = self._pending
        self._pending = []
        for request in pending:
            request.reject(reason, aborted=aborted)

    def _resolve_pending(self) -> None:
        pending = self._pending
        self._pending = []
        for request in pending:
            request.resolve()

    def _fail(self, message: str) -> None:
        logger.error("%s element error: %s", self.kind, message)
        self._last_error = message
        self._stop_decoders()
        self._close_stream()
        self._ready = False
        self._is_paused = True
        self._reject_pending(message)
        self.errorOccurred.emit(message)

    @QtCore.Slot(int, str, str)
    def _on_decoder_event(self, generation: int, kind: str, msg: str) -> None:
        if generation != self._generation:
            return
        if kind == "loading":
            self.loadStarted.emit()
        elif kind in ("ready", "eof"):
            if kind == "eof":
                logger.debug("%s decoder reached end of input", self.kind)
            if self._ready:
                return
            self._ready = True
            self.canPlay.emit()
            if self._is_paused:
                return
            if self._start_output():
                self._resolve_pending()
                self.playing.emit()
        elif kind == "error":
            self._fail(msg or "Unknown error")

    @QtCore.Slot(int)
    def _on_drained(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._ended = True
        self._is_paused = True
        self._stop_decoders()
        self._close_stream()
        self.ended.emit()

    def _start_output(self) -> bool:
        if sd is None:
            self._fail(f"sounddevice not available: {_sounddevice_import_error}")
            return False
        if self._stream is not None:
            try:
                if not self._stream.active:
                    self._stream.start()
            except Exception as e:
                self._fail(f"Audio output error: {e}")
                return False
            return True

        def callback(outdata, frames, time_info, status):
            self._render_into(outdata)
            if status and getattr(status, "output_underflow", False):
                self._callback_underflows += 1
            if DEBUG_METRICS:
                starved = self.buffer.consume_underruns()
                if starved:
                    logger.debug(
                        "%s ring underruns: %d (device underflows %d)",
                        self.kind,
                        starved,
                        self._callback_underflows,
                    )

        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=self._buffer_preset.blocksize_frames,
                latency=self._buffer_preset.latency,
                callback=callback,
            )
            self._stream.start()
        except Exception as e:
            self._stream = None
            self._fail(f"Audio output error: {e}")
            return False
        return True

    def _close_stream(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception:
                logger.debug("Output stream close failed", exc_info=True)
            self._stream = None


class AudioElement(MediaElement):
    kind = "audio"


class VideoElement(MediaElement):
    kind = "video"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.frames = VideoFrameBuffer()
        self.frame_size = (VIDEO_WIDTH, VIDEO_HEIGHT)
        self._video_decoder: Optional[VideoDecoderThread] = None

    def _start_decoders(self) -> None:
        super()._start_decoders()
        if self._decoder is None:
            return
        source, input_args = self._input()
        width, height = self.frame_size
        generation = self._generation

        def state_cb(kind, msg):
            if kind == "error" and generation == self._generation:
                logger.warning("Video decoder error: %s", msg)

        self.frames.clear()
        self._video_decoder = VideoDecoderThread(
            source=source,
            fps=VIDEO_FPS,
            width=width,
            height=height,
            frames=self.frames,
            state_cb=state_cb,
            input_args=input_args,
        )
        self._video_decoder.start()

    def _set_decoders_paused(self, paused: bool) -> None:
        if self._video_decoder is not None:
            self._video_decoder.set_paused(paused)

    def _stop_decoders(self) -> None:
        super()._stop_decoders()
        if self._video_decoder is not None:
            self._video_decoder.stop()
            self._video_decoder = None
        self.frames.clear()
