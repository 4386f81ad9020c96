from __future__ import annotations

import math
import threading
from typing import List, Sequence

import numpy as np
from scipy.signal import sosfilt

from buffers import VisualizerBuffer

FILTER_TYPES = ("lowshelf", "peaking", "highshelf")


# -----------------------------
# Biquad designs (Audio EQ Cookbook, as specified for Web Audio)
# -----------------------------

def _normalize(b0: float, b1: float, b2: float, a0: float, a1: float, a2: float) -> np.ndarray:
    return np.array([[b0 / a0, b1 / a0, b2 / a0, 1.0, a1 / a0, a2 / a0]], dtype=np.float64)


def peaking_coeffs(f0: float, gain_db: float, q: float, sample_rate: int) -> np.ndarray:
    A = 10.0 ** (gain_db / 40.0)
    w0 = 2.0 * math.pi * f0 / float(sample_rate)
    cos_w0 = math.cos(w0)
    alpha = math.sin(w0) / (2.0 * q)
    return _normalize(
        1.0 + alpha * A,
        -2.0 * cos_w0,
        1.0 - alpha * A,
        1.0 + alpha / A,
        -2.0 * cos_w0,
        1.0 - alpha / A,
    )


def lowshelf_coeffs(f0: float, gain_db: float, sample_rate: int) -> np.ndarray:
    A = 10.0 ** (gain_db / 40.0)
    w0 = 2.0 * math.pi * f0 / float(sample_rate)
    cos_w0 = math.cos(w0)
    # Web Audio shelves use a fixed slope S = 1.
    alpha = math.sin(w0) / 2.0 * math.sqrt(2.0)
    k = 2.0 * math.sqrt(A) * alpha
    return _normalize(
        A * ((A + 1.0) - (A - 1.0) * cos_w0 + k),
        2.0 * A * ((A - 1.0) - (A + 1.0) * cos_w0),
        A * ((A + 1.0) - (A - 1.0) * cos_w0 - k),
        (A + 1.0) + (A - 1.0) * cos_w0 + k,
        -2.0 * ((A - 1.0) + (A + 1.0) * cos_w0),
        (A + 1.0) + (A - 1.0) * cos_w0 - k,
    )


def highshelf_coeffs(f0: float, gain_db: float, sample_rate: int) -> np.ndarray:
    A = 10.0 ** (gain_db / 40.0)
    w0 = 2.0 * math.pi * f0 / float(sample_rate)
    cos_w0 = math.cos(w0)
    alpha = math.sin(w0) / 2.0 * math.sqrt(2.0)
    k = 2.0 * math.sqrt(A) * alpha
    return _normalize(
        A * ((A + 1.0) + (A - 1.0) * cos_w0 + k),
        -2.0 * A * ((A - 1.0) + (A + 1.0) * cos_w0),
        A * ((A + 1.0) + (A - 1.0) * cos_w0 - k),
        (A + 1.0) - (A - 1.0) * cos_w0 + k,
        2.0 * ((A - 1.0) - (A + 1.0) * cos_w0),
        (A + 1.0) - (A - 1.0) * cos_w0 - k,
    )


def design_biquad(filter_type: str, frequency: float, gain_db: float, q: float, sample_rate: int) -> np.ndarray:
    if filter_type == "lowshelf":
        return lowshelf_coeffs(frequency, gain_db, sample_rate)
    if filter_type == "highshelf":
        return highshelf_coeffs(frequency, gain_db, sample_rate)
    if filter_type == "peaking":
        return peaking_coeffs(frequency, gain_db, q, sample_rate)
    raise ValueError(f"Unsupported filter type: {filter_type}")


def sos_response(sos: np.ndarray, frequency: float, sample_rate: int) -> float:
    """Magnitude response of a second-order section at one frequency."""
    z = np.exp(-1j * 2.0 * math.pi * frequency / float(sample_rate))
    b0, b1, b2, a0, a1, a2 = sos[0]
    h = (b0 + b1 * z + b2 * z * z) / (a0 + a1 * z + a2 * z * z)
    return float(abs(h))


# -----------------------------
# Graph nodes
# -----------------------------

class BiquadFilterNode:
    """Stateful biquad over (n, ch) float32 blocks. Gain is in dB."""

    def __init__(
        self,
        filter_type: str,
        frequency: float,
        sample_rate: int,
        channels: int,
        q: float = 1.0,
        gain: float = 0.0,
    ):
        if filter_type not in FILTER_TYPES:
            raise ValueError(f"Unsupported filter type: {filter_type}")
        self.type = filter_type
        self.frequency = float(frequency)
        self.q = float(q)
        self.sr = int(sample_rate)
        self.ch = int(channels)
        self._lock = threading.Lock()
        self._gain = float(gain)
        self._sos = design_biquad(self.type, self.frequency, self._gain, self.q, self.sr)
        self._zi = np.zeros((1, self.ch, 2), dtype=np.float64)

    @property
    def gain(self) -> float:
        return self._gain

    @gain.setter
    def gain(self, value: float) -> None:
        value = float(value)
        sos = design_biquad(self.type, self.frequency, value, self.q, self.sr)
        with self._lock:
            self._gain = value
            self._sos = sos

    def coefficients(self) -> np.ndarray:
        with self._lock:
            return self._sos.copy()

    def reset(self) -> None:
        with self._lock:
            self._zi.fill(0.0)

    def process(self, x: np.ndarray) -> np.ndarray:
        if x.size == 0:
            return x
        with self._lock:
            sos = self._sos
            zi = self._zi
            if abs(self._gain) <= 1e-6:
                return x
        y = np.array(x, dtype=np.float64, copy=True)
        for ch in range(min(self.ch, y.shape[1])):
            y[:, ch], zi[:, ch, :] = sosfilt(sos, y[:, ch], zi=zi[:, ch, :])
        return y.astype(np.float32, copy=False)


def blackman_window(size: int) -> np.ndarray:
    n = np.arange(size, dtype=np.float64)
    return 0.42 - 0.5 * np.cos(2.0 * math.pi * n / size) + 0.08 * np.cos(4.0 * math.pi * n / size)


class AnalyserNode:
    """
    Pass-through node exposing the spectrum of the most recent samples.

    get_byte_frequency_data() applies a Blackman window, scales |X| by 1/N,
    smooths over time with smoothing_time_constant and maps the decibel range
    [min_decibels, max_decibels] onto 0..255.
    """

    def __init__(
        self,
        sample_rate: int,
        fft_size: int = 256,
        smoothing_time_constant: float = 0.8,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
    ):
        if fft_size < 32 or fft_size > 32768 or fft_size & (fft_size - 1):
            raise ValueError(f"fft_size must be a power of two in [32, 32768], got {fft_size}")
        if not 0.0 <= smoothing_time_constant <= 1.0:
            raise ValueError("smoothing_time_constant must be within [0, 1]")
        if min_decibels >= max_decibels:
            raise ValueError("min_decibels must be lower than max_decibels")
        self.sample_rate = int(sample_rate)
        self.fft_size = int(fft_size)
        self.frequency_bin_count = self.fft_size // 2
        self.smoothing_time_constant = float(smoothing_time_constant)
        self.min_decibels = float(min_decibels)
        self.max_decibels = float(max_decibels)
        self._window = blackman_window(self.fft_size)
        self._samples = VisualizerBuffer(self.fft_size)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)
        self._lock = threading.Lock()

    def process(self, x: np.ndarray) -> np.ndarray:
        self._samples.push(x)
        return x

    def reset(self) -> None:
        self._samples.clear()
        with self._lock:
            self._smoothed.fill(0.0)

    def get_float_time_domain_data(self) -> np.ndarray:
        return self._samples.snapshot()

    def get_float_frequency_data(self) -> np.ndarray:
        frame = self._samples.snapshot().astype(np.float64) * self._window
        magnitude = np.abs(np.fft.rfft(frame))[: self.frequency_bin_count] / self.fft_size
        tau = self.smoothing_time_constant
        with self._lock:
            self._smoothed = tau * self._smoothed + (1.0 - tau) * magnitude
            smoothed = self._smoothed.copy()
        with np.errstate(divide="ignore"):
            return 20.0 * np.log10(smoothed)

    def get_byte_frequency_data(self) -> np.ndarray:
        db = self.get_float_frequency_data()
        scale = 255.0 / (self.max_decibels - self.min_decibels)
        scaled = np.floor(scale * (db - self.min_decibels))
        scaled = np.nan_to_num(scaled, nan=0.0, neginf=0.0, posinf=255.0)
        return np.clip(scaled, 0, 255).astype(np.uint8)


# -----------------------------
# ffmpeg command builders
# -----------------------------

def make_ffmpeg_cmd(
    source: str,
    sample_rate: int,
    channels: int,
    *,
    start_sec: float = 0.0,
    input_args: Sequence[str] = (),
) -> List[str]:
    cmd = ["ffmpeg", "-hide_banner", "-loglevel", "error", "-nostdin"]
    cmd.extend(input_args)
    if start_sec > 0:
        cmd.extend(["-ss", str(start_sec)])
    cmd.extend([
        "-i", source,
        "-vn",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        "-f", "f32le",
        "pipe:1",
    ])
    return cmd


def make_ffmpeg_video_cmd(
    source: str,
    fps: float,
    width: int,
    height: int,
    *,
    input_args: Sequence[str] = (),
) -> List[str]:
    # Letterbox into a fixed frame so the reader knows the frame size up front.
    vf = (
        f"fps={fps},"
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
    )
    cmd = ["ffmpeg", "-hide_banner", "-loglevel", "error", "-nostdin", "-re"]
    cmd.extend(input_args)
    cmd.extend([
        "-i", source,
        "-an",
        "-vf", vf,
        "-f", "rawvideo",
        "-pix_fmt", "rgba",
        "pipe:1",
    ])
    return cmd
