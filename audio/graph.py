"""
Per-player audio processing graph.

source -> bass low-shelf -> mid peaking -> treble high-shelf -> analyser -> output

The graph runs inside the bound element's output callback: the element pops
PCM, applies its volume and hands the block to the source, which walks the
chain. A context that is not running outputs silence.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import numpy as np

from config import (
    ANALYSER_FFT_SIZE,
    ANALYSER_MAX_DB,
    ANALYSER_MIN_DB,
    ANALYSER_SMOOTHING,
    CHANNELS,
    EQ_BANDS,
    EQ_GAIN_SCALE,
    SAMPLE_RATE,
)
from dsp import AnalyserNode, BiquadFilterNode
from models import EqSettings

logger = logging.getLogger(__name__)


class SourceAlreadyBoundError(RuntimeError):
    """An element can feed at most one live source node."""


class AudioContext:
    def __init__(self, sample_rate: int = SAMPLE_RATE, channels: int = CHANNELS):
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self._state = "suspended"
        self._lock = threading.Lock()
        self._sources: list[MediaElementSource] = []

    @property
    def state(self) -> str:
        return self._state

    def resume(self) -> bool:
        with self._lock:
            if self._state == "closed":
                raise RuntimeError("Cannot resume a closed AudioContext")
            if self._state == "running":
                return False
            self._state = "running"
            return True

    def suspend(self) -> None:
        with self._lock:
            if self._state == "running":
                self._state = "suspended"

    def close(self) -> None:
        with self._lock:
            if self._state == "closed":
                return
            self._state = "closed"
            sources = list(self._sources)
            self._sources.clear()
        for source in sources:
            source.disconnect()

    def create_media_element_source(self, element) -> "MediaElementSource":
        if self._state == "closed":
            raise RuntimeError("AudioContext is closed")
        source = MediaElementSource(self, element)
        with self._lock:
            self._sources.append(source)
        return source

    def create_biquad_filter(self, filter_type: str, frequency: float, q: float = 1.0) -> BiquadFilterNode:
        return BiquadFilterNode(filter_type, frequency, self.sample_rate, self.channels, q=q)

    def create_analyser(self, fft_size: int = ANALYSER_FFT_SIZE, smoothing: float = ANALYSER_SMOOTHING) -> AnalyserNode:
        return AnalyserNode(
            self.sample_rate,
            fft_size=fft_size,
            smoothing_time_constant=smoothing,
            min_decibels=ANALYSER_MIN_DB,
            max_decibels=ANALYSER_MAX_DB,
        )


class MediaElementSource:
    def __init__(self, context: AudioContext, element):
        if element.processor is not None:
            raise SourceAlreadyBoundError(f"{element!r} already has a live source binding")
        self.context = context
        self.element = element
        self._nodes: list = []
        self._bound = True
        element.attach_processor(self.process)

    @property
    def nodes(self) -> list:
        return list(self._nodes)

    def connect_chain(self, nodes) -> None:
        self._nodes = list(nodes)

    def process(self, x: np.ndarray) -> np.ndarray:
        if self.context.state != "running":
            return np.zeros_like(x)
        for node in self._nodes:
            x = node.process(x)
        return x

    def disconnect(self) -> None:
        if not self._bound:
            return
        self._bound = False
        self.element.detach_processor(self.process)


class SignalGraph:
    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        channels: int = CHANNELS,
        context_factory: Optional[Callable[..., AudioContext]] = None,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self._context_factory = context_factory or AudioContext
        self._context: Optional[AudioContext] = None
        self._source: Optional[MediaElementSource] = None
        self._element = None
        self._eq = EqSettings()
        self.bass: Optional[BiquadFilterNode] = None
        self.mid: Optional[BiquadFilterNode] = None
        self.treble: Optional[BiquadFilterNode] = None
        self.analyser: Optional[AnalyserNode] = None

    @property
    def element(self):
        return self._element

    @property
    def context(self) -> Optional[AudioContext]:
        return self._context

    @property
    def eq(self) -> EqSettings:
        return self._eq

    def connect(self, element) -> bool:
        """Bind the graph to element. Returns True when a new chain was built."""
        if element is self._element and self._context is not None and self._context.state != "closed":
            return False

        self.close()
        context = None
        try:
            context = self._context_factory(self.sample_rate, self.channels)
            source = context.create_media_element_source(element)
            filters = {
                name: context.create_biquad_filter(filter_type, frequency, q)
                for name, filter_type, frequency, q in EQ_BANDS
            }
            analyser = context.create_analyser()
            source.connect_chain([filters["bass"], filters["mid"], filters["treble"], analyser])
        except Exception:
            logger.warning("Audio graph construction failed; visualizer disabled", exc_info=True)
            if context is not None:
                context.close()
            return False

        self._context = context
        self._source = source
        self._element = element
        self.bass = filters["bass"]
        self.mid = filters["mid"]
        self.treble = filters["treble"]
        self.analyser = analyser
        self.update_eq(self._eq)
        logger.debug("Signal graph bound to %r", element)
        return True

    def update_eq(self, settings: EqSettings) -> None:
        self._eq = settings
        if self.bass is None or self.mid is None or self.treble is None:
            return
        self.bass.gain = settings.bass * EQ_GAIN_SCALE
        self.mid.gain = settings.mid * EQ_GAIN_SCALE
        self.treble.gain = settings.treble * EQ_GAIN_SCALE

    def resume(self) -> None:
        if self._context is not None and self._context.state == "suspended":
            self._context.resume()

    def close(self) -> None:
        if self._context is not None:
            self._context.close()
            logger.debug("Signal graph closed")
        self._context = None
        self._source = None
        self._element = None
        self.bass = None
        self.mid = None
        self.treble = None
        self.analyser = None

    def chain(self) -> list:
        """Nodes in signal order, source first. Empty when unbound."""
        if self._source is None:
            return []
        return [self._source] + self._source.nodes
