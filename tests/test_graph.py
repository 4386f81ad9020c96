import logging

import numpy as np
import pytest

from audio.elements import AudioElement
from audio.graph import AudioContext, MediaElementSource, SignalGraph, SourceAlreadyBoundError
from dsp import AnalyserNode, BiquadFilterNode
from models import EqSettings


@pytest.fixture
def element(qapp):
    return AudioElement()


def test_chain_order(element):
    graph = SignalGraph()
    assert graph.connect(element)

    chain = graph.chain()
    assert isinstance(chain[0], MediaElementSource)
    assert [type(node) for node in chain[1:]] == [BiquadFilterNode] * 3 + [AnalyserNode]
    assert [node.type for node in chain[1:4]] == ["lowshelf", "peaking", "highshelf"]
    assert [node.frequency for node in chain[1:4]] == [200.0, 1000.0, 3000.0]
    assert [node.q for node in chain[1:4]] == [1.0, 0.5, 1.0]
    assert chain[-1] is graph.analyser
    assert graph.analyser.fft_size == 256
    assert graph.analyser.smoothing_time_constant == pytest.approx(0.8)


def test_update_eq_doubles_slider_values(element):
    graph = SignalGraph()
    graph.connect(element)
    graph.update_eq(EqSettings(bass=6, mid=0, treble=-6))
    assert graph.bass.gain == 12.0
    assert graph.mid.gain == 0.0
    assert graph.treble.gain == -12.0


def test_eq_survives_rebinding(qapp):
    graph = SignalGraph()
    graph.update_eq(EqSettings(bass=2, mid=-3, treble=1))
    graph.connect(AudioElement())
    assert (graph.bass.gain, graph.mid.gain, graph.treble.gain) == (4.0, -6.0, 2.0)


def test_connect_same_element_is_a_no_op(element):
    graph = SignalGraph()
    assert graph.connect(element)
    analyser = graph.analyser
    assert not graph.connect(element)
    assert graph.analyser is analyser


def test_rebinding_closes_previous_context(qapp):
    first = AudioElement()
    second = AudioElement()
    graph = SignalGraph()
    graph.connect(first)
    old_context = graph.context
    assert first.processor is not None

    assert graph.connect(second)
    assert old_context.state == "closed"
    assert first.processor is None
    assert second.processor is not None
    assert graph.element is second


def test_element_cannot_feed_two_sources(element):
    context = AudioContext()
    context.create_media_element_source(element)
    with pytest.raises(SourceAlreadyBoundError):
        AudioContext().create_media_element_source(element)


def test_construction_failure_leaves_graph_unbound(element, caplog):
    other = SignalGraph()
    other.connect(element)
    graph = SignalGraph()

    with caplog.at_level(logging.WARNING, logger="audio.graph"):
        assert not graph.connect(element)
    assert graph.analyser is None
    assert graph.chain() == []
    assert "construction failed" in caplog.text
    # The failed attempt must not steal the existing binding.
    assert element.processor is not None


def test_suspended_context_outputs_silence(element):
    graph = SignalGraph()
    graph.connect(element)
    block = np.full((64, 2), 0.5, dtype=np.float32)

    assert graph.context.state == "suspended"
    assert np.all(element.processor(block) == 0.0)

    graph.resume()
    assert graph.context.state == "running"
    assert np.allclose(element.processor(block), block)


def test_close_releases_element(element):
    graph = SignalGraph()
    graph.connect(element)
    graph.close()
    assert element.processor is None
    assert graph.analyser is None
    graph.close()


def test_closed_context_cannot_resume():
    context = AudioContext()
    context.close()
    with pytest.raises(RuntimeError):
        context.resume()
