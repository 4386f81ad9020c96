import threading

import numpy as np
import pytest

from buffers import AudioRingBuffer, VisualizerBuffer


def _frames(start, n, channels=2):
    column = np.arange(start, start + n, dtype=np.float32)
    return np.repeat(column[:, None], channels, axis=1)


def test_pop_wraps_around_the_ring():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)
    ring.push(_frames(0, 8))
    assert np.array_equal(ring.pop(6), _frames(0, 6))
    ring.push(_frames(8, 7))
    assert ring.frames_available() == 9
    assert np.array_equal(ring.pop(9), _frames(6, 9))


def test_push_overwrites_oldest_when_full():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)
    ring.push(_frames(0, 8))
    ring.push(_frames(8, 5))
    assert ring.frames_available() == 10
    assert ring.pop(1)[0, 0] == 3.0


def test_underrun_pads_with_silence_and_counts():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)
    ring.push(_frames(1, 2))
    out = np.full((4, 2), 9.0, dtype=np.float32)
    assert ring.pop_into(out) == 2
    assert np.array_equal(out[2:], np.zeros((2, 2), dtype=np.float32))
    assert ring.consume_underruns() == 1
    assert ring.consume_underruns() == 0


def test_drained_only_after_eof_and_empty():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)
    ring.push(_frames(0, 3))
    ring.mark_eof()
    assert not ring.drained()
    ring.pop(5)
    assert ring.drained()
    assert ring.consume_underruns() == 0
    ring.clear()
    assert not ring.drained()


def test_push_blocking_waits_for_reader():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)
    ring.push(_frames(0, 10))
    done = threading.Event()

    def writer():
        ring.push_blocking(_frames(10, 4), stop_event=None)
        done.set()

    thread = threading.Thread(target=writer)
    thread.start()
    assert not done.wait(0.1)
    ring.pop(4)
    assert done.wait(2.0)
    thread.join()
    assert np.array_equal(ring.pop(10), _frames(4, 10))


def test_push_blocking_returns_when_stopped():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)
    ring.push(_frames(0, 10))
    stop = threading.Event()
    stop.set()
    ring.push_blocking(_frames(10, 4), stop_event=stop)
    assert ring.frames_available() == 10


def test_rejects_wrong_shape():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)
    with pytest.raises(ValueError):
        ring.push(np.zeros((4, 1), dtype=np.float32))
    with pytest.raises(ValueError):
        ring.pop_into(np.zeros((4, 2), dtype=np.float64))


def test_visualizer_buffer_keeps_latest_mono_window():
    window = VisualizerBuffer(4)
    window.push(_frames(0, 3))
    window.push(np.array([[4.0, 6.0], [7.0, 9.0]], dtype=np.float32))
    assert np.array_equal(window.snapshot(), np.array([1.0, 2.0, 5.0, 8.0], dtype=np.float32))
