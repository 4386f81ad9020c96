import numpy as np
import pytest

from ui.widgets import EqualizerWidget, VisualizerWidget, compute_bar_heights
from models import EqSettings


class _Analyser:
    def __init__(self, value=128):
        self.calls = 0
        self.value = value

    def get_byte_frequency_data(self):
        self.calls += 1
        return np.full(128, self.value, dtype=np.uint8)


def test_bar_heights_sample_at_fixed_stride():
    data = np.arange(128, dtype=np.uint8)
    heights = compute_bar_heights(data, 32, 100.0)
    assert len(heights) == 32
    assert heights[0] == 0.0
    assert heights[1] == pytest.approx(4 / 255 * 100 * 0.9)
    assert heights[31] == pytest.approx(124 / 255 * 100 * 0.9)


def test_bar_heights_full_scale():
    heights = compute_bar_heights(np.full(128, 255, dtype=np.uint8), 32, 60.0)
    assert heights == pytest.approx([54.0] * 32)


def test_bar_heights_with_short_data():
    heights = compute_bar_heights([200] * 16, 32, 100.0)
    assert heights == pytest.approx([200 / 255 * 90.0] * 32)
    assert compute_bar_heights([], 4, 100.0) == [0.0] * 4


def test_loop_runs_only_with_analyser_playback_and_power(qapp):
    widget = VisualizerWidget()
    widget.resize(320, 60)
    widget.show()
    analyser = _Analyser()

    widget.set_source(analyser, is_playing=True, is_powered_on=True)
    assert widget.is_running()
    assert analyser.calls == 1

    widget.set_source(analyser, is_playing=False, is_powered_on=True)
    assert not widget.is_running()
    widget.set_source(None, is_playing=True, is_powered_on=True)
    assert not widget.is_running()
    widget.set_source(analyser, is_playing=True, is_powered_on=False)
    assert not widget.is_running()
    widget.close()


def test_loop_stops_when_hidden_and_resumes_when_shown(qapp):
    widget = VisualizerWidget()
    widget.show()
    widget.set_source(_Analyser(), is_playing=True, is_powered_on=True)

    widget.hide()
    assert not widget.is_running()
    widget.show()
    assert widget.is_running()

    widget.close()
    assert not widget.is_running()


def test_paint_in_both_states(qapp):
    widget = VisualizerWidget()
    widget.resize(320, 60)
    widget.grab()
    widget.set_source(_Analyser(255), is_playing=True, is_powered_on=True)
    widget.grab()
    widget.stop()


def test_equalizer_preset_applies_values(qapp):
    widget = EqualizerWidget()
    changes = []
    widget.eqChanged.connect(changes.append)
    widget.set_settings(EqSettings(4, -1, 3), emit=True)
    assert widget.settings() == EqSettings(4, -1, 3)
    assert changes[-1] == EqSettings(4, -1, 3)
    assert widget.presets.currentText() == "Rock"

    widget.presets.setCurrentText("Jazz")
    assert changes[-1] == EqSettings(2, 3, 2)
    widget.sliders["mid"].setValue(-6)
    assert widget.presets.currentText() == "Custom"
    assert changes[-1] == EqSettings(2, -6, 2)
