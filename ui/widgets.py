from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np
from PySide6 import QtCore, QtGui, QtWidgets

from buffers import VideoFrameBuffer
from config import (
    PRESET_SLOTS,
    VISUALIZER_BAR_COUNT,
    VISUALIZER_BAR_GAP,
    VISUALIZER_CAP_HEIGHT,
    VISUALIZER_FRAME_MS,
    VISUALIZER_GRADIENT,
    VISUALIZER_HEIGHT_SCALE,
    VISUALIZER_IDLE_BAR_HEIGHT,
)
from models import EQ_LIMIT_DB, EQ_PRESETS, EqSettings, HistoryEntry, Station, Track, match_eq_preset
from utils import format_time


def compute_bar_heights(data: Sequence[int], bar_count: int, height: float) -> List[float]:
    """Pixel heights for bar_count bars sampled at a fixed stride through data."""
    n = len(data)
    step = n // bar_count if bar_count > 0 else 0
    heights = []
    for i in range(bar_count):
        index = i * step
        value = float(data[index]) if index < n else 0.0
        heights.append(value / 255.0 * height * VISUALIZER_HEIGHT_SCALE)
    return heights


def _hsl(hue: int, saturation: int, lightness: int, alpha: float = 1.0) -> QtGui.QColor:
    color = QtGui.QColor.fromHslF(hue / 360.0, saturation / 100.0, lightness / 100.0)
    color.setAlphaF(alpha)
    return color


# UI Widgets
# -----------------------------

class VisualizerWidget(QtWidgets.QWidget):
    """
    Spectrum bars driven by the signal graph's analyser.

    The frame timer runs only while an analyser is present, playback is
    active and the player is powered on. Any other combination stops the
    timer and paints flat idle bars.
    """

    def __init__(self, bar_count: int = VISUALIZER_BAR_COUNT, bar_gap: int = VISUALIZER_BAR_GAP, parent=None):
        super().__init__(parent)
        self.bar_count = bar_count
        self.bar_gap = bar_gap
        self._analyser = None
        self._is_playing = False
        self._is_powered_on = True
        self._data: Optional[np.ndarray] = None
        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(VISUALIZER_FRAME_MS)
        self._timer.timeout.connect(self._pull_frame)
        self._gradient_colors = [_hsl(*stop) for stop in VISUALIZER_GRADIENT]
        self._cap_color = QtGui.QColor(255, 255, 255, int(0.3 * 255))
        self._idle_color = QtGui.QColor(100, 100, 100, int(0.3 * 255))
        self.setMinimumHeight(60)
        self.setSizePolicy(QtWidgets.QSizePolicy.Policy.Expanding, QtWidgets.QSizePolicy.Policy.Fixed)

    def set_source(self, analyser, is_playing: bool, is_powered_on: bool) -> None:
        self._analyser = analyser
        self._is_playing = bool(is_playing)
        self._is_powered_on = bool(is_powered_on)
        if self._should_run():
            if not self._timer.isActive():
                self._timer.start()
            self._pull_frame()
        else:
            self.stop()

    def stop(self) -> None:
        self._timer.stop()
        self._data = None
        self.update()

    def is_running(self) -> bool:
        return self._timer.isActive()

    def _should_run(self) -> bool:
        return self._analyser is not None and self._is_playing and self._is_powered_on

    def _pull_frame(self) -> None:
        if self._analyser is None:
            return
        self._data = self._analyser.get_byte_frequency_data()
        self.update()

    def hideEvent(self, event: QtGui.QHideEvent) -> None:
        self._timer.stop()
        super().hideEvent(event)

    def showEvent(self, event: QtGui.QShowEvent) -> None:
        super().showEvent(event)
        if self._should_run() and not self._timer.isActive():
            self._timer.start()

    def closeEvent(self, event: QtGui.QCloseEvent) -> None:
        self._timer.stop()
        super().closeEvent(event)

    def paintEvent(self, event: QtGui.QPaintEvent) -> None:
        painter = QtGui.QPainter(self)
        painter.setRenderHint(QtGui.QPainter.RenderHint.Antialiasing, False)
        painter.fillRect(self.rect(), self.palette().color(QtGui.QPalette.ColorRole.Base))
        painter.setPen(QtCore.Qt.PenStyle.NoPen)

        width = float(self.width())
        height = float(self.height())
        bar_width = (width - (self.bar_count - 1) * self.bar_gap) / self.bar_count
        if bar_width <= 0 or height <= 0:
            return

        if self._data is None or not self._timer.isActive():
            y = height - VISUALIZER_IDLE_BAR_HEIGHT
            for i in range(self.bar_count):
                x = i * (bar_width + self.bar_gap)
                painter.fillRect(QtCore.QRectF(x, y, bar_width, VISUALIZER_IDLE_BAR_HEIGHT), self._idle_color)
            return

        for i, bar_height in enumerate(compute_bar_heights(self._data, self.bar_count, height)):
            x = i * (bar_width + self.bar_gap)
            y = height - bar_height
            gradient = QtGui.QLinearGradient(x, height, x, y)
            gradient.setColorAt(0.0, self._gradient_colors[0])
            gradient.setColorAt(0.5, self._gradient_colors[1])
            gradient.setColorAt(1.0, self._gradient_colors[2])
            painter.fillRect(QtCore.QRectF(x, y, bar_width, bar_height), QtGui.QBrush(gradient))
            painter.fillRect(QtCore.QRectF(x, y, bar_width, VISUALIZER_CAP_HEIGHT), self._cap_color)


class VideoWidget(QtWidgets.QWidget):
    def __init__(self, frames: Optional[VideoFrameBuffer] = None, parent=None):
        super().__init__(parent)
        self.frames = frames
        self._image: Optional[QtGui.QImage] = None
        self._timestamp: Optional[float] = None
        self.setMinimumSize(320, 180)
        self.setSizePolicy(QtWidgets.QSizePolicy.Policy.Expanding, QtWidgets.QSizePolicy.Policy.Expanding)
        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(33)
        self._timer.timeout.connect(self._pull_frame)

    def set_active(self, active: bool) -> None:
        if active:
            self._timer.start()
        else:
            self._timer.stop()
            self.clear()

    def stop_timer(self) -> None:
        if self._timer.isActive():
            self._timer.stop()

    def clear(self) -> None:
        self._image = None
        self._timestamp = None
        self.update()

    def _pull_frame(self) -> None:
        if self.frames is None:
            return
        image, timestamp = self.frames.get_latest()
        if image is None:
            if self._image is not None:
                self.clear()
            return
        if timestamp != self._timestamp:
            self._image = image
            self._timestamp = timestamp
            self.update()

    def closeEvent(self, event: QtGui.QCloseEvent) -> None:
        self.stop_timer()
        super().closeEvent(event)

    def paintEvent(self, event: QtGui.QPaintEvent) -> None:
        painter = QtGui.QPainter(self)
        painter.setRenderHint(QtGui.QPainter.RenderHint.SmoothPixmapTransform, True)
        palette = self.palette()
        painter.fillRect(self.rect(), QtGui.QColor("#000000"))

        if self._image is None or self._image.isNull():
            painter.setPen(palette.color(QtGui.QPalette.ColorRole.Text))
            painter.drawText(self.rect(), QtCore.Qt.AlignmentFlag.AlignCenter, "Loading video...")
            return

        target = self.rect()
        scaled = self._image.scaled(
            target.size(),
            QtCore.Qt.AspectRatioMode.KeepAspectRatio,
            QtCore.Qt.TransformationMode.SmoothTransformation,
        )
        x = target.x() + (target.width() - scaled.width()) // 2
        y = target.y() + (target.height() - scaled.height()) // 2
        painter.drawImage(QtCore.QPoint(x, y), scaled)


class EqualizerWidget(QtWidgets.QGroupBox):
    eqChanged = QtCore.Signal(object)

    def __init__(self, parent=None):
        super().__init__("Equalizer", parent)

        self.presets = QtWidgets.QComboBox()
        self.presets.addItems(list(EQ_PRESETS.keys()) + ["Custom"])
        self.reset_btn = QtWidgets.QPushButton("Reset")

        header = QtWidgets.QHBoxLayout()
        header.addWidget(QtWidgets.QLabel("Presets"))
        header.addWidget(self.presets)
        header.addStretch(1)
        header.addWidget(self.reset_btn)

        limit = int(EQ_LIMIT_DB)
        self.sliders: dict[str, QtWidgets.QSlider] = {}
        sliders_layout = QtWidgets.QHBoxLayout()
        for name, label in (("bass", "Bass"), ("mid", "Mid"), ("treble", "Treble")):
            slider = QtWidgets.QSlider(QtCore.Qt.Orientation.Vertical)
            slider.setRange(-limit, limit)
            slider.setValue(0)
            slider.setTickPosition(QtWidgets.QSlider.TickPosition.TicksBothSides)
            slider.setTickInterval(2)
            slider.setToolTip(f"{label} ({-limit}..{limit})")
            slider.setAccessibleName(label)

            band_label = QtWidgets.QLabel(label)
            band_label.setAlignment(QtCore.Qt.AlignmentFlag.AlignHCenter)

            column = QtWidgets.QVBoxLayout()
            column.addWidget(slider, 1, QtCore.Qt.AlignmentFlag.AlignHCenter)
            column.addWidget(band_label)
            sliders_layout.addLayout(column)
            self.sliders[name] = slider

        layout = QtWidgets.QVBoxLayout(self)
        layout.addLayout(header)
        layout.addLayout(sliders_layout)

        self.reset_btn.clicked.connect(lambda: self.presets.setCurrentText("Flat"))
        self.presets.currentTextChanged.connect(self._on_preset_changed)
        for slider in self.sliders.values():
            slider.valueChanged.connect(self._on_slider_changed)

    def settings(self) -> EqSettings:
        return EqSettings(
            bass=self.sliders["bass"].value(),
            mid=self.sliders["mid"].value(),
            treble=self.sliders["treble"].value(),
        )

    def set_settings(self, settings: EqSettings, emit: bool = False) -> None:
        for name, value in zip(("bass", "mid", "treble"), settings.as_tuple()):
            slider = self.sliders[name]
            slider.blockSignals(True)
            slider.setValue(int(round(value)))
            slider.blockSignals(False)
        self._sync_preset_label()
        if emit:
            self.eqChanged.emit(self.settings())

    def _on_preset_changed(self, name: str) -> None:
        preset = EQ_PRESETS.get(name)
        if preset is not None:
            self.set_settings(preset, emit=True)

    def _on_slider_changed(self, _value: int) -> None:
        self._sync_preset_label()
        self.eqChanged.emit(self.settings())

    def _sync_preset_label(self) -> None:
        name = match_eq_preset(self.settings()) or "Custom"
        self.presets.blockSignals(True)
        self.presets.setCurrentText(name)
        self.presets.blockSignals(False)


class TransportWidget(QtWidgets.QWidget):
    powerToggled = QtCore.Signal()
    playPauseClicked = QtCore.Signal()
    prevClicked = QtCore.Signal()
    nextClicked = QtCore.Signal()
    volumeChanged = QtCore.Signal(float)

    def __init__(self, parent=None):
        super().__init__(parent)

        self.power_btn = QtWidgets.QPushButton("Power")
        self.power_btn.setObjectName("power_button")
        self.power_btn.setCheckable(True)
        self.power_btn.setChecked(True)
        self.prev_btn = QtWidgets.QToolButton(text="⏮")
        self.play_pause_btn = QtWidgets.QToolButton(text="▶")
        self.next_btn = QtWidgets.QToolButton(text="⏭")
        for button in (self.prev_btn, self.play_pause_btn, self.next_btn):
            button.setMinimumSize(36, 36)
            button.setSizePolicy(
                QtWidgets.QSizePolicy.Policy.Fixed,
                QtWidgets.QSizePolicy.Policy.Fixed,
            )
        self.power_btn.setToolTip("Power on/off.")
        self.prev_btn.setToolTip("Previous station (Ctrl+Left).")
        self.prev_btn.setAccessibleName("Previous station")
        self.play_pause_btn.setToolTip("Play/Pause (Space).")
        self.play_pause_btn.setAccessibleName("Play/Pause")
        self.next_btn.setToolTip("Next station (Ctrl+Right).")
        self.next_btn.setAccessibleName("Next station")

        self.volume_slider = QtWidgets.QSlider(QtCore.Qt.Orientation.Horizontal)
        self.volume_slider.setRange(0, 100)
        self.volume_slider.setValue(70)
        self.volume_slider.setFixedWidth(140)
        self.volume_slider.setToolTip("Adjust volume.")
        self.volume_slider.setAccessibleName("Volume")

        row = QtWidgets.QHBoxLayout(self)
        row.addWidget(self.power_btn)
        row.addSpacing(12)
        for button in (self.prev_btn, self.play_pause_btn, self.next_btn):
            row.addWidget(button)
        row.addStretch(1)
        row.addWidget(QtWidgets.QLabel("Vol"))
        row.addWidget(self.volume_slider)

        self.power_btn.clicked.connect(self.powerToggled)
        self.prev_btn.clicked.connect(self.prevClicked)
        self.play_pause_btn.clicked.connect(self.playPauseClicked)
        self.next_btn.clicked.connect(self.nextClicked)
        self.volume_slider.valueChanged.connect(lambda v: self.volumeChanged.emit(v / 100.0))

    def set_volume(self, volume: float) -> None:
        self.volume_slider.blockSignals(True)
        self.volume_slider.setValue(int(round(volume * 100)))
        self.volume_slider.blockSignals(False)

    def set_state(self, is_playing: bool, is_loading: bool, is_powered_on: bool) -> None:
        self.power_btn.blockSignals(True)
        self.power_btn.setChecked(is_powered_on)
        self.power_btn.blockSignals(False)
        for button in (self.prev_btn, self.play_pause_btn, self.next_btn):
            button.setEnabled(is_powered_on)
        if is_loading:
            self.play_pause_btn.setText("…")
        else:
            self.play_pause_btn.setText("⏸" if is_playing else "▶")


class PresetButtons(QtWidgets.QWidget):
    presetClicked = QtCore.Signal(int)

    def __init__(self, parent=None):
        super().__init__(parent)
        self.buttons: List[QtWidgets.QPushButton] = []
        row = QtWidgets.QHBoxLayout(self)
        row.setContentsMargins(0, 0, 0, 0)
        for number in range(1, PRESET_SLOTS + 1):
            button = QtWidgets.QPushButton(str(number))
            button.setObjectName("preset_button")
            button.setCheckable(True)
            button.clicked.connect(lambda _checked=False, n=number: self.presetClicked.emit(n))
            row.addWidget(button)
            self.buttons.append(button)

    def update_presets(self, stations: Sequence[Station], current: Optional[Station], is_powered_on: bool) -> None:
        by_slot = {
            s.preset_number: s
            for s in stations
            if s.type == "external" and s.is_active and s.preset_number
        }
        for number, button in enumerate(self.buttons, start=1):
            station = by_slot.get(number)
            button.setEnabled(is_powered_on and station is not None)
            button.setToolTip(station.name if station else "Empty preset")
            button.setChecked(
                station is not None
                and current is not None
                and current.type == "external"
                and current.id == station.id
            )


class StationListWidget(QtWidgets.QWidget):
    stationActivated = QtCore.Signal(object)
    saveToggled = QtCore.Signal(object)

    def __init__(self, parent=None):
        super().__init__(parent)
        header = QtWidgets.QLabel("Stations")
        header.setObjectName("playlist_header")
        self.save_btn = QtWidgets.QToolButton(text="☆ Save")
        self.save_btn.setToolTip("Save or unsave the selected station on your dial.")
        self.save_btn.setAutoRaise(True)

        self.list = QtWidgets.QListWidget()
        self.list.setSelectionMode(QtWidgets.QAbstractItemView.SelectionMode.SingleSelection)
        self.list.setUniformItemSizes(True)

        header_row = QtWidgets.QHBoxLayout()
        header_row.addWidget(header)
        header_row.addStretch(1)
        header_row.addWidget(self.save_btn)

        layout = QtWidgets.QVBoxLayout(self)
        layout.setContentsMargins(8, 8, 8, 8)
        layout.addLayout(header_row)
        layout.addWidget(self.list, 1)

        self.list.itemDoubleClicked.connect(self._on_double)
        self.list.currentItemChanged.connect(lambda *_: self._sync_save_button())
        self.save_btn.clicked.connect(self._on_save)

    def set_stations(self, stations: Sequence[Station], current: Optional[Station] = None) -> None:
        self.list.blockSignals(True)
        self.list.clear()
        for station in stations:
            label = station.name
            if station.type == "external" and station.preset_number:
                label = f"[{station.preset_number}] {label}"
            if station.type == "user":
                label = f"{label}  (playlist)"
            if station.genre:
                label = f"{label} · {station.genre}"
            if station.is_saved:
                label = f"★ {label}"
            item = QtWidgets.QListWidgetItem(label)
            item.setData(QtCore.Qt.ItemDataRole.UserRole, station)
            if station.description:
                item.setToolTip(station.description)
            self.list.addItem(item)
        self.list.blockSignals(False)
        self.set_current(current)

    def set_current(self, station: Optional[Station]) -> None:
        for row in range(self.list.count()):
            item = self.list.item(row)
            candidate = item.data(QtCore.Qt.ItemDataRole.UserRole)
            if station is not None and candidate.type == station.type and candidate.id == station.id:
                self.list.setCurrentRow(row)
                break
        self._sync_save_button()

    def selected_station(self) -> Optional[Station]:
        item = self.list.currentItem()
        return item.data(QtCore.Qt.ItemDataRole.UserRole) if item else None

    def _on_double(self, item: QtWidgets.QListWidgetItem) -> None:
        self.stationActivated.emit(item.data(QtCore.Qt.ItemDataRole.UserRole))

    def _on_save(self) -> None:
        station = self.selected_station()
        if station is not None:
            self.saveToggled.emit(station)

    def _sync_save_button(self) -> None:
        station = self.selected_station()
        self.save_btn.setEnabled(station is not None)
        self.save_btn.setText("★ Saved" if station is not None and station.is_saved else "☆ Save")


class TrackListWidget(QtWidgets.QWidget):
    trackActivated = QtCore.Signal(int)

    def __init__(self, parent=None):
        super().__init__(parent)
        header = QtWidgets.QLabel("Playlist")
        header.setObjectName("playlist_header")
        self.list = QtWidgets.QListWidget()
        self.list.setSelectionMode(QtWidgets.QAbstractItemView.SelectionMode.SingleSelection)
        self.list.setUniformItemSizes(True)

        layout = QtWidgets.QVBoxLayout(self)
        layout.setContentsMargins(8, 8, 8, 8)
        layout.addWidget(header)
        layout.addWidget(self.list, 1)

        self.list.itemDoubleClicked.connect(lambda item: self.trackActivated.emit(self.list.row(item)))

    def set_tracks(self, tracks: Sequence[Track], current_index: int = -1) -> None:
        self.list.clear()
        for track in tracks:
            text = track.title
            if track.artist:
                text = f"{track.artist} - {text}"
            if track.duration_sec:
                text = f"{text}  {format_time(track.duration_sec)}"
            if track.is_video:
                text = f"{text}  [video]"
            item = QtWidgets.QListWidgetItem(text)
            item.setData(QtCore.Qt.ItemDataRole.UserRole, track)
            self.list.addItem(item)
        self.select_index(current_index)

    def select_index(self, index: int) -> None:
        if 0 <= index < self.list.count():
            self.list.setCurrentRow(index)

    def count(self) -> int:
        return self.list.count()


class RecentlyPlayedWidget(QtWidgets.QWidget):
    entryActivated = QtCore.Signal(object)
    clearRequested = QtCore.Signal()

    def __init__(self, parent=None):
        super().__init__(parent)
        header = QtWidgets.QLabel("Recently Played")
        header.setObjectName("playlist_header")
        self.clear_btn = QtWidgets.QToolButton(text="Clear")
        self.clear_btn.setAutoRaise(True)
        self.list = QtWidgets.QListWidget()

        header_row = QtWidgets.QHBoxLayout()
        header_row.addWidget(header)
        header_row.addStretch(1)
        header_row.addWidget(self.clear_btn)

        layout = QtWidgets.QVBoxLayout(self)
        layout.setContentsMargins(8, 8, 8, 8)
        layout.addLayout(header_row)
        layout.addWidget(self.list, 1)

        self.clear_btn.clicked.connect(self.clearRequested)
        self.list.itemDoubleClicked.connect(
            lambda item: self.entryActivated.emit(item.data(QtCore.Qt.ItemDataRole.UserRole))
        )

    def set_entries(self, entries: Sequence[HistoryEntry]) -> None:
        self.list.clear()
        for entry in entries:
            text = entry.station_name
            if entry.track_title:
                track = entry.track_title
                if entry.track_artist:
                    track = f"{entry.track_artist} - {track}"
                text = f"{text}: {track}"
            item = QtWidgets.QListWidgetItem(text)
            item.setData(QtCore.Qt.ItemDataRole.UserRole, entry)
            if entry.played_at:
                item.setToolTip(entry.played_at)
            self.list.addItem(item)
        self.clear_btn.setEnabled(bool(entries))


class OfflineIndicator(QtWidgets.QLabel):
    """Status-bar badge shown while the network is unreachable."""

    TEXT = "You're offline - playing cached audio"

    def __init__(self, parent=None):
        super().__init__(self.TEXT, parent)
        self.setObjectName("offline_badge")
        self.setVisible(False)
        self._offline = False

    @property
    def offline(self) -> bool:
        return self._offline

    def set_offline(self, offline: bool) -> None:
        self._offline = bool(offline)
        self.setVisible(self._offline)
