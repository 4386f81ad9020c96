from __future__ import annotations

import logging
from typing import List, Optional

from PySide6 import QtCore, QtGui, QtNetwork, QtWidgets

from audio.controller import PlaybackController
from audio.elements import AudioElement, VideoElement
from config import APP_NAME, DEFAULT_TITLE, SETTINGS_APP, SETTINGS_ORG, STATION_REFRESH_SEC
from library import RadioApiClient
from media_session import MediaSessionBridge, TrayMediaSession
from models import EqSettings, HistoryEntry, PlaybackSession, Station, THEMES, Track
from offline_cache import OfflineCacheWorker, clear_offline_cache, register_worker, unregister_worker
from theme import DEFAULT_THEME, build_palette, build_stylesheet, get_theme
from ui.widgets import (
    EqualizerWidget,
    OfflineIndicator,
    PresetButtons,
    RecentlyPlayedWidget,
    StationListWidget,
    TrackListWidget,
    TransportWidget,
    VideoWidget,
    VisualizerWidget,
)
from ui.workers.api_workers import ApiWorker
from utils import safe_float, safe_int

logger = logging.getLogger(__name__)

# Main Window
# -----------------------------

class MainWindow(QtWidgets.QMainWindow):
    def __init__(self, api: Optional[RadioApiClient] = None):
        super().__init__()
        self.setWindowTitle(APP_NAME)
        self.resize(1180, 720)

        self.settings = QtCore.QSettings(SETTINGS_ORG, SETTINGS_APP)
        self._theme_name = str(self.settings.value("ui/theme", DEFAULT_THEME))
        self.api = api or RadioApiClient()
        self._workers: List[tuple[ApiWorker, QtCore.QThread]] = []
        self._stations_loaded = False
        self._closing = False

        self.cache_worker = OfflineCacheWorker()
        self.cache_worker.start()
        register_worker(self.cache_worker)

        self.audio_element = AudioElement(url_resolver=self.cache_worker.resolve, parent=self)
        self.video_element = VideoElement(url_resolver=self.cache_worker.resolve, parent=self)
        self.controller = PlaybackController(self.audio_element, self.video_element, parent=self)

        self.transport = TransportWidget()
        self.presets = PresetButtons()
        self.visualizer = VisualizerWidget()
        self.equalizer = EqualizerWidget()
        self.station_list = StationListWidget()
        self.track_list = TrackListWidget()
        self.track_list.setVisible(False)
        self.recent = RecentlyPlayedWidget()
        self.video_widget = VideoWidget(self.video_element.frames)

        self.station_name = QtWidgets.QLabel(DEFAULT_TITLE)
        self.station_name.setObjectName("station_name")
        self.track_title = QtWidgets.QLabel("")
        self.track_title.setObjectName("track_title")
        self.station_meta = QtWidgets.QLabel("")
        self.station_meta.setObjectName("station_meta")
        self.live_badge = QtWidgets.QLabel("")
        self.live_badge.setObjectName("live_badge")

        self.status = QtWidgets.QLabel("Ready.")
        self.status.setObjectName("status_label")
        self.statusBar().addWidget(self.status, 1)
        self.offline_indicator = OfflineIndicator()
        self.statusBar().addPermanentWidget(self.offline_indicator)

        self._build_layout()

        self.media_session = TrayMediaSession(self)
        self.media_bridge = MediaSessionBridge(self.media_session)

        self._connect_signals()
        self._setup_shortcuts()
        self._restore_settings()
        self._apply_theme(self._theme_name)
        self._watch_connectivity()

        self._refresh_timer = QtCore.QTimer(self)
        self._refresh_timer.timeout.connect(self._refresh_stations)
        if STATION_REFRESH_SEC > 0:
            self._refresh_timer.start(int(STATION_REFRESH_SEC * 1000))

        self._on_session_changed(self.controller.session)
        self._refresh_stations()
        self._refresh_history()

    # -----------------------------
    # Layout
    # -----------------------------

    def _build_layout(self) -> None:
        now_playing = QtWidgets.QFrame()
        now_playing.setObjectName("now_playing_frame")
        text_column = QtWidgets.QVBoxLayout()
        title_row = QtWidgets.QHBoxLayout()
        title_row.addWidget(self.station_name)
        title_row.addWidget(self.live_badge)
        title_row.addStretch(1)
        text_column.addLayout(title_row)
        text_column.addWidget(self.track_title)
        text_column.addWidget(self.station_meta)
        text_column.addWidget(self.visualizer)

        self.media_frame = QtWidgets.QFrame()
        self.media_frame.setObjectName("media_frame")
        media_layout = QtWidgets.QVBoxLayout(self.media_frame)
        media_layout.setContentsMargins(0, 0, 0, 0)
        media_layout.addWidget(self.video_widget)
        self.media_frame.setVisible(False)

        now_layout = QtWidgets.QVBoxLayout(now_playing)
        now_layout.addLayout(text_column)
        now_layout.addWidget(self.media_frame, 1)
        now_layout.addWidget(self.transport)
        now_layout.addWidget(self.presets)

        self.theme_combo = QtWidgets.QComboBox()
        self.theme_combo.addItems(list(THEMES.keys()))
        self.clear_cache_btn = QtWidgets.QPushButton("Clear Offline Cache")
        self.refresh_btn = QtWidgets.QPushButton("Refresh")
        appearance = QtWidgets.QHBoxLayout()
        appearance.addWidget(QtWidgets.QLabel("Theme"))
        appearance.addWidget(self.theme_combo)
        appearance.addStretch(1)
        appearance.addWidget(self.refresh_btn)
        appearance.addWidget(self.clear_cache_btn)

        left = QtWidgets.QWidget()
        left_layout = QtWidgets.QVBoxLayout(left)
        left_layout.addWidget(now_playing, 1)
        left_layout.addWidget(self.equalizer)
        left_layout.addLayout(appearance)

        right = QtWidgets.QSplitter(QtCore.Qt.Orientation.Vertical)
        right.addWidget(self.station_list)
        right.addWidget(self.track_list)
        right.addWidget(self.recent)

        splitter = QtWidgets.QSplitter(QtCore.Qt.Orientation.Horizontal)
        splitter.addWidget(left)
        splitter.addWidget(right)
        splitter.setStretchFactor(0, 3)
        splitter.setStretchFactor(1, 2)
        self.setCentralWidget(splitter)

    def _connect_signals(self) -> None:
        c = self.controller
        c.sessionChanged.connect(self._on_session_changed)
        c.stationChanged.connect(self._on_station_changed)
        c.trackChanged.connect(self._on_track_changed)
        c.tracksChanged.connect(self._on_tracks_changed)
        c.errorOccurred.connect(self._show_error)
        c.trackListRequested.connect(self._fetch_tracks)
        c.historyRecorded.connect(self._record_history)
        c.saveToggleRequested.connect(self._toggle_save)
        c.analyserChanged.connect(lambda _analyser: self._sync_visualizer())
        c.videoActiveChanged.connect(self._on_video_active)

        self.transport.powerToggled.connect(c.toggle_power)
        self.transport.playPauseClicked.connect(c.toggle_play)
        self.transport.prevClicked.connect(c.previous_station)
        self.transport.nextClicked.connect(c.next_station)
        self.transport.volumeChanged.connect(self._on_volume_changed)
        self.presets.presetClicked.connect(c.select_preset)
        self.station_list.stationActivated.connect(c.select_station)
        self.station_list.saveToggled.connect(c.toggle_save)
        self.track_list.trackActivated.connect(c.select_track)
        self.recent.entryActivated.connect(c.select_history_entry)
        self.recent.clearRequested.connect(self._clear_history)
        self.equalizer.eqChanged.connect(self._on_eq_changed)
        self.theme_combo.currentTextChanged.connect(self._on_theme_changed)
        self.refresh_btn.clicked.connect(self._refresh_stations)
        self.clear_cache_btn.clicked.connect(self._clear_cache)

    def _setup_shortcuts(self) -> None:
        c = self.controller
        QtGui.QShortcut(QtGui.QKeySequence("Space"), self, activated=c.toggle_play)
        QtGui.QShortcut(QtGui.QKeySequence("Ctrl+Right"), self, activated=c.next_station)
        QtGui.QShortcut(QtGui.QKeySequence("Ctrl+Left"), self, activated=c.previous_station)
        QtGui.QShortcut(QtGui.QKeySequence("Ctrl+R"), self, activated=self._refresh_stations)
        for number in range(1, 6):
            QtGui.QShortcut(
                QtGui.QKeySequence(f"Ctrl+{number}"),
                self,
                activated=lambda n=number: c.select_preset(n),
            )

    # -----------------------------
    # Settings and theme
    # -----------------------------

    def _restore_settings(self) -> None:
        volume = safe_float(self.settings.value("audio/volume", 0.7), 0.7)
        self.controller.set_volume(volume)
        self.transport.set_volume(self.controller.session.volume)

        bass = self.settings.value("eq/bass", 0.0, type=float)
        mid = self.settings.value("eq/mid", 0.0, type=float)
        treble = self.settings.value("eq/treble", 0.0, type=float)
        eq = EqSettings(bass, mid, treble)
        self.equalizer.set_settings(eq)
        self.controller.set_eq(eq)

        if self._theme_name not in THEMES:
            self._theme_name = DEFAULT_THEME
        self.theme_combo.blockSignals(True)
        self.theme_combo.setCurrentText(self._theme_name)
        self.theme_combo.blockSignals(False)

    def _last_station_key(self) -> Optional[tuple]:
        kind = str(self.settings.value("player/last_station_type", ""))
        station_id = safe_int(self.settings.value("player/last_station_id", None))
        if kind not in ("external", "user") or station_id is None:
            return None
        return kind, station_id

    def _apply_theme(self, theme_name: str) -> None:
        app = QtWidgets.QApplication.instance()
        if not app:
            return
        theme = get_theme(theme_name)
        app.setPalette(build_palette(theme))
        app.setStyleSheet(build_stylesheet(theme))
        self._theme_name = theme.name

    def _on_theme_changed(self, theme_name: str) -> None:
        if theme_name not in THEMES:
            return
        self._apply_theme(theme_name)
        self.settings.setValue("ui/theme", theme_name)

    def _on_volume_changed(self, volume: float) -> None:
        self.controller.set_volume(volume)
        self.settings.setValue("audio/volume", float(self.controller.session.volume))

    def _on_eq_changed(self, settings: EqSettings) -> None:
        self.controller.set_eq(settings)
        self.settings.setValue("eq/bass", float(settings.bass))
        self.settings.setValue("eq/mid", float(settings.mid))
        self.settings.setValue("eq/treble", float(settings.treble))

    # -----------------------------
    # Background API calls
    # -----------------------------

    def _run_worker(self, fn, *args, on_success=None, on_failure=None) -> None:
        if self._closing:
            return
        worker = ApiWorker(fn, *args)
        thread = QtCore.QThread(self)
        worker.moveToThread(thread)
        thread.started.connect(worker.run)
        if on_success is not None:
            worker.succeeded.connect(on_success, QtCore.Qt.ConnectionType.QueuedConnection)
        worker.failed.connect(on_failure or self._show_error, QtCore.Qt.ConnectionType.QueuedConnection)
        worker.finished.connect(self._on_worker_finished, QtCore.Qt.ConnectionType.QueuedConnection)
        self._workers.append((worker, thread))
        thread.start()

    def _on_worker_finished(self) -> None:
        worker = self.sender()
        for entry in list(self._workers):
            if entry[0] is not worker:
                continue
            self._workers.remove(entry)
            thread = entry[1]
            thread.quit()
            thread.wait()
            thread.deleteLater()
            worker.deleteLater()
            break

    def _stop_workers(self) -> None:
        for worker, thread in self._workers:
            thread.quit()
            thread.wait()
        self._workers.clear()

    def _refresh_stations(self) -> None:
        self._run_worker(self.api.fetch_station_list, on_success=self._on_stations_loaded)

    def _on_stations_loaded(self, stations: List[Station]) -> None:
        preferred = None if self._stations_loaded else self._last_station_key()
        self._stations_loaded = True
        self.controller.set_stations(stations, preferred=preferred)
        self.station_list.set_stations(self.controller.ordered_stations(), self.controller.session.current_station)
        self._sync_presets()
        self._set_status(f"{len(stations)} stations.")

    def _fetch_tracks(self, station_id: int) -> None:
        api = self.api
        self._run_worker(lambda: (station_id, api.fetch_tracks(station_id)), on_success=self._on_tracks_loaded)

    def _on_tracks_loaded(self, result: tuple) -> None:
        station_id, tracks = result
        self.controller.set_tracks(station_id, tracks)

    def _record_history(self, entry: HistoryEntry) -> None:
        self._run_worker(self.api.add_history, entry, on_success=self._on_history_written)

    def _on_history_written(self, _result) -> None:
        self._refresh_history()

    def _refresh_history(self) -> None:
        self._run_worker(self.api.fetch_history, on_success=self.recent.set_entries)

    def _clear_history(self) -> None:
        self._run_worker(self.api.clear_history, on_success=self._on_history_written)

    def _toggle_save(self, station: Station) -> None:
        self._run_worker(self.api.toggle_saved, station, on_success=self._on_save_toggled)

    def _on_save_toggled(self, message: str) -> None:
        self._set_status(message)
        self._refresh_stations()

    def _clear_cache(self) -> None:
        clear_offline_cache()
        self._set_status("Offline cache cleared.")

    # -----------------------------
    # Controller reactions
    # -----------------------------

    def _on_session_changed(self, session: PlaybackSession) -> None:
        powered = session.is_powered_on
        self.transport.set_state(session.is_playing, session.is_loading, powered)
        self.station_list.setEnabled(powered)
        self.track_list.setEnabled(powered)
        self.recent.setEnabled(powered)
        self._sync_presets()
        self._sync_visualizer()

        if session.is_loading:
            self.live_badge.setText("LOADING")
        elif session.is_playing:
            station = session.current_station
            self.live_badge.setText("LIVE" if station is not None and station.type == "external" else "PLAYING")
        else:
            self.live_badge.setText("")
        self._sync_media_session()

    def _on_station_changed(self, station: Optional[Station]) -> None:
        if station is None:
            return
        self.station_name.setText(station.name)
        meta = [station.genre or ""]
        if station.type == "external" and station.preset_number:
            meta.append(f"Preset {station.preset_number}")
        if station.type == "user":
            meta.append("Playlist")
        self.station_meta.setText("  ·  ".join(m for m in meta if m))
        self.station_list.set_current(station)
        is_user = station.type == "user"
        self.track_list.setVisible(is_user)
        if is_user:
            self.track_list.set_tracks(self.controller.tracks_for(station.id), -1)
        self.settings.setValue("player/last_station_type", station.type)
        self.settings.setValue("player/last_station_id", int(station.id))

    def _on_track_changed(self, track: Optional[Track]) -> None:
        if track is None:
            self.track_title.setText("")
        else:
            text = track.title if not track.artist else f"{track.artist} - {track.title}"
            self.track_title.setText(text)
            self.track_list.select_index(self.controller.session.current_track_index)
        self._sync_media_session()

    def _on_tracks_changed(self, station_id: int, tracks: List[Track]) -> None:
        station = self.controller.session.current_station
        if station is None or station.type != "user" or station.id != station_id:
            return
        current = self.controller.session.current_track_index
        self.track_list.set_tracks(tracks, current if self.controller.current_track() else -1)

    def _on_video_active(self, active: bool) -> None:
        self.media_frame.setVisible(active)
        self.video_widget.set_active(active)

    def _sync_presets(self) -> None:
        session = self.controller.session
        self.presets.update_presets(self.controller.stations, session.current_station, session.is_powered_on)

    def _sync_visualizer(self) -> None:
        session = self.controller.session
        self.visualizer.set_source(self.controller.analyser, session.is_playing, session.is_powered_on)

    def _sync_media_session(self) -> None:
        session = self.controller.session
        station = session.current_station
        track = self.controller.current_track()
        title = track.title if track is not None else (station.name if station is not None else None)
        artist = track.artist if track is not None and track.artist else (station.name if station is not None else None)
        artwork = station.logo_url if station is not None else None
        self.media_bridge.update(title, artist, APP_NAME, artwork, session.is_playing)
        c = self.controller
        self.media_bridge.set_handlers(c.play, c.pause, c.previous_station, c.next_station)

    def _watch_connectivity(self) -> None:
        info_cls = QtNetwork.QNetworkInformation
        if not info_cls.loadDefaultBackend():
            logger.info("No network information backend; offline indicator disabled")
            return
        info = info_cls.instance()
        if info is None or not info.supports(info_cls.Feature.Reachability):
            logger.info("Network backend cannot report reachability")
            return
        info.reachabilityChanged.connect(self._on_reachability_changed)
        self._on_reachability_changed(info.reachability())

    def _on_reachability_changed(self, reachability) -> None:
        offline = reachability == QtNetwork.QNetworkInformation.Reachability.Disconnected
        if offline != self.offline_indicator.offline:
            logger.info("Network %s", "unreachable" if offline else "reachable again")
        self.offline_indicator.set_offline(offline)

    def _set_status(self, message: str) -> None:
        self.status.setText(message)

    def _show_error(self, message: str) -> None:
        logger.warning("%s", message)
        self.status.setText(message)

    # -----------------------------
    # Shutdown
    # -----------------------------

    def closeEvent(self, e: QtGui.QCloseEvent):
        self._closing = True
        self._refresh_timer.stop()
        self.visualizer.stop()
        self.video_widget.stop_timer()
        self.media_bridge.clear()
        self.media_session.close()
        self.controller.shutdown()
        unregister_worker(self.cache_worker)
        self.cache_worker.stop()
        self._stop_workers()
        self.settings.setValue("audio/volume", float(self.controller.session.volume))
        super().closeEvent(e)
