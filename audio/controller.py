"""
Playback controller: the single owner of what the player is doing.

It holds one audio element and one video element, engages at most one of
them at a time, binds the signal graph to whichever is engaged and drives the
session phase from the elements' play results. All methods run on the Qt main
thread; anything asynchronous arrives through signals.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Callable, Dict, List, Optional

from PySide6 import QtCore

from audio.elements import AudioElement, PlayRequest, VideoElement
from audio.graph import SignalGraph
from audio.hls import HLS_MIME_TYPES, HlsEngine, is_hls_url
from models import (
    EqSettings,
    HistoryEntry,
    PlaybackPhase,
    PlaybackSession,
    Station,
    Track,
    station_key,
)
from offline_cache import cache_audio_for_offline
from utils import clamp

logger = logging.getLogger(__name__)


class PlaybackController(QtCore.QObject):
    sessionChanged = QtCore.Signal(object)
    phaseChanged = QtCore.Signal(object)
    stationChanged = QtCore.Signal(object)
    trackChanged = QtCore.Signal(object)
    tracksChanged = QtCore.Signal(int, object)
    errorOccurred = QtCore.Signal(str)
    trackListRequested = QtCore.Signal(int)
    historyRecorded = QtCore.Signal(object)
    saveToggleRequested = QtCore.Signal(object)
    analyserChanged = QtCore.Signal(object)
    videoActiveChanged = QtCore.Signal(bool)

    def __init__(
        self,
        audio_element=None,
        video_element=None,
        graph: Optional[SignalGraph] = None,
        hls_factory: Optional[Callable[..., HlsEngine]] = None,
        hls_supported: Optional[Callable[[], bool]] = None,
        cache_notifier: Optional[Callable[[str], None]] = None,
        parent=None,
    ):
        super().__init__(parent)
        self.audio = audio_element if audio_element is not None else AudioElement(parent=self)
        self.video = video_element if video_element is not None else VideoElement(parent=self)
        self.graph = graph if graph is not None else SignalGraph()
        self._hls_factory = hls_factory or HlsEngine
        self._hls_supported = hls_supported or HlsEngine.is_supported
        self._cache_notifier = cache_notifier or cache_audio_for_offline

        self.session = PlaybackSession()
        self._stations: List[Station] = []
        self._tracks: Dict[int, List[Track]] = {}
        self._active_element = None
        self._hls: Optional[HlsEngine] = None
        self._play_request: Optional[PlayRequest] = None
        self._previous_track_index: Optional[int] = None
        self._analyser = None

        for element in (self.audio, self.video):
            element.ended.connect(partial(self._on_element_ended, element))
            element.errorOccurred.connect(partial(self._on_element_error, element))

    # -----------------------------
    # Read-only views
    # -----------------------------

    @property
    def stations(self) -> List[Station]:
        return list(self._stations)

    @property
    def active_element(self):
        return self._active_element

    @property
    def hls(self) -> Optional[HlsEngine]:
        return self._hls

    @property
    def analyser(self):
        return self._analyser

    def tracks_for(self, station_id: int) -> List[Track]:
        return list(self._tracks.get(station_id) or [])

    def current_tracks(self) -> List[Track]:
        station = self.session.current_station
        if station is None or station.type != "user":
            return []
        return self.tracks_for(station.id)

    def current_track(self) -> Optional[Track]:
        tracks = self.current_tracks()
        index = self.session.current_track_index
        if 0 <= index < len(tracks):
            return tracks[index]
        return None

    def ordered_stations(self) -> List[Station]:
        """Active stations in display order: externals first, then by sort order."""
        active = [s for s in self._stations if s.is_active]
        return sorted(active, key=lambda s: (0 if s.type == "external" else 1, s.sort_order))

    def preset_station(self, number: int) -> Optional[Station]:
        for station in self._stations:
            if station.type == "external" and station.is_active and station.preset_number == number:
                return station
        return None

    # -----------------------------
    # Data arrival
    # -----------------------------

    def set_stations(self, stations: List[Station], preferred: Optional[tuple] = None) -> None:
        """
        Replace the station list. With nothing selected yet, select preferred
        (a station_key) when present, else the preset-1 station.
        """
        self._stations = list(stations)
        current = self.session.current_station
        if current is None:
            self._auto_select(preferred)
            return
        key = station_key(current)
        for station in self._stations:
            if station_key(station) == key:
                if station != current:
                    self.session.current_station = station
                    self.stationChanged.emit(station)
                break
        self._emit_session()

    def set_tracks(self, station_id: int, tracks: List[Track]) -> None:
        tracks = list(tracks)
        previous = self._tracks.get(station_id) or []
        self._tracks[station_id] = tracks
        self.tracksChanged.emit(station_id, list(tracks))

        session = self.session
        current = session.current_station
        is_current = current is not None and current.type == "user" and current.id == station_id
        if not is_current:
            return
        if session.pending_autoplay_station_id == station_id:
            if not tracks:
                logger.debug("Playlist station %s has no tracks yet", station_id)
                self._set_phase(PlaybackPhase.PAUSED)
                return
            session.pending_autoplay_station_id = None
            logger.debug("Tracks arrived for pending station %s, autoplaying", station_id)
            if session.is_powered_on:
                self._play_track(0)
            else:
                self._emit_session()
            return

        loaded = self._previous_track_index
        loaded_track = previous[loaded] if loaded is not None and 0 <= loaded < len(previous) else None
        if loaded_track is not None:
            index = next((i for i, t in enumerate(tracks) if t.id == loaded_track.id), None)
            if index is not None:
                # Same track, possibly moved; keep it playing under its new position.
                session.current_track_index = index
                self._previous_track_index = index
                self._emit_session()
                return
            logger.debug("Loaded track %s left the playlist", loaded_track.id)
            session.current_track_index = 0
            if tracks and (session.is_playing or session.is_loading):
                self._play_track(0)
            else:
                self._emit_session()
            return
        if session.current_track_index >= len(tracks):
            session.current_track_index = 0
            self._emit_session()

    def _auto_select(self, preferred: Optional[tuple] = None) -> None:
        active = [s for s in self._stations if s.is_active]
        if not active:
            return
        station = next((s for s in active if station_key(s) == preferred), None)
        if station is None:
            station = self.preset_station(1) or active[0]
        logger.debug("Auto-selecting station %s", station.name)
        self._enter_station(station, autoplay=self.session.is_powered_on)

    # -----------------------------
    # Selection
    # -----------------------------

    def select_station(self, station: Station) -> None:
        if not self.session.is_powered_on:
            return
        self._enter_station(station, autoplay=True)

    def select_preset(self, number: int) -> None:
        if not self.session.is_powered_on:
            return
        station = self.preset_station(number)
        if station is not None:
            self.select_station(station)

    def select_history_entry(self, entry: HistoryEntry) -> None:
        if entry.user_station_id is not None:
            key = ("user", entry.user_station_id)
        elif entry.station_id is not None:
            key = ("external", entry.station_id)
        else:
            return
        for station in self._stations:
            if station_key(station) == key:
                self.select_station(station)
                return
        logger.debug("History entry refers to a station that no longer exists: %s", key)

    def next_station(self) -> None:
        self._step_station(1)

    def previous_station(self) -> None:
        self._step_station(-1)

    def _step_station(self, step: int) -> None:
        if not self.session.is_powered_on:
            return
        ordered = self.ordered_stations()
        if not ordered:
            return
        was_playing = self.session.is_playing
        current = self.session.current_station
        keys = [station_key(s) for s in ordered]
        if current is None or station_key(current) not in keys:
            target = ordered[0] if step > 0 else ordered[-1]
        else:
            index = keys.index(station_key(current))
            target = ordered[(index + step) % len(ordered)]
        self._enter_station(target, autoplay=was_playing)

    def select_track(self, index: int) -> None:
        if not self.session.is_powered_on:
            return
        tracks = self.current_tracks()
        if not 0 <= index < len(tracks):
            return
        self.session.current_track_index = index
        if not self._react_to_track_index():
            self._play_track(index)

    def _enter_station(self, station: Station, *, autoplay: bool) -> None:
        session = self.session
        self._play_request = None
        self._set_phase(PlaybackPhase.SELECTING)
        session.current_station = station
        session.current_track_index = 0
        session.pending_autoplay_station_id = None
        self._previous_track_index = None
        self.stationChanged.emit(station)
        self.trackChanged.emit(None)

        if station.type == "user":
            logger.debug("Entering playlist station %s (autoplay=%s)", station.id, autoplay)
            self._stop_all()
            if autoplay:
                if self._tracks.get(station.id):
                    self._play_track(0)
                else:
                    session.pending_autoplay_station_id = station.id
                    self._emit_session()
            else:
                self._set_phase(PlaybackPhase.PAUSED)
            self.trackListRequested.emit(station.id)
            return

        if autoplay:
            self._play_external(station)
        else:
            self._stop_all()
            self._set_phase(PlaybackPhase.PAUSED)

    # -----------------------------
    # Transport
    # -----------------------------

    def play(self) -> None:
        session = self.session
        station = session.current_station
        if not session.is_powered_on or station is None:
            return
        if session.is_playing or session.is_loading:
            return
        if station.type == "user":
            if not self._tracks.get(station.id):
                session.pending_autoplay_station_id = station.id
                self._emit_session()
                return
            self._play_track(session.current_track_index)
        else:
            self._play_external(station, resume=True)

    def pause(self) -> None:
        self._play_request = None
        self.session.pending_autoplay_station_id = None
        if self._active_element is not None:
            self._active_element.pause()
        if self.session.current_station is not None:
            self._set_phase(PlaybackPhase.PAUSED)
        else:
            self._emit_session()

    def toggle_play(self) -> None:
        if self.session.is_playing or self.session.is_loading:
            self.pause()
        else:
            self.play()

    def toggle_power(self) -> None:
        powered = not self.session.is_powered_on
        self.session.is_powered_on = powered
        logger.debug("Power %s", "on" if powered else "off")
        if not powered:
            self.pause()
        else:
            self._emit_session()

    def set_volume(self, volume: float) -> None:
        volume = clamp(float(volume), 0.0, 1.0)
        self.session.volume = volume
        if self._active_element is not None:
            self._active_element.volume = volume
        self._emit_session()

    def set_eq(self, settings: EqSettings) -> None:
        self.session.eq = settings
        self.graph.update_eq(settings)
        self._emit_session()

    def toggle_save(self, station: Station) -> None:
        self.saveToggleRequested.emit(station)

    def shutdown(self) -> None:
        self._play_request = None
        self._stop_all()
        self.graph.close()
        self._active_element = None
        self._set_analyser(None)
        logger.debug("Playback controller shut down")

    # -----------------------------
    # Branches
    # -----------------------------

    def _play_external(self, station, resume: bool = False) -> None:
        if station.video_stream_url:
            self._play_video(station, station.video_stream_url, resume)
        else:
            self._play_live_audio(station)

    def _play_live_audio(self, station) -> None:
        logger.debug("Live audio branch: %s", station.stream_url)
        self._set_phase(PlaybackPhase.LOADING_LIVE_AUDIO)
        self._engage(self.audio)
        self.audio.set_buffer_preset("live")
        if self.audio.src != station.stream_url:
            self.audio.src = station.stream_url
        self._start(self.audio, station, None)

    def _play_video(self, station, url: str, resume: bool = False) -> None:
        self._set_phase(PlaybackPhase.LOADING_LIVE_VIDEO)
        hls = self._hls
        resuming = (
            resume
            and hls is not None
            and hls.url == url
            and self._active_element is self.video
            and self.video.media_source is not None
        )
        self._engage(self.video)
        if resuming:
            logger.debug("Resuming HLS video: %s", url)
            self._start(self.video, station, None)
            return

        self._destroy_hls()
        if is_hls_url(url) and not self.video.can_play_type(HLS_MIME_TYPES[0]):
            if not self._hls_supported():
                self._fail("HLS streams are not supported on this system")
                return
            logger.debug("Software HLS branch: %s", url)
            hls = self._hls_factory(low_latency=True, enable_worker=True)
            self._hls = hls
            hls.manifestParsed.connect(partial(self._on_manifest_parsed, hls, station))
            hls.errorOccurred.connect(partial(self._on_hls_error, hls))
            self.video.set_buffer_preset("live")
            hls.load_source(url)
            # A synchronous load failure has already torn the engine down.
            if hls is self._hls:
                hls.attach_media(self.video)
            return

        logger.debug("Direct video branch: %s", url)
        self.video.set_buffer_preset("live")
        if self.video.src != url:
            self.video.src = url
        self._start(self.video, station, None)

    def _play_track(self, index: int) -> None:
        station = self.session.current_station
        if station is None or station.type != "user":
            return
        tracks = self._tracks.get(station.id) or []
        if not tracks:
            return
        if not 0 <= index < len(tracks):
            index = 0
        track = tracks[index]
        self.session.current_track_index = index
        self._previous_track_index = index
        element = self.video if track.is_video else self.audio
        logger.debug("Playlist track %d/%d: %s", index + 1, len(tracks), track.title)

        self._set_phase(PlaybackPhase.LOADING_PLAYLIST_TRACK)
        self.trackChanged.emit(track)
        self._engage(element)
        element.set_buffer_preset("on_demand")
        if element.src != track.media_url:
            element.src = track.media_url
        self._cache_notifier(track.media_url)
        self._start(element, station, track)

    def _react_to_track_index(self) -> bool:
        index = self.session.current_track_index
        previous = self._previous_track_index
        if previous is None or index == previous:
            return False
        if not (self.session.is_playing or self.session.is_loading):
            return False
        self._play_track(index)
        return True

    # -----------------------------
    # Element plumbing
    # -----------------------------

    def _engage(self, element) -> None:
        other = self.video if element is self.audio else self.audio
        if other is self.video:
            self._destroy_hls()
        other.pause()
        other.src = ""
        element.volume = self.session.volume
        if self._active_element is not element:
            self._active_element = element
            self.videoActiveChanged.emit(element is self.video)
        self.graph.connect(element)
        self._set_analyser(self.graph.analyser)

    def _stop_all(self) -> None:
        self._play_request = None
        self._destroy_hls()
        for element in (self.audio, self.video):
            element.pause()
            element.src = ""

    def _destroy_hls(self) -> None:
        hls = self._hls
        if hls is None:
            return
        self._hls = None
        hls.destroy()

    def _set_analyser(self, analyser) -> None:
        if analyser is self._analyser:
            return
        self._analyser = analyser
        self.analyserChanged.emit(analyser)

    def _start(self, element, station, track: Optional[Track]) -> None:
        self.graph.resume()
        request = element.play()
        self._play_request = request
        request.then(
            partial(self._on_play_resolved, request, station, track),
            partial(self._on_play_rejected, request),
        )

    def _on_play_resolved(self, request: PlayRequest, station, track: Optional[Track]) -> None:
        current = request is self._play_request
        if current:
            self._play_request = None
        # Stale results still flip the phase: last write wins.
        self._set_phase(PlaybackPhase.PLAYING)
        if not current:
            return
        entry = HistoryEntry.for_station(station, track)
        self.historyRecorded.emit(entry)

    def _on_play_rejected(self, request: PlayRequest, reason: str) -> None:
        if request.aborted:
            if request is self._play_request:
                self._play_request = None
            return
        self._fail(reason)

    def _on_manifest_parsed(self, hls, station, url: str) -> None:
        if hls is not self._hls or self.session.phase != PlaybackPhase.LOADING_LIVE_VIDEO:
            return
        logger.debug("HLS manifest ready: %s", url)
        self._start(self.video, station, None)

    def _on_hls_error(self, hls, error) -> None:
        if hls is not self._hls:
            return
        if not error.fatal:
            return
        self._destroy_hls()
        self.video.pause()
        self.video.src = ""
        self._fail(error.details)

    def _on_element_ended(self, element) -> None:
        if element is not self._active_element:
            return
        station = self.session.current_station
        if station is None:
            return
        if station.type != "user":
            self._set_phase(PlaybackPhase.PAUSED)
            return
        tracks = self._tracks.get(station.id) or []
        if not tracks:
            self._set_phase(PlaybackPhase.PAUSED)
            return
        if len(tracks) == 1:
            self._play_track(0)
            return
        self.session.current_track_index = (self.session.current_track_index + 1) % len(tracks)
        if not self._react_to_track_index():
            self._set_phase(PlaybackPhase.PAUSED)

    def _on_element_error(self, element, message: str) -> None:
        if element is not self._active_element:
            return
        if self.session.is_playing or self.session.is_loading:
            self._fail(message)

    # -----------------------------
    # Session
    # -----------------------------

    def _fail(self, message: str) -> None:
        self._play_request = None
        logger.error("Playback error: %s", message)
        self._set_phase(PlaybackPhase.ERROR)
        self.errorOccurred.emit(f"Playback error: {message}")
        self._set_phase(PlaybackPhase.PAUSED)

    def _set_phase(self, phase: PlaybackPhase) -> None:
        if self.session.phase == phase:
            return
        self.session.phase = phase
        self.phaseChanged.emit(phase)
        self._emit_session()

    def _emit_session(self) -> None:
        self.sessionChanged.emit(self.session)
