from models import (
    EqSettings,
    ExternalStation,
    HistoryEntry,
    PlaybackPhase,
    PlaybackSession,
    Track,
    UserStation,
    match_eq_preset,
    station_key,
)


def test_external_station_from_api():
    station = ExternalStation.from_api({
        "id": "4",
        "name": "Lava FM",
        "streamUrl": "http://radio.test/lava.mp3",
        "videoStreamUrl": "",
        "presetNumber": 3,
        "sortOrder": "2",
    })
    assert station.id == 4
    assert station.type == "external"
    assert station.video_stream_url is None
    assert station.preset_number == 3
    assert station.sort_order == 2
    assert station.is_active


def test_preset_outside_slots_is_dropped():
    assert ExternalStation.from_api({"id": 1, "presetNumber": 6}).preset_number is None
    assert ExternalStation.from_api({"id": 1, "presetNumber": 0}).preset_number is None


def test_user_station_and_track_from_api():
    station = UserStation.from_api({"id": 9, "name": "Mix", "isPublic": True, "approvalStatus": "approved"})
    assert station.type == "user"
    assert station.is_public
    track = Track.from_api({"id": 1, "title": "Clip", "mediaUrl": "http://m.test/c.mp4", "mediaType": "video"})
    assert track.is_video
    assert track.duration_sec is None


def test_station_key_separates_tables():
    assert station_key(UserStation(id=1, name="a")) != station_key(ExternalStation(id=1, name="a", stream_url=""))


def test_eq_settings_clamped():
    settings = EqSettings(bass=9, mid=-20, treble="2")
    assert settings.as_tuple() == (6.0, -6.0, 2.0)
    assert match_eq_preset(EqSettings(4, -1, 3)) == "Rock"
    assert match_eq_preset(EqSettings(1, 1, 1)) is None


def test_history_entry_for_stations():
    live = ExternalStation(id=2, name="Lava FM", stream_url="", logo_url="http://img.test/l.png")
    entry = HistoryEntry.for_station(live)
    assert entry.to_api() == {"stationId": 2, "stationName": "Lava FM", "logoUrl": "http://img.test/l.png"}

    playlist = UserStation(id=5, name="Mix")
    track = Track(id=8, title="Intro", media_url="", artist="")
    entry = HistoryEntry.for_station(playlist, track)
    assert entry.station_id is None
    assert entry.user_station_id == 5
    assert entry.track_artist is None
    assert entry.to_api() == {"userStationId": 5, "stationName": "Mix", "trackId": 8, "trackTitle": "Intro"}


def test_session_flags():
    session = PlaybackSession()
    assert session.phase == PlaybackPhase.IDLE
    assert session.is_powered_on
    assert session.volume == 0.7
    session.phase = PlaybackPhase.LOADING_LIVE_VIDEO
    assert session.is_loading and not session.is_playing
    session.phase = PlaybackPhase.PLAYING
    assert session.is_playing and not session.is_loading
