from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, Union

from utils import clamp, safe_float, safe_int

EQ_LIMIT_DB = 6.0


@dataclass(frozen=True)
class BufferPreset:
    blocksize_frames: int
    latency: str | float
    target_sec: float
    high_sec: float
    low_sec: float
    ring_max_seconds: float
    prebuffer_sec: float


@dataclass
class Track:
    id: int
    title: str
    media_url: str
    artist: str = ""
    media_type: str = "audio"
    duration_sec: Optional[float] = None
    sort_order: int = 0

    @property
    def is_video(self) -> bool:
        return self.media_type == "video"

    @classmethod
    def from_api(cls, data: dict) -> "Track":
        duration = data.get("duration")
        return cls(
            id=int(data["id"]),
            title=str(data.get("title") or ""),
            media_url=str(data.get("mediaUrl") or ""),
            artist=str(data.get("artist") or ""),
            media_type=str(data.get("mediaType") or "audio"),
            duration_sec=safe_float(duration) if duration is not None else None,
            sort_order=safe_int(data.get("sortOrder"), 0),
        )


@dataclass
class ExternalStation:
    id: int
    name: str
    stream_url: str
    description: str = ""
    video_stream_url: Optional[str] = None
    logo_url: Optional[str] = None
    genre: Optional[str] = None
    preset_number: Optional[int] = None
    is_active: bool = True
    sort_order: int = 0
    is_saved: bool = False
    type: str = field(default="external", init=False)

    @classmethod
    def from_api(cls, data: dict) -> "ExternalStation":
        preset = safe_int(data.get("presetNumber"))
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            stream_url=str(data.get("streamUrl") or ""),
            description=str(data.get("description") or ""),
            video_stream_url=data.get("videoStreamUrl") or None,
            logo_url=data.get("logoUrl") or None,
            genre=data.get("genre") or None,
            preset_number=preset if preset is not None and 1 <= preset <= 5 else None,
            is_active=bool(data.get("isActive", True)),
            sort_order=safe_int(data.get("sortOrder"), 0),
        )


@dataclass
class UserStation:
    id: int
    name: str
    description: str = ""
    logo_url: Optional[str] = None
    genre: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0
    is_public: bool = False
    approval_status: str = "pending"
    is_saved: bool = False
    type: str = field(default="user", init=False)

    @classmethod
    def from_api(cls, data: dict) -> "UserStation":
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            logo_url=data.get("logoUrl") or None,
            genre=data.get("genre") or None,
            is_active=bool(data.get("isActive", True)),
            sort_order=safe_int(data.get("sortOrder"), 0),
            is_public=bool(data.get("isPublic", False)),
            approval_status=str(data.get("approvalStatus") or "pending"),
        )


Station = Union[ExternalStation, UserStation]


def station_key(station: Station) -> tuple[str, int]:
    # External and playlist stations live in separate tables, ids may collide.
    return station.type, station.id


@dataclass(frozen=True)
class EqSettings:
    bass: float = 0.0
    mid: float = 0.0
    treble: float = 0.0

    def __post_init__(self):
        for name in ("bass", "mid", "treble"):
            value = clamp(safe_float(getattr(self, name)), -EQ_LIMIT_DB, EQ_LIMIT_DB)
            object.__setattr__(self, name, value)

    def as_tuple(self) -> tuple[float, float, float]:
        return self.bass, self.mid, self.treble


EQ_PRESETS = {
    "Flat": EqSettings(0, 0, 0),
    "Rock": EqSettings(4, -1, 3),
    "Jazz": EqSettings(2, 3, 2),
    "Pop": EqSettings(1, 2, 4),
    "Metal": EqSettings(5, 0, 4),
    "Country": EqSettings(2, 4, 3),
    "Classical": EqSettings(0, 2, 1),
}


def match_eq_preset(settings: EqSettings) -> Optional[str]:
    for name, preset in EQ_PRESETS.items():
        if preset == settings:
            return name
    return None


@dataclass
class HistoryEntry:
    """
    Denormalized snapshot of one successful playback start.

    Exactly one of station_id / user_station_id is set. played_at and id are
    assigned by the server and only present on rows read back.
    """

    station_name: str
    station_id: Optional[int] = None
    user_station_id: Optional[int] = None
    logo_url: Optional[str] = None
    track_id: Optional[int] = None
    track_title: Optional[str] = None
    track_artist: Optional[str] = None
    id: Optional[int] = None
    played_at: Optional[str] = None

    @classmethod
    def for_station(cls, station: Station, track: Optional[Track] = None) -> "HistoryEntry":
        entry = cls(station_name=station.name, logo_url=station.logo_url)
        if station.type == "user":
            entry.user_station_id = station.id
        else:
            entry.station_id = station.id
        if track is not None:
            entry.track_id = track.id
            entry.track_title = track.title
            entry.track_artist = track.artist or None
        return entry

    def to_api(self) -> dict:
        payload = {
            "stationId": self.station_id,
            "userStationId": self.user_station_id,
            "stationName": self.station_name,
            "logoUrl": self.logo_url,
            "trackId": self.track_id,
            "trackTitle": self.track_title,
            "trackArtist": self.track_artist,
        }
        return {key: value for key, value in payload.items() if value is not None}

    @classmethod
    def from_api(cls, data: dict) -> "HistoryEntry":
        return cls(
            station_name=str(data.get("stationName") or ""),
            station_id=safe_int(data.get("stationId")),
            user_station_id=safe_int(data.get("userStationId")),
            logo_url=data.get("logoUrl") or None,
            track_id=safe_int(data.get("trackId")),
            track_title=data.get("trackTitle") or None,
            track_artist=data.get("trackArtist") or None,
            id=safe_int(data.get("id")),
            played_at=data.get("playedAt") or None,
        )


class PlaybackPhase(Enum):
    IDLE = auto()
    SELECTING = auto()
    LOADING_LIVE_AUDIO = auto()
    LOADING_LIVE_VIDEO = auto()
    LOADING_PLAYLIST_TRACK = auto()
    PLAYING = auto()
    PAUSED = auto()
    ERROR = auto()


LOADING_PHASES = frozenset(
    {
        PlaybackPhase.LOADING_LIVE_AUDIO,
        PlaybackPhase.LOADING_LIVE_VIDEO,
        PlaybackPhase.LOADING_PLAYLIST_TRACK,
    }
)


@dataclass
class PlaybackSession:
    phase: PlaybackPhase = PlaybackPhase.IDLE
    current_station: Optional[Station] = None
    current_track_index: int = 0
    is_powered_on: bool = True
    volume: float = 0.7
    eq: EqSettings = field(default_factory=EqSettings)
    pending_autoplay_station_id: Optional[int] = None

    @property
    def is_playing(self) -> bool:
        return self.phase == PlaybackPhase.PLAYING

    @property
    def is_loading(self) -> bool:
        return self.phase in LOADING_PHASES


@dataclass(frozen=True)
class ArtworkImage:
    src: str
    sizes: str
    type: str = "image/png"


@dataclass(frozen=True)
class MediaMetadata:
    title: str
    artist: str
    album: str
    artwork: tuple[ArtworkImage, ...] = ()


@dataclass(frozen=True)
class Theme:
    name: str
    window: str
    base: str
    text: str
    highlight: str
    accent: str
    card: str


THEMES = {
    "Lava": Theme(
        name="Lava",
        window="#1a0f0c",
        base="#120906",
        text="#fbe9dd",
        highlight="#f4661b",
        accent="#f8a145",
        card="#261510",
    ),
    "Magma": Theme(
        name="Magma",
        window="#220c10",
        base="#17070a",
        text="#fde4e4",
        highlight="#e11d48",
        accent="#fb923c",
        card="#321219",
    ),
    "Basalt": Theme(
        name="Basalt",
        window="#18181b",
        base="#0f0f12",
        text="#f4f4f5",
        highlight="#f97316",
        accent="#a1a1aa",
        card="#232328",
    ),
    "Ash": Theme(
        name="Ash",
        window="#f4efe9",
        base="#fffaf5",
        text="#27201b",
        highlight="#ea580c",
        accent="#c2410c",
        card="#ebe1d6",
    ),
}
