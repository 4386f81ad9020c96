"""
Station library client.

Talks to the radio back office over HTTP JSON: station and track lists in,
playback history out, and the member dial (saved stations). All calls are
blocking and meant to run inside a QThread worker.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from http.cookiejar import CookieJar
from typing import Any, Iterable, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import HTTPCookieProcessor, Request, build_opener

from config import API_BASE_URL, HISTORY_LIMIT, REQUEST_TIMEOUT_SEC, USER_AGENT
from models import ExternalStation, HistoryEntry, Station, Track, UserStation
from utils import safe_int

logger = logging.getLogger(__name__)

NOT_LOGGED_IN_MESSAGE = "Please log in to save stations"


class ApiError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def not_logged_in(self) -> bool:
        return self.status == 401


@dataclass
class DialEntry:
    id: int
    station_id: Optional[int] = None
    user_station_id: Optional[int] = None

    @classmethod
    def from_api(cls, data: dict) -> "DialEntry":
        return cls(
            id=int(data["id"]),
            station_id=safe_int(data.get("stationId")),
            user_station_id=safe_int(data.get("userStationId")),
        )


def find_dial_entry(station: Station, dial: Iterable[DialEntry]) -> Optional[DialEntry]:
    for entry in dial:
        if station.type == "external" and entry.station_id == station.id:
            return entry
        if station.type == "user" and entry.user_station_id == station.id:
            return entry
    return None


def build_station_list(
    external: Iterable[ExternalStation],
    user: Iterable[UserStation],
    public: Iterable[UserStation],
    dial: Iterable[DialEntry] = (),
) -> List[Station]:
    """
    Compose the list shown to the listener.

    Active external stations come first, then the member's active playlist
    stations and active, approved public ones, de-duplicated by id. Each
    station's is_saved flag is projected from the dial.
    """
    dial = list(dial)
    saved_external = {d.station_id for d in dial if d.station_id is not None}
    saved_user = {d.user_station_id for d in dial if d.user_station_id is not None}

    stations: List[Station] = []
    for station in external:
        if not station.is_active:
            continue
        station.is_saved = station.id in saved_external
        stations.append(station)

    candidates = [s for s in user if s.is_active]
    candidates += [
        s for s in public
        if s.is_active and s.is_public and s.approval_status == "approved"
    ]
    seen = set()
    for station in candidates:
        if station.id in seen:
            continue
        seen.add(station.id)
        station.is_saved = station.id in saved_user
        stations.append(station)
    return stations


class RadioApiClient:
    def __init__(self, base_url: str = API_BASE_URL, timeout: float = REQUEST_TIMEOUT_SEC, opener=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._opener = opener or build_opener(HTTPCookieProcessor(CookieJar()))

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        """
        Perform one JSON request.

        Args:
            method: HTTP verb.
            path: Path below the base URL, starting with "/".
            payload: Optional JSON body.

        Returns:
            The decoded JSON body, or None for an empty response.

        Raises:
            ApiError: On HTTP errors, network failures or invalid JSON.
        """
        url = f"{self.base_url}{path}"
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = Request(url, data=data, headers=headers, method=method)
        try:
            with self._opener.open(req, timeout=self.timeout) as response:
                body = response.read()
        except HTTPError as exc:
            message = _error_message(exc) or f"HTTP {exc.code}"
            raise ApiError(f"{method} {path} failed: {message}", status=exc.code) from exc
        except (URLError, OSError) as exc:
            raise ApiError(f"{method} {path} failed: {exc}") from exc
        if not body:
            return None
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ApiError(f"{method} {path} returned invalid JSON") from exc

    def absolute_url(self, url: Optional[str]) -> Optional[str]:
        """Uploaded media is stored as a path on the back office origin."""
        if not url:
            return url
        return urljoin(self.base_url + "/", url)

    def _with_absolute_urls(self, item):
        for name in ("stream_url", "video_stream_url", "logo_url", "media_url"):
            if hasattr(item, name):
                setattr(item, name, self.absolute_url(getattr(item, name)))
        return item

    def _get_list(self, path: str) -> list:
        data = self._request("GET", path)
        if not isinstance(data, list):
            raise ApiError(f"GET {path} returned unexpected payload")
        return data

    # -------------------------------------------------------------------------
    # Stations and tracks
    # -------------------------------------------------------------------------

    def fetch_external_stations(self) -> List[ExternalStation]:
        items = self._get_list("/api/stations")
        return [self._with_absolute_urls(ExternalStation.from_api(item)) for item in items]

    def fetch_user_stations(self) -> List[UserStation]:
        items = self._get_list("/api/user-stations")
        return [self._with_absolute_urls(UserStation.from_api(item)) for item in items]

    def fetch_public_user_stations(self) -> List[UserStation]:
        items = self._get_list("/api/public/user-stations")
        return [self._with_absolute_urls(UserStation.from_api(item)) for item in items]

    def fetch_tracks(self, user_station_id: int) -> List[Track]:
        items = self._get_list(f"/api/user-stations/{int(user_station_id)}/tracks")
        tracks = [self._with_absolute_urls(Track.from_api(item)) for item in items]
        tracks.sort(key=lambda t: t.sort_order)
        return tracks

    def fetch_station_list(self) -> List[Station]:
        external = self.fetch_external_stations()
        try:
            user = self.fetch_user_stations()
        except ApiError as exc:
            if not exc.not_logged_in:
                raise
            user = []
        public = self.fetch_public_user_stations()
        try:
            dial = self.fetch_dial()
        except ApiError as exc:
            if not exc.not_logged_in:
                raise
            dial = []
        stations = build_station_list(external, user, public, dial)
        logger.debug("Fetched %d stations", len(stations))
        return stations

    # -------------------------------------------------------------------------
    # Member and dial
    # -------------------------------------------------------------------------

    def fetch_member(self) -> Optional[dict]:
        try:
            data = self._request("GET", "/api/members/me")
        except ApiError as exc:
            if exc.not_logged_in:
                return None
            raise
        return data or None

    def fetch_dial(self) -> List[DialEntry]:
        return [DialEntry.from_api(item) for item in self._get_list("/api/members/dial")]

    def add_to_dial(self, station: Station) -> None:
        if station.type == "external":
            payload = {"stationId": station.id}
        else:
            payload = {"userStationId": station.id}
        self._request("POST", "/api/members/dial", payload)

    def remove_from_dial(self, dial_id: int) -> None:
        self._request("DELETE", f"/api/members/dial/{int(dial_id)}")

    def toggle_saved(self, station: Station) -> str:
        """Save or unsave a station on the member dial. Returns a status message."""
        if self.fetch_member() is None:
            raise ApiError(NOT_LOGGED_IN_MESSAGE, status=401)
        if station.is_saved:
            entry = find_dial_entry(station, self.fetch_dial())
            if entry is None:
                return "Station is not on your dial"
            self.remove_from_dial(entry.id)
            return "Removed from your dial"
        self.add_to_dial(station)
        return "Added to your dial"

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def add_history(self, entry: HistoryEntry) -> None:
        self._request("POST", "/api/history", entry.to_api())

    def fetch_history(self, limit: int = HISTORY_LIMIT) -> List[HistoryEntry]:
        items = self._get_list(f"/api/history?limit={int(limit)}")
        return [self._with_absolute_urls(HistoryEntry.from_api(item)) for item in items]

    def clear_history(self) -> None:
        self._request("DELETE", "/api/history")


def _error_message(exc: HTTPError) -> str:
    try:
        body = exc.read()
    except (OSError, AttributeError):
        return ""
    if not body:
        return ""
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return ""
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or "")
    return ""
