"""
Pydantic Models for Artists, Shows, Venues and Track Catalogs

Externally sourced records (catalog API, ticketing API, store rows) arrive
with optional and inconsistently named fields. They are normalized into the
strict models below at the boundary, so the synchronizer and the voting engine
only ever see these types.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import InvalidInput

logger = structlog.get_logger(__name__)


class EntityKind(str, Enum):
    """Entity kinds handled by the synchronizer"""
    ARTIST = "artist"
    SHOW = "show"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime.

    Unparseable values become None instead of raising.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Discarding unparseable timestamp", value=str(value))
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================================
# TRACKS
# ============================================================================

class Track(BaseModel):
    """A catalog track. Identity is the id; everything else is opaque metadata."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(min_length=1)
    name: str = ""
    duration_ms: Optional[int] = None
    popularity: int = 0
    album: Optional[str] = None
    preview_url: Optional[str] = None
    uri: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_catalog_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "name" not in data and "title" in data:
            data["name"] = data.pop("title")
        album = data.get("album")
        if isinstance(album, dict):
            data["album"] = album.get("name")
        if data.get("popularity") is None:
            data["popularity"] = 0
        return data


class TrackCatalog(BaseModel):
    """A complete track catalog snapshot fetched in one operation"""
    tracks: List[Track] = Field(default_factory=list)

    @field_validator("tracks")
    @classmethod
    def _unique_ids(cls, tracks: List[Track]) -> List[Track]:
        seen = set()
        unique = []
        for track in tracks:
            if track.id in seen:
                continue
            seen.add(track.id)
            unique.append(track)
        return unique

    def __len__(self) -> int:
        return len(self.tracks)

    @property
    def is_empty(self) -> bool:
        return not self.tracks


# ============================================================================
# ARTISTS / VENUES / SHOWS
# ============================================================================

class Artist(BaseModel):
    """Persisted artist record"""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    image_url: Optional[str] = None
    genres: List[str] = Field(default_factory=list)
    popularity: int = 0
    upcoming_shows: int = 0
    spotify_id: Optional[str] = None
    stored_tracks: Optional[List[Track]] = None
    tracks_last_updated: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("genres", mode="before")
    @classmethod
    def _genre_set(cls, value: Any) -> List[str]:
        if not isinstance(value, (list, tuple, set)):
            return []
        genres: List[str] = []
        for genre in value:
            if genre and genre not in genres:
                genres.append(str(genre))
        return genres

    @field_validator("popularity", "upcoming_shows", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> int:
        try:
            return max(int(value or 0), 0)
        except (TypeError, ValueError):
            return 0

    @field_validator("updated_at", "tracks_last_updated", mode="before")
    @classmethod
    def _timestamps(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @property
    def has_stored_tracks(self) -> bool:
        return bool(self.stored_tracks)


class Venue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    city: Optional[str] = None
    state: Optional[str] = None


class Show(BaseModel):
    """Persisted show record. Artist and venue are foreign ids."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    artist_id: Optional[str] = None
    venue_id: Optional[str] = None
    date: Optional[datetime] = None
    image_url: Optional[str] = None
    ticket_url: Optional[str] = None
    genre_ids: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    @field_validator("date", "updated_at", mode="before")
    @classmethod
    def _timestamps(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("genre_ids", mode="before")
    @classmethod
    def _genre_ids(cls, value: Any) -> List[str]:
        if not isinstance(value, (list, tuple, set)):
            return []
        return [str(v) for v in value if v]


class ShowDetail(Show):
    """Show read model with its artist and venue resolved by the store"""
    artist: Optional[Artist] = None
    venue: Optional[Venue] = None


# ============================================================================
# SETLIST
# ============================================================================

class SetlistEntry(BaseModel):
    """A proposed song plus its accumulated votes within one show's session"""
    song: Track
    votes: int = Field(default=0, ge=0)
    position: int = Field(ge=0)

    @property
    def id(self) -> str:
        return self.song.id


# ============================================================================
# BOUNDARY NORMALIZATION
# ============================================================================

@contextmanager
def _malformed(kind: str, raw: Dict[str, Any]) -> Iterator[None]:
    try:
        yield
    except ValidationError as e:
        raise InvalidInput(f"malformed {kind} record {raw.get('id')}: {e.error_count()} invalid field(s)") from e
    except (AttributeError, TypeError) as e:
        raise InvalidInput(f"malformed {kind} record {raw.get('id')}: {e}") from e


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _first_image(raw: Dict[str, Any]) -> Optional[str]:
    image = _first(raw, "image_url", "imageUrl", "image")
    if image:
        return image
    images = raw.get("images")
    if isinstance(images, list) and images:
        first = images[0]
        return first.get("url") if isinstance(first, dict) else str(first)
    return None


def normalize_artist_record(raw: Dict[str, Any]) -> Artist:
    """Normalize an artist record from the ticketing or catalog source.

    Raises:
        InvalidInput: the record has no id or a field is malformed
    """
    if not raw or not raw.get("id"):
        raise InvalidInput("artist record without an id")

    with _malformed("artist", raw):
        return _build_artist(raw)


def _build_artist(raw: Dict[str, Any]) -> Artist:
    stored_tracks = raw.get("stored_tracks")
    return Artist(
        id=str(raw["id"]),
        name=raw.get("name") or "",
        image_url=_first_image(raw),
        genres=raw.get("genres") or [],
        popularity=raw.get("popularity"),
        upcoming_shows=_first(raw, "upcomingShows", "upcoming_shows"),
        spotify_id=_first(raw, "spotify_id", "spotifyId"),
        stored_tracks=stored_tracks or None,
        tracks_last_updated=raw.get("tracks_last_updated"),
        updated_at=raw.get("updated_at"),
    )


def normalize_venue_record(raw: Dict[str, Any]) -> Venue:
    """Normalize a venue; accepts flat records and Ticketmaster-style nesting."""
    if not raw or not raw.get("id"):
        raise InvalidInput("venue record without an id")

    with _malformed("venue", raw):
        return _build_venue(raw)


def _build_venue(raw: Dict[str, Any]) -> Venue:
    city = raw.get("city")
    if isinstance(city, dict):
        city = city.get("name")
    state = raw.get("state")
    if isinstance(state, dict):
        state = state.get("stateCode") or state.get("name")

    return Venue(id=str(raw["id"]), name=raw.get("name") or "", city=city, state=state)


def _embedded_id(raw: Dict[str, Any], key: str) -> Optional[str]:
    embedded = raw.get("_embedded") or {}
    items = embedded.get(key)
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0].get("id")
    return None


def _show_date(raw: Dict[str, Any]) -> Any:
    if raw.get("date"):
        return raw["date"]
    start = (raw.get("dates") or {}).get("start") or {}
    return start.get("dateTime") or start.get("localDate")


def _genre_ids(raw: Dict[str, Any]) -> List[str]:
    genre_ids = raw.get("genre_ids")
    if isinstance(genre_ids, list):
        return genre_ids
    ids = []
    for classification in raw.get("classifications") or []:
        genre = (classification or {}).get("genre") or {}
        if genre.get("id") and genre["id"] not in ids:
            ids.append(genre["id"])
    return ids


def normalize_show_record(raw: Dict[str, Any]) -> Show:
    """Normalize a raw ticketing record into a Show.

    Raises:
        InvalidInput: the record has no id (a show is never invented),
            or a field is malformed
    """
    if not raw or not raw.get("id"):
        raise InvalidInput("show record without an id")

    with _malformed("show", raw):
        return _build_show(raw)


def _build_show(raw: Dict[str, Any]) -> Show:
    artist = raw.get("artist") if isinstance(raw.get("artist"), dict) else {}
    venue = raw.get("venue") if isinstance(raw.get("venue"), dict) else {}

    return Show(
        id=str(raw["id"]),
        name=raw.get("name") or "",
        artist_id=raw.get("artist_id") or artist.get("id") or _embedded_id(raw, "attractions"),
        venue_id=raw.get("venue_id") or venue.get("id") or _embedded_id(raw, "venues"),
        date=_show_date(raw),
        image_url=_first_image(raw),
        ticket_url=_first(raw, "ticket_url", "ticketUrl", "url"),
        genre_ids=_genre_ids(raw),
        updated_at=raw.get("updated_at"),
    )
