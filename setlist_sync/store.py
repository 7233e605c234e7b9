"""
Entity Store Adapter
====================

Logical read/write access to persisted Artist, Show and Venue records:
point lookup, upsert (insert-or-update keyed by id), insert-only, and the
atomic track-snapshot update. Writes raise PermissionDenied when the store
rejects them for lack of privileges and StoreError for anything else, so the
synchronizer can pick its fallback.

PostgresEntityStore runs raw SQL through an SQLAlchemy async session factory
(asyncpg driver).
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Type, Union

import structlog
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import PermissionDenied, StoreError
from .models import Artist, EntityKind, Show, ShowDetail, Track, Venue

logger = structlog.get_logger(__name__)

Record = Union[Artist, Show, Venue]

VENUE = "venue"


class EntityStore(ABC):
    """Port for the persistent store. The only writer of entity records."""

    @abstractmethod
    async def get_artist(self, artist_id: str) -> Optional[Artist]:
        ...

    @abstractmethod
    async def get_show(self, show_id: str) -> Optional[Show]:
        ...

    @abstractmethod
    async def get_venue(self, venue_id: str) -> Optional[Venue]:
        ...

    @abstractmethod
    async def get_show_detail(self, show_id: str) -> Optional[ShowDetail]:
        """Show with its artist and venue resolved."""
        ...

    @abstractmethod
    async def get_stored_tracks(self, artist_id: str) -> List[Track]:
        ...

    @abstractmethod
    async def upsert(self, kind: str, record: Record) -> Optional[Record]:
        """Insert-or-update; returns the persisted row when the store sends one back."""
        ...

    @abstractmethod
    async def insert(self, kind: str, record: Record) -> Optional[Record]:
        """Insert only; never updates an existing row."""
        ...

    @abstractmethod
    async def update_artist_tracks(
        self,
        artist_id: str,
        tracks: List[Track],
        updated_at: datetime
    ) -> None:
        """Write a complete track snapshot plus its timestamps in one statement."""
        ...


# ============================================================================
# POSTGRES
# ============================================================================

# table, columns, jsonb columns, model
_TABLES: Dict[str, Tuple[str, Tuple[str, ...], Tuple[str, ...], Type[BaseModel]]] = {
    EntityKind.ARTIST.value: (
        "artists",
        ("id", "name", "image_url", "genres", "popularity", "upcoming_shows",
         "spotify_id", "stored_tracks", "tracks_last_updated", "updated_at"),
        ("genres", "stored_tracks"),
        Artist,
    ),
    EntityKind.SHOW.value: (
        "shows",
        ("id", "name", "artist_id", "venue_id", "date", "image_url",
         "ticket_url", "genre_ids", "updated_at"),
        ("genre_ids",),
        Show,
    ),
    VENUE: (
        "venues",
        ("id", "name", "city", "state"),
        (),
        Venue,
    ),
}

# Columns an upsert never clears once set; the snapshot is only replaced as a whole
_PRESERVE_ON_CONFLICT = ("stored_tracks", "tracks_last_updated")


def _kind_key(kind: Union[str, EntityKind]) -> str:
    return kind.value if isinstance(kind, EntityKind) else str(kind)


def _table_for(kind: Union[str, EntityKind]):
    try:
        return _TABLES[_kind_key(kind)]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {kind}")


def _values(columns: Tuple[str, ...], json_columns: Tuple[str, ...]) -> str:
    return ", ".join(
        f"CAST(:{c} AS jsonb)" if c in json_columns else f":{c}" for c in columns
    )


def build_upsert_sql(kind: Union[str, EntityKind]) -> str:
    table, columns, json_columns, _ = _table_for(kind)
    updates = []
    for column in columns[1:]:
        if column in _PRESERVE_ON_CONFLICT:
            updates.append(f"{column} = COALESCE(EXCLUDED.{column}, {table}.{column})")
        else:
            updates.append(f"{column} = EXCLUDED.{column}")
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({_values(columns, json_columns)}) "
        f"ON CONFLICT (id) DO UPDATE SET {', '.join(updates)} "
        f"RETURNING *"
    )


def build_insert_sql(kind: Union[str, EntityKind]) -> str:
    table, columns, json_columns, _ = _table_for(kind)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({_values(columns, json_columns)}) "
        f"RETURNING *"
    )


def record_params(kind: Union[str, EntityKind], record: BaseModel) -> Dict[str, Any]:
    """Bind parameters for a record; jsonb columns are sent as JSON text."""
    _, columns, json_columns, _ = _table_for(kind)
    native = record.model_dump()
    as_json = record.model_dump(mode="json")
    params = {}
    for column in columns:
        if column in json_columns:
            value = as_json.get(column)
            params[column] = json.dumps(value) if value is not None else None
        else:
            params[column] = native.get(column)
    return params


def _decode_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def row_to_record(kind: Union[str, EntityKind], row: Optional[Dict[str, Any]]) -> Optional[Record]:
    if row is None:
        return None
    _, _, json_columns, model = _table_for(kind)
    data = dict(row)
    for column in json_columns:
        if column in data:
            data[column] = _decode_json(data[column])
    return model.model_validate(data)


def is_permission_error(error: BaseException) -> bool:
    """Postgres insufficient_privilege (42501) or a 'permission denied' message."""
    candidates = [error, getattr(error, "orig", None), getattr(error, "__cause__", None)]
    for candidate in candidates:
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code == PermissionDenied.CODE:
            return True
    return "permission denied" in str(error).lower()


def translate_error(error: Exception) -> StoreError:
    if is_permission_error(error):
        return PermissionDenied(str(error))
    code = getattr(getattr(error, "orig", None), "sqlstate", None)
    return StoreError(str(error), code=code)


class PostgresEntityStore(EntityStore):
    """EntityStore over PostgreSQL using an SQLAlchemy async session factory"""

    def __init__(self, db_session_factory: async_sessionmaker):
        self.db_session_factory = db_session_factory

    async def _fetch_one(self, sql: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            async with self.db_session_factory() as session:
                result = await session.execute(text(sql), params)
                row = result.mappings().first()
                return dict(row) if row is not None else None
        except (DBAPIError, SQLAlchemyError) as e:
            raise translate_error(e) from e

    async def _write(self, sql: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            async with self.db_session_factory() as session:
                result = await session.execute(text(sql), params)
                row = result.mappings().first() if result.returns_rows else None
                await session.commit()
                return dict(row) if row is not None else None
        except (DBAPIError, SQLAlchemyError) as e:
            raise translate_error(e) from e

    async def get_artist(self, artist_id: str) -> Optional[Artist]:
        row = await self._fetch_one("SELECT * FROM artists WHERE id = :id", {"id": artist_id})
        return row_to_record(EntityKind.ARTIST, row)

    async def get_show(self, show_id: str) -> Optional[Show]:
        row = await self._fetch_one("SELECT * FROM shows WHERE id = :id", {"id": show_id})
        return row_to_record(EntityKind.SHOW, row)

    async def get_venue(self, venue_id: str) -> Optional[Venue]:
        row = await self._fetch_one("SELECT * FROM venues WHERE id = :id", {"id": venue_id})
        return row_to_record(VENUE, row)

    async def get_show_detail(self, show_id: str) -> Optional[ShowDetail]:
        row = await self._fetch_one(
            """
            SELECT s.*, to_jsonb(a) AS artist, to_jsonb(v) AS venue
            FROM shows s
            LEFT JOIN artists a ON a.id = s.artist_id
            LEFT JOIN venues v ON v.id = s.venue_id
            WHERE s.id = :id
            """,
            {"id": show_id}
        )
        if row is None:
            return None

        artist = _decode_json(row.pop("artist", None))
        venue = _decode_json(row.pop("venue", None))
        row["genre_ids"] = _decode_json(row.get("genre_ids"))
        detail = ShowDetail.model_validate(row)
        detail.artist = Artist.model_validate(artist) if artist else None
        detail.venue = Venue.model_validate(venue) if venue else None
        return detail

    async def get_stored_tracks(self, artist_id: str) -> List[Track]:
        row = await self._fetch_one(
            "SELECT stored_tracks FROM artists WHERE id = :id",
            {"id": artist_id}
        )
        if not row or not row.get("stored_tracks"):
            return []
        return [Track.model_validate(t) for t in _decode_json(row["stored_tracks"])]

    async def upsert(self, kind: str, record: Record) -> Optional[Record]:
        row = await self._write(build_upsert_sql(kind), record_params(kind, record))
        return row_to_record(kind, row)

    async def insert(self, kind: str, record: Record) -> Optional[Record]:
        row = await self._write(build_insert_sql(kind), record_params(kind, record))
        return row_to_record(kind, row)

    async def update_artist_tracks(
        self,
        artist_id: str,
        tracks: List[Track],
        updated_at: datetime
    ) -> None:
        await self._write(
            """
            UPDATE artists
            SET stored_tracks = CAST(:stored_tracks AS jsonb),
                tracks_last_updated = :updated_at,
                updated_at = :updated_at
            WHERE id = :id
            """,
            {
                "id": artist_id,
                "stored_tracks": json.dumps([t.model_dump(mode="json") for t in tracks]),
                "updated_at": updated_at,
            }
        )
        logger.info("Stored artist track snapshot", artist_id=artist_id, tracks=len(tracks))
