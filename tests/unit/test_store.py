"""
Unit tests for the Postgres entity store adapter (SQL building, row mapping,
error translation) against a mocked SQLAlchemy session.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from sqlalchemy.exc import DBAPIError

from setlist_sync.errors import PermissionDenied, StoreError
from setlist_sync.models import Artist, EntityKind, Show, Track
from setlist_sync.store import (
    PostgresEntityStore,
    build_insert_sql,
    build_upsert_sql,
    is_permission_error,
    record_params,
    row_to_record,
)


class FakePgError(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


def _db_error(message: str, sqlstate: str) -> DBAPIError:
    return DBAPIError("INSERT INTO artists ...", {}, FakePgError(message, sqlstate))


@pytest.fixture
def session():
    session = AsyncMock()
    result = Mock()
    result.returns_rows = True
    result.mappings.return_value.first.return_value = None
    session.execute.return_value = result
    return session


@pytest.fixture
def pg_store(session):
    ctx = MagicMock()
    ctx.__aenter__.return_value = session
    ctx.__aexit__.return_value = False
    return PostgresEntityStore(Mock(return_value=ctx))


def _set_row(session, row):
    session.execute.return_value.mappings.return_value.first.return_value = row


class TestSqlBuilders:
    def test_upsert_preserves_track_snapshot(self):
        sql = build_upsert_sql(EntityKind.ARTIST)

        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert "stored_tracks = COALESCE(EXCLUDED.stored_tracks, artists.stored_tracks)" in sql
        assert "name = EXCLUDED.name" in sql
        assert "CAST(:stored_tracks AS jsonb)" in sql
        assert sql.endswith("RETURNING *")

    def test_insert_never_updates(self):
        sql = build_insert_sql("show")

        assert sql.startswith("INSERT INTO shows")
        assert "ON CONFLICT" not in sql

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            build_insert_sql("festival")

    def test_record_params_encode_json_columns(self, sample_tracks):
        artist = Artist(id="a1", genres=["rock"], stored_tracks=sample_tracks[:1])

        params = record_params(EntityKind.ARTIST, artist)

        assert json.loads(params["genres"]) == ["rock"]
        assert json.loads(params["stored_tracks"])[0]["id"] == "t1"
        assert params["spotify_id"] is None

    def test_row_to_record_decodes_json(self):
        row = {"id": "s1", "genre_ids": '["KnvZfZ7vAeA"]', "date": "2026-10-17T20:00:00Z"}

        show = row_to_record(EntityKind.SHOW, row)

        assert isinstance(show, Show)
        assert show.genre_ids == ["KnvZfZ7vAeA"]
        assert show.date == datetime(2026, 10, 17, 20, 0, tzinfo=timezone.utc)
        assert row_to_record(EntityKind.SHOW, None) is None


class TestPermissionDetection:
    def test_sqlstate(self):
        assert is_permission_error(_db_error("denied", "42501"))

    def test_message(self):
        assert is_permission_error(Exception("permission denied for table shows"))

    def test_other_errors(self):
        assert not is_permission_error(_db_error("duplicate key", "23505"))


class TestPostgresEntityStore:
    @pytest.mark.asyncio
    async def test_get_artist(self, pg_store, session):
        _set_row(session, {"id": "a1", "name": "Band", "genres": '["rock"]', "stored_tracks": None})

        artist = await pg_store.get_artist("a1")

        assert artist.name == "Band"
        assert artist.genres == ["rock"]
        assert session.execute.await_args.args[1] == {"id": "a1"}

    @pytest.mark.asyncio
    async def test_get_stored_tracks(self, pg_store, session):
        _set_row(session, {"stored_tracks": json.dumps([{"id": "t1", "name": "One"}])})
        assert await pg_store.get_stored_tracks("a1") == [Track(id="t1", name="One")]

        _set_row(session, None)
        assert await pg_store.get_stored_tracks("a1") == []

    @pytest.mark.asyncio
    async def test_get_show_detail_attaches_joins(self, pg_store, session):
        _set_row(session, {
            "id": "s1",
            "name": "Gig",
            "artist_id": "a1",
            "venue_id": "v1",
            "genre_ids": "[]",
            "artist": json.dumps({"id": "a1", "name": "Band"}),
            "venue": {"id": "v1", "name": "Hall", "city": "Austin", "state": "TX"},
        })

        detail = await pg_store.get_show_detail("s1")

        assert detail.artist.name == "Band"
        assert detail.venue.city == "Austin"

    @pytest.mark.asyncio
    async def test_upsert_commits_and_returns_row(self, pg_store, session):
        _set_row(session, {"id": "a1", "name": "Band"})

        saved = await pg_store.upsert("artist", Artist(id="a1", name="Band"))

        assert saved.id == "a1"
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_permission_denied_is_tagged(self, pg_store, session):
        session.execute.side_effect = _db_error("permission denied for table artists", "42501")

        with pytest.raises(PermissionDenied):
            await pg_store.upsert("artist", Artist(id="a1"))

    @pytest.mark.asyncio
    async def test_other_failures_are_store_errors(self, pg_store, session):
        session.execute.side_effect = _db_error("duplicate key", "23505")

        with pytest.raises(StoreError) as exc_info:
            await pg_store.insert("artist", Artist(id="a1"))

        assert not isinstance(exc_info.value, PermissionDenied)
        assert exc_info.value.code == "23505"

    @pytest.mark.asyncio
    async def test_update_artist_tracks_single_statement(self, pg_store, session, sample_tracks):
        session.execute.return_value.returns_rows = False
        stamp = datetime(2026, 10, 16, tzinfo=timezone.utc)

        await pg_store.update_artist_tracks("a1", sample_tracks, stamp)

        assert session.execute.await_count == 1
        params = session.execute.await_args.args[1]
        assert len(json.loads(params["stored_tracks"])) == len(sample_tracks)
        assert params["updated_at"] == stamp
        session.commit.assert_awaited_once()
