"""
Pytest configuration and shared fixtures for setlist-sync testing.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from setlist_sync.background import TaskSupervisor
from setlist_sync.catalog_client import TrackCatalogSource
from setlist_sync.config import SyncSettings
from setlist_sync.errors import StoreError
from setlist_sync.models import Artist, EntityKind, Show, ShowDetail, Track, TrackCatalog, Venue
from setlist_sync.store import VENUE, EntityStore
from setlist_sync.synchronizer import FreshnessSynchronizer
from setlist_sync.track_cache import ArtistTrackCache

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)


class InMemoryEntityStore(EntityStore):
    """EntityStore double with switchable failures and a call log."""

    def __init__(self):
        self.artists: Dict[str, Artist] = {}
        self.shows: Dict[str, Show] = {}
        self.venues: Dict[str, Venue] = {}
        self.calls: List[Tuple[str, str, str]] = []

        self.read_error: Optional[Exception] = None
        self.upsert_error: Optional[Exception] = None
        self.insert_error: Optional[Exception] = None
        self.track_write_error: Optional[Exception] = None

    @staticmethod
    def _kind(kind) -> str:
        return kind.value if isinstance(kind, EntityKind) else kind

    def _bucket(self, kind) -> Dict:
        kind = self._kind(kind)
        return {"artist": self.artists, "show": self.shows, VENUE: self.venues}[kind]

    def calls_for(self, op: str) -> List[Tuple[str, str, str]]:
        return [call for call in self.calls if call[0] == op]

    async def get_artist(self, artist_id):
        if self.read_error:
            raise self.read_error
        return self.artists.get(artist_id)

    async def get_show(self, show_id):
        if self.read_error:
            raise self.read_error
        return self.shows.get(show_id)

    async def get_venue(self, venue_id):
        if self.read_error:
            raise self.read_error
        return self.venues.get(venue_id)

    async def get_show_detail(self, show_id):
        if self.read_error:
            raise self.read_error
        show = self.shows.get(show_id)
        if show is None:
            return None
        return ShowDetail(
            **show.model_dump(),
            artist=self.artists.get(show.artist_id),
            venue=self.venues.get(show.venue_id)
        )

    async def get_stored_tracks(self, artist_id):
        if self.read_error:
            raise self.read_error
        artist = self.artists.get(artist_id)
        return list(artist.stored_tracks or []) if artist else []

    async def upsert(self, kind, record):
        self.calls.append(("upsert", self._kind(kind), record.id))
        if self.upsert_error:
            raise self.upsert_error
        bucket = self._bucket(kind)
        existing = bucket.get(record.id)
        if isinstance(record, Artist) and existing is not None and record.stored_tracks is None:
            record = record.model_copy(update={
                "stored_tracks": existing.stored_tracks,
                "tracks_last_updated": existing.tracks_last_updated
            })
        bucket[record.id] = record
        return record

    async def insert(self, kind, record):
        self.calls.append(("insert", self._kind(kind), record.id))
        if self.insert_error:
            raise self.insert_error
        bucket = self._bucket(kind)
        if record.id in bucket:
            raise StoreError("duplicate key value violates unique constraint", code="23505")
        bucket[record.id] = record
        return record

    async def update_artist_tracks(self, artist_id, tracks, updated_at):
        self.calls.append(("update_artist_tracks", "artist", artist_id))
        if self.track_write_error:
            raise self.track_write_error
        artist = self.artists.get(artist_id) or Artist(id=artist_id)
        self.artists[artist_id] = artist.model_copy(update={
            "stored_tracks": list(tracks),
            "tracks_last_updated": updated_at,
            "updated_at": updated_at
        })


class FakeCatalog(TrackCatalogSource):
    """Catalog source double returning canned tracks per catalog id."""

    def __init__(self, tracks: Optional[Dict[str, List[Track]]] = None):
        self.tracks = tracks or {}
        self.error: Optional[Exception] = None
        self.calls: List[str] = []

    async def fetch_artist_tracks(self, catalog_id):
        self.calls.append(catalog_id)
        if self.error:
            raise self.error
        return TrackCatalog(tracks=self.tracks.get(catalog_id, []))


def make_tracks(count: int, prefix: str = "t") -> List[Track]:
    return [
        Track(id=f"{prefix}{i}", name=f"Song {i}", popularity=(i * 7) % 100)
        for i in range(1, count + 1)
    ]


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return SyncSettings(json_logs=False)


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def track_factory():
    return make_tracks


@pytest.fixture
def sample_tracks():
    return make_tracks(8)


@pytest.fixture
def catalog(sample_tracks):
    return FakeCatalog({"X123": sample_tracks})


@pytest.fixture
def supervisor():
    return TaskSupervisor()


@pytest.fixture
def synchronizer(store, catalog, supervisor, settings, now):
    return FreshnessSynchronizer(store, catalog, supervisor, settings, clock=lambda: now)


@pytest.fixture
def track_cache(synchronizer, settings):
    return ArtistTrackCache(synchronizer, settings)


@pytest.fixture
def stale_artist(now):
    """Artist last updated 10 days ago, no stored tracks, catalog id X123."""
    return Artist(
        id="artist-a",
        name="Artist A",
        spotify_id="X123",
        upcoming_shows=2,
        updated_at=now - timedelta(days=10)
    )


@pytest.fixture
def sample_show_records(now):
    """Show, artist and venue as they sit in the store."""
    artist = Artist(id="artist-a", name="The Band", spotify_id="X123", updated_at=now)
    venue = Venue(id="venue-1", name="The Fillmore", city="San Francisco", state="CA")
    show = Show(
        id="show-1",
        name="The Band Live",
        artist_id=artist.id,
        venue_id=venue.id,
        date=datetime(2026, 10, 17, 20, 0, tzinfo=timezone.utc),
        updated_at=now
    )
    return show, artist, venue


# Pytest markers
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on path."""
    for item in items:
        if "unit" in str(item.path):
            item.add_marker(pytest.mark.unit)
