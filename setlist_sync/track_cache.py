"""
Artist Track Cache

Read path for an artist's tracks. The stored snapshot wins: when the store
already holds tracks for the artist they are returned and the external
catalog is never called. Only when nothing is stored is the catalog fetched,
and a non-empty result is persisted as one snapshot through the synchronizer.
An empty fetch is never written, so a later read will try again.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, List, Optional

import structlog

from .availability import compute_available_tracks
from .config import SyncSettings
from .errors import ExternalSourceUnavailable, StoreError
from .models import Track

if TYPE_CHECKING:
    from .synchronizer import FreshnessSynchronizer

logger = structlog.get_logger(__name__)


def pick_initial_songs(tracks: Iterable[Track], count: int) -> List[Track]:
    """Most popular tracks first; ties keep catalog order."""
    if count <= 0:
        return []
    return sorted(tracks, key=lambda t: -t.popularity)[:count]


@dataclass
class ArtistTracksView:
    artist_id: Optional[str]
    spotify_id: Optional[str]
    tracks: List[Track] = field(default_factory=list)
    initial_songs: List[Track] = field(default_factory=list)
    stored_tracks_data: List[Track] = field(default_factory=list)
    is_loading: bool = False
    is_error: bool = False
    error: Optional[Exception] = None
    _cache: Optional["ArtistTrackCache"] = field(default=None, repr=False, compare=False)

    def get_available_tracks(self, setlist: Iterable) -> List[Track]:
        """Complement over the fetched tracks; used when no stored snapshot exists."""
        return compute_available_tracks(self.tracks, setlist)

    async def refetch(self) -> "ArtistTracksView":
        """Reload in place. Does not cancel a load already in flight."""
        if self._cache is None:
            return self
        self.is_loading = True
        try:
            fresh = await self._cache.load(self.artist_id, self.spotify_id)
        finally:
            self.is_loading = False
        self.tracks = fresh.tracks
        self.initial_songs = fresh.initial_songs
        self.stored_tracks_data = fresh.stored_tracks_data
        self.is_error = fresh.is_error
        self.error = fresh.error
        return self


class ArtistTrackCache:
    def __init__(self, synchronizer: "FreshnessSynchronizer", settings: Optional[SyncSettings] = None):
        self.synchronizer = synchronizer
        self.store = synchronizer.store
        self.catalog = synchronizer.catalog
        self.settings = settings or synchronizer.settings

    def _view(self, artist_id, spotify_id, **kwargs) -> ArtistTracksView:
        return ArtistTracksView(artist_id=artist_id, spotify_id=spotify_id, _cache=self, **kwargs)

    async def get_tracks(
        self,
        artist_id: Optional[str],
        spotify_id: Optional[str],
        immediate: bool = True,
        prioritize_stored: bool = True
    ) -> ArtistTracksView:
        """
        Get the track view for an artist.

        With immediate=False nothing is loaded until refetch() is awaited.
        The stored snapshot is consulted before any external call whatever
        prioritize_stored says; the flag is kept for callers that pass it.
        """
        if not immediate:
            return self._view(artist_id, spotify_id)
        return await self.load(artist_id, spotify_id)

    async def _stored_tracks(self, artist_id: str) -> List[Track]:
        try:
            return await self.store.get_stored_tracks(artist_id)
        except StoreError as e:
            logger.warning("Stored tracks lookup failed", artist_id=artist_id, error=str(e))
            return []

    async def load(self, artist_id: Optional[str], spotify_id: Optional[str]) -> ArtistTracksView:
        if not artist_id:
            return self._view(artist_id, spotify_id)

        stored = await self._stored_tracks(artist_id)
        if stored:
            logger.debug("Serving stored tracks", artist_id=artist_id, tracks=len(stored))
            return self._view(
                artist_id,
                spotify_id,
                tracks=stored,
                stored_tracks_data=stored,
                initial_songs=pick_initial_songs(stored, self.settings.initial_song_count),
            )

        if not spotify_id:
            logger.info("No stored tracks and no catalog id", artist_id=artist_id)
            return self._view(artist_id, spotify_id)

        try:
            catalog = await self.catalog.fetch_artist_tracks(spotify_id)
        except ExternalSourceUnavailable as e:
            logger.error("Track catalog unavailable", artist_id=artist_id, error=str(e))
            return self._view(artist_id, spotify_id, is_error=True, error=e)

        if catalog is None or catalog.is_empty:
            logger.info("Catalog returned no tracks", artist_id=artist_id, spotify_id=spotify_id)
            return self._view(artist_id, spotify_id)

        stored_ok = await self.synchronizer.store_track_snapshot(artist_id, catalog.tracks)
        logger.info(
            "Fetched artist tracks",
            artist_id=artist_id,
            tracks=len(catalog),
            persisted=stored_ok
        )
        return self._view(
            artist_id,
            spotify_id,
            tracks=list(catalog.tracks),
            initial_songs=pick_initial_songs(catalog.tracks, self.settings.initial_song_count),
        )
