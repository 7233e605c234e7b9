"""
Show Detail Aggregator

Composes a show page: show record (with artist and venue), the artist's
tracks, the live setlist and page metadata. Each part loads and fails on its
own; a show whose tracks failed to load still renders, and so does a setlist
whose show lookup failed.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from .auth import AuthProvider
from .display import FALLBACK_METADATA, build_document_metadata
from .errors import NotFound, StoreError
from .models import SetlistEntry, ShowDetail, Track
from .store import EntityStore
from .track_cache import ArtistTrackCache, ArtistTracksView
from .voting import SetlistRegistry, SetlistVotingEngine

logger = structlog.get_logger(__name__)


@dataclass
class ShowDetailView:
    show_id: str
    engine: SetlistVotingEngine
    show: Optional[ShowDetail] = None
    tracks: Optional[ArtistTracksView] = None
    loading: Dict[str, bool] = field(default_factory=lambda: {"show": False, "tracks": False})
    error: Dict[str, Optional[str]] = field(default_factory=lambda: {"show": None})
    document_metadata: Dict[str, str] = field(default_factory=lambda: dict(FALLBACK_METADATA))

    @property
    def setlist(self) -> List[SetlistEntry]:
        return self.engine.setlist

    @property
    def connected(self) -> bool:
        return self.engine.connected

    @property
    def available_tracks(self) -> List[Track]:
        # Stored snapshot when there is one, else whatever was fetched
        if self.tracks is not None and self.tracks.stored_tracks_data:
            return self.engine.available_tracks()
        if self.tracks is not None:
            return self.tracks.get_available_tracks(self.engine.setlist)
        return []

    async def load_tracks(self) -> None:
        """Reload the artist's tracks; an in-flight load is not cancelled."""
        if self.tracks is None:
            return
        self.loading["tracks"] = True
        try:
            await self.tracks.refetch()
        finally:
            self.loading["tracks"] = False
        self.engine.use_tracks(self.tracks.stored_tracks_data, self.tracks.tracks)
        self.engine.seed(self.tracks.initial_songs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "show": self.show.model_dump(mode="json") if self.show else None,
            "setlist": [entry.model_dump(mode="json") for entry in self.setlist],
            "loading": dict(self.loading),
            "error": dict(self.error),
            "connected": self.connected,
            "available_tracks": [track.model_dump(mode="json") for track in self.available_tracks],
            "document_metadata": dict(self.document_metadata),
            "tracks_error": str(self.tracks.error) if self.tracks and self.tracks.is_error else None,
            "anonymous_vote_count": self.engine.anonymous_vote_count,
        }


class ShowDetailAggregator:
    def __init__(
        self,
        store: EntityStore,
        track_cache: ArtistTrackCache,
        registry: SetlistRegistry
    ):
        self.store = store
        self.track_cache = track_cache
        self.registry = registry

    async def _load_show(self, show_id: str) -> ShowDetail:
        show = await self.store.get_show_detail(show_id)
        if show is None:
            raise NotFound("show", show_id)
        return show

    async def get_show_detail(
        self,
        show_id: str,
        auth: AuthProvider,
        session_id: Optional[str] = None,
        connect: bool = True
    ) -> ShowDetailView:
        engine = self.registry.engine_for(show_id, auth, session_id)
        view = ShowDetailView(show_id=show_id, engine=engine)

        if connect:
            await engine.connect()

        view.loading["show"] = True
        try:
            view.show = await self._load_show(show_id)
        except NotFound as e:
            view.error["show"] = str(e)
            logger.info("Show not found", show_id=show_id)
        except StoreError as e:
            view.error["show"] = str(e)
            logger.error("Show lookup failed", show_id=show_id, error=str(e))
        finally:
            view.loading["show"] = False

        if view.show is None:
            return view

        view.document_metadata = build_document_metadata(view.show)

        artist = view.show.artist
        spotify_id = artist.spotify_id if artist else None
        view.loading["tracks"] = True
        try:
            view.tracks = await self.track_cache.get_tracks(
                view.show.artist_id,
                spotify_id,
                immediate=True,
                prioritize_stored=True
            )
        finally:
            view.loading["tracks"] = False

        engine.use_tracks(view.tracks.stored_tracks_data, view.tracks.tracks)
        engine.seed(view.tracks.initial_songs)
        return view

    async def get_artist_tracks(
        self,
        artist_id: str,
        spotify_id: Optional[str] = None,
        immediate: bool = True,
        prioritize_stored: bool = True
    ) -> ArtistTracksView:
        """Track view for an artist; the catalog id defaults to the stored artist's."""
        if spotify_id is None and artist_id:
            try:
                artist = await self.store.get_artist(artist_id)
            except StoreError as e:
                logger.warning("Artist lookup failed", artist_id=artist_id, error=str(e))
                artist = None
            spotify_id = artist.spotify_id if artist else None
        return await self.track_cache.get_tracks(
            artist_id,
            spotify_id,
            immediate=immediate,
            prioritize_stored=prioritize_stored
        )
