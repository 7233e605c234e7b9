"""
Freshness-Aware Synchronizer

Reconciles externally fetched artist/show records with the persistent store.

Freshness is pull-driven: every sync request re-evaluates the stored record
against a per-kind staleness threshold (artists 7 days, shows 24 hours). A
fresh record is returned as-is. Otherwise the prepared record goes through the
fallback write chain (upsert -> insert-only on permission denial -> in-memory
record), so a sync never raises into the read path.

After a successful artist upsert that leaves the artist without a stored
track catalog but with a Spotify id, catalog population is spawned as a
supervised background task and not awaited.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import structlog

from .background import TaskSupervisor
from .catalog_client import TrackCatalogSource
from .config import SyncSettings
from .errors import ExternalSourceUnavailable, InvalidInput, StoreError
from .metrics import sync_fresh_hits_total, sync_writes_total
from .models import (
    Artist,
    EntityKind,
    Show,
    Track,
    normalize_artist_record,
    normalize_show_record,
    normalize_venue_record,
    utcnow,
)
from .store import VENUE, EntityStore, Record
from .write_strategies import DEFAULT_WRITE_CHAIN, WriteOutcome, WriteStrategy, run_write_chain

logger = structlog.get_logger(__name__)


class FreshnessSynchronizer:
    """Staleness-aware sync of external records into the entity store"""

    def __init__(
        self,
        store: EntityStore,
        catalog: TrackCatalogSource,
        supervisor: Optional[TaskSupervisor] = None,
        settings: Optional[SyncSettings] = None,
        write_chain: Sequence[WriteStrategy] = DEFAULT_WRITE_CHAIN,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.catalog = catalog
        self.supervisor = supervisor or TaskSupervisor()
        self.settings = settings or SyncSettings()
        self.write_chain = write_chain
        self._clock = clock

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    def max_age(self, kind: EntityKind):
        if kind == EntityKind.ARTIST:
            return self.settings.artist_max_age
        return self.settings.show_max_age

    def is_fresh(
        self,
        kind: EntityKind,
        stored: Optional[Record],
        incoming: Optional[Record] = None,
        now: Optional[datetime] = None
    ) -> bool:
        """
        A stored record is fresh when it is younger than the kind's threshold
        and already carries what callers need.

        For artists that means a stored track catalog, no newly available
        Spotify id, and no increase in upcoming shows.
        """
        if stored is None or stored.updated_at is None:
            return False

        now = now or self._clock()
        if now - stored.updated_at >= self.max_age(kind):
            return False

        if kind == EntityKind.ARTIST:
            if not stored.has_stored_tracks:
                return False
            if incoming is not None:
                if incoming.spotify_id and not stored.spotify_id:
                    return False
                if incoming.upcoming_shows > stored.upcoming_shows:
                    return False

        return True

    async def _lookup(self, kind: EntityKind, entity_id: str) -> Optional[Record]:
        try:
            if kind == EntityKind.ARTIST:
                return await self.store.get_artist(entity_id)
            return await self.store.get_show(entity_id)
        except StoreError as e:
            # Carry on with the write; the lookup only decides whether to skip it
            logger.warning("Stored record lookup failed", kind=kind.value, entity_id=entity_id, error=str(e))
            return None

    async def fetch_entity_if_stale(self, kind: EntityKind, entity_id: str) -> Optional[Record]:
        """
        Point lookup gated on freshness.

        Returns:
            The stored record when it is fresh, None when it is absent or
            stale and must be refreshed from the external source.
        """
        stored = await self._lookup(kind, entity_id)
        if stored is not None and self.is_fresh(kind, stored):
            sync_fresh_hits_total.labels(kind=kind.value).inc()
            return stored
        return None

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def _prepare(self, kind: EntityKind, record: Record, now: datetime) -> Record:
        prepared = record.model_copy(update={"updated_at": now})
        if kind == EntityKind.SHOW and isinstance(prepared, Show):
            # Joined read-model fields are never written
            prepared = Show.model_validate(prepared.model_dump(include=set(Show.model_fields)))
        return prepared

    async def _write(self, kind: str, record: Record) -> WriteOutcome:
        outcome = await run_write_chain(self.store, kind, record, self.write_chain)
        sync_writes_total.labels(kind=kind, strategy=outcome.strategy).inc()
        return outcome

    async def sync_entity(
        self,
        kind: Union[EntityKind, str],
        external_record: Union[Record, Dict[str, Any]]
    ) -> Optional[Record]:
        """
        Sync one externally fetched record.

        Returns the fresh stored record, the persisted row, or the prepared
        in-memory record when persistence failed. Returns None only for a
        record without an id.
        """
        kind = EntityKind(kind)
        try:
            if isinstance(external_record, dict):
                normalize = normalize_artist_record if kind == EntityKind.ARTIST else normalize_show_record
                record = normalize(external_record)
            else:
                record = external_record
        except InvalidInput as e:
            logger.error("Invalid external record", kind=kind.value, error=str(e))
            return None

        stored = await self._lookup(kind, record.id)
        now = self._clock()

        if stored is not None:
            if self.is_fresh(kind, stored, incoming=record, now=now):
                sync_fresh_hits_total.labels(kind=kind.value).inc()
                logger.debug("Stored record is fresh, skipping write", kind=kind.value, entity_id=record.id)
                return stored
            logger.info(
                "Stored record is stale, refreshing",
                kind=kind.value,
                entity_id=record.id,
                age_seconds=(now - stored.updated_at).total_seconds() if stored.updated_at else None
            )
        else:
            logger.info("Record is new, creating", kind=kind.value, entity_id=record.id)

        prepared = self._prepare(kind, record, now)
        outcome = await self._write(kind.value, prepared)

        if kind == EntityKind.ARTIST and outcome.strategy == "upsert":
            self._maybe_populate_tracks(outcome.record, prepared)

        return outcome.record

    async def sync_artist(self, raw: Union[Artist, Dict[str, Any]]) -> Optional[Artist]:
        return await self.sync_entity(EntityKind.ARTIST, raw)

    async def sync_show(self, raw: Union[Show, Dict[str, Any]]) -> Optional[Show]:
        """Sync a show; an embedded venue record is stored first if it is unknown."""
        if isinstance(raw, dict) and isinstance(raw.get("venue"), dict):
            await self._ensure_venue(raw["venue"])
        return await self.sync_entity(EntityKind.SHOW, raw)

    async def _ensure_venue(self, raw_venue: Dict[str, Any]) -> None:
        try:
            venue = normalize_venue_record(raw_venue)
        except InvalidInput:
            return
        try:
            if await self.store.get_venue(venue.id) is not None:
                return
        except StoreError as e:
            logger.warning("Venue lookup failed", venue_id=venue.id, error=str(e))
        await self._write(VENUE, venue)

    # ------------------------------------------------------------------
    # Track catalog population
    # ------------------------------------------------------------------

    def _maybe_populate_tracks(self, saved: Artist, prepared: Artist) -> None:
        if saved.has_stored_tracks or not prepared.spotify_id:
            return
        logger.info(
            "Artist has no stored tracks, populating in background",
            artist_id=prepared.id,
            spotify_id=prepared.spotify_id
        )
        self.supervisor.spawn(
            self.fetch_and_store_artist_tracks(prepared.id, prepared.spotify_id, prepared.name),
            name="populate_artist_tracks"
        )

    async def fetch_and_store_artist_tracks(
        self,
        artist_id: str,
        spotify_id: str,
        artist_name: str = ""
    ) -> Optional[List[Track]]:
        """
        Populate an artist's track snapshot.

        Returns the existing snapshot when one is stored (no external call),
        None when the catalog is unavailable or empty (nothing is written), and
        the fetched tracks otherwise, even if storing them failed.
        """
        try:
            existing = await self.store.get_stored_tracks(artist_id)
        except StoreError as e:
            logger.warning("Stored tracks lookup failed", artist_id=artist_id, error=str(e))
            existing = []

        if existing:
            logger.info("Artist already has stored tracks", artist_id=artist_id, tracks=len(existing))
            return existing

        try:
            catalog = await self.catalog.fetch_artist_tracks(spotify_id)
        except ExternalSourceUnavailable as e:
            logger.error("Track catalog unavailable", artist_id=artist_id, artist=artist_name, error=str(e))
            return None

        if catalog is None or catalog.is_empty:
            logger.info("No tracks found in catalog", artist_id=artist_id, artist=artist_name)
            return None

        await self.store_track_snapshot(artist_id, catalog.tracks)
        return catalog.tracks

    async def store_track_snapshot(self, artist_id: str, tracks: List[Track]) -> bool:
        """
        Persist a complete, non-empty snapshot in one write.

        Returns False (after logging) when the store rejects it.
        """
        if not tracks:
            return False
        try:
            await self.store.update_artist_tracks(artist_id, list(tracks), self._clock())
        except StoreError as e:
            logger.error("Storing track snapshot failed", artist_id=artist_id, error=str(e))
            return False
        return True
