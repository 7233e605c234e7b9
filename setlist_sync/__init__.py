"""
Setlist Sync

Live-event metadata synchronization and collaborative setlist voting.

Artists, shows and venues from the ticketing source are reconciled with a
PostgreSQL store under a staleness policy; artist track catalogs are pulled
from Spotify once and kept as stored snapshots; participants propose and vote
on songs for an upcoming show, with changes fanned out over Redis pub/sub.
"""

from .aggregator import ShowDetailAggregator, ShowDetailView
from .auth import AuthProvider, RequestAuth
from .background import TaskSupervisor
from .catalog_client import SpotifyCatalogClient, TrackCatalogSource
from .config import SyncSettings
from .errors import (
    ExternalSourceUnavailable,
    InvalidInput,
    NotFound,
    PermissionDenied,
    QuotaExceeded,
    SetlistSyncError,
    StoreError,
)
from .models import Artist, EntityKind, SetlistEntry, Show, ShowDetail, Track, TrackCatalog, Venue
from .store import EntityStore, PostgresEntityStore
from .synchronizer import FreshnessSynchronizer
from .track_cache import ArtistTrackCache, ArtistTracksView
from .voting import AnonymousVoteQuota, SetlistRegistry, SetlistState, SetlistVotingEngine

__version__ = "1.0.0"

__all__ = [
    "AnonymousVoteQuota",
    "Artist",
    "ArtistTrackCache",
    "ArtistTracksView",
    "AuthProvider",
    "EntityKind",
    "EntityStore",
    "ExternalSourceUnavailable",
    "FreshnessSynchronizer",
    "InvalidInput",
    "NotFound",
    "PermissionDenied",
    "PostgresEntityStore",
    "QuotaExceeded",
    "RequestAuth",
    "SetlistEntry",
    "SetlistRegistry",
    "SetlistState",
    "SetlistSyncError",
    "SetlistVotingEngine",
    "Show",
    "ShowDetail",
    "ShowDetailAggregator",
    "ShowDetailView",
    "SpotifyCatalogClient",
    "StoreError",
    "SyncSettings",
    "TaskSupervisor",
    "Track",
    "TrackCatalog",
    "TrackCatalogSource",
    "Venue",
]
