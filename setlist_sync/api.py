"""
Setlist Sync HTTP service

Exposes show detail, artist tracks, add-song and voting over HTTP, plus
record ingestion for the ticketing source, /health and /metrics.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from .aggregator import ShowDetailAggregator
from .auth import RequestAuth
from .background import TaskSupervisor
from .catalog_client import SpotifyCatalogClient, TrackCatalogSource
from .config import SyncSettings
from .errors import QuotaExceeded
from .logging_config import configure_logging
from .models import EntityKind
from .realtime import LocalRealtimeChannel, RealtimeChannel, RedisRealtimeChannel
from .secrets_manager import get_database_url, get_redis_config, get_spotify_config, validate_secrets
from .store import EntityStore, PostgresEntityStore
from .synchronizer import FreshnessSynchronizer
from .track_cache import ArtistTrackCache
from .voting import SetlistRegistry

logger = structlog.get_logger(__name__)

SERVICE_NAME = "setlist-sync"
SERVICE_VERSION = "1.0.0"


class AddSongRequest(BaseModel):
    track_id: Optional[str] = None


class VoteRequest(BaseModel):
    song_id: str


class SetlistServices:
    """Wires the store, catalog and channel into the synchronizer, cache and aggregator"""

    def __init__(
        self,
        store: EntityStore,
        catalog: TrackCatalogSource,
        channel: Optional[RealtimeChannel] = None,
        settings: Optional[SyncSettings] = None,
        supervisor: Optional[TaskSupervisor] = None,
        db_engine: Optional[AsyncEngine] = None
    ):
        self.settings = settings or SyncSettings()
        self.store = store
        self.catalog = catalog
        self.channel = channel or LocalRealtimeChannel()
        self.supervisor = supervisor or TaskSupervisor()
        self.db_engine = db_engine

        self.synchronizer = FreshnessSynchronizer(store, catalog, self.supervisor, self.settings)
        self.track_cache = ArtistTrackCache(self.synchronizer, self.settings)
        self.registry = SetlistRegistry(
            anonymous_vote_limit=self.settings.anonymous_vote_limit,
            channel=self.channel,
            supervisor=self.supervisor
        )
        self.aggregator = ShowDetailAggregator(store, self.track_cache, self.registry)

    @classmethod
    async def from_environment(cls, settings: SyncSettings) -> "SetlistServices":
        if not validate_secrets():
            logger.warning("Catalog credentials missing, track fetches will fail until configured")

        db_engine = create_async_engine(get_database_url(), pool_pre_ping=True)
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)

        spotify = get_spotify_config()
        catalog = SpotifyCatalogClient(
            client_id=spotify["client_id"],
            client_secret=spotify["client_secret"],
            market=settings.catalog_market,
            requests_per_second=settings.catalog_requests_per_second,
            max_retries=settings.catalog_max_retries,
            initial_delay=settings.catalog_initial_delay,
            max_delay=settings.catalog_max_delay,
            timeout=settings.catalog_timeout_seconds,
        )

        channel: RealtimeChannel = RedisRealtimeChannel.from_config(get_redis_config())
        try:
            await channel.connect()
        except Exception as e:
            logger.warning("Redis unavailable, using in-process realtime channel", error=str(e))
            channel = LocalRealtimeChannel()
            await channel.connect()

        return cls(
            store=PostgresEntityStore(session_factory),
            catalog=catalog,
            channel=channel,
            settings=settings,
            db_engine=db_engine
        )

    async def start(self) -> None:
        if self.channel.connected:
            return
        try:
            await self.channel.connect()
        except Exception as e:
            logger.warning("Realtime channel unavailable at startup", error=str(e))

    async def health_check(self) -> Dict[str, str]:
        status = {"realtime": "healthy" if self.channel.connected else "disconnected"}
        if self.db_engine is not None:
            try:
                async with self.db_engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                status["database"] = "healthy"
            except Exception as e:
                status["database"] = f"unhealthy: {e}"
        return status

    async def close(self) -> None:
        await self.supervisor.cancel_all()
        await self.channel.disconnect()
        aclose = getattr(self.catalog, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.db_engine is not None:
            await self.db_engine.dispose()


def _session_id(request: Request, header_value: Optional[str]) -> str:
    if header_value:
        return header_value
    return request.client.host if request.client else "anonymous"


def create_app(services: Optional[SetlistServices] = None, settings: Optional[SyncSettings] = None) -> FastAPI:
    """
    Build the FastAPI app.

    With services given (tests, embedding) the app uses them as-is and does
    not close them on shutdown; otherwise they are built from the environment.
    """
    settings = settings or (services.settings if services else SyncSettings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.json_logs)
        logger.info("Starting Setlist Sync Service")

        owned = services is None
        app.state.services = services or await SetlistServices.from_environment(settings)
        await app.state.services.start()
        yield

        logger.info("Shutting down Setlist Sync Service")
        if owned:
            try:
                await app.state.services.close()
                logger.info("Graceful shutdown completed")
            except Exception as e:
                logger.error("Error during shutdown", error=str(e))

    app = FastAPI(
        title="Setlist Sync Service",
        description="Show metadata synchronization and live setlist voting",
        version=SERVICE_VERSION,
        lifespan=lifespan
    )

    @app.get("/health")
    async def health_check(request: Request):
        try:
            connections = await request.app.state.services.health_check()
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={
                    "service": SERVICE_NAME,
                    "status": "unhealthy",
                    "error": str(e),
                    "timestamp": datetime.now().isoformat()
                }
            )

        health_status = {
            "service": SERVICE_NAME,
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "version": SERVICE_VERSION,
            "connections": connections
        }
        if connections.get("database", "healthy") != "healthy":
            health_status["status"] = "degraded"
            return JSONResponse(status_code=503, content=health_status)
        return health_status

    @app.get("/metrics")
    async def prometheus_metrics():
        return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/shows/{show_id}")
    async def get_show(
        show_id: str,
        request: Request,
        authorization: Optional[str] = Header(default=None),
        x_session_id: Optional[str] = Header(default=None)
    ):
        view = await request.app.state.services.aggregator.get_show_detail(
            show_id,
            RequestAuth.from_header(authorization),
            session_id=_session_id(request, x_session_id)
        )
        return view.to_dict()

    @app.get("/artists/{artist_id}/tracks")
    async def get_artist_tracks(
        artist_id: str,
        request: Request,
        spotify_id: Optional[str] = None,
        immediate: bool = True,
        prioritize_stored: bool = True
    ):
        view = await request.app.state.services.aggregator.get_artist_tracks(
            artist_id,
            spotify_id,
            immediate=immediate,
            prioritize_stored=prioritize_stored
        )
        return {
            "artist_id": view.artist_id,
            "spotify_id": view.spotify_id,
            "tracks": [t.model_dump(mode="json") for t in view.tracks],
            "initial_songs": [t.model_dump(mode="json") for t in view.initial_songs],
            "stored_tracks_data": [t.model_dump(mode="json") for t in view.stored_tracks_data],
            "is_loading": view.is_loading,
            "is_error": view.is_error,
            "error": str(view.error) if view.error else None,
        }

    @app.post("/shows/{show_id}/songs")
    async def add_song(
        show_id: str,
        body: AddSongRequest,
        request: Request,
        authorization: Optional[str] = Header(default=None),
        x_session_id: Optional[str] = Header(default=None)
    ):
        view = await request.app.state.services.aggregator.get_show_detail(
            show_id,
            RequestAuth.from_header(authorization),
            session_id=_session_id(request, x_session_id)
        )
        entry = view.engine.add_song(body.track_id)
        result = view.to_dict()
        result["added"] = entry is not None
        return result

    @app.post("/shows/{show_id}/votes")
    async def vote(
        show_id: str,
        body: VoteRequest,
        request: Request,
        authorization: Optional[str] = Header(default=None),
        x_session_id: Optional[str] = Header(default=None)
    ):
        services: SetlistServices = request.app.state.services
        auth = RequestAuth.from_header(authorization)
        engine = services.registry.engine_for(show_id, auth, _session_id(request, x_session_id))
        await engine.connect()

        try:
            result = engine.vote(body.song_id)
        except QuotaExceeded as e:
            raise HTTPException(
                status_code=401,
                detail={
                    "error": "quota_exceeded",
                    "message": str(e),
                    "limit": e.limit,
                    "login_required": auth.login_requested
                }
            )

        if not result.accepted:
            raise HTTPException(status_code=404, detail={"error": result.reason, "song_id": body.song_id})

        return {
            "song_id": result.song_id,
            "votes": result.votes,
            "remaining_anonymous_votes": result.remaining_anonymous_votes,
            "setlist": [entry.model_dump(mode="json") for entry in engine.state.ranked()]
        }

    @app.post("/sync/{kind}")
    async def sync_record(kind: EntityKind, record: Dict[str, Any], request: Request):
        """Ingest one raw artist or show record from the ticketing source."""
        synchronizer: FreshnessSynchronizer = request.app.state.services.synchronizer
        if kind == EntityKind.SHOW:
            saved = await synchronizer.sync_show(record)
        else:
            saved = await synchronizer.sync_artist(record)
        if saved is None:
            raise HTTPException(status_code=422, detail="Record has no id or is malformed")
        return saved.model_dump(mode="json")

    return app


def main() -> None:
    settings = SyncSettings()
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
