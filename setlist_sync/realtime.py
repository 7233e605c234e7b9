"""
Real-time channel for setlist mutations

Delivers add-song and vote events to every participant connected to a show.
Delivery is assumed at-least-once and unordered; the voting engine applies
increments commutatively and does not deduplicate.
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Literal, Optional

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, Field, ValidationError

from .models import Track

logger = structlog.get_logger(__name__)

EventHandler = Callable[["SetlistEvent"], Awaitable[None]]


class SetlistEvent(BaseModel):
    type: Literal["add_song", "vote"]
    show_id: str
    song_id: str
    song: Optional[Track] = None
    origin: Optional[str] = None
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def channel_name(show_id: str) -> str:
    return f"setlist:{show_id}"


class RealtimeChannel(ABC):
    """
    Connect/disconnect status plus publish/subscribe for setlist mutations

    Subscriptions belong to the channel, not to a connection: they survive
    disconnect() and are active again after the next connect(). Subscribing
    the same handler twice to a show is a no-op.
    """

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    async def publish(self, event: SetlistEvent) -> None:
        ...

    @abstractmethod
    async def subscribe(self, show_id: str, handler: EventHandler) -> None:
        ...


def _register(handlers: Dict[str, List[EventHandler]], show_id: str, handler: EventHandler) -> bool:
    """Add handler for show_id; False if it was already registered."""
    if handler in handlers[show_id]:
        return False
    handlers[show_id].append(handler)
    return True


class LocalRealtimeChannel(RealtimeChannel):
    """In-process fan-out, for a single worker or tests"""

    def __init__(self):
        self._connected = False
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    async def publish(self, event: SetlistEvent) -> None:
        if not self._connected:
            return
        for handler in list(self._handlers.get(event.show_id, ())):
            await handler(event)

    async def subscribe(self, show_id: str, handler: EventHandler) -> None:
        _register(self._handlers, show_id, handler)


class RedisRealtimeChannel(RealtimeChannel):
    """Redis pub/sub channel, one Redis channel per show"""

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._connected = False

    @classmethod
    def from_config(cls, config: Dict) -> "RedisRealtimeChannel":
        pool = redis.ConnectionPool(
            host=config["host"],
            port=config["port"],
            password=config.get("password"),
            max_connections=50,
            decode_responses=True
        )
        return cls(redis.Redis(connection_pool=pool))

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """(Re)connect and resume every registered show subscription."""
        if self._connected:
            return
        await self.redis_client.ping()
        await self._close_pubsub()

        self._pubsub = self.redis_client.pubsub()
        shows = [show_id for show_id, handlers in self._handlers.items() if handlers]
        if shows:
            await self._pubsub.subscribe(*(channel_name(show_id) for show_id in shows))
            self._start_listener()

        self._connected = True
        logger.info("Realtime channel connected", resubscribed=len(shows))

    async def disconnect(self) -> None:
        self._connected = False
        await self._close_pubsub()

    async def _close_pubsub(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None

    def _start_listener(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen(), name="realtime_listener")

    async def publish(self, event: SetlistEvent) -> None:
        await self.redis_client.publish(channel_name(event.show_id), event.model_dump_json())

    async def subscribe(self, show_id: str, handler: EventHandler) -> None:
        first = not self._handlers.get(show_id)
        if not _register(self._handlers, show_id, handler):
            return
        if not self._connected:
            # connect() subscribes every registered show
            await self.connect()
            return
        if first:
            await self._pubsub.subscribe(channel_name(show_id))
        self._start_listener()

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self._dispatch(message.get("data"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Callers see connected=False; the next connect() resubscribes
            self._connected = False
            logger.error("Realtime listener stopped", error=str(e), exc_info=True)

    async def _dispatch(self, data) -> None:
        try:
            event = SetlistEvent.model_validate(json.loads(data))
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning("Dropping malformed setlist event", error=str(e))
            return
        for handler in list(self._handlers.get(event.show_id, ())):
            try:
                await handler(event)
            except Exception as e:
                logger.error("Setlist event handler failed", show_id=event.show_id, error=str(e), exc_info=True)
