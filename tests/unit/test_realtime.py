"""
Unit tests for the Redis realtime channel with a mocked redis client.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from setlist_sync.realtime import RedisRealtimeChannel, SetlistEvent, channel_name


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.publish = AsyncMock(return_value=1)
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    client.pubsub.return_value = pubsub
    return client


class TestRedisRealtimeChannel:
    @pytest.mark.asyncio
    async def test_publish_serializes_to_show_channel(self, redis_client):
        channel = RedisRealtimeChannel(redis_client)
        await channel.connect()

        event = SetlistEvent(type="vote", show_id="show-1", song_id="t1", origin="node")
        await channel.publish(event)

        name, payload = redis_client.publish.await_args.args
        assert name == channel_name("show-1") == "setlist:show-1"
        assert SetlistEvent.model_validate_json(payload) == event

    @pytest.mark.asyncio
    async def test_dispatch_routes_and_isolates_handlers(self, redis_client):
        channel = RedisRealtimeChannel(redis_client)
        failing = AsyncMock(side_effect=RuntimeError("handler bug"))
        received = AsyncMock()
        channel._handlers["show-1"] = [failing, received]

        event = SetlistEvent(type="vote", show_id="show-1", song_id="t1")
        await channel._dispatch(event.model_dump_json())
        await channel._dispatch("{not json")

        failing.assert_awaited_once()
        received.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_subscribe_once_per_show(self, redis_client):
        channel = RedisRealtimeChannel(redis_client)
        await channel.connect()
        pubsub = redis_client.pubsub.return_value

        async def _messages():
            if False:
                yield {}

        pubsub.listen = _messages
        await channel.subscribe("show-1", AsyncMock())
        await channel.subscribe("show-1", AsyncMock())

        pubsub.subscribe.assert_awaited_once_with("setlist:show-1")

        await channel.disconnect()
        assert not channel.connected
        pubsub.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_failure_propagates(self, redis_client):
        redis_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        channel = RedisRealtimeChannel(redis_client)

        with pytest.raises(ConnectionError):
            await channel.connect()
        assert not channel.connected

    @pytest.mark.asyncio
    async def test_reconnect_resubscribes_registered_shows(self, redis_client):
        pubsubs = []

        def _new_pubsub():
            pubsub = MagicMock()
            pubsub.subscribe = AsyncMock()
            pubsub.aclose = AsyncMock()

            async def _dropped():
                raise ConnectionError("connection reset by peer")
                yield {}

            pubsub.listen = _dropped
            pubsubs.append(pubsub)
            return pubsub

        redis_client.pubsub.side_effect = _new_pubsub
        channel = RedisRealtimeChannel(redis_client)
        handler = AsyncMock()

        await channel.subscribe("show-1", handler)
        await channel._listener
        assert not channel.connected

        await channel.connect()

        assert channel.connected
        assert len(pubsubs) == 2
        pubsubs[0].aclose.assert_awaited_once()
        pubsubs[1].subscribe.assert_awaited_once_with("setlist:show-1")
        assert channel._listener is not None

        await channel.subscribe("show-1", handler)
        pubsubs[1].subscribe.assert_awaited_once()

        event = SetlistEvent(type="vote", show_id="show-1", song_id="t1", origin="elsewhere")
        await channel._dispatch(event.model_dump_json())
        handler.assert_awaited_once_with(event)

        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_subscriptions_survive_disconnect(self, redis_client):
        channel = RedisRealtimeChannel(redis_client)
        pubsub = redis_client.pubsub.return_value

        async def _idle():
            if False:
                yield {}

        pubsub.listen = _idle
        await channel.subscribe("show-1", AsyncMock())
        await channel.disconnect()
        pubsub.subscribe.reset_mock()

        await channel.connect()

        pubsub.subscribe.assert_awaited_once_with("setlist:show-1")
        await channel.disconnect()
