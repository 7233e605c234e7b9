"""
Unit tests for the Spotify catalog client, with HTTP served by httpx.MockTransport.
"""

import httpx
import pytest

from setlist_sync.catalog_client import SpotifyCatalogClient
from setlist_sync.circuit_breaker import CircuitBreaker, CircuitBreakerState
from setlist_sync.errors import ExternalSourceUnavailable

TOP_TRACKS = {
    "tracks": [
        {"id": "t1", "name": "Hit", "popularity": 80, "album": {"name": "First"}, "duration_ms": 200000},
    ]
}

ALBUMS = {"items": [{"id": "al1"}, {"id": "al2"}], "next": None}

ALBUM_DETAILS = {
    "albums": [
        {
            "name": "First",
            "tracks": {"items": [
                {"id": "t1", "name": "Hit"},
                {"id": "t2", "name": "Deep Cut"},
            ]},
        },
        {
            "name": "Live",
            "tracks": {"items": [
                {"id": "t9", "name": "HIT"},
                {"id": "t3", "name": "Closer"},
            ]},
        },
        None,
    ]
}


def _spotify_handler(requests):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path
        if request.url.host == "accounts.spotify.com":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if path.endswith("/top-tracks"):
            return httpx.Response(200, json=TOP_TRACKS)
        if path.endswith("/albums") and "/artists/" in path:
            return httpx.Response(200, json=ALBUMS)
        if path == "/v1/albums":
            return httpx.Response(200, json=ALBUM_DETAILS)
        return httpx.Response(404, json={"error": "not found"})
    return handler


def _client(handler) -> SpotifyCatalogClient:
    return SpotifyCatalogClient(
        client_id="id",
        client_secret="secret",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        requests_per_second=1000,
        max_retries=0,
    )


class TestSpotifyCatalogClient:
    @pytest.mark.asyncio
    async def test_merges_top_and_album_tracks(self):
        requests = []
        client = _client(_spotify_handler(requests))

        catalog = await client.fetch_artist_tracks("X123")

        assert [t.id for t in catalog.tracks] == ["t1", "t2", "t3"]
        assert catalog.tracks[0].album == "First"
        assert catalog.tracks[2].album == "Live"
        assert catalog.tracks[0].popularity == 80

        api_calls = [r for r in requests if r.url.host == "api.spotify.com"]
        assert all(r.headers["Authorization"] == "Bearer tok" for r in api_calls)
        album_batch = [r for r in api_calls if r.url.path == "/v1/albums"][0]
        assert album_batch.url.params["ids"] == "al1,al2"

    @pytest.mark.asyncio
    async def test_token_is_reused(self):
        requests = []
        client = _client(_spotify_handler(requests))

        await client.fetch_artist_tracks("X123")
        await client.fetch_artist_tracks("X123")

        token_calls = [r for r in requests if r.url.host == "accounts.spotify.com"]
        assert len(token_calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_becomes_unavailable(self):
        client = _client(lambda request: (
            httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            if request.url.host == "accounts.spotify.com"
            else httpx.Response(503)
        ))

        with pytest.raises(ExternalSourceUnavailable) as exc_info:
            await client.fetch_artist_tracks("X123")

        assert exc_info.value.source == "spotify"

    @pytest.mark.asyncio
    async def test_unknown_artist_becomes_unavailable(self):
        requests = []
        handler = _spotify_handler(requests)

        def not_found(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/top-tracks"):
                requests.append(request)
                return httpx.Response(404, json={"error": {"status": 404}})
            return handler(request)

        client = _client(not_found)

        with pytest.raises(ExternalSourceUnavailable):
            await client.fetch_artist_tracks("nope")

        # 4xx is not retried
        assert len([r for r in requests if r.url.path.endswith("/top-tracks")]) == 1

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self):
        requests = []
        client = _client(_spotify_handler(requests))
        client.circuit_breaker = CircuitBreaker(failure_threshold=1, timeout_seconds=60, name="spotify")
        client.circuit_breaker.record_failure()

        with pytest.raises(ExternalSourceUnavailable):
            await client.fetch_artist_tracks("X123")

        assert requests == []

    @pytest.mark.asyncio
    async def test_context_manager_closes_owned_client(self):
        async with SpotifyCatalogClient("id", "secret") as client:
            assert not client.http_client.is_closed
        assert client.http_client.is_closed


def _token_then(api_response):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "accounts.spotify.com":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        return api_response(request)
    return handler


class TestMalformedResponses:
    @pytest.mark.asyncio
    async def test_html_maintenance_page_becomes_unavailable(self):
        client = _client(_token_then(lambda request: httpx.Response(200, text="<html>maintenance</html>")))

        with pytest.raises(ExternalSourceUnavailable, match="malformed response"):
            await client.fetch_artist_tracks("X123")

    @pytest.mark.asyncio
    async def test_non_object_json_becomes_unavailable(self):
        client = _client(_token_then(lambda request: httpx.Response(200, json=["not", "an", "object"])))

        with pytest.raises(ExternalSourceUnavailable):
            await client.fetch_artist_tracks("X123")

    @pytest.mark.asyncio
    async def test_token_response_without_access_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "accounts.spotify.com":
                return httpx.Response(200, json={"token_type": "bearer"})
            return httpx.Response(200, json=TOP_TRACKS)

        client = _client(handler)

        with pytest.raises(ExternalSourceUnavailable):
            await client.fetch_artist_tracks("X123")
        assert client.access_token is None

    @pytest.mark.asyncio
    async def test_malformed_track_is_skipped(self):
        requests = []
        handler = _spotify_handler(requests)

        def bad_top_track(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/top-tracks"):
                return httpx.Response(200, json={"tracks": [
                    {"id": "t0", "name": {"title": "Broken"}},
                    TOP_TRACKS["tracks"][0],
                ]})
            return handler(request)

        catalog = await _client(bad_top_track).fetch_artist_tracks("X123")

        assert [t.id for t in catalog.tracks] == ["t1", "t2", "t3"]


class TestCircuitBreakerIntegration:
    @pytest.mark.asyncio
    async def test_unknown_ids_do_not_open_the_circuit(self):
        requests = []
        handler = _spotify_handler(requests)

        def bad_ids(request: httpx.Request) -> httpx.Response:
            if "/artists/bad" in request.url.path:
                return httpx.Response(404, json={"error": {"status": 404}})
            return handler(request)

        client = _client(bad_ids)

        for n in range(client.circuit_breaker.failure_threshold + 1):
            with pytest.raises(ExternalSourceUnavailable):
                await client.fetch_artist_tracks(f"bad{n}")

        assert client.circuit_breaker.state == CircuitBreakerState.CLOSED
        catalog = await client.fetch_artist_tracks("good")
        assert len(catalog) == 3

    @pytest.mark.asyncio
    async def test_server_errors_open_the_circuit(self):
        client = _client(_token_then(lambda request: httpx.Response(503)))
        client.circuit_breaker = CircuitBreaker(failure_threshold=2, timeout_seconds=60, name="spotify")

        for _ in range(2):
            with pytest.raises(ExternalSourceUnavailable):
                await client.fetch_artist_tracks("X123")

        assert client.circuit_breaker.is_open
        with pytest.raises(ExternalSourceUnavailable, match="is OPEN"):
            await client.fetch_artist_tracks("X123")
