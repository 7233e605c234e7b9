"""
Track Catalog Fetcher
=====================

Reads an artist's full track catalog from the Spotify Web API:

- OAuth 2.0 Client Credentials Flow with token reuse until expiry
- Top tracks first (they carry popularity), then every album and single
- Tracks de-duplicated by id and by case-folded title
- Interval rate limiting, circuit breaker and exponential backoff per request

API Documentation: https://developer.spotify.com/documentation/web-api
"""

import base64
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from .circuit_breaker import CircuitBreaker
from .errors import CircuitBreakerOpenException, ExternalSourceUnavailable, RetryExhausted
from .metrics import catalog_fetch_duration_seconds, catalog_fetches_total
from .models import Track, TrackCatalog
from .rate_limiter import RateLimiter
from .retry_handler import fetch_with_exponential_backoff

logger = structlog.get_logger(__name__)

SPOTIFY_API_URL = "https://api.spotify.com/v1"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"

ALBUM_PAGE_SIZE = 50
ALBUMS_PER_BATCH = 20  # /albums?ids= accepts at most 20 ids
MAX_ALBUMS = 200
TOKEN_EXPIRY_MARGIN = 60

# A 200 whose body is not the documented JSON object (maintenance pages, truncated bodies)
MALFORMED_PAYLOAD_ERRORS = (ValueError, KeyError, TypeError, AttributeError)


class TrackCatalogSource(ABC):
    """External music-catalog source"""

    @abstractmethod
    async def fetch_artist_tracks(self, catalog_id: str) -> TrackCatalog:
        """
        Fetch the complete track catalog for an artist.

        Raises:
            ExternalSourceUnavailable: the catalog could not be read
        """
        ...


def _payload(response: httpx.Response) -> Dict[str, Any]:
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object from {response.url.path}, got {type(data).__name__}")
    return data


def _chunks(items: List[str], size: int) -> Iterator[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SpotifyCatalogClient(TrackCatalogSource):
    """
    Spotify catalog client.

    Usage:
        async with SpotifyCatalogClient(client_id, client_secret) as client:
            catalog = await client.fetch_artist_tracks("0OdUWJ0sBjDrqHygGUXeCF")
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: Optional[httpx.AsyncClient] = None,
        market: str = "US",
        requests_per_second: float = 3.0,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        timeout: float = 10.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.market = market
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.rate_limiter = RateLimiter(requests_per_second=requests_per_second)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            timeout_seconds=60,
            name="spotify"
        )

        self.access_token: Optional[str] = None
        self.token_expires_at = 0.0

    async def __aenter__(self) -> "SpotifyCatalogClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def _get_access_token(self) -> str:
        if self.access_token and time.time() < self.token_expires_at:
            return self.access_token

        auth_b64 = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()

        async def _token_call() -> Dict[str, Any]:
            response = await self.http_client.post(
                SPOTIFY_TOKEN_URL,
                headers={
                    'Authorization': f'Basic {auth_b64}',
                    'Content-Type': 'application/x-www-form-urlencoded'
                },
                data={'grant_type': 'client_credentials'},
            )
            response.raise_for_status()
            return _payload(response)

        token_data = await fetch_with_exponential_backoff(
            _token_call,
            max_retries=self.max_retries,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            logger_context={'api': 'spotify', 'method': 'token'}
        )

        if not token_data.get('access_token'):
            raise ValueError("token response without access_token")
        self.access_token = token_data['access_token']
        self.token_expires_at = time.time() + int(token_data.get('expires_in', 3600)) - TOKEN_EXPIRY_MARGIN
        logger.info("Spotify access token refreshed")
        return self.access_token

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET a Spotify endpoint (absolute URL or path) through the resilience stack."""
        if not url.startswith("http"):
            url = f"{SPOTIFY_API_URL}{url}"

        async def _request() -> Dict[str, Any]:
            token = await self._get_access_token()

            async def _api_call() -> Dict[str, Any]:
                await self.rate_limiter.wait()
                response = await self.http_client.get(
                    url,
                    params=params,
                    headers={'Authorization': f'Bearer {token}'}
                )
                response.raise_for_status()
                return _payload(response)

            return await fetch_with_exponential_backoff(
                _api_call,
                max_retries=self.max_retries,
                initial_delay=self.initial_delay,
                max_delay=self.max_delay,
                logger_context={'api': 'spotify', 'url': url}
            )

        return await self.circuit_breaker.call(_request)

    async def _top_tracks(self, catalog_id: str) -> List[Dict[str, Any]]:
        data = await self._get(f"/artists/{catalog_id}/top-tracks", {'market': self.market})
        return data.get('tracks') or []

    async def _album_ids(self, catalog_id: str) -> List[str]:
        album_ids: List[str] = []
        url: Optional[str] = f"/artists/{catalog_id}/albums"
        params: Optional[Dict[str, Any]] = {
            'include_groups': 'album,single',
            'market': self.market,
            'limit': ALBUM_PAGE_SIZE,
        }

        while url and len(album_ids) < MAX_ALBUMS:
            page = await self._get(url, params)
            for album in page.get('items') or []:
                if album.get('id') and album['id'] not in album_ids:
                    album_ids.append(album['id'])
            # "next" already carries the query string
            url, params = page.get('next'), None

        return album_ids[:MAX_ALBUMS]

    async def _album_tracks(self, album_ids: List[str]) -> List[Dict[str, Any]]:
        tracks: List[Dict[str, Any]] = []
        for batch in _chunks(album_ids, ALBUMS_PER_BATCH):
            data = await self._get("/albums", {'ids': ",".join(batch), 'market': self.market})
            for album in data.get('albums') or []:
                if not album:
                    continue
                for item in (album.get('tracks') or {}).get('items') or []:
                    tracks.append({**item, 'album': {'name': album.get('name')}})
        return tracks

    @staticmethod
    def _extract_track(item: Dict[str, Any]) -> Optional[Track]:
        if not item or not item.get('id'):
            return None
        return Track(
            id=item['id'],
            name=item.get('name') or "",
            duration_ms=item.get('duration_ms'),
            popularity=item.get('popularity') or 0,
            album=(item.get('album') or {}).get('name'),
            preview_url=item.get('preview_url'),
            uri=item.get('uri'),
        )

    def _merge(self, *sources: List[Dict[str, Any]]) -> List[Track]:
        tracks: List[Track] = []
        seen_ids = set()
        seen_titles = set()
        for source in sources:
            for item in source:
                try:
                    track = self._extract_track(item)
                except ValidationError as e:
                    logger.debug("Skipping malformed catalog track", track_id=item.get('id'), errors=e.error_count())
                    continue
                if track is None:
                    continue
                title_key = track.name.casefold().strip()
                if track.id in seen_ids or (title_key and title_key in seen_titles):
                    continue
                seen_ids.add(track.id)
                if title_key:
                    seen_titles.add(title_key)
                tracks.append(track)
        return tracks

    async def fetch_artist_tracks(self, catalog_id: str) -> TrackCatalog:
        """Fetch top tracks plus every album/single track for an artist."""
        started = time.monotonic()
        try:
            top_tracks = await self._top_tracks(catalog_id)
            album_ids = await self._album_ids(catalog_id)
            album_tracks = await self._album_tracks(album_ids)
            catalog = TrackCatalog(tracks=self._merge(top_tracks, album_tracks))
        except (RetryExhausted, CircuitBreakerOpenException, httpx.HTTPError) as e:
            catalog_fetches_total.labels(status="error").inc()
            logger.error("Spotify catalog fetch failed", catalog_id=catalog_id, error=str(e))
            raise ExternalSourceUnavailable("spotify", str(e)) from e
        except MALFORMED_PAYLOAD_ERRORS as e:
            catalog_fetches_total.labels(status="malformed").inc()
            logger.error("Spotify returned an unreadable payload", catalog_id=catalog_id, error=str(e))
            raise ExternalSourceUnavailable("spotify", f"malformed response: {e}") from e
        finally:
            catalog_fetch_duration_seconds.observe(time.monotonic() - started)

        catalog_fetches_total.labels(status="empty" if catalog.is_empty else "ok").inc()
        logger.info(
            "Spotify catalog fetched",
            catalog_id=catalog_id,
            albums=len(album_ids),
            tracks=len(catalog)
        )
        return catalog
