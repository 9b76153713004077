"""
Platform access-token management.

Tokens are obtained with the OAuth2 client-credentials grant, cached per
platform and refreshed ``refresh_margin`` before their declared expiry so a
token never expires in the middle of an outbound call.

Refresh is single-flight: while a fetch for a platform is in progress every
other caller awaits that same fetch instead of issuing its own request.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from app.core.errors import (
    ConfigurationMissing,
    PlatformApiError,
    TokenFetchFailed,
    UnsupportedPlatform,
)
from app.schemas.delivery import TokenStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_EXPIRES_IN = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PlatformCredential:
    """One live credential per platform. Replaced as a whole, never mutated."""

    platform: str
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class OAuthClientCredentialsFetcher:
    """Fetches a token with a form-encoded client-credentials request.

    ``id_field``/``secret_field`` name the form fields carrying the client id
    and secret (Foodpanda calls them ``username``/``password``).
    """

    def __init__(
        self,
        platform: str,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: Optional[str] = None,
        id_field: str = "client_id",
        secret_field: str = "client_secret",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.platform = platform
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.id_field = id_field
        self.secret_field = secret_field
        self.http_client = http_client
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _form(self) -> Dict[str, str]:
        form = {
            self.id_field: self.client_id,
            self.secret_field: self.client_secret,
            "grant_type": "client_credentials",
        }
        if self.scope:
            form["scope"] = self.scope
        return form

    async def __call__(self) -> Dict[str, Any]:
        if not self.configured:
            raise ConfigurationMissing(f"{self.platform} OAuth client credentials are not configured")
        try:
            if self.http_client is not None:
                response = await self.http_client.post(self.token_url, data=self._form(), timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.token_url, data=self._form())
        except httpx.HTTPError as e:
            raise TokenFetchFailed(self.platform, f"token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            raise TokenFetchFailed(self.platform, f"HTTP {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError as e:
            raise TokenFetchFailed(self.platform, "token response is not JSON") from e
        if not isinstance(data, dict) or not data.get("access_token"):
            raise TokenFetchFailed(self.platform, "token response has no access_token")
        return data


class TokenManager:
    """Caches one credential per platform and single-flights refreshes."""

    def __init__(
        self,
        fetchers: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]],
        refresh_margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._fetchers = dict(fetchers)
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._credentials: Dict[str, PlatformCredential] = {}
        self._inflight: Dict[str, "asyncio.Task[PlatformCredential]"] = {}
        self._lock = asyncio.Lock()

    def _fetcher(self, platform: str):
        fetcher = self._fetchers.get(platform)
        if fetcher is None:
            raise UnsupportedPlatform(platform)
        return fetcher

    def _is_stale(self, credential: Optional[PlatformCredential]) -> bool:
        if credential is None:
            return True
        return self._clock() >= credential.expires_at - self.refresh_margin

    async def _fetch(self, platform: str) -> PlatformCredential:
        fetcher = self._fetcher(platform)
        logger.info(f"Fetching {platform} access token")
        try:
            data = await fetcher()
        except (ConfigurationMissing, TokenFetchFailed):
            raise
        except Exception as e:
            raise TokenFetchFailed(platform, str(e)) from e

        try:
            expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        credential = PlatformCredential(
            platform=platform,
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=self._clock() + timedelta(seconds=expires_in),
            metadata={k: v for k, v in data.items() if k in ("token_type", "scope")},
        )
        self._credentials[platform] = credential
        logger.info(f"{platform} access token cached until {credential.expires_at.isoformat()}")
        return credential

    def _start_fetch(self, platform: str) -> "asyncio.Task[PlatformCredential]":
        """Create the shared fetch task. Caller holds the lock."""
        task = asyncio.ensure_future(self._fetch(platform))
        self._inflight[platform] = task

        def _done(t: "asyncio.Task[PlatformCredential]"):
            if self._inflight.get(platform) is t:
                del self._inflight[platform]
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"{platform} token fetch failed: {t.exception()}")

        task.add_done_callback(_done)
        return task

    async def _credential(self, platform: str, force: bool = False) -> PlatformCredential:
        self._fetcher(platform)
        async with self._lock:
            cached = self._credentials.get(platform)
            if not force and not self._is_stale(cached):
                return cached
            task = self._inflight.get(platform) or self._start_fetch(platform)
        # Await outside the lock; shield so one caller's cancellation or
        # timeout does not cancel the fetch other callers are waiting on.
        return await asyncio.shield(task)

    async def get_token(self, platform: str) -> str:
        """Cached token, or the result of the (shared) refresh when stale/absent."""
        return (await self._credential(platform)).access_token

    async def force_refresh(self, platform: str) -> str:
        return (await self._credential(platform, force=True)).access_token

    def is_configured(self, platform: str) -> bool:
        """False when the platform's fetcher has no credentials to fetch with."""
        return getattr(self._fetcher(platform), "configured", True)

    def invalidate(self, platform: str):
        """Drop the cached credential so the next caller refetches."""
        self._credentials.pop(platform, None)

    def cached_credential(self, platform: str) -> Optional[PlatformCredential]:
        return self._credentials.get(platform)

    def status(self, platform: str) -> TokenStatus:
        fetcher = self._fetcher(platform)
        credential = self._credentials.get(platform)
        return TokenStatus(
            platform=platform,
            configured=bool(getattr(fetcher, "configured", True)),
            cached=credential is not None,
            valid_until=credential.expires_at if credential else None,
            refresh_due=self._is_stale(credential),
            refresh_in_flight=platform in self._inflight,
        )

    async def with_token(self, platform: str, call: Callable[[str], Awaitable[T]]) -> T:
        """Run ``call(token)``; on a 401 from the platform refetch once and retry."""
        token = await self.get_token(platform)
        try:
            return await call(token)
        except PlatformApiError as e:
            if e.upstream_status != 401:
                raise
            logger.warning(f"{platform} rejected the cached token (401), refreshing and retrying once")
            async with self._lock:
                current = self._credentials.get(platform)
                if current is not None and current.access_token == token:
                    del self._credentials[platform]
            token = await self.get_token(platform)
            return await call(token)
