"""Tests for platform token caching and single-flight refresh."""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.core.errors import ConfigurationMissing, PlatformApiError, TokenFetchFailed, UnsupportedPlatform
from app.services.delivery.token_manager import OAuthClientCredentialsFetcher, TokenManager


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class CountingFetcher:
    """Token fetcher that counts calls and can be held open or made to fail."""

    configured = True

    def __init__(self, expires_in: int = 3600, delay: float = 0.0):
        self.calls = 0
        self.expires_in = expires_in
        self.delay = delay
        self.fail_with = None

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return {"access_token": f"token-{self.calls}", "expires_in": self.expires_in, "token_type": "Bearer"}


class TestTokenManager:

    @pytest.mark.asyncio
    async def test_token_is_cached(self):
        fetcher = CountingFetcher()
        manager = TokenManager({"ubereats": fetcher}, clock=FakeClock())
        assert await manager.get_token("ubereats") == "token-1"
        assert await manager.get_token("ubereats") == "token-1"
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self):
        fetcher = CountingFetcher(delay=0.05)
        manager = TokenManager({"ubereats": fetcher}, clock=FakeClock())
        tokens = await asyncio.gather(*(manager.get_token("ubereats") for _ in range(20)))
        assert fetcher.calls == 1
        assert set(tokens) == {"token-1"}

    @pytest.mark.asyncio
    async def test_refresh_inside_margin(self):
        clock = FakeClock()
        fetcher = CountingFetcher(expires_in=3600)
        manager = TokenManager({"ubereats": fetcher}, refresh_margin=timedelta(minutes=5), clock=clock)
        await manager.get_token("ubereats")

        clock.advance(minutes=54)
        assert await manager.get_token("ubereats") == "token-1"

        clock.advance(minutes=1)
        assert await manager.get_token("ubereats") == "token-2"
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_credential(self):
        clock = FakeClock()
        fetcher = CountingFetcher(expires_in=3600)
        manager = TokenManager({"ubereats": fetcher}, clock=clock)
        await manager.get_token("ubereats")
        previous = manager.cached_credential("ubereats")

        clock.advance(minutes=58)
        fetcher.fail_with = TokenFetchFailed("ubereats", "HTTP 503")
        with pytest.raises(TokenFetchFailed):
            await manager.get_token("ubereats")
        assert manager.cached_credential("ubereats") is previous

    @pytest.mark.asyncio
    async def test_failure_is_shared_by_all_waiters(self):
        fetcher = CountingFetcher(delay=0.02)
        fetcher.fail_with = TokenFetchFailed("ubereats", "HTTP 500")
        manager = TokenManager({"ubereats": fetcher}, clock=FakeClock())
        results = await asyncio.gather(
            *(manager.get_token("ubereats") for _ in range(5)), return_exceptions=True
        )
        assert fetcher.calls == 1
        assert all(isinstance(r, TokenFetchFailed) for r in results)

        # The next caller starts a fresh attempt
        fetcher.fail_with = None
        assert await manager.get_token("ubereats") == "token-2"

    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_is_wrapped(self):
        fetcher = CountingFetcher()
        fetcher.fail_with = RuntimeError("boom")
        manager = TokenManager({"ubereats": fetcher}, clock=FakeClock())
        with pytest.raises(TokenFetchFailed):
            await manager.get_token("ubereats")

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_fetch(self):
        fetcher = CountingFetcher(delay=0.05)
        manager = TokenManager({"ubereats": fetcher}, clock=FakeClock())

        impatient = asyncio.ensure_future(manager.get_token("ubereats"))
        patient = asyncio.ensure_future(manager.get_token("ubereats"))
        await asyncio.sleep(0.01)
        impatient.cancel()

        assert await patient == "token-1"
        assert fetcher.calls == 1
        with pytest.raises(asyncio.CancelledError):
            await impatient

    @pytest.mark.asyncio
    async def test_force_refresh(self):
        fetcher = CountingFetcher()
        manager = TokenManager({"ubereats": fetcher}, clock=FakeClock())
        await manager.get_token("ubereats")
        assert await manager.force_refresh("ubereats") == "token-2"

    @pytest.mark.asyncio
    async def test_platforms_are_independent(self):
        uber = CountingFetcher()
        panda = CountingFetcher()
        manager = TokenManager({"ubereats": uber, "foodpanda": panda}, clock=FakeClock())
        await manager.get_token("ubereats")
        await manager.get_token("foodpanda")
        manager.invalidate("ubereats")
        await manager.get_token("ubereats")
        assert uber.calls == 2
        assert panda.calls == 1

    @pytest.mark.asyncio
    async def test_unknown_platform(self):
        manager = TokenManager({}, clock=FakeClock())
        with pytest.raises(UnsupportedPlatform):
            await manager.get_token("doordash")

    @pytest.mark.asyncio
    async def test_with_token_retries_once_on_401(self):
        fetcher = CountingFetcher()
        manager = TokenManager({"ubereats": fetcher}, clock=FakeClock())
        seen = []

        async def call(token):
            seen.append(token)
            if len(seen) == 1:
                raise PlatformApiError("ubereats", "unauthorized", upstream_status=401)
            return "done"

        assert await manager.with_token("ubereats", call) == "done"
        assert seen == ["token-1", "token-2"]

    @pytest.mark.asyncio
    async def test_with_token_does_not_retry_other_errors(self):
        fetcher = CountingFetcher()
        manager = TokenManager({"ubereats": fetcher}, clock=FakeClock())
        calls = []

        async def call(token):
            calls.append(token)
            raise PlatformApiError("ubereats", "server error", upstream_status=500)

        with pytest.raises(PlatformApiError):
            await manager.with_token("ubereats", call)
        assert len(calls) == 1
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_status_never_exposes_token(self):
        fetcher = CountingFetcher()
        manager = TokenManager({"ubereats": fetcher}, clock=FakeClock())
        assert manager.status("ubereats").cached is False
        await manager.get_token("ubereats")
        status = manager.status("ubereats")
        assert status.cached is True
        assert status.refresh_due is False
        assert "token-1" not in status.model_dump_json()


class TestOAuthClientCredentialsFetcher:

    @pytest.mark.asyncio
    async def test_posts_client_credentials_form(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = request.content.decode()
            captured["url"] = str(request.url)
            return httpx.Response(200, json={"access_token": "abc", "expires_in": 2592000})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = OAuthClientCredentialsFetcher(
                "ubereats",
                "https://auth.uber.com/oauth/v2/token",
                "client-id",
                "client-secret",
                scope="eats.store",
                http_client=client,
            )
            data = await fetcher()

        assert data["access_token"] == "abc"
        assert captured["url"] == "https://auth.uber.com/oauth/v2/token"
        assert "client_id=client-id" in captured["body"]
        assert "client_secret=client-secret" in captured["body"]
        assert "grant_type=client_credentials" in captured["body"]
        assert "scope=eats.store" in captured["body"]

    @pytest.mark.asyncio
    async def test_custom_field_names(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = request.content.decode()
            return httpx.Response(200, json={"access_token": "fp"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = OAuthClientCredentialsFetcher(
                "foodpanda",
                "https://fp.example.com/v2/login",
                "user",
                "pass",
                id_field="username",
                secret_field="password",
                http_client=client,
            )
            await fetcher()

        assert "username=user" in captured["body"]
        assert "password=pass" in captured["body"]

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        fetcher = OAuthClientCredentialsFetcher("ubereats", "https://auth.uber.com/oauth/v2/token", "", "")
        assert not fetcher.configured
        with pytest.raises(ConfigurationMissing):
            await fetcher()

    @pytest.mark.asyncio
    async def test_missing_credentials_surface_through_manager(self):
        fetcher = OAuthClientCredentialsFetcher("ubereats", "https://auth.uber.com/oauth/v2/token", "", "")
        manager = TokenManager({"ubereats": fetcher})
        with pytest.raises(ConfigurationMissing):
            await manager.get_token("ubereats")
        assert manager.status("ubereats").configured is False

    @pytest.mark.asyncio
    async def test_error_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": "invalid_client"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = OAuthClientCredentialsFetcher(
                "ubereats", "https://auth.uber.com/oauth/v2/token", "id", "secret", http_client=client
            )
            with pytest.raises(TokenFetchFailed):
                await fetcher()

    @pytest.mark.asyncio
    async def test_response_without_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"expires_in": 3600})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = OAuthClientCredentialsFetcher(
                "ubereats", "https://auth.uber.com/oauth/v2/token", "id", "secret", http_client=client
            )
            with pytest.raises(TokenFetchFailed):
                await fetcher()
