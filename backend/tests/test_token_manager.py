"""
Unit Tests for the MTN MoMo Token Manager
========================================

Tests:
1. Upstream request format (Basic auth, subscription key)
2. Caching and refresh-before-expiry
3. Concurrent callers share one refresh
4. Failure clears the token and surfaces TokenRefreshFailed
5. Lifecycle: background timer, stop, invalidate
"""

import asyncio
import base64

import httpx
import pytest

from settlement.errors import TokenRefreshFailed
from settlement.token_manager import MoMoTokenManager


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _manager(handler, clock=None, **kwargs):
    return MoMoTokenManager(
        subscription_key="sub-key",
        api_user="api-user",
        api_key="api-key",
        env="sandbox",
        transport=httpx.MockTransport(handler),
        clock=clock or FakeClock(),
        **kwargs
    )


def _token_handler(calls, expires_in=60, status_code=200):
    async def handler(request):
        calls.append(request)
        await asyncio.sleep(0)
        if status_code != 200:
            return httpx.Response(status_code, json={"error": "invalid_client"})
        body = {"access_token": f"token-{len(calls)}", "token_type": "access_token"}
        if expires_in is not None:
            body["expires_in"] = expires_in
        return httpx.Response(200, json=body)
    return handler


class TestTokenRequest:

    @pytest.mark.asyncio
    async def test_request_uses_basic_auth_and_subscription_key(self):
        calls = []
        manager = _manager(_token_handler(calls))

        token = await manager.get_token()

        assert token == "token-1"
        request = calls[0]
        assert request.method == "POST"
        assert str(request.url) == "https://sandbox.momodeveloper.mtn.com/collection/token/"
        expected = base64.b64encode(b"api-user:api-key").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        assert request.headers["Ocp-Apim-Subscription-Key"] == "sub-key"

    @pytest.mark.asyncio
    async def test_missing_expires_in_defaults_to_60(self):
        calls = []
        clock = FakeClock()
        manager = _manager(_token_handler(calls, expires_in=None), clock=clock)

        await manager.get_token()

        assert manager.status().expires_in == 60


class TestCaching:

    @pytest.mark.asyncio
    async def test_valid_token_is_cached(self):
        calls = []
        clock = FakeClock()
        manager = _manager(_token_handler(calls), clock=clock)

        first = await manager.get_token()
        clock.advance(30)
        second = await manager.get_token()

        assert first == second
        assert len(calls) == 1
        assert manager.status().state == "valid"

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed(self):
        calls = []
        clock = FakeClock()
        manager = _manager(_token_handler(calls), clock=clock)

        await manager.get_token()
        clock.advance(55)  # within the 10s refresh threshold
        assert manager.status().state == "expiring"

        token = await manager.get_token()

        assert token == "token-2"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_expired_token_counts_as_absent(self):
        calls = []
        clock = FakeClock()
        manager = _manager(_token_handler(calls), clock=clock)

        await manager.get_token()
        clock.advance(61)

        assert manager.status().state == "absent"
        assert await manager.get_token() == "token-2"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        calls = []
        manager = _manager(_token_handler(calls))

        tokens = await asyncio.gather(*[manager.get_token() for _ in range(10)])

        assert len(calls) == 1
        assert set(tokens) == {"token-1"}

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self):
        calls = []
        manager = _manager(_token_handler(calls))

        await manager.get_token()
        manager.invalidate()

        assert manager.status().state == "absent"
        assert await manager.get_token() == "token-2"


class TestRefreshFailure:

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        calls = []
        manager = _manager(_token_handler(calls, status_code=401))

        with pytest.raises(TokenRefreshFailed) as exc_info:
            await manager.get_token()

        assert exc_info.value.details["status_code"] == 401
        assert manager.status().state == "absent"

    @pytest.mark.asyncio
    async def test_failure_clears_previous_token(self):
        clock = FakeClock()
        responses = iter([
            httpx.Response(200, json={"access_token": "token-1", "expires_in": 60}),
            httpx.Response(500, text="upstream down"),
        ])

        def handler(request):
            return next(responses)

        manager = _manager(handler, clock=clock)
        await manager.get_token()
        clock.advance(55)

        with pytest.raises(TokenRefreshFailed):
            await manager.get_token()

        assert manager.status().state == "absent"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        manager = _manager(handler)

        with pytest.raises(TokenRefreshFailed):
            await manager.get_token()

    @pytest.mark.asyncio
    async def test_concurrent_callers_all_see_failure(self):
        calls = []
        manager = _manager(_token_handler(calls, status_code=503))

        results = await asyncio.gather(
            *[manager.get_token() for _ in range(3)],
            return_exceptions=True
        )

        assert len(calls) == 1
        assert all(isinstance(r, TokenRefreshFailed) for r in results)

    @pytest.mark.asyncio
    async def test_retry_after_failure_succeeds(self):
        responses = iter([
            httpx.Response(503),
            httpx.Response(200, json={"access_token": "token-ok", "expires_in": 60}),
        ])

        manager = _manager(lambda request: next(responses))

        with pytest.raises(TokenRefreshFailed):
            await manager.get_token()
        assert await manager.get_token() == "token-ok"


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_background_timer_refreshes_before_expiry(self):
        calls = []
        manager = MoMoTokenManager(
            subscription_key="sub-key",
            api_user="api-user",
            api_key="api-key",
            env="sandbox",
            transport=httpx.MockTransport(_token_handler(calls, expires_in=2)),
            refresh_threshold=1.9
        )

        async with manager:
            await manager.get_token()
            await asyncio.sleep(0.3)
            assert len(calls) >= 2

        count = len(calls)
        await asyncio.sleep(0.2)
        assert len(calls) == count
        assert manager.status().state == "absent"

    @pytest.mark.asyncio
    async def test_no_timer_when_not_started(self):
        calls = []
        manager = MoMoTokenManager(
            subscription_key="sub-key",
            api_user="api-user",
            api_key="api-key",
            env="sandbox",
            transport=httpx.MockTransport(_token_handler(calls, expires_in=2)),
            refresh_threshold=1.9
        )

        await manager.get_token()
        await asyncio.sleep(0.3)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_refresh(self):
        release = asyncio.Event()

        async def handler(request):
            await release.wait()
            return httpx.Response(200, json={"access_token": "late", "expires_in": 60})

        manager = _manager(handler)
        await manager.start()
        caller = asyncio.ensure_future(manager.get_token())
        await asyncio.sleep(0.01)

        await manager.stop()

        with pytest.raises(asyncio.CancelledError):
            await caller
        assert manager.status().state == "absent"
