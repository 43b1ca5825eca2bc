"""
MTN MoMo Token Manager

Caches the short-lived Collections API access token.

States: absent -> valid -> expiring (within refresh_threshold of expiry) -> absent
on refresh failure. An expired token counts as absent.

Concurrent callers share one in-flight refresh task, so N simultaneous
get_token() calls produce exactly one upstream token request. While started,
a loop timer refreshes the token refresh_threshold seconds before it expires.

Required Environment Variables:
- MOMO_SUBSCRIPTION_KEY
- MOMO_API_USER
- MOMO_API_KEY
- MOMO_ENV (sandbox|live)
"""

import asyncio
import base64
import logging
import os
import time
from typing import Callable, Optional

import httpx

from .config import MOMO_CONFIG, TOKEN_SETTINGS
from .errors import TokenRefreshFailed
from .models import TokenStatus

logger = logging.getLogger(__name__)


class MoMoTokenManager:
    """Owns the cached access token and its refresh lifecycle."""

    def __init__(
        self,
        subscription_key: Optional[str] = None,
        api_user: Optional[str] = None,
        api_key: Optional[str] = None,
        env: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        refresh_threshold: int = TOKEN_SETTINGS["refresh_threshold"],
        default_expires_in: int = TOKEN_SETTINGS["default_expires_in"]
    ):
        self._subscription_key = subscription_key
        self._api_user = api_user
        self._api_key = api_key
        self._env = env
        self._transport = transport
        self._clock = clock
        self.refresh_threshold = refresh_threshold
        self.default_expires_in = default_expires_in

        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._refresh_task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._running = False
        self.refresh_count = 0

    @property
    def env(self) -> str:
        """Get current MoMo environment (sandbox/live)."""
        return self._env or os.environ.get("MOMO_ENV", "sandbox")

    @property
    def api_base(self) -> str:
        return MOMO_CONFIG[self.env]["api_base"]

    @property
    def subscription_key(self) -> str:
        return self._subscription_key or os.environ.get("MOMO_SUBSCRIPTION_KEY", "")

    @property
    def api_user(self) -> str:
        return self._api_user or os.environ.get("MOMO_API_USER", "")

    @property
    def api_key(self) -> str:
        return self._api_key or os.environ.get("MOMO_API_KEY", "")

    # ==================== TOKEN ACCESS ====================

    def _remaining(self) -> float:
        if not self._token:
            return 0.0
        return self._expires_at - self._clock()

    def status(self) -> TokenStatus:
        remaining = self._remaining()
        if remaining <= 0:
            return TokenStatus(state="absent", expires_in=0)
        if remaining <= self.refresh_threshold:
            return TokenStatus(state="expiring", expires_in=int(remaining))
        return TokenStatus(state="valid", expires_in=int(remaining))

    async def get_token(self) -> str:
        """
        Return a usable access token, refreshing when absent or expiring.

        Raises:
            TokenRefreshFailed: upstream rejected or unreachable (transient)
        """
        if self.status().state == "valid":
            return self._token
        return await self._shared_refresh()

    async def _shared_refresh(self) -> str:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._refresh())
        # A cancelled caller must not cancel the refresh other callers wait on
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> str:
        self.refresh_count += 1
        auth = base64.b64encode(f"{self.api_user}:{self.api_key}".encode()).decode()

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=TOKEN_SETTINGS["http_timeout"]
            ) as client:
                response = await client.post(
                    f"{self.api_base}/collection/token/",
                    headers={
                        "Authorization": f"Basic {auth}",
                        "Ocp-Apim-Subscription-Key": self.subscription_key
                    }
                )
        except httpx.HTTPError as e:
            self._clear()
            logger.error(f"MoMo token request failed: {e}")
            raise TokenRefreshFailed(reason=str(e))

        if response.status_code != 200:
            self._clear()
            logger.error(f"MoMo auth failed: HTTP {response.status_code} {response.text}")
            raise TokenRefreshFailed(status_code=response.status_code)

        data = response.json()
        token = data.get("access_token")
        if not token:
            self._clear()
            logger.error("MoMo token response had no access_token")
            raise TokenRefreshFailed(reason="missing access_token")

        expires_in = int(data.get("expires_in") or self.default_expires_in)
        self._token = token
        self._expires_at = self._clock() + expires_in
        self._schedule_refresh(expires_in)

        logger.info(f"MoMo access token refreshed (expires_in={expires_in}s)")
        return token

    def _clear(self) -> None:
        self._token = None
        self._expires_at = 0.0
        self._cancel_timer()

    def invalidate(self) -> None:
        """Force the next get_token() to refresh (e.g. after a 401)."""
        logger.info("MoMo access token invalidated")
        self._clear()

    # ==================== BACKGROUND REFRESH ====================

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_refresh(self, expires_in: float) -> None:
        if not self._running:
            return
        self._cancel_timer()
        delay = max(expires_in - self.refresh_threshold, 0)
        self._timer = asyncio.get_running_loop().call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self._running:
            self._timer_task = asyncio.ensure_future(self._background_refresh())

    async def _background_refresh(self) -> None:
        try:
            await self._shared_refresh()
        except TokenRefreshFailed as e:
            # The next get_token() retries from the absent state
            logger.warning(f"Background token refresh failed: {e.details}")

    async def start(self) -> None:
        """Enable proactive refresh. Does not fetch a token by itself."""
        self._running = True
        remaining = self._remaining()
        if remaining > 0:
            self._schedule_refresh(remaining)
        logger.info(f"MoMo token manager started (env={self.env})")

    async def stop(self) -> None:
        """Cancel the timer and any in-flight refresh, then drop the token."""
        self._running = False
        self._cancel_timer()
        for task in (self._timer_task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, TokenRefreshFailed):
                    pass
        self._timer_task = None
        self._refresh_task = None
        self._clear()
        logger.info("MoMo token manager stopped")

    async def __aenter__(self) -> "MoMoTokenManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
