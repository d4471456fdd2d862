"""Single-flight token refresh.

At most one refresh call is in flight per coordinator. Callers that observe
a 401 while a refresh is running are parked as waiters and released, in
admission order, with the outcome of that single refresh.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from .events import EventBus
from .exceptions import UnauthorizedError
from .logging_config import mask_token
from .storage import TokenPair, TokenStore

logger = logging.getLogger(__name__)

RefreshFunc = Callable[[str], Awaitable[TokenPair]]

# Waiter count above which each new admission is logged as a warning
WAITER_WARNING_THRESHOLD = 100


class RefreshState(Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


class RefreshCoordinator:
    """Exchanges the stored refresh token for a new TokenPair.

    ``refresh_func`` performs the actual refresh call and returns the new
    pair; any exception it raises ends the episode as a failure. On failure
    the stored session is cleared and ``auth:logout`` is emitted exactly once,
    no matter how many callers were waiting.
    """

    def __init__(
        self,
        token_store: TokenStore,
        refresh_func: RefreshFunc,
        events: Optional[EventBus] = None,
        enable_logging: bool = False,
    ):
        self.token_store = token_store
        self.refresh_func = refresh_func
        self.events = events or EventBus()
        self.enable_logging = enable_logging

        self.state = RefreshState.IDLE
        self._waiters: List[asyncio.Future] = []
        self.refresh_count = 0

    @property
    def is_refreshing(self) -> bool:
        return self.state is RefreshState.REFRESHING

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)

    def _log(self, msg: str, *args) -> None:
        if self.enable_logging:
            logger.debug(msg, *args)

    async def refresh(self) -> str:
        """Return a fresh access token or raise :class:`UnauthorizedError`.

        The state check and transition happen before the first ``await`` so
        two callers can never both start a refresh.
        """
        if self.state is RefreshState.REFRESHING:
            return await self._wait()

        self.state = RefreshState.REFRESHING
        self.refresh_count += 1
        self._log("Token refresh #%d started", self.refresh_count)

        try:
            pair = await self._exchange()
        except asyncio.CancelledError:
            self._release_with_error(UnauthorizedError("Token refresh was cancelled"))
            raise
        except Exception as e:
            logger.warning("Token refresh failed: %s", e)
            error = UnauthorizedError(
                "Session expired, please log in again",
                status_code=getattr(e, "status_code", None),
                original_exception=e,
            )
            try:
                await self.token_store.clear_tokens()
            finally:
                self._release_with_error(error)
            self.events.emit_auth_logout()
            raise error from e

        try:
            await self.token_store.set_tokens(pair)
        finally:
            self._release_with_token(pair.access_token)

        self._log("Token refresh succeeded, new access token %s", mask_token(pair.access_token))
        self.events.emit_token_refreshed(pair.access_token)
        return pair.access_token

    async def _exchange(self) -> TokenPair:
        refresh_token = await self.token_store.get_refresh_token()
        if not refresh_token:
            raise UnauthorizedError("No refresh token available")
        return await self.refresh_func(refresh_token)

    async def _wait(self) -> str:
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        if len(self._waiters) > WAITER_WARNING_THRESHOLD:
            logger.warning("%d requests are waiting on a token refresh", len(self._waiters))
        self._log("Refresh in progress, queued waiter #%d", len(self._waiters))
        return await waiter

    def _drain(self) -> List[asyncio.Future]:
        waiters, self._waiters = self._waiters, []
        self.state = RefreshState.IDLE
        return waiters

    def _release_with_token(self, token: str) -> None:
        for waiter in self._drain():
            if not waiter.done():
                waiter.set_result(token)

    def _release_with_error(self, error: UnauthorizedError) -> None:
        for waiter in self._drain():
            if not waiter.done():
                waiter.set_exception(UnauthorizedError(error.message, status_code=error.status_code))
