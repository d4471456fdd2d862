"""Network reachability probes gating every request attempt."""

import logging
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class ConnectivityProbe(Protocol):
    async def is_online(self) -> bool: ...


class StaticConnectivityProbe:
    """Reports a fixed state that can be flipped manually."""

    def __init__(self, online: bool = True):
        self.online = online
        self.checks = 0

    def set_online(self, online: bool) -> None:
        self.online = online

    async def is_online(self) -> bool:
        self.checks += 1
        return self.online


class HttpConnectivityProbe:
    """Considers the network reachable when ``url`` answers with any status.

    One httpx client is kept for every check; release it with :meth:`aclose`.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def is_online(self) -> bool:
        try:
            await self._client.head(self.url)
        except httpx.HTTPError as e:
            logger.debug("Connectivity check against %s failed: %s", self.url, e)
            return False
        return True

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
