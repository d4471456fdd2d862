"""Authenticated REST API client."""

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from .config import APIConfig, Settings, get_settings
from .connectivity import ConnectivityProbe, StaticConnectivityProbe
from .events import EventBus
from .exceptions import (
    ConcurrentTokenUpdateError,
    NetworkError,
    UnauthorizedError,
    UnknownAPIError,
)
from .executor import RequestDescriptor, RequestExecutor
from .logging_config import mask_token
from .refresh import RefreshCoordinator
from .retry import RetryManager
from .storage import StoredSession, TokenPair, TokenStore

logger = logging.getLogger(__name__)


class ApiClient:
    """REST client attaching bearer tokens, retrying transient failures and
    refreshing expired sessions.

    Collaborators are injected so that production (persistent storage, real
    network probe) and tests (fakes, ``httpx.MockTransport``) only differ in
    construction::

        async with ApiClient(APIConfig(base_url="https://api.example.com/api")) as client:
            missions = await client.get("/missions", params={"status": "pending"})
    """

    def __init__(
        self,
        config: Optional[APIConfig] = None,
        token_store: Optional[TokenStore] = None,
        connectivity: Optional[ConnectivityProbe] = None,
        events: Optional[EventBus] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        refresh_coordinator: Optional[RefreshCoordinator] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """Initialize API client.

        Args:
            config: API configuration. If None, uses default config.
            token_store: Session storage. Defaults to an in-memory store.
            connectivity: Reachability probe. Defaults to always online.
            events: Bus receiving ``auth:logout`` and ``token:refreshed``.
            http_client: Pre-built httpx client, closed by the caller.
            transport: httpx transport for the client built here.
            refresh_coordinator: Coordinator to use instead of a new one.
            sleep: Coroutine used for backoff delays.
        """
        self.config = config or APIConfig()
        self.token_store = token_store or TokenStore()
        self.connectivity = connectivity or StaticConnectivityProbe(online=True)
        self.events = events or EventBus()

        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout),
            limits=httpx.Limits(
                max_connections=self.config.max_connections,
                max_keepalive_connections=self.config.max_keepalive_connections,
                keepalive_expiry=self.config.keepalive_expiry,
            ),
            transport=transport,
        )
        self.executor = RequestExecutor(self._http_client, self.config.default_headers)
        self._retry_manager = RetryManager(self.config.retry_config, sleep=sleep)
        self.refresh_coordinator = refresh_coordinator or RefreshCoordinator(
            self.token_store,
            self._call_refresh_endpoint,
            events=self.events,
            enable_logging=self.config.enable_logging,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "ApiClient":
        """Client configured from ``KIDSPOINTS_*`` settings with a file-backed session."""
        settings = settings or get_settings()
        kwargs.setdefault("token_store", TokenStore.from_settings(settings))
        return cls(APIConfig.from_settings(settings), **kwargs)

    def _log(self, msg: str, *args) -> None:
        if self.config.enable_logging:
            logger.debug(msg, *args)

    def _build_url(self, endpoint: str) -> str:
        """Build full URL from endpoint."""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        base = self.config.base_url.rstrip("/")
        return f"{base}/{endpoint.lstrip('/')}"

    def _descriptor(
        self,
        method: str,
        endpoint: str,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        skip_auth: bool = False,
        skip_retry: bool = False,
        **kwargs,
    ) -> RequestDescriptor:
        return RequestDescriptor(
            url=self._build_url(endpoint),
            method=method,
            headers=dict(headers or {}),
            timeout=timeout or self.config.timeout,
            skip_auth=skip_auth,
            skip_retry=skip_retry,
            **kwargs,
        )

    # Core request flow

    async def request(self, descriptor: RequestDescriptor) -> Any:
        """Run a request through connectivity, retry and refresh handling."""
        used: Dict[str, Optional[str]] = {}
        try:
            return await self._send(descriptor, used=used)
        except UnauthorizedError:
            if descriptor.skip_auth or descriptor.replay:
                raise
            self._log("%s %s returned 401, recovering session", descriptor.method, descriptor.url)
            token = await self._recover_session(used.get("token"))

        return await self._send(descriptor.for_replay(), access_token=token)

    async def _send(
        self,
        descriptor: RequestDescriptor,
        access_token: Optional[str] = None,
        used: Optional[Dict[str, Optional[str]]] = None,
    ) -> Any:
        max_attempts = 1 if descriptor.skip_retry else self._retry_manager.config.max_attempts
        attempt_number = 0

        async def attempt() -> Any:
            nonlocal attempt_number
            attempt_number += 1
            if not await self.connectivity.is_online():
                raise NetworkError(
                    "No internet connection",
                    retryable=False,
                    request_url=descriptor.url,
                    request_method=descriptor.method,
                )

            token = access_token
            if token is None and not descriptor.skip_auth:
                token = await self.token_store.get_access_token()
            if used is not None:
                used["token"] = token

            self._log(
                "Request attempt %d/%d: %s %s (token %s)",
                attempt_number, max_attempts, descriptor.method, descriptor.url,
                mask_token(token) if not descriptor.skip_auth else "skipped",
            )
            return await self.executor.execute(descriptor, token)

        return await self._retry_manager.async_execute_with_retry(attempt, skip_retry=descriptor.skip_retry)

    async def _recover_session(self, stale_token: Optional[str]) -> str:
        """Token to replay with after a 401.

        When another request already replaced the token that was rejected,
        the current one is reused and no new refresh episode is started.
        When the session was cleared after the request was sent, the 401 is
        surfaced without a refresh, so logout is not announced twice.
        """
        if not self.refresh_coordinator.is_refreshing:
            current = await self.token_store.get_access_token()
            # A refresh may have started while the store was being read
            if not self.refresh_coordinator.is_refreshing and stale_token:
                if current and current != stale_token:
                    self._log("Access token was refreshed meanwhile, replaying with %s", mask_token(current))
                    return current
                if not current:
                    raise UnauthorizedError("Session expired, please log in again", status_code=401)
        return await self.refresh_coordinator.refresh()

    async def _call_refresh_endpoint(self, refresh_token: str) -> TokenPair:
        descriptor = self._descriptor(
            "POST",
            self.config.refresh_path,
            body={"refreshToken": refresh_token},
            skip_auth=True,
            skip_retry=True,
        )
        data = await self._send(descriptor)
        try:
            return TokenPair.from_refresh_response(data)
        except ValueError as e:
            raise UnknownAPIError(str(e), original_exception=e, request_url=descriptor.url) from e

    # HTTP verbs

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None, **options) -> Any:
        """Send GET request; ``None`` params are dropped."""
        return await self.request(self._descriptor("GET", endpoint, params=params, **options))

    async def post(self, endpoint: str, data: Any = None, **options) -> Any:
        """Send POST request with a JSON body."""
        return await self.request(self._descriptor("POST", endpoint, body=data, **options))

    async def put(self, endpoint: str, data: Any = None, **options) -> Any:
        """Send PUT request with a JSON body."""
        return await self.request(self._descriptor("PUT", endpoint, body=data, **options))

    async def patch(self, endpoint: str, data: Any = None, **options) -> Any:
        """Send PATCH request with a JSON body."""
        return await self.request(self._descriptor("PATCH", endpoint, body=data, **options))

    async def delete(self, endpoint: str, **options) -> Any:
        """Send DELETE request."""
        return await self.request(self._descriptor("DELETE", endpoint, **options))

    async def upload(
        self,
        endpoint: str,
        file: Any,
        field_name: str = "file",
        additional_data: Optional[Dict[str, Any]] = None,
        filename: Optional[str] = None,
        **options,
    ) -> Any:
        """Send a multipart POST carrying ``file`` under ``field_name``.

        ``file`` may be bytes, a binary file object or an httpx file tuple.
        """
        if filename is not None and not isinstance(file, tuple):
            file = (filename, file)
        form = {key: str(value) for key, value in (additional_data or {}).items()}
        return await self.request(
            self._descriptor("POST", endpoint, files={field_name: file}, data=form or None, **options)
        )

    # Session management

    async def set_tokens(self, access_token: str, refresh_token: str) -> None:
        """Store tokens obtained from login or registration."""
        self._ensure_not_refreshing()
        await self.token_store.set_tokens(TokenPair(access_token, refresh_token))

    async def clear_tokens(self) -> None:
        self._ensure_not_refreshing()
        await self.token_store.clear_tokens()

    async def set_user(self, user: Dict[str, Any]) -> None:
        await self.token_store.set_user(user)

    async def get_session(self) -> StoredSession:
        return await self.token_store.get_session()

    async def is_authenticated(self) -> bool:
        return bool(await self.token_store.get_access_token())

    async def force_token_refresh(self) -> str:
        """Refresh now, sharing any refresh already in flight."""
        return await self.refresh_coordinator.refresh()

    def _ensure_not_refreshing(self) -> None:
        if self.refresh_coordinator.is_refreshing:
            raise ConcurrentTokenUpdateError("Tokens cannot be modified while a refresh is in progress")

    def set_header(self, key: str, value: str) -> None:
        self.executor.default_headers[key] = value

    def remove_header(self, key: str) -> None:
        self.executor.default_headers.pop(key, None)

    async def aclose(self):
        """Close the HTTP client if it was created here."""
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.aclose()
