"""Single HTTP attempt: headers, deadline, transport call, body parsing."""

import asyncio
import json
import random
import string
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

import httpx

from .exceptions import UnknownAPIError, classify_network_error, classify_response

_BASE36 = string.digits + string.ascii_lowercase


def generate_request_id() -> str:
    """``<epoch-ms>-<7 base36 chars>``, unique enough to correlate logs."""
    suffix = "".join(random.choice(_BASE36) for _ in range(7))
    return f"{int(time.time() * 1000)}-{suffix}"


@dataclass(frozen=True)
class RequestDescriptor:
    """Everything needed to perform one attempt of a request.

    Descriptors are immutable: a replay after a token refresh is a new
    descriptor built with :meth:`for_replay`.
    """

    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    params: Optional[Mapping[str, Any]] = None
    files: Optional[Mapping[str, Any]] = None
    data: Optional[Mapping[str, str]] = None
    timeout: float = 10.0
    skip_auth: bool = False
    skip_retry: bool = False
    replay: bool = False

    @property
    def is_multipart(self) -> bool:
        return bool(self.files)

    def for_replay(self) -> "RequestDescriptor":
        """Single-attempt copy used after a refresh; never refreshes again."""
        return replace(self, skip_retry=True, replay=True)


class RequestExecutor:
    """Performs exactly one HTTP attempt per call.

    Failures are raised as classified :class:`~kidspoints_api.exceptions.APIError`.
    """

    def __init__(self, http_client: httpx.AsyncClient, default_headers: Optional[Mapping[str, str]] = None):
        self.http_client = http_client
        self.default_headers: Dict[str, str] = dict(default_headers or {})

    def build_headers(self, descriptor: RequestDescriptor, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = dict(self.default_headers)
        headers.setdefault("Accept", "application/json")
        if descriptor.is_multipart:
            # httpx sets multipart/form-data with its own boundary
            headers.pop("Content-Type", None)
        else:
            headers.setdefault("Content-Type", "application/json")
        headers["X-Request-ID"] = generate_request_id()
        if not descriptor.skip_auth and access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        headers.update(descriptor.headers)
        return headers

    def build_request(self, descriptor: RequestDescriptor, access_token: Optional[str] = None) -> httpx.Request:
        params = None
        if descriptor.params:
            params = {k: str(v) for k, v in descriptor.params.items() if v is not None}

        kwargs: Dict[str, Any] = {}
        if descriptor.is_multipart:
            kwargs["files"] = descriptor.files
            if descriptor.data:
                kwargs["data"] = descriptor.data
        elif descriptor.body is not None:
            if isinstance(descriptor.body, (str, bytes)):
                kwargs["content"] = descriptor.body
            else:
                kwargs["json"] = descriptor.body

        return self.http_client.build_request(
            descriptor.method,
            descriptor.url,
            params=params,
            headers=self.build_headers(descriptor, access_token),
            timeout=descriptor.timeout,
            **kwargs,
        )

    async def execute(self, descriptor: RequestDescriptor, access_token: Optional[str] = None) -> Any:
        """Send one attempt and return the parsed body."""
        context = {"request_url": descriptor.url, "request_method": descriptor.method}
        request = self.build_request(descriptor, access_token)

        try:
            # httpx timeouts are per phase, the deadline bounds the whole attempt
            response = await asyncio.wait_for(self.http_client.send(request), timeout=descriptor.timeout)
        except Exception as e:
            raise classify_network_error(e, **context) from e

        if not response.is_success:
            raise classify_response(response, **context)

        return self.parse_body(response, context)

    @staticmethod
    def parse_body(response: httpx.Response, context: Optional[Dict[str, Any]] = None) -> Any:
        """Decode JSON bodies by content type, return text otherwise."""
        content_type = response.headers.get("content-type", "")
        if "json" not in content_type:
            return response.text
        if not response.content:
            return None
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise UnknownAPIError(
                f"Failed to decode JSON response: {e}",
                status_code=response.status_code,
                original_exception=e,
                **(context or {})
            ) from e
