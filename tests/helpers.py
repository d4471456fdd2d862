import asyncio
import json
from typing import Callable, Dict, List, Optional

import httpx

BASE_URL = "https://api.test/api"


class FakeBackend:
    """Routes requests to per-path handlers and records every call."""

    def __init__(self):
        self.routes: Dict[tuple, Callable] = {}
        self.calls: List[httpx.Request] = []

    def route(self, method: str, path: str, handler: Callable) -> None:
        self.routes[(method, path)] = handler

    def calls_to(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.calls if r.method == method and r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"detail": "No route"})
        result = handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def bearer(request: httpx.Request) -> Optional[str]:
    value = request.headers.get("Authorization", "")
    return value[len("Bearer "):] if value.startswith("Bearer ") else None


def json_body(request: httpx.Request):
    return json.loads(request.content.decode())
