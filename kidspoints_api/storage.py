"""Persistent session storage: access token, refresh token and cached user."""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

STORAGE_KEYS = {
    "ACCESS_TOKEN": "access_token",
    "REFRESH_TOKEN": "refresh_token",
    "USER_DATA": "user_data",
}


@dataclass(frozen=True)
class TokenPair:
    """Access/refresh credentials, replaced wholesale on every refresh."""

    access_token: str
    refresh_token: str

    def __repr__(self) -> str:
        return "TokenPair(access_token='***', refresh_token='***')"

    @classmethod
    def from_refresh_response(cls, data: Any) -> "TokenPair":
        """Parse a ``{"token": ..., "refreshToken": ...}`` refresh response."""
        if not isinstance(data, dict):
            raise ValueError("Refresh response is not a JSON object")
        token = data.get("token")
        refresh_token = data.get("refreshToken")
        if not isinstance(token, str) or not token:
            raise ValueError("Refresh response has no access token")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise ValueError("Refresh response has no refresh token")
        return cls(access_token=token, refresh_token=refresh_token)


@dataclass(frozen=True)
class StoredSession:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user: Optional[Dict[str, Any]] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token)


class KeyValueStorage(Protocol):
    """Async string key/value storage contract."""

    async def get_item(self, key: str) -> Optional[str]: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """In-process storage, lost when the process exits."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove_item(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStorage:
    """Storage backed by a single JSON document on disk.

    The file is created with owner-only permissions. Blocking file access
    runs in a worker thread so the event loop is never stalled.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def _read(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as fp:
                data = json.load(fp)
        except FileNotFoundError:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Session file {self.path} does not hold a JSON object")
        return data

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            json.dump(data, fp, indent=2)
        os.replace(tmp_path, self.path)

    def _update(self, key: str, value: Optional[str]) -> None:
        data = self._read()
        if value is None:
            if key not in data:
                return
            data.pop(key)
        else:
            data[key] = value
        self._write(data)

    async def get_item(self, key: str) -> Optional[str]:
        data = await asyncio.to_thread(self._read)
        value = data.get(key)
        return value if isinstance(value, str) else None

    async def set_item(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._update, key, value)

    async def remove_item(self, key: str) -> None:
        await asyncio.to_thread(self._update, key, None)


class TokenStore:
    """Owns the stored session.

    Every operation is best effort: storage failures are logged and never
    raised. Values written during the process lifetime are mirrored in
    memory, so a failing backend degrades to an in-memory session.
    """

    def __init__(self, storage: Optional[KeyValueStorage] = None):
        self.storage: KeyValueStorage = storage if storage is not None else MemoryStorage()
        self._memory: Dict[str, Optional[str]] = {}

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TokenStore":
        """Store backed by the ``session_file`` JSON document."""
        settings = settings or get_settings()
        return cls(JsonFileStorage(settings.session_file))

    async def _get(self, key: str) -> Optional[str]:
        try:
            value = await self.storage.get_item(key)
        except Exception as e:
            logger.warning("Error reading %s from storage: %s", key, e)
            return self._memory.get(key)
        if value is None and self._memory.get(key) is not None:
            return self._memory[key]
        return value

    async def _set(self, key: str, value: str) -> bool:
        self._memory[key] = value
        try:
            await self.storage.set_item(key, value)
        except Exception as e:
            logger.warning("Error writing %s to storage, keeping it in memory only: %s", key, e)
            return False
        return True

    async def _remove(self, key: str) -> bool:
        self._memory.pop(key, None)
        try:
            await self.storage.remove_item(key)
        except Exception as e:
            logger.warning("Error removing %s from storage: %s", key, e)
            return False
        return True

    async def get_access_token(self) -> Optional[str]:
        return await self._get(STORAGE_KEYS["ACCESS_TOKEN"])

    async def get_refresh_token(self) -> Optional[str]:
        return await self._get(STORAGE_KEYS["REFRESH_TOKEN"])

    async def set_tokens(self, pair: TokenPair) -> None:
        access_ok = await self._set(STORAGE_KEYS["ACCESS_TOKEN"], pair.access_token)
        refresh_ok = await self._set(STORAGE_KEYS["REFRESH_TOKEN"], pair.refresh_token)
        if access_ok and refresh_ok:
            logger.debug("Tokens stored successfully")

    async def clear_tokens(self) -> None:
        """Remove tokens and cached user; partial failures are only logged."""
        for key in STORAGE_KEYS.values():
            await self._remove(key)

    async def get_user(self) -> Optional[Dict[str, Any]]:
        raw = await self._get(STORAGE_KEYS["USER_DATA"])
        if raw is None:
            return None
        try:
            user = json.loads(raw)
        except ValueError as e:
            logger.warning("Discarding unreadable cached user profile: %s", e)
            return None
        return user if isinstance(user, dict) else None

    async def set_user(self, user: Dict[str, Any]) -> None:
        await self._set(STORAGE_KEYS["USER_DATA"], json.dumps(user))

    async def get_session(self) -> StoredSession:
        return StoredSession(
            access_token=await self.get_access_token(),
            refresh_token=await self.get_refresh_token(),
            user=await self.get_user(),
        )
