import time
from collections.abc import Callable, Iterable
from typing import Any

import httpx
from loguru import logger

from qatrack.core.utils import PermissionCache
from qatrack.domain.users.models import Action, PermissionKey, Task


class BaseClient:
    """Base asynchronous client for HTTP API interactions."""

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.client = httpx.AsyncClient(base_url=self.base_url, headers=self.headers, transport=transport, timeout=15.0)

    async def close(self) -> None:
        await self.client.aclose()


class QATrackClient(BaseClient):
    """Client for the QA Tracker API used by UIs and automation scripts.

    Holds the caller's session token and a short-lived cache of the caller's
    effective permissions, so screens can toggle controls without a round trip
    per check. The server still enforces every permission on every request.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        cache_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, headers={"Accept": "application/json"}, transport=transport)
        self.permissions_cache: PermissionCache[PermissionKey] = PermissionCache(cache_ttl_seconds, clock=clock)
        if token:
            self.set_token(token)

    def set_token(self, token: str | None) -> None:
        """Switches identity. The permission cache belongs to the old identity and is dropped."""
        if token:
            self.client.headers["Authorization"] = f"Bearer {token}"
        else:
            self.client.headers.pop("Authorization", None)
        self.clear_permissions_cache()

    async def login(self, username: str, password: str) -> dict[str, Any]:
        """Performs a password login.

        Returns:
            dict[str, Any]: The login payload. When ``requires_2fa`` is true the
            client stays anonymous until ``verify_code`` succeeds.

        Raises:
            httpx.HTTPStatusError: On invalid credentials or server errors.
        """
        response = await self.client.post("/auth/login", json={"username": username, "password": password})
        response.raise_for_status()
        payload = response.json()
        if payload.get("token"):
            self.set_token(payload["token"])
        return payload

    async def verify_code(self, user_id: int, code: str) -> dict[str, Any]:
        response = await self.client.post("/auth/2fa/verify", json={"user_id": user_id, "code": code})
        response.raise_for_status()
        payload = response.json()
        self.set_token(payload["token"])
        return payload

    async def fetch_permissions(self) -> frozenset[PermissionKey]:
        """Returns the caller's effective permissions, served from cache while fresh.

        Raises:
            httpx.HTTPStatusError: If the server rejects the request.
        """
        cached = self.permissions_cache.get()
        if cached is not None:
            return cached

        response = await self.client.get("/auth/user/permissions")
        response.raise_for_status()
        permissions = [PermissionKey(Task(p["task_name"]), Action(p["action"])) for p in response.json()]
        logger.debug(f"Fetched {len(permissions)} permissions from server.")
        return self.permissions_cache.set(permissions)

    async def _held(self) -> frozenset[PermissionKey] | None:
        try:
            return await self.fetch_permissions()
        except httpx.HTTPError as e:
            logger.error(f"Could not load permissions: {e}")
            return None

    async def has_permission(self, task: Task, action: Action) -> bool:
        """True if the caller holds the permission. Fails closed when the server is unreachable."""
        held = await self._held()
        return held is not None and PermissionKey(task, action) in held

    async def has_any_permission(self, pairs: Iterable[tuple[Task, Action]]) -> bool:
        required = {PermissionKey(task, action) for task, action in pairs}
        if not required:
            return False
        held = await self._held()
        return held is not None and not required.isdisjoint(held)

    async def has_all_permissions(self, pairs: Iterable[tuple[Task, Action]]) -> bool:
        required = {PermissionKey(task, action) for task, action in pairs}
        if not required:
            return True
        held = await self._held()
        return held is not None and required <= held

    def clear_permissions_cache(self) -> None:
        self.permissions_cache.invalidate()
