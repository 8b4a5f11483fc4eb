from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

import aiohttp

from ..constants import USER_AGENT, VRCHAT_API_BASE_URL
from ..errors import ApiError, RateLimitedError, ServerUnavailableError
from .rate_limiter import MinIntervalRateLimiter

log = logging.getLogger("groupsentry.vrchat_api")

# Body excerpts kept in logs and errors.
_LOG_BODY_LIMIT = 500


def _retry_after_seconds(raw: Optional[str], fallback: float) -> float:
    if raw is None:
        return fallback
    try:
        return max(1.0, float(raw))
    except ValueError:
        return fallback


class VRChatApiClient:
    """Group audit / moderation client for the VRChat REST API.

    Every request passes through a ``MinIntervalRateLimiter``. A 429 is
    waited out using ``Retry-After`` (or ``retry_after_fallback``) and the
    same request is sent again, up to ``max_rate_limit_waits`` times. A 5xx
    is retried after ``server_retry_delay`` until ``max_server_attempts``
    attempts have failed, then ``ServerUnavailableError`` is raised.
    """

    def __init__(
        self,
        auth_cookie: str,
        *,
        base_url: str = VRCHAT_API_BASE_URL,
        current_user_id: Optional[str] = None,
        limiter: Optional[MinIntervalRateLimiter] = None,
        session: Optional[aiohttp.ClientSession] = None,
        retry_after_fallback: float = 30.0,
        server_retry_delay: float = 5.0,
        max_rate_limit_waits: int = 5,
        max_server_attempts: int = 3,
        timeout_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._auth_cookie = auth_cookie
        self._base_url = base_url.rstrip("/")
        self._current_user_id = current_user_id or None
        self._limiter = limiter or MinIntervalRateLimiter(0.1)
        self._session = session
        self._owns_session = session is None
        self._retry_after_fallback = float(retry_after_fallback)
        self._server_retry_delay = float(server_retry_delay)
        self._max_rate_limit_waits = max(0, int(max_rate_limit_waits))
        self._max_server_attempts = max(1, int(max_server_attempts))
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._sleep = sleep

    @property
    def current_user_id(self) -> Optional[str]:
        return self._current_user_id

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "application/json",
                    "Cookie": f"auth={self._auth_cookie}",
                },
                timeout=self._timeout,
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        url = f"{self._base_url}/{path.lstrip('/')}"
        rate_waits = 0
        server_failures = 0

        while True:
            await self._limiter.wait()
            session = self._get_session()
            async with session.request(method, url, params=params, json=payload) as resp:
                status = resp.status
                body = await resp.text()
                retry_after = resp.headers.get("Retry-After")
            log.debug("HTTP %s %s -> %s (%d chars)", method, path, status, len(body))

            if status == 429:
                rate_waits += 1
                if rate_waits > self._max_rate_limit_waits:
                    raise RateLimitedError(status, f"{method} {path} still rate limited", body[:_LOG_BODY_LIMIT])
                delay = _retry_after_seconds(retry_after, self._retry_after_fallback)
                log.warning("Rate limited on %s %s, waiting %.1fs (%d/%d)", method, path, delay, rate_waits, self._max_rate_limit_waits)
                await self._sleep(delay)
                continue

            if status >= 500:
                server_failures += 1
                log.warning("Server error %s on %s %s (attempt %d/%d)", status, method, path, server_failures, self._max_server_attempts)
                if server_failures >= self._max_server_attempts:
                    raise ServerUnavailableError(status, f"{method} {path} failed after {server_failures} attempts", body[:_LOG_BODY_LIMIT])
                await self._sleep(self._server_retry_delay)
                continue

            if status >= 400:
                raise ApiError(status, f"{method} {path} failed", body[:_LOG_BODY_LIMIT])

            if not body:
                return None
            try:
                return json.loads(body)
            except ValueError:
                return body

    async def _moderation_call(self, tag: str, method: str, path: str, payload: Optional[Mapping[str, Any]] = None) -> bool:
        try:
            await self._request(method, path, payload=payload)
            return True
        except ApiError as e:
            log.warning("%s failed: %s", tag, e)
            return False
        except aiohttp.ClientError as e:
            log.warning("%s failed: %s", tag, e)
            return False

    async def fetch_current_user_id(self) -> Optional[str]:
        """Resolve the authenticated user's id from ``auth/user``."""
        data = await self._request("GET", "auth/user")
        if isinstance(data, Mapping) and data.get("id"):
            self._current_user_id = str(data["id"])
        return self._current_user_id

    async def fetch_audit_logs(self, group_id: str, count: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"groups/{group_id}/auditLogs",
            params={"n": int(count), "offset": int(offset)},
        )
        if isinstance(data, Mapping):
            results = data.get("results") or []
        elif isinstance(data, list):
            results = data
        else:
            results = []
        return [r for r in results if isinstance(r, dict)]

    async def get_member_role_ids(self, group_id: str, user_id: str) -> list[str]:
        try:
            data = await self._request("GET", f"groups/{group_id}/members/{user_id}")
        except ApiError as e:
            log.warning("Could not load member %s of %s: %s", user_id, group_id, e)
            return []
        if not isinstance(data, Mapping):
            return []
        return [str(r) for r in (data.get("roleIds") or []) if r]

    async def remove_member_role(self, group_id: str, user_id: str, role_id: str) -> bool:
        return await self._moderation_call("remove_role", "DELETE", f"groups/{group_id}/members/{user_id}/roles/{role_id}")

    async def add_member_role(self, group_id: str, user_id: str, role_id: str) -> bool:
        return await self._moderation_call("add_role", "PUT", f"groups/{group_id}/members/{user_id}/roles/{role_id}")

    async def kick_member(self, group_id: str, user_id: str) -> bool:
        return await self._moderation_call("kick", "DELETE", f"groups/{group_id}/members/{user_id}")

    async def ban_member(self, group_id: str, user_id: str) -> bool:
        return await self._moderation_call("ban", "POST", f"groups/{group_id}/bans", {"userId": user_id})

    async def unban_member(self, group_id: str, user_id: str) -> bool:
        return await self._moderation_call("unban", "DELETE", f"groups/{group_id}/bans/{user_id}")

    async def respond_to_join_request(self, group_id: str, user_id: str, action: str) -> bool:
        if action not in ("accept", "reject"):
            raise ValueError(f"action must be 'accept' or 'reject', got {action!r}")
        return await self._moderation_call(
            f"join_request_{action}", "PUT", f"groups/{group_id}/requests/{user_id}", {"action": action}
        )
