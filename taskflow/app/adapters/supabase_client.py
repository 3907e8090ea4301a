"""Supabase backend client: GoTrue auth and PostgREST tables over httpx.

One :class:`SupabaseBackend` exists per browser session. It holds that
session's tokens and attaches them to table, storage and realtime calls.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

import httpx

from taskflow.app.adapters.auth_state import SessionState
from taskflow.app.adapters.supabase_http import api_headers, error_message
from taskflow.app.adapters.supabase_realtime import RealtimeChannel
from taskflow.app.config import Settings
from taskflow.app.core.errors import AuthFailure, QueryFailure
from taskflow.app.ports.backend import SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED
from taskflow.app.ports.storage import IStorageService
from taskflow.app.schemas import Session, TaskId, User

logger = logging.getLogger(__name__)


def _parse_session(data: dict[str, Any]) -> Optional[Session]:
    access_token = data.get("access_token")
    user = data.get("user") or {}
    if not access_token or not user.get("id"):
        return None
    expires_at = data.get("expires_at")
    if not expires_at and data.get("expires_in"):
        expires_at = int(time.time()) + int(data["expires_in"])
    return Session(
        access_token=access_token,
        refresh_token=data.get("refresh_token"),
        expires_at=int(expires_at) if expires_at else None,
        token_type=data.get("token_type") or "bearer",
        user=User(id=str(user["id"]), email=user.get("email")),
    )


class SupabaseAuth:
    def __init__(self, backend: "SupabaseBackend"):
        self._backend = backend
        self._state = SessionState()
        self._refresh_lock = asyncio.Lock()

    @property
    def access_token(self) -> Optional[str]:
        return self._state.access_token

    def on_session_change(self, callback):
        return self._state.on_session_change(callback)

    async def _post(self, path: str, payload: dict[str, Any], *, params=None, token=None) -> httpx.Response:
        try:
            return await self._backend.http.post(
                f"/auth/v1/{path}",
                json=payload,
                params=params,
                headers=api_headers(self._backend.api_key, token),
            )
        except httpx.HTTPError as exc:
            logger.warning("auth request %s failed: %s", path, exc)
            raise AuthFailure(f"auth provider unreachable: {exc}", cause=exc) from exc

    async def sign_up(self, email: str, password: str) -> Optional[Session]:
        response = await self._post("signup", {"email": email, "password": password})
        if response.status_code >= 400:
            raise AuthFailure(error_message(response), status_code=response.status_code)
        # With email confirmation on, GoTrue returns only the user.
        return _parse_session(response.json())

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        response = await self._post(
            "token",
            {"email": email, "password": password},
            params={"grant_type": "password"},
        )
        if response.status_code >= 400:
            raise AuthFailure(error_message(response), status_code=response.status_code)
        session = _parse_session(response.json())
        if session is None:
            raise AuthFailure("auth provider returned no session", status_code=response.status_code)
        self._state.set(SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        token = self._state.access_token
        if token:
            response = await self._post("logout", {}, token=token)
            # 401/403/404 mean the session is already gone server-side.
            if response.status_code >= 400 and response.status_code not in (401, 403, 404):
                raise AuthFailure(error_message(response), status_code=response.status_code)
        self._state.set(SIGNED_OUT, None)

    async def get_session(self) -> Optional[Session]:
        current = self._state.current
        if current is None or not current.is_expired(time.time()):
            return current
        return await self._refresh(only_if_expired=True)

    async def refresh_session(self) -> Optional[Session]:
        """Exchange the refresh token now, whether or not the access token expired."""
        return await self._refresh(only_if_expired=False)

    async def _refresh(self, *, only_if_expired: bool) -> Optional[Session]:
        async with self._refresh_lock:
            current = self._state.current
            if current is None:
                return None
            # Another caller may have refreshed while we waited
            if only_if_expired and not current.is_expired(time.time()):
                return current
            if not current.refresh_token:
                self._state.set(SIGNED_OUT, None)
                return None
            response = await self._post(
                "token",
                {"refresh_token": current.refresh_token},
                params={"grant_type": "refresh_token"},
            )
            if response.status_code >= 500:
                raise AuthFailure(error_message(response), status_code=response.status_code)
            if response.status_code >= 400:
                logger.info("session refresh rejected: %s", error_message(response))
                self._state.set(SIGNED_OUT, None)
                return None
            session = _parse_session(response.json())
            self._state.set(TOKEN_REFRESHED if session else SIGNED_OUT, session)
            return session


class SupabaseTable:
    def __init__(self, backend: "SupabaseBackend", name: str):
        self._backend = backend
        self.name = name

    async def _request(
        self,
        method: str,
        params: dict[str, str],
        *,
        prefer: Optional[str] = None,
        **kwargs,
    ) -> httpx.Response:
        # Refreshes an expired access token before it is attached
        await self._backend.auth.get_session()
        headers = api_headers(self._backend.api_key, self._backend.auth.access_token)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self._backend.http.request(
                method, f"/rest/v1/{self.name}", params=params, headers=headers, **kwargs
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, self.name, exc)
            raise QueryFailure(f"backend unreachable: {exc}", cause=exc) from exc
        if response.status_code >= 400:
            raise QueryFailure(error_message(response), status_code=response.status_code)
        return response

    async def select(
        self,
        *,
        order_by: str = "created_at",
        descending: bool = True,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        params = {
            "select": "*",
            "order": f"{order_by}.{'desc' if descending else 'asc'}",
        }
        for col, value in (filters or {}).items():
            params[col] = f"eq.{value}"
        response = await self._request("GET", params)
        data = response.json()
        if not isinstance(data, list):
            raise QueryFailure("unexpected select response", status_code=response.status_code)
        return data

    async def insert(self, row: dict[str, Any]) -> None:
        await self._request("POST", {}, json=[row], prefer="return=minimal")

    async def delete(self, row_id: TaskId) -> None:
        await self._request("DELETE", {"id": f"eq.{row_id}"})

    async def update(self, row_id: TaskId, values: dict[str, Any]) -> None:
        await self._request("PATCH", {"id": f"eq.{row_id}"}, json=values, prefer="return=minimal")


class SupabaseBackend:
    def __init__(
        self,
        settings: Settings,
        storage: IStorageService,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        ws_connect=None,
    ):
        self.settings = settings
        self.base_url = settings.supabase_url.rstrip("/")
        self.api_key = settings.supabase_anon_key
        self.storage = storage
        self.http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.backend_timeout_seconds,
            transport=transport,
        )
        self._ws_connect = ws_connect
        self._channels: list[RealtimeChannel] = []
        self.auth = SupabaseAuth(self)
        self.auth.on_session_change(self._forward_token)

    @property
    def access_token(self) -> Optional[str]:
        return self.auth.access_token

    def _forward_token(self, event: str, session: Optional[Session]) -> None:
        if event == TOKEN_REFRESHED and session is not None:
            for channel in self._channels:
                channel.set_auth(session.access_token)

    @property
    def channels(self) -> tuple[RealtimeChannel, ...]:
        return tuple(self._channels)

    def _forget_channel(self, channel: RealtimeChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def table(self, name: str) -> SupabaseTable:
        return SupabaseTable(self, name)

    def channel(self, name: str) -> RealtimeChannel:
        kwargs = {}
        if self._ws_connect is not None:
            kwargs["connect"] = self._ws_connect
        channel = RealtimeChannel(
            name,
            base_url=self.base_url,
            api_key=self.api_key,
            token_getter=lambda: self.auth.access_token,
            heartbeat_seconds=self.settings.realtime_heartbeat_seconds,
            reconnect_seconds=self.settings.realtime_reconnect_seconds,
            on_closed=self._forget_channel,
            **kwargs,
        )
        self._channels.append(channel)
        return channel

    async def close(self) -> None:
        for channel in list(self._channels):
            await channel.unsubscribe()
        self._channels.clear()
        await self.http.aclose()
