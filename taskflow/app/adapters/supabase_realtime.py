"""Supabase Realtime change-feed channel over a websocket.

Speaks just enough of the Phoenix channel framing (join, heartbeat, leave,
access_token) to receive ``postgres_changes`` for the configured tables.
Delivery order and guarantees belong to the Realtime service; this channel
only reconnects after a drop and reports status so the owner can resync.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from taskflow.app.core.errors import RealtimeFailure
from taskflow.app.ports.backend import (
    CHANNEL_CLOSED,
    CHANNEL_ERROR,
    CHANNEL_SUBSCRIBED,
    ChangeHandler,
    StatusHandler,
)
from taskflow.app.schemas import ChangeEvent

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"


def realtime_url(base_url: str, api_key: str) -> str:
    ws_base = base_url.rstrip("/")
    if ws_base.startswith("https://"):
        ws_base = "wss://" + ws_base[len("https://"):]
    elif ws_base.startswith("http://"):
        ws_base = "ws://" + ws_base[len("http://"):]
    query = urlencode({"apikey": api_key, "vsn": "1.0.0"})
    return f"{ws_base}/realtime/v1/websocket?{query}"


def _filter_expr(filters: dict[str, Any]) -> Optional[str]:
    # Realtime accepts a single column filter per binding.
    for col, value in filters.items():
        return f"{col}=eq.{value}"
    return None


class RealtimeChannel:
    def __init__(
        self,
        name: str,
        *,
        base_url: str,
        api_key: str,
        token_getter: Callable[[], Optional[str]],
        heartbeat_seconds: float = 25.0,
        reconnect_seconds: float = 3.0,
        connect=websockets.connect,
        on_closed: Optional[Callable[["RealtimeChannel"], None]] = None,
    ):
        self.name = name
        self.topic = f"realtime:{name}"
        self.url = realtime_url(base_url, api_key)
        self._token_getter = token_getter
        self._heartbeat_seconds = heartbeat_seconds
        self._reconnect_seconds = reconnect_seconds
        self._connect = connect
        self._on_closed = on_closed
        self._bindings: list[tuple[str, ChangeHandler, dict[str, Any]]] = []
        self._status_handlers: list[StatusHandler] = []
        self._ref = 0
        self._join_ref: Optional[str] = None
        self._ws = None
        self._runner: Optional[asyncio.Task] = None
        self._stopped = False

    def on_change(self, table: str, handler: ChangeHandler, *, filters: Optional[dict[str, Any]] = None):
        self._bindings.append((table, handler, dict(filters or {})))
        return self

    def on_status(self, handler: StatusHandler):
        self._status_handlers.append(handler)
        return self

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def _emit_status(self, status: str) -> None:
        for handler in list(self._status_handlers):
            try:
                handler(status)
            except Exception:
                logger.exception("status handler failed on %s", self.topic)

    def join_message(self) -> dict[str, Any]:
        changes = []
        for table, _, filters in self._bindings:
            binding = {"event": "*", "schema": "public", "table": table}
            expr = _filter_expr(filters)
            if expr:
                binding["filter"] = expr
            changes.append(binding)
        self._join_ref = self._next_ref()
        payload: dict[str, Any] = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": changes,
            }
        }
        token = self._token_getter()
        if token:
            payload["access_token"] = token
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": payload,
            "ref": self._join_ref,
            "join_ref": self._join_ref,
        }

    async def _send(self, message: dict[str, Any]) -> None:
        if self._ws is not None:
            await self._ws.send(json.dumps(message))

    def set_auth(self, token: str) -> None:
        """Push a refreshed access token to the open channel."""
        if self._ws is None:
            return
        message = {
            "topic": self.topic,
            "event": "access_token",
            "payload": {"access_token": token},
            "ref": self._next_ref(),
            "join_ref": self._join_ref,
        }
        asyncio.ensure_future(self._send(message))

    async def subscribe(self) -> None:
        if self._runner is not None and not self._runner.done():
            return
        if not self._bindings:
            raise RealtimeFailure(f"channel {self.topic} has no postgres_changes bindings")
        self._stopped = False
        self._runner = asyncio.create_task(self._run(), name=f"realtime-{self.name}")

    async def unsubscribe(self) -> None:
        self._stopped = True
        if self._ws is not None:
            try:
                await self._send(
                    {"topic": self.topic, "event": "phx_leave", "payload": {}, "ref": self._next_ref()}
                )
            except WebSocketException as exc:
                logger.debug("phx_leave not delivered topic=%s: %s", self.topic, exc)
        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        self._emit_status(CHANNEL_CLOSED)
        if self._on_closed is not None:
            self._on_closed(self)

    async def _run(self) -> None:
        while not self._stopped:
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    await self._send(self.join_message())
                    heartbeat = asyncio.create_task(self._heartbeat())
                    try:
                        async for raw in ws:
                            self.handle_message(raw)
                    finally:
                        heartbeat.cancel()
                        self._ws = None
            except asyncio.CancelledError:
                self._ws = None
                raise
            except (OSError, WebSocketException) as exc:
                logger.warning("realtime connection lost topic=%s: %s", self.topic, exc)
                self._emit_status(CHANNEL_ERROR)
            if self._stopped:
                break
            logger.info("realtime reconnecting topic=%s in %ss", self.topic, self._reconnect_seconds)
            await asyncio.sleep(self._reconnect_seconds)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            await self._send(
                {"topic": PHOENIX_TOPIC, "event": "heartbeat", "payload": {}, "ref": self._next_ref()}
            )

    def handle_message(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("ignoring non-json realtime frame")
            return
        if not isinstance(message, dict) or message.get("topic") != self.topic:
            return
        event = message.get("event")
        payload = message.get("payload") or {}

        if event == "phx_reply" and message.get("ref") == self._join_ref:
            if payload.get("status") == "ok":
                logger.info("realtime subscribed topic=%s", self.topic)
                self._emit_status(CHANNEL_SUBSCRIBED)
            else:
                reason = (payload.get("response") or {}).get("reason")
                logger.warning("realtime join rejected topic=%s reason=%s", self.topic, reason)
                self._emit_status(CHANNEL_ERROR)
        elif event in ("phx_error", "phx_close"):
            self._emit_status(CHANNEL_ERROR if event == "phx_error" else CHANNEL_CLOSED)
        elif event == "postgres_changes":
            self._dispatch(payload.get("data") or {})

    def _dispatch(self, data: dict[str, Any]) -> None:
        event_type = data.get("type") or data.get("eventType")
        if event_type not in ("INSERT", "UPDATE", "DELETE"):
            return
        change = ChangeEvent(
            event_type=event_type,
            table=data.get("table"),
            new=data.get("record") or {},
            old=data.get("old_record") or {},
            commit_timestamp=data.get("commit_timestamp"),
        )
        for table, handler, _ in self._bindings:
            if table != change.table:
                continue
            try:
                handler(change)
            except Exception:
                logger.exception("change handler failed on %s", self.topic)
