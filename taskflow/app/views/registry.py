"""Browser-session id -> SessionController mapping for the running process.

Controllers are created on the first request that changes state (sign-in
form, toggle) and evicted once their cookie has expired or the browser has
been idle for ``controller_idle_seconds``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from taskflow.app.config import create_backend, get_settings
from taskflow.app.views.session_controller import SessionController

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    controller: SessionController
    created_at: float
    last_seen: float


class ControllerRegistry:
    def __init__(
        self,
        backend_factory: Optional[Callable] = None,
        *,
        idle_seconds: Optional[float] = None,
        max_age_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self._backend_factory = backend_factory or create_backend
        self.idle_seconds = idle_seconds if idle_seconds is not None else settings.controller_idle_seconds
        self.max_age_seconds = max_age_seconds if max_age_seconds is not None else settings.session_ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, sid: str) -> Optional[SessionController]:
        entry = self._entries.get(sid)
        return entry.controller if entry else None

    def peek(self, sid: str) -> Optional[SessionController]:
        """Return the live controller for ``sid`` without creating one."""
        entry = self._entries.get(sid)
        if entry is None or self._expired(entry, self._clock()):
            return None
        entry.last_seen = self._clock()
        return entry.controller

    async def get_or_create(self, sid: str) -> SessionController:
        await self.sweep()
        async with self._lock:
            now = self._clock()
            entry = self._entries.get(sid)
            if entry is None:
                controller = SessionController(self._backend_factory(), sid=sid, settings=get_settings())
                entry = _Entry(controller=controller, created_at=now, last_seen=now)
                self._entries[sid] = entry
                logger.info("session controller created", extra={"session": sid})
            entry.last_seen = now
        await entry.controller.start()
        return entry.controller

    def _expired(self, entry: _Entry, now: float) -> bool:
        if self.max_age_seconds and now - entry.created_at >= self.max_age_seconds:
            return True
        return bool(self.idle_seconds) and now - entry.last_seen >= self.idle_seconds

    async def sweep(self) -> int:
        """Drop controllers past their cookie lifetime or idle limit."""
        now = self._clock()
        async with self._lock:
            stale = [sid for sid, entry in self._entries.items() if self._expired(entry, now)]
        for sid in stale:
            logger.info("evicting session controller", extra={"session": sid})
            await self.drop(sid)
        return len(stale)

    async def run_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("controller sweep failed")

    async def drop(self, sid: str) -> None:
        async with self._lock:
            entry = self._entries.pop(sid, None)
        if entry is not None:
            await entry.controller.stop()

    async def close_all(self) -> None:
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            await entry.controller.stop()


_registry: Optional[ControllerRegistry] = None


def set_registry(registry: ControllerRegistry) -> None:
    global _registry
    _registry = registry


def get_registry() -> ControllerRegistry:
    global _registry
    if _registry is None:
        _registry = ControllerRegistry()
    return _registry
