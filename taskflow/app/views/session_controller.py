"""Per-browser-session owner of authentication state.

Decides which view the browser sees and creates the Task Manager once a
session exists.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from taskflow.app.config import Settings, get_settings
from taskflow.app.core.calls import Result, call_backend
from taskflow.app.ports.backend import IBackend, Subscription
from taskflow.app.schemas import Session, SessionInfo
from taskflow.app.views.auth_view import AuthView
from taskflow.app.views.task_manager import TaskManager

logger = logging.getLogger(__name__)

VIEW_LOADING = "loading"
VIEW_AUTH = "auth"
VIEW_DASHBOARD = "dashboard"

# Refresh this long before the access token expires
REFRESH_MARGIN_SECONDS = 60
REFRESH_RETRY_SECONDS = 10


class SessionController:
    def __init__(
        self,
        backend: IBackend,
        *,
        sid: str = "-",
        settings: Optional[Settings] = None,
        task_manager_factory: Optional[Callable[..., TaskManager]] = None,
    ):
        self.sid = sid
        self.backend = backend
        self.settings = settings or get_settings()
        self.session: Optional[Session] = None
        self.loading = True
        self.auth_view = AuthView(backend.auth, sid=sid, timeout=self.settings.backend_timeout_seconds)
        self.task_manager: Optional[TaskManager] = None
        self._task_manager_factory = task_manager_factory or TaskManager
        self._listener: Optional[Subscription] = None
        self._started = False
        self._start_lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def view(self) -> str:
        if self.loading:
            return VIEW_LOADING
        return VIEW_DASHBOARD if self.session else VIEW_AUTH

    @property
    def email(self) -> Optional[str]:
        return self.session.user.email if self.session else None

    def info(self) -> SessionInfo:
        return SessionInfo(
            view=self.view,
            email=self.email,
            auth_mode=self.auth_view.mode,
            message=self.auth_view.message,
        )

    async def start(self) -> None:
        """Subscribe to session changes, then resolve the initial session once."""
        async with self._start_lock:
            if self._started:
                return
            self._started = True
            self._listener = self.backend.auth.on_session_change(self._on_session_change)
            result: Result = await call_backend(
                "auth.get_session",
                self.backend.auth.get_session(),
                timeout=self.settings.backend_timeout_seconds,
                session=self.sid,
            )
            if result.ok:
                await self._apply_session(result.value)
            else:
                await self._apply_session(None)
            self.loading = False

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.unsubscribe()
            self._listener = None
        self._cancel_refresh()
        for task in list(self._pending):
            task.cancel()
        await self._teardown_task_manager()
        await self.backend.close()
        self._started = False

    async def logout(self) -> Result:
        # The new (empty) session arrives through the change listener.
        return await call_backend(
            "auth.sign_out",
            self.backend.auth.sign_out(),
            timeout=self.settings.backend_timeout_seconds,
            session=self.sid,
        )

    async def settle(self) -> None:
        """Wait for session transitions scheduled by the listener."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _on_session_change(self, event: str, session: Optional[Session]) -> None:
        logger.info("session change %s", event, extra={"session": self.sid})
        self.loading = False
        task = asyncio.ensure_future(self._apply_session(session))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _apply_session(self, session: Optional[Session]) -> None:
        previous = self.session
        self.session = session
        self._schedule_refresh(session)
        if session is None:
            await self._teardown_task_manager()
            return
        same_user = previous is not None and previous.user.id == session.user.id
        if self.task_manager is not None and same_user:
            self.task_manager.session = session
            return
        await self._teardown_task_manager()
        manager = self._task_manager_factory(self.backend, session, sid=self.sid, settings=self.settings)
        self.task_manager = manager
        await manager.start()

    async def _teardown_task_manager(self) -> None:
        manager, self.task_manager = self.task_manager, None
        if manager is not None:
            await manager.stop()

    # ------------------------------------------------------- token refresh

    def _cancel_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _schedule_refresh(self, session: Optional[Session], delay: Optional[float] = None) -> None:
        """Refresh ``session`` shortly before it expires; each new session reschedules."""
        self._cancel_refresh()
        if session is None or not session.expires_at:
            return
        if delay is None:
            delay = max(float(session.expires_at) - time.time() - REFRESH_MARGIN_SECONDS, 0.0)
        self._refresh_task = asyncio.ensure_future(self._refresh_after(delay, session))

    async def _refresh_after(self, delay: float, session: Session) -> None:
        await asyncio.sleep(delay)
        if self.session is not session:
            return
        # A rejected refresh signs out through the listener
        result = await call_backend(
            "auth.refresh_session",
            self.backend.auth.refresh_session(),
            timeout=self.settings.backend_timeout_seconds,
            session=self.sid,
        )
        if not result.ok and self.session is session:
            logger.warning(
                "session refresh failed, retrying in %ss: %s",
                REFRESH_RETRY_SECONDS,
                result.message,
                extra={"session": self.sid},
            )
            self._schedule_refresh(session, delay=REFRESH_RETRY_SECONDS)
