"""Session holder and listener fan-out shared by the auth adapters."""

from __future__ import annotations

import logging
from typing import Optional

from taskflow.app.ports.backend import SessionCallback
from taskflow.app.schemas import Session

logger = logging.getLogger(__name__)


class _ListenerHandle:
    def __init__(self, owner: "SessionState", callback: SessionCallback):
        self._owner = owner
        self._callback = callback

    def unsubscribe(self) -> None:
        self._owner._remove(self._callback)


class SessionState:
    """Holds the current session and notifies listeners when it changes."""

    def __init__(self) -> None:
        self._session: Optional[Session] = None
        self._listeners: list[SessionCallback] = []

    @property
    def current(self) -> Optional[Session]:
        return self._session

    @property
    def access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    def on_session_change(self, callback: SessionCallback) -> _ListenerHandle:
        self._listeners.append(callback)
        return _ListenerHandle(self, callback)

    def _remove(self, callback: SessionCallback) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def set(self, event: str, session: Optional[Session]) -> None:
        self._session = session
        for callback in list(self._listeners):
            try:
                callback(event, session)
            except Exception:
                logger.exception("session listener failed for event %s", event)
