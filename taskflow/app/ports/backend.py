"""Port interfaces for the hosted backend (auth, tables, change feed, storage)."""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, runtime_checkable

from taskflow.app.ports.storage import IStorageService
from taskflow.app.schemas import ChangeEvent, Session, TaskId

# Auth events delivered to session-change listeners.
SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"

# Channel status values delivered to status handlers.
CHANNEL_SUBSCRIBED = "SUBSCRIBED"
CHANNEL_CLOSED = "CLOSED"
CHANNEL_ERROR = "CHANNEL_ERROR"

SessionCallback = Callable[[str, Optional[Session]], None]
ChangeHandler = Callable[[ChangeEvent], None]
StatusHandler = Callable[[str], None]


@runtime_checkable
class Subscription(Protocol):
    def unsubscribe(self) -> None:
        """Stop delivering notifications to the callback."""


@runtime_checkable
class IAuthProvider(Protocol):
    """Identity provider client holding the current session."""

    async def get_session(self) -> Optional[Session]:
        """Return the current session, refreshing it when expired, or None."""

    async def refresh_session(self) -> Optional[Session]:
        """Exchange the refresh token now. Emits TOKEN_REFRESHED, or SIGNED_OUT when rejected."""

    def on_session_change(self, callback: SessionCallback) -> Subscription:
        """Register a listener fired on sign-in, sign-out and token refresh."""

    async def sign_up(self, email: str, password: str) -> Optional[Session]:
        """Register a user. Returns a session only when the backend auto-confirms."""

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        """Exchange credentials for a session and notify listeners."""

    async def sign_out(self) -> None:
        """Invalidate the session and notify listeners."""


@runtime_checkable
class ITable(Protocol):
    """Row operations on one backend table."""

    async def select(
        self,
        *,
        order_by: str = "created_at",
        descending: bool = True,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """Return all rows matching equality ``filters`` in the given order."""

    async def insert(self, row: dict[str, Any]) -> None:
        """Insert one row."""

    async def delete(self, row_id: TaskId) -> None:
        """Delete the row whose id equals ``row_id``."""

    async def update(self, row_id: TaskId, values: dict[str, Any]) -> None:
        """Patch ``values`` on the row whose id equals ``row_id``."""


@runtime_checkable
class IChannel(Protocol):
    """A change-feed subscription for one or more tables."""

    def on_change(
        self,
        table: str,
        handler: ChangeHandler,
        *,
        filters: Optional[dict[str, Any]] = None,
    ) -> "IChannel":
        """Deliver every INSERT/UPDATE/DELETE on ``table`` to ``handler``."""

    def on_status(self, handler: StatusHandler) -> "IChannel":
        """Report SUBSCRIBED / CLOSED / CHANNEL_ERROR transitions."""

    async def subscribe(self) -> None:
        """Start delivering events."""

    async def unsubscribe(self) -> None:
        """Stop delivering events and release the transport."""


@runtime_checkable
class IBackend(Protocol):
    auth: IAuthProvider
    storage: IStorageService

    def table(self, name: str) -> ITable:
        """Return a table handle bound to the current session."""

    def channel(self, name: str) -> IChannel:
        """Create a change-feed channel bound to the current session."""

    async def close(self) -> None:
        """Release HTTP clients and open channels."""
