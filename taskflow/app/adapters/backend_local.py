"""Self-contained backend for development: SQLite tables, in-process change feed.

Mirrors the hosted backend's observable behaviour closely enough for the
views: GoTrue-style error messages, PostgREST-style equality filters and
Realtime-style change events (DELETE events carry only the primary key).
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import secrets
import time
import uuid
from functools import lru_cache
from typing import Any, Optional

from sqlalchemy import select as sa_select
from sqlalchemy.exc import SQLAlchemyError

from taskflow.app.adapters.auth_state import SessionState
from taskflow.app.auth import hash_password, sign_payload, verify_password, verify_payload
from taskflow.app.config import get_settings
from taskflow.app.core.errors import AuthFailure, QueryFailure, RealtimeFailure
from taskflow.app.db import session_factory
from taskflow.app.models import RefreshTokenRow, TaskRow, UserRow
from taskflow.app.ports.backend import (
    CHANNEL_CLOSED,
    CHANNEL_SUBSCRIBED,
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    ChangeHandler,
    StatusHandler,
)
from taskflow.app.ports.storage import IStorageService
from taskflow.app.schemas import ChangeEvent, Session, TaskId, User

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TTL_SECONDS = 3600
MIN_PASSWORD_LENGTH = 6
WRITABLE_COLUMNS = {"title", "description", "email", "image_url"}


class FeedHub:
    """In-process fan-out of table changes to subscribed channels."""

    def __init__(self) -> None:
        self._channels: list["LocalChannel"] = []

    def attach(self, channel: "LocalChannel") -> None:
        if channel not in self._channels:
            self._channels.append(channel)

    def detach(self, channel: "LocalChannel") -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def publish(self, event: ChangeEvent) -> None:
        for channel in list(self._channels):
            channel.deliver(event)


@lru_cache()
def get_feed_hub(database_url: str) -> FeedHub:
    return FeedHub()


class LocalChannel:
    def __init__(self, hub: FeedHub, name: str):
        self.name = name
        self._hub = hub
        self._bindings: list[tuple[str, ChangeHandler, dict[str, Any]]] = []
        self._status_handlers: list[StatusHandler] = []

    def on_change(self, table: str, handler: ChangeHandler, *, filters: Optional[dict[str, Any]] = None):
        self._bindings.append((table, handler, dict(filters or {})))
        return self

    def on_status(self, handler: StatusHandler):
        self._status_handlers.append(handler)
        return self

    async def subscribe(self) -> None:
        if not self._bindings:
            raise RealtimeFailure(f"channel {self.name} has no change bindings")
        self._hub.attach(self)
        self._emit_status(CHANNEL_SUBSCRIBED)

    async def unsubscribe(self) -> None:
        self._hub.detach(self)
        self._emit_status(CHANNEL_CLOSED)

    def _emit_status(self, status: str) -> None:
        for handler in list(self._status_handlers):
            handler(status)

    def deliver(self, event: ChangeEvent) -> None:
        for table, handler, filters in self._bindings:
            if table != event.table:
                continue
            if filters and event.event_type != "DELETE":
                row = event.new
                if any(str(row.get(col)) != str(val) for col, val in filters.items()):
                    continue
            try:
                handler(event)
            except Exception:
                logger.exception("change handler failed on channel %s", self.name)


class LocalAuth:
    def __init__(self, backend: "LocalBackend"):
        self._backend = backend
        self._state = SessionState()
        self._refresh_lock = asyncio.Lock()

    @property
    def access_token(self) -> Optional[str]:
        return self._state.access_token

    def on_session_change(self, callback):
        return self._state.on_session_change(callback)

    def _issue_session(self, db, user: UserRow) -> Session:
        now = int(time.time())
        expires_at = now + ACCESS_TOKEN_TTL_SECONDS
        access_token = sign_payload(
            {"sub": user.id, "email": user.email, "iat": now, "exp": expires_at},
            self._backend.secret,
        )
        refresh = RefreshTokenRow(token=secrets.token_urlsafe(32), user_id=user.id)
        db.add(refresh)
        db.commit()
        return Session(
            access_token=access_token,
            refresh_token=refresh.token,
            expires_at=expires_at,
            user=User(id=user.id, email=user.email),
        )

    async def sign_up(self, email: str, password: str) -> Optional[Session]:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise AuthFailure("Unable to validate email address: invalid format", status_code=400)
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise AuthFailure(
                f"Password should be at least {MIN_PASSWORD_LENGTH} characters.", status_code=422
            )
        with self._backend.sessions() as db:
            existing = db.execute(sa_select(UserRow).where(UserRow.email == email)).scalar_one_or_none()
            if existing is not None:
                raise AuthFailure("User already registered", status_code=422)
            db.add(UserRow(id=str(uuid.uuid4()), email=email, password_hash=hash_password(password)))
            db.commit()
        logger.info("local user registered email=%s", email)
        # No mail server locally: the account is usable right away, but sign-up
        # never starts a session.
        return None

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        email = (email or "").strip().lower()
        with self._backend.sessions() as db:
            user = db.execute(sa_select(UserRow).where(UserRow.email == email)).scalar_one_or_none()
            if user is None or not verify_password(password or "", user.password_hash):
                raise AuthFailure("Invalid login credentials", status_code=400)
            if not user.confirmed:
                raise AuthFailure("Email not confirmed", status_code=400)
            session = self._issue_session(db, user)
        self._state.set(SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        current = self._state.current
        if current and current.refresh_token:
            with self._backend.sessions() as db:
                row = db.get(RefreshTokenRow, current.refresh_token)
                if row is not None:
                    row.revoked = True
                    db.commit()
        self._state.set(SIGNED_OUT, None)

    async def get_session(self) -> Optional[Session]:
        current = self._state.current
        if current is None or not current.is_expired(time.time()):
            return current
        return await self._refresh(only_if_expired=True)

    async def refresh_session(self) -> Optional[Session]:
        return await self._refresh(only_if_expired=False)

    async def _refresh(self, *, only_if_expired: bool) -> Optional[Session]:
        async with self._refresh_lock:
            current = self._state.current
            if current is None:
                return None
            if only_if_expired and not current.is_expired(time.time()):
                return current
            with self._backend.sessions() as db:
                row = db.get(RefreshTokenRow, current.refresh_token) if current.refresh_token else None
                user = db.get(UserRow, row.user_id) if row is not None and not row.revoked else None
                if user is None:
                    session = None
                else:
                    # Refresh tokens are single use
                    row.revoked = True
                    session = self._issue_session(db, user)
            if session is None:
                logger.info("local refresh token rejected")
                self._state.set(SIGNED_OUT, None)
                return None
            self._state.set(TOKEN_REFRESHED, session)
            return session


class LocalTable:
    def __init__(self, backend: "LocalBackend", name: str):
        self._backend = backend
        self.name = name

    async def _require_user(self) -> dict[str, Any]:
        # Refreshes an expired access token first, signing out when that fails
        await self._backend.auth.get_session()
        token = self._backend.auth.access_token
        claims = verify_payload(token, self._backend.secret) if token else None
        if not claims:
            raise QueryFailure("JWT expired or missing", status_code=401)
        return claims

    def _check_table(self) -> None:
        if self.name != TaskRow.__tablename__:
            raise QueryFailure(f'relation "public.{self.name}" does not exist', status_code=404)

    async def select(
        self,
        *,
        order_by: str = "created_at",
        descending: bool = True,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        self._check_table()
        await self._require_user()
        column = getattr(TaskRow, order_by, None)
        if column is None:
            raise QueryFailure(f"column tasks.{order_by} does not exist", status_code=400)
        stmt = sa_select(TaskRow).order_by(column.desc() if descending else column.asc())
        for col, value in (filters or {}).items():
            stmt = stmt.where(getattr(TaskRow, col) == value)
        try:
            with self._backend.sessions() as db:
                return [row.to_dict() for row in db.execute(stmt).scalars().all()]
        except SQLAlchemyError as exc:
            raise QueryFailure(str(exc), cause=exc) from exc

    async def insert(self, row: dict[str, Any]) -> None:
        self._check_table()
        await self._require_user()
        values = {k: v for k, v in row.items() if k in WRITABLE_COLUMNS}
        if not values.get("title"):
            raise QueryFailure('null value in column "title" violates not-null constraint', status_code=400)
        try:
            with self._backend.sessions() as db:
                task = TaskRow(**values)
                db.add(task)
                db.commit()
                db.refresh(task)
                payload = task.to_dict()
        except SQLAlchemyError as exc:
            raise QueryFailure(str(exc), cause=exc) from exc
        self._backend.publish("INSERT", self.name, new=payload)

    async def delete(self, row_id: TaskId) -> None:
        self._check_table()
        await self._require_user()
        try:
            with self._backend.sessions() as db:
                task = db.get(TaskRow, int(row_id))
                if task is None:
                    return
                db.delete(task)
                db.commit()
        except (SQLAlchemyError, ValueError) as exc:
            raise QueryFailure(str(exc), cause=exc) from exc
        self._backend.publish("DELETE", self.name, old={"id": int(row_id)})

    async def update(self, row_id: TaskId, values: dict[str, Any]) -> None:
        self._check_table()
        await self._require_user()
        patch = {k: v for k, v in values.items() if k in WRITABLE_COLUMNS}
        try:
            with self._backend.sessions() as db:
                task = db.get(TaskRow, int(row_id))
                if task is None:
                    return
                old = task.to_dict()
                for key, value in patch.items():
                    setattr(task, key, value)
                task.updated_at = dt.datetime.now(dt.timezone.utc)
                db.commit()
                db.refresh(task)
                payload = task.to_dict()
        except (SQLAlchemyError, ValueError) as exc:
            raise QueryFailure(str(exc), cause=exc) from exc
        self._backend.publish("UPDATE", self.name, new=payload, old={"id": old["id"]})


class LocalBackend:
    def __init__(
        self,
        storage: IStorageService,
        database_url: Optional[str] = None,
        secret: Optional[str] = None,
    ):
        settings = get_settings()
        self.database_url = database_url or settings.local_database_url
        self.secret = secret or settings.session_secret
        self.storage = storage
        self.sessions = session_factory(self.database_url)
        self.hub = get_feed_hub(self.database_url)
        self.auth = LocalAuth(self)
        self._channels: list[LocalChannel] = []

    @property
    def access_token(self) -> Optional[str]:
        return self.auth.access_token

    def table(self, name: str) -> LocalTable:
        return LocalTable(self, name)

    def channel(self, name: str) -> LocalChannel:
        channel = LocalChannel(self.hub, name)
        self._channels.append(channel)
        return channel

    def publish(self, event_type: str, table: str, *, new=None, old=None) -> None:
        event = ChangeEvent(
            event_type=event_type,
            table=table,
            new=new or {},
            old=old or {},
            commit_timestamp=dt.datetime.now(dt.timezone.utc).isoformat(),
        )
        self.hub.publish(event)

    async def close(self) -> None:
        for channel in list(self._channels):
            await channel.unsubscribe()
        self._channels.clear()
