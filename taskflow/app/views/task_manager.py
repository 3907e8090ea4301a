"""Task list, creation form and inline edits for one signed-in session."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional

from taskflow.app.config import Settings, get_settings
from taskflow.app.core.calls import Result, call_backend
from taskflow.app.core.task_cache import TaskCache
from taskflow.app.ports.backend import CHANNEL_ERROR, CHANNEL_SUBSCRIBED, IBackend, IChannel
from taskflow.app.schemas import ChangeEvent, DescriptionUpdate, Session, Task, TaskCreate
from taskflow.app.utils.keys import KeyBuilder

logger = logging.getLogger(__name__)

SCOPE_SHARED = "shared"
SCOPE_OWNER = "owner"


class FormState(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    SUBMITTING = "submitting"


@dataclass
class StagedImage:
    filename: str
    data: bytes
    content_type: Optional[str] = None


class TaskManager:
    def __init__(
        self,
        backend: IBackend,
        session: Session,
        *,
        sid: str = "-",
        settings: Optional[Settings] = None,
    ):
        self.backend = backend
        self.session = session
        self.sid = sid
        self.settings = settings or get_settings()
        self.table_name = self.settings.tasks_table
        self.bucket = self.settings.image_bucket
        self.scope = (self.settings.task_scope or SCOPE_SHARED).strip().lower()
        if self.scope not in (SCOPE_SHARED, SCOPE_OWNER):
            raise ValueError(f"Unknown TASK_SCOPE: {self.settings.task_scope}")
        self.cache = TaskCache(scope_email=self.owner_email)

        self.title = ""
        self.description = ""
        self.image: Optional[StagedImage] = None
        self.form_state = FormState.IDLE
        self.pending_edits: dict[str, str] = {}
        self.last_error: Optional[str] = None

        self._channel: Optional[IChannel] = None
        self._subscribed_once = False
        self._stopped = False
        self._listeners: set[asyncio.Queue] = set()
        self._background: set[asyncio.Task] = set()

    @property
    def email(self) -> Optional[str]:
        return self.session.user.email

    @property
    def owner_email(self) -> Optional[str]:
        return self.email if self.scope == SCOPE_OWNER else None

    @property
    def tasks(self) -> list[Task]:
        return self.cache.items()

    @property
    def is_submitting(self) -> bool:
        return self.form_state != FormState.IDLE

    def _scope_filters(self) -> Optional[dict[str, Any]]:
        return {"email": self.owner_email} if self.owner_email else None

    async def _call(self, op: str, awaitable) -> Result:
        return await call_backend(op, awaitable, timeout=self.settings.backend_timeout_seconds, session=self.sid)

    # ------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        """Open the change feed, then load the current rows."""
        await self.subscribe()
        if not self._stopped:
            await self.load()

    async def stop(self) -> None:
        self._stopped = True
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.unsubscribe()
        for task in list(self._background):
            task.cancel()
        for queue in list(self._listeners):
            queue.put_nowait(None)
        self._listeners.clear()

    async def subscribe(self) -> None:
        if self._channel is not None:
            return
        channel = self.backend.channel(f"db-changes-{self.sid}")
        channel.on_change(self.table_name, self._on_change, filters=self._scope_filters())
        channel.on_status(self._on_status)
        self._channel = channel
        result = await self._call("realtime.subscribe", channel.subscribe())
        if not result.ok:
            self.last_error = result.message

    async def load(self) -> Result:
        since = self.cache.begin_snapshot()
        result = await self._call(
            "tasks.select",
            self.backend.table(self.table_name).select(
                order_by="created_at", descending=True, filters=self._scope_filters()
            ),
        )
        if result.ok:
            self.cache.apply_snapshot(result.value or [], since)
            self.last_error = None
            self._notify({"type": "reload", "count": len(self.cache)})
        else:
            self.last_error = result.message
            logger.warning("task load failed: %s", result.message, extra={"session": self.sid})
        return result

    # ---------------------------------------------------------- change feed

    def _on_change(self, event: ChangeEvent) -> None:
        changed = self.cache.apply_event(event)
        task_id = (event.new or event.old).get("id")
        logger.debug(
            "feed %s applied=%s", event.event_type, changed, extra={"session": self.sid, "task": task_id}
        )
        if changed:
            self._notify({"type": event.event_type.lower(), "id": task_id})

    def _on_status(self, status: str) -> None:
        if status == CHANNEL_SUBSCRIBED:
            if self._subscribed_once and not self._stopped:
                # Events may have been missed while disconnected
                self._spawn(self.load())
            self._subscribed_once = True
        elif status == CHANNEL_ERROR:
            logger.warning("change feed error", extra={"session": self.sid})

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------ listeners

    def _notify(self, payload: dict[str, Any]) -> None:
        for queue in list(self._listeners):
            queue.put_nowait(payload)

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        """Yield a notification each time the visible list changes."""
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.add(queue)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                yield item
        finally:
            self._listeners.discard(queue)

    # ----------------------------------------------------------- create form

    def stage_image(self, filename: Optional[str], data: Optional[bytes], content_type: Optional[str] = None) -> None:
        """Stage at most one image; an empty selection clears it."""
        if not filename or not data:
            self.image = None
            return
        self.image = StagedImage(filename=filename, data=data, content_type=content_type)

    async def _upload(self, key: str, image: StagedImage) -> str:
        # Storage checks the caller's JWT, so refresh it first when expired
        session = await self.backend.auth.get_session()
        token = session.access_token if session else None
        return await self.backend.storage.upload(
            self.bucket,
            key,
            image.data,
            content_type=image.content_type,
            access_token=token,
        )

    async def upload_image(self, image: StagedImage) -> Optional[str]:
        strategy = self.settings.upload_key_strategy
        key = KeyBuilder.build(strategy, image.filename, image.data)
        result = await self._call("storage.upload", self._upload(key, image))
        duplicate = not result.ok and strategy == "content" and result.error.status_code == 409
        if not result.ok and not duplicate:
            logger.warning("image upload failed, continuing without image: %s", result.message, extra={"session": self.sid})
            return None
        return self.backend.storage.get_public_url(self.bucket, key)

    async def create(self, title: Optional[str] = None, description: Optional[str] = None) -> Optional[Result]:
        """Submit the form. Returns None when nothing was sent."""
        if self.form_state != FormState.IDLE:
            return None
        if title is not None:
            self.title = title
        if description is not None:
            self.description = description
        if not self.title.strip():
            return None

        image_url: Optional[str] = None
        try:
            if self.image is not None:
                self.form_state = FormState.UPLOADING
                image_url = await self.upload_image(self.image)
            self.form_state = FormState.SUBMITTING
            row = TaskCreate(
                title=self.title,
                description=self.description or "",
                email=self.email,
                image_url=image_url,
            )
            # The insert response is ignored; the feed delivers the new row.
            result = await self._call("tasks.insert", self.backend.table(self.table_name).insert(row.model_dump()))
        finally:
            self.form_state = FormState.IDLE

        if result.ok:
            self.title = ""
            self.description = ""
            self.image = None
            self.last_error = None
        else:
            self.last_error = result.message
            logger.error("task submission failed: %s", result.message, extra={"session": self.sid})
        return result

    # ------------------------------------------------------ per-row actions

    async def delete(self, task_id: Any) -> Result:
        # Not optimistic: the row disappears when the DELETE event arrives.
        result = await self._call("tasks.delete", self.backend.table(self.table_name).delete(task_id))
        if not result.ok:
            self.last_error = result.message
        return result

    def set_pending_edit(self, task_id: Any, value: str) -> None:
        self.pending_edits[str(task_id)] = value

    async def save_edit(self, task_id: Any, value: Optional[str] = None) -> Optional[Result]:
        """Send the pending description for ``task_id``. Returns None when it is empty."""
        if value is not None:
            self.set_pending_edit(task_id, value)
        pending = self.pending_edits.get(str(task_id), "")
        if not pending:
            return None
        patch = DescriptionUpdate(description=pending)
        result = await self._call(
            "tasks.update", self.backend.table(self.table_name).update(task_id, patch.model_dump())
        )
        self.pending_edits[str(task_id)] = ""
        if not result.ok:
            self.last_error = result.message
        return result


