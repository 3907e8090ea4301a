"""Client-side task list kept consistent with the backend.

Feed events and full reloads both mutate the list. Each applied feed event
gets a monotonic sequence number; a reload remembers the sequence at the
moment its request started, and rows the feed touched after that point keep
their feed version instead of being reverted by the (older) snapshot.
Deleted ids are tombstoned so a stale snapshot cannot resurrect them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from pydantic import ValidationError

from taskflow.app.schemas import ChangeEvent, Task

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _aware(value: Optional[datetime]) -> datetime:
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def sort_tasks_by_created(tasks: Iterable[Task]) -> List[Task]:
    """Return tasks sorted by created_at descending; rows without one sort last."""
    return sorted(list(tasks or []), key=lambda t: _aware(t.created_at), reverse=True)


def _key(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _is_older(candidate: Task, current: Task) -> bool:
    # Only meaningful when both rows carry updated_at
    if candidate.updated_at is None or current.updated_at is None:
        return False
    return _aware(candidate.updated_at) < _aware(current.updated_at)


class TaskCache:
    def __init__(self, scope_email: Optional[str] = None):
        self.scope_email = scope_email
        self._rows: dict[str, Task] = {}
        self._touched: dict[str, int] = {}
        self._tombstones: dict[str, int] = {}
        self._late_updates: dict[str, tuple[int, Task]] = {}
        self._seq = 0

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, task_id: Any) -> bool:
        return _key(task_id) in self._rows

    def get(self, task_id: Any) -> Optional[Task]:
        key = _key(task_id)
        return self._rows.get(key) if key else None

    def items(self) -> List[Task]:
        return sort_tasks_by_created(self._rows.values())

    def ids(self) -> List[str]:
        return [str(t.id) for t in self.items()]

    def _parse(self, row: dict[str, Any]) -> Optional[Task]:
        try:
            return Task.model_validate(row)
        except ValidationError as exc:
            logger.warning("dropping malformed task row id=%s: %s", row.get("id"), exc.errors()[:1])
            return None

    def _in_scope(self, task: Task) -> bool:
        return self.scope_email is None or task.email == self.scope_email

    # ------------------------------------------------------------------ reload

    def begin_snapshot(self) -> int:
        """Mark the start of a reload; pass the marker to :meth:`apply_snapshot`."""
        return self._seq

    def apply_snapshot(self, rows: Iterable[dict[str, Any]], since: int) -> None:
        merged: dict[str, Task] = {}
        for row in rows:
            task = self._parse(row)
            if task is None or not self._in_scope(task):
                continue
            key = str(task.id)
            if self._tombstones.get(key, -1) > since:
                continue
            current = self._rows.get(key)
            feed_newer = self._touched.get(key, -1) > since
            if current is None and feed_newer:
                # Moved out of scope by a newer UPDATE
                continue
            if current is not None and (feed_newer or _is_older(task, current)):
                merged[key] = current
                continue
            late = self._late_updates.get(key)
            if late is not None and late[0] > since and not _is_older(late[1], task):
                task = late[1]
            merged[key] = task

        # Rows the feed inserted after the request started are not in the snapshot yet
        for key, seq in self._touched.items():
            if seq > since and key in self._rows and key not in merged:
                merged[key] = self._rows[key]

        self._rows = merged
        self._tombstones = {k: s for k, s in self._tombstones.items() if s > since}
        self._touched = {k: s for k, s in self._touched.items() if s > since}
        self._late_updates.clear()

    # -------------------------------------------------------------- feed events

    def apply_event(self, event: ChangeEvent) -> bool:
        """Apply one change-feed event. Returns True when the list changed."""
        self._seq += 1
        seq = self._seq

        if event.event_type == "DELETE":
            key = _key(event.old.get("id"))
            if key is None:
                return False
            self._tombstones[key] = seq
            self._touched.pop(key, None)
            self._late_updates.pop(key, None)
            return self._rows.pop(key, None) is not None

        task = self._parse(event.new)
        if task is None:
            return False
        key = str(task.id)

        if event.event_type == "INSERT":
            if not self._in_scope(task):
                return False
            current = self._rows.get(key)
            if current is not None and _is_older(task, current):
                return False
            # Duplicate INSERT for a present id replaces in place
            self._rows[key] = task
            self._touched[key] = seq
            self._tombstones.pop(key, None)
            return True

        # UPDATE
        current = self._rows.get(key)
        if current is None:
            # Never show a row only an UPDATE announced; a pending reload may still need it
            self._late_updates[key] = (seq, task)
            return False
        if not self._in_scope(task):
            del self._rows[key]
            self._touched[key] = seq
            return True
        if _is_older(task, current):
            return False
        self._rows[key] = task
        self._touched[key] = seq
        return True
