from __future__ import annotations

import asyncio
import re

import pytest

from taskflow.app.core.errors import QueryFailure, UploadFailure
from taskflow.app.views.task_manager import FormState, TaskManager

from .fakes import FakeBackend, make_session, task_row


def _manager(backend: FakeBackend, settings) -> TaskManager:
    return TaskManager(backend, backend.auth.state.current, sid="test", settings=settings)


def _started(backend: FakeBackend, settings) -> TaskManager:
    manager = _manager(backend, settings)
    asyncio.run(manager.start())
    return manager


def test_start_subscribes_then_loads_newest_first(backend, settings) -> None:
    backend.tasks.rows = [
        task_row(1, "old", created_at="2024-01-01T00:00:00+00:00"),
        task_row(2, "new", created_at="2024-02-01T00:00:00+00:00"),
    ]
    manager = _started(backend, settings)

    assert backend.channel_obj.subscribed
    assert backend.tasks.selects == [{"order_by": "created_at", "descending": True, "filters": None}]
    assert [t.title for t in manager.tasks] == ["new", "old"]


def test_load_failure_keeps_list_and_records_error(backend, settings) -> None:
    backend.tasks.errors["select"] = QueryFailure("permission denied for table tasks", status_code=401)
    manager = _started(backend, settings)

    assert manager.tasks == []
    assert manager.last_error == "permission denied for table tasks"


@pytest.mark.parametrize("title", ["Buy milk", "  padded  ", "x"])
def test_non_empty_title_inserts_exactly_once(backend, settings, title: str) -> None:
    manager = _started(backend, settings)

    result = asyncio.run(manager.create(title=title))

    assert result is not None and result.ok
    assert len(backend.tasks.inserts) == 1
    assert backend.tasks.inserts[0]["title"] == title


@pytest.mark.parametrize("title", ["", "   ", "\t\n"])
def test_blank_title_inserts_nothing(backend, settings, title: str) -> None:
    manager = _started(backend, settings)
    manager.stage_image("photo.png", b"\x89PNG", "image/png")

    assert asyncio.run(manager.create(title=title)) is None
    assert backend.tasks.inserts == []
    assert backend.storage.uploads == []


def test_create_without_image_sends_expected_row(backend, settings) -> None:
    manager = _started(backend, settings)

    asyncio.run(manager.create(title="Buy milk"))

    assert backend.tasks.inserts == [
        {"title": "Buy milk", "description": "", "email": "user@example.com", "image_url": None}
    ]
    assert manager.title == "" and manager.description == ""
    assert manager.form_state == FormState.IDLE


def test_create_with_image_uploads_then_inserts_public_url(backend, settings) -> None:
    manager = _started(backend, settings)
    manager.stage_image("photo.png", b"\x89PNG-bytes", "image/png")

    asyncio.run(manager.create(title="Holiday", description="beach"))

    assert len(backend.storage.uploads) == 1
    upload = backend.storage.uploads[0]
    assert upload["bucket"] == "tasks-images"
    assert re.match(r"^photo\.png-\d{13}-[0-9a-f]{8}$", upload["key"])
    assert upload["access_token"] == "token-u-1"
    assert len(backend.tasks.inserts) == 1
    assert backend.tasks.inserts[0]["image_url"] == f"https://cdn.test/tasks-images/{upload['key']}"
    assert manager.image is None


def test_upload_failure_degrades_to_no_image(backend, settings) -> None:
    backend.storage.error = UploadFailure("Payload too large", status_code=413)
    manager = _started(backend, settings)
    manager.stage_image("photo.png", b"data", "image/png")

    result = asyncio.run(manager.create(title="Still created"))

    assert result.ok
    assert backend.tasks.inserts[0]["image_url"] is None


def test_content_key_conflict_reuses_existing_object(backend, settings) -> None:
    backend.storage.error = UploadFailure("The resource already exists", status_code=409)
    manager = _started(backend, settings.model_copy(update={"upload_key_strategy": "content"}))
    manager.stage_image("photo.png", b"same bytes", "image/png")

    asyncio.run(manager.create(title="Again"))

    key = backend.storage.uploads[0]["key"]
    assert backend.tasks.inserts[0]["image_url"] == f"https://cdn.test/tasks-images/{key}"


def test_upload_uses_refreshed_token_when_session_expired(settings) -> None:
    backend = FakeBackend(session=make_session(expires_at=1))
    backend.auth.refreshed_session = make_session().model_copy(update={"access_token": "rotated"})
    manager = _manager(backend, settings)
    manager.stage_image("photo.png", b"data", "image/png")

    asyncio.run(manager.create(title="Fresh token"))

    assert ("refresh_session",) in backend.auth.calls
    assert backend.storage.uploads[0]["access_token"] == "rotated"


def test_insert_failure_keeps_form_values(backend, settings) -> None:
    backend.tasks.errors["insert"] = QueryFailure('new row violates row-level security policy for table "tasks"')
    manager = _started(backend, settings)

    result = asyncio.run(manager.create(title="Keep me", description="details"))

    assert not result.ok
    assert manager.title == "Keep me"
    assert manager.description == "details"
    assert "row-level security" in manager.last_error


def test_hung_insert_times_out_and_frees_form(backend) -> None:
    from taskflow.app.config import Settings

    settings = Settings(backend_timeout_seconds=0.05, _env_file=None)
    backend.tasks.hang.add("insert")
    manager = _started(backend, settings)

    result = asyncio.run(manager.create(title="Slow"))

    assert result.kind == "timeout"
    assert manager.form_state == FormState.IDLE
    assert manager.title == "Slow"


def test_submit_while_in_flight_is_ignored(backend, settings) -> None:
    manager = _started(backend, settings)
    manager.form_state = FormState.SUBMITTING

    assert asyncio.run(manager.create(title="Second")) is None
    assert backend.tasks.inserts == []


def test_delete_waits_for_feed_echo(backend, settings) -> None:
    backend.tasks.rows = [task_row(1, "a"), task_row(2, "b", created_at="2024-01-02T00:00:00+00:00")]
    manager = _started(backend, settings)

    asyncio.run(manager.delete(1))

    assert backend.tasks.deletes == [1]
    assert sorted(manager.cache.ids()) == ["1", "2"]

    backend.channel_obj.emit("DELETE", old={"id": 1})

    assert manager.cache.ids() == ["2"]


def test_insert_event_prepends_and_duplicate_replaces(backend, settings) -> None:
    backend.tasks.rows = [task_row(1, "first")]
    manager = _started(backend, settings)

    backend.channel_obj.emit("INSERT", new=task_row(2, "second", created_at="2024-03-01T00:00:00+00:00"))
    backend.channel_obj.emit("INSERT", new=task_row(2, "second again", created_at="2024-03-01T00:00:00+00:00"))

    assert [t.title for t in manager.tasks] == ["second again", "first"]


def test_update_event_for_unknown_id_changes_nothing(backend, settings) -> None:
    backend.tasks.rows = [task_row(1, "only")]
    manager = _started(backend, settings)

    backend.channel_obj.emit("UPDATE", new=task_row(99, "phantom"))

    assert manager.cache.ids() == ["1"]


def test_update_event_replaces_row(backend, settings) -> None:
    backend.tasks.rows = [task_row(1, "only")]
    manager = _started(backend, settings)

    backend.channel_obj.emit("UPDATE", new=task_row(1, "only", description="edited"))

    assert manager.tasks[0].description == "edited"


def test_save_edit_updates_description_and_clears_pending(backend, settings) -> None:
    backend.tasks.rows = [task_row(7, "t")]
    manager = _started(backend, settings)
    manager.set_pending_edit(7, "new details")

    result = asyncio.run(manager.save_edit(7))

    assert result.ok
    assert backend.tasks.updates == [(7, {"description": "new details"})]
    assert manager.pending_edits["7"] == ""


def test_save_edit_with_empty_value_sends_nothing(backend, settings) -> None:
    manager = _started(backend, settings)

    assert asyncio.run(manager.save_edit(7, "")) is None
    assert backend.tasks.updates == []


def test_owner_scope_filters_query_feed_and_events() -> None:
    from taskflow.app.config import Settings

    settings = Settings(task_scope="owner", _env_file=None)
    backend = FakeBackend(session=make_session("me@example.com"))
    manager = _started(backend, settings)

    assert backend.tasks.selects[0]["filters"] == {"email": "me@example.com"}
    assert backend.channel_obj.bindings[0][2] == {"email": "me@example.com"}

    backend.channel_obj.emit("INSERT", new=task_row(1, "mine", email="me@example.com"))
    backend.channel_obj.emit("INSERT", new=task_row(2, "theirs", email="other@example.com"))

    assert manager.cache.ids() == ["1"]


def test_resubscribe_after_drop_reloads(backend, settings) -> None:
    async def scenario():
        manager = TaskManager(backend, backend.auth.state.current, sid="t", settings=settings)
        await manager.start()
        backend.tasks.rows = [task_row(5, "missed while offline")]
        backend.channel_obj.set_status("CHANNEL_ERROR")
        backend.channel_obj.set_status("SUBSCRIBED")
        await asyncio.gather(*list(manager._background))
        return manager

    manager = asyncio.run(scenario())

    assert len(backend.tasks.selects) == 2
    assert manager.cache.ids() == ["5"]


def test_listen_yields_changes_and_ends_on_stop(backend, settings) -> None:
    async def scenario():
        manager = TaskManager(backend, backend.auth.state.current, sid="t", settings=settings)
        await manager.start()
        received = []

        async def consume():
            async for item in manager.listen():
                received.append(item)

        consumer = asyncio.ensure_future(consume())
        await asyncio.sleep(0)
        backend.channel_obj.emit("INSERT", new=task_row(3, "live"))
        await asyncio.sleep(0)
        await manager.stop()
        await asyncio.wait_for(consumer, timeout=1)
        return received

    received = asyncio.run(scenario())

    assert received == [{"type": "insert", "id": 3}]
    assert not backend.channel_obj.subscribed
