from __future__ import annotations

import asyncio

from taskflow.app.deps import require_task_manager
from taskflow.app.main import app
from taskflow.app.views.registry import get_registry
from taskflow.app.views.task_manager import TaskManager

from .fakes import FakeBackend, make_session, task_row

EMAIL = "user@example.com"
PASSWORD = "pw123456"


def _sign_up_and_in(client) -> None:
    client.post("/auth/toggle")
    client.post("/auth/submit", data={"email": EMAIL, "password": PASSWORD})
    client.post("/auth/toggle")
    resp = client.post("/auth/submit", data={"email": EMAIL, "password": PASSWORD})
    assert resp.status_code == 200
    assert "Logged in as" in resp.text


def _tasks(client) -> list[dict]:
    resp = client.get("/api/tasks")
    assert resp.status_code == 200
    return resp.json()["items"]


def test_healthz(client) -> None:
    resp = client.get("/healthz")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_home_shows_sign_in_form_and_sets_cookie(client) -> None:
    resp = client.get("/")

    assert resp.status_code == 200
    assert "Welcome Back" in resp.text
    assert "tf_session" in resp.cookies


def test_toggle_switches_to_sign_up(client) -> None:
    resp = client.post("/auth/toggle")

    assert resp.status_code == 200
    assert "Create Account" in resp.text
    assert client.get("/api/session").json()["auth_mode"] == "sign_up"


def test_sign_up_shows_confirmation_message(client) -> None:
    client.post("/auth/toggle")

    resp = client.post("/auth/submit", data={"email": EMAIL, "password": PASSWORD})

    assert "Check your email for the confirmation link!" in resp.text
    info = client.get("/api/session").json()
    assert info["view"] == "auth"
    assert info["message"]["kind"] == "success"


def test_bad_credentials_are_shown(client) -> None:
    resp = client.post("/auth/submit", data={"email": EMAIL, "password": "wrong-one"})

    assert "Invalid login credentials" in resp.text


def test_task_lifecycle(client) -> None:
    _sign_up_and_in(client)
    assert client.get("/api/session").json() == {
        "view": "dashboard",
        "email": EMAIL,
        "auth_mode": "sign_in",
        "message": None,
    }

    resp = client.post("/tasks", data={"title": "Write report", "description": "draft"})
    assert resp.status_code == 200
    assert "Write report" in resp.text

    [task] = _tasks(client)
    assert task["title"] == "Write report"
    assert task["email"] == EMAIL

    client.post(f"/tasks/{task['id']}/description", data={"description": "final"})
    assert _tasks(client)[0]["description"] == "final"

    client.post(f"/tasks/{task['id']}/delete")
    assert _tasks(client) == []


def test_blank_title_is_not_submitted(client) -> None:
    _sign_up_and_in(client)

    client.post("/tasks", data={"title": "   ", "description": "x"})

    assert _tasks(client) == []


def test_create_with_image_serves_uploaded_file(client) -> None:
    _sign_up_and_in(client)

    client.post(
        "/tasks",
        data={"title": "With picture"},
        files={"image": ("photo.png", b"png-bytes", "image/png")},
    )

    [task] = _tasks(client)
    assert task["image_url"].startswith("/files/tasks-images/photo.png-")
    resp = client.get(task["image_url"])
    assert resp.status_code == 200
    assert resp.content == b"png-bytes"


def test_files_route_rejects_escape(client) -> None:
    assert client.get("/files/tasks-images/missing.png").status_code == 404
    assert client.get("/files/onlyname").status_code == 404


def test_task_api_requires_sign_in(client) -> None:
    assert client.get("/api/tasks").status_code == 401


def test_form_post_without_session_redirects_home(client) -> None:
    resp = client.post("/tasks", data={"title": "x"}, follow_redirects=False)

    assert resp.status_code == 303
    assert resp.headers["location"] == "/"


def test_logout_returns_to_auth_form(client) -> None:
    _sign_up_and_in(client)

    resp = client.post("/auth/logout")

    assert "Welcome Back" in resp.text
    assert client.get("/api/tasks").status_code == 401


def test_task_api_reports_manager_state(client, settings) -> None:
    backend = FakeBackend(session=make_session())
    backend.tasks.rows = [
        task_row(1, "older", created_at="2024-01-01T00:00:00+00:00", email=EMAIL),
        task_row(2, "newer", created_at="2024-02-01T00:00:00+00:00", email=EMAIL),
    ]
    manager = TaskManager(backend, make_session(), settings=settings.model_copy(update={"task_scope": "owner"}))
    asyncio.run(manager.load())
    app.dependency_overrides[require_task_manager] = lambda: manager
    try:
        body = client.get("/api/tasks").json()
    finally:
        app.dependency_overrides.pop(require_task_manager, None)

    assert [t["title"] for t in body["items"]] == ["newer", "older"]
    assert body["total"] == 2
    assert body["scope"] == "owner"
    assert body["form_state"] == "idle"
    assert backend.tasks.selects[0]["filters"] == {"email": "user@example.com"}


def test_visitors_without_cookies_do_not_pile_up_controllers(client) -> None:
    for _ in range(5):
        client.cookies.clear()
        assert client.get("/healthz").status_code == 200
        assert "Welcome Back" in client.get("/").text
        assert client.get("/api/session").json()["view"] == "auth"
        assert client.get("/api/tasks").status_code == 401

    assert len(get_registry()) == 0


def test_form_post_creates_controller_lazily(client) -> None:
    client.get("/")
    assert len(get_registry()) == 0

    client.post("/auth/toggle")

    assert len(get_registry()) == 1
    assert client.get("/api/session").json()["auth_mode"] == "sign_up"


def test_logout_without_controller_just_redirects(client) -> None:
    resp = client.post("/auth/logout", follow_redirects=False)

    assert resp.status_code == 303
    assert len(get_registry()) == 0
