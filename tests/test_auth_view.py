from __future__ import annotations

import asyncio

from taskflow.app.views.auth_view import MODE_SIGN_IN, MODE_SIGN_UP, AuthView

from .fakes import FakeAuth, auth_error, make_session


def test_sign_up_shows_confirmation_and_sets_no_session() -> None:
    auth = FakeAuth()
    view = AuthView(auth)
    view.toggle_mode()

    asyncio.run(view.submit("user@example.com", "pw123456"))

    assert auth.calls == [("sign_up", "user@example.com", "pw123456")]
    assert view.message.kind == "success"
    assert "confirmation" in view.message.text
    assert auth.state.current is None


def test_sign_up_ignores_session_from_auto_confirming_backend() -> None:
    auth = FakeAuth()
    auth.sign_up_session = make_session()
    view = AuthView(auth)
    view.toggle_mode()

    asyncio.run(view.submit("user@example.com", "pw123456"))

    assert auth.state.current is None


def test_sign_in_success_has_no_message() -> None:
    auth = FakeAuth()
    view = AuthView(auth)

    asyncio.run(view.submit("user@example.com", "pw123456"))

    assert auth.calls == [("sign_in_with_password", "user@example.com", "pw123456")]
    assert view.message is None
    assert auth.state.current.user.email == "user@example.com"
    assert view.password == ""


def test_provider_error_is_shown_verbatim() -> None:
    auth = FakeAuth()
    auth.sign_in_error = auth_error("Invalid login credentials")
    view = AuthView(auth)

    asyncio.run(view.submit("user@example.com", "wrong"))

    assert view.message.kind == "error"
    assert view.message.text == "Invalid login credentials"
    assert len(auth.calls) == 1


def test_toggle_clears_message() -> None:
    auth = FakeAuth()
    auth.sign_in_error = auth_error("Email not confirmed")
    view = AuthView(auth)
    asyncio.run(view.submit("user@example.com", "pw123456"))
    assert view.message is not None

    view.toggle_mode()

    assert view.mode == MODE_SIGN_UP
    assert view.message is None

    view.toggle_mode()
    assert view.mode == MODE_SIGN_IN


def test_second_submit_while_in_flight_is_ignored() -> None:
    async def scenario():
        auth = FakeAuth()
        auth.block = asyncio.Event()
        view = AuthView(auth)
        first = asyncio.ensure_future(view.submit("user@example.com", "pw123456"))
        await asyncio.sleep(0)
        assert view.in_flight
        accepted = await view.submit("user@example.com", "pw123456")
        auth.block.set()
        await first
        return auth, view, accepted

    auth, view, accepted = asyncio.run(scenario())

    assert accepted is False
    assert len(auth.calls) == 1
    assert view.in_flight is False
