from __future__ import annotations

import logging
from typing import Optional

from taskflow.app.core.calls import call_backend
from taskflow.app.ports.backend import IAuthProvider
from taskflow.app.schemas import Message

logger = logging.getLogger(__name__)

MODE_SIGN_IN = "sign_in"
MODE_SIGN_UP = "sign_up"

SIGN_UP_CONFIRMATION = "Check your email for the confirmation link!"


class AuthView:
    """Email/password form that signs users up or in."""

    def __init__(self, auth: IAuthProvider, *, sid: str = "-", timeout: Optional[float] = None):
        self.auth = auth
        self.sid = sid
        self.timeout = timeout
        self.mode = MODE_SIGN_IN
        self.email = ""
        self.password = ""
        self.message: Optional[Message] = None
        self.in_flight = False

    @property
    def is_sign_up(self) -> bool:
        return self.mode == MODE_SIGN_UP

    def toggle_mode(self) -> None:
        self.mode = MODE_SIGN_IN if self.is_sign_up else MODE_SIGN_UP
        self.message = None

    async def submit(self, email: Optional[str] = None, password: Optional[str] = None) -> bool:
        """Run sign-up or sign-in. Returns False when ignored because one is in flight."""
        if self.in_flight:
            return False
        if email is not None:
            self.email = email
        if password is not None:
            self.password = password

        self.in_flight = True
        self.message = None
        try:
            if self.is_sign_up:
                result = await call_backend(
                    "auth.sign_up",
                    self.auth.sign_up(self.email, self.password),
                    timeout=self.timeout,
                    session=self.sid,
                )
                if result.ok:
                    self.message = Message(kind="success", text=SIGN_UP_CONFIRMATION)
            else:
                # Success needs no message: the session listener switches views.
                result = await call_backend(
                    "auth.sign_in_with_password",
                    self.auth.sign_in_with_password(self.email, self.password),
                    timeout=self.timeout,
                    session=self.sid,
                )
            if not result.ok:
                self.message = Message(kind="error", text=result.message or "Authentication failed")
            else:
                self.password = ""
        finally:
            self.in_flight = False
        return True
