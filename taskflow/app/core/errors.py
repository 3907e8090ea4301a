from typing import Optional


class BackendError(Exception):
    """Base class for every failure reported by a backend adapter."""

    kind = "backend"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.cause = cause


class AuthFailure(BackendError):
    """Sign-up, sign-in, sign-out or session lookup was rejected."""

    kind = "auth"


class QueryFailure(BackendError):
    """A table select/insert/update/delete failed."""

    kind = "query"


class UploadFailure(BackendError):
    """Object storage upload failed."""

    kind = "upload"


class RealtimeFailure(BackendError):
    """The change-feed channel could not join or dropped."""

    kind = "realtime"


class BackendTimeout(BackendError):
    """A backend call did not finish within BACKEND_TIMEOUT_SECONDS."""

    kind = "timeout"
