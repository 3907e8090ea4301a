import hashlib
import re
import secrets
import time
from typing import Optional

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class KeyBuilder:
    """
    Builds object storage keys for staged uploads.
    timestamp: {filename}-{millis}-{8 hex}
    content:   {sha256}-{filename}
    """

    @staticmethod
    def safe_filename(filename: Optional[str]) -> str:
        # Drop any client-side directory part, keep the basename readable
        name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
        name = _UNSAFE.sub("_", name).strip("._")
        return name or "upload"

    @staticmethod
    def timestamped(filename: Optional[str], now_ms: Optional[int] = None, token: Optional[str] = None) -> str:
        millis = now_ms if now_ms is not None else int(time.time() * 1000)
        suffix = token if token is not None else secrets.token_hex(4)
        return f"{KeyBuilder.safe_filename(filename)}-{millis}-{suffix}"

    @staticmethod
    def content_addressed(filename: Optional[str], data: bytes) -> str:
        digest = hashlib.sha256(data).hexdigest()
        return f"{digest}-{KeyBuilder.safe_filename(filename)}"

    @staticmethod
    def build(strategy: str, filename: Optional[str], data: bytes) -> str:
        if (strategy or "").strip().lower() == "content":
            return KeyBuilder.content_addressed(filename, data)
        return KeyBuilder.timestamped(filename)
