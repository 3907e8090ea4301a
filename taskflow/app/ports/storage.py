from abc import ABC, abstractmethod
from typing import Optional


class IStorageService(ABC):
    @abstractmethod
    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> str:
        """Store ``data`` under ``bucket/key`` and return the stored key."""

    @abstractmethod
    def get_public_url(self, bucket: str, key: str) -> str:
        pass
