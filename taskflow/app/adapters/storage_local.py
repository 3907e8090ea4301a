import os
from typing import Optional

from taskflow.app.core.errors import UploadFailure
from taskflow.app.ports.storage import IStorageService


class LocalStorageService(IStorageService):
    def __init__(self, root_dir: str):
        """
        Local object storage rooted at ``root_dir`` (e.g. ./data_debug).
        Objects live at <root_dir>/<bucket>/<key> and are served under /files.
        """
        self.root_dir = root_dir
        os.makedirs(self.root_dir, exist_ok=True)

    def _path(self, bucket: str, key: str) -> str:
        root = os.path.abspath(self.root_dir)
        dest = os.path.abspath(os.path.join(root, bucket, key))
        if not dest.startswith(root + os.sep):
            raise UploadFailure(f"Invalid key: {key}", status_code=400)
        return dest

    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> str:
        dest_path = self._path(bucket, key)
        if os.path.exists(dest_path):
            raise UploadFailure("The resource already exists", status_code=409)

        directory = os.path.dirname(dest_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        try:
            with open(dest_path, "wb") as fh:
                fh.write(data)
        except OSError as exc:
            raise UploadFailure(str(exc), cause=exc) from exc
        return key

    def get_public_url(self, bucket: str, key: str) -> str:
        return f"/files/{bucket}/{key}"
