"""
Artifact storage for generated, signed and receipt documents.

Files live under JPK_STORAGE_DIR as <client_id>/<report_id><suffix>.xml.
Paths stored on the report are relative to the storage root.
"""
import base64
import os
from pathlib import Path
from typing import Optional
from uuid import UUID

import aiofiles
import aiofiles.os

from jpk_reporting.core.config import settings
from jpk_reporting.schemas.jpk import FileDownload


class ArtifactNotFoundError(Exception):
    """A referenced artifact is missing from storage."""
    pass


class ArtifactStorage:
    """Async file storage for report artifacts."""

    UNSIGNED_SUFFIX = ""
    SIGNED_SUFFIX = "_signed"
    RECEIPT_SUFFIX = "_upo"

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.JPK_STORAGE_DIR)

    def relative_path(self, client_id: UUID, report_id: UUID, suffix: str = "") -> str:
        return f"{client_id}/{report_id}{suffix}.xml"

    def _absolute(self, relative_path: str) -> Path:
        path = (self.root / relative_path).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Artifact path escapes storage root: {relative_path}")
        return path

    async def write(self, relative_path: str, content: bytes) -> int:
        """Write content atomically and return its size in bytes."""
        path = self._absolute(relative_path)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(content)
        await aiofiles.os.replace(tmp_path, path)
        return len(content)

    async def read(self, relative_path: str) -> bytes:
        path = self._absolute(relative_path)
        if not await aiofiles.os.path.exists(path):
            raise ArtifactNotFoundError(f"Artifact not found: {relative_path}")
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def exists(self, relative_path: str) -> bool:
        return await aiofiles.os.path.exists(self._absolute(relative_path))

    async def delete(self, relative_path: Optional[str]) -> None:
        """Remove an artifact; missing files are ignored."""
        if not relative_path:
            return
        path = self._absolute(relative_path)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass

    @staticmethod
    def file_name(relative_path: str) -> str:
        return os.path.basename(relative_path)


def as_download(file_name: str, content: bytes, content_type: str = "application/xml") -> FileDownload:
    return FileDownload(
        file_name=file_name,
        content_type=content_type,
        file_size=len(content),
        content=base64.b64encode(content).decode("ascii"),
    )
