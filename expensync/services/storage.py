"""
Attachment storage.

Files live on local disk under `UPLOAD_DIR`; `read_bytes` also accepts an
http(s) URL so attachments stored on an object store can be fetched for the
freee receipt upload.
"""
from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

from expensync.core.config import get_app_config
from expensync.services.errors import ExternalAPIError, ValidationError

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
ALLOWED_MIME_TYPES = (
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
)


@dataclass
class StoredFile:
    file_name: str
    file_path: str
    mime_type: str
    file_size: int


class FileStorage:
    def __init__(self, upload_dir: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.upload_dir = upload_dir
        self._transport = transport

    def validate(self, content: bytes, mime_type: str) -> None:
        if len(content) > MAX_FILE_SIZE:
            raise ValidationError("Attachments must be 10MB or smaller", field="files")
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError("Only PDF and image files (JPEG/PNG/GIF/WEBP) are accepted", field="files")

    def save(self, content: bytes, mime_type: str, original_name: str) -> StoredFile:
        """Validate and write an upload; returns where it was stored."""
        self.validate(content, mime_type)
        os.makedirs(self.upload_dir, exist_ok=True)

        ext = os.path.splitext(original_name)[1] or ".bin"
        path = os.path.join(self.upload_dir, f"{uuid.uuid4().hex}{ext}")
        with open(path, "wb") as handle:
            handle.write(content)

        return StoredFile(
            file_name=original_name,
            file_path=path,
            mime_type=mime_type,
            file_size=len(content),
        )

    def delete(self, path: str) -> None:
        """Best-effort removal."""
        try:
            os.remove(path)
        except OSError as exc:
            logger.warning("Could not delete stored file %s: %s", path, exc)

    async def read_bytes(self, path: str) -> bytes:
        if path.startswith(("http://", "https://")):
            async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
                response = await client.get(path)
            if not response.is_success:
                raise ExternalAPIError(
                    f"Failed to fetch attachment: {response.status_code}",
                    status_code=response.status_code,
                    body=response.text,
                )
            return response.content

        with open(path, "rb") as handle:
            return handle.read()


def get_storage() -> FileStorage:
    return FileStorage(get_app_config().upload_dir)
