"""Uploaded image storage, served back under the public `/uploads` path."""
import logging
import os
from typing import Optional, Tuple
from uuid import uuid4

from fastapi import UploadFile
from werkzeug.utils import secure_filename

import settings
from errors import UploadTooLarge, ValidationError

logger = logging.getLogger(__name__)

PUBLIC_PREFIX = "/uploads"


class BlobStore:
    def __init__(self, root: str, max_bytes: int, allowed_extensions=None):
        self.root = root
        self.max_bytes = max_bytes
        self.allowed_extensions = set(allowed_extensions or settings.ALLOWED_IMAGE_EXTENSIONS)
        os.makedirs(self.root, exist_ok=True)

    @property
    def max_mb(self) -> int:
        return self.max_bytes // (1024 * 1024)

    def read_limited(self, upload: UploadFile) -> bytes:
        data = upload.file.read(self.max_bytes + 1)
        if len(data) > self.max_bytes:
            raise UploadTooLarge(f"File size is too large. Max limit is {self.max_mb}MB")
        return data

    def save_image(self, upload: Optional[UploadFile]) -> Optional[str]:
        """Store an uploaded image and return its public reference, or None if no file was sent."""
        if upload is None or not upload.filename:
            return None
        original = secure_filename(upload.filename)
        extension = os.path.splitext(original)[1].lower()
        if extension.lstrip(".") not in self.allowed_extensions:
            raise ValidationError(
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
            )
        data = self.read_limited(upload)
        return self.save(data, extension)

    def read_document(self, upload: Optional[UploadFile]) -> Tuple[Optional[bytes], Optional[str]]:
        if upload is None or not upload.filename:
            return None, None
        return self.read_limited(upload), upload.content_type

    def save(self, data: bytes, extension: str) -> str:
        name = f"{uuid4().hex}{extension}"
        with open(os.path.join(self.root, name), "wb") as fh:
            fh.write(data)
        logger.info("Stored upload %s (%d bytes)", name, len(data))
        return f"{PUBLIC_PREFIX}/{name}"

    def remove(self, reference: Optional[str]) -> None:
        if not reference or not reference.startswith(PUBLIC_PREFIX + "/"):
            return
        name = secure_filename(reference[len(PUBLIC_PREFIX) + 1:])
        try:
            os.remove(os.path.join(self.root, name))
        except FileNotFoundError:
            return


_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    global _store
    if _store is None:
        _store = BlobStore(settings.UPLOAD_DIR, settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024)
    return _store
