# services/image_store.py
# -*- coding: utf-8 -*-
"""
Image references <-> bytes.

Issues store image *references* (paths relative to UPLOAD_DIR). The oracle
needs bytes + MIME type, so the pipeline resolves references through
ImageStore.load() right before calling it.
"""

import mimetypes
import uuid
from pathlib import Path
from typing import List, Optional, Sequence

from brain.llm_client import ImagePayload
from core.config import MAX_IMAGE_BYTES, UPLOAD_DIR
from core.errors import ValidationError
from core.logging import logger

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")


class ImageStore:
    def __init__(self, upload_dir: Path = UPLOAD_DIR, max_bytes: int = MAX_IMAGE_BYTES):
        self.upload_dir = Path(upload_dir)
        self.max_bytes = max_bytes

    def resolve(self, ref: str) -> Path:
        """Path of a reference; references may not leave the upload dir."""
        root = self.upload_dir.resolve()
        path = (root / ref).resolve()
        if root != path and root not in path.parents:
            raise ValidationError(f"Image reference outside upload directory: {ref}")
        return path

    def load(self, ref: str) -> Optional[ImagePayload]:
        """ImagePayload for a reference, None if missing / unsupported / too large."""
        path = self.resolve(ref)
        if not path.is_file():
            logger.warning(f"[ImageStore] image not found: {ref}")
            return None

        mime_type, _ = mimetypes.guess_type(path.name)
        if mime_type not in ALLOWED_MIME_TYPES:
            logger.warning(f"[ImageStore] unsupported image type {mime_type} for {ref}")
            return None

        if path.stat().st_size > self.max_bytes:
            logger.warning(f"[ImageStore] image too large, skipped: {ref}")
            return None

        return ImagePayload(data=path.read_bytes(), mime_type=mime_type)

    def load_many(self, refs: Sequence[str]) -> List[ImagePayload]:
        payloads = []
        for ref in refs:
            try:
                payload = self.load(ref)
            except OSError as e:
                logger.warning(f"[ImageStore] cannot read {ref}: {e}")
                continue
            if payload is not None:
                payloads.append(payload)
        return payloads

    def save(self, data: bytes, filename: str) -> str:
        """Store an upload, return its reference."""
        if not data:
            raise ValidationError("Empty image upload")
        if len(data) > self.max_bytes:
            raise ValidationError(f"Image larger than {self.max_bytes} bytes")

        mime_type, _ = mimetypes.guess_type(filename or "")
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(f"Unsupported image type: {mime_type or filename}")

        suffix = Path(filename).suffix.lower()
        ref = f"{uuid.uuid4().hex}{suffix}"
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        (self.upload_dir / ref).write_bytes(data)
        logger.info(f"[ImageStore] saved {ref} ({len(data)} bytes)")
        return ref
