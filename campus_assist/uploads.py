"""
Upload checks for registration media.

Limits are enforced on the raw bytes before anything is sent to object
storage or written to the entity store. Size is checked first so an oversized
file is rejected without being decoded.
"""

from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from campus_assist.errors import ValidationError
from shared.constants import (
    MAX_IMAGE_BYTES,
    MAX_IMAGE_DIMENSION,
    MAX_PDF_BYTES,
    MAX_VIDEO_BYTES,
)
from shared.types import UploadKind

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
PDF_CONTENT_TYPES = {"application/pdf"}

_LABELS = {
    UploadKind.PROFILE_PICTURE: "Profile picture",
    UploadKind.APPLICATION_LETTER: "Application letter",
    UploadKind.DISABILITY_VIDEO: "Disability video",
}


@dataclass(frozen=True)
class CheckedUpload:
    kind: UploadKind
    filename: str
    content_type: str
    data: bytes

    @property
    def extension(self) -> str:
        return os.path.splitext(self.filename)[1].lower()


def _megabytes(limit: int) -> str:
    return f"{limit // (1024 * 1024)}MB"


def _check_image(label: str, data: bytes) -> None:
    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError(f"{label} is not a readable image.") from exc
    if width > MAX_IMAGE_DIMENSION or height > MAX_IMAGE_DIMENSION:
        raise ValidationError(
            f"{label} dimensions must be at most "
            f"{MAX_IMAGE_DIMENSION}x{MAX_IMAGE_DIMENSION} pixels "
            f"(got {width}x{height})."
        )


def _check_pdf(label: str, data: bytes) -> None:
    try:
        reader = PdfReader(io.BytesIO(data))
        page_count = len(reader.pages)
    except (PdfReadError, ValueError, OSError) as exc:
        raise ValidationError(f"{label} is not a readable PDF.") from exc
    if page_count == 0:
        raise ValidationError(f"{label} has no pages.")


def validate_upload(
    kind: UploadKind, filename: str, content_type: str, data: bytes
) -> CheckedUpload:
    """Raise ValidationError unless the upload satisfies the limits for its kind."""
    label = _LABELS[kind]
    content_type = (content_type or "").split(";")[0].strip().lower()
    if not data:
        raise ValidationError(f"{label} is empty.")

    if kind == UploadKind.PROFILE_PICTURE:
        if content_type not in IMAGE_CONTENT_TYPES:
            raise ValidationError(f"{label} must be a JPEG, PNG, GIF or WebP image.")
        if len(data) > MAX_IMAGE_BYTES:
            raise ValidationError(
                f"{label} must be at most {_megabytes(MAX_IMAGE_BYTES)}."
            )
        _check_image(label, data)
    elif kind == UploadKind.APPLICATION_LETTER:
        if content_type not in PDF_CONTENT_TYPES:
            raise ValidationError(f"{label} must be a PDF.")
        if len(data) > MAX_PDF_BYTES:
            raise ValidationError(f"{label} must be at most {_megabytes(MAX_PDF_BYTES)}.")
        _check_pdf(label, data)
    elif kind == UploadKind.DISABILITY_VIDEO:
        if not content_type.startswith("video/"):
            raise ValidationError(f"{label} must be a video file.")
        if len(data) > MAX_VIDEO_BYTES:
            raise ValidationError(
                f"{label} must be at most {_megabytes(MAX_VIDEO_BYTES)}."
            )

    logger.debug("Accepted %s upload %s (%d bytes)", kind.value, filename, len(data))
    return CheckedUpload(
        kind=kind, filename=filename or kind.value, content_type=content_type, data=data
    )
