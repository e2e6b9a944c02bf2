"""Checks run on a submitted file before any request reaches the worker."""

from __future__ import annotations

from dataclasses import dataclass, field
import mimetypes
from pathlib import Path
from typing import Optional

from . import config
from .errors import ValidationError


@dataclass(frozen=True)
class ImageFile:
    name: str
    mime_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: Path) -> "ImageFile":
        mime_type, _ = mimetypes.guess_type(path.name)
        return cls(
            name=path.name,
            mime_type=mime_type or "application/octet-stream",
            data=path.read_bytes(),
        )


def validate_image_file(
    file: ImageFile, settings: Optional[config.Settings] = None
) -> Optional[str]:
    """Return a human-readable rejection reason, or ``None`` when acceptable."""
    settings = settings or config.get_settings()
    if file.mime_type.lower() not in settings.allowed_mime_types:
        return "Unsupported file type. Only JPG, PNG and WebP images are accepted."
    if file.size > settings.max_file_size:
        limit_mb = settings.max_file_size // (1024 * 1024)
        return f"File is too large. Please choose an image of {limit_mb}MB or less."
    return None


def check_image_file(file: ImageFile, settings: Optional[config.Settings] = None) -> ImageFile:
    """Like ``validate_image_file`` but raises ``ValidationError`` on rejection."""
    reason = validate_image_file(file, settings)
    if reason:
        raise ValidationError(reason)
    return file
