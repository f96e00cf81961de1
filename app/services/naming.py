"""Utility helpers for consistent storage key naming."""

from __future__ import annotations

import re
import uuid
from typing import Optional

from ..errors import ValidationError

__all__ = [
    "base_mime_type",
    "extension_for",
    "mime_type_for_key",
    "new_segment_id",
    "recording_key",
    "segment_key",
    "slugify",
    "validate_identifier",
]


_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")

_MIME_EXTENSIONS = {
    "video/webm": ".webm",
    "audio/webm": ".webm",
    "video/mp4": ".mp4",
    "audio/mp4": ".m4a",
    "video/x-matroska": ".mkv",
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
}


def slugify(value: str) -> str:
    """Return a filesystem-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def validate_identifier(value: Optional[str], *, label: str = "identifier") -> str:
    """Return *value* if it is safe to embed in a storage key."""

    text = (value or "").strip()
    if not _IDENTIFIER_PATTERN.match(text) or ".." in text:
        raise ValidationError(f"Invalid {label} '{value}'")
    return text


def base_mime_type(content_type: Optional[str]) -> str:
    """Strip parameters such as ``;codecs=vp8`` from *content_type*."""

    base = (content_type or "").split(";", 1)[0].strip().lower()
    return base or "application/octet-stream"


def extension_for(content_type: Optional[str]) -> str:
    return _MIME_EXTENSIONS.get(base_mime_type(content_type), ".bin")


def mime_type_for_key(key: str) -> str:
    """Return the content type a stored object's extension implies."""

    suffix = "." + key.rsplit(".", 1)[-1].lower() if "." in key else ""
    for mime_type, extension in _MIME_EXTENSIONS.items():
        if extension == suffix:
            return mime_type
    return "application/octet-stream"


def new_segment_id(channel: str) -> str:
    return f"{slugify(channel)}-{uuid.uuid4().hex}"


def segment_key(
    session_id: str,
    channel: str,
    sequence: int,
    segment_id: str,
    content_type: Optional[str],
) -> str:
    """Return ``<session>/<channel>/<sequence>-<segment id><ext>``."""

    return f"{session_id}/{channel}/{int(sequence):06d}-{segment_id}{extension_for(content_type)}"


def recording_key(
    session_id: str,
    channel: str,
    fingerprint: str,
    content_type: Optional[str],
) -> str:
    """Return the key of a merged recording built from inputs with *fingerprint*."""

    return f"{session_id}/recordings/{channel}-{fingerprint[:16]}{extension_for(content_type)}"
