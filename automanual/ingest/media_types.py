from __future__ import annotations

from pathlib import PurePath

DEFAULT_VIDEO_MIME_TYPE = "video/mp4"
GENERIC_MIME_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

# Names the analysis service accepts for each container.
MIME_ALIASES = {
    "video/quicktime": "video/mov",
    "video/x-msvideo": "video/avi",
    "video/x-ms-wmv": "video/wmv",
    "video/3gp": "video/3gpp",
}

EXTENSION_MIME_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mov": "video/mov",
    ".qt": "video/mov",
    ".avi": "video/avi",
    ".webm": "video/webm",
    ".3gp": "video/3gpp",
    ".3gpp": "video/3gpp",
    ".wmv": "video/wmv",
    ".flv": "video/x-flv",
    ".mpg": "video/mpg",
    ".mpeg": "video/mpeg",
}


def normalize_mime_type(mime_type: str | None, file_name: str = "") -> str:
    """Map a declared media type onto one the analysis service understands.

    Generic or missing types are inferred from the file extension and default
    to MP4.
    """

    declared = (mime_type or "").strip().lower()
    if declared in GENERIC_MIME_TYPES:
        suffix = PurePath(file_name).suffix.lower()
        return EXTENSION_MIME_TYPES.get(suffix, DEFAULT_VIDEO_MIME_TYPE)
    return MIME_ALIASES.get(declared, declared)
