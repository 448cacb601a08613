from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

SHARED_LIBRARY_MARKER = "error while loading shared libraries"


@dataclass(slots=True)
class VideoMetadata:
    """Normalized facts about the first video stream of a container."""

    path: str
    width: int
    height: int
    duration_seconds: float | None
    codec_name: str | None
    avg_frame_rate: float | None
    format_name: str | None


def probe_video(video_path: str | Path) -> VideoMetadata:
    """Probe video metadata via ffprobe."""

    source_path = Path(video_path).expanduser().resolve()
    if not source_path.exists():
        raise FileNotFoundError(f"Video file not found: {source_path}")

    payload = _run_ffprobe(source_path)
    return _normalize_probe_payload(source_path, payload)


def _run_ffprobe(video_path: Path) -> dict[str, Any]:
    command = [
        "ffprobe",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(video_path),
    ]

    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise RuntimeError(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        if SHARED_LIBRARY_MARKER in stderr:
            raise RuntimeError(
                "ffprobe is installed but failed to start because required shared libraries are missing. "
                f"ffprobe stderr: {stderr}"
            ) from exc
        details = f" ffprobe stderr: {stderr}" if stderr else ""
        raise RuntimeError(
            f"ffprobe failed while probing media file: {video_path}.{details}"
        ) from exc

    try:
        return json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise RuntimeError("ffprobe returned invalid JSON output.") from exc


def _normalize_probe_payload(video_path: Path, payload: dict[str, Any]) -> VideoMetadata:
    format_entry = payload.get("format", {})
    video_streams = [
        stream for stream in payload.get("streams", []) if stream.get("codec_type") == "video"
    ]
    if not video_streams:
        raise RuntimeError(f"No video stream found in media file: {video_path}")

    stream = video_streams[0]
    width = _to_int(stream.get("width"))
    height = _to_int(stream.get("height"))
    if not width or not height:
        raise RuntimeError(f"Video stream has no usable dimensions: {video_path}")

    width, height = _apply_rotation(width, height, stream)
    duration = _to_float(format_entry.get("duration"))
    if duration is None:
        duration = _to_float(stream.get("duration"))

    return VideoMetadata(
        path=str(video_path),
        width=width,
        height=height,
        duration_seconds=duration,
        codec_name=stream.get("codec_name"),
        avg_frame_rate=_parse_rate(stream.get("avg_frame_rate")),
        format_name=format_entry.get("format_name"),
    )


def _apply_rotation(width: int, height: int, stream: dict[str, Any]) -> tuple[int, int]:
    # Phone recordings store portrait video as landscape plus a rotation tag.
    rotation = _to_int(stream.get("tags", {}).get("rotate"))
    for side_data in stream.get("side_data_list", []) or []:
        if "rotation" in side_data:
            rotation = _to_int(side_data.get("rotation"))
    if rotation is not None and abs(rotation) % 180 == 90:
        return height, width
    return width, height


def _parse_rate(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", "", "0/0"):
        return None
    text = str(raw_value)
    if "/" in text:
        numerator, denominator = text.split("/", 1)
        if float(denominator) == 0:
            return None
        return float(numerator) / float(denominator)
    return float(text)


def _to_float(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", ""):
        return None
    return float(raw_value)


def _to_int(raw_value: Any) -> int | None:
    if raw_value in (None, "N/A", ""):
        return None
    return int(float(raw_value))
