from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any

from automanual.config import ExtractionSettings
from automanual.errors import FrameExtractionError
from automanual.ingest.video_source import SeekTimeoutError, open_video_source
from automanual.models import SourceVideo, StepCandidate, StillImage

logger = logging.getLogger(__name__)

END_OF_VIDEO_MARGIN_SECONDS = 0.1
SMALL_BOX_AREA_RATIO = 0.08
MEDIUM_BOX_AREA_RATIO = 0.25
SMALL_BOX_ZOOM = 1.4
MEDIUM_BOX_ZOOM = 1.2


def parse_timestamp(text: str | None) -> float | None:
    """Parse ``SS``, ``MM:SS`` or ``HH:MM:SS`` into seconds.

    Returns None for anything that is not a non-negative timestamp in one of
    those forms.
    """

    if text is None:
        return None
    parts = str(text).strip().split(":")
    if not parts[0] or len(parts) > 3:
        return None

    try:
        values = [float(part) for part in parts]
    except ValueError:
        return None

    if any(not math.isfinite(value) or value < 0 for value in values):
        return None

    seconds = 0.0
    for value in values:
        seconds = seconds * 60 + value
    return seconds


def extract_frame(
    video_path: str | Path,
    seconds: float,
    *,
    seek_offset_seconds: float = 0.5,
    seek_timeout_seconds: float = 5.0,
) -> Any:
    """Return the full-resolution frame visible at ``seconds`` in ``video_path``.

    The seek lands ``seek_offset_seconds`` after the requested second so the
    captured frame is past the keyframe boundary, clamped to the end of the
    video.
    """

    try:
        video = open_video_source(video_path)
    except RuntimeError as exc:
        raise FrameExtractionError(str(exc)) from exc

    with video:
        target = seconds + seek_offset_seconds
        duration = video.duration_seconds
        if duration:
            target = min(target, max(duration - END_OF_VIDEO_MARGIN_SECONDS, 0.0))

        try:
            settled = video.seek(target, timeout=seek_timeout_seconds)
        except SeekTimeoutError as exc:
            raise FrameExtractionError(str(exc)) from exc
        if not settled:
            raise FrameExtractionError(f"No decodable frame at {target:.3f}s in {Path(video_path).name}")

        frame = video.rasterize()
        if frame is None:
            raise FrameExtractionError(f"Frame at {target:.3f}s in {Path(video_path).name} could not be decoded")
        return frame


def smart_crop(frame: Any, box_2d: list[int], *, cv2_module: Any | None = None) -> Any:
    """Zoom toward a normalized ``[ymin, xmin, ymax, xmax]`` box, keeping the frame size."""

    ymin, xmin, ymax, xmax = box_2d
    area_ratio = ((xmax - xmin) / 1000) * ((ymax - ymin) / 1000)
    if area_ratio < SMALL_BOX_AREA_RATIO:
        zoom = SMALL_BOX_ZOOM
    elif area_ratio < MEDIUM_BOX_AREA_RATIO:
        zoom = MEDIUM_BOX_ZOOM
    else:
        return frame

    if cv2_module is None:
        import cv2 as cv2_module

    frame_height, frame_width = frame.shape[:2]
    center_x = (xmin + xmax) / 2 / 1000 * frame_width
    center_y = (ymin + ymax) / 2 / 1000 * frame_height
    crop_width = frame_width / zoom
    crop_height = frame_height / zoom

    left = int(round(max(0.0, min(center_x - crop_width / 2, frame_width - crop_width))))
    top = int(round(max(0.0, min(center_y - crop_height / 2, frame_height - crop_height))))
    right = min(frame_width, left + int(round(crop_width)))
    bottom = min(frame_height, top + int(round(crop_height)))

    cropped = frame[top:bottom, left:right]
    return cv2_module.resize(cropped, (frame_width, frame_height), interpolation=cv2_module.INTER_LANCZOS4)


def encode_png(frame: Any, *, cv2_module: Any | None = None) -> StillImage:
    if cv2_module is None:
        import cv2 as cv2_module

    ok, buffer = cv2_module.imencode(".png", frame)
    if not ok:
        raise FrameExtractionError("PNG encoding failed")
    height, width = frame.shape[:2]
    return StillImage(data=buffer.tobytes(), width=int(width), height=int(height))


def capture_step_images(
    video: SourceVideo,
    candidate: StepCandidate,
    seconds: float,
    settings: ExtractionSettings,
) -> tuple[StillImage, StillImage | None]:
    """Capture the original frame for one step plus its optional zoomed view."""

    frame = extract_frame(
        video.path,
        seconds,
        seek_offset_seconds=settings.seek_offset_seconds,
        seek_timeout_seconds=settings.seek_timeout_seconds,
    )
    image = encode_png(frame)

    display_image: StillImage | None = None
    if settings.smart_crop and candidate.box_2d is not None:
        try:
            display_image = encode_png(smart_crop(frame, candidate.box_2d))
        except (ValueError, FrameExtractionError) as exc:
            logger.warning("Smart zoom failed for step %d of %s: %s", candidate.index + 1, video.display_name, exc)

    return image, display_image
