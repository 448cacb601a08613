from __future__ import annotations

import logging
import math
import os
import tempfile
from contextlib import contextmanager
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol

from automanual.config import ProxySettings
from automanual.ingest.probe import probe_video
from automanual.ingest.video_source import OpenCvVideoSource, SeekTimeoutError, open_video_source
from automanual.models import SourceVideo

logger = logging.getLogger(__name__)

PROXY_MIME_TYPE = "video/mp4"
MICROSECONDS_PER_SECOND = 1_000_000

ProgressCallback = Callable[[float], None]


class FrameState(str, Enum):
    SEEKING = "seeking"
    RASTERIZING = "rasterizing"
    ENCODING = "encoding"
    DONE = "done"
    SKIPPED = "skipped"


class FrameEncoder(Protocol):
    def encode(self, frame: Any, *, timestamp_us: int, key_frame: bool) -> None: ...

    def finish(self) -> None: ...

    def abort(self) -> None: ...


class PyAvFrameEncoder:
    """H.264 encoder writing an MP4 container through PyAV."""

    def __init__(
        self,
        output_path: Path,
        *,
        codec_name: str,
        width: int,
        height: int,
        fps: int,
        bit_rate: int,
        gop_size: int,
    ) -> None:
        import av

        self._av = av
        self.codec_name = codec_name
        self._time_base = Fraction(1, MICROSECONDS_PER_SECOND)
        self._container = av.open(str(output_path), mode="w", format="mp4")
        try:
            stream = self._container.add_stream(codec_name, rate=fps)
            stream.width = width
            stream.height = height
            stream.pix_fmt = "yuv420p"
            stream.bit_rate = bit_rate
            stream.time_base = self._time_base
            stream.codec_context.time_base = self._time_base
            stream.codec_context.gop_size = gop_size
            # Hardware encoders may be compiled in without a usable device;
            # opening here surfaces that before any frame work starts.
            stream.codec_context.open()
        except Exception:
            self._container.close()
            raise
        self._stream = stream

    def encode(self, frame: Any, *, timestamp_us: int, key_frame: bool) -> None:
        video_frame = self._av.VideoFrame.from_ndarray(frame, format="bgr24")
        video_frame.pts = timestamp_us
        video_frame.time_base = self._time_base
        if key_frame:
            video_frame.pict_type = self._av.video.frame.PictureType.I
        for packet in self._stream.encode(video_frame):
            self._container.mux(packet)

    def finish(self) -> None:
        for packet in self._stream.encode():
            self._container.mux(packet)
        self._container.close()

    def abort(self) -> None:
        try:
            self._container.close()
        except self._av.FFmpegError as exc:
            logger.debug("Ignoring error while closing abandoned proxy container: %s", exc)


def available_encoders(candidates: list[str]) -> list[str]:
    """Return the configured encoder names that this PyAV build provides."""

    try:
        import av
    except ImportError:
        logger.warning("PyAV is not importable; proxy encoding is unavailable.")
        return []

    found: list[str] = []
    for name in candidates:
        try:
            av.codec.Codec(name, "w")
        except (ValueError, av.FFmpegError):
            continue
        found.append(name)
    return found


def open_encoder(
    output_path: Path,
    *,
    codec_names: list[str],
    width: int,
    height: int,
    settings: ProxySettings,
) -> FrameEncoder:
    """Open the first encoder in ``codec_names`` that accepts the configuration."""

    errors: list[str] = []
    for codec_name in codec_names:
        try:
            encoder = PyAvFrameEncoder(
                output_path,
                codec_name=codec_name,
                width=width,
                height=height,
                fps=settings.fps,
                bit_rate=settings.bit_rate,
                gop_size=settings.fps * settings.keyframe_interval_seconds,
            )
        except Exception as exc:
            errors.append(f"{codec_name}: {exc}")
            continue
        logger.info("Encoding proxy with %s at %dx%d", codec_name, width, height)
        return encoder

    raise RuntimeError(f"No encoder accepted the proxy configuration ({'; '.join(errors)})")


def target_dimensions(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """Scale the longer edge down to ``max_dimension`` and round both edges to even."""

    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid source dimensions {width}x{height}")

    scaled_width, scaled_height = float(width), float(height)
    longer_edge = max(width, height)
    if longer_edge > max_dimension:
        scale = max_dimension / longer_edge
        scaled_width, scaled_height = width * scale, height * scale

    return _even(scaled_width, max_dimension), _even(scaled_height, max_dimension)


def transcode_frame(
    video: OpenCvVideoSource,
    encoder: FrameEncoder,
    frame_index: int,
    *,
    width: int,
    height: int,
    fps: int,
    keyframe_interval_seconds: int,
    seek_timeout_seconds: float,
) -> FrameState:
    """Drive one output frame through seeking -> rasterizing -> encoding."""

    state = FrameState.SEEKING
    frame: Any | None = None

    while state not in (FrameState.DONE, FrameState.SKIPPED):
        if state is FrameState.SEEKING:
            try:
                settled = video.seek(frame_index / fps, timeout=seek_timeout_seconds)
            except SeekTimeoutError as exc:
                logger.debug("Skipping proxy frame %d: %s", frame_index, exc)
                settled = False
            state = FrameState.RASTERIZING if settled else FrameState.SKIPPED
        elif state is FrameState.RASTERIZING:
            frame = video.rasterize(width, height)
            state = FrameState.ENCODING if frame is not None else FrameState.SKIPPED
        elif state is FrameState.ENCODING:
            encoder.encode(
                frame,
                timestamp_us=round(frame_index * MICROSECONDS_PER_SECOND / fps),
                key_frame=frame_index % (fps * keyframe_interval_seconds) == 0,
            )
            state = FrameState.DONE

    return state


def create_proxy_video(
    source: SourceVideo,
    *,
    settings: ProxySettings,
    work_dir: str | Path,
    on_progress: ProgressCallback | None = None,
) -> SourceVideo:
    """Re-encode ``source`` as a small low-frame-rate MP4 for upload.

    Never raises for media problems: when no encoder is available or anything
    goes wrong, the original ``source`` object is returned unchanged.
    """

    codec_names = available_encoders(settings.encoders)
    if not codec_names:
        logger.warning("No H.264 encoder available; uploading original %s.", source.display_name)
        return source

    output_path: Path | None = None
    try:
        output_dir = Path(work_dir).expanduser()
        output_dir.mkdir(parents=True, exist_ok=True)
        handle, raw_path = tempfile.mkstemp(prefix=f"proxy_{source.path.stem}_", suffix=".mp4", dir=output_dir)
        os.close(handle)
        output_path = Path(raw_path)
        _transcode(source, output_path, codec_names=codec_names, settings=settings, on_progress=on_progress)
    except Exception as exc:
        logger.warning("Proxy transcode failed for %s (%s); uploading original video.", source.display_name, exc)
        if output_path is not None:
            output_path.unlink(missing_ok=True)
        return source

    logger.info(
        "Proxy ready for %s: %.1f MB -> %.1f MB",
        source.display_name,
        source.path.stat().st_size / 1024 / 1024,
        output_path.stat().st_size / 1024 / 1024,
    )
    return SourceVideo(
        path=output_path,
        mime_type=PROXY_MIME_TYPE,
        display_name=f"proxy_{source.path.stem}.mp4",
    )


@contextmanager
def proxy_video(
    source: SourceVideo,
    *,
    settings: ProxySettings,
    work_dir: str | Path,
    on_progress: ProgressCallback | None = None,
) -> Iterator[SourceVideo]:
    """Yield a proxy for ``source`` and delete its temporary file on exit."""

    if not settings.enabled:
        yield source
        return

    proxy = create_proxy_video(source, settings=settings, work_dir=work_dir, on_progress=on_progress)
    try:
        yield proxy
    finally:
        if proxy is not source:
            proxy.path.unlink(missing_ok=True)


def _transcode(
    source: SourceVideo,
    output_path: Path,
    *,
    codec_names: list[str],
    settings: ProxySettings,
    on_progress: ProgressCallback | None,
) -> None:
    with open_video_source(source.path) as video:
        source_width, source_height, duration = _source_geometry(source, video)
        if not duration or not math.isfinite(duration) or duration <= 0:
            raise ValueError(f"Video has no usable duration: {duration!r}")

        width, height = target_dimensions(source_width, source_height, settings.max_dimension)
        total_frames = math.floor(duration * settings.fps)
        if total_frames <= 0:
            raise ValueError(f"Video is too short to sample at {settings.fps} fps")

        encoder = open_encoder(
            output_path,
            codec_names=codec_names,
            width=width,
            height=height,
            settings=settings,
        )
        encoded = 0
        try:
            for frame_index in range(total_frames):
                state = transcode_frame(
                    video,
                    encoder,
                    frame_index,
                    width=width,
                    height=height,
                    fps=settings.fps,
                    keyframe_interval_seconds=settings.keyframe_interval_seconds,
                    seek_timeout_seconds=settings.seek_timeout_seconds,
                )
                if state is FrameState.DONE:
                    encoded += 1
                if on_progress is not None:
                    on_progress((frame_index + 1) / total_frames)

            if encoded == 0:
                raise RuntimeError("No frames could be decoded from the source video")
            encoder.finish()
        except BaseException:
            encoder.abort()
            raise

    logger.debug("Encoded %d/%d proxy frames for %s", encoded, total_frames, source.display_name)


def _source_geometry(source: SourceVideo, video: OpenCvVideoSource) -> tuple[int, int, float | None]:
    try:
        metadata = probe_video(source.path)
    except RuntimeError as exc:
        logger.debug("ffprobe unavailable for %s (%s); using decoder metadata.", source.display_name, exc)
        return video.width, video.height, video.duration_seconds

    duration = metadata.duration_seconds
    if duration is None:
        duration = video.duration_seconds
    return metadata.width, metadata.height, duration


def _even(value: float, limit: int) -> int:
    rounded = int(round(value / 2.0)) * 2
    if rounded > limit:
        rounded -= 2
    return max(2, rounded)
