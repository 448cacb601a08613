from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class SeekTimeoutError(TimeoutError):
    """The decoder did not settle on the requested position in time."""


class OpenCvVideoSource:
    """A read handle on a video file with bounded seeks.

    Seeks run on a private single-worker thread so the caller can stop waiting
    after ``timeout`` seconds. Every handle owns its own capture, so concurrent
    extractions never share decoder state.
    """

    def __init__(self, path: str | Path, *, cv2_module: Any | None = None) -> None:
        if cv2_module is None:
            import cv2 as cv2_module

        self._cv2 = cv2_module
        self.path = Path(path)
        self._capture = cv2_module.VideoCapture(str(self.path))
        if not self._capture.isOpened():
            self._capture.release()
            raise RuntimeError(f"Unable to open video: {self.path}")
        self._seeker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="video-seek")
        self._pending: Future[bool] | None = None

    @property
    def width(self) -> int:
        return int(self._capture.get(self._cv2.CAP_PROP_FRAME_WIDTH) or 0)

    @property
    def height(self) -> int:
        return int(self._capture.get(self._cv2.CAP_PROP_FRAME_HEIGHT) or 0)

    @property
    def fps(self) -> float:
        return float(self._capture.get(self._cv2.CAP_PROP_FPS) or 0.0)

    @property
    def duration_seconds(self) -> float | None:
        frame_count = float(self._capture.get(self._cv2.CAP_PROP_FRAME_COUNT) or 0.0)
        fps = self.fps
        if frame_count <= 0 or fps <= 0:
            return None
        return frame_count / fps

    def seek(self, seconds: float, *, timeout: float) -> bool:
        """Move to ``seconds`` and decode the frame there.

        Returns False when the decoder has no frame at that position. Raises
        SeekTimeoutError when the decoder does not answer within ``timeout``.
        """

        future = self._seeker.submit(self._seek_and_grab, max(0.0, seconds))
        self._pending = future
        try:
            return bool(future.result(timeout=timeout))
        except FutureTimeoutError as exc:
            raise SeekTimeoutError(
                f"Seek to {seconds:.3f}s in {self.path.name} did not settle within {timeout:.1f}s"
            ) from exc

    def rasterize(self, width: int | None = None, height: int | None = None) -> Any | None:
        """Return the frame at the last settled position, optionally resized."""

        ok, frame = self._capture.retrieve()
        if not ok or frame is None:
            return None
        if width is None or height is None:
            return frame
        return _resize_frame(frame, width=width, height=height, cv2_module=self._cv2)

    def close(self) -> None:
        """Release the capture once no seek is running on it.

        A seek abandoned after a timeout keeps the decoder busy; the release is
        deferred to that seek's completion instead of blocking the caller.
        """

        self._seeker.shutdown(wait=False, cancel_futures=True)
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.add_done_callback(lambda _future: self._capture.release())
            return
        self._capture.release()

    def __enter__(self) -> OpenCvVideoSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _seek_and_grab(self, seconds: float) -> bool:
        self._capture.set(self._cv2.CAP_PROP_POS_MSEC, seconds * 1000.0)
        return bool(self._capture.grab())


def open_video_source(path: str | Path) -> OpenCvVideoSource:
    return OpenCvVideoSource(path)


def _resize_frame(frame: Any, *, width: int, height: int, cv2_module: Any) -> Any:
    source_height, source_width = frame.shape[:2]
    if (source_width, source_height) == (width, height):
        return frame

    interpolation = cv2_module.INTER_AREA
    if width > source_width or height > source_height:
        interpolation = cv2_module.INTER_CUBIC
    return cv2_module.resize(frame, (width, height), interpolation=interpolation)
