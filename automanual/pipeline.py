from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from automanual.analysis.remote import RemoteAnalysisClient
from automanual.config import ExtractionSettings, Settings
from automanual.errors import AutomanualError
from automanual.ingest.frames import capture_step_images, parse_timestamp
from automanual.ingest.proxy import proxy_video
from automanual.models import Manual, ManualStep, SourceVideo, StepCandidate, StillImage, VideoFailure
from automanual.progress import ProgressCallback, ProgressReporter, ProgressSegment

logger = logging.getLogger(__name__)

DEFAULT_OVERVIEW = "Automatically generated manual. Review and edit the steps before publishing."
# Share of each video's progress budget: transcode, analysis, frame extraction.
VIDEO_BUDGET_WEIGHTS = (0.15, 0.65, 0.20)
ESTIMATED_ANALYSIS_SECONDS = 180.0

StepImages = tuple[StillImage, StillImage | None]


class VideoAnalyzer(Protocol):
    def analyze(self, video: SourceVideo) -> list[StepCandidate]: ...


@dataclass(slots=True)
class ExtractionJob:
    candidate: StepCandidate
    seconds: float


def build_manual(
    videos: list[SourceVideo],
    *,
    settings: Settings,
    client: VideoAnalyzer | None = None,
    on_progress: ProgressCallback | None = None,
) -> Manual:
    """Turn ``videos`` into one manual, processing them strictly in order.

    A video whose proxy or analysis stage fails contributes no steps and is
    recorded in ``Manual.failures``; with ``pipeline.fail_fast`` the error is
    raised instead.
    """

    if not videos:
        raise ValueError("At least one video is required to build a manual.")

    analyzer = client if client is not None else RemoteAnalysisClient(settings.analysis)
    reporter = ProgressReporter(on_progress)
    manual = Manual(title=manual_title(videos), overview=DEFAULT_OVERVIEW)

    for video_index, video in enumerate(videos):
        segment = ProgressSegment.for_item(video_index, len(videos))
        label = f"[{video_index + 1}/{len(videos)}] {video.display_name}"
        try:
            steps = process_video(
                video,
                video_index,
                settings=settings,
                analyzer=analyzer,
                reporter=reporter,
                segment=segment,
                label=label,
            )
        except (AutomanualError, OSError) as exc:
            if settings.pipeline.fail_fast:
                raise
            logger.error("Video %s contributed no steps: %s", video.display_name, exc)
            manual.failures.append(VideoFailure(video_index, video.display_name, str(exc)))
            steps = []

        for step in steps:
            step.step_number = len(manual.steps) + 1
            manual.steps.append(step)
        reporter.complete(segment)

    reporter.stage(f"Done: {len(manual.steps)} steps")
    logger.info(
        "Built manual %r with %d steps from %d videos (%d failed)",
        manual.title,
        len(manual.steps),
        len(videos),
        len(manual.failures),
    )
    return manual


def process_video(
    video: SourceVideo,
    video_index: int,
    *,
    settings: Settings,
    analyzer: VideoAnalyzer,
    reporter: ProgressReporter,
    segment: ProgressSegment,
    label: str,
) -> list[ManualStep]:
    transcode_segment, analysis_segment, extraction_segment = segment.split(*VIDEO_BUDGET_WEIGHTS)

    reporter.stage(f"{label}: preparing analysis proxy")
    with proxy_video(
        video,
        settings=settings.proxy,
        work_dir=Path(settings.pipeline.cache_dir) / "proxies",
        on_progress=reporter.fraction_callback(transcode_segment),
    ) as proxy:
        reporter.complete(transcode_segment)
        reporter.stage(f"{label}: analyzing")
        with reporter.simulate(analysis_segment, expected_seconds=ESTIMATED_ANALYSIS_SECONDS):
            candidates = analyzer.analyze(proxy)

    jobs = select_extraction_jobs(candidates, video_name=video.display_name)
    reporter.stage(f"{label}: extracting {len(jobs)} frames")
    results = extract_in_batches(
        video,
        jobs,
        batch_size=settings.pipeline.batch_size,
        settings=settings.extraction,
        on_item_done=lambda done, total: reporter.report(extraction_segment.at(done / total)),
    )

    steps: list[ManualStep] = []
    for job, images in zip(jobs, results):
        if images is None:
            continue
        image, display_image = images
        candidate = job.candidate
        steps.append(
            ManualStep(
                step_number=0,
                video_step_number=len(steps) + 1,
                action=candidate.action,
                detail=candidate.reason or candidate.action,
                timestamp=candidate.timestamp,
                image=image,
                uid=new_step_uid(),
                video_index=video_index,
                box_2d=candidate.box_2d,
                label=candidate.label,
                display_image=display_image,
            )
        )

    logger.info("%s: %d of %d candidates became steps", video.display_name, len(steps), len(candidates))
    return steps


def select_extraction_jobs(candidates: list[StepCandidate], *, video_name: str = "") -> list[ExtractionJob]:
    """Keep candidates whose timestamp parses, preserving their order."""

    jobs: list[ExtractionJob] = []
    for candidate in candidates:
        seconds = parse_timestamp(candidate.timestamp)
        if seconds is None:
            logger.warning(
                "Dropping step %d of %s: unusable timestamp %r",
                candidate.index + 1,
                video_name,
                candidate.timestamp,
            )
            continue
        jobs.append(ExtractionJob(candidate=candidate, seconds=seconds))
    return jobs


def extract_in_batches(
    video: SourceVideo,
    jobs: list[ExtractionJob],
    *,
    batch_size: int,
    settings: ExtractionSettings,
    on_item_done: Callable[[int, int], None] | None = None,
) -> list[StepImages | None]:
    """Capture frames for ``jobs`` from the original video in fixed-size parallel batches.

    Results are stored at each job's position, so the returned list lines up
    with ``jobs`` regardless of completion order. Failed items are None.
    """

    results: list[StepImages | None] = [None] * len(jobs)
    if not jobs:
        return results

    width = max(1, batch_size)
    completed = 0
    with ThreadPoolExecutor(max_workers=width, thread_name_prefix="frame-extract") as executor:
        for batch_start in range(0, len(jobs), width):
            futures = {
                executor.submit(
                    capture_step_images,
                    video,
                    jobs[position].candidate,
                    jobs[position].seconds,
                    settings,
                ): position
                for position in range(batch_start, min(batch_start + width, len(jobs)))
            }
            for future in as_completed(futures):
                position = futures[future]
                candidate = jobs[position].candidate
                try:
                    results[position] = future.result()
                except Exception as exc:
                    logger.warning(
                        "Dropping step %d of %s at %s: %s",
                        candidate.index + 1,
                        video.display_name,
                        candidate.timestamp,
                        exc,
                    )
                completed += 1
                if on_item_done is not None:
                    on_item_done(completed, len(jobs))

    return results


def manual_title(videos: list[SourceVideo]) -> str:
    if len(videos) == 1:
        return f"{Path(videos[0].display_name).stem} manual"
    return f"Combined manual ({len(videos)} videos)"


def new_step_uid() -> str:
    return uuid.uuid4().hex[:12]
