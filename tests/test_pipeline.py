from __future__ import annotations

import random
import threading
import time
from pathlib import Path

import pytest

from automanual import pipeline
from automanual.config import ExtractionSettings, PipelineSettings, ProxySettings, Settings
from automanual.errors import AnalysisError, FrameExtractionError
from automanual.models import SourceVideo, StepCandidate, StillImage
from automanual.pipeline import ExtractionJob, build_manual, extract_in_batches, manual_title, select_extraction_jobs
from automanual.progress import ProgressEvent


class _FakeAnalyzer:
    def __init__(self, results: dict[str, list[StepCandidate] | Exception]) -> None:
        self._results = results
        self.seen: list[str] = []

    def analyze(self, video: SourceVideo) -> list[StepCandidate]:
        self.seen.append(video.display_name)
        result = self._results[video.display_name]
        if isinstance(result, Exception):
            raise result
        return result


def _video(tmp_path: Path, name: str) -> SourceVideo:
    return SourceVideo(tmp_path / name, "video/mp4", name)


def _candidates(*actions: str) -> list[StepCandidate]:
    return [
        StepCandidate(index=index, timestamp=f"00:{index:02d}", action=action)
        for index, action in enumerate(actions)
    ]


def _settings(tmp_path: Path, **pipeline_overrides: object) -> Settings:
    return Settings(
        pipeline=PipelineSettings(cache_dir=tmp_path / "cache", output_dir=tmp_path / "out", **pipeline_overrides),
        proxy=ProxySettings(enabled=False),
    )


def _fake_capture(video: SourceVideo, candidate: StepCandidate, seconds: float, settings: ExtractionSettings):
    time.sleep(random.uniform(0, 0.02))
    return StillImage(data=candidate.action.encode("utf-8"), width=1280, height=720), None


def test_steps_keep_analysis_order_despite_parallel_extraction(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    actions = [f"Step {number}" for number in range(1, 10)]
    monkeypatch.setattr(pipeline, "capture_step_images", _fake_capture)
    analyzer = _FakeAnalyzer({"demo.mp4": _candidates(*actions)})

    manual = build_manual([_video(tmp_path, "demo.mp4")], settings=_settings(tmp_path, batch_size=4), client=analyzer)

    assert [step.action for step in manual.steps] == actions
    assert [step.image.data.decode() for step in manual.steps] == actions
    assert [step.step_number for step in manual.steps] == list(range(1, 10))
    assert [step.video_step_number for step in manual.steps] == list(range(1, 10))
    assert len({step.uid for step in manual.steps}) == 9
    assert manual.title == "demo manual"
    assert manual.failures == []


def test_extraction_concurrency_is_bounded_by_batch_size(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def _tracking_capture(video, candidate, seconds, settings):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.01)
        with lock:
            active -= 1
        return StillImage(data=b"png", width=1, height=1), None

    monkeypatch.setattr(pipeline, "capture_step_images", _tracking_capture)
    jobs = [ExtractionJob(candidate, float(candidate.index)) for candidate in _candidates(*"abcdefg")]

    results = extract_in_batches(_video(tmp_path, "demo.mp4"), jobs, batch_size=3, settings=ExtractionSettings())

    assert all(result is not None for result in results)
    assert peak <= 3


def test_failed_frame_drops_only_that_step(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _capture(video, candidate, seconds, settings):
        if candidate.index == 2:
            raise FrameExtractionError("seek did not settle")
        return _fake_capture(video, candidate, seconds, settings)

    monkeypatch.setattr(pipeline, "capture_step_images", _capture)
    analyzer = _FakeAnalyzer({"demo.mp4": _candidates("one", "two", "three", "four", "five")})

    manual = build_manual([_video(tmp_path, "demo.mp4")], settings=_settings(tmp_path), client=analyzer)

    assert [step.action for step in manual.steps] == ["one", "two", "four", "five"]
    assert [step.step_number for step in manual.steps] == [1, 2, 3, 4]


def test_unparsable_timestamps_are_dropped_in_order() -> None:
    candidates = [
        StepCandidate(0, "00:05", "first"),
        StepCandidate(1, "soon", "second"),
        StepCandidate(2, "01:23", "third"),
    ]

    jobs = select_extraction_jobs(candidates, video_name="demo.mp4")

    assert [(job.candidate.action, job.seconds) for job in jobs] == [("first", 5.0), ("third", 83.0)]


def test_failed_video_is_skipped_and_recorded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(pipeline, "capture_step_images", _fake_capture)
    analyzer = _FakeAnalyzer(
        {
            "a.mp4": _candidates("a1", "a2"),
            "b.mp4": AnalysisError("Remote processing failed"),
            "c.mp4": _candidates("c1"),
        }
    )
    videos = [_video(tmp_path, name) for name in ("a.mp4", "b.mp4", "c.mp4")]

    manual = build_manual(videos, settings=_settings(tmp_path), client=analyzer)

    assert analyzer.seen == ["a.mp4", "b.mp4", "c.mp4"]
    assert [step.action for step in manual.steps] == ["a1", "a2", "c1"]
    assert [step.step_number for step in manual.steps] == [1, 2, 3]
    assert [step.video_index for step in manual.steps] == [0, 0, 2]
    assert [(failure.video_index, failure.display_name) for failure in manual.failures] == [(1, "b.mp4")]
    assert manual.title == "Combined manual (3 videos)"


def test_fail_fast_aborts_on_first_failed_video(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(pipeline, "capture_step_images", _fake_capture)
    analyzer = _FakeAnalyzer({"a.mp4": AnalysisError("quota"), "b.mp4": _candidates("b1")})
    videos = [_video(tmp_path, "a.mp4"), _video(tmp_path, "b.mp4")]

    with pytest.raises(AnalysisError, match="quota"):
        build_manual(videos, settings=_settings(tmp_path, fail_fast=True), client=analyzer)

    assert analyzer.seen == ["a.mp4"]


def test_build_manual_requires_videos(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        build_manual([], settings=_settings(tmp_path), client=_FakeAnalyzer({}))


def test_progress_is_monotonic_and_finishes_at_100(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(pipeline, "capture_step_images", _fake_capture)
    analyzer = _FakeAnalyzer({"a.mp4": _candidates("a1", "a2"), "b.mp4": _candidates("b1")})
    events: list[ProgressEvent] = []

    build_manual(
        [_video(tmp_path, "a.mp4"), _video(tmp_path, "b.mp4")],
        settings=_settings(tmp_path),
        client=analyzer,
        on_progress=events.append,
    )

    measured = [event.percent for event in events if not event.estimated]
    assert measured == sorted(measured)
    assert measured[-1] == 100.0
    assert events[-1].stage.startswith("Done")


def test_manual_title() -> None:
    video = SourceVideo(Path("/videos/Onboarding flow.mov"), "video/mov", "Onboarding flow.mov")

    assert manual_title([video]) == "Onboarding flow manual"
    assert manual_title([video, video]) == "Combined manual (2 videos)"
