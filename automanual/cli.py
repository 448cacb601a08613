from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, TypeVar

import typer

from automanual.analysis.remote import RemoteAnalysisClient
from automanual.config import Settings, load_settings
from automanual.export import export_manual, load_manual
from automanual.ingest.frames import encode_png, extract_frame, parse_timestamp
from automanual.ingest.probe import probe_video
from automanual.ingest.proxy import create_proxy_video, proxy_video
from automanual.logging_config import configure_logging
from automanual.models import SourceVideo
from automanual.pipeline import build_manual
from automanual.progress import ProgressEvent

app = typer.Typer(help="Turn screen recordings into illustrated step-by-step manuals.")
config_app = typer.Typer(help="Configuration commands.")
ingest_app = typer.Typer(help="Local media commands (probe, proxy, frame capture).")

app.add_typer(config_app, name="config")
app.add_typer(ingest_app, name="ingest")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_OPTION = typer.Option(
    Path("configs/default.yaml"),
    "--config",
    "-c",
    envvar="AUTOMANUAL_CONFIG",
    help="Path to YAML configuration file.",
)
API_KEY_OPTION = typer.Option(None, "--api-key", help="Analysis service API key (defaults to GEMINI_API_KEY).")


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


class _ProgressPrinter:
    """Echo pipeline progress to stderr, once per whole percent or stage change."""

    def __init__(self) -> None:
        self._last: tuple[int, str, bool] | None = None

    def __call__(self, event: ProgressEvent) -> None:
        key = (int(event.percent), event.stage, event.estimated)
        if key == self._last:
            return
        self._last = key
        marker = "~" if event.estimated else " "
        typer.echo(f"[{marker}{int(event.percent):3d}%] {event.stage}", err=True)


def _bootstrap(config_path: Path, api_key: str | None = None) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    resolved_key = api_key or settings.analysis.api_key or os.getenv("GEMINI_API_KEY")
    if resolved_key != settings.analysis.api_key:
        settings = settings.model_copy(
            update={"analysis": settings.analysis.model_copy(update={"api_key": resolved_key})}
        )
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _fail(exc: Exception) -> None:
    logger.error("Command failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1) from exc


@config_app.command("show")
def show_config(config_path: Path = CONFIG_OPTION) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    payload = settings.model_dump(mode="json")
    if payload["analysis"].get("api_key"):
        payload["analysis"]["api_key"] = "***"
    typer.echo(json.dumps(payload, indent=2))


@ingest_app.command("probe")
def probe(video_path: Path, config_path: Path = CONFIG_OPTION) -> None:
    """Print ffprobe metadata for a video."""

    _bootstrap(config_path)
    try:
        metadata = probe_video(video_path)
    except (RuntimeError, FileNotFoundError) as exc:
        _fail(exc)
    typer.echo(json.dumps(asdict(metadata), indent=2))


@ingest_app.command("proxy")
def proxy(
    video_path: Path,
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the proxy MP4."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Write the low-frame-rate analysis proxy for a video."""

    settings = _bootstrap(config_path)
    source = SourceVideo.from_path(video_path)
    result = _run_with_progress(
        1,
        1,
        "Transcode proxy",
        lambda: create_proxy_video(source, settings=settings.proxy, work_dir=output.parent),
    )
    if result is source:
        _fail(RuntimeError("Proxy could not be produced; the original video would be uploaded unchanged."))
    result.path.replace(output)
    typer.echo(json.dumps({"status": "ok", "proxy_path": str(output)}, indent=2))


@ingest_app.command("frame")
def frame(
    video_path: Path,
    timestamp: str,
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the PNG frame."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Capture the full-resolution frame at TIMESTAMP (SS, MM:SS or HH:MM:SS)."""

    settings = _bootstrap(config_path)
    seconds = parse_timestamp(timestamp)
    if seconds is None:
        _fail(ValueError(f"Unparsable timestamp: {timestamp!r}"))

    try:
        image = encode_png(
            extract_frame(
                video_path,
                seconds,
                seek_offset_seconds=settings.extraction.seek_offset_seconds,
                seek_timeout_seconds=settings.extraction.seek_timeout_seconds,
            )
        )
    except RuntimeError as exc:
        _fail(exc)

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(image.data)
    typer.echo(json.dumps({"status": "ok", "frame_path": str(output), "width": image.width, "height": image.height}))


@app.command()
def analyze(
    video_path: Path,
    config_path: Path = CONFIG_OPTION,
    api_key: str | None = API_KEY_OPTION,
    use_proxy: bool = typer.Option(True, "--proxy/--no-proxy", help="Upload a low-frame-rate proxy instead of the original."),
) -> None:
    """Run remote analysis only and print the detected step candidates."""

    settings = _bootstrap(config_path, api_key)
    source = SourceVideo.from_path(video_path)
    proxy_settings = settings.proxy.model_copy(update={"enabled": use_proxy})

    def _analyze() -> list[dict[str, Any]]:
        client = RemoteAnalysisClient(settings.analysis)
        with proxy_video(
            source,
            settings=proxy_settings,
            work_dir=Path(settings.pipeline.cache_dir) / "proxies",
        ) as upload:
            return [asdict(candidate) for candidate in client.analyze(upload)]

    try:
        candidates = _run_with_progress(1, 1, "Analyze video", _analyze)
    except (RuntimeError, ValueError) as exc:
        _fail(exc)
    typer.echo(json.dumps(candidates, indent=2, ensure_ascii=False))


@app.command()
def run(
    video_paths: list[Path] = typer.Argument(..., help="Videos to combine, in order."),
    config_path: Path = CONFIG_OPTION,
    api_key: str | None = API_KEY_OPTION,
    output_dir: Path | None = typer.Option(None, "--output-dir", "-o", help="Override pipeline.output_dir."),
    fail_fast: bool = typer.Option(False, "--fail-fast", help="Abort on the first failed video instead of skipping it."),
    use_proxy: bool = typer.Option(True, "--proxy/--no-proxy", help="Upload a low-frame-rate proxy instead of the original."),
) -> None:
    """Build a manual from one or more videos and write it to the output directory."""

    settings = _bootstrap(config_path, api_key)
    pipeline_updates: dict[str, Any] = {}
    if output_dir is not None:
        pipeline_updates["output_dir"] = output_dir
    if fail_fast:
        pipeline_updates["fail_fast"] = True
    settings = settings.model_copy(
        update={
            "pipeline": settings.pipeline.model_copy(update=pipeline_updates),
            "proxy": settings.proxy.model_copy(update={"enabled": use_proxy and settings.proxy.enabled}),
        }
    )

    try:
        videos = [SourceVideo.from_path(path) for path in video_paths]
        missing = [str(video.path) for video in videos if not video.path.exists()]
        if missing:
            raise FileNotFoundError(f"Video file not found: {', '.join(missing)}")

        manual = build_manual(videos, settings=settings, on_progress=_ProgressPrinter())
        if not manual.steps and manual.failures:
            raise RuntimeError(f"No steps produced; {len(manual.failures)} of {len(videos)} videos failed.")

        exported = export_manual(manual, settings.pipeline.output_dir)
    except (RuntimeError, ValueError, OSError) as exc:
        _fail(exc)

    for failure in manual.failures:
        typer.echo(f"Warning: {failure.display_name} skipped: {failure.message}", err=True)

    typer.echo(
        json.dumps(
            {
                "status": "ok" if not manual.failures else "partial",
                "title": manual.title,
                "step_count": len(manual.steps),
                "video_count": len(videos),
                "failures": [asdict(failure) for failure in manual.failures],
                "outputs": {key: str(value) for key, value in exported.items()},
            },
            indent=2,
            ensure_ascii=False,
        )
    )


@app.command()
def show(
    manual_path: Path = typer.Argument(..., help="manual.json written by `run`."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Print an exported manual as numbered steps."""

    _bootstrap(config_path)
    try:
        manual = load_manual(manual_path)
    except (ValueError, OSError) as exc:
        _fail(exc)

    typer.echo(manual.title)
    if manual.overview:
        typer.echo(manual.overview)
    for step in manual.steps:
        zoom = " (zoomed view)" if step.display_image is not None else ""
        typer.echo(f"{step.step_number:3d}. [{step.timestamp}] {step.action}{zoom}")
    for failure in manual.failures:
        typer.echo(f"Skipped: {failure.display_name}: {failure.message}")


if __name__ == "__main__":
    app()
