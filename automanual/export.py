from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from automanual.models import Manual, ManualStep, StillImage, VideoFailure

IMAGES_DIRNAME = "images"


def export_manual(manual: Manual, output_dir: str | Path, *, basename: str = "manual") -> dict[str, Path]:
    """Write the manual as JSON plus one PNG per step image for downstream tooling."""

    resolved_output_dir = Path(output_dir)
    images_dir = resolved_output_dir / IMAGES_DIRNAME
    images_dir.mkdir(parents=True, exist_ok=True)

    steps_payload: list[dict[str, Any]] = []
    for step in manual.steps:
        image_name = f"step_{step.step_number:03d}.png"
        (images_dir / image_name).write_bytes(step.image.data)

        display_name = None
        if step.display_image is not None:
            display_name = f"step_{step.step_number:03d}_display.png"
            (images_dir / display_name).write_bytes(step.display_image.data)

        steps_payload.append(_step_payload(step, image_name=image_name, display_name=display_name))

    json_path = resolved_output_dir / f"{basename}.json"
    payload = {
        "title": manual.title,
        "overview": manual.overview,
        "notes": manual.notes,
        "steps": steps_payload,
        "failures": [
            {"video_index": failure.video_index, "display_name": failure.display_name, "message": failure.message}
            for failure in manual.failures
        ],
    }
    json_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    return {
        "json": json_path,
        "images": images_dir,
    }


def load_manual(path: str | Path) -> Manual:
    """Load a manual written by ``export_manual``, reading images back from disk."""

    json_path = Path(path)
    payload = json.loads(json_path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Manual document must be a JSON object.")

    images_dir = json_path.parent / IMAGES_DIRNAME
    steps: list[ManualStep] = []
    for idx, row in enumerate(payload.get("steps", []), start=1):
        if not isinstance(row, dict):
            raise ValueError(f"Manual step {idx} must be an object.")
        display = row.get("display_image")
        try:
            step = ManualStep(
                step_number=int(row["step_number"]),
                video_step_number=int(row["video_step_number"]),
                action=str(row["action"]),
                detail=str(row.get("detail", "")),
                timestamp=str(row["timestamp"]),
                image=_load_image(images_dir, row["image"]),
                uid=str(row["uid"]),
                video_index=int(row["video_index"]),
                box_2d=[int(value) for value in row["box_2d"]] if row.get("box_2d") is not None else None,
                label=str(row.get("label", "")),
                display_image=_load_image(images_dir, display) if display else None,
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Manual step {idx} is missing or has an invalid field: {exc}") from exc
        steps.append(step)

    return Manual(
        title=str(payload.get("title", "")),
        overview=str(payload.get("overview", "")),
        steps=steps,
        notes=[str(note) for note in payload.get("notes", [])],
        failures=[
            VideoFailure(int(item["video_index"]), str(item["display_name"]), str(item["message"]))
            for item in payload.get("failures", [])
        ],
    )


def _step_payload(step: ManualStep, *, image_name: str, display_name: str | None) -> dict[str, Any]:
    return {
        "uid": step.uid,
        "step_number": step.step_number,
        "video_index": step.video_index,
        "video_step_number": step.video_step_number,
        "timestamp": step.timestamp,
        "action": step.action,
        "detail": step.detail,
        "label": step.label,
        "box_2d": step.box_2d,
        "image": {"file": image_name, "width": step.image.width, "height": step.image.height},
        "display_image": (
            {"file": display_name, "width": step.display_image.width, "height": step.display_image.height}
            if step.display_image is not None and display_name
            else None
        ),
    }


def _load_image(images_dir: Path, entry: dict[str, Any]) -> StillImage:
    return StillImage(
        data=(images_dir / str(entry["file"])).read_bytes(),
        width=int(entry["width"]),
        height=int(entry["height"]),
    )
