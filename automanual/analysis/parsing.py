from __future__ import annotations

import json
import logging
import math
import re
from typing import Any

from automanual.errors import ResponseParseError
from automanual.models import StepCandidate

logger = logging.getLogger(__name__)

CODE_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?")
BOX_GRID_MAX = 1000


def parse_step_candidates(response_text: str) -> list[StepCandidate]:
    """Parse the service's JSON array into step candidates.

    A body that is not valid JSON gets one repair pass that strips markdown
    code fences before it is rejected.
    """

    payload = _load_json_array(response_text)

    candidates: list[StepCandidate] = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            logger.warning("Ignoring step %d: expected an object, got %s", index + 1, type(item).__name__)
            continue
        candidates.append(
            StepCandidate(
                index=index,
                timestamp=_text(item.get("timestamp")),
                action=_text(item.get("action")),
                reason=_text(item.get("reason")),
                label=_text(item.get("label")),
                box_2d=_normalize_box(item.get("box_2d")),
            )
        )
    return candidates


def strip_code_fences(text: str) -> str:
    return CODE_FENCE_PATTERN.sub("", text).strip()


def _load_json_array(response_text: str) -> list[Any]:
    try:
        payload = json.loads(response_text)
    except json.JSONDecodeError as exc:
        logger.warning("Analysis response is not plain JSON (%s); stripping code fences.", exc)
        try:
            payload = json.loads(strip_code_fences(response_text))
        except json.JSONDecodeError as repair_exc:
            raise ResponseParseError(
                f"Analysis response is not valid JSON: {response_text[:200]!r}"
            ) from repair_exc

    if not isinstance(payload, list):
        raise ResponseParseError(f"Analysis response must be a JSON array, got {type(payload).__name__}.")
    return payload


def _normalize_box(raw_box: Any) -> list[int] | None:
    if not isinstance(raw_box, list | tuple) or len(raw_box) != 4:
        return None
    try:
        values = [float(value) for value in raw_box]
    except (TypeError, ValueError):
        return None
    if any(isinstance(value, bool) for value in raw_box) or not all(math.isfinite(value) for value in values):
        return None
    return [max(0, min(BOX_GRID_MAX, int(round(value)))) for value in values]


def _text(raw_value: Any) -> str:
    if raw_value is None:
        return ""
    return str(raw_value).strip()
