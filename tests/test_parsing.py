from __future__ import annotations

import pytest

from automanual.analysis.parsing import parse_step_candidates, strip_code_fences
from automanual.errors import ResponseParseError

RESPONSE = """```json
[
  {"timestamp": "00:04", "action": "Open the Settings menu", "box_2d": [12, 900, 60, 990], "label": "Settings", "reason": "Menu opens"},
  {"timestamp": "01:23", "action": " Click Save ", "box_2d": [100, 100, 1200, -5]}
]
```"""


def test_parse_step_candidates_strips_code_fences() -> None:
    candidates = parse_step_candidates(RESPONSE)

    assert [candidate.timestamp for candidate in candidates] == ["00:04", "01:23"]
    assert candidates[0].label == "Settings"
    assert candidates[0].reason == "Menu opens"
    assert candidates[1].action == "Click Save"
    assert candidates[1].box_2d == [100, 100, 1000, 0]


def test_parse_step_candidates_accepts_plain_json_and_skips_non_objects() -> None:
    candidates = parse_step_candidates('[{"timestamp": "5", "action": "Type name"}, "noise", 3]')

    assert len(candidates) == 1
    assert candidates[0].index == 0
    assert candidates[0].box_2d is None


@pytest.mark.parametrize(
    "box",
    ["[1, 2, 3]", '["a", 2, 3, 4]', "[true, 2, 3, 4]", "null", '"0,0,1,1"'],
)
def test_invalid_boxes_are_dropped(box: str) -> None:
    candidates = parse_step_candidates(f'[{{"timestamp": "00:01", "action": "Click", "box_2d": {box}}}]')

    assert candidates[0].box_2d is None


@pytest.mark.parametrize("text", ["not json at all", '{"steps": []}', "```json\n{oops\n```"])
def test_unusable_responses_raise(text: str) -> None:
    with pytest.raises(ResponseParseError):
        parse_step_candidates(text)


def test_strip_code_fences() -> None:
    assert strip_code_fences("```JSON\n[]\n```") == "[]"
