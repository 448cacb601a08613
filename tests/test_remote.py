from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from automanual.analysis import remote
from automanual.analysis.remote import HttpResponse, RemoteAnalysisClient
from automanual.config import AnalysisSettings
from automanual.errors import (
    AnalysisError,
    ConfigurationError,
    RateLimitError,
    RemoteProcessingError,
    TransportError,
    UploadError,
)
from automanual.models import AssetState, RemoteAsset, SourceVideo

SESSION_URL = "https://upload.example/session/abc"


def _json(status: int, payload: Any, headers: dict[str, str] | None = None) -> HttpResponse:
    return HttpResponse(status=status, headers=headers or {}, body=json.dumps(payload).encode("utf-8"))


def _session_started() -> HttpResponse:
    return HttpResponse(status=200, headers={"x-goog-upload-url": SESSION_URL}, body=b"")


def _file_uploaded(state: str = "ACTIVE") -> HttpResponse:
    return _json(200, {"file": {"uri": "https://files.example/files/f1", "name": "files/f1", "state": state}})


def _generated(text: str) -> HttpResponse:
    return _json(
        200,
        {
            "candidates": [
                {"content": {"parts": [{"text": "thinking...", "thought": True}, {"text": text}]}}
            ]
        },
    )


class _ScriptedHttp:
    def __init__(self, responses: list[HttpResponse | Exception]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def __call__(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float | None,
    ) -> HttpResponse:
        self.calls.append({"method": method, "url": url, "headers": headers or {}, "body": body, "timeout": timeout})
        if not self._responses:
            raise AssertionError(f"Unexpected request: {method} {url}")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def video(tmp_path: Path) -> SourceVideo:
    path = tmp_path / "demo.mov"
    path.write_bytes(b"0123456789")
    return SourceVideo.from_path(path)


def _client(sleeps: list[float], **overrides: Any) -> RemoteAnalysisClient:
    settings = AnalysisSettings(api_key="test-key", **overrides)
    return RemoteAnalysisClient(settings, sleep=sleeps.append)


def _install(monkeypatch: pytest.MonkeyPatch, responses: list[HttpResponse | Exception]) -> _ScriptedHttp:
    http = _ScriptedHttp(responses)
    monkeypatch.setattr(remote, "_http_request", http)
    return http


def test_client_requires_api_key() -> None:
    with pytest.raises(ConfigurationError):
        RemoteAnalysisClient(AnalysisSettings(api_key=None))


def test_upload_uses_two_phase_resumable_protocol(monkeypatch: pytest.MonkeyPatch, video: SourceVideo) -> None:
    http = _install(monkeypatch, [_session_started(), _file_uploaded("PROCESSING")])

    asset = _client([]).upload(video)

    start, transfer = http.calls
    assert start["headers"]["X-Goog-Upload-Protocol"] == "resumable"
    assert start["headers"]["X-Goog-Upload-Command"] == "start"
    assert start["headers"]["X-Goog-Upload-Header-Content-Length"] == "10"
    assert start["headers"]["X-Goog-Upload-Header-Content-Type"] == "video/mov"
    assert start["headers"]["x-goog-api-key"] == "test-key"
    assert json.loads(start["body"]) == {"file": {"display_name": "demo.mov"}}

    assert transfer["url"] == SESSION_URL
    assert transfer["headers"]["X-Goog-Upload-Offset"] == "0"
    assert transfer["headers"]["X-Goog-Upload-Command"] == "upload, finalize"
    assert transfer["body"] == b"0123456789"
    assert transfer["timeout"] is None

    assert asset == RemoteAsset(
        uri="https://files.example/files/f1",
        name="files/f1",
        state=AssetState.PROCESSING,
        mime_type="video/mov",
    )


def test_upload_without_session_url_fails(monkeypatch: pytest.MonkeyPatch, video: SourceVideo) -> None:
    http = _install(monkeypatch, [HttpResponse(status=200, headers={}, body=b"")])

    with pytest.raises(UploadError, match="upload URL"):
        _client([]).upload(video)
    assert len(http.calls) == 1


def test_transfer_transport_failure_is_an_upload_error(monkeypatch: pytest.MonkeyPatch, video: SourceVideo) -> None:
    _install(monkeypatch, [_session_started(), TransportError("connection reset")])

    with pytest.raises(UploadError, match="connection reset"):
        _client([]).upload(video)


def test_wait_until_ready_polls_with_minimum_interval(monkeypatch: pytest.MonkeyPatch) -> None:
    http = _install(monkeypatch, [_json(200, {"state": "PROCESSING"}), _json(200, {"state": "ACTIVE"})])
    sleeps: list[float] = []
    asset = RemoteAsset("uri", "files/f1", AssetState.PROCESSING, "video/mp4")

    _client(sleeps, poll_interval_seconds=0.5).wait_until_ready(asset)

    assert asset.state is AssetState.READY
    assert sleeps == [2.0, 2.0]
    assert all(call["method"] == "GET" for call in http.calls)
    assert all(call["headers"]["Cache-Control"] == "no-cache" for call in http.calls)


def test_wait_until_ready_raises_on_failed_state(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, [_json(200, {"state": "FAILED"})])
    asset = RemoteAsset("uri", "files/f1", AssetState.PROCESSING, "video/mp4")

    with pytest.raises(RemoteProcessingError):
        _client([]).wait_until_ready(asset)


def test_generate_gives_up_after_three_rate_limited_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    http = _install(monkeypatch, [_json(429, {"error": {"status": "RESOURCE_EXHAUSTED"}})] * 3)
    sleeps: list[float] = []
    asset = RemoteAsset("uri", "files/f1", AssetState.READY, "video/mp4")

    with pytest.raises(RateLimitError):
        _client(sleeps).generate(asset)

    assert len(http.calls) == 3
    assert sleeps == [2.0, 4.0]


def test_generate_retries_rate_limit_then_returns_text(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(
        monkeypatch,
        [
            _json(400, {"error": {"status": "RESOURCE_EXHAUSTED", "message": "quota"}}),
            _generated('[{"timestamp": "00:01", "action": "Click"}]'),
        ],
    )
    sleeps: list[float] = []

    text = _client(sleeps).generate(RemoteAsset("uri", "files/f1", AssetState.READY, "video/mp4"))

    assert text == '[{"timestamp": "00:01", "action": "Click"}]'
    assert sleeps == [2.0]


def test_generate_does_not_retry_other_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    http = _install(monkeypatch, [_json(500, {"error": {"status": "INTERNAL"}})])
    sleeps: list[float] = []

    with pytest.raises(AnalysisError, match="500"):
        _client(sleeps).generate(RemoteAsset("uri", "files/f1", AssetState.READY, "video/mp4"))

    assert len(http.calls) == 1
    assert sleeps == []


def test_analyze_returns_candidates_even_when_delete_fails(monkeypatch: pytest.MonkeyPatch, video: SourceVideo) -> None:
    http = _install(
        monkeypatch,
        [
            _session_started(),
            _file_uploaded("ACTIVE"),
            _generated('```json\n[{"timestamp": "00:02", "action": "Open menu"}]\n```'),
            _json(500, {"error": "boom"}),
        ],
    )

    candidates = _client([]).analyze(video)

    assert [candidate.action for candidate in candidates] == ["Open menu"]
    assert http.calls[-1]["method"] == "DELETE"
    assert http.calls[-1]["url"].endswith("/files/f1")


def test_analyze_deletes_asset_when_generation_fails(monkeypatch: pytest.MonkeyPatch, video: SourceVideo) -> None:
    http = _install(
        monkeypatch,
        [
            _session_started(),
            _file_uploaded("ACTIVE"),
            _json(403, {"error": "forbidden"}),
            TransportError("network down"),
        ],
    )

    with pytest.raises(AnalysisError, match="403"):
        _client([]).analyze(video)

    assert [call["method"] for call in http.calls] == ["POST", "POST", "POST", "DELETE"]


def test_empty_generation_yields_no_candidates(monkeypatch: pytest.MonkeyPatch, video: SourceVideo) -> None:
    _install(monkeypatch, [_session_started(), _file_uploaded("ACTIVE"), _json(200, {"candidates": []}), _json(200, {})])

    assert _client([]).analyze(video) == []
