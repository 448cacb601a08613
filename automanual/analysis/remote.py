from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator
from urllib import request
from urllib.error import HTTPError, URLError

from automanual.analysis.parsing import parse_step_candidates
from automanual.config import AnalysisSettings
from automanual.errors import (
    AnalysisError,
    ConfigurationError,
    RateLimitError,
    RemoteProcessingError,
    TransportError,
    UploadError,
)
from automanual.models import AssetState, RemoteAsset, SourceVideo, StepCandidate

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE_PATH = Path(__file__).parent / "prompts" / "step_extraction.txt"
MIN_POLL_INTERVAL_SECONDS = 2.0
RATE_LIMIT_STATUS = 429
RATE_LIMIT_MARKER = "RESOURCE_EXHAUSTED"
UPLOAD_URL_HEADER = "x-goog-upload-url"

SERVICE_STATES = {
    "STATE_UNSPECIFIED": AssetState.PROCESSING,
    "PROCESSING": AssetState.PROCESSING,
    "ACTIVE": AssetState.READY,
    "FAILED": AssetState.FAILED,
}


@dataclass(slots=True)
class HttpResponse:
    status: int
    headers: dict[str, str]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text())


def _http_request(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    body: bytes | None = None,
    timeout: float | None,
) -> HttpResponse:
    """Send one request; non-2xx statuses are returned, transport failures raised.

    ``timeout=None`` blocks without a client-side limit.
    """

    req = request.Request(url, data=body, method=method, headers=headers or {})
    try:
        with request.urlopen(req, timeout=timeout) as response:
            return HttpResponse(
                status=response.status,
                headers={key.lower(): value for key, value in response.headers.items()},
                body=response.read(),
            )
    except HTTPError as exc:
        return HttpResponse(
            status=exc.code,
            headers={key.lower(): value for key, value in (exc.headers or {}).items()},
            body=exc.read() or b"",
        )
    except (URLError, TimeoutError, OSError) as exc:
        raise TransportError(f"{method} {url.split('?', 1)[0]} failed: {exc}") from exc


class RemoteAnalysisClient:
    """Drives the upload -> poll -> generate -> delete cycle for one video at a time."""

    def __init__(
        self,
        settings: AnalysisSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not settings.api_key:
            raise ConfigurationError(
                "No analysis API key configured. Set GEMINI_API_KEY or AUTOMANUAL_ANALYSIS__API_KEY."
            )
        self._settings = settings
        self._sleep = sleep

    def analyze(self, video: SourceVideo) -> list[StepCandidate]:
        logger.info("Analyzing %s (%s)", video.display_name, video.mime_type)
        with self.uploaded_asset(video) as asset:
            self.wait_until_ready(asset)
            response_text = self.generate(asset)

        candidates = parse_step_candidates(response_text)
        logger.info("Received %d step candidates for %s", len(candidates), video.display_name)
        return candidates

    @contextmanager
    def uploaded_asset(self, video: SourceVideo) -> Iterator[RemoteAsset]:
        """Upload ``video`` and delete the remote copy on every exit path."""

        asset = self.upload(video)
        try:
            yield asset
        finally:
            self.delete(asset)

    def upload(self, video: SourceVideo) -> RemoteAsset:
        payload = video.read_bytes()
        logger.info("Uploading %s (%.2f MB)", video.display_name, len(payload) / 1024 / 1024)
        session_url = self._start_upload_session(video, num_bytes=len(payload))
        asset = self._transfer(session_url, payload, mime_type=video.mime_type)
        logger.info("Uploaded %s as %s (%s)", video.display_name, asset.name, asset.state.value)
        return asset

    def wait_until_ready(self, asset: RemoteAsset) -> RemoteAsset:
        interval = max(self._settings.poll_interval_seconds, MIN_POLL_INTERVAL_SECONDS)
        while asset.state in (AssetState.UPLOADING, AssetState.PROCESSING):
            logger.debug("Remote asset %s still processing; checking again in %.1fs", asset.name, interval)
            self._sleep(interval)
            asset.state = self.fetch_state(asset)

        if asset.state is AssetState.FAILED:
            raise RemoteProcessingError(f"Remote processing failed for {asset.name}.")
        return asset

    def fetch_state(self, asset: RemoteAsset) -> AssetState:
        response = _http_request(
            "GET",
            f"{self._settings.base_url.rstrip('/')}/{asset.name}",
            headers={**self._auth_headers(), "Cache-Control": "no-cache"},
            timeout=self._settings.request_timeout_seconds,
        )
        if not response.ok:
            raise TransportError(f"Status check for {asset.name} failed: {response.status} {response.text()[:500]}")
        try:
            return _asset_state(response.json().get("state"))
        except (json.JSONDecodeError, AttributeError) as exc:
            raise TransportError(f"Status check for {asset.name} returned an unreadable body.") from exc

    def generate(self, asset: RemoteAsset) -> str:
        """Request the step list, retrying only while the service reports rate limiting."""

        url = f"{self._settings.base_url.rstrip('/')}/models/{self._settings.model}:generateContent"
        body = json.dumps(self._generation_payload(asset)).encode("utf-8")
        max_attempts = self._settings.max_retries

        for attempt in range(max_attempts):
            if attempt > 0:
                delay = (2**attempt) * self._settings.retry_base_delay_seconds
                logger.warning(
                    "Generation rate limited; retrying in %.1fs (attempt %d/%d)",
                    delay,
                    attempt + 1,
                    max_attempts,
                )
                self._sleep(delay)

            response = _http_request(
                "POST",
                url,
                headers={**self._auth_headers(), "Content-Type": "application/json"},
                body=body,
                timeout=self._settings.request_timeout_seconds,
            )
            if _is_rate_limited(response):
                continue
            if not response.ok:
                raise AnalysisError(f"Generation failed: {response.status} {response.text()[:500]}")
            try:
                return _response_text(response.json())
            except (json.JSONDecodeError, AttributeError) as exc:
                raise AnalysisError("Generation returned an unreadable envelope.") from exc

        raise RateLimitError(f"Generation still rate limited after {max_attempts} attempts.")

    def delete(self, asset: RemoteAsset) -> None:
        """Best-effort removal of the uploaded asset; failures are only logged."""

        try:
            response = _http_request(
                "DELETE",
                f"{self._settings.base_url.rstrip('/')}/{asset.name}",
                headers=self._auth_headers(),
                timeout=self._settings.request_timeout_seconds,
            )
        except TransportError as exc:
            logger.warning("Failed to delete remote asset %s: %s", asset.name, exc)
            return
        if not response.ok:
            logger.warning("Failed to delete remote asset %s: %s %s", asset.name, response.status, response.text()[:200])
            return
        logger.debug("Deleted remote asset %s", asset.name)

    def _start_upload_session(self, video: SourceVideo, *, num_bytes: int) -> str:
        response = _http_request(
            "POST",
            self._settings.upload_url,
            headers={
                **self._auth_headers(),
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(num_bytes),
                "X-Goog-Upload-Header-Content-Type": video.mime_type,
                "Content-Type": "application/json",
            },
            body=json.dumps({"file": {"display_name": video.display_name}}).encode("utf-8"),
            timeout=self._settings.request_timeout_seconds,
        )
        if not response.ok:
            raise UploadError(f"Resumable upload init failed: {response.status} {response.text()[:500]}")

        upload_url = response.headers.get(UPLOAD_URL_HEADER)
        if not upload_url:
            raise UploadError("Upload session response did not include an upload URL.")
        return upload_url

    def _transfer(self, session_url: str, payload: bytes, *, mime_type: str) -> RemoteAsset:
        try:
            response = _http_request(
                "POST",
                session_url,
                headers={
                    "Content-Length": str(len(payload)),
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                body=payload,
                timeout=None,
            )
        except TransportError as exc:
            raise UploadError(f"File content upload failed: {exc}") from exc

        if not response.ok:
            raise UploadError(f"File content upload failed: {response.status} {response.text()[:500]}")

        try:
            file_info = response.json()["file"]
            return RemoteAsset(
                uri=str(file_info["uri"]),
                name=str(file_info["name"]),
                state=_asset_state(file_info.get("state", "PROCESSING")),
                mime_type=mime_type,
            )
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise UploadError("Upload response did not describe the uploaded file.") from exc

    def _generation_payload(self, asset: RemoteAsset) -> dict[str, Any]:
        prompt = PROMPT_TEMPLATE_PATH.read_text(encoding="utf-8").strip()
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"file_data": {"file_uri": asset.uri, "mime_type": asset.mime_type}},
                        {"text": prompt},
                    ],
                }
            ],
            "generationConfig": {
                "responseMimeType": "application/json",
                "temperature": self._settings.temperature,
            },
        }

    def _auth_headers(self) -> dict[str, str]:
        return {"x-goog-api-key": str(self._settings.api_key)}


def _asset_state(raw_state: Any) -> AssetState:
    state = SERVICE_STATES.get(str(raw_state or "STATE_UNSPECIFIED").upper())
    if state is None:
        raise RemoteProcessingError(f"Remote asset reported an unknown state: {raw_state!r}")
    return state


def _is_rate_limited(response: HttpResponse) -> bool:
    if response.status == RATE_LIMIT_STATUS:
        return True
    return not response.ok and RATE_LIMIT_MARKER in response.text()


def _response_text(payload: dict[str, Any]) -> str:
    candidates = payload.get("candidates") or []
    if not candidates:
        return "[]"
    parts = (candidates[0].get("content") or {}).get("parts") or []
    texts = [part["text"] for part in parts if isinstance(part.get("text"), str) and not part.get("thought")]
    return "".join(texts) or "[]"
