from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from automanual.ingest.media_types import normalize_mime_type


@dataclass(frozen=True, slots=True)
class SourceVideo:
    """An input video supplied by the caller. Never mutated by the pipeline."""

    path: Path
    mime_type: str
    display_name: str

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str | None = None) -> SourceVideo:
        resolved = Path(path).expanduser().resolve()
        return cls(
            path=resolved,
            mime_type=normalize_mime_type(mime_type, resolved.name),
            display_name=resolved.name,
        )

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


class AssetState(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


@dataclass(slots=True)
class RemoteAsset:
    """Service-side handle to an uploaded video."""

    uri: str
    name: str
    state: AssetState
    mime_type: str


@dataclass(slots=True)
class StepCandidate:
    """One action reported by the analysis service, before a frame is attached."""

    index: int
    timestamp: str
    action: str
    reason: str = ""
    label: str = ""
    box_2d: list[int] | None = None


@dataclass(slots=True)
class StillImage:
    data: bytes
    width: int
    height: int
    media_type: str = "image/png"


@dataclass(slots=True)
class ManualStep:
    """A finished, illustrated step of the manual."""

    step_number: int
    video_step_number: int
    action: str
    detail: str
    timestamp: str
    image: StillImage
    uid: str
    video_index: int
    box_2d: list[int] | None = None
    label: str = ""
    display_image: StillImage | None = None


@dataclass(slots=True)
class VideoFailure:
    video_index: int
    display_name: str
    message: str


@dataclass(slots=True)
class Manual:
    title: str
    overview: str
    steps: list[ManualStep] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    failures: list[VideoFailure] = field(default_factory=list)
