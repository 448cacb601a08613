from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "AUTOMANUAL_"


class PipelineSettings(BaseModel):
    output_dir: Path = Path("data/manuals")
    cache_dir: Path = Path("data/cache")
    batch_size: int = Field(default=4, ge=1)
    fail_fast: bool = False


class ProxySettings(BaseModel):
    enabled: bool = True
    max_dimension: int = Field(default=1280, ge=2)
    fps: int = Field(default=10, ge=1)
    keyframe_interval_seconds: int = Field(default=2, ge=1)
    bit_rate: int = 1_000_000
    seek_timeout_seconds: float = 1.0
    encoders: list[str] = Field(
        default_factory=lambda: [
            "h264_videotoolbox",
            "h264_nvenc",
            "h264_qsv",
            "libx264",
        ]
    )


class AnalysisSettings(BaseModel):
    api_key: str | None = None
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    upload_url: str = "https://generativelanguage.googleapis.com/upload/v1beta/files"
    model: str = "gemini-2.5-flash"
    temperature: float = 0.1
    poll_interval_seconds: float = 2.0
    request_timeout_seconds: int = 600
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = 1.0


class ExtractionSettings(BaseModel):
    seek_offset_seconds: float = 0.5
    seek_timeout_seconds: float = 5.0
    smart_crop: bool = True


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Path | None = None


class Settings(BaseModel):
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides.

    A missing config file is not an error: defaults apply and environment
    overrides are still honoured.
    """

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    raw_config: dict[str, Any] = {}
    if resolved_path.exists():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if existing_value is None:
        return raw_value or None
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
