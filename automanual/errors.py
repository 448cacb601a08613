from __future__ import annotations


class AutomanualError(RuntimeError):
    """Base class for failures raised by the manual pipeline."""


class ConfigurationError(AutomanualError):
    """Missing credentials or unusable settings, detected before any work starts."""


class AnalysisError(AutomanualError):
    """Aborts remote analysis for a single video."""


class UploadError(AnalysisError):
    pass


class TransportError(AnalysisError):
    pass


class RemoteProcessingError(AnalysisError):
    pass


class RateLimitError(AnalysisError):
    pass


class ResponseParseError(AnalysisError, ValueError):
    pass


class FrameExtractionError(AutomanualError):
    """A single frame could not be captured; only that step is dropped."""
