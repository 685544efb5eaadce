# core/errors.py
"""Exception taxonomy for the analysis pipeline."""
from typing import Optional


class PipelineError(Exception):
    """Base for every error raised by a pipeline stage."""


class ValidationError(PipelineError):
    """Empty input or no active session. Callers treat this as a no-op."""


class AnalysisCancelled(PipelineError):
    """Raised when a run's cancellation token is signalled."""

    def __init__(self, message: str = "Analysis cancelled by user"):
        super().__init__(message)


class ServiceError(PipelineError):
    """Non-2xx response or transport failure from an external service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (HTTP {self.status_code})" if self.status_code else base


class AnalysisServiceError(ServiceError):
    pass


class UploadError(ServiceError):
    pass


class TaskCreationError(ServiceError):
    pass


class VisionAnalysisError(ServiceError):
    pass


class ConversionError(ServiceError):
    """Format conversion failed; the upload adapter falls back to the original media."""
