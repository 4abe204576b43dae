"""
Error taxonomy for the import pipeline.

Stage-scoped errors either retry (``retryable=True``) or move the import job
to ``failed`` with the message persisted on the job. Row-scoped errors never
leave the stage: they are attached to the Event produced for that row.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    """Base class for errors raised while advancing an import job."""

    retryable = False
    error_type = "pipeline_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_log_entry(self) -> Dict[str, Any]:
        return {"type": self.error_type, "message": self.message}


class ParseError(PipelineError):
    """Raised when a source file is malformed or unreadable."""

    error_type = "parse_error"


class MappingValidationError(PipelineError):
    """Raised when a field-mapping graph cannot be resolved."""

    error_type = "mapping_validation_error"

    def __init__(self, issues: List[Dict[str, Any]], message: Optional[str] = None):
        self.issues = issues
        summary = "; ".join(issue["message"] for issue in issues) if issues else "invalid mapping"
        super().__init__(message or f"Field mapping is invalid: {summary}")

    def to_log_entry(self) -> Dict[str, Any]:
        entry = super().to_log_entry()
        entry["issues"] = self.issues
        return entry


class GeocodingProviderError(PipelineError):
    """Raised when a geocoding provider (or the whole chain) fails."""

    retryable = True
    error_type = "geocoding_provider_error"

    def __init__(self, message: str, provider: Optional[str] = None, reason: str = "error"):
        self.provider = provider
        self.reason = reason
        super().__init__(message)


class TransientStageError(PipelineError):
    """Network or provider hiccup; the stage is retried with backoff."""

    retryable = True
    error_type = "transient_error"


class JobCancelledError(PipelineError):
    """Raised when a job was failed externally while a worker held it."""

    error_type = "cancelled"


class ClaimLostError(JobCancelledError):
    """Another worker took the job over after this worker's lease ran out."""

    error_type = "claim_lost"


class RowValidationError(Exception):
    """A single row could not be turned into a valid Event."""

    def __init__(self, errors: List[Dict[str, Any]]):
        self.errors = errors
        super().__init__("; ".join(error["message"] for error in errors))


QUOTA_ERROR_MESSAGES = {
    "max_active_schedules": "Maximum active schedules reached ({current}/{limit}). Disable an existing schedule to add more.",
    "max_url_fetches_per_day": "Daily URL fetch limit reached ({current}/{limit}). Resets at midnight UTC.",
    "max_file_uploads_per_day": "Daily file upload limit reached ({current}/{limit}). Resets at midnight UTC.",
    "max_import_jobs_per_day": "Daily import job limit reached ({current}/{limit}). Resets at midnight UTC.",
    "max_events_per_import": "This import would exceed the maximum events per import ({limit}). Please reduce the import size.",
    "max_total_events": "Total events limit reached ({current}/{limit}). Contact admin for increased quota.",
    "max_file_size_mb": "File size exceeds your limit ({limit}MB). Contact admin for increased quota.",
}


class QuotaExceededError(PipelineError):
    """Raised when a quota-consuming operation is denied."""

    error_type = "quota_exceeded"
    status_code = 429

    def __init__(
        self,
        quota_type: str,
        current: int,
        limit: int,
        reset_time: Optional[datetime] = None,
    ):
        self.quota_type = quota_type
        self.current = current
        self.limit = limit
        self.reset_time = reset_time
        template = QUOTA_ERROR_MESSAGES.get(quota_type, "Quota '{quota_type}' exceeded ({current}/{limit}).")
        super().__init__(template.format(quota_type=quota_type, current=current, limit=limit))

    def to_log_entry(self) -> Dict[str, Any]:
        entry = super().to_log_entry()
        entry.update({"quota_type": self.quota_type, "current": self.current, "limit": self.limit})
        return entry
