from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from event_atlas.domain.imports.schedules import FREQUENCIES, SCHEDULE_TYPES


class ImportFileInfo(BaseModel):
    """Metadata about a stored source file."""
    id: str
    user_id: Optional[int] = None
    file_name: str
    source_url: Optional[str] = None
    storage_locator: Optional[str] = None
    file_size: Optional[int] = None
    content_type: Optional[str] = None
    content_hash: Optional[str] = None
    sheet_names: Optional[List[str]] = None
    column_names: Optional[List[str]] = None
    column_types: Optional[Dict[str, str]] = None
    sample_rows: Optional[List[Dict[str, Any]]] = None
    row_count: Optional[int] = None
    parse_status: str
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ImportJobInfo(BaseModel):
    """Progress of one import job; ``stage`` is what the worker observed, ``requested_status`` what the user asked for."""
    id: str
    user_id: Optional[int] = None
    import_file_id: Optional[str] = None
    field_mapping_id: Optional[str] = None
    scheduled_import_id: Optional[str] = None
    stage: str
    requested_status: Optional[str] = None
    trigger_source: Optional[str] = None
    attempts: int = 0
    run_after: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    rows_total: Optional[int] = None
    rows_processed: int = 0
    rows_succeeded: int = 0
    rows_failed: int = 0
    rows_skipped: int = 0
    checkpoint: int = 0
    mapping_warnings: Optional[List[Dict[str, Any]]] = None
    geocoding_summary: Optional[Dict[str, Any]] = None
    duplicates: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_log: Optional[List[Dict[str, Any]]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportFileResponse(BaseModel):
    success: bool
    file: ImportFileInfo


class ImportCreatedResponse(BaseModel):
    """Response for uploads and URL imports: the stored file plus the job processing it."""
    success: bool
    file: ImportFileInfo
    job: ImportJobInfo


class ImportFromUrlRequest(BaseModel):
    url: str
    file_name: Optional[str] = None
    field_mapping_id: Optional[str] = None

    @field_validator("url")
    def validate_url(cls, value: str) -> str:
        value = value.strip()
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("url must be an http(s) URL")
        return value


class ImportJobResponse(BaseModel):
    success: bool
    job: ImportJobInfo


class ImportJobListResponse(BaseModel):
    success: bool
    jobs: List[ImportJobInfo]
    total_count: int
    limit: int
    offset: int


class EventInfo(BaseModel):
    id: str
    import_job_id: str
    row_number: int
    title: Optional[str] = None
    event_timestamp: Optional[datetime] = None
    data: Dict[str, Any]
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    coordinate_source: str
    coordinate_confidence: Optional[float] = None
    normalized_address: Optional[str] = None
    validation_status: str
    validation_errors: Optional[List[Dict[str, Any]]] = None
    unique_id: Optional[str] = None
    is_duplicate: bool = False
    created_at: Optional[datetime] = None


class EventListResponse(BaseModel):
    success: bool
    events: List[EventInfo]
    total_count: int
    limit: int
    offset: int


class FieldMappingCreateRequest(BaseModel):
    name: Optional[str] = None
    graph: Dict[str, Any]
    import_file_id: Optional[str] = None
    id_strategy: Optional[Dict[str, Any]] = None
    deduplication: str = "disabled"


class FieldMappingValidateRequest(BaseModel):
    graph: Dict[str, Any]
    column_types: Optional[Dict[str, str]] = None
    import_file_id: Optional[str] = None


class FieldMappingInfo(BaseModel):
    id: str
    user_id: Optional[int] = None
    name: Optional[str] = None
    graph: Dict[str, Any]
    id_strategy: Optional[Dict[str, Any]] = None
    deduplication: str = "disabled"
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FieldMappingResponse(BaseModel):
    success: bool
    mapping: FieldMappingInfo
    warnings: List[Dict[str, Any]] = Field(default_factory=list)


class FieldMappingValidationResponse(BaseModel):
    success: bool
    valid: bool
    entries: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    issues: List[Dict[str, Any]] = Field(default_factory=list)


class ScheduledImportCreateRequest(BaseModel):
    name: str
    source_url: str
    schedule_type: str = "frequency"
    frequency: Optional[str] = "daily"
    cron_expression: Optional[str] = None
    field_mapping_id: Optional[str] = None
    enabled: bool = True
    webhook_enabled: bool = False

    @field_validator("schedule_type")
    def validate_schedule_type(cls, value: str) -> str:
        if value not in SCHEDULE_TYPES:
            raise ValueError(f"schedule_type must be one of {list(SCHEDULE_TYPES)}")
        return value

    @field_validator("frequency")
    def validate_frequency(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in FREQUENCIES:
            raise ValueError(f"frequency must be one of {list(FREQUENCIES)}")
        return value


class ScheduledImportUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    webhook_enabled: Optional[bool] = None


class ScheduledImportInfo(BaseModel):
    id: str
    user_id: int
    name: str
    source_url: str
    field_mapping_id: Optional[str] = None
    enabled: bool
    schedule_type: str
    frequency: Optional[str] = None
    cron_expression: Optional[str] = None
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    last_job_id: Optional[str] = None
    run_count: int = 0
    webhook_enabled: bool = False
    webhook_token: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ScheduledImportResponse(BaseModel):
    success: bool
    schedule: ScheduledImportInfo


class ScheduledImportListResponse(BaseModel):
    success: bool
    schedules: List[ScheduledImportInfo]


class ScheduledImportTriggerResponse(BaseModel):
    success: bool
    schedule: ScheduledImportInfo
    job: ImportJobInfo


class WebhookTriggerResponse(BaseModel):
    """``status`` is ``triggered`` with the new job id, or ``skipped`` while the previous run is still going."""
    success: bool
    status: str
    message: str
    job_id: Optional[str] = None
