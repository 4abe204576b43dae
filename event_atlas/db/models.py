"""
ORM models for the import pipeline.

All timestamps are timezone-naive UTC supplied by the application clock so
that PostgreSQL and SQLite behave identically.
"""
import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from event_atlas.db.session import Base
from event_atlas.utils.clock import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class JobStage(str, Enum):
    FETCHING = "fetching"
    PARSING = "parsing"
    DETECTING_SCHEMA = "detecting-schema"
    MAPPING = "mapping"
    GEOCODING = "geocoding"
    VALIDATING = "validating"
    MATERIALIZING = "materializing"
    COMPLETED = "completed"
    FAILED = "failed"


STAGE_ORDER = [
    JobStage.FETCHING,
    JobStage.PARSING,
    JobStage.DETECTING_SCHEMA,
    JobStage.MAPPING,
    JobStage.GEOCODING,
    JobStage.VALIDATING,
    JobStage.MATERIALIZING,
    JobStage.COMPLETED,
]

TERMINAL_STAGES = {JobStage.COMPLETED.value, JobStage.FAILED.value}


class ParseStatus(str, Enum):
    PENDING = "pending"
    PARSING = "parsing"
    READY = "ready"
    FAILED = "failed"


class CoordinateSource(str, Enum):
    IMPORT = "import"
    GEOCODED = "geocoded"
    NONE = "none"


class ValidationStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    TRANSFORMED = "transformed"


class ImportFile(Base):
    __tablename__ = "import_files"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(Integer, nullable=True, index=True)
    file_name = Column(String(500), nullable=False)
    source_url = Column(Text, nullable=True)
    storage_locator = Column(String(1000), nullable=True)
    file_size = Column(Integer, nullable=True)
    content_type = Column(String(100), nullable=True)
    content_hash = Column(String(64), nullable=True)
    sheet_names = Column(JSON, nullable=True)
    column_names = Column(JSON, nullable=True)
    column_types = Column(JSON, nullable=True)
    sample_rows = Column(JSON, nullable=True)
    row_count = Column(Integer, nullable=True)
    parse_status = Column(String(20), nullable=False, default=ParseStatus.PENDING.value)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class FieldMapping(Base):
    __tablename__ = "field_mappings"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(Integer, nullable=True, index=True)
    name = Column(String(255), nullable=True)
    graph = Column(JSON, nullable=False)
    id_strategy = Column(JSON, nullable=True)
    deduplication = Column(String(20), nullable=False, default="disabled")
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class ScheduledImport(Base):
    __tablename__ = "scheduled_imports"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    source_url = Column(Text, nullable=False)
    field_mapping_id = Column(String(36), ForeignKey("field_mappings.id"), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    schedule_type = Column(String(20), nullable=False, default="frequency")
    frequency = Column(String(20), nullable=True)
    cron_expression = Column(String(100), nullable=True)
    last_run = Column(DateTime, nullable=True)
    next_run = Column(DateTime, nullable=True)
    last_status = Column(String(20), nullable=True)
    last_error = Column(Text, nullable=True)
    last_job_id = Column(String(36), nullable=True)
    run_count = Column(Integer, nullable=False, default=0)
    webhook_enabled = Column(Boolean, nullable=False, default=False)
    webhook_token = Column(String(64), nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class ImportJob(Base):
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(Integer, nullable=True, index=True)
    import_file_id = Column(String(36), ForeignKey("import_files.id", ondelete="SET NULL"), nullable=True)
    field_mapping_id = Column(String(36), ForeignKey("field_mappings.id"), nullable=True)
    scheduled_import_id = Column(String(36), ForeignKey("scheduled_imports.id"), nullable=True)
    stage = Column(String(30), nullable=False, default=JobStage.FETCHING.value)
    requested_status = Column(String(30), nullable=True)
    trigger_source = Column(String(30), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    run_after = Column(DateTime, nullable=True)
    claimed_by = Column(String(100), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    rows_total = Column(Integer, nullable=True)
    rows_processed = Column(Integer, nullable=False, default=0)
    rows_succeeded = Column(Integer, nullable=False, default=0)
    rows_failed = Column(Integer, nullable=False, default=0)
    rows_skipped = Column(Integer, nullable=False, default=0)
    checkpoint = Column(Integer, nullable=False, default=0)
    resolved_mapping = Column(JSON, nullable=True)
    mapping_warnings = Column(JSON, nullable=True)
    geocoding_summary = Column(JSON, nullable=True)
    duplicates = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    error_log = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_import_jobs_stage_run_after", "stage", "run_after"),
    )


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=new_id)
    import_job_id = Column(String(36), ForeignKey("import_jobs.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    row_number = Column(Integer, nullable=False)
    title = Column(Text, nullable=True)
    event_timestamp = Column(DateTime, nullable=True)
    data = Column(JSON, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    coordinate_source = Column(String(20), nullable=False, default=CoordinateSource.NONE.value)
    coordinate_confidence = Column(Float, nullable=True)
    normalized_address = Column(Text, nullable=True)
    validation_status = Column(String(20), nullable=False)
    validation_errors = Column(JSON, nullable=True)
    schema_version_number = Column(Integer, nullable=False, default=1)
    unique_id = Column(String(300), nullable=True)
    is_duplicate = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("import_job_id", "row_number", name="uq_events_job_row"),
        Index("idx_events_user_unique_id", "user_id", "unique_id"),
    )


class GeocodeCacheEntry(Base):
    __tablename__ = "geocode_cache"

    normalized_address = Column(String(1000), primary_key=True)
    original_address = Column(Text, nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    provider = Column(String(100), nullable=False)
    formatted_address = Column(Text, nullable=True)
    components = Column(JSON, nullable=True)
    hit_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    last_used_at = Column(DateTime, nullable=True)


class GeocodingProviderRecord(Base):
    __tablename__ = "geocoding_providers"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False, unique=True)
    type = Column(String(30), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=10)
    tags = Column(JSON, nullable=True)
    config = Column(JSON, nullable=True)
    timeout_seconds = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class UserUsage(Base):
    __tablename__ = "user_usage"

    user_id = Column(Integer, primary_key=True)
    current_active_schedules = Column(Integer, nullable=False, default=0)
    url_fetches_today = Column(Integer, nullable=False, default=0)
    file_uploads_today = Column(Integer, nullable=False, default=0)
    import_jobs_today = Column(Integer, nullable=False, default=0)
    total_events_created = Column(Integer, nullable=False, default=0)
    last_reset_date = Column(Date, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
