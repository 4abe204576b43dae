from typing import List

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./event_atlas.db"
    debug: bool = True
    log_level: str = "INFO"
    log_sql: bool = False

    # Authentication
    secret_key: str = "your-secret-key-change-in-production"
    access_token_expire_minutes: int = 60 * 24

    # Storage: "local" writes under storage_local_dir, anything else uses the
    # S3-compatible API (Backblaze B2, AWS S3, MinIO, ...)
    storage_provider: str = "local"
    storage_local_dir: str = "./storage"
    storage_endpoint_url: str = ""
    storage_access_key_id: str = ""
    storage_secret_access_key: str = ""
    storage_bucket_name: str = ""
    storage_region: str = "us-west-004"
    storage_max_retries: int = 3

    # Parsing
    upload_max_file_size_mb: int = 100
    preview_row_limit: int = 10
    type_inference_sample_size: int = 500
    date_default_dayfirst: bool = False

    # Geocoding
    geocoding_enabled: bool = True
    geocoding_fallback_enabled: bool = True
    geocoding_provider_strategy: str = "priority"  # "priority" or "tag-based"
    geocoding_required_tags: List[str] = []
    geocoding_cache_enabled: bool = True
    geocoding_cache_ttl_days: int = 30
    geocoding_request_timeout_seconds: float = 10.0
    geocoding_max_concurrency: int = 4
    geocoding_heartbeat_batch_size: int = 25
    geocoding_min_confidence: float = 0.0
    geocoding_google_api_key: str = ""
    geocoding_opencage_api_key: str = ""
    geocoding_nominatim_base_url: str = "https://nominatim.openstreetmap.org"
    geocoding_user_agent: str = "EventAtlas/1.0"
    provider_config_ttl_seconds: int = 60

    # Import jobs and worker
    job_max_retries: int = 3
    job_retry_backoff_seconds: int = 30
    job_claim_lease_seconds: int = 900
    worker_batch_limit: int = 5
    worker_poll_interval_seconds: float = 5.0
    worker_maintenance_interval_seconds: int = 3600
    event_batch_size: int = 100
    enable_run_jobs_endpoint: bool = True
    url_fetch_timeout_seconds: int = 30
    url_fetch_max_bytes: int = 100 * 1024 * 1024
    url_fetch_cache_ttl_seconds: int = 3600
    import_file_retention_days: int = 30
    stuck_schedule_timeout_minutes: int = 120

    # Webhook triggers: at most one call per burst window and a cap per hour, per token
    webhook_burst_window_seconds: int = 10
    webhook_hourly_limit: int = 5

    # Quotas
    default_trust_level: int = 2
    quota_config_ttl_seconds: int = 60

    model_config = ConfigDict(env_file=".env", extra="ignore")


settings = Settings()
