"""Quota limits by trust level and the usage counters they are checked against."""
from typing import Dict, Optional

UNLIMITED = -1

TRUST_LEVELS = {
    "untrusted": 0,
    "basic": 1,
    "regular": 2,
    "trusted": 3,
    "power_user": 4,
    "unlimited": 5,
}

MAX_ACTIVE_SCHEDULES = "max_active_schedules"
MAX_URL_FETCHES_PER_DAY = "max_url_fetches_per_day"
MAX_FILE_UPLOADS_PER_DAY = "max_file_uploads_per_day"
MAX_IMPORT_JOBS_PER_DAY = "max_import_jobs_per_day"
MAX_EVENTS_PER_IMPORT = "max_events_per_import"
MAX_TOTAL_EVENTS = "max_total_events"
MAX_FILE_SIZE_MB = "max_file_size_mb"

QUOTA_TYPES = (
    MAX_ACTIVE_SCHEDULES,
    MAX_URL_FETCHES_PER_DAY,
    MAX_FILE_UPLOADS_PER_DAY,
    MAX_IMPORT_JOBS_PER_DAY,
    MAX_EVENTS_PER_IMPORT,
    MAX_TOTAL_EVENTS,
    MAX_FILE_SIZE_MB,
)

CURRENT_ACTIVE_SCHEDULES = "current_active_schedules"
URL_FETCHES_TODAY = "url_fetches_today"
FILE_UPLOADS_TODAY = "file_uploads_today"
IMPORT_JOBS_TODAY = "import_jobs_today"
TOTAL_EVENTS_CREATED = "total_events_created"

USAGE_TYPES = (
    CURRENT_ACTIVE_SCHEDULES,
    URL_FETCHES_TODAY,
    FILE_UPLOADS_TODAY,
    IMPORT_JOBS_TODAY,
    TOTAL_EVENTS_CREATED,
)

DAILY_USAGE_TYPES = (URL_FETCHES_TODAY, FILE_UPLOADS_TODAY, IMPORT_JOBS_TODAY)

# Quota -> usage counter it is compared with. Per-request quotas (events
# per import, file size) compare the requested amount instead.
QUOTA_USAGE: Dict[str, Optional[str]] = {
    MAX_ACTIVE_SCHEDULES: CURRENT_ACTIVE_SCHEDULES,
    MAX_URL_FETCHES_PER_DAY: URL_FETCHES_TODAY,
    MAX_FILE_UPLOADS_PER_DAY: FILE_UPLOADS_TODAY,
    MAX_IMPORT_JOBS_PER_DAY: IMPORT_JOBS_TODAY,
    MAX_TOTAL_EVENTS: TOTAL_EVENTS_CREATED,
    MAX_EVENTS_PER_IMPORT: None,
    MAX_FILE_SIZE_MB: None,
}

DEFAULT_QUOTAS: Dict[int, Dict[str, int]] = {
    0: {
        MAX_ACTIVE_SCHEDULES: 0,
        MAX_URL_FETCHES_PER_DAY: 0,
        MAX_FILE_UPLOADS_PER_DAY: 1,
        MAX_EVENTS_PER_IMPORT: 100,
        MAX_TOTAL_EVENTS: 100,
        MAX_IMPORT_JOBS_PER_DAY: 1,
        MAX_FILE_SIZE_MB: 1,
    },
    1: {
        MAX_ACTIVE_SCHEDULES: 1,
        MAX_URL_FETCHES_PER_DAY: 5,
        MAX_FILE_UPLOADS_PER_DAY: 3,
        MAX_EVENTS_PER_IMPORT: 1000,
        MAX_TOTAL_EVENTS: 5000,
        MAX_IMPORT_JOBS_PER_DAY: 5,
        MAX_FILE_SIZE_MB: 10,
    },
    2: {
        MAX_ACTIVE_SCHEDULES: 5,
        MAX_URL_FETCHES_PER_DAY: 20,
        MAX_FILE_UPLOADS_PER_DAY: 10,
        MAX_EVENTS_PER_IMPORT: 10000,
        MAX_TOTAL_EVENTS: 50000,
        MAX_IMPORT_JOBS_PER_DAY: 20,
        MAX_FILE_SIZE_MB: 50,
    },
    3: {
        MAX_ACTIVE_SCHEDULES: 20,
        MAX_URL_FETCHES_PER_DAY: 100,
        MAX_FILE_UPLOADS_PER_DAY: 50,
        MAX_EVENTS_PER_IMPORT: 50000,
        MAX_TOTAL_EVENTS: 500000,
        MAX_IMPORT_JOBS_PER_DAY: 100,
        MAX_FILE_SIZE_MB: 100,
    },
    4: {
        MAX_ACTIVE_SCHEDULES: 100,
        MAX_URL_FETCHES_PER_DAY: 500,
        MAX_FILE_UPLOADS_PER_DAY: 200,
        MAX_EVENTS_PER_IMPORT: 200000,
        MAX_TOTAL_EVENTS: 2000000,
        MAX_IMPORT_JOBS_PER_DAY: 500,
        MAX_FILE_SIZE_MB: 500,
    },
    5: {
        MAX_ACTIVE_SCHEDULES: UNLIMITED,
        MAX_URL_FETCHES_PER_DAY: UNLIMITED,
        MAX_FILE_UPLOADS_PER_DAY: UNLIMITED,
        MAX_EVENTS_PER_IMPORT: UNLIMITED,
        MAX_TOTAL_EVENTS: UNLIMITED,
        MAX_IMPORT_JOBS_PER_DAY: UNLIMITED,
        MAX_FILE_SIZE_MB: 1000,
    },
}
