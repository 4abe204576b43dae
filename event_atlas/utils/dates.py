"""
Date parsing utilities for flexible date format handling.

Source files carry dates in every imaginable shape. Values are parsed with
pandas and normalised to timezone-naive UTC ``datetime`` objects, which is
how timestamps are stored on Events.
"""

import logging
import re
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

from event_atlas.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}

_NUMERIC_DATE = re.compile(r'^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}')


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """Collect failure stats and emit sampled warnings plus periodic summaries."""
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.debug("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and pd.isna(value):
        return True
    return isinstance(value, str) and value.strip() == ""


def parse_flexible_date(
    value: Any,
    *,
    input_format: Optional[str] = None,
    log_context: Optional[str] = None,
    log_failures: bool = True,
) -> Optional[datetime]:
    """
    Parse a date value from various formats into a naive UTC datetime.

    Supports ISO 8601, DD/MM/YYYY and MM/DD/YYYY (day-first is chosen when the
    first part cannot be a month), YYYY-MM-DD and anything else pandas can
    infer. When ``input_format`` is given it is applied strictly.

    Returns:
        ``datetime`` without tzinfo, or None if parsing fails
    """
    if _is_missing(value):
        return None

    if isinstance(value, datetime):
        dt = pd.Timestamp(value)
        return _to_naive_utc(dt)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, bool):
        return None

    if isinstance(value, str):
        value = value.strip()

    parse_attempts = []

    if input_format:
        parse_attempts.append(
            ("explicit", lambda v: pd.Timestamp(datetime.strptime(str(v), input_format)))
        )
    else:
        if isinstance(value, str):
            numeric_match = _NUMERIC_DATE.match(value)
            if numeric_match:
                parts = re.split(r'[/-]', numeric_match.group(0))
                try:
                    first = int(parts[0])
                    second = int(parts[1])
                except ValueError:
                    first = second = -1

                if first > 12 and second <= 31:
                    dayfirst_preferred = True
                elif second > 12 and first <= 12:
                    dayfirst_preferred = False
                else:
                    dayfirst_preferred = settings.date_default_dayfirst

                parse_attempts.append((
                    "dayfirst" if dayfirst_preferred else "monthfirst",
                    lambda v, df=dayfirst_preferred: pd.to_datetime(v, utc=True, dayfirst=df, errors='raise'),
                ))
                alternate = not dayfirst_preferred
                parse_attempts.append((
                    "alternate",
                    lambda v, df=alternate: pd.to_datetime(v, utc=True, dayfirst=df, errors='raise'),
                ))

        if isinstance(value, (int, float)):
            # Bare numbers are not dates (pandas would read them as epoch nanoseconds)
            parse_attempts = []
        else:
            parse_attempts.append(("default", lambda v: pd.to_datetime(v, utc=True, errors='raise')))

    dt = None
    last_error: Optional[Exception] = None
    for _attempt_name, attempt in parse_attempts:
        try:
            dt = attempt(value)
            break
        except Exception as exc:
            last_error = exc
            continue

    if dt is None or pd.isna(dt):
        if log_failures:
            _record_parse_failure(value, log_context, last_error or ValueError("Unable to determine format"))
        return None

    return _to_naive_utc(dt)


def _to_naive_utc(dt: pd.Timestamp) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.tz_convert('UTC').tz_localize(None)
    return dt.to_pydatetime()


def looks_like_date(value: Any) -> bool:
    """True when a non-numeric value parses as a date."""
    if isinstance(value, (int, float, bool)):
        return False
    if isinstance(value, (datetime, date)):
        return True
    text = str(value).strip()
    # Require at least one separator so plain words are not treated as dates.
    if not re.search(r'[-/.:T ]', text) or not re.search(r'\d', text):
        return False
    return parse_flexible_date(text, log_failures=False) is not None
