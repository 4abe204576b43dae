"""
Tests for the per-user quota ledger.
"""
from datetime import timedelta

import pytest

from conftest import FROZEN_NOW
from event_atlas.core.errors import QuotaExceededError
from event_atlas.db.session import get_engine
from event_atlas.domain.quotas.constants import (
    CURRENT_ACTIVE_SCHEDULES,
    FILE_UPLOADS_TODAY,
    IMPORT_JOBS_TODAY,
    MAX_ACTIVE_SCHEDULES,
    MAX_FILE_SIZE_MB,
    MAX_FILE_UPLOADS_PER_DAY,
    MAX_IMPORT_JOBS_PER_DAY,
    MAX_TOTAL_EVENTS,
    TOTAL_EVENTS_CREATED,
    UNLIMITED,
)
from event_atlas.domain.quotas.ledger import QuotaLedger, QuotaSubject, next_midnight, resolve_limits


def test_resolve_limits_applies_overrides_on_trust_level_defaults():
    limits = resolve_limits(QuotaSubject(user_id=1, trust_level=1, custom_quotas={MAX_TOTAL_EVENTS: 7, "bogus": 3}))

    assert limits[MAX_TOTAL_EVENTS] == 7
    assert limits[MAX_FILE_UPLOADS_PER_DAY] == 3
    assert "bogus" not in limits


def test_usage_at_limit_is_denied(ledger, make_user):
    user = make_user(custom_quotas={MAX_FILE_UPLOADS_PER_DAY: 2})
    ledger.increment_usage(user.id, FILE_UPLOADS_TODAY, 2, now=FROZEN_NOW)

    result = ledger.check_quota(user.id, MAX_FILE_UPLOADS_PER_DAY, 1, now=FROZEN_NOW)

    assert result.allowed is False
    assert result.current == 2
    assert result.limit == 2
    assert result.remaining == 0
    assert result.reset_time == next_midnight(FROZEN_NOW)


def test_require_quota_raises_with_details(ledger, make_user):
    user = make_user(custom_quotas={MAX_IMPORT_JOBS_PER_DAY: 0})

    with pytest.raises(QuotaExceededError) as exc_info:
        ledger.require_quota(user, MAX_IMPORT_JOBS_PER_DAY, 1, now=FROZEN_NOW)

    error = exc_info.value
    assert error.status_code == 429
    assert error.quota_type == MAX_IMPORT_JOBS_PER_DAY
    assert error.limit == 0
    assert "Daily import job limit" in error.message


def test_unlimited_is_never_denied(ledger, make_user):
    user = make_user(trust_level=5)
    ledger.increment_usage(user.id, IMPORT_JOBS_TODAY, 10000, now=FROZEN_NOW)

    result = ledger.check_quota(user.id, MAX_IMPORT_JOBS_PER_DAY, 500, now=FROZEN_NOW)

    assert result.allowed is True
    assert result.limit == UNLIMITED
    assert result.remaining is None


def test_admin_bypasses_quotas(ledger, make_user):
    admin = make_user(role="admin", trust_level=0)

    assert ledger.check_quota(admin, MAX_ACTIVE_SCHEDULES, 50, now=FROZEN_NOW).allowed is True
    ledger.require_quota(admin.id, MAX_FILE_SIZE_MB, 10000, now=FROZEN_NOW)


def test_per_request_quota_compares_requested_amount(ledger, make_user):
    user = make_user(trust_level=0)

    assert ledger.check_quota(user, MAX_FILE_SIZE_MB, 1, now=FROZEN_NOW).allowed is True
    denied = ledger.check_quota(user, MAX_FILE_SIZE_MB, 2, now=FROZEN_NOW)
    assert denied.allowed is False
    assert denied.current == 2
    assert denied.reset_time is None


def test_daily_counters_reset_on_a_new_day(ledger, make_user):
    user = make_user()
    ledger.increment_usage(user.id, FILE_UPLOADS_TODAY, 3, now=FROZEN_NOW)
    ledger.increment_usage(user.id, TOTAL_EVENTS_CREATED, 40, now=FROZEN_NOW)
    tomorrow = FROZEN_NOW + timedelta(days=1)

    # Reads already treat a stale day as zero, before any reset ran.
    assert ledger.get_usage(user.id, now=tomorrow)[FILE_UPLOADS_TODAY] == 0

    assert ledger.reset_daily_counters(now=tomorrow) == 1
    assert ledger.reset_daily_counters(now=tomorrow) == 0
    usage = ledger.get_usage(user.id, now=tomorrow)
    assert usage[FILE_UPLOADS_TODAY] == 0
    assert usage[TOTAL_EVENTS_CREATED] == 40


def test_increment_after_midnight_starts_from_zero(ledger, make_user):
    user = make_user()
    ledger.increment_usage(user.id, IMPORT_JOBS_TODAY, 5, now=FROZEN_NOW)

    ledger.increment_usage(user.id, IMPORT_JOBS_TODAY, 1, now=FROZEN_NOW + timedelta(days=1))

    assert ledger.get_usage(user.id, now=FROZEN_NOW + timedelta(days=1))[IMPORT_JOBS_TODAY] == 1


def test_decrement_never_goes_below_zero(ledger, make_user):
    user = make_user()
    ledger.increment_usage(user.id, CURRENT_ACTIVE_SCHEDULES, 1, now=FROZEN_NOW)

    ledger.decrement_usage(user.id, CURRENT_ACTIVE_SCHEDULES, 5, now=FROZEN_NOW)

    assert ledger.get_usage(user.id, now=FROZEN_NOW)[CURRENT_ACTIVE_SCHEDULES] == 0


def test_invalid_usage_arguments(ledger, make_user):
    user = make_user()

    with pytest.raises(ValueError):
        ledger.increment_usage(user.id, "bogus", 1)
    with pytest.raises(ValueError):
        ledger.increment_usage(user.id, FILE_UPLOADS_TODAY, -1)
    with pytest.raises(ValueError):
        ledger.check_quota(user.id, "bogus")


def test_summary_lists_limits_usage_and_checks(ledger, make_user):
    user = make_user(trust_level=1)
    ledger.increment_usage(user.id, FILE_UPLOADS_TODAY, 1, now=FROZEN_NOW)

    summary = ledger.summary(user, now=FROZEN_NOW)

    assert summary["trust_level"] == 1
    assert summary["usage"][FILE_UPLOADS_TODAY] == 1
    assert summary["checks"][MAX_FILE_UPLOADS_PER_DAY]["remaining"] == 2
    assert MAX_FILE_SIZE_MB not in summary["checks"]


def test_expired_profile_entries_are_dropped(make_user):
    ledger = QuotaLedger(profile_ttl_seconds=60)
    first = make_user()
    second = make_user()

    assert ledger.subject_for(first.id, now=FROZEN_NOW).user_id == first.id
    assert ledger.subject_for(second.id, now=FROZEN_NOW + timedelta(seconds=30)).user_id == second.id
    assert set(ledger._profiles) == {first.id, second.id}

    ledger.subject_for(second.id, now=FROZEN_NOW + timedelta(seconds=61))

    assert set(ledger._profiles) == {second.id}


class Rollback(Exception):
    pass


def test_increment_inside_caller_transaction_rolls_back_with_it(ledger, make_user):
    user = make_user()
    ledger.increment_usage(user.id, TOTAL_EVENTS_CREATED, 2, now=FROZEN_NOW)

    with pytest.raises(Rollback):
        with get_engine().begin() as conn:
            ledger.increment_usage(user.id, TOTAL_EVENTS_CREATED, 5, now=FROZEN_NOW, conn=conn)
            raise Rollback()
    with get_engine().begin() as conn:
        ledger.increment_usage(user.id, TOTAL_EVENTS_CREATED, 1, now=FROZEN_NOW, conn=conn)

    assert ledger.get_usage(user.id, now=FROZEN_NOW)[TOTAL_EVENTS_CREATED] == 3
