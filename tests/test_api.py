"""
API tests through FastAPI's TestClient.

Requests authenticate with real bearer tokens; the geocoder, ledger, caches
and pipeline collaborators are swapped for the test fixtures through
``app.dependency_overrides``.
"""
import pytest
from fastapi.testclient import TestClient

from event_atlas.api.dependencies import get_caches, get_geocoder, get_ledger, get_pipeline_deps, get_webhook_limiter
from event_atlas.api.rate_limit import SlidingWindowRateLimiter, webhook_windows
from event_atlas.core.config import settings
from event_atlas.core.security import create_access_token
from event_atlas.domain.quotas.constants import FILE_UPLOADS_TODAY, IMPORT_JOBS_TODAY, MAX_FILE_UPLOADS_PER_DAY
from event_atlas.main import app
from tests.utils.pipeline import SAMPLE_CSV

VALID_GRAPH = {
    "nodes": [
        {"id": "s0", "kind": "source", "column": "title"},
        {"id": "t0", "kind": "target", "field": "title"},
        {"id": "s1", "kind": "source", "column": "date"},
        {"id": "t1", "kind": "target", "field": "timestamp"},
    ],
    "edges": [{"from": "s0", "to": "t0"}, {"from": "s1", "to": "t1"}],
}


@pytest.fixture
def client(deps, ledger, caches, geocoder):
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_caches] = lambda: caches
    app.dependency_overrides[get_geocoder] = lambda: geocoder
    app.dependency_overrides[get_pipeline_deps] = lambda: deps
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}


def upload(client, user, content=SAMPLE_CSV, file_name="events.csv", content_type="text/csv", **data):
    return client.post(
        "/import-files",
        files={"file": (file_name, content, content_type)},
        data=data,
        headers=auth(user),
    )


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_requests_without_valid_token_are_rejected(client):
    assert client.get("/import-jobs").status_code in (401, 403)
    response = client.get("/import-jobs", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_upload_creates_file_and_job(client, user, ledger):
    response = upload(client, user)

    assert response.status_code == 200
    body = response.json()
    assert body["file"]["file_name"] == "events.csv"
    assert body["file"]["parse_status"] == "pending"
    assert body["file"]["storage_locator"].startswith(f"uploads/{user.id}/")
    assert body["job"]["stage"] == "fetching"
    assert body["job"]["trigger_source"] == "upload"

    usage = ledger.get_usage(user.id)
    assert usage[FILE_UPLOADS_TODAY] == 1
    assert usage[IMPORT_JOBS_TODAY] == 1

    file_response = client.get(f"/import-files/{body['file']['id']}", headers=auth(user))
    assert file_response.json()["file"]["content_hash"] == body["file"]["content_hash"]


def test_upload_rejects_unsupported_type(client, user):
    response = upload(client, user, content=b"%PDF-1.7", file_name="flyer.pdf", content_type="application/pdf")

    assert response.status_code == 400
    assert "Unsupported file type" in response.json()["detail"]


def test_upload_rejects_oversized_file(client, user, monkeypatch):
    monkeypatch.setattr(settings, "upload_max_file_size_mb", 0)

    response = upload(client, user)

    assert response.status_code == 413


def test_upload_quota_returns_429_with_details(client, make_user):
    user = make_user(custom_quotas={MAX_FILE_UPLOADS_PER_DAY: 0})

    response = upload(client, user)

    assert response.status_code == 429
    body = response.json()
    assert body["error"] == "quota_exceeded"
    assert body["quota_type"] == MAX_FILE_UPLOADS_PER_DAY
    assert body["limit"] == 0
    assert body["reset_time"] is not None


def test_upload_with_foreign_mapping_is_rejected(client, user, make_user):
    other = make_user()
    mapping_id = client.post("/field-mappings", json={"graph": VALID_GRAPH}, headers=auth(other)).json()["mapping"]["id"]

    response = upload(client, user, field_mapping_id=mapping_id)

    assert response.status_code == 403


def test_import_from_url_queues_job(client, user):
    response = client.post(
        "/import-files/from-url",
        json={"url": "https://example.com/data/events.json"},
        headers=auth(user),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["file"]["source_url"] == "https://example.com/data/events.json"
    assert body["file"]["file_name"] == "events.json"
    assert body["job"]["trigger_source"] == "api"


def test_import_from_url_requires_http(client, user):
    response = client.post("/import-files/from-url", json={"url": "ftp://example.com/x.csv"}, headers=auth(user))

    assert response.status_code == 422


def test_field_mapping_create_and_fetch(client, user, make_user):
    response = client.post("/field-mappings", json={"name": "Basic", "graph": VALID_GRAPH}, headers=auth(user))

    assert response.status_code == 200
    mapping = response.json()["mapping"]
    assert mapping["version"] == 1

    assert client.get(f"/field-mappings/{mapping['id']}", headers=auth(user)).status_code == 200
    assert client.get(f"/field-mappings/{mapping['id']}", headers=auth(make_user())).status_code == 403


def test_invalid_field_mapping_is_422_with_issues(client, user):
    graph = {"nodes": [{"id": "s0", "kind": "source", "column": "title"}], "edges": []}

    response = client.post("/field-mappings", json={"graph": graph}, headers=auth(user))

    assert response.status_code == 422
    issues = response.json()["detail"]["issues"]
    assert {issue["field"] for issue in issues} == {"title", "timestamp"}


def test_validate_endpoint_reports_both_outcomes(client, user):
    ok = client.post(
        "/field-mappings/validate",
        json={"graph": VALID_GRAPH, "column_types": {"title": "string", "date": "mixed"}},
        headers=auth(user),
    )
    bad = client.post("/field-mappings/validate", json={"graph": {"nodes": [], "edges": []}}, headers=auth(user))

    assert ok.status_code == 200
    assert ok.json()["valid"] is True
    assert [warning["code"] for warning in ok.json()["warnings"]] == ["type_mismatch"]
    assert bad.status_code == 200
    assert bad.json()["valid"] is False
    assert bad.json()["issues"]


def test_admin_runs_worker_to_completion(client, user, admin_user):
    job_id = upload(client, user).json()["job"]["id"]

    response = client.post("/jobs/run", json={"limit": 5, "iterations": 7}, headers=auth(admin_user))

    assert response.status_code == 200
    body = response.json()
    assert body["before"]["import_jobs"] == {"fetching": 1}
    assert body["after"]["import_jobs"] == {"completed": 1}
    assert len(body["runs"]) == 7

    job = client.get(f"/import-jobs/{job_id}", headers=auth(user)).json()["job"]
    assert job["rows_succeeded"] == 2
    assert job["rows_failed"] == 1

    events = client.get(f"/import-jobs/{job_id}/events", params={"limit": 2}, headers=auth(user)).json()
    assert events["total_count"] == 3
    assert [event["row_number"] for event in events["events"]] == [1, 2]
    assert events["events"][0]["coordinate_source"] == "geocoded"


def test_run_endpoint_requires_admin(client, user):
    assert client.post("/jobs/run", headers=auth(user)).status_code == 403


def test_run_endpoint_can_be_disabled(client, admin_user, monkeypatch):
    monkeypatch.setattr(settings, "enable_run_jobs_endpoint", False)

    assert client.post("/jobs/run", headers=auth(admin_user)).status_code == 403


def test_cancel_job_then_conflict(client, user):
    job_id = upload(client, user).json()["job"]["id"]

    response = client.post(f"/import-jobs/{job_id}/cancel", headers=auth(user))

    assert response.status_code == 200
    job = response.json()["job"]
    assert job["stage"] == "failed"
    assert job["requested_status"] == "cancel-requested"
    assert job["error_message"] == "Cancelled by user"
    assert client.post(f"/import-jobs/{job_id}/cancel", headers=auth(user)).status_code == 409


def test_jobs_are_private_except_to_admins(client, user, make_user, admin_user):
    job_id = upload(client, user).json()["job"]["id"]
    other = make_user()

    assert client.get(f"/import-jobs/{job_id}", headers=auth(other)).status_code == 403
    assert client.post(f"/import-jobs/{job_id}/cancel", headers=auth(other)).status_code == 403
    assert client.get(f"/import-jobs/{job_id}", headers=auth(admin_user)).status_code == 200
    assert client.get("/import-jobs", headers=auth(other)).json()["total_count"] == 0
    assert client.get("/import-jobs", headers=auth(admin_user)).json()["total_count"] == 1


def test_cache_admin_endpoints(client, admin_user, user):
    headers = auth(admin_user)
    put = client.put(
        "/admin/cache/entry",
        json={"cache": "geocoding", "key": "Hamburg", "value": {"latitude": 53.55, "longitude": 9.99}},
        headers=headers,
    )
    assert put.status_code == 200
    assert put.json()["entry"]["provider"] == "manual"

    entry = client.get("/admin/cache/entry", params={"cache": "geocoding", "key": "Hamburg"}, headers=headers)
    assert entry.json()["entry"]["latitude"] == 53.55

    keys = client.get("/admin/cache/keys", params={"cache": "geocoding", "pattern": "Ham*"}, headers=headers)
    assert keys.json()["keys"] == ["Hamburg"]

    assert client.delete("/admin/cache/entry", params={"cache": "geocoding", "key": "Hamburg"}, headers=headers).status_code == 200
    assert client.get("/admin/cache/entry", params={"cache": "geocoding", "key": "Hamburg"}, headers=headers).status_code == 404
    assert client.get("/admin/cache/keys", params={"cache": "nope"}, headers=headers).status_code == 404
    assert client.post("/admin/cache/cleanup", headers=headers).json()["per_cache"] == {"geocoding": 0, "url-fetch": 0}
    assert client.get("/admin/cache/keys", params={"cache": "geocoding"}, headers=auth(user)).status_code == 403


def test_cache_admin_rejects_entry_without_coordinates(client, admin_user):
    response = client.put(
        "/admin/cache/entry",
        json={"cache": "geocoding", "key": "Nowhere", "value": {"latitude": "north"}},
        headers=auth(admin_user),
    )

    assert response.status_code == 400


def test_quota_summary(client, user):
    upload(client, user)

    body = client.get("/quotas/me", headers=auth(user)).json()

    assert body["trust_level"] == 2
    assert body["usage"][FILE_UPLOADS_TODAY] == 1
    assert body["checks"][MAX_FILE_UPLOADS_PER_DAY]["remaining"] == 9


def test_scheduled_import_lifecycle(client, user):
    headers = auth(user)
    created = client.post(
        "/scheduled-imports",
        json={"name": "Feed", "source_url": "https://example.com/feed.csv", "frequency": "weekly"},
        headers=headers,
    )
    assert created.status_code == 200
    schedule_id = created.json()["schedule"]["id"]

    triggered = client.post(f"/scheduled-imports/{schedule_id}/trigger", headers=headers)
    assert triggered.status_code == 200
    assert triggered.json()["schedule"]["last_status"] == "running"
    assert triggered.json()["job"]["scheduled_import_id"] == schedule_id
    assert client.post(f"/scheduled-imports/{schedule_id}/trigger", headers=headers).status_code == 409

    disabled = client.patch(f"/scheduled-imports/{schedule_id}", json={"enabled": False}, headers=headers)
    assert disabled.json()["schedule"]["enabled"] is False
    assert len(client.get("/scheduled-imports", headers=headers).json()["schedules"]) == 1
    assert client.delete(f"/scheduled-imports/{schedule_id}", headers=headers).status_code == 200
    assert client.get(f"/scheduled-imports/{schedule_id}", headers=headers).status_code == 404


def test_only_owner_or_admin_can_trigger_a_schedule(client, user, make_user, admin_user):
    schedule_id = client.post(
        "/scheduled-imports", json={"name": "Feed", "source_url": "https://example.com/feed.csv"}, headers=auth(user)
    ).json()["schedule"]["id"]

    forbidden = client.post(f"/scheduled-imports/{schedule_id}/trigger", headers=auth(make_user()))
    missing = client.post("/scheduled-imports/no-such-schedule/trigger", headers=auth(user))
    by_admin = client.post(f"/scheduled-imports/{schedule_id}/trigger", headers=auth(admin_user))

    assert forbidden.status_code == 403
    assert missing.status_code == 404
    assert by_admin.status_code == 200
    assert by_admin.json()["job"]["user_id"] == user.id


def test_cancelling_scheduled_job_marks_schedule_failed(client, user):
    headers = auth(user)
    schedule_id = client.post(
        "/scheduled-imports", json={"name": "Feed", "source_url": "https://example.com/feed.csv"}, headers=headers
    ).json()["schedule"]["id"]
    job_id = client.post(f"/scheduled-imports/{schedule_id}/trigger", headers=headers).json()["job"]["id"]

    client.post(f"/import-jobs/{job_id}/cancel", headers=headers)

    schedule = client.get(f"/scheduled-imports/{schedule_id}", headers=headers).json()["schedule"]
    assert schedule["last_status"] == "failed"
    assert schedule["last_error"] == "Cancelled by user"


def test_scheduled_import_validation(client, user):
    headers = auth(user)
    bad_frequency = client.post(
        "/scheduled-imports",
        json={"name": "Feed", "source_url": "https://example.com/feed.csv", "frequency": "yearly"},
        headers=headers,
    )
    bad_cron = client.post(
        "/scheduled-imports",
        json={"name": "Feed", "source_url": "https://example.com/feed.csv", "schedule_type": "cron", "cron_expression": "* *"},
        headers=headers,
    )

    assert bad_frequency.status_code == 422
    assert bad_cron.status_code == 400


def test_geocoding_test_endpoint(client, admin_user):
    ok = client.post("/geocoding/test", json={"address": "  Marienplatz   Munich "}, headers=auth(admin_user))
    missing = client.post("/geocoding/test", json={"address": "Atlantis"}, headers=auth(admin_user))
    empty = client.post("/geocoding/test", json={"address": "   "}, headers=auth(admin_user))

    assert ok.json()["success"] is True
    assert ok.json()["normalized_address"] == "Marienplatz Munich"
    assert ok.json()["result"]["latitude"] == 48.1374
    assert missing.json()["success"] is False
    assert empty.status_code == 400


def test_provider_registration(client, admin_user):
    headers = auth(admin_user)
    created = client.post(
        "/admin/geocoding-providers",
        json={"name": "osm", "type": "nominatim", "tags": ["eu"], "config": {"user_agent": "tests"}},
        headers=headers,
    )
    duplicate = client.post("/admin/geocoding-providers", json={"name": "osm", "type": "nominatim"}, headers=headers)
    unknown = client.post("/admin/geocoding-providers", json={"name": "x", "type": "carrier-pigeon"}, headers=headers)

    assert created.status_code == 200
    assert created.json()["priority"] == 10
    assert "config" not in created.json()
    assert duplicate.status_code == 409
    assert unknown.status_code == 422
    listed = client.get("/admin/geocoding-providers", headers=headers).json()["providers"]
    assert [provider["name"] for provider in listed] == ["osm"]


def test_field_mapping_rejects_incomplete_id_strategy(client, user):
    response = client.post(
        "/field-mappings",
        json={"graph": VALID_GRAPH, "id_strategy": {"type": "computed"}, "deduplication": "skip"},
        headers=auth(user),
    )
    accepted = client.post(
        "/field-mappings",
        json={"graph": VALID_GRAPH, "id_strategy": {"type": "external", "field": "id"}, "deduplication": "flag"},
        headers=auth(user),
    )

    assert response.status_code == 400
    assert "fields" in response.json()["detail"]
    assert accepted.status_code == 200
    assert accepted.json()["mapping"]["deduplication"] == "flag"
    assert accepted.json()["mapping"]["id_strategy"] == {"type": "external", "field": "id"}


def _webhook_schedule(client, user):
    return client.post(
        "/scheduled-imports",
        json={"name": "Feed", "source_url": "https://example.com/feed.csv", "webhook_enabled": True},
        headers=auth(user),
    ).json()["schedule"]


def test_webhook_triggers_schedule_and_is_rate_limited(client, user, clock):
    limiter = SlidingWindowRateLimiter(webhook_windows(), clock=clock)
    app.dependency_overrides[get_webhook_limiter] = lambda: limiter
    schedule = _webhook_schedule(client, user)
    token = schedule["webhook_token"]
    assert schedule["webhook_enabled"] is True

    triggered = client.post(f"/webhooks/trigger/{token}")
    burst = client.post(f"/webhooks/trigger/{token}")
    clock.advance(seconds=settings.webhook_burst_window_seconds + 1)
    busy = client.post(f"/webhooks/trigger/{token}")

    assert triggered.status_code == 200
    assert triggered.json()["status"] == "triggered"
    job = client.get(f"/import-jobs/{triggered.json()['job_id']}", headers=auth(user)).json()["job"]
    assert job["trigger_source"] == "webhook"
    assert job["scheduled_import_id"] == schedule["id"]

    assert burst.status_code == 429
    assert burst.headers["Retry-After"] == str(settings.webhook_burst_window_seconds)
    assert burst.json()["detail"]["limit_type"] == "burst"

    assert busy.status_code == 200
    assert busy.json()["status"] == "skipped"
    assert busy.json()["job_id"] is None


def test_webhook_rejects_unknown_and_disabled_tokens(client, user):
    schedule = _webhook_schedule(client, user)
    token = schedule["webhook_token"]

    disabled = client.patch(f"/scheduled-imports/{schedule['id']}", json={"webhook_enabled": False}, headers=auth(user))

    assert disabled.json()["schedule"]["webhook_enabled"] is False
    assert disabled.json()["schedule"]["webhook_token"] == token
    assert client.post(f"/webhooks/trigger/{token}").status_code == 401
    assert client.post("/webhooks/trigger/not-a-token").status_code == 401
    assert client.get(f"/webhooks/trigger/{token}").status_code == 405


def test_enabling_webhook_later_issues_a_token(client, user):
    schedule = client.post(
        "/scheduled-imports", json={"name": "Feed", "source_url": "https://example.com/feed.csv"}, headers=auth(user)
    ).json()["schedule"]
    assert schedule["webhook_token"] is None

    enabled = client.patch(f"/scheduled-imports/{schedule['id']}", json={"webhook_enabled": True}, headers=auth(user))

    token = enabled.json()["schedule"]["webhook_token"]
    assert token
    assert client.post(f"/webhooks/trigger/{token}").json()["status"] == "triggered"
