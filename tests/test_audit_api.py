from __future__ import annotations

import os
import time
from datetime import datetime, timedelta

from poster_campaign.models import AuditLog, LoginAttempt
from poster_campaign.services.audit_service import AuditService, RequestContext
from poster_campaign.services.storage import storage_service


def test_writes_are_audited_with_request_context(api_client, world, auth_headers, db_session):
    headers = {**auth_headers(world["employee"]), "X-Request-ID": "req-123", "User-Agent": "pytest-agent"}

    api_client.put(f"/api/campaigns/{world['acme_campaign'].id}/status", json={"status": "in_progress"}, headers=headers)

    entry = db_session.query(AuditLog).one()
    assert entry.action == "campaign_status_changed"
    assert entry.resource_type == "campaign"
    assert entry.resource_id == world["acme_campaign"].id
    assert entry.old_values == {"status": "new"}
    assert entry.new_values["status"] == "in_progress"
    assert entry.request_id == "req-123"
    assert entry.user_agent == "pytest-agent"


def test_logs_are_filtered_and_newest_first(api_client, world, auth_headers, db_session):
    audit = AuditService(db_session)
    audit.log_action("user_created", "user", user_id=world["employee"].id, resource_id=1)
    audit.log_action("company_created", "company", user_id=world["employee"].id, resource_id=2)
    audit.log_action("user_updated", "user", user_id=world["acme_client"].id, resource_id=1)
    headers = auth_headers(world["employee"])

    entries = api_client.get("/api/audit/logs?resource_type=user", headers=headers).json()["data"]
    assert [e["action"] for e in entries] == ["user_updated", "user_created"]

    entries = api_client.get("/api/audit/logs?limit=1", headers=headers).json()["data"]
    assert [e["action"] for e in entries] == ["user_updated"]

    activity = api_client.get(
        f"/api/audit/user/{world['employee'].id}/activity", headers=headers
    ).json()["data"]
    assert [e["action"] for e in activity] == ["company_created", "user_created"]
    assert activity[0]["username"] == "employee"


def test_audit_endpoints_are_employee_only(api_client, world, auth_headers):
    headers = auth_headers(world["acme_client"])

    for path in (
        "/api/audit/logs",
        "/api/audit/stats",
        "/api/audit/security/login-stats",
        "/api/audit/security/session-stats",
        "/api/audit/security/password-reset-stats",
    ):
        assert api_client.get(path, headers=headers).status_code == 403
    assert api_client.post("/api/audit/cleanup", headers=headers).status_code == 403


def test_stats(api_client, world, auth_headers, db_session):
    audit = AuditService(db_session)
    audit.log_action("login", "auth", user_id=world["employee"].id)
    audit.log_action("login", "auth", user_id=world["employee"].id)
    audit.log_action("login_failed", "auth", context=RequestContext(ip_address="10.0.0.1"))

    stats = api_client.get("/api/audit/stats", headers=auth_headers(world["employee"])).json()["data"]

    assert stats["total_actions"] == 3
    assert stats["actions_by_type"] == {"login": 2, "login_failed": 1}
    assert stats["actions_by_user"] == {"employee": 2, "unknown": 1}
    assert len(stats["recent_activity"]) == 3


def test_login_stats(api_client, world, auth_headers):
    api_client.post("/api/auth/login", data={"username": "employee", "password": "nope"})
    api_client.post("/api/auth/login", data={"username": "ghost", "password": "nope"})

    stats = api_client.get(
        "/api/audit/security/login-stats", headers=auth_headers(world["employee"])
    ).json()["data"]

    assert stats["total_attempts"] == 2
    assert stats["failed_attempts"] == 2
    assert stats["success_rate"] == 0.0
    assert stats["failure_reasons"] == {"invalid_password": 1, "user_not_found": 1}


def test_cleanup_removes_stale_records(api_client, world, auth_headers, db_session):
    old = datetime.utcnow() - timedelta(days=400)
    db_session.add(AuditLog(action="ancient", resource_type="system", created_at=old))
    db_session.add(LoginAttempt(username="employee", success=False, attempted_at=old))
    db_session.commit()

    stale_temp = storage_service.base_path / "temp" / "leftover.png"
    stale_temp.write_bytes(b"\x89PNG")
    two_days_ago = time.time() - 48 * 3600
    os.utime(stale_temp, (two_days_ago, two_days_ago))
    fresh_temp = storage_service.base_path / "temp" / "in-flight.png"
    fresh_temp.write_bytes(b"\x89PNG")

    response = api_client.post("/api/audit/cleanup", headers=auth_headers(world["employee"]))

    assert response.status_code == 200
    results = response.json()["data"]
    assert results["audit_logs"] == 1
    assert results["login_attempts"] == 1
    assert results["temp_files"] == 1
    assert not stale_temp.exists()
    assert fresh_temp.exists()

    db_session.expire_all()
    assert [e.action for e in db_session.query(AuditLog).all()] == ["maintenance_cleanup"]
