from __future__ import annotations

from datetime import datetime, timedelta

from poster_campaign.models import AuditLog, LoginAttempt, UserSession
from poster_campaign.services.security_service import LOCKED_REASON

from conftest import DEFAULT_PASSWORD

NEW_PASSWORD = "N3w!Password"


def _login(api_client, username, password=DEFAULT_PASSWORD):
    return api_client.post("/api/auth/login", data={"username": username, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_login_issues_tokens_and_session(api_client, world, db_session):
    response = _login(api_client, "employee")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["token_type"] == "bearer"
    assert data["access_token"] and data["refresh_token"] and data["session_token"]
    assert data["user"]["username"] == "employee"
    assert data["user"]["role"] == "company_employee"
    assert "password_hash" not in data["user"]

    assert response.cookies.get("session_token") == data["session_token"]

    session = db_session.query(UserSession).one()
    assert session.user_id == world["employee"].id
    assert session.is_active
    assert db_session.query(AuditLog).filter(AuditLog.action == "login").count() == 1


def test_login_username_is_case_insensitive(api_client, world):
    assert _login(api_client, "  EMPLOYEE ").status_code == 200


def test_bad_credentials_share_one_message(api_client, world, make_user, db_session):
    make_user(username="dormant", is_active=False)

    for username, password in (("employee", "wrong"), ("nobody", DEFAULT_PASSWORD), ("dormant", DEFAULT_PASSWORD)):
        response = _login(api_client, username, password)
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid username or password"

    reasons = {a.username: a.failure_reason for a in db_session.query(LoginAttempt).all()}
    assert reasons == {
        "employee": "invalid_password",
        "nobody": "user_not_found",
        "dormant": "account_inactive",
    }


def test_account_locks_after_repeated_failures(api_client, world, db_session):
    for _ in range(5):
        assert _login(api_client, "employee", "wrong").status_code == 401

    response = _login(api_client, "employee")

    assert response.status_code == 423
    error = response.json()["error"]
    assert "temporarily locked" in error["message"]
    assert 1 <= error["details"]["retry_after_minutes"] <= 30

    blocked = db_session.query(LoginAttempt).filter(LoginAttempt.failure_reason == LOCKED_REASON).count()
    assert blocked == 1


def test_lockout_expires(api_client, world, db_session):
    long_ago = datetime.utcnow() - timedelta(minutes=45)
    for i in range(5):
        db_session.add(
            LoginAttempt(
                username="employee",
                success=False,
                failure_reason="invalid_password",
                attempted_at=long_ago + timedelta(seconds=i),
            )
        )
    db_session.commit()

    assert _login(api_client, "employee").status_code == 200


def test_successful_login_clears_failures(api_client, world, db_session):
    for _ in range(4):
        _login(api_client, "employee", "wrong")

    assert _login(api_client, "employee").status_code == 200
    assert _login(api_client, "employee", "wrong").status_code == 401
    assert _login(api_client, "employee").status_code == 200


def test_refresh_rotates_tokens(api_client, world, db_session):
    first = _login(api_client, "employee").json()["data"]

    response = api_client.post(
        "/api/auth/refresh",
        json={"refresh_token": first["refresh_token"], "session_token": first["session_token"]},
    )
    assert response.status_code == 200
    second = response.json()["data"]
    assert second["refresh_token"] != first["refresh_token"]
    assert second["session_token"] == first["session_token"]

    assert api_client.get("/api/auth/me", headers=_bearer(second["access_token"])).status_code == 200

    replay = api_client.post(
        "/api/auth/refresh",
        json={"refresh_token": first["refresh_token"], "session_token": first["session_token"]},
    )
    assert replay.status_code == 401

    db_session.expire_all()
    assert db_session.query(UserSession).one().is_active is False


def test_refresh_rejects_access_token(api_client, world):
    data = _login(api_client, "employee").json()["data"]
    api_client.cookies.clear()

    response = api_client.post("/api/auth/refresh", json={"refresh_token": data["access_token"]})

    assert response.status_code == 401


def test_logout_ends_session(api_client, world, db_session):
    data = _login(api_client, "employee").json()["data"]

    response = api_client.post(
        "/api/auth/logout",
        json={"session_token": data["session_token"]},
        headers=_bearer(data["access_token"]),
    )

    assert response.status_code == 200
    assert db_session.query(UserSession).one().is_active is False
    entry = db_session.query(AuditLog).filter(AuditLog.action == "logout").one()
    assert entry.new_values == {"session_ended": True}


def test_me_requires_token(api_client, world, auth_headers):
    response = api_client.get("/api/auth/me")
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": {"message": "Access token required"}}

    response = api_client.get("/api/auth/me", headers=_bearer("not-a-jwt"))
    assert response.status_code == 401

    response = api_client.get("/api/auth/me", headers=auth_headers(world["acme_client"]))
    assert response.status_code == 200
    assert response.json()["data"]["company_name"] == "Acme"


def test_inactive_user_token_is_rejected(api_client, world, auth_headers, db_session):
    headers = auth_headers(world["acme_client"])
    world["acme_client"].is_active = False
    db_session.commit()

    assert api_client.get("/api/auth/me", headers=headers).status_code == 401


def test_sessions_and_revoke_others(api_client, world, db_session):
    _login(api_client, "employee")
    current = _login(api_client, "employee").json()["data"]
    api_client.cookies.clear()
    headers = {**_bearer(current["access_token"]), "x-session-token": current["session_token"]}

    sessions = api_client.get("/api/auth/sessions", headers=headers).json()["data"]
    assert len(sessions) == 2
    assert sum(1 for s in sessions if s["is_current"]) == 1

    response = api_client.post("/api/auth/revoke-all-sessions", headers=headers)
    assert response.json()["data"] == {"revoked_sessions": 1}

    active = db_session.query(UserSession).filter(UserSession.is_active.is_(True)).all()
    assert [s.session_token for s in active] == [current["session_token"]]


def test_change_password(api_client, world, auth_headers):
    headers = auth_headers(world["employee"])

    response = api_client.post(
        "/api/auth/change-password",
        json={"current_password": "wrong", "new_password": NEW_PASSWORD},
        headers=headers,
    )
    assert response.status_code == 401

    response = api_client.post(
        "/api/auth/change-password",
        json={"current_password": DEFAULT_PASSWORD, "new_password": "weakpass"},
        headers=headers,
    )
    assert response.status_code == 400
    assert "uppercase" in response.json()["error"]["message"]

    response = api_client.post(
        "/api/auth/change-password",
        json={"current_password": DEFAULT_PASSWORD, "new_password": NEW_PASSWORD},
        headers=headers,
    )
    assert response.status_code == 200

    assert _login(api_client, "employee").status_code == 401
    assert _login(api_client, "employee", NEW_PASSWORD).status_code == 200
