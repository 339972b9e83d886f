from __future__ import annotations

import pytest

from poster_campaign.models import AuditLog, User

from conftest import DEFAULT_PASSWORD


def _new_user(**overrides):
    payload = {
        "username": "new-contractor",
        "password": DEFAULT_PASSWORD,
        "first_name": "Nina",
        "last_name": "Posters",
        "role": "contractor",
    }
    payload.update(overrides)
    return payload


def test_employee_creates_user(api_client, world, auth_headers, db_session):
    response = api_client.post(
        "/api/users",
        json=_new_user(company_id=world["acme"].id),
        headers=auth_headers(world["employee"]),
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["username"] == "new-contractor"
    assert data["company_name"] == "Acme"
    assert "password" not in data and "password_hash" not in data

    entry = db_session.query(AuditLog).filter(AuditLog.action == "user_created").one()
    assert entry.resource_id == data["id"]
    assert entry.user_id == world["employee"].id


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"role": "client"}, "Company ID is required for client role"),
        ({"role": "company_employee", "company_id": "acme"}, "should not be associated"),
        ({"role": "janitor"}, "Invalid role"),
        ({"username": "no spaces allowed"}, "only letters, numbers"),
        ({"password": "password"}, "Password must contain"),
    ],
)
def test_create_user_validation(api_client, world, auth_headers, overrides, message):
    if overrides.get("company_id") == "acme":
        overrides = {**overrides, "company_id": world["acme"].id}

    response = api_client.post("/api/users", json=_new_user(**overrides), headers=auth_headers(world["employee"]))

    assert response.status_code == 400
    assert message in response.json()["error"]["message"]


def test_inactive_company_cannot_take_users(api_client, world, make_company, auth_headers):
    dormant = make_company(name="Dormant", is_active=False)

    response = api_client.post(
        "/api/users",
        json=_new_user(company_id=dormant.id),
        headers=auth_headers(world["employee"]),
    )

    assert response.status_code == 400
    assert "inactive company" in response.json()["error"]["message"]


def test_usernames_are_unique_ignoring_case(api_client, world, auth_headers):
    response = api_client.post(
        "/api/users",
        json=_new_user(username="Contractor", company_id=world["acme"].id),
        headers=auth_headers(world["employee"]),
    )

    assert response.status_code == 409
    assert response.json()["error"]["message"] == "Username is already taken"


def test_non_employees_cannot_manage_users(api_client, world, auth_headers):
    headers = auth_headers(world["acme_client"])

    assert api_client.get("/api/users", headers=headers).status_code == 403
    assert api_client.post("/api/users", json=_new_user(), headers=headers).status_code == 403
    assert api_client.get(f"/api/users/{world['employee'].id}", headers=headers).status_code == 403
    assert api_client.get(f"/api/users/{world['acme_client'].id}", headers=headers).status_code == 200


def test_self_update_is_limited_to_names(api_client, world, auth_headers):
    user_id = world["acme_client"].id
    headers = auth_headers(world["acme_client"])

    response = api_client.put(f"/api/users/{user_id}", json={"first_name": "  Ada "}, headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["first_name"] == "Ada"

    response = api_client.put(f"/api/users/{user_id}", json={"role": "company_employee"}, headers=headers)
    assert response.status_code == 403

    response = api_client.put(
        f"/api/users/{world['globex_client'].id}", json={"first_name": "Mallory"}, headers=headers
    )
    assert response.status_code == 403


def test_role_change_revalidates_company(api_client, world, auth_headers):
    headers = auth_headers(world["employee"])
    user_id = world["contractor"].id

    response = api_client.put(f"/api/users/{user_id}", json={"role": "company_employee"}, headers=headers)
    assert response.status_code == 400

    response = api_client.put(
        f"/api/users/{user_id}", json={"role": "company_employee", "company_id": None}, headers=headers
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["role"] == "company_employee"
    assert data["company_id"] is None


def test_assigned_contractor_keeps_role(api_client, world, assign, auth_headers):
    campaign_id = world["acme_campaign"].id
    contractor_id = world["contractor"].id
    assign(world["acme_campaign"], world["contractor"], world["employee"])
    headers = auth_headers(world["employee"])

    response = api_client.put(f"/api/users/{contractor_id}", json={"role": "client"}, headers=headers)
    assert response.status_code == 400
    assert "campaign assignments" in response.json()["error"]["message"]

    contractors = api_client.get(f"/api/campaigns/{campaign_id}/contractors", headers=headers).json()["data"]
    assert [c["contractor_id"] for c in contractors] == [contractor_id]

    api_client.delete(f"/api/campaigns/{campaign_id}/contractors/{contractor_id}", headers=headers)
    response = api_client.put(f"/api/users/{contractor_id}", json={"role": "client"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["role"] == "client"


def test_employee_cannot_change_own_role(api_client, world, auth_headers):
    employee_id = world["employee"].id
    headers = auth_headers(world["employee"])

    response = api_client.put(
        f"/api/users/{employee_id}", json={"role": "client", "company_id": world["acme"].id}, headers=headers
    )
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "You cannot change your own role"

    response = api_client.put(f"/api/users/{employee_id}", json={"first_name": "Eve"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["role"] == "company_employee"


def test_delete_is_soft(api_client, world, auth_headers, db_session):
    headers = auth_headers(world["employee"])
    user_id = world["acme_client"].id

    response = api_client.delete(f"/api/users/{user_id}", headers=headers)
    assert response.status_code == 200

    db_session.expire_all()
    user = db_session.get(User, user_id)
    assert user is not None
    assert user.is_active is False

    response = api_client.delete(f"/api/users/{world['employee'].id}", headers=headers)
    assert response.status_code == 400


def test_status_toggle_is_audited(api_client, world, auth_headers, db_session):
    headers = auth_headers(world["employee"])
    user_id = world["contractor"].id

    response = api_client.patch(f"/api/users/{user_id}/status", json={"is_active": False}, headers=headers)
    assert response.json()["data"]["is_active"] is False

    response = api_client.patch(f"/api/users/{user_id}/status", json={"is_active": True}, headers=headers)
    assert response.json()["data"]["is_active"] is True

    actions = [a.action for a in db_session.query(AuditLog).order_by(AuditLog.id).all()]
    assert actions == ["user_deactivated", "user_activated"]


def test_list_filters_and_stats(api_client, world, auth_headers):
    headers = auth_headers(world["employee"])

    contractors = api_client.get("/api/users?role=contractor", headers=headers).json()["data"]
    assert {u["username"] for u in contractors} == {"contractor", "other-contractor"}

    found = api_client.get("/api/users?search=acme", headers=headers).json()["data"]
    assert [u["username"] for u in found] == ["acme-client"]

    stats = api_client.get("/api/users/stats", headers=headers).json()["data"]
    assert stats["total"] == 5
    assert stats["by_role"] == {"company_employee": 1, "client": 2, "contractor": 2}
    assert stats["active"] == 5
    assert stats["inactive"] == 0


def test_company_members_visible_to_own_company(api_client, world, auth_headers):
    acme_id = world["acme"].id

    response = api_client.get(f"/api/users/company/{acme_id}", headers=auth_headers(world["acme_client"]))
    assert response.status_code == 200
    assert {u["username"] for u in response.json()["data"]} == {"acme-client", "contractor"}

    response = api_client.get(f"/api/users/company/{acme_id}", headers=auth_headers(world["globex_client"]))
    assert response.status_code == 403
