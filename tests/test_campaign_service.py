from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest

from poster_campaign.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from poster_campaign.models import CampaignAssignment, CampaignStatus
from poster_campaign.services.campaign_service import CampaignFilters, CampaignService


def test_lifecycle_moves_forward_and_stamps_completion(db_session, world, as_auth_user):
    service = CampaignService(db_session)
    employee = as_auth_user(world["employee"])
    campaign_id = world["acme_campaign"].id

    campaign, previous = service.update_status(campaign_id, "in_progress", employee)
    assert previous == CampaignStatus.NEW
    assert campaign.status == CampaignStatus.IN_PROGRESS
    assert campaign.completed_at is None

    campaign, _ = service.update_status(campaign_id, "completed", employee)
    assert campaign.status == CampaignStatus.COMPLETED
    assert campaign.completed_at is not None


def test_completed_campaign_cannot_regress(db_session, world, make_campaign, as_auth_user):
    done = make_campaign(
        world["acme"],
        world["employee"],
        status=CampaignStatus.COMPLETED,
        completed_at=datetime.utcnow(),
    )
    service = CampaignService(db_session)

    with pytest.raises(ValidationError, match="Invalid status transition from completed to new"):
        service.update_status(done.id, "new", as_auth_user(world["employee"]))

    db_session.refresh(done)
    assert done.status == CampaignStatus.COMPLETED


@pytest.mark.parametrize(
    "start,target",
    [
        (CampaignStatus.NEW, "completed"),
        (CampaignStatus.IN_PROGRESS, "new"),
        (CampaignStatus.CANCELLED, "in_progress"),
    ],
)
def test_invalid_transitions_are_rejected(db_session, world, make_campaign, as_auth_user, start, target):
    campaign = make_campaign(world["acme"], world["employee"], status=start)

    with pytest.raises(ValidationError):
        CampaignService(db_session).update_status(campaign.id, target, as_auth_user(world["employee"]))


def test_unknown_status_is_a_validation_error(db_session, world, as_auth_user):
    with pytest.raises(ValidationError, match="Invalid campaign status"):
        CampaignService(db_session).update_status(
            world["acme_campaign"].id, "archived", as_auth_user(world["employee"])
        )


def test_generic_update_goes_through_transition_check(db_session, world, as_auth_user):
    service = CampaignService(db_session)
    employee = as_auth_user(world["employee"])
    campaign_id = world["acme_campaign"].id

    with pytest.raises(ValidationError):
        service.update_campaign(campaign_id, {"status": "completed"}, employee)

    campaign, before = service.update_campaign(
        campaign_id, {"name": "Renamed", "status": "in_progress"}, employee
    )
    assert before["name"] == "Acme Launch"
    assert before["status"] == "new"
    assert campaign.name == "Renamed"
    assert campaign.status == CampaignStatus.IN_PROGRESS


def test_only_employees_manage_campaigns(db_session, world, as_auth_user):
    service = CampaignService(db_session)
    client = as_auth_user(world["acme_client"])

    with pytest.raises(PermissionDeniedError):
        service.create_campaign({"name": "Nope", "company_id": world["acme"].id}, client)
    with pytest.raises(PermissionDeniedError):
        service.update_status(world["acme_campaign"].id, "in_progress", client)
    with pytest.raises(PermissionDeniedError):
        service.assign_contractor(world["acme_campaign"].id, world["contractor"].id, client)
    with pytest.raises(PermissionDeniedError):
        service.get_stats(client)


def test_create_validates_dates_and_company(db_session, world, make_company, as_auth_user):
    service = CampaignService(db_session)
    employee = as_auth_user(world["employee"])

    with pytest.raises(ValidationError, match="End date must be after start date"):
        service.create_campaign(
            {
                "name": "Backwards",
                "company_id": world["acme"].id,
                "start_date": date(2024, 5, 10),
                "end_date": date(2024, 5, 1),
            },
            employee,
        )

    dormant = make_company(name="Dormant", is_active=False)
    with pytest.raises(ValidationError, match="inactive company"):
        service.create_campaign({"name": "Quiet", "company_id": dormant.id}, employee)

    campaign = service.create_campaign(
        {"name": "  Summer  ", "company_id": world["acme"].id, "start_date": date(2024, 6, 1)},
        employee,
    )
    assert campaign.name == "Summer"
    assert campaign.status == CampaignStatus.NEW
    assert campaign.created_by == world["employee"].id


def test_assign_contractor_rules(db_session, world, make_campaign, as_auth_user):
    service = CampaignService(db_session)
    employee = as_auth_user(world["employee"])
    campaign_id = world["acme_campaign"].id

    assignment = service.assign_contractor(campaign_id, world["contractor"].id, employee)
    assert assignment.assigned_by == world["employee"].id

    with pytest.raises(ConflictError, match="already assigned"):
        service.assign_contractor(campaign_id, world["contractor"].id, employee)

    with pytest.raises(ValidationError, match="not a contractor"):
        service.assign_contractor(campaign_id, world["acme_client"].id, employee)

    with pytest.raises(NotFoundError):
        service.assign_contractor(campaign_id, 9999, employee)

    cancelled = make_campaign(world["acme"], world["employee"], status=CampaignStatus.CANCELLED)
    with pytest.raises(ValidationError, match="completed or cancelled"):
        service.assign_contractor(cancelled.id, world["contractor"].id, employee)

    assert db_session.query(CampaignAssignment).count() == 1


def test_remove_contractor(db_session, world, assign, as_auth_user):
    assign(world["acme_campaign"], world["contractor"], world["employee"])
    service = CampaignService(db_session)
    employee = as_auth_user(world["employee"])

    service.remove_contractor(world["acme_campaign"].id, world["contractor"].id, employee)
    assert db_session.query(CampaignAssignment).count() == 0

    with pytest.raises(NotFoundError):
        service.remove_contractor(world["acme_campaign"].id, world["contractor"].id, employee)


def test_client_listing_is_scoped_to_own_company(db_session, world, make_campaign, as_auth_user):
    recent = make_campaign(
        world["acme"],
        world["employee"],
        name="Recent Finish",
        status=CampaignStatus.COMPLETED,
        completed_at=datetime.utcnow() - timedelta(days=3),
    )
    make_campaign(
        world["acme"],
        world["employee"],
        name="Old Finish",
        status=CampaignStatus.COMPLETED,
        completed_at=datetime.utcnow() - timedelta(days=45),
    )

    items, total = CampaignService(db_session).list_campaigns(
        as_auth_user(world["acme_client"]), CampaignFilters()
    )

    names = {c.name for c in items}
    assert names == {"Acme Launch", recent.name}
    assert total == 2
    assert all(c.company_id == world["acme"].id for c in items)


def test_client_cannot_read_other_company_campaign(db_session, world, as_auth_user):
    service = CampaignService(db_session)

    with pytest.raises(PermissionDeniedError):
        service.get_campaign(world["globex_campaign"].id, as_auth_user(world["acme_client"]))

    with pytest.raises(PermissionDeniedError):
        service.list_by_company(world["globex"].id, as_auth_user(world["acme_client"]))


def test_contractor_sees_only_assigned_campaigns(db_session, world, assign, as_auth_user):
    assign(world["globex_campaign"], world["contractor"], world["employee"])
    service = CampaignService(db_session)
    contractor = as_auth_user(world["contractor"])

    items, total = service.list_campaigns(contractor, CampaignFilters())
    assert [c.id for c in items] == [world["globex_campaign"].id]
    assert total == 1

    with pytest.raises(PermissionDeniedError):
        service.get_campaign(world["acme_campaign"].id, contractor)

    with pytest.raises(PermissionDeniedError):
        service.list_by_contractor(world["other_contractor"].id, contractor)

    assert [c.id for c in service.list_by_contractor(world["contractor"].id, contractor)] == [
        world["globex_campaign"].id
    ]


def test_listing_filters_and_pagination(db_session, world, make_campaign, as_auth_user):
    for i in range(5):
        make_campaign(world["acme"], world["employee"], name=f"Batch {i}", description="city centre")
    service = CampaignService(db_session)
    employee = as_auth_user(world["employee"])

    items, total = service.list_campaigns(employee, CampaignFilters(search="CENTRE", page=2, limit=2))
    assert total == 5
    assert len(items) == 2

    items, total = service.list_campaigns(employee, CampaignFilters(company_id=world["globex"].id))
    assert [c.name for c in items] == ["Globex Launch"]

    items, _ = service.list_campaigns(employee, CampaignFilters(limit=1000))
    assert len(items) == 7


def test_progress_and_stats(db_session, world, assign, as_auth_user):
    assign(world["acme_campaign"], world["contractor"], world["employee"])
    service = CampaignService(db_session)
    employee = as_auth_user(world["employee"])

    progress = service.get_progress(world["acme_campaign"].id, employee)
    assert progress["total_images"] == 0
    assert progress["approval_rate"] == 0.0
    assert progress["assigned_contractors"] == 1

    stats = service.get_stats(employee)
    assert stats["total"] == 2
    assert stats["by_status"]["new"] == 2
    assert stats["by_status"]["completed"] == 0


def test_delete_campaign_removes_assignments(db_session, world, assign, as_auth_user):
    assign(world["acme_campaign"], world["contractor"], world["employee"])
    campaign_id = world["acme_campaign"].id

    before = CampaignService(db_session).delete_campaign(campaign_id, as_auth_user(world["employee"]))

    assert before["name"] == "Acme Launch"
    assert db_session.query(CampaignAssignment).count() == 0
    with pytest.raises(NotFoundError):
        CampaignService(db_session).get_campaign(campaign_id, as_auth_user(world["employee"]))
