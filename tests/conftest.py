import os
import sys
import tempfile
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

TEST_DIR = Path(tempfile.mkdtemp(prefix="poster-campaign-tests-"))

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{TEST_DIR / 'test_poster_campaign.db'}")
os.environ.setdefault("JWT_SECRET_KEY", "test_access_secret")
os.environ.setdefault("JWT_REFRESH_SECRET_KEY", "test_refresh_secret")
os.environ.setdefault("STORAGE_PATH", str(TEST_DIR / "storage"))
os.environ.setdefault("LOG_LEVEL", "WARNING")

import shutil  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import poster_campaign.main as main_module  # noqa: E402
from poster_campaign.auth.schemas import AuthUser  # noqa: E402
from poster_campaign.auth.utils import create_access_token, get_password_hash  # noqa: E402
from poster_campaign.db import Base, SessionLocal, engine, init_db  # noqa: E402
from poster_campaign.models import (  # noqa: E402
    Campaign,
    CampaignAssignment,
    CampaignStatus,
    Company,
    User,
    UserRole,
)
from poster_campaign.services.storage import storage_service  # noqa: E402

DEFAULT_PASSWORD = "Str0ng!Pass"


@pytest.fixture(autouse=True)
def reset_state():
    Base.metadata.drop_all(bind=engine)
    init_db()
    shutil.rmtree(storage_service.base_path, ignore_errors=True)
    storage_service.ensure_directories()
    yield


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def api_client():
    with TestClient(main_module.app) as client:
        yield client


# ======================================================
# FACTORIES
# ======================================================

@pytest.fixture()
def make_company(db_session):
    counter = {"n": 0}

    def _make(name=None, is_active=True, **fields):
        counter["n"] += 1
        company = Company(
            name=name or f"Company {counter['n']}",
            is_active=is_active,
            **fields,
        )
        db_session.add(company)
        db_session.commit()
        db_session.refresh(company)
        return company

    return _make


@pytest.fixture()
def make_user(db_session):
    counter = {"n": 0}

    def _make(role=UserRole.COMPANY_EMPLOYEE, company=None, username=None, password=DEFAULT_PASSWORD, is_active=True):
        counter["n"] += 1
        user = User(
            username=username or f"{role.value.replace('_', '-')}{counter['n']}",
            password_hash=get_password_hash(password),
            first_name="Test",
            last_name=f"User{counter['n']}",
            role=role,
            company_id=company.id if company is not None else None,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_campaign(db_session):
    def _make(company, creator, status=CampaignStatus.NEW, name="Spring Posters", **fields):
        campaign = Campaign(
            name=name,
            company_id=company.id,
            created_by=creator.id,
            status=status,
            **fields,
        )
        db_session.add(campaign)
        db_session.commit()
        db_session.refresh(campaign)
        return campaign

    return _make


@pytest.fixture()
def assign(db_session):
    def _assign(campaign, contractor, assigned_by):
        assignment = CampaignAssignment(
            campaign_id=campaign.id,
            contractor_id=contractor.id,
            assigned_by=assigned_by.id,
        )
        db_session.add(assignment)
        db_session.commit()
        return assignment

    return _assign


# ======================================================
# AUTH HELPERS
# ======================================================

def _auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


def _as_auth_user(user) -> AuthUser:
    return AuthUser(
        user_id=user.id,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role.value,
        company_id=user.company_id,
        is_active=user.is_active,
    )


@pytest.fixture()
def auth_headers():
    return _auth_headers


@pytest.fixture()
def as_auth_user():
    return _as_auth_user


@pytest.fixture()
def world(make_company, make_user, make_campaign):
    """Two client companies, an employee, a client and contractor per company, one campaign each."""
    acme = make_company(name="Acme")
    globex = make_company(name="Globex")
    employee = make_user(UserRole.COMPANY_EMPLOYEE, username="employee")
    acme_client = make_user(UserRole.CLIENT, company=acme, username="acme-client")
    globex_client = make_user(UserRole.CLIENT, company=globex, username="globex-client")
    contractor = make_user(UserRole.CONTRACTOR, company=acme, username="contractor")
    other_contractor = make_user(UserRole.CONTRACTOR, company=globex, username="other-contractor")
    acme_campaign = make_campaign(acme, employee, name="Acme Launch")
    globex_campaign = make_campaign(globex, employee, name="Globex Launch")

    return {
        "acme": acme,
        "globex": globex,
        "employee": employee,
        "acme_client": acme_client,
        "globex_client": globex_client,
        "contractor": contractor,
        "other_contractor": other_contractor,
        "acme_campaign": acme_campaign,
        "globex_campaign": globex_campaign,
    }
