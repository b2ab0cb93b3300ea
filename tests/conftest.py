import pytest
import os
from datetime import date
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set env before importing app components
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from leave_engine.database import Base, get_db
from leave_engine.main import app
import leave_engine.models  # noqa: F401
from fastapi.testclient import TestClient

# Fixed "today" for service-level tests; requests are dated in the same year
TODAY = date(2031, 3, 3)
COMPANY_ID = 1
OTHER_COMPANY_ID = 2


@pytest.fixture(scope="function")
def engine():
    """
    A fresh in-memory database per test. Services commit and roll back their
    own units of work, so an outer rollback cannot be used for isolation.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()


def _employee(db_session, name, company_id=COMPANY_ID, manager=None, join_date=date(2020, 1, 6), **kwargs):
    from leave_engine.models.employee import Employee
    employee = Employee(
        name=name,
        company_id=company_id,
        manager_id=manager.id if manager else None,
        join_date=join_date,
        **kwargs,
    )
    db_session.add(employee)
    db_session.commit()
    return employee


@pytest.fixture(scope="function")
def manager(db_session):
    return _employee(db_session, "Maya Manager", employee_code="E-001")


@pytest.fixture(scope="function")
def employee(db_session, manager):
    return _employee(db_session, "Eko Employee", manager=manager, employee_code="E-002")


@pytest.fixture(scope="function")
def peer(db_session, manager):
    """Another direct report of the same manager."""
    return _employee(db_session, "Putri Peer", manager=manager, employee_code="E-003")


@pytest.fixture(scope="function")
def hr_admin(db_session):
    return _employee(db_session, "Hana HR", employee_code="E-900")


@pytest.fixture(scope="function")
def outsider(db_session):
    return _employee(db_session, "Omar Outsider", company_id=OTHER_COMPANY_ID, employee_code="X-001")


@pytest.fixture(scope="function")
def make_employee(db_session):
    """Factory for ad-hoc employees."""
    def _make(name, **kwargs):
        return _employee(db_session, name, **kwargs)
    return _make


@pytest.fixture(scope="function")
def leave_types(db_session):
    """Default catalog keyed by code."""
    from leave_engine.services.leave_type_catalog import LeaveTypeCatalog
    catalog = LeaveTypeCatalog(db_session)
    catalog.seed_defaults()
    return {t.code: t for t in catalog.list(include_inactive=True)}


@pytest.fixture(scope="function")
def actor_for():
    """Build an Actor for an employee with the given roles."""
    from leave_engine.services.authorization import Actor

    def _actor(employee, *roles):
        return Actor(
            employee_id=employee.id,
            company_id=employee.company_id,
            roles=frozenset(roles or ("EMPLOYEE",)),
        )
    return _actor


@pytest.fixture(scope="function")
def get_token():
    """Helper fixture to create access tokens carrying roles and company."""
    from leave_engine.core.security import create_access_token

    def _get_token(employee, *roles):
        return create_access_token(data={
            "sub": str(employee.id),
            "roles": list(roles or ("EMPLOYEE",)),
            "company_id": employee.company_id,
        })
    return _get_token


@pytest.fixture(scope="function")
def auth_headers(get_token):
    def _headers(employee, *roles):
        return {"Authorization": f"Bearer {get_token(employee, *roles)}"}
    return _headers


@pytest.fixture(scope="function")
def client(db_session):
    """Get a TestClient that uses the test database session via dependency override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def today():
    return TODAY
