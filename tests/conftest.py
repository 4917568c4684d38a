import os

# The engine in blood_logistics.models.database is built at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test_secret_key")

import pytest
from datetime import datetime, timedelta
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from blood_logistics.core.config import settings
from blood_logistics.core.security import Principal, create_access_token, ROLE_NGO, ROLE_HOSPITAL
from blood_logistics.main import app
from blood_logistics.models.database import Base, get_db, NGO, Hospital, Donor, Center
from blood_logistics.models.enums import CenterType, CenterStatus
from blood_logistics.services.inventory import InventoryAggregator


@pytest.fixture
async def test_engine(tmp_path):
    """Create a fresh SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        future=True
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture
async def test_session(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def seed(session_factory):
    """Two NGOs, a hospital, a donor and a blood bank owned by the first NGO."""
    async with session_factory() as session:
        ngo = NGO(id="NGO_1", name="Life Savers", email="ngo1@example.org", city="Pune")
        other_ngo = NGO(id="NGO_2", name="Red Drop", email="ngo2@example.org", city="Mumbai")
        hospital = Hospital(id="HOSP_1", name="City Hospital", email="h1@example.org", city="Pune")
        other_hospital = Hospital(id="HOSP_2", name="Metro Hospital", email="h2@example.org", city="Pune")
        donor = Donor(id="DONOR_1", full_name="Asha Patil", email="asha@example.org")
        center = Center(
            id="CENTER_1",
            ngo_id="NGO_1",
            name="Central Blood Bank",
            type=CenterType.BLOOD_BANK,
            status=CenterStatus.ACTIVE,
            city="Pune",
            pin_code="411001",
            latitude=18.5204,
            longitude=73.8567,
            license_number="LIC-001",
            license_expiry=datetime(2030, 1, 1),
            storage_capacity=500
        )
        second_center = Center(
            id="CENTER_2",
            ngo_id="NGO_1",
            name="Riverside Camp",
            type=CenterType.DONATION_CAMP,
            status=CenterStatus.ACTIVE,
            city="Pune",
            pin_code="411002",
            latitude=18.5590,
            longitude=73.8070,
            campaign_name="Monsoon Drive",
            target_donations=100,
            registration_deadline=datetime(2030, 1, 1)
        )
        session.add_all([ngo, other_ngo, hospital, other_hospital, donor, center, second_center])
        await session.flush()
        await InventoryAggregator(session).recompute_many(["CENTER_1", "CENTER_2"])
        await session.commit()

    return {
        "ngo_id": "NGO_1",
        "other_ngo_id": "NGO_2",
        "hospital_id": "HOSP_1",
        "other_hospital_id": "HOSP_2",
        "donor_id": "DONOR_1",
        "center_id": "CENTER_1",
        "second_center_id": "CENTER_2",
    }


@pytest.fixture
def ngo_principal(seed):
    return Principal(entity_id=seed["ngo_id"], role=ROLE_NGO)


@pytest.fixture
def other_ngo_principal(seed):
    return Principal(entity_id=seed["other_ngo_id"], role=ROLE_NGO)


@pytest.fixture
def hospital_principal(seed):
    return Principal(entity_id=seed["hospital_id"], role=ROLE_HOSPITAL)


@pytest.fixture
def auth_headers():
    """Factory for bearer headers for a given entity and role."""
    def _headers(entity_id: str, role: str, expires_delta: timedelta = None):
        token = create_access_token(entity_id, role, expires_delta=expires_delta)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
async def client(session_factory, seed):
    """HTTP client bound to the app with the test database."""
    async def _get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_test_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def override_settings():
    """Override settings for testing."""
    settings.SECRET_KEY = "test_secret_key"
    settings.DEBUG = True
