"""
Test configuration and fixtures for the matching and scheduling engine.
Provides an in-memory database per test, data factories, and an API client
authenticated with locally minted tokens.
"""

import os
from datetime import date, timedelta
from typing import AsyncGenerator, Iterable, List, Optional
from uuid import UUID, uuid4

import pytest

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Override environment variables before the application is imported
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["SECRET_KEY"] = "test-secret-key-for-jwt-tokens"
os.environ["ALGORITHM"] = "HS256"
os.environ["ENABLE_FILE_LOGGING"] = "false"
os.environ["NOTIFICATION_SERVICE_URL"] = ""

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from hemolink.db.base import Base  # noqa: E402
from hemolink.dependencies import get_db, get_session_factory  # noqa: E402
from hemolink.main import app  # noqa: E402
from hemolink.models.cohort import Cohort  # noqa: E402
from hemolink.models.donor import Donor  # noqa: E402
from hemolink.models.hospital import Hospital, HospitalStock  # noqa: E402
from hemolink.models.patient import Patient  # noqa: E402
from hemolink.models.request import BloodRequest  # noqa: E402
from hemolink.schemas.request import RequestStatus, Urgency  # noqa: E402
from hemolink.services.cohort_service import CohortService  # noqa: E402
from hemolink.services.notification_service import (  # noqa: E402
    DonorNotification,
    NotificationGateway,
    get_notification_gateway,
)
from hemolink.utils.security import TokenManager  # noqa: E402

# Accra city centre; offsets below are expressed in kilometres north of it
ORIGIN_LAT = 5.6037
ORIGIN_LNG = -0.1870
KM_PER_DEGREE_LAT = 111.195


def km_north(km: float) -> float:
    return ORIGIN_LAT + km / KM_PER_DEGREE_LAT


@pytest.fixture
async def engine():
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


class RecordingGateway(NotificationGateway):
    """Notification double that records sends and can fail chosen donors."""

    def __init__(self, failing: Iterable[UUID] = ()):
        super().__init__(base_url="http://notifications.invalid")
        self.failing = set(failing)
        self.sent: List[DonorNotification] = []

    async def send(self, notification: DonorNotification) -> None:
        if notification.donor_id in self.failing:
            raise ConnectionError("SMS provider unreachable")
        self.sent.append(notification)


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
async def client(db_session, session_factory, gateway) -> AsyncGenerator[AsyncClient, None]:
    """API client with database and notification dependencies overridden."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notification_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(subject: UUID, role: str = "patient") -> dict:
    token = TokenManager.create_access_token({"sub": str(subject), "role": role})
    return {"Authorization": f"Bearer {token}"}


def assert_response_success(response, expected_status: int = 200):
    assert response.status_code == expected_status, response.text
    body = response.json()
    assert body["success"] is True
    return body["data"]


def assert_engine_error(response, expected_status: int, kind: str):
    assert response.status_code == expected_status, response.text
    body = response.json()
    assert body["success"] is False
    assert body["kind"] == kind
    assert body["message"]
    return body


# --- Data Factories ---


class TestDataFactory:
    """Factory for donors, patients, hospitals and requests."""

    __test__ = False

    @staticmethod
    def unique_email(prefix: str = "donor") -> str:
        return f"{prefix}_{uuid4().hex[:8]}@hemolink.org"

    @staticmethod
    async def create_donor(
        db: AsyncSession,
        blood_group: str = "A+",
        km_from_origin: Optional[float] = 1.0,
        eligibility_status: Optional[str] = "eligible",
        last_donation_date: Optional[date] = None,
        donation_count: Optional[int] = 0,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> Donor:
        donor = Donor(
            full_name=full_name or f"Donor {uuid4().hex[:4]}",
            email=email or TestDataFactory.unique_email(),
            phone="+233244000000",
            blood_group=blood_group,
            location="Accra",
            latitude=km_north(km_from_origin) if km_from_origin is not None else None,
            longitude=ORIGIN_LNG if km_from_origin is not None else None,
            eligibility_status=eligibility_status,
            last_donation_date=last_donation_date,
            donation_count=donation_count,
        )
        db.add(donor)
        await db.commit()
        return donor

    @staticmethod
    async def create_donors(db: AsyncSession, count: int = 5, **kwargs) -> List[Donor]:
        return [await TestDataFactory.create_donor(db, **kwargs) for _ in range(count)]

    @staticmethod
    async def create_patient(
        db: AsyncSession, blood_group: str = "A+", with_location: bool = True
    ) -> Patient:
        patient = Patient(
            full_name=f"Patient {uuid4().hex[:4]}",
            blood_group=blood_group,
            location="Accra",
            latitude=ORIGIN_LAT if with_location else None,
            longitude=ORIGIN_LNG if with_location else None,
        )
        db.add(patient)
        await db.commit()
        return patient

    @staticmethod
    async def create_hospital(
        db: AsyncSession,
        name: Optional[str] = None,
        km_from_origin: Optional[float] = 2.0,
        verified: bool = True,
        address: str = "Ring Road, Accra",
    ) -> Hospital:
        hospital = Hospital(
            name=name or f"Hospital {uuid4().hex[:4]}",
            address=address,
            contact="+233302000000",
            verified=verified,
            latitude=km_north(km_from_origin) if km_from_origin is not None else None,
            longitude=ORIGIN_LNG if km_from_origin is not None else None,
        )
        db.add(hospital)
        await db.commit()
        return hospital

    @staticmethod
    async def add_stock(
        db: AsyncSession,
        hospital: Hospital,
        blood_group: str = "A+",
        component: str = "Whole Blood",
        units: int = 5,
        age_days: int = 3,
        today: Optional[date] = None,
    ) -> HospitalStock:
        today = today or date.today()
        stock = HospitalStock(
            hospital_id=hospital.id,
            blood_group=blood_group,
            component=component,
            units=units,
            collection_date=today - timedelta(days=age_days),
        )
        db.add(stock)
        await db.commit()
        return stock

    @staticmethod
    async def create_request(
        db: AsyncSession,
        patient: Patient,
        blood_group: str = "A+",
        status: RequestStatus = RequestStatus.PENDING,
        radius_km: Optional[float] = 10.0,
    ) -> BloodRequest:
        request = BloodRequest(
            patient_id=patient.id,
            blood_group=blood_group,
            component="Whole Blood",
            quantity_units=1,
            urgency=Urgency.HIGH,
            status=status,
            patient_latitude=patient.latitude,
            patient_longitude=patient.longitude,
            radius_km=radius_km,
        )
        db.add(request)
        await db.commit()
        return request

    @staticmethod
    async def create_cohort(
        db: AsyncSession,
        patient: Patient,
        donors: List[Donor],
        start_date: date = date(2024, 1, 1),
    ) -> Cohort:
        return await CohortService(db).create_cohort(
            patient.id, [d.id for d in donors], start_date=start_date
        )


@pytest.fixture
def factory() -> type:
    return TestDataFactory
