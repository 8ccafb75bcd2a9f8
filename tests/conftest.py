from datetime import UTC, datetime
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import app.config
import app.database
from app.api import Services, clear_services, create_app, get_services
from app.database import load_sample_data
from app.models import DonationRequest, GeoPoint

ASHA = "7b1f5d0e-2c4a-4f1e-9a53-0d4c1e6a9b01"  # requester
RAVI = "c2d9a3f4-6e1b-4b7a-8f2d-1a9e5c3b7d02"
MEERA = "e4f6b8a1-3d5c-4e9f-a1b2-7c8d9e0f1a03"
JOHN = "f1a2b3c4-d5e6-47f8-9a0b-1c2d3e4f5a04"  # far away, in Chennai
SARA = "0a9b8c7d-6e5f-4a3b-2c1d-0e9f8a7b6c05"  # no email on file

HOSPITAL_LOCATION = GeoPoint(lat=12.9716, lng=77.5946)


@pytest_asyncio.fixture
async def client():
    """
    Test fixture that creates an async client for the API.
    """
    application = create_app()
    async with AsyncClient(
        transport=ASGITransport(app=application), base_url="http://test"
    ) as async_client:
        yield async_client


@pytest.fixture(autouse=True)
def reset_db(monkeypatch):
    """Fresh database with sample users before each test, no network geocoding."""
    clear_services()
    app.database._db = None
    load_sample_data()
    monkeypatch.setattr(app.config, "GEOCODING_ENABLED", False)
    monkeypatch.setattr(app.config, "SCHEDULER_ENABLED", False)
    yield
    clear_services()


@pytest.fixture
def users() -> SimpleNamespace:
    return SimpleNamespace(asha=ASHA, ravi=RAVI, meera=MEERA, john=JOHN, sara=SARA)


@pytest.fixture
def services() -> Services:
    return get_services()


@pytest.fixture
def make_request(services):
    """Factory storing a request owned by Asha, open unless told otherwise."""

    def _make(**overrides) -> DonationRequest:
        fields = {
            "requester_id": ASHA,
            "requester_uid": "requester-asha",
            "name": "Lakshmi",
            "phone": "+919811111111",
            "blood_group": "B+",
            "hospital": "St. John's Hospital",
            "location": HOSPITAL_LOCATION,
            "created_at": datetime.now(UTC),
        }
        fields.update(overrides)
        return services.db.requests.create(DonationRequest(**fields))

    return _make


def auth(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {user_id}"}


@pytest.fixture
def as_user():
    return auth
