# tests/conftest.py
"""
Shared fixtures for CaseVault tests.

Time-dependent components take an injectable clock; the fake clocks here
let tests move time forward without sleeping.
"""

import pytest
from datetime import date, datetime, timedelta, timezone

from src.models.records import ClientRecord
from src.models.session_state import Session
from src.services.memory_store import InMemorySecureStore

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced wall clock returning aware datetimes"""

    def __init__(self, start: datetime = T0):
        self.start = start
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, **kwargs) -> datetime:
        """Set the clock to the start time plus the given offset"""
        self.current = self.start + timedelta(**kwargs)
        return self.current


class FakeMillisClock:
    """Manually advanced clock in milliseconds, for the rate limiter"""

    def __init__(self, start_ms: float = 1_000_000.0):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> float:
        self.now_ms += ms
        return self.now_ms


def build_record(record_id: str, first_name: str, last_name: str, **kwargs) -> ClientRecord:
    defaults = {
        "email": f"{first_name}.{last_name}@example.org".lower(),
        "phone": "555-000-0000",
        "address": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "zip_code": "62701",
        "county": "Sangamon",
        "notes": "Confidential case notes",
        "total_assistance_received": 250.0,
        "assistance_count": 2,
        "last_assistance_date": date(2024, 2, 1),
        "risk_level": "low",
    }
    defaults.update(kwargs)
    return ClientRecord(id=record_id, first_name=first_name, last_name=last_name, **defaults)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def millis_clock():
    return FakeMillisClock()


@pytest.fixture
def make_record():
    """Factory for client records with realistic defaults"""
    return build_record


@pytest.fixture
def sample_records():
    return [
        build_record("c-1", "Jane", "Doe", phone="555-123-4567"),
        build_record("c-2", "John", "Smith", phone="555-987-6543"),
        build_record("c-3", "Janet", "Jackson", email="janet@music.example"),
    ]


@pytest.fixture
def memory_store(sample_records):
    """In-memory store with three clients and one principal per role"""
    store = InMemorySecureStore()
    store.add_records(sample_records)
    store.grant_roles("staff-1", "staff")
    store.grant_roles("admin-1", "admin")
    store.grant_roles("guest-1", "volunteer")  # Not a known role
    return store


@pytest.fixture
def staff_session():
    return Session(principal_id="staff-1")


@pytest.fixture
def admin_session():
    return Session(principal_id="admin-1")


@pytest.fixture
def guest_session():
    return Session(principal_id="guest-1")


@pytest.fixture
def client(memory_store):
    """
    TestClient running the app lifespan against the seeded memory store.

    Module-level collaborators and the slowapi storage are reset so every
    test starts with fresh sessions and quotas.
    """
    from fastapi.testclient import TestClient
    import src.main as main_module

    main_module.data_store = memory_store
    main_module.secure_store = None
    main_module.limiter.reset()
    main_module.rate_limit_monitor.reset()

    with TestClient(main_module.app) as test_client:
        yield test_client

    main_module.data_store = None
    main_module.secure_store = None


@pytest.fixture
def api_headers():
    import src.main as main_module
    return {"X-API-Key": main_module.VALID_API_KEY}


@pytest.fixture
def open_session(client, api_headers):
    """Create a session over HTTP and return its headers"""
    def _open(principal_id: str = "staff-1", **extra) -> dict:
        response = client.post("/session", headers=api_headers, json={"principal_id": principal_id, **extra})
        assert response.status_code == 200, response.text
        data = response.json()
        return {"X-Session-Id": data["session_id"], "X-Session-Token": data["session_token"]}
    return _open
