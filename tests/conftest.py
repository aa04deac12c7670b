"""Pytest configuration and fixtures for epatient-access tests."""

from datetime import UTC, datetime, timedelta

import pytest
from argon2 import PasswordHasher

from epatient_access.auth.biometrics import DigestMatcher
from epatient_access.config import AccessConfig
from epatient_access.models import BiometricType, Identity, Role
from epatient_access.service import AccessService
from epatient_access.storage import MemoryStore

try:
    from testcontainers.postgres import PostgresContainer

    HAS_TESTCONTAINERS = True
except ImportError:
    HAS_TESTCONTAINERS = False

SIGNING_KEY = "test-signing-key-0123456789abcdef0123456789"
BIOMETRIC_KEY = "test-biometric-key-0123456789abcdef012345"

PATIENT_ID = "P-1001"
OTHER_PATIENT_ID = "P-1002"
DOCTOR_ID = "D-2001"
OTHER_DOCTOR_ID = "D-2002"
OPERATOR_ID = "O-3001"
FACILITY_ID = "F-CITY"

PATIENT_MOBILE = "+15550001001"
OTHER_PATIENT_MOBILE = "+15550001002"
DOCTOR_MOBILE = "+15550002001"
OTHER_DOCTOR_MOBILE = "+15550002002"
OPERATOR_MOBILE = "+15550003001"

PATIENT_FINGERPRINT = b"fingerprint-template-p1001"
OTHER_PATIENT_FINGERPRINT = b"fingerprint-template-p1002"
PATIENT_IRIS = b"iris-template-p1001"


class FrozenClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, object, str]] = []

    async def deliver(self, identifier, purpose, code):
        self.sent.append((identifier, purpose, code))

    def last_code(self, identifier: str) -> str:
        for sent_to, _, code in reversed(self.sent):
            if sent_to == identifier:
                return code
        raise AssertionError(f"No code delivered to {identifier}")


@pytest.fixture
def clock() -> FrozenClock:
    # Kept in the past so PyJWT never sees an issued-at in the future.
    return FrozenClock(datetime(2025, 3, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def matcher() -> DigestMatcher:
    return DigestMatcher(BIOMETRIC_KEY)


@pytest.fixture
def config() -> AccessConfig:
    return AccessConfig()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def seeded_store(store, matcher, clock) -> MemoryStore:
    """Two patients, two doctors and one operator; P-1001 has an encounter at F-CITY."""
    await store.add_identity(
        Identity(
            identity_id=PATIENT_ID,
            role=Role.PATIENT,
            name="Asha Patel",
            mobile=PATIENT_MOBILE,
            email="asha@example.org",
            emergency_contact="+15550009999",
            biometric_refs={
                BiometricType.FINGERPRINT: matcher.enroll(PATIENT_FINGERPRINT),
                BiometricType.IRIS: matcher.enroll(PATIENT_IRIS),
            },
            created_at=clock(),
        )
    )
    await store.add_identity(
        Identity(
            identity_id=OTHER_PATIENT_ID,
            role=Role.PATIENT,
            name="Ben Okafor",
            mobile=OTHER_PATIENT_MOBILE,
            biometric_refs={
                BiometricType.FINGERPRINT: matcher.enroll(OTHER_PATIENT_FINGERPRINT),
            },
            created_at=clock(),
        )
    )
    await store.add_identity(
        Identity(
            identity_id=DOCTOR_ID,
            role=Role.DOCTOR,
            name="Dr. Chen",
            mobile=DOCTOR_MOBILE,
            hospital_name="City General",
            created_at=clock(),
        )
    )
    await store.add_identity(
        Identity(
            identity_id=OTHER_DOCTOR_ID,
            role=Role.DOCTOR,
            name="Dr. Silva",
            mobile=OTHER_DOCTOR_MOBILE,
            created_at=clock(),
        )
    )
    await store.add_identity(
        Identity(
            identity_id=OPERATOR_ID,
            role=Role.OPERATOR,
            name="Front Desk",
            mobile=OPERATOR_MOBILE,
            facility_id=FACILITY_ID,
            created_at=clock(),
        )
    )
    await store.add_encounter(PATIENT_ID, FACILITY_ID, clock())
    return store


@pytest.fixture
async def service(seeded_store, matcher, config, notifier, clock, fast_hasher) -> AccessService:
    return AccessService(
        seeded_store,
        signing_key=SIGNING_KEY,
        matcher=matcher,
        config=config,
        notifier=notifier,
        clock=clock,
        code_hasher=fast_hasher,
    )


@pytest.fixture
def login(service, notifier):
    """Log an identity in by one-time code and return the LoginResult."""

    async def _login(mobile: str):
        await service.request_challenge(mobile, "LOGIN")
        return await service.verify_challenge(mobile, notifier.last_code(mobile))

    return _login


@pytest.fixture(scope="session")
def postgres_container():
    """Create a PostgreSQL container for integration tests."""
    if not HAS_TESTCONTAINERS:
        pytest.skip("testcontainers not installed")

    with PostgresContainer("postgres:15") as postgres:
        yield postgres


@pytest.fixture
def postgres_url(postgres_container) -> str:
    url = postgres_container.get_connection_url()
    if url.startswith("postgresql+psycopg2://"):
        url = url.replace("postgresql+psycopg2://", "postgresql://")
    return url


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring database")
