import pytest
from fastapi.testclient import TestClient

from certverify.cache import ResultCache
from certverify.db import SqliteRecordStore
from certverify.kv_backends import InMemoryKeyValueStore
from certverify.main import Services, create_app
from certverify.models import AnalysisResult, Certificate, User
from certverify.orchestrator import VerificationOrchestrator
from certverify.rate_limit import FixedWindowRateLimiter

API_KEY = "test-mistral-key"
AUTH_SECRET = "test-auth-secret"

CERTIFICATE_URL = "https://files.example.edu/certificates/c1.pdf"
VERIFICATION_URL_PDF = "https://verify.example.edu/certificates/UOE-2023-000123.pdf"

PASSING_ANALYSIS = {
    "document_a": {
        "student_name": "Ada Example",
        "institution_name": "University of Example",
        "degree_or_program": "Bachelor of Science in Computer Science",
        "date_of_issue": "2023-06-15",
        "certificate_id": "UOE-2023-000123",
        "certificate_title": "Bachelor of Science",
        "signatures": ["Registrar", "Vice Chancellor"],
        "seals_or_stamps": ["Official University Seal"],
        "document_a_confidence_score": 0.92,
    },
    "document_b": {"document_b_confidence_score": 0.87},
    "verification_url_valid": True,
    "total_verification": "pass",
}


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAnalysisClient:
    """Scripted analysis client: returns ``result`` or raises ``error``, recording every call."""

    def __init__(self, result=None, error=None):
        self.result = AnalysisResult.model_validate(result or PASSING_ANALYSIS)
        self.error = error
        self.calls = []

    def analyze(self, api_key, certificate_url, verification_url_pdf):
        self.calls.append((api_key, certificate_url, verification_url_pdf))
        if self.error is not None:
            raise self.error
        return self.result


def make_certificate(certificate_id: str = "c1", user_id: str = "u1", **overrides) -> Certificate:
    fields = dict(
        id=certificate_id,
        user_id=user_id,
        title="Bachelor of Science",
        institution_name="University of Example",
        program_name="Computer Science",
        issue_date="2023-06-15",
        verification_url="https://verify.example.edu/certificates/UOE-2023-000123",
        certificate_url=CERTIFICATE_URL,
        verification_url_pdf=VERIFICATION_URL_PDF,
    )
    fields.update(overrides)
    return Certificate(**fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def store_factory(tmp_path):
    """Build a seeded record store, optionally of a test subclass."""
    stores = []

    def factory(cls=SqliteRecordStore):
        store = cls(str(tmp_path / f"certverify_{len(stores)}.db"))
        store.init_db()
        store.insert_user(User(id="u1", email="ada@example.edu", full_name="Ada Example"))
        store.insert_user(User(id="u2", email="bob@example.edu", full_name="Bob Example"))
        store.insert_certificate(make_certificate("c1"))
        store.insert_certificate(make_certificate("c2", verification_url_pdf=None))
        store.insert_certificate(make_certificate("c3", user_id="u2"))
        stores.append(store)
        return store

    yield factory
    for store in stores:
        store.close()


@pytest.fixture
def store(store_factory):
    return store_factory()


@pytest.fixture
def cache(kv_store):
    return ResultCache(kv_store)


@pytest.fixture
def analysis_client():
    return FakeAnalysisClient()


@pytest.fixture
def make_orchestrator(store, cache, analysis_client, kv_store):
    def factory(**overrides):
        kwargs = dict(
            store=store,
            cache=cache,
            analysis_client=analysis_client,
            log_store=kv_store,
            api_key=API_KEY,
        )
        kwargs.update(overrides)
        return VerificationOrchestrator(**kwargs)

    return factory


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def services(store, kv_store, orchestrator, clock):
    return Services(
        store=store,
        kv_store=kv_store,
        orchestrator=orchestrator,
        verify_limiter=FixedWindowRateLimiter(kv_store, 100, clock=clock),
        logs_limiter=FixedWindowRateLimiter(kv_store, 100, clock=clock),
        api_key=API_KEY,
        auth_secret=AUTH_SECRET,
        require_auth=False,
    )


@pytest.fixture
def make_client():
    clients = []

    def factory(services):
        client = TestClient(create_app(services))
        client.__enter__()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client, services):
    return make_client(services)
