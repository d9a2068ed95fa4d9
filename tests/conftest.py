"""
Pytest configuration and fixtures for link gate tests.
"""

import random
import sys
from contextlib import contextmanager
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path for imports
sys.path.append(str(Path(__file__).parent.parent))

from config.config import ChallengeConfig, Config, FeatureFlags
from src.data.models import Base
from src.logic.admission_gate import AdmissionPolicy
from src.logic.validation_challenge import ChallengeScheduler
from src.services.geo_provider import GeoVerdict, HeaderMetadataCollector, StaticVerdictProvider
from src.services.link_admission_service import LinkAdmissionService


@pytest.fixture
def test_config():
    """Provide a test configuration instance."""
    config = Config()
    config.environment = "testing"
    config.debug = True
    config.database.dsn = "sqlite:///:memory:"
    config.feature_flags = FeatureFlags()
    config.challenge = ChallengeConfig(enabled=True, min_delay_seconds=30, max_delay_seconds=120, countdown_seconds=60)
    return config


@pytest.fixture
def test_db():
    """Create in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Create session factory
    SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)

    yield SessionLocal
    engine.dispose()


@pytest.fixture
def db_session(test_db):
    """Create database session for testing."""
    session = test_db()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_scope(test_db):
    """Session context manager with commit/rollback, like DatabaseFactory.get_session."""

    @contextmanager
    def scope():
        session = test_db()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


class FakeTimer:
    """threading.Timer stand-in that only fires when told to."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.finished = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        assert not self.cancelled, "cancelled timer fired"
        self.finished = True
        return self.function(*self.args, **self.kwargs)


class FakeTimerFactory:
    """Records every timer created so tests can fire them deterministically."""

    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    @property
    def live(self) -> list[FakeTimer]:
        return [t for t in self.timers if t.started and not (t.cancelled or t.finished)]

    def last(self) -> FakeTimer:
        return self.timers[-1]


@pytest.fixture
def timer_factory():
    return FakeTimerFactory()


@pytest.fixture
def verdicts():
    """Address -> verdict map used by the static provider."""
    return StaticVerdictProvider(
        verdicts={
            "203.0.113.10": GeoVerdict(country="US"),
            "203.0.113.20": GeoVerdict(country="DE"),
            "198.51.100.66": GeoVerdict(country="US", is_anonymizing_network=True, confidence=90.0),
            "198.51.100.77": GeoVerdict(country="US", is_anonymizing_network=True, confidence=30.0),
        },
        default=GeoVerdict(country="US"),
    )


@pytest.fixture
def policy():
    return AdmissionPolicy(
        allowed_countries=[],
        anonymizer_confidence_threshold=50.0,
        required_consents=["data_processing", "survey_participation"],
        optional_consents=["marketing_contact"],
    )


@pytest.fixture
def scheduler(session_scope, test_config, timer_factory):
    sched = ChallengeScheduler(session_scope, test_config.challenge, timer_factory=timer_factory, rng=random.Random(7))
    yield sched
    sched.shutdown()


@pytest.fixture
def service(session_scope, verdicts, policy, scheduler, test_config):
    svc = LinkAdmissionService(
        session_scope=session_scope,
        verdict_provider=verdicts,
        metadata_collector=HeaderMetadataCollector(),
        policy=policy,
        scheduler=scheduler,
        app_config=test_config,
    )
    yield svc
    svc.shutdown()


CONSENTS = {"data_processing": True, "survey_participation": True}


@pytest.fixture
def consents():
    return dict(CONSENTS)
