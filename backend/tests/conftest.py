"""
Shared test fixtures.

Every test gets a fresh in-memory SQLite database (or TEST_DATABASE_URL
when set) and, through the org fixture, a small organisation:

    root (SuperAdmin, reserved root id)   admin (SuperAdmin)
    m1 (Manager) -> manages g1            m2 (Manager) -> manages g2
    op1 (Operator, g1, managed by m1)     op2 (Operator, g2, managed by m2)
    g3 has no manager
    a1, a2 in g1; a3 in g2
"""
import os
import threading
from types import SimpleNamespace
from datetime import date, datetime, time, timezone
from uuid import UUID

# Set environment variables FIRST, before any other imports
os.environ["DATABASE_URL"] = os.environ.get("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only")

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import tiktok_accounts.models  # noqa: F401
from tiktok_accounts.config import DEFAULT_ROOT_SUPERADMIN_ID
from tiktok_accounts.database import Base, build_engine
from tiktok_accounts.models.group import Group
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.models.user import Role, User
from tiktok_accounts.services.metric_source import MetricSample, MetricSource
from tiktok_accounts.services.snapshot_ingestion_service import SnapshotIngestionService
from tiktok_accounts.utils.errors import NotFoundError


# Test database setup
TEST_DATABASE_URL = os.environ["DATABASE_URL"]


def _make_engine():
    if TEST_DATABASE_URL.startswith("sqlite"):
        # One shared connection so the in-memory database lives for the whole test
        return build_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    return build_engine(TEST_DATABASE_URL)


@pytest.fixture
def db():
    """Create test database session on a fresh database."""
    engine = _make_engine()
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        if engine.dialect.name != "sqlite":
            Base.metadata.drop_all(bind=engine)
        engine.dispose()


def _flushed(db, *entities):
    for entity in entities:
        db.add(entity)
    db.flush()
    return entities


@pytest.fixture
def org(db):
    """Create the standard organisation (fixed ids so ordering is predictable)."""
    root = User(id=DEFAULT_ROOT_SUPERADMIN_ID, username="root", hashed_password="x", role=Role.SUPER_ADMIN)
    admin = User(id=UUID(int=2), username="admin", hashed_password="x", role=Role.SUPER_ADMIN, created_by=root.id)
    m1 = User(id=UUID(int=11), username="m1", hashed_password="x", role=Role.MANAGER, created_by=root.id)
    m2 = User(id=UUID(int=12), username="m2", hashed_password="x", role=Role.MANAGER, created_by=root.id)
    _flushed(db, root)
    _flushed(db, admin, m1, m2)

    g1 = Group(id=UUID(int=101), name="Alpha", created_by=root.id, managed_by=m1.id)
    g2 = Group(id=UUID(int=102), name="Beta", created_by=root.id, managed_by=m2.id)
    g3 = Group(id=UUID(int=103), name="Gamma", created_by=root.id)
    _flushed(db, g1, g2, g3)

    op1 = User(
        id=UUID(int=21), username="op1", hashed_password="x", role=Role.OPERATOR,
        group_id=g1.id, managed_by=m1.id, created_by=m1.id
    )
    op2 = User(
        id=UUID(int=22), username="op2", hashed_password="x", role=Role.OPERATOR,
        group_id=g2.id, managed_by=m2.id, created_by=m2.id
    )
    _flushed(db, op1, op2)

    a1 = TikTokAccount(id=UUID(int=201), account_name="alpha_one", group_id=g1.id, created_by=m1.id)
    a2 = TikTokAccount(id=UUID(int=202), account_name="alpha_two", group_id=g1.id, created_by=m1.id)
    a3 = TikTokAccount(id=UUID(int=203), account_name="beta_one", group_id=g2.id, created_by=m2.id)
    _flushed(db, a1, a2, a3)

    db.commit()
    return SimpleNamespace(
        root=root, admin=admin, m1=m1, m2=m2, op1=op1, op2=op2,
        g1=g1, g2=g2, g3=g3, a1=a1, a2=a2, a3=a3,
    )


def make_sample(account_name, day, followers=0, likes=0, videos=0, following=0, **kwargs):
    """Sample captured at noon UTC of day."""
    return MetricSample(
        account_name=account_name,
        follower_count=followers,
        following_count=following,
        total_likes=likes,
        video_count=videos,
        captured_at=datetime.combine(day, time(12, 0), tzinfo=timezone.utc),
        **kwargs
    )


@pytest.fixture
def ingest(db):
    """Return a function that ingests a sample for an account on a given day."""
    service = SnapshotIngestionService(db)

    def _ingest(account, day: date, followers=0, likes=0, videos=0, following=0, **kwargs):
        sample = make_sample(account.account_name, day, followers, likes, videos, following, **kwargs)
        return service.ingest(account, sample)

    return _ingest


class FakeMetricSource(MetricSource):
    """
    Scripted metric source.

    outcomes maps an account name to a list of MetricSample or exception
    instances consumed one per call; the last one repeats. Unknown names
    raise NotFoundError.
    """

    def __init__(self):
        self.outcomes = {}
        self.calls = []
        self._lock = threading.Lock()

    def script(self, account_name, *outcomes):
        self.outcomes[account_name] = list(outcomes)

    def call_count(self, account_name):
        return self.calls.count(account_name)

    def fetch_sample(self, account_name, timeout=None):
        with self._lock:
            self.calls.append(account_name)
            queue = self.outcomes.get(account_name)
            if not queue:
                raise NotFoundError("tiktok_user", account_name)
            outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def metric_source():
    """Create a scripted metric source."""
    return FakeMetricSource()


@pytest.fixture
def sample_factory():
    """Return the make_sample helper."""
    return make_sample


@pytest.fixture
def file_engine(tmp_path):
    """
    Engine whose connections see each other's commits.

    A file-backed SQLite database (or TEST_DATABASE_URL when it is not
    SQLite), for tests that run several sessions at once.
    """
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = build_engine(f"sqlite:///{tmp_path / 'shared.db'}")
    else:
        engine = build_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        if engine.dialect.name != "sqlite":
            Base.metadata.drop_all(bind=engine)
        engine.dispose()
