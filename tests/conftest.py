"""Shared fixtures for the test suite."""

import asyncio
import os

from cryptography.fernet import Fernet

# Set required environment variables before importing pingtone modules
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pingtone.database.database import Base
from pingtone.models import UcmCluster, UcmNode
from pingtone.services.cluster_service import ClusterService
from pingtone.services.encryption_service import EncryptionService
from pingtone.services.entity_registry import get_entity_spec, ref_name
from pingtone.services.sync_target import SyncTargetType


class FakeAxlClient:
    """In-memory stand-in for AxlClient.

    Args:
        records: entity type -> records returned by list calls.
        details: entity type -> {key: record} returned by get calls; falls
            back to the listed record with that key.
        failures: (method, entity type) -> exceptions raised by successive
            calls, one per call, before calls start succeeding.
        always_fail: (method, entity type) -> exception raised on every call.
        delays: entity type -> seconds to sleep inside list calls.
        page_size: records per list page.
    """

    def __init__(
        self,
        records=None,
        details=None,
        failures=None,
        always_fail=None,
        delays=None,
        page_size=100,
        version="14.0.1.13900(3)",
        nodes=None,
    ):
        self.records = records or {}
        self.details = details or {}
        self.failures = {key: list(errors) for key, errors in (failures or {}).items()}
        self.always_fail = always_fail or {}
        self.delays = delays or {}
        self.page_size = page_size
        self.version = version
        self.nodes = nodes if nodes is not None else [
            {"processnode": "cucm-pub", "type": "Publisher"},
            {"processnode": "cucm-sub1", "type": "Subscriber"},
        ]
        self.calls = []
        self.events = []
        self.targets = []

    def __call__(self, target):
        self.targets.append(target)
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    def _maybe_fail(self, method, entity_type):
        key = (method, entity_type)
        if key in self.always_fail:
            raise self.always_fail[key]
        pending = self.failures.get(key)
        if pending:
            raise pending.pop(0)

    def count(self, method, entity_type=None):
        return sum(1 for call in self.calls if call[0] == method and (entity_type is None or call[1] == entity_type))

    async def get_version(self):
        self.calls.append(("get_version", None, None))
        self._maybe_fail("get_version", None)
        return self.version

    async def discover_nodes(self):
        self.calls.append(("discover_nodes", None, None))
        self._maybe_fail("discover_nodes", None)
        return self.nodes

    async def list(self, entity_type, page_token=None):
        self.calls.append(("list", entity_type, page_token))
        self.events.append(("list_start", entity_type))
        if entity_type in self.delays:
            await asyncio.sleep(self.delays[entity_type])
        self._maybe_fail("list", entity_type)
        skip = page_token or 0
        records = self.records.get(entity_type, [])
        page = records[skip:skip + self.page_size]
        next_token = skip + len(page) if skip + len(page) < len(records) else None
        self.events.append(("list_done", entity_type))
        return page, next_token

    async def list_all(self, entity_type):
        records = []
        token = None
        while True:
            page, token = await self.list(entity_type, token)
            records.extend(page)
            if token is None:
                return records

    async def get(self, entity_type, key):
        self.calls.append(("get", entity_type, key))
        self._maybe_fail("get", entity_type)
        self._maybe_fail("get", (entity_type, key))
        if key in self.details.get(entity_type, {}):
            return self.details[entity_type][key]
        spec = get_entity_spec(entity_type)
        for record in self.records.get(entity_type, []):
            if ref_name(record.get(spec.get_key)) == key:
                return dict(record)
        raise KeyError(key)


@pytest.fixture
def engine(tmp_path):
    """Create a fresh SQLite database per test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'pingtone-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def encryption_service():
    return EncryptionService(key=Fernet.generate_key().decode())


@pytest.fixture
def cluster(db, encryption_service):
    """A cluster with a publisher and one subscriber."""
    cluster = UcmCluster(
        name="HQ",
        hostname="10.0.0.10",
        username="axladmin",
        password_encrypted=encryption_service.encrypt("s3cret"),
        schema_version="14.0",
        version="14.0.1.13900(3)",
    )
    cluster.nodes.append(UcmNode(name="cucm-pub", hostname="10.0.0.10", node_role="publisher"))
    cluster.nodes.append(UcmNode(name="cucm-sub1", hostname="10.0.0.11", node_role="subscriber"))
    db.add(cluster)
    db.commit()
    db.refresh(cluster)
    return cluster


@pytest.fixture
def fake_client():
    return FakeAxlClient()


@pytest.fixture
def cluster_service(encryption_service, fake_client):
    return ClusterService(encryption_service, client_factory=fake_client)


@pytest.fixture
def target(db, cluster, cluster_service):
    """Immutable sync target for the cluster fixture."""
    return cluster_service.snapshot_target(db, SyncTargetType.CLUSTER, cluster.id)

