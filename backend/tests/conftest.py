import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings are read at import time by app.main
os.environ.setdefault("JWT_SECRET", "test-secret-please-change-me")
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="ges-activity-"))
os.environ.setdefault("CONFIG_PATH", str(ROOT / "tests" / "missing-config.json"))
os.environ.pop("DATABASE_URL", None)

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import app.models  # noqa: F401
from app.core.datastore import KeyValueStore
from app.core.db import Base
from app.core.security import SessionIdentity
from app.services.aggregator import ActivityAggregator
from app.services.document_store import InMemoryDocumentStore
from app.services.hidden_set import HiddenSet
from app.services.visibility import VisibilityController
from app.services.watermark_store import KeyValueWatermarkStore


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


NOON = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOON)


@pytest.fixture
def identity() -> SessionIdentity:
    return SessionIdentity(user_id="u1", role="operator", tenant_id="T1")


@pytest.fixture
def doc_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def kv_store(tmp_path) -> KeyValueStore:
    return KeyValueStore(tmp_path / "activity_state.json")


@pytest.fixture
def watermarks(kv_store, clock) -> KeyValueWatermarkStore:
    return KeyValueWatermarkStore(kv_store, clock=clock)


@pytest.fixture
def hidden(kv_store, clock, identity) -> HiddenSet:
    return HiddenSet(kv_store, identity.user_id, clock=clock)


@pytest.fixture
async def aggregator(doc_store, watermarks, hidden):
    agg = ActivityAggregator(doc_store, watermarks, hidden)
    yield agg
    await agg.stop()


@pytest.fixture
def controller(aggregator, watermarks, hidden, clock) -> VisibilityController:
    return VisibilityController(aggregator, watermarks, hidden, clock=clock)


def fault(doc_id: str, at: datetime, tenant: str = "T1", **extra) -> dict:
    return {"id": doc_id, "company_id": tenant, "created_at": at, "title": f"Fault {doc_id}", **extra}


@pytest.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()
