import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

from app.core.datastore import KeyValueStore
from app.core.db import get_session_factory
from app.core.security import SessionIdentity
from app.core.settings import ActivityConfig, Settings
from app.models.activity import Category
from app.services.aggregator import ActivityAggregator
from app.services.categories import CategoryConfig, resolve_category_configs
from app.services.document_store import DocumentStore
from app.services.hidden_set import HiddenSet
from app.services.inbox import InboxService
from app.services.visibility import VisibilityController
from app.services.watermark_store import KeyValueWatermarkStore, SqlWatermarkStore, WatermarkStore

logger = logging.getLogger(__name__)


@dataclass
class ActivitySession:
    identity: SessionIdentity
    aggregator: ActivityAggregator
    controller: VisibilityController
    inbox: InboxService


class ActivitySessionManager:
    """
    Owns at most one running aggregator per user.

    When a user shows up with a different role or tenant, the old aggregator
    is stopped before the new one starts, so a stale stream can never deliver
    the previous tenant's records into the new session.
    """

    def __init__(
        self,
        document_store: DocumentStore,
        watermarks: WatermarkStore,
        kv_store: KeyValueStore,
        activity: Optional[ActivityConfig] = None,
        configs: Optional[Mapping[Category, CategoryConfig]] = None,
    ):
        self.document_store = document_store
        self.watermarks = watermarks
        self.kv_store = kv_store
        self.activity = activity or ActivityConfig()
        self.configs = dict(configs) if configs else resolve_category_configs(self.activity.categories)
        self._sessions: dict[str, ActivitySession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, user_id: str) -> Optional[ActivitySession]:
        return self._sessions.get(user_id)

    def _build(self, identity: SessionIdentity) -> ActivitySession:
        ttl_days = self.activity.hidden_ttl_days
        hidden = HiddenSet(
            self.kv_store,
            identity.user_id,
            ttl=timedelta(days=ttl_days) if ttl_days else None,
            max_entries=self.activity.hidden_max_entries,
        )
        aggregator = ActivityAggregator(
            self.document_store,
            self.watermarks,
            hidden,
            configs=self.configs,
            feed_limit=self.activity.feed_limit,
        )
        controller = VisibilityController(aggregator, self.watermarks, hidden, identity=identity)
        inbox = InboxService(self.document_store, identity, self.activity.inbox)
        return ActivitySession(identity=identity, aggregator=aggregator, controller=controller, inbox=inbox)

    async def open(self, identity: SessionIdentity) -> ActivitySession:
        async with self._lock:
            current = self._sessions.get(identity.user_id)
            if current is not None and current.identity == identity:
                return current
            if current is not None:
                logger.info(
                    "Identity changed for user %s (%s/%s -> %s/%s); restarting activity session",
                    identity.user_id,
                    current.identity.role,
                    current.identity.tenant_id,
                    identity.role,
                    identity.tenant_id,
                )
                del self._sessions[identity.user_id]
                await current.aggregator.stop()

            session = self._build(identity)
            await session.aggregator.start(identity)
            self._sessions[identity.user_id] = session
            return session

    async def close(self, user_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(user_id, None)
            if session is None:
                return False
            await session.aggregator.stop()
            return True

    async def close_all(self) -> None:
        async with self._lock:
            sessions, self._sessions = list(self._sessions.values()), {}
            for session in sessions:
                await session.aggregator.stop()
        if sessions:
            logger.info("Closed %d activity sessions", len(sessions))


def build_watermark_store(settings: Settings, kv_store: KeyValueStore) -> WatermarkStore:
    lookback = timedelta(minutes=settings.activity.default_lookback_minutes)
    session_factory = get_session_factory()
    if session_factory is not None:
        return SqlWatermarkStore(session_factory, default_lookback=lookback)
    return KeyValueWatermarkStore(kv_store, default_lookback=lookback)


def build_session_manager(settings: Settings, document_store: DocumentStore) -> ActivitySessionManager:
    kv_store = KeyValueStore(Path(settings.data.data_dir) / "activity_state.json")
    watermarks = build_watermark_store(settings, kv_store)
    logger.info("Activity watermarks stored via %s", type(watermarks).__name__)
    return ActivitySessionManager(document_store, watermarks, kv_store, activity=settings.activity)
