import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.datastore import KeyValueStore
from app.models.activity import Category
from app.models.notifications import UserNotificationState
from app.utils.timezone import ensure_utc, parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = timedelta(hours=1)


class WatermarkPersistenceError(Exception):
    """A "mark seen" write did not reach storage."""


class WatermarkStore(ABC):
    """
    Per (user, role, category) "last seen" instants.

    Reads never fail: a missing or unreadable watermark yields
    ``now - default_lookback``. Writes are immediate and raise
    ``WatermarkPersistenceError`` when they cannot be stored.
    """

    def __init__(self, default_lookback: timedelta = DEFAULT_LOOKBACK, clock: Callable[[], datetime] = utcnow):
        self.default_lookback = default_lookback
        self.clock = clock

    def default_watermark(self) -> datetime:
        return ensure_utc(self.clock()) - self.default_lookback

    async def get_watermark(self, user_id: str, role: str, category: Category) -> datetime:
        category = Category(category)
        try:
            stored = await self._read(user_id, role, category)
        except Exception as exc:
            logger.warning("Watermark read failed for %s/%s/%s, using default: %s", user_id, role, category.value, exc)
            stored = None
        return stored if stored is not None else self.default_watermark()

    async def set_watermark(self, user_id: str, role: str, category: Category, instant: datetime) -> None:
        category = Category(category)
        instant = ensure_utc(instant)
        await self._persist(self._write, user_id, role, category, instant)
        logger.debug("Watermark %s/%s/%s -> %s", user_id, role, category.value, instant.isoformat())

    async def advance_watermark(self, user_id: str, role: str, category: Category, instant: datetime) -> datetime:
        """
        Stores ``instant`` only if it is later than the stored watermark.

        Returns the watermark in effect afterwards, which is ``instant`` or
        a later value written by a concurrent caller.
        """
        category = Category(category)
        instant = ensure_utc(instant)
        effective = await self._persist(self._advance, user_id, role, category, instant)
        effective = ensure_utc(effective) if effective is not None else instant
        logger.debug("Watermark %s/%s/%s advanced to %s", user_id, role, category.value, effective.isoformat())
        return effective

    async def _persist(self, op, user_id: str, role: str, category: Category, instant: datetime):
        try:
            return await op(user_id, role, category, instant)
        except WatermarkPersistenceError:
            raise
        except Exception as exc:
            logger.exception("Failed to persist watermark for %s/%s/%s", user_id, role, category.value)
            raise WatermarkPersistenceError(str(exc)) from exc

    @abstractmethod
    async def _read(self, user_id: str, role: str, category: Category) -> Optional[datetime]:
        ...

    @abstractmethod
    async def _write(self, user_id: str, role: str, category: Category, instant: datetime) -> None:
        ...

    @abstractmethod
    async def _advance(self, user_id: str, role: str, category: Category, instant: datetime) -> Optional[datetime]:
        ...


class KeyValueWatermarkStore(WatermarkStore):
    def __init__(self, store: KeyValueStore, **kwargs):
        super().__init__(**kwargs)
        self.store = store

    @staticmethod
    def storage_key(user_id: str, role: str, category: Category) -> str:
        return f"watermark:{user_id}:{role}:{category.value}"

    async def _read(self, user_id: str, role: str, category: Category) -> Optional[datetime]:
        return parse_timestamp(self.store.get(self.storage_key(user_id, role, category)))

    async def _write(self, user_id: str, role: str, category: Category, instant: datetime) -> None:
        self.store.set(self.storage_key(user_id, role, category), to_iso(instant))

    async def _advance(self, user_id: str, role: str, category: Category, instant: datetime) -> Optional[datetime]:
        # No await between read and write, so this cannot interleave on the loop
        key = self.storage_key(user_id, role, category)
        current = parse_timestamp(self.store.get(key))
        if current is not None and current >= instant:
            return current
        self.store.set(key, to_iso(instant))
        return instant


class SqlWatermarkStore(WatermarkStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], **kwargs):
        super().__init__(**kwargs)
        self.session_factory = session_factory

    @staticmethod
    def _stmt(user_id: str, role: str, category: Category):
        return select(UserNotificationState).where(
            UserNotificationState.user_id == user_id,
            UserNotificationState.role == role,
            UserNotificationState.key == category.value,
        )

    async def _read(self, user_id: str, role: str, category: Category) -> Optional[datetime]:
        async with self.session_factory() as session:
            existing = (await session.execute(self._stmt(user_id, role, category))).scalars().first()
            return ensure_utc(existing.seen_at) if existing else None

    async def _write(self, user_id: str, role: str, category: Category, instant: datetime) -> None:
        async with self.session_factory() as session:
            try:
                existing = (await session.execute(self._stmt(user_id, role, category))).scalars().first()
                if existing:
                    existing.seen_at = instant
                else:
                    session.add(
                        UserNotificationState(
                            user_id=user_id,
                            role=role,
                            key=category.value,
                            seen_at=instant,
                        )
                    )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.exception("Failed to persist watermark for %s/%s/%s", user_id, role, category.value)
                raise WatermarkPersistenceError(str(exc)) from exc

    async def _advance(self, user_id: str, role: str, category: Category, instant: datetime) -> Optional[datetime]:
        for attempt in range(2):
            async with self.session_factory() as session:
                try:
                    result = await session.execute(
                        update(UserNotificationState)
                        .where(
                            UserNotificationState.user_id == user_id,
                            UserNotificationState.role == role,
                            UserNotificationState.key == category.value,
                            or_(UserNotificationState.seen_at.is_(None), UserNotificationState.seen_at < instant),
                        )
                        .values(seen_at=instant)
                    )
                    if result.rowcount == 0:
                        existing = (await session.execute(self._stmt(user_id, role, category))).scalars().first()
                        if existing is None:
                            session.add(
                                UserNotificationState(
                                    user_id=user_id,
                                    role=role,
                                    key=category.value,
                                    seen_at=instant,
                                )
                            )
                    await session.commit()
                except IntegrityError:
                    # A concurrent writer inserted the row first; the retry updates it
                    await session.rollback()
                    if attempt:
                        raise
                    continue
                except SQLAlchemyError as exc:
                    await session.rollback()
                    logger.exception("Failed to advance watermark for %s/%s/%s", user_id, role, category.value)
                    raise WatermarkPersistenceError(str(exc)) from exc
            break
        return await self._read(user_id, role, category)
