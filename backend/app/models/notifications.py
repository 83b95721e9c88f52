import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserNotificationState(Base):
    __tablename__ = "user_notification_state"
    __table_args__ = (
        UniqueConstraint("user_id", "role", "key", name="uq_user_notif_state_role_key"),
        {"extend_existing": True},
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    # Same user under another role keeps its own "seen" baseline
    role: Mapped[str] = mapped_column(String, nullable=False)

    # Category value, e.g. 'faults', 'power_outages'
    key: Mapped[str] = mapped_column(String, nullable=False)

    seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
