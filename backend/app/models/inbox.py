from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class InboxKind(str, Enum):
    FAULT = "fault"
    COMMENT = "comment"
    STATUS = "status"
    SYSTEM = "system"


class InboxNotification(BaseModel):
    """A message addressed to one user, with its own read flag."""

    model_config = ConfigDict(frozen=True)

    id: str
    recipient_id: str
    title: str
    message: str = ""
    kind: InboxKind = InboxKind.SYSTEM
    link: Optional[str] = None
    created_at: datetime
    read: bool = False
