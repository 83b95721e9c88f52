from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.models.activity import ActivityItem, Category
from app.models.inbox import InboxKind, InboxNotification


class CountsResponse(BaseModel):
    counts: dict[str, int]
    total_count: int
    # Categories whose stream is currently failing; they count as zero
    degraded: list[str] = Field(default_factory=list)


class SummaryResponse(CountsResponse):
    feed: list[ActivityItem]


class SeenResponse(BaseModel):
    category: Category
    watermark: datetime


class HideRequest(BaseModel):
    category: Category
    id: str = Field(min_length=1)


class HideResponse(BaseModel):
    hidden: int


class RecordCreated(BaseModel):
    id: str
    collection: str


RecordPayload = dict[str, Any]


class RefreshResponse(CountsResponse):
    reopened: int


class InboxResponse(BaseModel):
    items: list[InboxNotification]
    unread_count: int


class InboxPostRequest(BaseModel):
    recipient_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    message: str = ""
    kind: InboxKind = InboxKind.SYSTEM
    link: Optional[str] = None


class InboxReadResponse(BaseModel):
    read: int
