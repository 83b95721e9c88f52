from datetime import datetime
from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict


class Category(str, Enum):
    FAULTS = "faults"
    WORK_REPORTS = "work_reports"
    SHIFT_NOTIFICATIONS = "shift_notifications"
    ELECTRICAL_MAINTENANCE = "electrical_maintenance"
    MECHANICAL_MAINTENANCE = "mechanical_maintenance"
    INVERTER_CHECKS = "inverter_checks"
    POWER_OUTAGES = "power_outages"


class ItemKey(NamedTuple):
    category: Category
    id: str

    def encode(self) -> str:
        return f"{self.category.value}/{self.id}"

    @classmethod
    def decode(cls, raw: str) -> "ItemKey":
        category, _, item_id = raw.partition("/")
        return cls(Category(category), item_id)


class ActivityItem(BaseModel):
    """Read-only projection of one source record into the feed."""

    model_config = ConfigDict(frozen=True)

    id: str
    category: Category
    title: str
    message: str
    timestamp: datetime
    target_link: str
    source_collection: str

    @property
    def key(self) -> ItemKey:
        return ItemKey(self.category, self.id)
