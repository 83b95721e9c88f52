"""
Per-category configuration for the activity feed.

The source collections are not uniform: each one names its tenant and
"newness" timestamp fields differently and carries different text fields.
That heterogeneity lives here as data, resolved once at startup, so the
subscriber and aggregator never branch on the category.
"""
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional

from app.core.settings import CategoryOverride
from app.models.activity import ActivityItem, Category
from app.utils.timezone import parse_timestamp

logger = logging.getLogger(__name__)

_DANGLING = re.compile(r"^[\s\-:]+|[\s\-:]+$")


@dataclass(frozen=True)
class CategoryConfig:
    category: Category
    label: str
    collection: str
    tenant_field: str
    timestamp_field: str
    title_field: str
    message_template: str
    link_template: str


DEFAULT_CATEGORY_CONFIGS: dict[Category, CategoryConfig] = {
    Category.FAULTS: CategoryConfig(
        category=Category.FAULTS,
        label="New fault",
        collection="faults",
        tenant_field="company_id",
        timestamp_field="created_at",
        title_field="title",
        message_template="{site_name} - {description}",
        link_template="/faults/{id}",
    ),
    Category.WORK_REPORTS: CategoryConfig(
        category=Category.WORK_REPORTS,
        label="Work completed",
        collection="work_reports",
        tenant_field="company_id",
        timestamp_field="date",
        title_field="title",
        message_template="{site}: {work_done}",
        link_template="/work-reports/{id}",
    ),
    Category.SHIFT_NOTIFICATIONS: CategoryConfig(
        category=Category.SHIFT_NOTIFICATIONS,
        label="Shift note",
        collection="shift_notifications",
        tenant_field="company_id",
        timestamp_field="created_at",
        title_field="site_name",
        message_template="{shift_type} shift: {description}",
        link_template="/shift-notifications/{id}",
    ),
    Category.ELECTRICAL_MAINTENANCE: CategoryConfig(
        category=Category.ELECTRICAL_MAINTENANCE,
        label="Electrical maintenance",
        collection="electrical_maintenance",
        tenant_field="company_id",
        timestamp_field="date",
        title_field="site_name",
        message_template="Checked by {inspector}. {general_notes}",
        link_template="/electrical-maintenance/{id}",
    ),
    Category.MECHANICAL_MAINTENANCE: CategoryConfig(
        category=Category.MECHANICAL_MAINTENANCE,
        label="Mechanical maintenance",
        collection="mechanical_maintenance",
        tenant_field="company_id",
        timestamp_field="date",
        title_field="site_name",
        message_template="Checked by {inspector}. {general_notes}",
        link_template="/mechanical-maintenance/{id}",
    ),
    Category.INVERTER_CHECKS: CategoryConfig(
        category=Category.INVERTER_CHECKS,
        label="Inverter check",
        collection="inverter_checks",
        tenant_field="company_id",
        timestamp_field="date",
        title_field="site_name",
        message_template="{description}",
        link_template="/inverter-checks/{id}",
    ),
    Category.POWER_OUTAGES: CategoryConfig(
        category=Category.POWER_OUTAGES,
        label="Power outage",
        collection="power_outages",
        tenant_field="company_id",
        timestamp_field="start_time",
        title_field="site_name",
        message_template="{impact_area}: {description}",
        link_template="/power-outages/{id}",
    ),
}


class _BlankMissing(dict):
    def __missing__(self, key: str) -> str:
        return ""


def _render(template: str, document: Mapping[str, Any]) -> str:
    values = _BlankMissing({k: "" if v is None else v for k, v in document.items()})
    try:
        rendered = template.format_map(values)
    except (ValueError, IndexError, AttributeError) as exc:
        logger.warning("Bad template %r: %s", template, exc)
        return ""
    # Drop separators left dangling by empty fields, e.g. " - " or ": "
    return _DANGLING.sub("", rendered)


def resolve_category_configs(
    overrides: Optional[Mapping[str, CategoryOverride]] = None,
) -> dict[Category, CategoryConfig]:
    configs = dict(DEFAULT_CATEGORY_CONFIGS)
    for name, override in (overrides or {}).items():
        try:
            category = Category(name)
        except ValueError:
            logger.warning("Ignoring override for unknown category '%s'", name)
            continue
        changes = override.model_dump(exclude_none=True)
        if changes:
            configs[category] = replace(configs[category], **changes)
            logger.info("Category '%s' configured with overrides: %s", name, sorted(changes))
    return configs


def project_item(config: CategoryConfig, document: Mapping[str, Any]) -> Optional[ActivityItem]:
    """Builds the feed projection of a document, or None if it has no usable timestamp."""
    timestamp = parse_timestamp(document.get(config.timestamp_field))
    if timestamp is None:
        return None
    doc_id = str(document.get("id", ""))
    title = document.get(config.title_field)
    return ActivityItem(
        id=doc_id,
        category=config.category,
        title=str(title) if title else config.label,
        message=_render(config.message_template, document),
        timestamp=timestamp,
        target_link=config.link_template.format_map(_BlankMissing(id=doc_id)),
        source_collection=config.collection,
    )
