# normalize.py - Map raw CTMS records onto the canonical study/milestone shape
# Known fields are extracted through alias lists (field names drift between
# vault configurations); the untouched record is always kept as `data`.

import math
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional

from models import MilestoneKind, MilestonePriority, new_uuid

STUDY_NAME_FIELDS = ("name__v", "name", "study_name__v", "study_name__c")
STUDY_PHASE_FIELDS = ("study_phase__c", "study_phase__v", "phase__v", "phase")
STUDY_STATUS_FIELDS = ("study_status__c", "study_status__v", "status__v", "status")

MILESTONE_TITLE_FIELDS = ("milestone_name__c", "milestone_name__v", "name__v", "name")
MILESTONE_STATUS_FIELDS = ("milestone_status__c", "milestone_status__v", "status__v")
ORIGINAL_PLANNED_FIELDS = ("planned_date__c", "planned_date__v")
CURRENT_PLANNED_FIELDS = ("planned_finish_date__c", "planned_finish_date__v")
BASELINE_FIELDS = ("baseline_finish_date__c", "baseline_finish_date__v")
ACTUAL_FIELDS = ("actual_finish_date__c", "actual_finish_date__v")
PROGRESS_FIELDS = ("completion_percentage__c", "completion_percentage__v")
ASSIGNEE_FIELDS = ("assigned_to__c", "assigned_to__v")
PRIORITY_FIELDS = ("priority__c", "priority__v")
SITE_FIELDS = ("site__c", "site__v")

DEFAULT_MILESTONE_STATUS = "unknown"
DEFAULT_PRIORITY = MilestonePriority.MEDIUM.value


def first_value(record: Dict[str, Any], fields: Iterable[str]) -> Optional[Any]:
    for name in fields:
        value = record.get(name)
        if value not in (None, ""):
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, list):
        # picklists come back as single-element lists
        value = value[0] if value else None
        if value is None:
            return None
    return str(value)


def parse_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def parse_progress(value: Any) -> int:
    """Coerce a completion percentage to an int in 0..100 (missing or non-finite -> 0)."""
    if value in (None, ""):
        return 0
    try:
        progress = float(str(value).strip().rstrip("%"))
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(progress):
        return 0
    return max(0, min(100, int(round(progress))))


def normalize_study(record: Dict[str, Any], configuration_id: str, refreshed_at: datetime) -> Dict[str, Any]:
    study_id = _text(record.get("id"))
    return {
        "id": new_uuid(),
        "configuration_id": configuration_id,
        "study_id": study_id,
        "study_name": _text(first_value(record, STUDY_NAME_FIELDS)) or study_id,
        "phase": _text(first_value(record, STUDY_PHASE_FIELDS)),
        "status": _text(first_value(record, STUDY_STATUS_FIELDS)),
        "data": record,
        "last_updated": refreshed_at,
    }


def normalize_milestone(
    record: Dict[str, Any],
    configuration_id: str,
    study_id: str,
    kind: MilestoneKind,
    refreshed_at: datetime,
) -> Dict[str, Any]:
    site_id = _text(first_value(record, SITE_FIELDS)) if kind == MilestoneKind.SITE else None
    title = _text(first_value(record, MILESTONE_TITLE_FIELDS)) or _text(record.get("id")) or "Untitled milestone"
    priority = _text(first_value(record, PRIORITY_FIELDS))
    return {
        "id": new_uuid(),
        "configuration_id": configuration_id,
        "study_id": study_id,
        "site_id": site_id,
        "site_key": site_id or "",
        "milestone_type": kind,
        "title": title,
        "status": _text(first_value(record, MILESTONE_STATUS_FIELDS)) or DEFAULT_MILESTONE_STATUS,
        "due_date": parse_date(first_value(record, ORIGINAL_PLANNED_FIELDS)),
        "planned_finish_date": parse_date(first_value(record, CURRENT_PLANNED_FIELDS)),
        "baseline_finish_date": parse_date(first_value(record, BASELINE_FIELDS)),
        "actual_finish_date": parse_date(first_value(record, ACTUAL_FIELDS)),
        "progress": parse_progress(first_value(record, PROGRESS_FIELDS)),
        "assigned_to": _text(first_value(record, ASSIGNEE_FIELDS)),
        "priority": priority or DEFAULT_PRIORITY,
        "data": record,
        "last_updated": refreshed_at,
    }


def milestone_key(row: Dict[str, Any]) -> tuple:
    return (row["configuration_id"], row["study_id"], row["site_key"], row["title"])
