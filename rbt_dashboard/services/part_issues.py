"""
Part-issue tracking.

Each robot carries a complete map over the fixed part catalog. Selection is
checkbox driven: a part must be selected before its dispatch/delivery dates
can be set, and deselecting a part clears both dates.
"""
import copy
from dataclasses import dataclass
from typing import Dict, Optional, Union

from .status_rules import AUTO, BREAKDOWN_NONE

PART_CATALOG = (
    "ANTENA CABLE",
    "ANTENA PORT",
    "BATTERY",
    "BATTERY BOX",
    "BRUSH MOTOR",
    "CHARGE CONTROLLER",
    "GUIDE WHEEL 1",
    "GUIDE WHEEL 2",
    "GUIDE WHEEL 3",
    "GUIDE WHEEL 4",
    "HOME SENSOR",
    "LIMIT SWITCH 1",
    "LIMIT SWITCH 2",
    "LOAD WHEEL 1",
    "LOAD WHEEL 2",
    "LOAD WHEEL 3",
    "LOAD WHEEL 4",
    "LOAD WHEEL 5",
    "LOAD WHEEL 6",
    "LT 1",
    "LT 2",
    "PCB BOX",
    "PULSE COUNT",
    "PV MODULE",
    "REPEATER PCB",
    "RTC",
    "SS PIPE",
    "SSC",
    "STEPPER DRIVE",
    "STEPPER MOTOR",
    "TC BELT",
    "TC LOAD WHEEL",
    "XBEE",
)

DATE_SUBFIELDS = ("dispatch_date", "delivery_date")
PART_SUBFIELDS = ("selected",) + DATE_SUBFIELDS


class PartIssueError(ValueError):
    pass


class UnknownPartError(PartIssueError):
    def __init__(self, part: str):
        super().__init__(f"Unknown part: {part!r}")
        self.part = part


class PartNotSelectedError(PartIssueError):
    def __init__(self, part: str):
        super().__init__(f"Part {part!r} is not selected")
        self.part = part


# ---------- Field paths ----------

@dataclass(frozen=True)
class EntityField:
    name: str

    def to_path(self) -> str:
        return self.name


@dataclass(frozen=True)
class PartIssueField:
    part: str
    subfield: Optional[str] = None

    def __post_init__(self):
        validate_part(self.part)
        if self.subfield is not None and self.subfield not in PART_SUBFIELDS:
            raise PartIssueError(f"Unknown part field: {self.subfield!r}")

    def to_path(self) -> str:
        if self.subfield is None:
            return f"part_issues.{self.part}"
        return f"part_issues.{self.part}.{self.subfield}"


FieldPath = Union[EntityField, PartIssueField]


def field_path_str(path: FieldPath) -> str:
    if isinstance(path, PartIssueField):
        return path.to_path()
    if isinstance(path, EntityField):
        return path.to_path()
    raise TypeError(f"Unsupported field path: {path!r}")


def parse_field_path(value: str) -> FieldPath:
    if not value.startswith("part_issues."):
        return EntityField(value)
    rest = value[len("part_issues."):]
    # Part names contain spaces but never dots
    if "." in rest:
        part, subfield = rest.split(".", 1)
        return PartIssueField(part, subfield)
    return PartIssueField(rest)


# ---------- Catalog ----------

def validate_part(part: str) -> str:
    if part not in PART_CATALOG:
        raise UnknownPartError(part)
    return part


def empty_part() -> Dict[str, Optional[Union[bool, str]]]:
    return {"selected": False, "dispatch_date": None, "delivery_date": None}


def default_part_issues() -> Dict[str, dict]:
    return {part: empty_part() for part in PART_CATALOG}


def _clean_date(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def normalize_part_issues(raw: Optional[dict]) -> Dict[str, dict]:
    """Complete map over the catalog. Unknown keys are dropped, empty dates become None."""
    issues = default_part_issues()
    for part, entry in (raw or {}).items():
        if part not in issues or not isinstance(entry, dict):
            continue
        dispatch = _clean_date(entry.get("dispatch_date"))
        delivery = _clean_date(entry.get("delivery_date"))
        selected = entry.get("selected")
        if selected is None:
            # Rows imported before selection existed: a date implies selection
            selected = bool(dispatch or delivery)
        issues[part] = {
            "selected": bool(selected),
            "dispatch_date": dispatch,
            "delivery_date": delivery,
        }
    return issues


def selected_parts(issues: Optional[dict]) -> list:
    return [part for part, entry in (issues or {}).items() if isinstance(entry, dict) and entry.get("selected")]


def show_part_editor(running_status: Optional[str], breakdown_status: Optional[str]) -> bool:
    return (running_status or AUTO) != AUTO or (breakdown_status or BREAKDOWN_NONE) != BREAKDOWN_NONE


# ---------- Mutations (pure; return new maps) ----------

def toggle_part(issues: Optional[dict], part: str) -> Dict[str, dict]:
    validate_part(part)
    updated = copy.deepcopy(normalize_part_issues(issues))
    now_selected = not updated[part]["selected"]
    # Both directions start from empty dates
    updated[part] = {"selected": now_selected, "dispatch_date": None, "delivery_date": None}
    return updated


def set_part_date(issues: Optional[dict], part: str, subfield: str, value: Optional[str]) -> Dict[str, dict]:
    validate_part(part)
    if subfield not in DATE_SUBFIELDS:
        raise PartIssueError(f"Not a date field: {subfield!r}")
    updated = copy.deepcopy(normalize_part_issues(issues))
    if not updated[part]["selected"]:
        raise PartNotSelectedError(part)
    updated[part][subfield] = _clean_date(value)
    return updated


def parts_with_dates(issues: Optional[dict]) -> Dict[str, dict]:
    """Only parts that carry at least one date, as used by log/CSV summaries."""
    out = {}
    for part, entry in (issues or {}).items():
        if not isinstance(entry, dict):
            continue
        dispatch = _clean_date(entry.get("dispatch_date"))
        delivery = _clean_date(entry.get("delivery_date"))
        if dispatch or delivery:
            out[part] = {"dispatch_date": dispatch, "delivery_date": delivery}
    return out
