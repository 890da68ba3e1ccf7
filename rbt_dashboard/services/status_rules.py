"""
Status transition rules for robots.

Maps a requested change of running_status or breakdown_status to the full
set of field updates, including dependent status resets and ageing bases.
"""
from datetime import datetime
from typing import Dict, Any, Optional

AUTO = "Auto"
MANUAL = "Manual"
NOT_RUNNING = "Not Running"

BREAKDOWN_NONE = "N/A"
RUNNING_WITH_ISSUE = "Running With Issue"
BREAKDOWN = "Breakdown"

RUNNING_STATUSES = (AUTO, MANUAL, NOT_RUNNING)
BREAKDOWN_STATUSES = (BREAKDOWN_NONE, RUNNING_WITH_ISSUE, BREAKDOWN)
WORK_TYPES = (
    "Part Procurement",
    "Part In-Transit",
    "Part Installation",
    "Part Testing",
    "Trial",
    "Auto Scheduling",
)

STATUS_FIELDS = ("running_status", "breakdown_status")
BASIS_FIELDS = ("running_manual_at", "running_not_running_at")

_BASIS_FOR_STATUS = {
    MANUAL: "running_manual_at",
    NOT_RUNNING: "running_not_running_at",
}


def _validate(field: str, value: str) -> None:
    if field == "running_status":
        if value not in RUNNING_STATUSES:
            raise ValueError(f"Invalid running_status: {value!r}")
    elif field == "breakdown_status":
        if value not in BREAKDOWN_STATUSES:
            raise ValueError(f"Invalid breakdown_status: {value!r}")
    else:
        raise ValueError(f"Not a status field: {field!r}")


def _reset_to_nominal() -> Dict[str, Any]:
    return {
        "running_status": AUTO,
        "breakdown_status": BREAKDOWN_NONE,
        "running_manual_at": None,
        "running_not_running_at": None,
    }


def plan_status_change(
    current_running: Optional[str],
    current_breakdown: Optional[str],
    field: str,
    new_value: str,
    manual_at: Optional[datetime],
    not_running_at: Optional[datetime],
    now: datetime,
) -> Dict[str, Any]:
    """
    Compute every field to write for a status change.

    Returns a dict that always contains both status fields. Ageing bases are
    only included when they change.
    """
    _validate(field, new_value)
    running = current_running or AUTO
    breakdown = current_breakdown or BREAKDOWN_NONE

    if field == "running_status":
        if new_value == AUTO:
            return _reset_to_nominal()
        update = {
            "running_status": new_value,
            "breakdown_status": RUNNING_WITH_ISSUE if breakdown == BREAKDOWN_NONE else breakdown,
        }
        running = new_value
    else:
        if new_value == BREAKDOWN_NONE:
            return _reset_to_nominal()
        if running == AUTO:
            running = MANUAL
        update = {
            "running_status": running,
            "breakdown_status": new_value,
        }

    # First entry into a non-Auto status stamps its basis; never overwritten until Auto
    basis = _BASIS_FOR_STATUS[running]
    existing = manual_at if basis == "running_manual_at" else not_running_at
    if existing is None:
        update[basis] = now
    return update


def is_nominal(running_status: Optional[str], breakdown_status: Optional[str]) -> bool:
    return (running_status or AUTO) == AUTO and (breakdown_status or BREAKDOWN_NONE) == BREAKDOWN_NONE


def needs_target_date(update: Dict[str, Any]) -> bool:
    """A change that leaves the robot off-nominal asks for a planned resolution date."""
    return not is_nominal(update.get("running_status"), update.get("breakdown_status"))


def check_status_pair(running_status: Optional[str], breakdown_status: Optional[str]) -> None:
    """
    Reject an explicit (running, breakdown) pair the rules could never produce.

    Auto goes with N/A and nothing else. A pair with only one side set is
    left to plan_status_change.
    """
    if not running_status or not breakdown_status:
        return
    _validate("running_status", running_status)
    _validate("breakdown_status", breakdown_status)
    if (running_status == AUTO) != (breakdown_status == BREAKDOWN_NONE):
        raise ValueError(
            f"Inconsistent status pair: running_status={running_status!r} with breakdown_status={breakdown_status!r}"
        )
