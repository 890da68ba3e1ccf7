"""
Robot registry: lookups, creation, deletion and the mutations that route
through the status rules, part-issue tracker and audit logger.
"""
import re
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any, Iterable, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import Client, Site, Robot
from .access import Actor
from .ageing import ageing_days, as_utc
from .audit import RobotScope, log_and_update, merge_history
from .part_issues import (
    EntityField,
    PartIssueField,
    default_part_issues,
    normalize_part_issues,
    selected_parts,
    show_part_editor,
    toggle_part,
    set_part_date,
)
from .status_rules import plan_status_change, needs_target_date, check_status_pair, WORK_TYPES

logger = structlog.get_logger(__name__)

RBT_ID_PATTERN = re.compile(r"^RBT(\d+)$")
TEXT_FIELDS = ("cleaner_did", "tc_did", "cl_pcb_model", "tc_pcb_model")


class TargetDateRequired(ValueError):
    pass


def rbt_number(rbt_id: str) -> int:
    digits = re.sub(r"\D", "", rbt_id or "")
    return int(digits) if digits else 0


# ---------- Lookups ----------

def find_client(db: Session, name: str) -> Optional[Client]:
    return db.query(Client).filter(func.lower(Client.name) == name.strip().lower()).first()


def find_site(db: Session, client: Client, name: str) -> Optional[Site]:
    return db.query(Site).filter(Site.client_id == client.id, Site.name == name).first()


def find_robot(db: Session, site: Site, rbt_id: str) -> Optional[Robot]:
    return db.query(Robot).filter(Robot.site_id == site.id, Robot.rbt_id == rbt_id).first()


def scope_for(robot: Robot) -> RobotScope:
    site = robot.site
    client = site.client.name if site.client is not None else None
    return RobotScope(client=client, site=site.name, rbt_id=robot.rbt_id)


# ---------- Create / delete ----------

def next_rbt_id(db: Session, site: Site) -> str:
    ids = [r for (r,) in db.query(Robot.rbt_id).filter(Robot.site_id == site.id).all()]
    highest = max((rbt_number(r) for r in ids), default=0)
    return f"RBT{highest + 1}"


def create_robot(db: Session, site: Site, fields: Optional[Dict[str, Any]] = None) -> Robot:
    robot = Robot(
        site_id=site.id,
        rbt_id=next_rbt_id(db, site),
        running_status="Auto",
        breakdown_status="N/A",
        part_issues=default_part_issues(),
        last_updated=datetime.now(timezone.utc),
    )
    for key, value in (fields or {}).items():
        if key in TEXT_FIELDS:
            setattr(robot, key, value)
    db.add(robot)
    db.commit()
    db.refresh(robot)
    logger.info("rbt_created", site=site.name, rbt_id=robot.rbt_id)
    return robot


def delete_robot(db: Session, robot: Robot, actor: Actor) -> None:
    """Irreversible. History and log rows for the robot are left in place."""
    scope = scope_for(robot)
    try:
        db.delete(robot)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("rbt_delete_failed", client=scope.client, site=scope.site, rbt_id=scope.rbt_id, error=str(e))
        raise
    logger.info("rbt_deleted", client=scope.client, site=scope.site, rbt_id=scope.rbt_id, deleted_by=actor.email)


# ---------- Reads ----------

def list_robots(
    db: Session,
    client: Client,
    site_names: Optional[Iterable[str]] = None,
    since: Optional[datetime] = None,
) -> List[Robot]:
    query = db.query(Robot).join(Site, Robot.site_id == Site.id).filter(Site.client_id == client.id)
    names = [s for s in (site_names or []) if s]
    if names:
        query = query.filter(Site.name.in_(names))
    if since:
        query = query.filter(Robot.last_updated >= as_utc(since))
    robots = query.all()
    robots.sort(key=lambda r: (r.site.name, rbt_number(r.rbt_id)))
    return robots


def robot_to_row(robot: Robot, now: Optional[datetime] = None) -> Dict[str, Any]:
    issues = normalize_part_issues(robot.part_issues)
    return {
        "id": robot.rbt_id,
        "client": robot.site.client.name if robot.site.client is not None else None,
        "site": robot.site.name,
        "running_status": robot.running_status or "Auto",
        "breakdown_status": robot.breakdown_status or "N/A",
        "work": robot.work or "",
        "target_date": robot.target_date,
        "running_manual_at": as_utc(robot.running_manual_at),
        "running_not_running_at": as_utc(robot.running_not_running_at),
        "ageing": ageing_days(robot.running_status, robot.running_manual_at, robot.running_not_running_at, now),
        "part_issues": issues,
        "selected_part_count": len(selected_parts(issues)),
        "show_part_issues": show_part_editor(robot.running_status, robot.breakdown_status),
        "cleaner_did": robot.cleaner_did,
        "tc_did": robot.tc_did,
        "cl_pcb_model": robot.cl_pcb_model,
        "tc_pcb_model": robot.tc_pcb_model,
        "last_updated": as_utc(robot.last_updated),
    }


# ---------- Mutations ----------

def apply_status_change(
    db: Session,
    actor: Actor,
    robot: Robot,
    field: str,
    new_value: str,
    target_date: Optional[str] = None,
    require_target_date: bool = True,
    now: Optional[datetime] = None,
) -> bool:
    now = now or datetime.now(timezone.utc)
    old_value = getattr(robot, field)
    update = plan_status_change(
        robot.running_status,
        robot.breakdown_status,
        field,
        new_value,
        robot.running_manual_at,
        robot.running_not_running_at,
        now,
    )
    if old_value == new_value:
        return False
    if needs_target_date(update):
        if target_date:
            update["target_date"] = target_date
        elif require_target_date and not robot.target_date:
            raise TargetDateRequired("A target date is required to confirm this status change")
    side_effects = {k: v for k, v in update.items() if k != field}
    return log_and_update(db, actor, robot, scope_for(robot), EntityField(field), old_value, new_value, side_effects, now=now)


def apply_field_edit(db: Session, actor: Actor, robot: Robot, field: str, value: Optional[str]) -> bool:
    if field == "work":
        if value and value not in WORK_TYPES:
            raise ValueError(f"Invalid work: {value!r}")
    elif field == "target_date":
        if value and value.strip():
            date.fromisoformat(value.strip())
    elif field not in TEXT_FIELDS:
        raise ValueError(f"Field {field!r} cannot be edited directly")
    if isinstance(value, str):
        value = value.strip()
    return log_and_update(db, actor, robot, scope_for(robot), EntityField(field), getattr(robot, field) or None, value or None)


def toggle_part_issue(db: Session, actor: Actor, robot: Robot, part: str) -> bool:
    current = normalize_part_issues(robot.part_issues)
    updated = toggle_part(current, part)
    return log_and_update(db, actor, robot, scope_for(robot), PartIssueField(part), current[part], updated[part])


def set_part_issue_date(db: Session, actor: Actor, robot: Robot, part: str, subfield: str, value: Optional[str]) -> bool:
    current = normalize_part_issues(robot.part_issues)
    updated = set_part_date(current, part, subfield, value)
    return log_and_update(
        db,
        actor,
        robot,
        scope_for(robot),
        PartIssueField(part, subfield),
        current[part][subfield],
        updated[part][subfield],
    )


# ---------- Bulk maintenance ----------

def ensure_site(db: Session, client: Optional[Client], name: str) -> Site:
    query = db.query(Site).filter(Site.name == name)
    query = query.filter(Site.client_id == client.id) if client else query.filter(Site.client_id.is_(None))
    site = query.first()
    if site is None:
        site = Site(client_id=client.id if client else None, name=name)
        db.add(site)
        db.flush()
    return site


def upsert_bulk_row(db: Session, client: Optional[Client], parsed: Dict[str, Any], now: Optional[datetime] = None) -> Tuple[Robot, bool]:
    """
    Create or update one robot from a parsed bulk-upload row.

    Status columns go through the transition rules so the stored state stays
    consistent; a contradictory pair raises ValueError before anything is
    written. Part dates are merged into the existing map. Commits.
    """
    fields = dict(parsed.get("fields") or {})
    check_status_pair(fields.get("running_status"), fields.get("breakdown_status"))

    now = now or datetime.now(timezone.utc)
    site = ensure_site(db, client, parsed["site"])
    robot = find_robot(db, site, parsed["rbt_id"])
    created = robot is None
    if created:
        robot = Robot(
            site_id=site.id,
            rbt_id=parsed["rbt_id"],
            running_status="Auto",
            breakdown_status="N/A",
            part_issues=default_part_issues(),
        )
        db.add(robot)

    for name in TEXT_FIELDS:
        if fields.get(name) is not None:
            setattr(robot, name, fields[name])
    if fields.get("work"):
        robot.work = fields["work"]
    for status_field in ("running_status", "breakdown_status"):
        value = fields.get(status_field)
        if not value:
            continue
        update = plan_status_change(
            robot.running_status,
            robot.breakdown_status,
            status_field,
            value,
            robot.running_manual_at,
            robot.running_not_running_at,
            now,
        )
        for key, v in update.items():
            setattr(robot, key, v)

    issues = normalize_part_issues(robot.part_issues)
    for part, entry in (parsed.get("part_issues") or {}).items():
        issues[part] = dict(entry)
    robot.part_issues = issues
    robot.last_updated = now
    db.commit()
    db.refresh(robot)
    return robot, created


def canonicalize_part_issues(db: Session, client: Client, actor: Actor, now: Optional[datetime] = None) -> int:
    """
    Rewrite every robot of a client onto the canonical part catalog, dropping
    stale keys. Today's history row records the rewritten map. Returns the
    number of robots whose map changed.
    """
    now = now or datetime.now(timezone.utc)
    changed = 0
    for robot in list_robots(db, client):
        issues = normalize_part_issues(robot.part_issues)
        if issues == (robot.part_issues or {}):
            continue
        robot.part_issues = issues
        robot.last_updated = now
        merge_history(db, scope_for(robot), {"part_issues": issues, "last_updated": now}, actor, now)
        changed += 1
    db.commit()
    return changed
