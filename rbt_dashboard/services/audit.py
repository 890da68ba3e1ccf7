"""
Audit logging service.

Every robot field mutation produces three writes: the entity update, a merge
into the robot's history row for the current UTC day, and an append-only log
row with before/after values. The three are staged in one session and
committed together.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timezone, date
from typing import Optional, Dict, Any, List, Iterable, Tuple

import structlog
from sqlalchemy.orm import Session

from ..models.models import Robot, RobotHistory, RobotLog
from .access import Actor
from .ageing import as_utc
from .part_issues import FieldPath, EntityField, PartIssueField, normalize_part_issues, field_path_str
from .status_rules import STATUS_FIELDS

logger = structlog.get_logger(__name__)

EMPTY_PLACEHOLDER = "-"

# Side-effect fields that get their own log row when they change
LOGGED_SIDE_EFFECTS = STATUS_FIELDS + ("target_date",)


@dataclass(frozen=True)
class RobotScope:
    client: Optional[str]
    site: str
    rbt_id: str


def serialize_value(value: Any) -> str:
    if value is None or value == "":
        return EMPTY_PLACEHOLDER
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def history_date_key(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


def _apply_to_entity(robot: Robot, path: FieldPath, value: Any) -> None:
    if isinstance(path, PartIssueField):
        issues = normalize_part_issues(robot.part_issues)
        if path.subfield is None:
            issues[path.part] = dict(value)
        else:
            issues[path.part][path.subfield] = value
        # Reassign so the JSON column is flagged dirty
        robot.part_issues = issues
    elif isinstance(path, EntityField):
        setattr(robot, path.name, value)
    else:
        raise TypeError(f"Unsupported field path: {path!r}")


def merge_history(db: Session, scope: RobotScope, changes: Dict[str, Any], actor: Actor, now: datetime) -> RobotHistory:
    date_key = history_date_key(now)
    row = db.query(RobotHistory).filter(
        RobotHistory.client == scope.client,
        RobotHistory.site == scope.site,
        RobotHistory.rbt_id == scope.rbt_id,
        RobotHistory.date_key == date_key,
    ).first()
    if row is None:
        row = RobotHistory(client=scope.client, site=scope.site, rbt_id=scope.rbt_id, date_key=date_key, data={})
        db.add(row)
    data = dict(row.data or {})
    for key, value in changes.items():
        data[key] = _jsonable(value)
    row.data = data
    row.updated_by = actor.email
    row.updated_at = now
    return row


def _log_row(scope: RobotScope, field: str, old_value: Any, new_value: Any, actor: Actor, now: datetime) -> RobotLog:
    return RobotLog(
        client=scope.client,
        site=scope.site,
        rbt_id=scope.rbt_id,
        field=field,
        old_value=serialize_value(old_value),
        new_value=serialize_value(new_value),
        updated_by=actor.email or "unknown",
        timestamp=now,
    )


def log_and_update(
    db: Session,
    actor: Actor,
    robot: Robot,
    scope: RobotScope,
    field_path: FieldPath,
    old_value: Any,
    new_value: Any,
    side_effects: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Persist one field change with its history merge and audit log row.

    Args:
        db: Database session
        actor: Who is making the change
        robot: The robot entity being changed
        scope: client/site/rbt identity used for history and log rows
        field_path: EntityField or PartIssueField being changed
        old_value: Value before the change, as seen by the caller
        new_value: Value after the change
        side_effects: Extra entity fields computed by the transition rules
        now: Timestamp override

    Returns:
        False when old and new values are equal (nothing written), True otherwise.
    """
    if old_value == new_value:
        return False

    now = now or datetime.now(timezone.utc)
    path = field_path_str(field_path)
    side_effects = dict(side_effects or {})
    previous = {key: getattr(robot, key) for key in side_effects}

    try:
        # 1) entity
        _apply_to_entity(robot, field_path, new_value)
        for key, value in side_effects.items():
            setattr(robot, key, value)
        robot.last_updated = now

        # 2) per-day history
        changes = {path: new_value}
        changes.update(side_effects)
        merge_history(db, scope, changes, actor, now)

        # 3) append-only log; dependent fields that changed get their own rows
        db.add(_log_row(scope, path, old_value, new_value, actor, now))
        for key in LOGGED_SIDE_EFFECTS:
            if key in side_effects and key != path and previous[key] != side_effects[key]:
                db.add(_log_row(scope, key, previous[key], side_effects[key], actor, now))

        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(
            "rbt_update_failed",
            client=scope.client,
            site=scope.site,
            rbt_id=scope.rbt_id,
            field=path,
            error=str(e),
        )
        raise

    logger.info(
        "rbt_field_updated",
        client=scope.client,
        site=scope.site,
        rbt_id=scope.rbt_id,
        field=path,
        updated_by=actor.email,
    )
    return True


def get_logs(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    client: Optional[str] = None,
    limit: int = 1000,
    offset: int = 0,
) -> List[RobotLog]:
    """
    Get audit log rows, newest first.

    Args:
        db: Database session
        start: Inclusive lower bound on timestamp
        end: Inclusive upper bound on timestamp
        client: Filter by client name
        limit: Maximum number of results
        offset: Offset for pagination
    """
    query = db.query(RobotLog)
    if start:
        query = query.filter(RobotLog.timestamp >= as_utc(start))
    if end:
        query = query.filter(RobotLog.timestamp <= as_utc(end))
    if client:
        query = query.filter(RobotLog.client == client)
    query = query.order_by(RobotLog.timestamp.desc())
    return query.limit(limit).offset(offset).all()


def get_history(db: Session, scope: RobotScope) -> List[RobotHistory]:
    return db.query(RobotHistory).filter(
        RobotHistory.client == scope.client,
        RobotHistory.site == scope.site,
        RobotHistory.rbt_id == scope.rbt_id,
    ).order_by(RobotHistory.date_key.desc()).all()


def rekey_legacy_rows(
    db: Session,
    site: str,
    client: str,
    rbt_ids: Optional[Iterable[str]] = None,
) -> Tuple[int, int, int]:
    """
    Move history and log rows recorded without a client under ``client``.

    Only rows of ``rbt_ids`` are touched (every robot of the site when None).
    A history day that already exists under the client keeps its legacy row,
    since the pair would clash on uq_rbt_history_day. Does not commit.

    Returns:
        (history rows moved, log rows moved, history rows left behind)
    """
    ids = None if rbt_ids is None else list(rbt_ids)
    if ids is not None and not ids:
        return 0, 0, 0

    history_q = db.query(RobotHistory).filter(RobotHistory.client.is_(None), RobotHistory.site == site)
    taken_q = db.query(RobotHistory.rbt_id, RobotHistory.date_key).filter(
        RobotHistory.client == client, RobotHistory.site == site
    )
    log_q = db.query(RobotLog).filter(RobotLog.client.is_(None), RobotLog.site == site)
    if ids is not None:
        history_q = history_q.filter(RobotHistory.rbt_id.in_(ids))
        taken_q = taken_q.filter(RobotHistory.rbt_id.in_(ids))
        log_q = log_q.filter(RobotLog.rbt_id.in_(ids))

    taken = set(taken_q.all())
    moved = skipped = 0
    for row in history_q.all():
        if (row.rbt_id, row.date_key) in taken:
            skipped += 1
            continue
        row.client = client
        moved += 1
    logs = log_q.update({RobotLog.client: client}, synchronize_session=False)
    return moved, logs, skipped
