from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import Robot, Site
from ..schemas.rbts import (
    RobotCreate,
    RobotRow,
    StatusChangeRequest,
    FieldEditRequest,
    PartDateRequest,
    MutationResponse,
    HistoryResponse,
)
from ..auth.security import require_capability
from ..services.access import Action, Actor, can
from ..services.audit import get_history
from ..services.part_issues import UnknownPartError, PartNotSelectedError
from ..services.robots import (
    TEXT_FIELDS,
    TargetDateRequired,
    find_robot,
    scope_for,
    create_robot,
    delete_robot,
    list_robots,
    robot_to_row,
    apply_status_change,
    apply_field_edit,
    toggle_part_issue,
    set_part_issue_date,
)
from .clients import load_client, load_site


router = APIRouter(prefix="/clients", tags=["rbts"])


@contextmanager
def domain_errors():
    try:
        yield
    except UnknownPartError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PartNotSelectedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TargetDateRequired as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError:
        # Session already rolled back and logged by the audit logger
        raise HTTPException(status_code=500, detail="Update failed")


def load_robot(db: Session, client_name: str, site_name: str, rbt_id: str) -> Robot:
    client = load_client(db, client_name)
    site = load_site(db, client, site_name)
    robot = find_robot(db, site, rbt_id)
    if not robot:
        raise HTTPException(status_code=404, detail="RBT not found")
    return robot


def _mutation(db: Session, robot: Robot, changed: bool) -> MutationResponse:
    db.refresh(robot)
    return MutationResponse(changed=changed, rbt=RobotRow(**robot_to_row(robot)))


@router.get("/{client_name}/rbts", response_model=List[RobotRow])
def list_client_rbts(
    client_name: str,
    site: Optional[List[str]] = Query(None),
    since: Optional[datetime] = None,
    db: Session = Depends(get_db),
    _=Depends(require_capability(Action.read)),
):
    client = load_client(db, client_name)
    return [RobotRow(**robot_to_row(r)) for r in list_robots(db, client, site, since)]


@router.post("/{client_name}/sites/{site_name}/rbts", response_model=RobotRow, status_code=201)
def add_rbt(
    client_name: str,
    site_name: str,
    payload: RobotCreate,
    db: Session = Depends(get_db),
    _=Depends(require_capability(Action.add_robot)),
):
    client = load_client(db, client_name)
    site: Site = load_site(db, client, site_name)
    fields = {k: (v.strip() or None) for k, v in payload.dict(exclude_none=True).items()}
    try:
        robot = create_robot(db, site, fields)
    except SQLAlchemyError:
        db.rollback()
        raise HTTPException(status_code=500, detail="Update failed")
    return RobotRow(**robot_to_row(robot))


@router.get("/{client_name}/sites/{site_name}/rbts/{rbt_id}", response_model=RobotRow)
def get_rbt(
    client_name: str,
    site_name: str,
    rbt_id: str,
    db: Session = Depends(get_db),
    _=Depends(require_capability(Action.read)),
):
    return RobotRow(**robot_to_row(load_robot(db, client_name, site_name, rbt_id)))


@router.delete("/{client_name}/sites/{site_name}/rbts/{rbt_id}")
def remove_rbt(
    client_name: str,
    site_name: str,
    rbt_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability(Action.delete_robot)),
):
    robot = load_robot(db, client_name, site_name, rbt_id)
    with domain_errors():
        delete_robot(db, robot, actor)
    return {"deleted": True}


@router.post("/{client_name}/sites/{site_name}/rbts/{rbt_id}/status", response_model=MutationResponse)
def change_status(
    client_name: str,
    site_name: str,
    rbt_id: str,
    payload: StatusChangeRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability(Action.edit_status)),
):
    robot = load_robot(db, client_name, site_name, rbt_id)
    target_date = payload.target_date.isoformat() if payload.target_date else None
    with domain_errors():
        changed = apply_status_change(
            db,
            actor,
            robot,
            payload.field,
            payload.value,
            target_date=target_date,
            require_target_date=settings.require_target_date,
        )
    return _mutation(db, robot, changed)


@router.patch("/{client_name}/sites/{site_name}/rbts/{rbt_id}/fields", response_model=MutationResponse)
def edit_field(
    client_name: str,
    site_name: str,
    rbt_id: str,
    payload: FieldEditRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability(Action.edit_status)),
):
    # Free-text identifiers are super-admin only; work and target date follow status edits
    if payload.field in TEXT_FIELDS and not can(actor, Action.edit_text):
        raise HTTPException(status_code=403, detail="Forbidden")
    robot = load_robot(db, client_name, site_name, rbt_id)
    with domain_errors():
        changed = apply_field_edit(db, actor, robot, payload.field, payload.value)
    return _mutation(db, robot, changed)


@router.post("/{client_name}/sites/{site_name}/rbts/{rbt_id}/part-issues/{part}/toggle", response_model=MutationResponse)
def toggle_part(
    client_name: str,
    site_name: str,
    rbt_id: str,
    part: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability(Action.edit_parts)),
):
    robot = load_robot(db, client_name, site_name, rbt_id)
    with domain_errors():
        changed = toggle_part_issue(db, actor, robot, part)
    return _mutation(db, robot, changed)


@router.put("/{client_name}/sites/{site_name}/rbts/{rbt_id}/part-issues/{part}/{subfield}", response_model=MutationResponse)
def set_part_date(
    client_name: str,
    site_name: str,
    rbt_id: str,
    part: str,
    subfield: str,
    payload: PartDateRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability(Action.edit_parts)),
):
    robot = load_robot(db, client_name, site_name, rbt_id)
    value = payload.value.isoformat() if payload.value else None
    with domain_errors():
        changed = set_part_issue_date(db, actor, robot, part, subfield, value)
    return _mutation(db, robot, changed)


@router.get("/{client_name}/sites/{site_name}/rbts/{rbt_id}/history", response_model=List[HistoryResponse])
def rbt_history(
    client_name: str,
    site_name: str,
    rbt_id: str,
    db: Session = Depends(get_db),
    _=Depends(require_capability(Action.view_logs)),
):
    robot = load_robot(db, client_name, site_name, rbt_id)
    return get_history(db, scope_for(robot))
