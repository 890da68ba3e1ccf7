import uuid
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..logging import structlog
from ..models.models import User
from ..schemas.rbts import UserResponse, UserRoleUpdate
from ..auth.security import require_capability
from ..services.access import Action, Actor, Role, is_super_admin_identity


router = APIRouter(prefix="/users", tags=["users"])
logger = structlog.get_logger(__name__)


def _load_user(db: Session, user_id: str) -> User:
    try:
        uid = uuid.UUID(str(user_id))
    except ValueError:
        raise HTTPException(status_code=404, detail="User not found")
    user = db.query(User).filter(User.id == uid).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("", response_model=List[UserResponse])
def list_users(db: Session = Depends(get_db), _=Depends(require_capability(Action.manage_users))):
    return db.query(User).order_by(User.email.asc()).all()


@router.patch("/{user_id}/role", response_model=UserResponse)
def update_user_role(
    user_id: str,
    payload: UserRoleUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability(Action.manage_users)),
):
    user = _load_user(db, user_id)
    if is_super_admin_identity(user.email) and payload.role.value != Role.super_admin.value:
        raise HTTPException(status_code=400, detail="The super admin cannot be demoted")
    previous = user.role
    user.role = payload.role.value
    db.commit()
    db.refresh(user)
    logger.info("user_role_changed", email=user.email, previous_role=previous, role=user.role, changed_by=actor.email)
    return user


@router.delete("/{user_id}")
def delete_user(
    user_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability(Action.manage_users)),
):
    user = _load_user(db, user_id)
    if is_super_admin_identity(user.email):
        raise HTTPException(status_code=400, detail="The super admin cannot be deleted")
    email = user.email
    db.delete(user)
    db.commit()
    logger.info("user_deleted", email=email, deleted_by=actor.email)
    return {"deleted": True}
