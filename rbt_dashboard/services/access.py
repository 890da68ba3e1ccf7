"""
Role/access gate.

Authorization is driven only by the role stored on the user record.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..config import settings


class Role(str, Enum):
    viewer = "viewer"
    admin = "admin"
    super_admin = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def __ge__(self, other):
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank >= other.rank

    def __gt__(self, other):
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank > other.rank

    def __le__(self, other):
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank <= other.rank

    def __lt__(self, other):
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank < other.rank


_ROLE_RANK = {Role.viewer: 0, Role.admin: 1, Role.super_admin: 2}


class Action(str, Enum):
    read = "read"
    edit_status = "edit_status"
    edit_parts = "edit_parts"
    add_robot = "add_robot"
    view_logs = "view_logs"
    manage_sites = "manage_sites"
    edit_text = "edit_text"
    delete_robot = "delete_robot"
    manage_users = "manage_users"


# Minimum role for each action
_ACTION_MIN_ROLE = {
    Action.read: Role.viewer,
    Action.edit_status: Role.admin,
    Action.edit_parts: Role.admin,
    Action.add_robot: Role.admin,
    Action.view_logs: Role.admin,
    Action.manage_sites: Role.admin,
    Action.edit_text: Role.super_admin,
    Action.delete_robot: Role.super_admin,
    Action.manage_users: Role.super_admin,
}


@dataclass(frozen=True)
class Actor:
    """The authenticated identity, passed explicitly to every rule and logger call."""
    uid: str
    email: str
    role: Role


def normalize_role(value: Optional[str]) -> Role:
    try:
        return Role(value)
    except ValueError:
        return Role.viewer


def can(actor: Optional[Actor], action: Action) -> bool:
    if actor is None:
        return False
    return actor.role >= _ACTION_MIN_ROLE[action]


def is_super_admin_identity(email: Optional[str]) -> bool:
    if not email or not settings.super_admin_email:
        return False
    return email.strip().lower() == settings.super_admin_email.strip().lower()


def bootstrap_role(email: str) -> Role:
    """Initial role for a brand new profile. Only used once, at creation."""
    if is_super_admin_identity(email):
        return Role.super_admin
    domain = (settings.admin_bootstrap_domain or "").strip().lower()
    if domain and email.strip().lower().endswith(f"@{domain}"):
        return Role.admin
    return Role.viewer
