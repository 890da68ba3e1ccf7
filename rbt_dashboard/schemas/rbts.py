import uuid
from datetime import date, datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Literal

from pydantic import BaseModel, Field, field_validator, ValidationInfo

from ..services.status_rules import RUNNING_STATUSES, BREAKDOWN_STATUSES


class RoleName(str, Enum):
    viewer = "viewer"
    admin = "admin"
    super_admin = "super_admin"


# Clients / sites
class ClientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class ClientResponse(BaseModel):
    id: uuid.UUID
    name: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SiteCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class SiteResponse(BaseModel):
    id: uuid.UUID
    name: str
    client: Optional[str] = None
    rbt_count: int = 0


# Robots
class RobotCreate(BaseModel):
    cleaner_did: Optional[str] = None
    tc_did: Optional[str] = None
    cl_pcb_model: Optional[str] = None
    tc_pcb_model: Optional[str] = None


class StatusChangeRequest(BaseModel):
    field: Literal["running_status", "breakdown_status"]
    value: str
    target_date: Optional[date] = None

    @field_validator("value")
    @classmethod
    def _value_in_domain(cls, v: str, info: ValidationInfo) -> str:
        allowed = RUNNING_STATUSES if info.data.get("field") == "running_status" else BREAKDOWN_STATUSES
        if v not in allowed:
            raise ValueError(f"must be one of: {', '.join(allowed)}")
        return v


class FieldEditRequest(BaseModel):
    field: Literal["work", "target_date", "cleaner_did", "tc_did", "cl_pcb_model", "tc_pcb_model"]
    value: Optional[str] = None


class PartDateRequest(BaseModel):
    value: Optional[date] = None


class RobotRow(BaseModel):
    id: str
    client: Optional[str] = None
    site: str
    running_status: str
    breakdown_status: str
    work: str = ""
    target_date: Optional[str] = None
    running_manual_at: Optional[datetime] = None
    running_not_running_at: Optional[datetime] = None
    ageing: int = 0
    part_issues: Dict[str, Dict[str, Any]] = {}
    selected_part_count: int = 0
    show_part_issues: bool = False
    cleaner_did: Optional[str] = None
    tc_did: Optional[str] = None
    cl_pcb_model: Optional[str] = None
    tc_pcb_model: Optional[str] = None
    last_updated: Optional[datetime] = None


class MutationResponse(BaseModel):
    changed: bool
    rbt: RobotRow


class DashboardSummary(BaseModel):
    total: int
    auto: int
    manual: int
    not_running: int


class DashboardResponse(BaseModel):
    client: str
    sites: List[str] = []
    summary: DashboardSummary
    rows: List[RobotRow] = []
    refresh_seconds: int
    generated_at: datetime


# Audit
class HistoryResponse(BaseModel):
    date_key: str
    data: Dict[str, Any] = {}
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LogResponse(BaseModel):
    id: uuid.UUID
    client: Optional[str] = None
    site: str
    rbt_id: str
    field: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    updated_by: Optional[str] = None
    timestamp: datetime

    class Config:
        from_attributes = True


# Users
class UserResponse(BaseModel):
    id: uuid.UUID
    email: str
    role: str
    email_verified: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_login_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserRoleUpdate(BaseModel):
    role: RoleName
