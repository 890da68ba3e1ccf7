import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), default="viewer", nullable=False)  # viewer|admin|super_admin
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class EmailVerification(Base):
    __tablename__ = "email_verifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"))
    token: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id: Mapped[uuid.UUID] = uuid_pk()
    jti: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    sites = relationship("Site", back_populates="client", order_by="Site.name")


class Site(Base):
    """Physical location under a client. client_id is NULL only for legacy rows awaiting migration."""
    __tablename__ = "sites"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    client = relationship("Client", back_populates="sites")
    rbts = relationship("Robot", back_populates="site", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("client_id", "name", name="uq_site_client_name"),
    )


class Robot(Base):
    """A tracked robot unit (RBT), identified by rbt_id within its site"""
    __tablename__ = "rbts"

    id: Mapped[uuid.UUID] = uuid_pk()
    site_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True)
    rbt_id: Mapped[str] = mapped_column(String(50), nullable=False)  # RBT<n>
    running_status: Mapped[str] = mapped_column(String(50), default="Auto", nullable=False)  # Auto|Manual|Not Running
    breakdown_status: Mapped[str] = mapped_column(String(50), default="N/A", nullable=False)  # N/A|Running With Issue|Breakdown
    work: Mapped[Optional[str]] = mapped_column(String(100))
    # Ageing bases: set on first entry into the status, cleared on return to Auto
    running_manual_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    running_not_running_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    target_date: Mapped[Optional[str]] = mapped_column(String(10))  # YYYY-MM-DD
    part_issues: Mapped[Optional[dict]] = mapped_column(JSON)  # {PART: {selected, dispatch_date, delivery_date}}
    cleaner_did: Mapped[Optional[str]] = mapped_column(String(255))
    tc_did: Mapped[Optional[str]] = mapped_column(String(255))
    cl_pcb_model: Mapped[Optional[str]] = mapped_column(String(100))
    tc_pcb_model: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    last_updated: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    site = relationship("Site", back_populates="rbts")

    __table_args__ = (
        UniqueConstraint("site_id", "rbt_id", name="uq_rbt_site_rbt_id"),
    )


class RobotHistory(Base):
    """Per-robot, per-day merged snapshot of changed fields. Keyed by names, not FKs."""
    __tablename__ = "rbt_history"

    id: Mapped[uuid.UUID] = uuid_pk()
    client: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    site: Mapped[str] = mapped_column(String(255), nullable=False)
    rbt_id: Mapped[str] = mapped_column(String(50), nullable=False)
    date_key: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD (UTC)
    data: Mapped[Optional[dict]] = mapped_column(JSON)
    updated_by: Mapped[Optional[str]] = mapped_column(String(255))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("client", "site", "rbt_id", "date_key", name="uq_rbt_history_day"),
    )


class RobotLog(Base):
    """Append-only audit log of every robot field mutation"""
    __tablename__ = "rbt_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    client: Mapped[Optional[str]] = mapped_column(String(255))
    site: Mapped[str] = mapped_column(String(255), nullable=False)
    rbt_id: Mapped[str] = mapped_column(String(50), nullable=False)
    field: Mapped[str] = mapped_column(String(255), nullable=False)
    old_value: Mapped[Optional[str]] = mapped_column(Text)
    new_value: Mapped[Optional[str]] = mapped_column(Text)
    updated_by: Mapped[Optional[str]] = mapped_column(String(255))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("idx_rbt_logs_robot", "client", "site", "rbt_id"),
    )
