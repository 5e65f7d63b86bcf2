# models.py - Database models for the CTMS milestone sync service
# - UUID string primary keys everywhere
# - Every row is owned by a user, directly or through its CTMS configuration
# - Configuration deletes cascade to sessions and cached study/milestone data
# - Raw CTMS payloads kept as JSON alongside the canonical columns

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Date, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(value):
    """SQLite hands timestamps back naive; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value):
    value = as_utc(value)
    return value.isoformat() if value else None


# ============================================================
# ENUMS
# ============================================================

class MilestoneKind(str, PyEnum):
    STUDY = "study"
    SITE = "site"


class MilestonePriority(str, PyEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AuditEventType(str, PyEnum):
    # Account events
    USER_REGISTER = "auth.user.register"
    USER_LOGIN = "auth.user.login"
    PROFILE_UPDATED = "auth.profile.updated"
    # Configuration events
    CONFIG_CREATED = "ctms.config.created"
    CONFIG_UPDATED = "ctms.config.updated"
    CONFIG_ACTIVATED = "ctms.config.activated"
    CONFIG_DEACTIVATED = "ctms.config.deactivated"
    CONFIG_DELETED = "ctms.config.deleted"
    # CTMS events
    CTMS_AUTHENTICATED = "ctms.authenticated"
    SYNC_COMPLETED = "ctms.sync.completed"


# ============================================================
# USERS & PROFILES
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    profile = relationship("Profile", back_populates="user", uselist=False, cascade="all, delete-orphan")
    configurations = relationship("CtmsConfiguration", back_populates="owner", cascade="all, delete-orphan")


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    email = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    role = Column(String, default="user")
    organization = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="profile")


# ============================================================
# CTMS CONFIGURATIONS & SESSIONS
# ============================================================

class CtmsConfiguration(Base):
    __tablename__ = "ctms_configurations"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    configuration_name = Column(String, nullable=False)
    environment_name = Column(String, nullable=False)
    veeva_url = Column(String, nullable=False)
    username = Column(String, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    last_sync = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    owner = relationship("User", back_populates="configurations")
    sessions = relationship("CtmsSession", back_populates="configuration", cascade="all, delete-orphan")
    studies = relationship("StudyRecord", back_populates="configuration", cascade="all, delete-orphan")
    milestones = relationship("MilestoneRecord", back_populates="configuration", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_config_user_active", "user_id", "is_active"),
        Index("idx_config_user_credentials", "user_id", "veeva_url", "username"),
    )


class CtmsSession(Base):
    __tablename__ = "ctms_sessions"

    id = Column(String, primary_key=True, default=new_uuid)
    configuration_id = Column(
        String, ForeignKey("ctms_configurations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    session_id = Column(Text, nullable=False)  # opaque CTMS token, sent verbatim
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    configuration = relationship("CtmsConfiguration", back_populates="sessions")

    __table_args__ = (
        Index("idx_session_config_created", "configuration_id", "created_at"),
    )


# ============================================================
# CACHED CTMS DATA
# ============================================================

class StudyRecord(Base):
    __tablename__ = "study_data"

    id = Column(String, primary_key=True, default=new_uuid)
    configuration_id = Column(
        String, ForeignKey("ctms_configurations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    study_id = Column(String, nullable=False)
    study_name = Column(String, nullable=False)
    phase = Column(String, nullable=True)
    status = Column(String, nullable=True)
    data = Column(JSON, nullable=True)
    last_updated = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    configuration = relationship("CtmsConfiguration", back_populates="studies")

    __table_args__ = (
        UniqueConstraint("configuration_id", "study_id", name="uq_study_config_study"),
    )


class MilestoneRecord(Base):
    __tablename__ = "milestone_data"

    id = Column(String, primary_key=True, default=new_uuid)
    configuration_id = Column(
        String, ForeignKey("ctms_configurations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    study_id = Column(String, nullable=False)
    site_id = Column(String, nullable=True)
    # site_id or "" so study-level rows take part in the unique key
    site_key = Column(String, nullable=False, default="")
    milestone_type = Column(
        SQLEnum(MilestoneKind, values_callable=lambda kinds: [k.value for k in kinds]), nullable=False,
    )
    title = Column(String, nullable=False)
    status = Column(String, nullable=False, default="unknown")
    due_date = Column(Date, nullable=True)  # original planned date
    planned_finish_date = Column(Date, nullable=True)
    baseline_finish_date = Column(Date, nullable=True)
    actual_finish_date = Column(Date, nullable=True)
    progress = Column(Integer, default=0, nullable=False)
    assigned_to = Column(String, nullable=True)
    priority = Column(String, default=MilestonePriority.MEDIUM.value, nullable=False)
    data = Column(JSON, nullable=True)
    last_updated = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    configuration = relationship("CtmsConfiguration", back_populates="milestones")

    __table_args__ = (
        UniqueConstraint("configuration_id", "study_id", "site_key", "title", name="uq_milestone_key"),
        Index("idx_milestone_config_type", "configuration_id", "milestone_type"),
    )


# ============================================================
# AUDIT
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    event_type = Column(SQLEnum(AuditEventType), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    configuration_id = Column(String, nullable=True, index=True)
    request_id = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_audit_user_timestamp", "user_id", "timestamp"),
    )
