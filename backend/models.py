# models.py — Database models for the ITSM service
# - 24-hex document ids (ObjectId-shaped, stable across the API)
# - 5 roles (enterprise_admin, admin, staff, editor, user)
# - Change requests keep reviewers, attachments and comments as embedded JSON lists
# - In-app notifications with email delivery tracking
# - Singleton branding settings and an audit trail

import time
import secrets
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Enum as SQLEnum, ForeignKey, Text, Index,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_object_id():
    """4-byte timestamp + 8 random bytes, hex encoded (24 chars)."""
    return f"{int(time.time()) & 0xFFFFFFFF:08x}{secrets.token_hex(8)}"


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    ENTERPRISE_ADMIN = "enterprise_admin"
    ADMIN = "admin"
    STAFF = "staff"
    EDITOR = "editor"
    USER = "user"


class ChangeStatus(str, PyEnum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under-review"
    APPROVED = "approved"
    REJECTED = "rejected"
    IMPLEMENTED = "implemented"
    CLOSED = "closed"


class ChangeImpact(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChangeCategory(str, PyEnum):
    HARDWARE = "hardware"
    SOFTWARE = "software"
    NETWORK = "network"
    SECURITY = "security"
    PROCESS = "process"
    OTHER = "other"


class ReviewStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class NotificationType(str, PyEnum):
    TICKET = "ticket"
    CHANGE = "change"
    KNOWLEDGE = "knowledge"
    SOLUTION = "solution"
    SYSTEM = "system"


class NotificationPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditEventType(str, PyEnum):
    # Auth events
    USER_LOGIN = "auth.user.login"
    USER_REGISTER = "auth.user.register"
    USER_ROLE_CHANGED = "auth.user.role_changed"
    USER_CREATED = "auth.user.created"
    USER_UPDATED = "auth.user.updated"
    USER_DELETED = "auth.user.deleted"
    PASSWORD_CHANGED = "auth.user.password_changed"
    # Change events
    CHANGE_CREATED = "itsm.change.created"
    CHANGE_UPDATED = "itsm.change.updated"
    CHANGE_DELETED = "itsm.change.deleted"
    CHANGE_ATTACHMENT_ADDED = "itsm.change.attachment_added"
    # Admin events
    SETTINGS_UPDATED = "settings.updated"
    NOTIFICATION_BROADCAST = "notification.broadcast"


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String(24), primary_key=True, default=new_object_id)
    name = Column(String(100), nullable=False, default="")
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.USER, nullable=False, index=True)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")


# ============================================================
# CHANGE REQUESTS
# ============================================================

class ChangeRequest(Base):
    __tablename__ = "change_requests"

    id = Column(String(24), primary_key=True, default=new_object_id)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    impact = Column(String(16), nullable=False, default=ChangeImpact.MEDIUM.value, index=True)
    status = Column(String(16), nullable=False, default=ChangeStatus.DRAFT.value, index=True)
    category = Column(String(16), nullable=False, default=ChangeCategory.OTHER.value, index=True)
    planned_start_date = Column(DateTime(timezone=True), nullable=False)
    planned_end_date = Column(DateTime(timezone=True), nullable=False)
    actual_start_date = Column(DateTime(timezone=True), nullable=True)
    actual_end_date = Column(DateTime(timezone=True), nullable=True)
    assigned_to = Column(String(24), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    # [{"user", "status", "comments", "reviewed_at"}]
    reviewers = Column(JSON, nullable=False, default=list)
    # [{"name", "path", "content_type", "size", "uploaded_at"}]
    attachments = Column(JSON, nullable=False, default=list)
    # [{"text", "user", "created_at"}]
    comments = Column(JSON, nullable=False, default=list)
    user_id = Column(String(24), ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    owner = relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        Index("idx_change_owner_status", "user_id", "status"),
    )


# ============================================================
# NOTIFICATIONS
# ============================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(24), primary_key=True, default=new_object_id)
    user_id = Column(String(24), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(100), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(16), nullable=False, default=NotificationType.SYSTEM.value, index=True)
    priority = Column(String(16), nullable=False, default=NotificationPriority.MEDIUM.value)
    read = Column(Boolean, nullable=False, default=False, index=True)
    related_item = Column(String(24), nullable=True, index=True)
    email_requested = Column(Boolean, nullable=False, default=False)
    emailed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    # Relationships
    user = relationship("User", back_populates="notifications")

    __table_args__ = (
        Index("idx_notification_user_read", "user_id", "read"),
    )


# ============================================================
# SYSTEM SETTINGS (branding)
# ============================================================

# Single row per deployment; a fixed key turns a duplicate create into a conflict
SETTINGS_ID = "000000000000000000000001"


class Setting(Base):
    __tablename__ = "settings"

    id = Column(String(24), primary_key=True, default=SETTINGS_ID)
    site_name = Column(String, nullable=False, default="ITSM Solution")
    logo = Column(String, nullable=False, default="/uploads/branding/default-logo.png")
    favicon = Column(String, nullable=False, default="/uploads/branding/default-favicon.ico")
    banner = Column(String, nullable=False, default="/uploads/branding/default-banner.jpg")
    company_name = Column(String, nullable=False, default="Your Company")
    contact_email = Column(String, nullable=False, default="contact@example.com")
    contact_phone = Column(String, nullable=False, default="+1 (555) 123-4567")
    contact_address = Column(String, nullable=False, default="123 Main St, City, Country")
    primary_color = Column(String(16), nullable=False, default="#1976d2")
    secondary_color = Column(String(16), nullable=False, default="#dc004e")
    updated_by = Column(String(24), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# AUDIT LOG
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(24), primary_key=True, default=new_object_id)
    event_type = Column(String, nullable=False, index=True)
    user_id = Column(String(24), nullable=True, index=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String(24), nullable=True, index=True)
    details = Column(JSON, nullable=False, default=dict)
    request_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
