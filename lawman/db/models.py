"""
SQLAlchemy Models for Database
==============================

Schema for the case workflow service:
- Customers (weak owners of cases, related by customer_id only)
- Cases with their append-only history, notes and tasks
- Customer notifications and persisted notification cooldowns
- Staff accounts (read for login only) and audit events

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
import uuid
from sqlalchemy import (
    Column, String, Text, Integer, Boolean, DateTime, Enum, ForeignKey,
    Index, JSON
)
from sqlalchemy.orm import relationship, declarative_base

from ..clock import utcnow
from ..workflow import CaseState

Base = declarative_base()


def generate_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:12].upper()}"


# =============================================================================
# ENUMS
# =============================================================================

class Priority(str, enum.Enum):
    """Case priority"""
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DocumentState(str, enum.Enum):
    """Whether the case paperwork is complete"""
    OK = "ok"
    MISSING = "missing"


class StaffRole(str, enum.Enum):
    """Staff roles"""
    ADMIN = "admin"
    MANAGER = "manager"
    INTAKE = "intake"
    CONSULTANT = "consultant"


# =============================================================================
# CUSTOMERS
# =============================================================================

class Customer(Base):
    """Customer / client of the firm"""
    __tablename__ = "customers"

    customer_id = Column(String(40), primary_key=True, default=lambda: generate_id("C"))
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    registered_at = Column(DateTime, default=utcnow)


# =============================================================================
# CASES
# =============================================================================

class Case(Base):
    """Legal case tracked through the workflow"""
    __tablename__ = "cases"

    case_id = Column(String(40), primary_key=True, default=lambda: generate_id("CS"))
    # Weak reference: deleting a customer never cascades to cases
    customer_id = Column(String(40), nullable=False)
    category = Column(String(100), nullable=True)
    subcategory = Column(String(100), nullable=True)
    title = Column(String(255), nullable=True)

    state = Column(Enum(CaseState), nullable=False, default=CaseState.INTAKE)
    # State the case was created in; lets recovery tooling check cases with no history
    initial_state = Column(Enum(CaseState), nullable=False, default=CaseState.INTAKE)
    last_state_change = Column(DateTime, nullable=False, default=utcnow)

    document_state = Column(Enum(DocumentState), default=DocumentState.OK, nullable=False)
    priority = Column(Enum(Priority), default=Priority.MEDIUM, nullable=False)
    deadline = Column(DateTime, nullable=True)
    sla_due = Column(DateTime, nullable=True)
    assigned_to = Column(String(100), nullable=True)
    general_note = Column(Text, nullable=True)

    version = Column(Integer, default=1, nullable=False)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_case_customer", "customer_id"),
        Index("ix_case_state_change", "state", "last_state_change"),
        Index("ix_case_assigned", "assigned_to"),
    )

    # Relationships (owned: removed only when the case is purged)
    history = relationship("HistoryRecord", back_populates="case", cascade="all, delete-orphan")
    notes = relationship("Note", back_populates="case", cascade="all, delete-orphan")
    tasks = relationship("CaseTask", back_populates="case", cascade="all, delete-orphan")


class HistoryRecord(Base):
    """One committed transition. Immutable once written."""
    __tablename__ = "history"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    history_id = Column(String(40), unique=True, nullable=False, default=lambda: generate_id("H"))
    case_id = Column(String(40), ForeignKey("cases.case_id", ondelete="CASCADE"), nullable=False)
    state_from = Column(Enum(CaseState), nullable=False)
    state_in = Column(Enum(CaseState), nullable=False)
    date = Column(DateTime, nullable=False, default=utcnow)
    actor = Column(String(100), nullable=True)

    __table_args__ = (
        Index("ix_history_case_date", "case_id", "date"),
        Index("ix_history_date", "date"),
    )

    case = relationship("Case", back_populates="history")


class Note(Base):
    """Free-text note on a case (append-only)"""
    __tablename__ = "notes"

    note_id = Column(String(40), primary_key=True, default=lambda: generate_id("N"))
    case_id = Column(String(40), ForeignKey("cases.case_id", ondelete="CASCADE"), nullable=False)
    date = Column(DateTime, nullable=False, default=utcnow)
    note_text = Column(Text, nullable=False)
    author = Column(String(100), nullable=True)

    __table_args__ = (
        Index("ix_note_case", "case_id"),
    )

    case = relationship("Case", back_populates="notes")


class CaseTask(Base):
    """Staff to-do item attached to a case"""
    __tablename__ = "case_tasks"

    task_id = Column(String(40), primary_key=True, default=lambda: generate_id("T"))
    case_id = Column(String(40), ForeignKey("cases.case_id", ondelete="CASCADE"), nullable=False)
    title = Column(String(500), nullable=False)
    done = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_task_case", "case_id"),
        Index("ix_task_due", "due_date"),
    )

    case = relationship("Case", back_populates="tasks")


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class CustomerNotification(Base):
    """Alert surfaced to staff about a customer or one of its cases"""
    __tablename__ = "customer_notifications"

    notification_id = Column(String(40), primary_key=True, default=lambda: generate_id("CN"))
    customer_id = Column(String(40), nullable=False)
    case_id = Column(String(40), nullable=True)
    kind = Column(String(50), nullable=False)  # deadline_overdue/deadline_soon/...
    severity = Column(String(20), default="info")  # info/warning/destructive
    message = Column(Text, nullable=False)
    # One live notification per (case, kind, deadline)
    dedupe_key = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    # Dismissed alerts stay so the poll does not raise them again
    dismissed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_notification_customer", "customer_id"),
        Index("ix_notification_created", "created_at"),
    )


class CooldownRecord(Base):
    """Durable notification cooldown: endpoint key -> suppressed until"""
    __tablename__ = "cooldowns"

    key = Column(String(255), primary_key=True)
    until = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# STAFF & AUDIT
# =============================================================================

class StaffUser(Base):
    """Staff account. Account management lives outside this service."""
    __tablename__ = "staff_users"

    username = Column(String(100), primary_key=True)
    display_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    role = Column(Enum(StaffRole), default=StaffRole.CONSULTANT, nullable=False)
    password_hash = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    last_login = Column(DateTime, nullable=True)


class AuditEvent(Base):
    """Audit trail of staff actions"""
    __tablename__ = "audit_events"

    id = Column(String(40), primary_key=True, default=lambda: generate_id("A"))
    username = Column(String(100), nullable=True)
    role = Column(String(50), nullable=True)
    action = Column(String(50), nullable=False)  # create/update/delete/transition/toggle
    resource = Column(String(50), nullable=False)  # case/task/note/customer/...
    resource_id = Column(String(40), nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_audit_created", "created_at"),
        Index("ix_audit_resource", "resource", "resource_id"),
    )


class RevokedToken(Base):
    """Refresh token revoked at logout, keyed by its jti"""
    __tablename__ = "revoked_tokens"

    jti = Column(String(64), primary_key=True)
    username = Column(String(100), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_revoked_expires", "expires_at"),
    )
