"""
Database Package - SQLAlchemy models and sessions
=================================================

Persistence layer for the case workflow service.
"""

from .models import (
    Base,
    Customer, Case, HistoryRecord, Note, CaseTask,
    CustomerNotification, CooldownRecord, StaffUser, AuditEvent, RevokedToken,
    Priority, DocumentState, StaffRole,
    generate_id,
)
from .session import get_db, init_db, get_engine, session_scope, reset_engine, new_session, SessionLocal

__all__ = [
    # Base
    "Base", "generate_id",
    # Customers & Cases
    "Customer", "Case", "HistoryRecord", "Note", "CaseTask",
    # Notifications
    "CustomerNotification", "CooldownRecord",
    # Staff & Audit
    "StaffUser", "AuditEvent", "RevokedToken",
    # Enums
    "Priority", "DocumentState", "StaffRole",
    # Session
    "get_db", "init_db", "get_engine", "session_scope", "reset_engine", "new_session", "SessionLocal",
]
