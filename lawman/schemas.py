"""
Pydantic Schemas for the Case Workflow API
==========================================

Request bodies. Responses are plain dicts built by the service layer so the
derived fields (stage, readiness, deadline signal) stay in one place.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .db.models import DocumentState, Priority
from .workflow import CaseStage, CaseState


# =============================================================================
# AUTH
# =============================================================================

class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


# =============================================================================
# CUSTOMERS
# =============================================================================

class CreateCustomerRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Customer full name")
    email: Optional[str] = Field(None, description="Where case updates are mailed")
    phone: Optional[str] = None


# =============================================================================
# CASES
# =============================================================================

class CaseFields(BaseModel):
    """Non-state fields shared by create and update"""
    category: Optional[str] = None
    subcategory: Optional[str] = None
    title: Optional[str] = None
    document_state: Optional[DocumentState] = None
    priority: Optional[Priority] = None
    deadline: Optional[datetime] = None
    sla_due: Optional[datetime] = None
    assigned_to: Optional[str] = None
    general_note: Optional[str] = None


class CreateCaseRequest(CaseFields):
    customer_id: str
    state: Optional[CaseState] = Field(None, description="Exact starting state")
    stage: Optional[CaseStage] = Field(None, description="Starting stage; its seed state is used")


class UpdateCaseRequest(CaseFields):
    expected_version: Optional[int] = Field(
        None, description="Reject the edit if the case version moved on"
    )


class TransitionRequest(BaseModel):
    target: CaseState = Field(..., description="State to move the case into")


# =============================================================================
# NOTES & TASKS
# =============================================================================

class AddNoteRequest(BaseModel):
    note_text: str = Field(..., min_length=1)


class AddTaskRequest(BaseModel):
    title: str = Field(..., min_length=1)
    due_date: Optional[datetime] = None


class SetTaskDoneRequest(BaseModel):
    done: bool
