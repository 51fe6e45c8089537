"""
Case Service
============

Case, customer, note and task operations on top of the workflow core.

State changes only go through `change_state()` (-> ledger.apply_transition),
never through `update_case()`. Stage, readiness and deadline signals are
derived on every read and never stored.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import ledger
from .readiness import DEFAULT_SOON_HOURS, Readiness, classify_deadline, evaluate, summarize
from .audit import log_audit
from .clock import as_naive_utc, utcnow
from .db.models import (
    Case, CaseTask, Customer, DocumentState, HistoryRecord, Note, Priority, generate_id,
)
from .errors import CaseNotFound, CustomerNotFound, InvalidRequest, TaskNotFound, VersionConflict
from .workflow import (
    ALL_STATES, STATE_LABELS, CaseStage, CaseState, is_terminal, stage_to_seed_state, successors, to_stage,
)

logger = logging.getLogger(__name__)

# Non-state fields a staff member may edit directly
UPDATABLE_FIELDS = {
    "category", "subcategory", "title", "document_state", "priority",
    "deadline", "sla_due", "assigned_to", "general_note",
}

# Editable but backed by NOT NULL columns: null is not a valid value
REQUIRED_FIELDS = {"document_state", "priority"}

# Cases sitting in these states too long are candidates for the stale cleanup job
STUCK_STATES = frozenset({
    CaseState.SEND_PROPOSAL,
    CaseState.WAITING_RESPONSE_P,
    CaseState.SEND_CONTRACT,
    CaseState.WAITING_RESPONSE_C,
})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


# =============================================================================
# SERIALIZATION
# =============================================================================

def customer_to_dict(customer: Customer) -> dict:
    return {
        "customer_id": customer.customer_id,
        "name": customer.name,
        "email": customer.email,
        "phone": customer.phone,
        "registered_at": _iso(customer.registered_at),
    }


def case_to_dict(case: Case) -> dict:
    state = CaseState(case.state)
    return {
        "case_id": case.case_id,
        "customer_id": case.customer_id,
        "category": case.category,
        "subcategory": case.subcategory,
        "title": case.title,
        "state": state.value,
        "state_label": STATE_LABELS[state],
        "stage": to_stage(state).value,
        "allowed_transitions": sorted(s.value for s in successors(state)),
        "terminal": is_terminal(state),
        "document_state": _enum_value(case.document_state),
        "priority": _enum_value(case.priority),
        "deadline": _iso(case.deadline),
        "sla_due": _iso(case.sla_due),
        "assigned_to": case.assigned_to,
        "general_note": case.general_note,
        "last_state_change": _iso(case.last_state_change),
        "created_at": _iso(case.created_at),
        "version": case.version,
    }


def history_to_dict(record: HistoryRecord) -> dict:
    return {
        "history_id": record.history_id,
        "case_id": record.case_id,
        "state_from": CaseState(record.state_from).value,
        "state_in": CaseState(record.state_in).value,
        "date": _iso(record.date),
        "actor": record.actor,
    }


def note_to_dict(note: Note) -> dict:
    return {
        "note_id": note.note_id,
        "case_id": note.case_id,
        "date": _iso(note.date),
        "note_text": note.note_text,
        "author": note.author,
    }


def task_to_dict(task: CaseTask) -> dict:
    return {
        "task_id": task.task_id,
        "case_id": task.case_id,
        "title": task.title,
        "done": bool(task.done),
        "created_at": _iso(task.created_at),
        "due_date": _iso(task.due_date),
    }


def _parse_enum(enum_cls, value, field_name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = [m.value for m in enum_cls]
        raise InvalidRequest(
            f"Invalid {field_name}: {value!r}",
            details={"field": field_name, "allowed": allowed},
        ) from e


# =============================================================================
# SERVICE
# =============================================================================

class CaseService:
    """Case operations bound to one database session."""

    def __init__(self, db: Session):
        self.db = db

    # -------------------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------------------

    def create_customer(self, name: str, email: Optional[str] = None, phone: Optional[str] = None, actor=None) -> Customer:
        if not name or not name.strip():
            raise InvalidRequest("Customer name is required", details={"field": "name"})
        customer = Customer(
            customer_id=generate_id("C"),
            name=name.strip(),
            email=(email or "").strip() or None,
            phone=phone,
        )
        self.db.add(customer)
        self.db.commit()
        log_audit(self.db, actor, "create", "customer", customer.customer_id, {"name": customer.name})
        return customer

    def get_customer(self, customer_id: str) -> Customer:
        customer = self.db.get(Customer, customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)
        return customer

    def list_customers(self) -> List[Customer]:
        return self.db.query(Customer).order_by(Customer.registered_at.desc()).all()

    # -------------------------------------------------------------------------
    # Cases
    # -------------------------------------------------------------------------

    def create_case(
        self,
        customer_id: str,
        state=None,
        stage=None,
        actor=None,
        **fields: Any,
    ) -> Case:
        """
        Open a new case.

        The starting state is `state` if given, else the seed state of `stage`,
        else INTAKE. Creation does not append history: the ledger holds
        transitions only.
        """
        if state is not None and stage is not None:
            raise InvalidRequest("Give either state or stage, not both")
        self.get_customer(customer_id)

        if state is not None:
            initial = _parse_enum(CaseState, state, "state")
        elif stage is not None:
            initial = stage_to_seed_state(_parse_enum(CaseStage, stage, "stage"))
        else:
            initial = CaseState.INTAKE

        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidRequest("Unknown case fields", details={"fields": sorted(unknown)})

        now = utcnow()
        case = Case(
            case_id=generate_id("CS"),
            customer_id=customer_id,
            state=initial,
            initial_state=initial,
            last_state_change=now,
            created_at=now,
            created_by=getattr(actor, "username", None),
            version=1,
        )
        self._apply_fields(case, fields)
        self.db.add(case)
        self.db.commit()

        logger.info(f"Case {case.case_id} created in {initial.value} for customer {customer_id}")
        log_audit(self.db, actor, "create", "case", case.case_id, {"state": initial.value})
        return case

    def get_case(self, case_id: str) -> Case:
        case = self.db.get(Case, case_id)
        if case is None:
            raise CaseNotFound(case_id)
        return case

    def list_cases(
        self,
        state=None,
        stage=None,
        customer_id: Optional[str] = None,
        assigned_to: Optional[str] = None,
        q: Optional[str] = None,
    ) -> List[Case]:
        query = self.db.query(Case)
        if state is not None:
            query = query.filter(Case.state == _parse_enum(CaseState, state, "state"))
        if stage is not None:
            wanted = _parse_enum(CaseStage, stage, "stage")
            query = query.filter(Case.state.in_([s for s in ALL_STATES if to_stage(s) == wanted]))
        if customer_id:
            query = query.filter(Case.customer_id == customer_id)
        if assigned_to:
            query = query.filter(Case.assigned_to == assigned_to)
        if q:
            like = f"%{q.strip()}%"
            query = query.filter(or_(
                Case.case_id.ilike(like),
                Case.title.ilike(like),
                Case.category.ilike(like),
                Case.subcategory.ilike(like),
            ))
        return query.order_by(Case.last_state_change.desc()).all()

    def _apply_fields(self, case: Case, fields: Dict[str, Any]) -> None:
        cleared = sorted(k for k in REQUIRED_FIELDS if k in fields and fields[k] is None)
        if cleared:
            raise InvalidRequest("Fields cannot be null", details={"fields": cleared})
        for key, value in fields.items():
            if key == "priority":
                value = _parse_enum(Priority, value, "priority")
            elif key == "document_state":
                value = _parse_enum(DocumentState, value, "document_state")
            elif key in ("deadline", "sla_due"):
                value = as_naive_utc(value)
            setattr(case, key, value)

    def update_case(self, case_id: str, changes: Dict[str, Any], expected_version: Optional[int] = None, actor=None) -> Case:
        """
        Edit non-state fields.

        `expected_version` makes the edit conditional; a stale version raises
        VersionConflict and nothing is written.
        """
        if "state" in changes or "stage" in changes:
            raise InvalidRequest("State changes go through the transitions endpoint")
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidRequest("Unknown case fields", details={"fields": sorted(unknown)})

        case = self.get_case(case_id)
        if expected_version is not None and case.version != expected_version:
            raise VersionConflict(
                f"Case {case_id} was modified by someone else",
                details={"case_id": case_id, "expected_version": expected_version, "version": case.version},
            )
        if not changes:
            return case

        self._apply_fields(case, changes)
        case.version = (case.version or 1) + 1
        self.db.commit()

        log_audit(self.db, actor, "update", "case", case_id, {"fields": sorted(changes)})
        return case

    def change_state(self, case_id: str, target, actor=None, now: Optional[datetime] = None) -> Tuple[Case, HistoryRecord]:
        case, record = ledger.apply_transition(
            self.db, case_id, target, now=now, actor=getattr(actor, "username", None)
        )
        log_audit(
            self.db, actor, "transition", "case", case_id,
            {"from": CaseState(record.state_from).value, "to": CaseState(record.state_in).value},
        )
        return case, record

    def history(self, case_id: str) -> List[HistoryRecord]:
        self.get_case(case_id)
        return ledger.history_for(self.db, case_id)

    def purge_case(self, case_id: str, actor=None) -> dict:
        counts = ledger.purge_case(self.db, case_id)
        log_audit(self.db, actor, "delete", "case", case_id, counts)
        return counts

    def find_stale_cases(self, max_hours: int, now: Optional[datetime] = None) -> List[Case]:
        """Cases stuck in a waiting/sending state with no transition for `max_hours`."""
        cutoff = (as_naive_utc(now) or utcnow()) - timedelta(hours=max_hours)
        return (
            self.db.query(Case)
            .filter(Case.state.in_(list(STUCK_STATES)), Case.last_state_change < cutoff)
            .order_by(Case.case_id)
            .all()
        )

    # -------------------------------------------------------------------------
    # Notes
    # -------------------------------------------------------------------------

    def add_note(self, case_id: str, text: str, actor=None) -> Note:
        if not text or not text.strip():
            raise InvalidRequest("Note text is required", details={"field": "note_text"})
        self.get_case(case_id)
        note = Note(
            note_id=generate_id("N"),
            case_id=case_id,
            date=utcnow(),
            note_text=text.strip(),
            author=getattr(actor, "username", None),
        )
        self.db.add(note)
        self.db.commit()
        return note

    def list_notes(self, case_id: str) -> List[Note]:
        self.get_case(case_id)
        return (
            self.db.query(Note)
            .filter(Note.case_id == case_id)
            .order_by(Note.date.desc())
            .all()
        )

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def add_task(self, case_id: str, title: str, due_date: Optional[datetime] = None, actor=None) -> CaseTask:
        if not title or not title.strip():
            raise InvalidRequest("Task title is required", details={"field": "title"})
        self.get_case(case_id)
        task = CaseTask(
            task_id=generate_id("T"),
            case_id=case_id,
            title=title.strip(),
            done=False,
            created_at=utcnow(),
            due_date=as_naive_utc(due_date),
        )
        self.db.add(task)
        self.db.commit()
        log_audit(self.db, actor, "create", "task", task.task_id, {"case_id": case_id})
        return task

    def list_tasks(self, case_id: str) -> List[CaseTask]:
        self.get_case(case_id)
        return (
            self.db.query(CaseTask)
            .filter(CaseTask.case_id == case_id)
            .order_by(CaseTask.created_at.asc(), CaseTask.task_id.asc())
            .all()
        )

    def get_task(self, task_id: str) -> CaseTask:
        task = self.db.get(CaseTask, task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def set_task_done(self, task_id: str, done: bool, actor=None) -> CaseTask:
        """Idempotent: setting the current value again is a no-op."""
        task = self.get_task(task_id)
        if bool(task.done) == bool(done):
            return task
        task.done = bool(done)
        self.db.commit()
        log_audit(self.db, actor, "toggle", "task", task_id, {"done": task.done})
        return task

    def toggle_task(self, task_id: str, actor=None) -> CaseTask:
        task = self.get_task(task_id)
        return self.set_task_done(task_id, not task.done, actor=actor)

    def delete_task(self, task_id: str, actor=None) -> None:
        task = self.get_task(task_id)
        case_id = task.case_id
        self.db.delete(task)
        self.db.commit()
        log_audit(self.db, actor, "delete", "task", task_id, {"case_id": case_id})

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    def readiness(self, case_id: str, now: Optional[datetime] = None) -> Readiness:
        case = self.get_case(case_id)
        return evaluate(case, self.list_tasks(case_id), now)

    def case_view(self, case: Case, tasks: Optional[Iterable[CaseTask]] = None, now: Optional[datetime] = None, soon_hours: int = DEFAULT_SOON_HOURS) -> dict:
        """Case as returned by the API: stored fields plus derived signals."""
        if tasks is None:
            tasks = self.db.query(CaseTask).filter(CaseTask.case_id == case.case_id).all()
        data = case_to_dict(case)
        data["readiness"] = evaluate(case, tasks, now).to_dict()
        data["deadline_signal"] = classify_deadline(case.deadline, case.case_id, now, soon_hours).to_dict()
        return data

    def list_case_views(self, cases: List[Case], now: Optional[datetime] = None, soon_hours: int = DEFAULT_SOON_HOURS) -> List[dict]:
        tasks_by_case: Dict[str, List[CaseTask]] = {c.case_id: [] for c in cases}
        if cases:
            for task in self.db.query(CaseTask).filter(CaseTask.case_id.in_(list(tasks_by_case))).all():
                tasks_by_case[task.case_id].append(task)
        return [self.case_view(c, tasks_by_case[c.case_id], now, soon_hours) for c in cases]

    def kpis(self, now: Optional[datetime] = None, window_days: int = 7) -> dict:
        cases = self.db.query(Case).all()
        tasks = self.db.query(CaseTask).all()
        return summarize(cases, tasks, now, window_days)
