"""
History Ledger
==============

Append-only log of case state transitions.

A transition is committed as one unit: the history row and the case's
`state` / `last_state_change` are written in the same database transaction.
If the commit fails, both are rolled back and `LedgerWriteFailure` is raised
so the caller can retry. Nothing here retries on its own.

The only way to remove history is `purge_case`, an administrative operation
that removes the whole case with everything it owns.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .clock import as_naive_utc, utcnow
from .db.models import Case, HistoryRecord, generate_id
from .errors import CaseNotFound, LedgerWriteFailure, VersionConflict
from .workflow import CaseState, can_transition, check_transition

logger = logging.getLogger(__name__)


def record_transition(
    db: Session,
    case_id: str,
    state_from,
    state_in,
    timestamp: Optional[datetime] = None,
    actor: Optional[str] = None,
    commit: bool = True,
) -> HistoryRecord:
    """
    Append one history record.

    Args:
        db: Database session
        case_id: Case the transition belongs to
        state_from: State before the move
        state_in: State after the move
        timestamp: When the move happened (defaults to now, naive UTC)
        actor: Username of the staff member who made the move
        commit: Commit immediately. `apply_transition` passes False so the
            append shares its transaction with the case update.

    Returns:
        The new HistoryRecord
    """
    record = HistoryRecord(
        history_id=generate_id("H"),
        case_id=case_id,
        state_from=CaseState(state_from),
        state_in=CaseState(state_in),
        date=as_naive_utc(timestamp) or utcnow(),
        actor=actor,
    )
    db.add(record)
    if commit:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"History append failed for case {case_id}: {e}")
            raise LedgerWriteFailure(
                "Could not append history record",
                details={"case_id": case_id},
            ) from e
    return record


def history_for(db: Session, case_id: str) -> List[HistoryRecord]:
    """All history for a case, oldest first."""
    return (
        db.query(HistoryRecord)
        .filter(HistoryRecord.case_id == case_id)
        .order_by(HistoryRecord.date.asc(), HistoryRecord.seq.asc())
        .all()
    )


def apply_transition(
    db: Session,
    case_id: str,
    target,
    now: Optional[datetime] = None,
    actor: Optional[str] = None,
) -> Tuple[Case, HistoryRecord]:
    """
    Move a case to `target` and append the matching history record atomically.

    Raises:
        CaseNotFound: no such case
        IllegalTransition: target is not a successor of the current state;
            nothing is written
        VersionConflict: the case changed concurrently; nothing is written
        LedgerWriteFailure: the store rejected the write; nothing is written
    """
    case = db.get(Case, case_id)
    if case is None:
        raise CaseNotFound(case_id)

    current = CaseState(case.state)
    target_state = check_transition(current, target)
    timestamp = as_naive_utc(now) or utcnow()
    version = case.version or 1

    try:
        # Conditional update guards against a concurrent move from the same state
        updated = (
            db.query(Case)
            .filter(
                Case.case_id == case_id,
                Case.state == current,
                Case.version == version,
            )
            .update(
                {
                    Case.state: target_state,
                    Case.last_state_change: timestamp,
                    Case.version: version + 1,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            raise VersionConflict(
                f"Case {case_id} changed while moving to {target_state.value}",
                details={"case_id": case_id, "expected_state": current.value},
            )
        record = record_transition(
            db, case_id, current, target_state, timestamp, actor=actor, commit=False
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Transition write failed for case {case_id} "
            f"({current.value} -> {target_state.value}): {e}"
        )
        raise LedgerWriteFailure(
            "Could not commit transition",
            details={"case_id": case_id, "state_from": current.value, "state_in": target_state.value},
        ) from e

    db.refresh(case)
    logger.info(f"Case {case_id}: {current.value} -> {target_state.value} by {actor or 'system'}")
    return case, record


def purge_case(db: Session, case_id: str) -> dict:
    """
    Administrative delete of a case and everything it owns.

    Returns counts of removed rows per kind.
    """
    case = db.get(Case, case_id)
    if case is None:
        raise CaseNotFound(case_id)

    counts = {
        "history": len(case.history),
        "notes": len(case.notes),
        "tasks": len(case.tasks),
    }
    db.delete(case)
    db.commit()
    logger.warning(f"Purged case {case_id} ({counts})")
    return counts


# =============================================================================
# RECOVERY TOOLING
# =============================================================================

@dataclass
class LedgerInconsistency:
    """A case whose stored state disagrees with its ledger"""
    case_id: str
    state: str
    ledger_state: Optional[str]
    reason: str

    def to_dict(self) -> dict:
        return {
            "case_id": self.case_id,
            "state": self.state,
            "ledger_state": self.ledger_state,
            "reason": self.reason,
        }


def check_case_ledger(case: Case, records: List[HistoryRecord]) -> Optional[LedgerInconsistency]:
    """Compare one case with its ordered history."""
    state = CaseState(case.state).value

    if not records:
        initial = CaseState(case.initial_state).value
        if state != initial:
            return LedgerInconsistency(case.case_id, state, None, "state_without_history")
        return None

    expected = CaseState(case.initial_state)
    for record in records:
        if CaseState(record.state_from) != expected:
            return LedgerInconsistency(
                case.case_id, state, CaseState(record.state_in).value, "broken_chain"
            )
        if not can_transition(record.state_from, record.state_in):
            return LedgerInconsistency(
                case.case_id, state, CaseState(record.state_in).value, "illegal_edge"
            )
        expected = CaseState(record.state_in)

    if expected.value != state:
        return LedgerInconsistency(case.case_id, state, expected.value, "state_mismatch")
    return None


def find_inconsistent_cases(db: Session) -> List[LedgerInconsistency]:
    """
    Scan every case for ledger corruption.

    A healthy case either has no history and still sits in its initial state,
    or its history forms an unbroken chain of legal moves starting at the
    initial state and ending at the stored state.
    """
    problems: List[LedgerInconsistency] = []
    for case in db.query(Case).order_by(Case.case_id).all():
        issue = check_case_ledger(case, history_for(db, case.case_id))
        if issue:
            logger.error(f"Ledger inconsistency on case {issue.case_id}: {issue.reason}")
            problems.append(issue)
    return problems
