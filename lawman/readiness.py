"""
Readiness & SLA Evaluation
==========================

Derived, read-time signals for a case:
- `evaluate()`: ready-for-work flag, pending task count, SLA overdue flag
- `classify_deadline()`: overdue / soon / none severity for the UI
- `summarize()`: dashboard KPIs over a set of cases and tasks

Everything here is a pure projection of its inputs and the evaluation time.
Nothing is cached: task `done` flags and the clock change independently of
the case record.
"""

from collections import Counter
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Iterable, Optional, Dict, Any

from .clock import as_naive_utc, utcnow
from .workflow import ACTIONABLE_STAGE, ALL_STAGES, ALL_STATES, CaseState, to_stage

DEFAULT_SOON_HOURS = 48


@dataclass(frozen=True)
class Readiness:
    ready: bool
    pending_tasks: int
    sla_overdue: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DeadlineSignal:
    type: str  # overdue | soon | none
    message: str
    severity: Optional[str] = None  # destructive | warning

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


NO_DEADLINE_SIGNAL = DeadlineSignal(type="none", message="")


def _now(now: Optional[datetime]) -> datetime:
    return as_naive_utc(now) or utcnow()


def evaluate(case, tasks: Iterable, now: Optional[datetime] = None) -> Readiness:
    """
    Compute readiness for one case.

    `ready` is true iff the case sits in the actionable stage. `sla_overdue` is
    true iff `sla_due` is set and strictly earlier than `now`.
    """
    now = _now(now)
    sla_due = as_naive_utc(getattr(case, "sla_due", None))
    return Readiness(
        ready=to_stage(case.state) == ACTIONABLE_STAGE,
        pending_tasks=sum(1 for t in tasks if not t.done),
        sla_overdue=sla_due is not None and sla_due < now,
    )


def classify_deadline(
    deadline: Optional[datetime],
    case_id: str,
    now: Optional[datetime] = None,
    soon_hours: int = DEFAULT_SOON_HOURS,
) -> DeadlineSignal:
    """
    Classify a deadline for display.

    - overdue: deadline is in the past
    - soon: 0 < hours until deadline <= soon_hours
    - none: no deadline, or further out
    """
    if deadline is None:
        return NO_DEADLINE_SIGNAL

    now = _now(now)
    deadline = as_naive_utc(deadline)
    if deadline < now:
        return DeadlineSignal(type="overdue", message=f"Overdue: {case_id}", severity="destructive")

    hours_until = (deadline - now).total_seconds() / 3600
    if 0 < hours_until <= soon_hours:
        return DeadlineSignal(
            type="soon",
            message=f"{case_id} due in {int(hours_until)}h",
            severity="warning",
        )
    return NO_DEADLINE_SIGNAL


def summarize(
    cases: Iterable,
    tasks: Iterable,
    now: Optional[datetime] = None,
    window_days: int = 7,
) -> Dict[str, Any]:
    """Dashboard KPIs for the given (already access-scoped) cases and their tasks."""
    now = _now(now)
    horizon = now + timedelta(days=window_days)
    cases = list(cases)

    overdue = 0
    deadlines_soon = 0
    for c in cases:
        deadline = as_naive_utc(c.deadline)
        if deadline is None:
            continue
        if deadline < now:
            overdue += 1
        elif deadline <= horizon:
            deadlines_soon += 1

    state_counts = Counter(CaseState(c.state) for c in cases)
    stage_counts = Counter(to_stage(c.state) for c in cases)

    return {
        "totalCases": len(cases),
        "overdue": overdue,
        "deadlinesSoon": deadlines_soon,
        "missingDocs": sum(1 for c in cases if _value(c.document_state) == "missing"),
        "urgentCases": sum(1 for c in cases if _value(c.priority) in ("urgent", "high")),
        "pendingTasks": sum(1 for t in tasks if not t.done),
        "readyForWork": stage_counts.get(ACTIONABLE_STAGE, 0),
        "stateBreakdown": {s.value: state_counts.get(s, 0) for s in ALL_STATES},
        "stageBreakdown": {s.value: stage_counts.get(s, 0) for s in ALL_STAGES},
    }


def _value(v):
    return v.value if hasattr(v, "value") else v
