"""
Case Workflow
=============

The fixed case lifecycle: granular `CaseState` values, the coarse `CaseStage`
used for grouping and reporting, and the legal transition graph.

Only the granular state is ever stored. The stage is derived on every read
with `to_stage()`.

    INTAKE -> SEND_PROPOSAL -> WAITING_RESPONSE_P -> SEND_CONTRACT -> WAITING_RESPONSE_C
                   ^                  |                   ^
                   |                  v                   |
                   +------------ DISCUSSING_Q ------------+
"""

import enum
from typing import Dict, FrozenSet, List

from .errors import IllegalTransition


class CaseState(str, enum.Enum):
    """Granular workflow position of a case"""
    INTAKE = "INTAKE"
    SEND_PROPOSAL = "SEND_PROPOSAL"
    WAITING_RESPONSE_P = "WAITING_RESPONSE_P"
    DISCUSSING_Q = "DISCUSSING_Q"
    SEND_CONTRACT = "SEND_CONTRACT"
    WAITING_RESPONSE_C = "WAITING_RESPONSE_C"


class CaseStage(str, enum.Enum):
    """Coarse grouping of states for display and reporting"""
    INTAKE = "INTAKE"
    ACTIONABLE = "ACTIONABLE"
    AWAITING = "AWAITING"
    CLOSED = "CLOSED"


ALL_STATES: List[CaseState] = list(CaseState)
ALL_STAGES: List[CaseStage] = list(CaseStage)

# Stage whose cases count as ready for work
ACTIONABLE_STAGE = CaseStage.ACTIONABLE

ALLOWED_TRANSITIONS: Dict[CaseState, FrozenSet[CaseState]] = {
    CaseState.INTAKE: frozenset({CaseState.SEND_PROPOSAL}),
    CaseState.SEND_PROPOSAL: frozenset({CaseState.WAITING_RESPONSE_P}),
    CaseState.WAITING_RESPONSE_P: frozenset({CaseState.DISCUSSING_Q, CaseState.SEND_CONTRACT}),
    CaseState.DISCUSSING_Q: frozenset({CaseState.SEND_PROPOSAL, CaseState.SEND_CONTRACT}),
    CaseState.SEND_CONTRACT: frozenset({CaseState.WAITING_RESPONSE_C}),
    CaseState.WAITING_RESPONSE_C: frozenset(),
}

_STATE_TO_STAGE: Dict[CaseState, CaseStage] = {
    CaseState.INTAKE: CaseStage.INTAKE,
    CaseState.SEND_PROPOSAL: CaseStage.ACTIONABLE,
    CaseState.DISCUSSING_Q: CaseStage.ACTIONABLE,
    CaseState.SEND_CONTRACT: CaseStage.ACTIONABLE,
    CaseState.WAITING_RESPONSE_P: CaseStage.AWAITING,
    # Terminal state: the contract is out and nothing else can happen
    CaseState.WAITING_RESPONSE_C: CaseStage.CLOSED,
}

# Representative state used only when a case is created from a stage choice
_STAGE_SEED_STATE: Dict[CaseStage, CaseState] = {
    CaseStage.INTAKE: CaseState.INTAKE,
    CaseStage.ACTIONABLE: CaseState.SEND_PROPOSAL,
    CaseStage.AWAITING: CaseState.WAITING_RESPONSE_P,
    CaseStage.CLOSED: CaseState.WAITING_RESPONSE_C,
}

STATE_LABELS: Dict[CaseState, str] = {
    CaseState.INTAKE: "Intake",
    CaseState.SEND_PROPOSAL: "Send Proposal",
    CaseState.WAITING_RESPONSE_P: "Waiting Response (Proposal)",
    CaseState.DISCUSSING_Q: "Discussing Questions",
    CaseState.SEND_CONTRACT: "Send Contract",
    CaseState.WAITING_RESPONSE_C: "Waiting Response (Contract)",
}


def to_stage(state) -> CaseStage:
    """Map a granular state to its stage."""
    return _STATE_TO_STAGE[CaseState(state)]


def stage_to_seed_state(stage) -> CaseState:
    """Pick the canonical state for a new case created from a stage selection."""
    return _STAGE_SEED_STATE[CaseStage(stage)]


def successors(state) -> FrozenSet[CaseState]:
    return ALLOWED_TRANSITIONS[CaseState(state)]


def is_terminal(state) -> bool:
    return not successors(state)


def can_transition(current, target) -> bool:
    try:
        current_state = CaseState(current)
        target_state = CaseState(target)
    except ValueError:
        return False
    return target_state in ALLOWED_TRANSITIONS[current_state]


def check_transition(current, target) -> CaseState:
    """
    Validate a move along the transition graph.

    Returns the target as a `CaseState`, raises `IllegalTransition` otherwise.
    """
    if not can_transition(current, target):
        raise IllegalTransition(current, target)
    return CaseState(target)
