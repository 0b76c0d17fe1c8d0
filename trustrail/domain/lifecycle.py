"""Application lifecycle - the legal status transition table"""

from typing import Dict, FrozenSet

from trustrail.domain.exceptions import InvalidTransitionError
from trustrail.domain.models import ApplicationStatus, Decision

S = ApplicationStatus

# Automated pipeline edges
TRANSITIONS: Dict[ApplicationStatus, FrozenSet[ApplicationStatus]] = {
    S.PENDING_ANALYSIS: frozenset({S.ANALYZING}),
    S.ANALYZING: frozenset({S.APPROVED, S.DECLINED, S.FLAGGED_FOR_REVIEW}),
    S.APPROVED: frozenset({S.MANDATE_CREATED}),
    S.MANDATE_CREATED: frozenset({S.MANDATE_ACTIVE}),
    S.MANDATE_ACTIVE: frozenset({S.ACTIVE}),
    S.ACTIVE: frozenset({S.COMPLETED, S.DEFAULTED}),
    S.FLAGGED_FOR_REVIEW: frozenset(),
    S.DECLINED: frozenset(),
    S.COMPLETED: frozenset(),
    S.DEFAULTED: frozenset(),
}

# Human-operator edges, never taken by jobs or webhooks
MANUAL_TRANSITIONS: Dict[ApplicationStatus, FrozenSet[ApplicationStatus]] = {
    S.FLAGGED_FOR_REVIEW: frozenset({S.APPROVED, S.DECLINED}),
}

TERMINAL_STATES = frozenset({S.DECLINED, S.COMPLETED, S.DEFAULTED})

DECISION_STATUS = {
    Decision.APPROVED: S.APPROVED,
    Decision.DECLINED: S.DECLINED,
    Decision.FLAGGED_FOR_REVIEW: S.FLAGGED_FOR_REVIEW,
}

# Timestamp column stamped when an application enters a status
TRANSITION_TIMESTAMPS = {
    S.ANALYZING: "analysis_started_at",
    S.APPROVED: "approved_at",
    S.DECLINED: "declined_at",
    S.MANDATE_CREATED: "mandate_created_at",
    S.MANDATE_ACTIVE: "mandate_activated_at",
    S.ACTIVE: "activated_at",
    S.COMPLETED: "completed_at",
    S.DEFAULTED: "defaulted_at",
}


def can_transition(current: ApplicationStatus, target: ApplicationStatus, manual: bool = False) -> bool:
    current, target = S(current), S(target)
    if target in TRANSITIONS[current]:
        return True
    return manual and target in MANUAL_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: ApplicationStatus, target: ApplicationStatus, manual: bool = False) -> None:
    """Raise InvalidTransitionError unless current -> target is a legal edge"""
    if not can_transition(current, target, manual=manual):
        raise InvalidTransitionError(S(current).value, S(target).value)


def is_terminal(status: ApplicationStatus) -> bool:
    return S(status) in TERMINAL_STATES
