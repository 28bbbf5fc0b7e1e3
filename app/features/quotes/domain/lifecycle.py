"""
Lifecycle state machine for quote requests, quote responses and revisions.

Transition tables are the single source of truth; services consult them
before issuing a conditional write so that terminal states are never left.
"""

from datetime import datetime
from enum import Enum

from app.features.quotes.domain.errors import InvalidTransition
from app.features.quotes.domain.models import (
    QuoteRequestStatus,
    QuoteResponseStatus,
    RevisionStatus,
)

QUOTE_REQUEST_TRANSITIONS: dict[QuoteRequestStatus, frozenset[QuoteRequestStatus]] = {
    QuoteRequestStatus.PENDING: frozenset(
        {QuoteRequestStatus.UNDER_REVIEW, QuoteRequestStatus.QUOTE_SENT}
    ),
    QuoteRequestStatus.UNDER_REVIEW: frozenset({QuoteRequestStatus.QUOTE_SENT}),
    QuoteRequestStatus.QUOTE_SENT: frozenset(
        {
            QuoteRequestStatus.ACCEPTED,
            QuoteRequestStatus.REJECTED,
            QuoteRequestStatus.EXPIRED,
        }
    ),
    QuoteRequestStatus.ACCEPTED: frozenset(
        {QuoteRequestStatus.COMPLETED, QuoteRequestStatus.PAID}
    ),
    QuoteRequestStatus.PAID: frozenset({QuoteRequestStatus.COMPLETED}),
    QuoteRequestStatus.REJECTED: frozenset(),
    QuoteRequestStatus.EXPIRED: frozenset(),
    QuoteRequestStatus.COMPLETED: frozenset(),
}

QUOTE_RESPONSE_TRANSITIONS: dict[QuoteResponseStatus, frozenset[QuoteResponseStatus]] = {
    QuoteResponseStatus.SENT: frozenset(
        {
            QuoteResponseStatus.ACCEPTED,
            QuoteResponseStatus.REJECTED,
            QuoteResponseStatus.EXPIRED,
        }
    ),
    QuoteResponseStatus.ACCEPTED: frozenset(),
    QuoteResponseStatus.REJECTED: frozenset(),
    QuoteResponseStatus.EXPIRED: frozenset(),
}

REVISION_TRANSITIONS: dict[RevisionStatus, frozenset[RevisionStatus]] = {
    RevisionStatus.PENDING: frozenset({RevisionStatus.ACCEPTED, RevisionStatus.REJECTED}),
    RevisionStatus.ACCEPTED: frozenset(),
    RevisionStatus.REJECTED: frozenset(),
}

_TABLES: dict[type[Enum], tuple[str, dict]] = {
    QuoteRequestStatus: ("quote_request", QUOTE_REQUEST_TRANSITIONS),
    QuoteResponseStatus: ("quote_response", QUOTE_RESPONSE_TRANSITIONS),
    RevisionStatus: ("revision_request", REVISION_TRANSITIONS),
}


def _table_for(status: Enum) -> tuple[str, dict]:
    try:
        return _TABLES[type(status)]
    except KeyError as e:
        raise TypeError(f"Unsupported status type: {type(status).__name__}") from e


def is_terminal(status: Enum) -> bool:
    _, table = _table_for(status)
    return not table[status]


def can_transition(current: Enum, target: Enum) -> bool:
    """Return True when `current -> target` is an edge of the lifecycle graph."""
    if type(current) is not type(target):
        return False
    _, table = _table_for(current)
    return target in table[current]


def ensure_transition(current: Enum, target: Enum) -> None:
    """
    Validate a transition before it is written.

    Raises:
        InvalidTransition: if the edge does not exist, including every move
            out of a terminal status.
    """
    entity, _ = _table_for(current)
    if not can_transition(current, target):
        raise InvalidTransition(entity, current, target)


def sources_for(target: Enum) -> tuple[Enum, ...]:
    """All statuses from which `target` is reachable in one step."""
    _, table = _table_for(target)
    return tuple(status for status, targets in table.items() if target in targets)


def compute_response_time_minutes(created_at: datetime, now: datetime) -> int:
    """Whole minutes between request creation and the first partner response."""
    elapsed = (now - created_at).total_seconds()
    return max(0, int(elapsed // 60))
