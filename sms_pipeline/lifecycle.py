"""
Message lifecycle states and the transitions allowed between them.

    PENDING -> SENT -> DELIVERED
                    -> FAILED
    PENDING -> FAILED      (rejected before or by the provider)

DELIVERED and FAILED are terminal. The table also lets PENDING go straight
to DELIVERED, but callbacks are matched on the provider id, which is only
written together with SENT; a callback that beats that write finds no record
and is acknowledged as unmatched. Both store adapters consult this table so
that a refused transition looks the same everywhere: a no-op, not an error.
"""

import enum
from typing import FrozenSet


class MessageState(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "RECEIVED"
    PROCESSED = "PROCESSED"
    INVALID = "INVALID"
    ERROR = "ERROR"


TERMINAL_STATES: FrozenSet[MessageState] = frozenset(
    {MessageState.DELIVERED, MessageState.FAILED}
)

# target state -> states it may be entered from
_ALLOWED_SOURCES = {
    MessageState.SENT: frozenset({MessageState.PENDING}),
    MessageState.DELIVERED: frozenset({MessageState.PENDING, MessageState.SENT}),
    MessageState.FAILED: frozenset({MessageState.PENDING, MessageState.SENT}),
}


def allowed_sources(target: MessageState) -> FrozenSet[MessageState]:
    """Return the states from which ``target`` may be entered."""
    return _ALLOWED_SOURCES.get(target, frozenset())


def can_transition(current: MessageState, target: MessageState) -> bool:
    """Whether moving a record from ``current`` to ``target`` is allowed."""
    return current in allowed_sources(target)


def is_terminal(state: MessageState) -> bool:
    return state in TERMINAL_STATES
