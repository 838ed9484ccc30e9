"""
Session module: Record codec and the session state machine.

- record: wire shape of a stored record, lock predicates and builders
- Session: ACTIVE → RELEASING → RELEASED handle to one claimed record
"""

from persist.session.record import Record
from persist.session.session import (
    Session,
    SessionState,
    UpdateOutcome,
)

__all__ = [
    "Record",
    "Session",
    "SessionState",
    "UpdateOutcome",
]
