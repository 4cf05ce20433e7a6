"""Gamification error taxonomy.

Only ``ValidationError`` is meant to reach callers of the engine.
``ConcurrencyConflict`` is retried inside the engine, ``DuplicateEventError``
becomes a duplicate outcome, ``CriteriaEvaluationError`` is logged per
definition, and ``StorageError`` degrades the action to "points pending".
"""

from __future__ import annotations

from typing import Any


class GamificationError(Exception):
    """Base class for every engine error."""


class ValidationError(GamificationError):
    """Malformed action descriptor or request. Not retryable as-is."""


class InsufficientPointsError(ValidationError):
    """A spend would take the balance below zero."""

    def __init__(self, user_id: int, balance: int, cost: int) -> None:
        super().__init__(f"User {user_id} has {balance} points, needs {cost}")
        self.user_id = user_id
        self.balance = balance
        self.cost = cost


class ConcurrencyConflict(GamificationError):
    """Stale read of a per-user aggregate. Re-read and retry the unit."""

    def __init__(self, user_id: int, detail: str = "") -> None:
        super().__init__(f"Concurrent update of progress for user {user_id}" + (f": {detail}" if detail else ""))
        self.user_id = user_id


class DuplicateEventError(GamificationError):
    """Replayed correlation id / idempotency key."""

    def __init__(self, idempotency_key: str, existing: Any = None) -> None:
        super().__init__(f"Duplicate event: {idempotency_key}")
        self.idempotency_key = idempotency_key
        self.existing = existing


class CriteriaEvaluationError(GamificationError):
    """A catalog definition's criteria could not be parsed or evaluated."""

    def __init__(self, definition_id: int | None, reason: str) -> None:
        super().__init__(f"Bad criteria on definition {definition_id}: {reason}")
        self.definition_id = definition_id
        self.reason = reason


class StorageError(GamificationError):
    """Ledger or aggregate write failed."""
