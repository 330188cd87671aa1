"""
Delegation errors.

Scope violations are deliberately absent: a rejected action check is an
expected, frequent outcome and is returned as a PermissionDecision, never
raised. Idempotent no-ops (revoking twice) are TransitionOutcome values.
"""

from __future__ import annotations

from typing import Any


class DelegationError(Exception):
    """Base class for all delegation engine errors."""


class InvalidState(DelegationError):
    """A lifecycle transition was attempted from the wrong state."""

    def __init__(self, permission_id: str, status: str, attempted: str) -> None:
        self.permission_id = permission_id
        self.status = status
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} permission {permission_id} in status '{status}'"
        )


class NotFound(DelegationError):
    """A permission or rule id is unknown."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class PersistenceFailure(DelegationError):
    """A store write failed; the triggering transition was not committed."""


class ConcurrentModification(PersistenceFailure):
    """The stored permission changed between read and write."""


class SnapshotUnavailable(DelegationError):
    """Market data could not be fetched; the evaluation tick is skipped."""


class EvaluationError(DelegationError):
    """
    One or more permissions failed during an evaluation pass.

    Carries the events that were committed for the permissions that did not
    fail, so callers never lose track of actions already applied.
    """

    def __init__(self, events: list[Any], failures: dict[str, Exception]) -> None:
        self.events = events
        self.failures = failures
        super().__init__(
            f"{len(failures)} permission(s) failed during evaluation: "
            + ", ".join(f"{pid}: {exc}" for pid, exc in failures.items())
        )
