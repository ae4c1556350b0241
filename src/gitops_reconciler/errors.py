# ABOUTME: Error taxonomy for the GitOps reconciliation engine
# ABOUTME: Render, observation, validation, apply, delete and hook failures

"""
Structured exceptions raised by the reconciliation engine.

Every error carries a short ``message`` and optional ``details`` so the
Policy Loop can record a human-readable failure cause on the SyncResult
without parsing strings. All errors derive from ``ReconcilerError``; the
Policy Loop catches that base class once per cycle.

    ReconcilerError
    ├── RenderError        bad source reference or template failure
    ├── ObservationError   a required kind could not be read
    ├── ValidationError    Project allow-list violation
    ├── ApplyError         one object failed to apply
    ├── DeleteError        one object failed to delete
    ├── HookError          a lifecycle hook failed
    ├── ClusterError       raw cluster API failure (HTTP status + body)
    └── OperationRejected  operator action refused in the current state
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gitops_reconciler.models import HookPhase, ObjectKey


class ReconcilerError(Exception):
    """Base class for all engine errors."""

    label = "Reconciler error"

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"{self.label}: {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


class RenderError(ReconcilerError):
    """The renderer could not produce manifests for a source reference."""

    label = "Render error"


class ObservationError(ReconcilerError):
    """Live state could not be observed for a kind required for correctness."""

    label = "Observation error"

    def __init__(
        self,
        message: str,
        kind_errors: dict[str, str] | None = None,
    ) -> None:
        self.kind_errors = dict(kind_errors or {})
        details = "; ".join(f"{k}: {v}" for k, v in sorted(self.kind_errors.items())) or None
        super().__init__(message, details)


class ValidationError(ReconcilerError):
    """Application violates its Project's allow-lists."""

    label = "Validation error"

    def __init__(self, message: str, violations: list[str] | None = None) -> None:
        self.violations = list(violations or [])
        super().__init__(message, "; ".join(self.violations) or None)


class ApplyError(ReconcilerError):
    """A single object failed to apply."""

    label = "Apply error"

    def __init__(self, key: ObjectKey, message: str, details: str | None = None) -> None:
        self.key = key
        super().__init__(f"{key}: {message}", details)


class DeleteError(ReconcilerError):
    """A single object failed to delete."""

    label = "Delete error"

    def __init__(self, key: ObjectKey, message: str, details: str | None = None) -> None:
        self.key = key
        super().__init__(f"{key}: {message}", details)


class HookError(ReconcilerError):
    """A lifecycle hook failed to apply or did not complete successfully."""

    label = "Hook error"

    def __init__(
        self,
        phase: HookPhase,
        key: ObjectKey,
        message: str,
        details: str | None = None,
    ) -> None:
        self.phase = phase
        self.key = key
        super().__init__(f"{phase.value} hook {key}: {message}", details)


class ClusterError(ReconcilerError):
    """
    Cluster API failure, modelled on the HTTP status returned by the API server.

    ``immutable`` is set for 422 responses that complain about immutable
    fields; the orchestrator uses it to decide whether ``force`` may
    delete-and-recreate the object.
    """

    label = "Cluster API error"

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        super().__init__(message, details)

    def __str__(self) -> str:
        base = f"{self.label} ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base

    @property
    def not_found(self) -> bool:
        return self.code == 404

    @property
    def immutable(self) -> bool:
        text = f"{self.message} {self.details or ''}".lower()
        return self.code == 422 and "immutable" in text


class OperationRejected(ReconcilerError):
    """An operator action is not allowed in the application's current state."""

    label = "Operation rejected"
