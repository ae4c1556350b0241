# ABOUTME: Structured logging with operation IDs for the reconciliation engine
# ABOUTME: Configures structlog and records an audit trail of syncs and operator actions

"""
Structured logging with operation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every component logs events with key/value fields
   through structlog, rendered as JSON in production and coloured text
   during development.

2. OPERATION IDs: one identifier per reconciliation cycle or operator
   action, attached to every log line emitted while that cycle runs.

3. AUDIT LOGGING: a durable record of every sync, rollback and operator
   action, with its outcome.

=============================================================================
WHY OPERATION IDs?
=============================================================================

Many Applications reconcile concurrently in one event loop. A single cycle
renders, observes, diffs, maybe syncs several waves, and evaluates health.
Without a shared id, lines from different cycles interleave and cannot be
told apart:

    {"operation_id": "9f2c01aa", "event": "Observed live state", "app": "argocd/web"}
    {"operation_id": "41be7d03", "event": "Observed live state", "app": "argocd/api"}
    {"operation_id": "9f2c01aa", "event": "Applying wave", "wave": 0}

Filter with: `jq 'select(.operation_id == "9f2c01aa")'`

The id lives in a ContextVar. Each asyncio task copies the context it was
created in, so an id set at the top of one Application's cycle is not seen
by another Application's task.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

    from gitops_reconciler.models import SyncResult


# =============================================================================
# OPERATION ID MANAGEMENT
# =============================================================================

operation_id: ContextVar[str] = ContextVar("operation_id", default="")


def get_operation_id() -> str:
    """
    Get current operation ID or generate a new one.

    Code running outside a cycle (startup, shutdown) still gets an id so
    its lines stay correlatable.

    Returns:
        8-character operation ID string.
    """
    oid = operation_id.get()
    if not oid:
        oid = str(uuid.uuid4())[:8]
        operation_id.set(oid)
    return oid


def new_operation_id() -> str:
    """Start a new operation in the current context and return its ID."""
    oid = str(uuid.uuid4())[:8]
    operation_id.set(oid)
    return oid


def set_operation_id(oid: str) -> None:
    """
    Set operation ID for current context.

    Args:
        oid: The ID to set. An empty string makes the next
             get_operation_id() call generate a fresh one.
    """
    operation_id.set(oid)


def add_operation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Structlog processor adding the operation ID to every event.

    Args:
        logger: The structlog wrapped logger (unused but required by API)
        method_name: The logging method name (unused but required by API)
        event_dict: Dictionary containing log event data to enrich

    Returns:
        The event_dict with "operation_id" field added.
    """
    event_dict["operation_id"] = get_operation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: values bound via structlog.contextvars (e.g. app=...)
    2. add_log_level: "level" field
    3. TimeStamper: ISO 8601 timestamp
    4. add_operation_id: the current reconciliation/operator operation
    5. Renderer: JSON lines or coloured console output

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines for log aggregators when True,
                     coloured console output when False.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_operation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit logger for syncs, rollbacks and operator actions.

    Every entry records:
    - timestamp: When it happened (UTC ISO 8601)
    - operation_id: The cycle or operator call that produced it
    - action: "sync", "rollback", "refresh", "get_application", ...
    - application: Application identity ("argocd/guestbook")
    - result: "success", "blocked", "error", or a sync phase
    - details: Additional context (revision, failing object, reason)

    Entries are appended as JSON lines to ``log_path`` when one is given,
    otherwise emitted through structlog under the "audit" logger:

        {"timestamp": "2024-01-15T10:30:05+00:00", "operation_id": "def45678",
         "action": "sync", "application": "argocd/guestbook",
         "result": "Failed", "details": {"revision": "abc123",
         "message": "Apply error: Deployment/guestbook/web: ..."}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Args:
            log_path: Path to audit log file (appended, never truncated),
                      or None for stdout via structlog.
        """
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        application: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an auditable action. All other methods delegate here.

        Args:
            action: Operation name ("sync", "rollback", "get_application").
            application: Application identity or "all".
            result: Outcome ("success", "blocked", "error", sync phase).
            details: Optional extra context.
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "operation_id": get_operation_id(),
            "action": action,
            "application": application,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                application=application,
                result=result,
                details=details,
            )

    def log_read(self, action: str, application: str) -> None:
        """Log a read-only operator action."""
        self.log(action, application, "success")

    def log_write(
        self,
        action: str,
        application: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log a state-changing operator action (sync, refresh, cancel...)."""
        self.log(action, application, result, details)

    def log_blocked(self, action: str, application: str, reason: str) -> None:
        """Log an action refused by the safety guard or by engine policy."""
        self.log(action, application, "blocked", {"reason": reason})

    def log_error(self, action: str, application: str, error: str) -> None:
        """Log an action that failed with an error."""
        self.log(action, application, "error", {"error": error})

    def log_sync(self, application: str, result: SyncResult) -> None:
        """
        Record a completed orchestration run.

        Rollbacks and manual syncs are distinguished from automatic ones by
        ``result.initiated_by``.
        """
        details: dict[str, Any] = {
            "revision": result.revision,
            "initiated_by": result.initiated_by,
            "dry_run": result.dry_run,
            "resources": len(result.resources),
        }
        if result.message:
            details["message"] = result.message
        failed = result.failed_resources
        if failed:
            details["failed"] = [str(r.key) for r in failed]
        self.log("sync", application, result.phase.value, details)
