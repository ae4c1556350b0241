# ABOUTME: Guards for operator actions on the reconciler
# ABOUTME: Read-only and destructive-action gates, confirmations, rate limits, secret masking

"""Operator-surface safety: gates, confirmations, rate limits and secret masking."""

from __future__ import annotations

import copy
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from gitops_reconciler.config import SecuritySettings

logger = structlog.get_logger(__name__)

MASK = "********"

# Actions that can delete objects or disrupt running workloads.
DESTRUCTIVE_IMPACT = {
    "sync_with_prune": "Live objects absent from the source will be DELETED",
    "sync_with_force": "Objects with immutable-field changes will be deleted and recreated",
    "rollback": "Live state will revert to an older revision, possibly disrupting service",
    "remove_with_cascade": "The application and every object it manages will be DELETED",
}


@dataclass
class ConfirmationRequired:
    """A destructive action needs explicit confirmation before it runs."""

    operation: str
    target: str
    impact: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Application: {self.target}",
            f"Impact: {self.impact}",
        ]
        if self.details:
            lines.extend(["", "Details:"])
            lines.extend(f"  {key}: {value}" for key, value in self.details.items())
        lines.extend(["", f"To proceed, repeat with confirm=true AND confirm_name='{self.target}'"])
        return "\n".join(lines)


@dataclass
class OperationBlocked:
    """An action refused by the security settings."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}"
        )


class RateLimiter:
    """Sliding-window call counter per key."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, deque[float]] = defaultdict(deque)

    def check(self, key: str) -> bool:
        """Record a call for ``key``; False if the window is already full."""
        now = time.monotonic()
        calls = self._calls[key]
        while calls and now - calls[0] >= self._window:
            calls.popleft()
        if len(calls) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(calls))
            return False
        calls.append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class SafetyGuard:
    """
    Layered checks applied before every operator action.

    Reads are only rate limited. Writes are refused in read-only mode.
    Destructive writes are refused when destructive actions are disabled,
    and otherwise need ``confirm=True`` plus ``confirm_name`` equal to the
    application name.
    """

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    def _rate_limited(self, operation: str, scope: str) -> OperationBlocked | None:
        if self._rate_limiter.check(f"{scope}:{operation}"):
            return None
        return OperationBlocked(
            operation=operation,
            reason="Rate limit exceeded",
            setting="GITOPS_RATE_LIMIT_CALLS",
        )

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        return self._rate_limited(operation, "read")

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Reconciler is running in read-only mode",
                setting="GITOPS_READ_ONLY",
            )
        return self._rate_limited(operation, "write")

    def check_destructive_operation(
        self,
        operation: str,
        target: str,
        confirmed: bool = False,
        confirm_name: str | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """
        Gate a destructive action.

        Returns:
            OperationBlocked or ConfirmationRequired to refuse, None to allow.
        """
        blocked = self.check_write_operation(operation)
        if blocked:
            return blocked

        if self._settings.disable_destructive:
            return OperationBlocked(
                operation=operation,
                reason="Destructive operations are disabled",
                setting="GITOPS_DISABLE_DESTRUCTIVE",
            )

        if not confirmed or confirm_name != target:
            return ConfirmationRequired(
                operation=operation,
                target=target,
                impact=DESTRUCTIVE_IMPACT.get(operation, "This operation may have significant impact"),
            )
        return None

    def mask(self, body: dict[str, Any]) -> dict[str, Any]:
        """Mask Secret values if masking is enabled."""
        if not self._settings.mask_secrets:
            return body
        return mask_sensitive(body)


def mask_sensitive(body: dict[str, Any]) -> dict[str, Any]:
    """
    Return a copy of ``body`` with Secret ``data``/``stringData`` values masked.

    Masking happens only on the way out to an operator; the engine itself
    diffs and applies real values.
    """
    if body.get("kind") != "Secret":
        return body
    masked = copy.deepcopy(body)
    for section in ("data", "stringData"):
        values = masked.get(section)
        if isinstance(values, dict):
            masked[section] = {key: MASK for key in values}
    return masked
