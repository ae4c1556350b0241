# ABOUTME: Unit tests for operator-surface safety guards
# ABOUTME: Tests read-only and destructive gates, confirmations, rate limiting and secret masking

import pytest

from gitops_reconciler.config import SecuritySettings
from gitops_reconciler.utils.safety import (
    MASK,
    ConfirmationRequired,
    OperationBlocked,
    RateLimiter,
    SafetyGuard,
    mask_sensitive,
)

SECRET = {
    "apiVersion": "v1",
    "kind": "Secret",
    "metadata": {"name": "db"},
    "data": {"password": "c2VjcmV0"},
    "stringData": {"user": "admin"},
}


@pytest.mark.unit
class TestRateLimiter:
    """Tests for RateLimiter class."""

    def test_blocks_calls_exceeding_limit(self):
        """Test that calls beyond the window budget are refused."""
        limiter = RateLimiter(max_calls=2, window_seconds=60)

        assert limiter.check("sync") is True
        assert limiter.check("sync") is True
        assert limiter.check("sync") is False

    def test_independent_keys(self):
        """Test that different keys have independent limits."""
        limiter = RateLimiter(max_calls=1, window_seconds=60)

        assert limiter.check("key1") is True
        assert limiter.check("key2") is True
        assert limiter.check("key1") is False

    def test_window_expires(self):
        """Test that calls older than the window no longer count."""
        limiter = RateLimiter(max_calls=1, window_seconds=0)

        assert limiter.check("key") is True
        assert limiter.check("key") is True

    def test_reset(self):
        """Test resetting one key and all keys."""
        limiter = RateLimiter(max_calls=1, window_seconds=60)
        limiter.check("key1")
        limiter.check("key2")

        limiter.reset("key1")
        assert limiter.check("key1") is True
        assert limiter.check("key2") is False

        limiter.reset()
        assert limiter.check("key2") is True


@pytest.mark.unit
class TestSafetyGuard:
    """Tests for SafetyGuard class."""

    def test_read_operation_allowed_in_read_only(self, read_only_safety_guard: SafetyGuard):
        """Test that reads are allowed even in read-only mode."""
        assert read_only_safety_guard.check_read_operation("get_application_diff") is None

    def test_read_operation_rate_limited(self):
        """Test that read operations can be rate limited."""
        guard = SafetyGuard(SecuritySettings(rate_limit_calls=1, rate_limit_window=60))

        assert guard.check_read_operation("list_applications") is None
        result = guard.check_read_operation("list_applications")
        assert isinstance(result, OperationBlocked)
        assert result.setting == "GITOPS_RATE_LIMIT_CALLS"

    def test_write_operation_blocked_read_only(self, read_only_safety_guard: SafetyGuard):
        """Test that write operations are blocked in read-only mode."""
        result = read_only_safety_guard.check_write_operation("sync_application")
        assert isinstance(result, OperationBlocked)
        assert "read-only" in result.reason
        assert result.setting == "GITOPS_READ_ONLY"

    def test_write_operation_allowed(self, safety_guard: SafetyGuard):
        """Test that write operations are allowed when not read-only."""
        assert safety_guard.check_write_operation("sync_application") is None

    def test_destructive_blocked_when_disabled(self):
        """Test that destructive actions are refused when disabled, even if confirmed."""
        guard = SafetyGuard(SecuritySettings(read_only=False, disable_destructive=True))

        result = guard.check_destructive_operation("sync_with_prune", "guestbook", True, "guestbook")

        assert isinstance(result, OperationBlocked)
        assert result.setting == "GITOPS_DISABLE_DESTRUCTIVE"

    def test_destructive_requires_confirmation(self, safety_guard: SafetyGuard):
        """Test that destructive operations require confirm=true."""
        result = safety_guard.check_destructive_operation("rollback", "guestbook")

        assert isinstance(result, ConfirmationRequired)
        assert "older revision" in result.impact

    def test_destructive_requires_name_match(self, safety_guard: SafetyGuard):
        """Test that the confirmation name must match the application."""
        result = safety_guard.check_destructive_operation(
            "remove_with_cascade", "guestbook", confirmed=True, confirm_name="guestbok"
        )
        assert isinstance(result, ConfirmationRequired)

    def test_destructive_allowed_with_confirmation(self, safety_guard: SafetyGuard):
        """Test that destructive operations are allowed with proper confirmation."""
        result = safety_guard.check_destructive_operation(
            "sync_with_force", "guestbook", confirmed=True, confirm_name="guestbook"
        )
        assert result is None

    def test_mask_respects_setting(self):
        """Test that masking can be turned off."""
        guard = SafetyGuard(SecuritySettings(mask_secrets=False))
        assert guard.mask(SECRET) is SECRET


@pytest.mark.unit
class TestMaskSensitive:
    """Tests for secret masking on the way out."""

    def test_secret_values_masked(self):
        """Test that Secret data and stringData values are replaced, keys kept."""
        masked = mask_sensitive(SECRET)

        assert masked["data"] == {"password": MASK}
        assert masked["stringData"] == {"user": MASK}
        assert SECRET["data"]["password"] == "c2VjcmV0"

    def test_other_kinds_untouched(self):
        """Test that non-Secret objects pass through unchanged."""
        config = {"kind": "ConfigMap", "data": {"password": "visible"}}
        assert mask_sensitive(config) is config


@pytest.mark.unit
class TestMessages:
    """Tests for refusal messages."""

    def test_blocked_message(self):
        """Test OperationBlocked formatting."""
        blocked = OperationBlocked("sync_application", "Reconciler is running in read-only mode", "GITOPS_READ_ONLY")
        message = blocked.format_message()

        assert "OPERATION BLOCKED: sync_application" in message
        assert "GITOPS_READ_ONLY" in message

    def test_confirmation_message(self):
        """Test ConfirmationRequired formatting with details."""
        confirmation = ConfirmationRequired(
            operation="remove_with_cascade",
            target="guestbook",
            impact="Every managed object will be deleted",
            details={"objects": 4},
        )

        message = confirmation.format_message()

        assert "CONFIRMATION REQUIRED: remove_with_cascade" in message
        assert "objects: 4" in message
        assert "confirm_name='guestbook'" in message
