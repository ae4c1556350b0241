# ABOUTME: Configuration management for the GitOps reconciliation engine
# ABOUTME: Handles environment variables, cluster connection, loop timing and safety modes

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for the reconciler. It:

1. READS environment variables (like KUBE_URL, GITOPS_RECONCILER_POLL_INTERVAL)
2. VALIDATES them (URLs get a scheme, intervals must be positive, etc.)
3. PROVIDES typed access to settings throughout the engine
4. LOADS the Application/Project declarations file

=============================================================================
ARCHITECTURE: FOUR CONFIGURATION CLASSES
=============================================================================

1. ClusterInstance: Connection details for ONE target environment
   - API server URL, bearer token, TLS settings
   - One reconciler process serves exactly one environment

2. SecuritySettings: Guards for the operator surface (GITOPS_ prefix)
   - Read-only mode, destructive operations, rate limiting, audit log

3. ReconcilerSettings: Main configuration container
   - Cluster connection from environment
   - Poll interval, observation timeout, history retention
   - Worker pool size, hook timeout, default retry policy
   - Log level and format
   - Contains SecuritySettings as nested object

4. Declarations: Applications and Projects read from a YAML file

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Target environment:
    KUBE_URL            -> API server URL
    KUBE_TOKEN          -> Bearer token
    KUBE_INSECURE       -> Skip TLS certificate verification

Reconciler (GITOPS_RECONCILER_ prefix):
    GITOPS_RECONCILER_POLL_INTERVAL        -> Seconds between drift checks (180)
    GITOPS_RECONCILER_OBSERVE_TIMEOUT      -> Bound on one live snapshot (30)
    GITOPS_RECONCILER_HISTORY_LIMIT        -> SyncResults kept per app (10)
    GITOPS_RECONCILER_MAX_CONCURRENT_SYNCS -> Global worker pool size (5)
    GITOPS_RECONCILER_HOOK_TIMEOUT         -> Seconds a hook may take (300)
    GITOPS_RECONCILER_APPS_FILE            -> YAML file of Applications/Projects
    GITOPS_RECONCILER_RETRY__LIMIT         -> Nested retry policy fields

Security settings (GITOPS_ prefix):
    GITOPS_READ_ONLY           -> Block operator write operations (default: true)
    GITOPS_DISABLE_DESTRUCTIVE -> Block prune/force/rollback via operator surface
    GITOPS_AUDIT_LOG           -> Path to audit log file
    GITOPS_MASK_SECRETS        -> Mask Secret data read from the cluster
    GITOPS_RATE_LIMIT_CALLS    -> Max operator calls per window (default: 100)
    GITOPS_RATE_LIMIT_WINDOW   -> Rate limit window in seconds (default: 60)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gitops_reconciler.models import Application, Project, RetryPolicy

# =============================================================================
# CLUSTER INSTANCE CONFIGURATION
# =============================================================================


class ClusterInstance(BaseModel):
    """
    Connection details for the target environment's API server.

    WHY BaseModel NOT BaseSettings?
    -------------------------------
    The instance is assembled from ReconcilerSettings fields (which DO read
    the environment) so tests and embedding code can also build one directly:

        instance = ClusterInstance(
            url="https://kubernetes.example.com:6443",
            token=SecretStr("service-account-token"),
            name="production",
        )
    """

    model_config = {"extra": "ignore"}

    url: str = Field(description="API server URL")

    token: SecretStr = Field(default=SecretStr(""), description="Bearer token")
    # SecretStr keeps the token out of logs and reprs.
    # To get the actual value: token.get_secret_value()

    name: str = Field(default="in-cluster", description="Target environment name")
    # Matched against Application.destination.target and Project destinations.

    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """
        Ensure URL has proper scheme and no trailing slash.

        REST paths such as "/api/v1/namespaces" are appended directly, so
        "https://host:6443/" would otherwise become "https://host:6443//api/v1".
        """
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Guards applied to operator actions (sync, rollback, refresh, cancel).

    The automatic Policy Loop is governed by each Application's syncPolicy;
    these settings only restrict what a caller of the operator surface may
    trigger by hand.

    Layer 1: GITOPS_READ_ONLY=true (default) blocks every operator write.
    Layer 2: GITOPS_DISABLE_DESTRUCTIVE=true blocks prune, force and rollback.
    Layer 3: Rate limiting caps operator calls per window.
    Layer 4: Destructive actions need confirm=true AND confirm_name=<app>.
    """

    model_config = SettingsConfigDict(env_prefix="GITOPS_")

    read_only: bool = Field(
        default=True,
        description="Block all operator write operations when true",
    )

    disable_destructive: bool = Field(
        default=True,
        description="Block prune, force and rollback operations when true",
    )

    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )
    # If set, writes JSON audit lines to this file. Otherwise audit events
    # go through structlog to stdout.

    mask_secrets: bool = Field(
        default=True,
        description="Mask Secret data in objects read from the cluster",
    )

    rate_limit_calls: int = Field(
        default=100,
        description="Maximum operator calls per window",
    )

    rate_limit_window: int = Field(
        default=60,
        description="Rate limit window in seconds",
    )


# =============================================================================
# MAIN RECONCILER SETTINGS
# =============================================================================


class ReconcilerSettings(BaseSettings):
    """
    Main reconciler configuration.

    USAGE:
    ------
        settings = load_settings()       # Reads from environment
        settings.poll_interval           # Seconds between drift checks
        settings.security.read_only      # Nested security setting
        settings.cluster_instance        # Connection to the target environment
    """

    model_config = SettingsConfigDict(
        env_prefix="GITOPS_RECONCILER_",
        env_nested_delimiter="__",
        # GITOPS_RECONCILER_RETRY__LIMIT=3 sets retry.limit
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # TARGET ENVIRONMENT (from environment)
    # -------------------------------------------------------------------------

    kube_url: str = Field(
        default="",
        validation_alias="KUBE_URL",
        description="API server URL of the target environment",
    )

    kube_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="KUBE_TOKEN",
        description="Bearer token for the API server",
    )

    kube_insecure: bool = Field(
        default=False,
        validation_alias="KUBE_INSECURE",
        description="Skip TLS verification",
    )

    target_name: str = Field(
        default="in-cluster",
        description="Name of the target environment this process reconciles",
    )

    # -------------------------------------------------------------------------
    # LOOP TIMING
    # -------------------------------------------------------------------------

    poll_interval: float = Field(default=180.0, gt=0, description="Seconds between drift checks")
    # Webhook-style notifications trigger an immediate cycle regardless.

    observe_timeout: float = Field(
        default=30.0, gt=0, description="Upper bound on one live-state snapshot"
    )

    hook_timeout: float = Field(
        default=300.0, gt=0, description="Seconds a hook may take to become healthy"
    )

    hook_poll_interval: float = Field(
        default=2.0, gt=0, description="Seconds between hook completion checks"
    )

    watch: bool = Field(
        default=False,
        description="Open watch streams that trigger a cycle on every live change",
    )

    # -------------------------------------------------------------------------
    # CAPACITY AND RETENTION
    # -------------------------------------------------------------------------

    max_concurrent_syncs: int = Field(
        default=5, ge=1, description="Global cap on concurrent orchestrator runs"
    )

    history_limit: int = Field(default=10, ge=1, description="SyncResults retained per app")

    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    # Backoff used when an Application does not declare its own retry policy.

    required_kinds: list[str] = Field(
        default_factory=list,
        description="Kinds whose observation failure aborts the whole cycle",
    )

    # -------------------------------------------------------------------------
    # DECLARATIONS, LOGGING, METADATA
    # -------------------------------------------------------------------------

    apps_file: Path | None = Field(
        default=None,
        description="YAML file declaring Applications and Projects",
    )

    repos_root: Path | None = Field(
        default=None,
        description="Directory holding local clones, one per repoRef",
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @property
    def cluster_instance(self) -> ClusterInstance | None:
        """Connection to the target environment, or None if KUBE_URL is unset."""
        if not self.kube_url:
            return None
        return ClusterInstance(
            url=self.kube_url,
            token=self.kube_token,
            name=self.target_name,
            insecure=self.kube_insecure,
        )


# =============================================================================
# DECLARATIONS FILE
# =============================================================================


@dataclass
class Declarations:
    """Applications and Projects read from a declarations file."""

    applications: list[Application] = field(default_factory=list)
    projects: list[Project] = field(default_factory=list)


def parse_declarations(data: dict[str, Any] | None) -> Declarations:
    """
    Build Declarations from an already-parsed mapping.

    Expected shape:

        projects:
          - name: default
            sourceRepos: ["https://git.example.com/*"]
            destinations: [{target: in-cluster, namespace: "*"}]
        applications:
          - name: guestbook
            source: {repoRef: https://git.example.com/apps.git, path: guestbook}
            destination: {namespace: guestbook}
            syncPolicy: {automated: true, prune: true}
    """
    data = data or {}
    return Declarations(
        applications=[Application.model_validate(a) for a in data.get("applications") or []],
        projects=[Project.model_validate(p) for p in data.get("projects") or []],
    )


def load_declarations(path: Path) -> Declarations:
    """
    Read a declarations YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If a declaration is malformed.
    """
    with path.open() as f:
        data = yaml.safe_load(f)
    return parse_declarations(data)


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ReconcilerSettings:
    """
    Load settings from environment with validation.

    If GITOPS_RECONCILER_ENV_FILE is set, additional variables are read from
    that file, which is convenient for local development:

        KUBE_URL=https://127.0.0.1:6443
        KUBE_TOKEN=dev-token
        KUBE_INSECURE=true
        GITOPS_READ_ONLY=false

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ReconcilerSettings(
        _env_file=os.environ.get("GITOPS_RECONCILER_ENV_FILE"),
    )
