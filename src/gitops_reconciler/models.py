# ABOUTME: Data model for the GitOps reconciliation engine
# ABOUTME: Application/Project declarations, desired/live objects, deltas and sync results

"""
Data model shared by every component of the engine.

=============================================================================
TWO KINDS OF MODELS
=============================================================================

1. DECLARATIONS (pydantic ``BaseModel``): ``Application`` and ``Project``.
   These are persisted configuration written by an operator, usually in
   YAML with camelCase keys (``repoRef``, ``syncPolicy``, ``selfHeal``).
   Pydantic validates them and accepts both the camelCase alias and the
   snake_case field name. They are frozen: a policy update produces a new
   value via ``model_copy(update=...)``, so a reconciliation cycle always
   works on one consistent snapshot.

2. RUNTIME RECORDS (frozen dataclasses): ``DesiredObject``, ``LiveObject``,
   ``Delta``, ``ObjectResult``, ``SyncResult``. These are produced by the
   engine itself and never need validation, only immutability.

=============================================================================
OBJECT IDENTITY
=============================================================================

Desired and live objects are joined on ``ObjectKey(kind, namespace, name)``.
Cluster-scoped kinds (Namespace, CRDs, ClusterRoles...) always carry an
empty namespace so the join works regardless of what the manifest says.

=============================================================================
ANNOTATIONS READ AT RENDER TIME
=============================================================================

    argocd.argoproj.io/hook                 PreSync | Sync | PostSync | SyncFail
    argocd.argoproj.io/hook-delete-policy   HookSucceeded, BeforeHookCreation
    argocd.argoproj.io/sync-wave            integer, default 0
    argocd.argoproj.io/sync-options         e.g. Prune=false
    argocd.argoproj.io/compare-options      e.g. IgnoreExtraneous
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gitops_reconciler.errors import RenderError
from gitops_reconciler.kinds import is_namespaced

ANNOTATION_HOOK = "argocd.argoproj.io/hook"
ANNOTATION_HOOK_DELETE_POLICY = "argocd.argoproj.io/hook-delete-policy"
ANNOTATION_SYNC_WAVE = "argocd.argoproj.io/sync-wave"
ANNOTATION_SYNC_OPTIONS = "argocd.argoproj.io/sync-options"
ANNOTATION_COMPARE_OPTIONS = "argocd.argoproj.io/compare-options"

# Label stamped on every applied object so the observer can find it again.
TRACKING_LABEL = "app.kubernetes.io/instance"


# =============================================================================
# ENUMS
# =============================================================================


class SyncStatus(str, Enum):
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    MISSING = "Missing"
    UNKNOWN = "Unknown"

    @property
    def severity(self) -> int:
        """Rank used for worst-of aggregation (higher is worse)."""
        return _HEALTH_SEVERITY[self]


_HEALTH_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.UNKNOWN: 1,
    HealthStatus.MISSING: 2,
    HealthStatus.PROGRESSING: 3,
    HealthStatus.DEGRADED: 4,
}


class DeltaType(str, Enum):
    MISSING = "Missing"
    EXTRA = "Extra"
    MODIFIED = "Modified"
    UNCHANGED = "Unchanged"


class HookPhase(str, Enum):
    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SYNC_FAIL = "SyncFail"


class ObjectOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    NO_OP = "no-op"
    FAILED = "failed"


class OperationPhase(str, Enum):
    """Result code of one sync invocation."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ABORTED = "Aborted"
    OUT_OF_SYNC_NO_ACTION = "OutOfSync-NoAction"


class ControllerState(str, Enum):
    IDLE = "Idle"
    OBSERVING = "Observing"
    EVALUATING_POLICY = "EvaluatingPolicy"
    SYNCING = "Syncing"


# =============================================================================
# DECLARATIONS
# =============================================================================


class RetryPolicy(BaseModel):
    """
    Retry-with-backoff policy for failed automatic syncs.

    ``limit`` is the number of automatic retries of the same revision after
    a failure; 0 means a failed revision waits for manual intervention.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    limit: int = Field(default=5, ge=0)
    duration: float = Field(default=5.0, gt=0, description="First backoff in seconds")
    factor: float = Field(default=2.0, ge=1.0)
    max_duration: float = Field(default=180.0, gt=0, alias="maxDuration")

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.duration * self.factor ** (attempt - 1), self.max_duration)


class ApplicationSource(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    repo_ref: str = Field(alias="repoRef", description="Repository reference")
    revision: str = Field(default="HEAD", description="Branch, tag or commit")
    path: str = Field(default=".", description="Path inside the repository")
    params: dict[str, str] = Field(default_factory=dict, description="Render parameters")


class ApplicationDestination(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    target: str = Field(default="in-cluster", description="Target environment")
    namespace: str = Field(default="default", description="Default namespace for objects")


class SyncPolicy(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    automated: bool = False
    prune: bool = False
    self_heal: bool = Field(default=False, alias="selfHeal")
    # None falls back to the reconciler-wide retry policy.
    retry: RetryPolicy | None = None


class IgnoreRule(BaseModel):
    """
    Field paths to exclude from diffing.

    ``paths`` are dotted globs such as ``spec.replicas`` or
    ``metadata.annotations.*``. ``kind`` and ``name`` are globs selecting
    which objects the rule applies to.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    paths: tuple[str, ...] = ()
    kind: str = "*"
    name: str = "*"


class Application(BaseModel):
    """The unit of reconciliation."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1)
    namespace: str = Field(default="argocd", description="Scope the Application lives in")
    project: str = "default"
    source: ApplicationSource
    destination: ApplicationDestination = Field(default_factory=ApplicationDestination)
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy, alias="syncPolicy")
    ignore_differences: tuple[IgnoreRule, ...] = Field(default=(), alias="ignoreDifferences")

    @field_validator("ignore_differences", mode="before")
    @classmethod
    def coerce_ignore_rules(cls, v: Any) -> Any:
        """Accept bare path strings as shorthand for an all-kinds rule."""
        if not isinstance(v, (list, tuple)):
            return v
        return [{"paths": [item]} if isinstance(item, str) else item for item in v]

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"


class ProjectDestination(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    target: str = "*"
    namespace: str = "*"


class Project(BaseModel):
    """A named scope whose allow-lists every Application must satisfy."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1)
    source_repos: tuple[str, ...] = Field(default=("*",), alias="sourceRepos")
    destinations: tuple[ProjectDestination, ...] = Field(
        default=(ProjectDestination(),)
    )
    allowed_kinds: tuple[str, ...] = Field(default=("*",), alias="allowedKinds")


# =============================================================================
# OBJECTS
# =============================================================================


@dataclass(frozen=True, order=True)
class ObjectKey:
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any], default_namespace: str = "") -> ObjectKey:
        kind = manifest.get("kind") or ""
        metadata = manifest.get("metadata") or {}
        name = metadata.get("name") or ""
        if not kind or not name:
            raise RenderError("manifest is missing kind or metadata.name", repr(manifest)[:200])
        namespace = ""
        if is_namespaced(kind):
            namespace = metadata.get("namespace") or default_namespace
        return cls(kind=kind, namespace=namespace, name=name)


def _annotations(body: dict[str, Any]) -> dict[str, str]:
    return (body.get("metadata") or {}).get("annotations") or {}


def _split_options(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


def _parse_wave(key: ObjectKey, raw: str | None) -> int:
    if raw is None or raw == "":
        return 0
    try:
        return int(str(raw).strip())
    except ValueError:
        raise RenderError(f"invalid sync wave on {key}", repr(raw)) from None


@dataclass(frozen=True)
class DesiredObject:
    """One rendered target manifest, tagged with its hook phase and wave."""

    key: ObjectKey
    body: dict[str, Any]
    hook: HookPhase | None = None
    wave: int = 0
    hook_delete_policies: frozenset[str] = frozenset()
    sync_options: frozenset[str] = frozenset()

    @property
    def kind(self) -> str:
        return self.key.kind

    @property
    def namespace(self) -> str:
        return self.key.namespace

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def is_hook(self) -> bool:
        return self.hook is not None

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any], default_namespace: str = "") -> DesiredObject:
        """
        Build a DesiredObject, reading hook and wave annotations.

        The namespace is filled in from ``default_namespace`` for namespaced
        kinds that do not set one, so the body sent to the cluster matches
        the key it is diffed under.
        """
        key = ObjectKey.from_manifest(manifest, default_namespace)
        body = dict(manifest)
        metadata = dict(body.get("metadata") or {})
        if key.namespace:
            metadata["namespace"] = key.namespace
        else:
            metadata.pop("namespace", None)
        body["metadata"] = metadata

        annotations = _annotations(body)
        hook = None
        raw_hook = annotations.get(ANNOTATION_HOOK)
        if raw_hook:
            first = raw_hook.split(",")[0].strip()
            try:
                hook = HookPhase(first)
            except ValueError:
                raise RenderError(f"unknown hook phase on {key}", first) from None

        return cls(
            key=key,
            body=body,
            hook=hook,
            wave=_parse_wave(key, annotations.get(ANNOTATION_SYNC_WAVE)),
            hook_delete_policies=_split_options(annotations.get(ANNOTATION_HOOK_DELETE_POLICY)),
            sync_options=_split_options(annotations.get(ANNOTATION_SYNC_OPTIONS)),
        )


@dataclass(frozen=True)
class LiveObject:
    """One object observed in the target environment."""

    key: ObjectKey
    body: dict[str, Any]

    @property
    def kind(self) -> str:
        return self.key.kind

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def status(self) -> dict[str, Any]:
        return self.body.get("status") or {}

    @property
    def wave(self) -> int:
        try:
            return _parse_wave(self.key, _annotations(self.body).get(ANNOTATION_SYNC_WAVE))
        except RenderError:
            return 0

    @property
    def compare_options(self) -> frozenset[str]:
        return _split_options(_annotations(self.body).get(ANNOTATION_COMPARE_OPTIONS))

    @property
    def sync_options(self) -> frozenset[str]:
        return _split_options(_annotations(self.body).get(ANNOTATION_SYNC_OPTIONS))

    @property
    def is_hook(self) -> bool:
        return ANNOTATION_HOOK in _annotations(self.body)

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> LiveObject:
        return cls(key=ObjectKey.from_manifest(manifest), body=manifest)


# =============================================================================
# DERIVED RECORDS
# =============================================================================


@dataclass(frozen=True)
class Delta:
    """Difference between desired and live state for one object key."""

    type: DeltaType
    key: ObjectKey
    desired: DesiredObject | None = None
    live: LiveObject | None = None
    # Dotted paths that differ (Modified only).
    changed_paths: tuple[str, ...] = ()

    @property
    def wave(self) -> int:
        if self.desired is not None:
            return self.desired.wave
        if self.live is not None:
            return self.live.wave
        return 0


@dataclass(frozen=True)
class ObjectResult:
    key: ObjectKey
    outcome: ObjectOutcome
    message: str = ""
    wave: int = 0
    hook: HookPhase | None = None


@dataclass(frozen=True)
class SyncResult:
    """Immutable record of one orchestration run."""

    revision: str
    phase: OperationPhase
    started_at: datetime
    finished_at: datetime
    resources: tuple[ObjectResult, ...] = ()
    message: str = ""
    dry_run: bool = False
    initiated_by: str = "automated"
    id: int = 0

    @property
    def succeeded(self) -> bool:
        return self.phase is OperationPhase.SUCCEEDED

    @property
    def failed_resources(self) -> list[ObjectResult]:
        return [r for r in self.resources if r.outcome is ObjectOutcome.FAILED]


@dataclass
class ApplicationStatus:
    """Last derived status of an Application, cached for display and decisions."""

    sync_status: SyncStatus = SyncStatus.UNKNOWN
    health_status: HealthStatus = HealthStatus.UNKNOWN
    state: ControllerState = ControllerState.IDLE
    revision: str | None = None
    resource_health: dict[ObjectKey, HealthStatus] = field(default_factory=dict)
    observed_at: datetime | None = None
    last_result: SyncResult | None = None
    last_error: str | None = None
