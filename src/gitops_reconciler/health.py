# ABOUTME: Health evaluator with kind-specific predicates and worst-of aggregation
# ABOUTME: Classifies live objects as Healthy, Progressing, Degraded, Missing or Unknown

"""
Health evaluation.

Predicates are plain functions registered per kind. A kind without a
predicate is Healthy when present; any tracked object absent from the live
state is Missing. Aggregate health is the worst status across all tracked
objects, ranked ``Degraded > Progressing > Missing > Unknown > Healthy``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

import structlog

from gitops_reconciler.models import HealthStatus, LiveObject, ObjectKey

logger = structlog.get_logger(__name__)

HealthPredicate = Callable[[LiveObject], HealthStatus]

_PREDICATES: dict[str, HealthPredicate] = {}

# Container waiting reasons that will not resolve on their own.
_FATAL_WAIT_REASONS = frozenset(
    {
        "CrashLoopBackOff",
        "ErrImagePull",
        "ImagePullBackOff",
        "InvalidImageName",
        "CreateContainerConfigError",
    }
)


def register_predicate(*kinds: str) -> Callable[[HealthPredicate], HealthPredicate]:
    """Register a health predicate for one or more kinds."""

    def decorator(func: HealthPredicate) -> HealthPredicate:
        for kind in kinds:
            _PREDICATES[kind] = func
        return func

    return decorator


def _condition(status: dict[str, Any], cond_type: str) -> dict[str, Any] | None:
    for cond in status.get("conditions") or []:
        if cond.get("type") == cond_type:
            return cond
    return None


def _condition_true(status: dict[str, Any], cond_type: str) -> bool:
    cond = _condition(status, cond_type)
    return cond is not None and str(cond.get("status")) == "True"


def _generation_pending(obj: LiveObject) -> bool:
    generation = (obj.body.get("metadata") or {}).get("generation")
    observed = obj.status.get("observedGeneration")
    return generation is not None and observed is not None and observed < generation


def _replica_health(obj: LiveObject, ready_field: str = "readyReplicas") -> HealthStatus:
    spec = obj.body.get("spec") or {}
    desired = spec.get("replicas", 1)
    ready = obj.status.get(ready_field) or 0
    if _generation_pending(obj):
        return HealthStatus.PROGRESSING
    updated = obj.status.get("updatedReplicas")
    if updated is not None and updated < desired:
        return HealthStatus.PROGRESSING
    if ready < desired:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


@register_predicate("Deployment")
def deployment_health(obj: LiveObject) -> HealthStatus:
    progressing = _condition(obj.status, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return HealthStatus.DEGRADED
    if _condition_true(obj.status, "ReplicaFailure"):
        return HealthStatus.DEGRADED
    return _replica_health(obj)


@register_predicate("ReplicaSet")
def replicaset_health(obj: LiveObject) -> HealthStatus:
    if _condition_true(obj.status, "ReplicaFailure"):
        return HealthStatus.DEGRADED
    return _replica_health(obj)


@register_predicate("StatefulSet")
def statefulset_health(obj: LiveObject) -> HealthStatus:
    current = obj.status.get("currentRevision")
    target = obj.status.get("updateRevision")
    if current and target and current != target:
        return HealthStatus.PROGRESSING
    return _replica_health(obj)


@register_predicate("DaemonSet")
def daemonset_health(obj: LiveObject) -> HealthStatus:
    if _generation_pending(obj):
        return HealthStatus.PROGRESSING
    desired = obj.status.get("desiredNumberScheduled") or 0
    ready = obj.status.get("numberReady") or 0
    updated = obj.status.get("updatedNumberScheduled")
    if updated is not None and updated < desired:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY if ready >= desired else HealthStatus.PROGRESSING


def _has_ingress(obj: LiveObject) -> bool:
    load_balancer = obj.status.get("loadBalancer") or {}
    return bool(load_balancer.get("ingress"))


@register_predicate("Service")
def service_health(obj: LiveObject) -> HealthStatus:
    spec = obj.body.get("spec") or {}
    if spec.get("type") == "LoadBalancer" and not _has_ingress(obj):
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


@register_predicate("Ingress")
def ingress_health(obj: LiveObject) -> HealthStatus:
    return HealthStatus.HEALTHY if _has_ingress(obj) else HealthStatus.PROGRESSING


@register_predicate("Pod")
def pod_health(obj: LiveObject) -> HealthStatus:
    phase = obj.status.get("phase")
    if phase == "Succeeded":
        return HealthStatus.HEALTHY
    if phase == "Failed":
        return HealthStatus.DEGRADED
    statuses = obj.status.get("containerStatuses") or []
    for container in statuses:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in _FATAL_WAIT_REASONS:
            return HealthStatus.DEGRADED
    if phase == "Running" and statuses and all(c.get("ready") for c in statuses):
        return HealthStatus.HEALTHY
    if phase is None:
        return HealthStatus.UNKNOWN
    return HealthStatus.PROGRESSING


@register_predicate("PersistentVolumeClaim")
def pvc_health(obj: LiveObject) -> HealthStatus:
    phase = obj.status.get("phase")
    if phase == "Bound":
        return HealthStatus.HEALTHY
    if phase == "Lost":
        return HealthStatus.DEGRADED
    return HealthStatus.PROGRESSING


@register_predicate("Job")
def job_health(obj: LiveObject) -> HealthStatus:
    if _condition_true(obj.status, "Failed"):
        return HealthStatus.DEGRADED
    if _condition_true(obj.status, "Complete"):
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


def evaluate(obj: LiveObject | None) -> HealthStatus:
    """Classify one object; ``None`` (absent from live state) is Missing."""
    if obj is None:
        return HealthStatus.MISSING
    predicate = _PREDICATES.get(obj.kind)
    if predicate is None:
        return HealthStatus.HEALTHY
    try:
        return predicate(obj)
    except (AttributeError, TypeError, ValueError) as e:
        # Malformed status (wrong types from a misbehaving controller).
        logger.warning("Health predicate failed", object=str(obj.key), error=str(e))
        return HealthStatus.UNKNOWN


def aggregate(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Worst-of; an application with nothing tracked is Healthy."""
    return max(statuses, key=lambda s: s.severity, default=HealthStatus.HEALTHY)


def assess(
    tracked: Iterable[ObjectKey],
    live: Mapping[ObjectKey, LiveObject],
) -> tuple[dict[ObjectKey, HealthStatus], HealthStatus]:
    """
    Evaluate every tracked key against the live state.

    Returns:
        (per-object health, aggregate health)
    """
    per_object = {key: evaluate(live.get(key)) for key in sorted(set(tracked))}
    return per_object, aggregate(per_object.values())
