# ABOUTME: Registry of known resource kinds for the reconciliation engine
# ABOUTME: REST coordinates, scope, apply priority and unordered list fields per kind

"""
Kind registry.

Behaviour that depends on an object's ``kind`` (where it lives in the REST
API, whether it is namespaced, where it sorts inside a sync wave, which of
its lists compare order-insensitively) is looked up here instead of being
spread over subclasses. Unknown kinds fall back to ``DEFAULT_KIND``:
namespaced, applied after every known kind, all lists ordered.

The priority order follows the Argo CD kind order: namespaces and CRDs
first, then policy, identity and configuration objects, then storage,
RBAC, services, workloads, and finally routing objects.
"""

from __future__ import annotations

from dataclasses import dataclass

# Applied first to last inside a wave. Pruning uses the reverse.
KIND_ORDER: tuple[str, ...] = (
    "Namespace",
    "CustomResourceDefinition",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
)

_PRIORITY = {kind: index for index, kind in enumerate(KIND_ORDER)}


@dataclass(frozen=True)
class KindInfo:
    """Static facts about one kind."""

    kind: str
    api_version: str
    plural: str
    namespaced: bool = True
    # Dotted paths (``*`` matches any list index) whose lists are compared as multisets.
    unordered_fields: tuple[str, ...] = ()

    @property
    def priority(self) -> int:
        return _PRIORITY.get(self.kind, len(KIND_ORDER))


_POD_SPEC_SETS = (
    "spec.template.spec.containers.*.env",
    "spec.template.spec.containers.*.ports",
    "spec.template.spec.volumes",
    "spec.template.spec.imagePullSecrets",
)

_REGISTRY: dict[str, KindInfo] = {
    info.kind: info
    for info in (
        KindInfo("Namespace", "v1", "namespaces", namespaced=False),
        KindInfo("ConfigMap", "v1", "configmaps"),
        KindInfo("Secret", "v1", "secrets"),
        KindInfo("ServiceAccount", "v1", "serviceaccounts", unordered_fields=("secrets",)),
        KindInfo("Service", "v1", "services", unordered_fields=("spec.ports",)),
        KindInfo("Pod", "v1", "pods", unordered_fields=("spec.volumes",)),
        KindInfo("PersistentVolumeClaim", "v1", "persistentvolumeclaims"),
        KindInfo("PersistentVolume", "v1", "persistentvolumes", namespaced=False),
        KindInfo("ResourceQuota", "v1", "resourcequotas"),
        KindInfo("LimitRange", "v1", "limitranges"),
        KindInfo("Deployment", "apps/v1", "deployments", unordered_fields=_POD_SPEC_SETS),
        KindInfo("StatefulSet", "apps/v1", "statefulsets", unordered_fields=_POD_SPEC_SETS),
        KindInfo("DaemonSet", "apps/v1", "daemonsets", unordered_fields=_POD_SPEC_SETS),
        KindInfo("ReplicaSet", "apps/v1", "replicasets", unordered_fields=_POD_SPEC_SETS),
        KindInfo("Job", "batch/v1", "jobs", unordered_fields=_POD_SPEC_SETS),
        KindInfo("CronJob", "batch/v1", "cronjobs"),
        KindInfo("Ingress", "networking.k8s.io/v1", "ingresses", unordered_fields=("spec.rules",)),
        KindInfo("IngressClass", "networking.k8s.io/v1", "ingressclasses", namespaced=False),
        KindInfo("NetworkPolicy", "networking.k8s.io/v1", "networkpolicies"),
        KindInfo(
            "CustomResourceDefinition",
            "apiextensions.k8s.io/v1",
            "customresourcedefinitions",
            namespaced=False,
        ),
        KindInfo("Role", "rbac.authorization.k8s.io/v1", "roles", unordered_fields=("rules",)),
        KindInfo("RoleBinding", "rbac.authorization.k8s.io/v1", "rolebindings", unordered_fields=("subjects",)),
        KindInfo(
            "ClusterRole",
            "rbac.authorization.k8s.io/v1",
            "clusterroles",
            namespaced=False,
            unordered_fields=("rules",),
        ),
        KindInfo(
            "ClusterRoleBinding",
            "rbac.authorization.k8s.io/v1",
            "clusterrolebindings",
            namespaced=False,
            unordered_fields=("subjects",),
        ),
        KindInfo("StorageClass", "storage.k8s.io/v1", "storageclasses", namespaced=False),
        KindInfo("HorizontalPodAutoscaler", "autoscaling/v2", "horizontalpodautoscalers"),
        KindInfo("PodDisruptionBudget", "policy/v1", "poddisruptionbudgets"),
        KindInfo("APIService", "apiregistration.k8s.io/v1", "apiservices", namespaced=False),
    )
}


def kind_info(kind: str, api_version: str | None = None) -> KindInfo:
    """
    Look up a kind, falling back to a namespaced default for unknown kinds.

    Unknown kinds (custom resources) need their ``api_version`` to be
    addressable; the plural is derived with the usual lowercase + "s" rule.
    """
    info = _REGISTRY.get(kind)
    if info is not None:
        return info
    return KindInfo(kind=kind, api_version=api_version or "v1", plural=f"{kind.lower()}s")


def register_kind(info: KindInfo) -> None:
    """Register (or replace) a kind, e.g. for a custom resource."""
    _REGISTRY[info.kind] = info


def ensure_kind(kind: str, api_version: str) -> KindInfo:
    """
    Register an unknown kind under the apiVersion its manifest carries.

    Custom resources only become addressable (listable by the observer)
    once their group/version is known; registered kinds are left alone.
    """
    info = _REGISTRY.get(kind)
    if info is None:
        info = KindInfo(kind=kind, api_version=api_version, plural=f"{kind.lower()}s")
        register_kind(info)
    return info


def is_namespaced(kind: str) -> bool:
    return kind_info(kind).namespaced


def kind_priority(kind: str) -> int:
    return kind_info(kind).priority


def known_kinds() -> list[str]:
    return sorted(_REGISTRY, key=kind_priority)
