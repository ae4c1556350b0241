# ABOUTME: Pytest fixtures and configuration for GitOps reconciler tests
# ABOUTME: Provides an in-memory fake cluster, manifest factories and settings fixtures

import asyncio
import copy
import os
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from gitops_reconciler.cluster import WatchEvent
from gitops_reconciler.config import ClusterInstance, ReconcilerSettings, SecuritySettings
from gitops_reconciler.controller import ApplicationController
from gitops_reconciler.errors import ClusterError
from gitops_reconciler import kinds
from gitops_reconciler.kinds import is_namespaced
from gitops_reconciler.models import (
    ANNOTATION_HOOK,
    ANNOTATION_HOOK_DELETE_POLICY,
    ANNOTATION_SYNC_WAVE,
    Application,
    ObjectKey,
    Project,
    RetryPolicy,
)
from gitops_reconciler.models import LiveObject
from gitops_reconciler.observer import LiveStateObserver
from gitops_reconciler.orchestrator import SyncOrchestrator
from gitops_reconciler.renderer import StaticRenderer
from gitops_reconciler.utils.kube_client import KubernetesClient
from gitops_reconciler.utils.safety import SafetyGuard

# =============================================================================
# KIND REGISTRY
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_kind_registry(monkeypatch: pytest.MonkeyPatch) -> None:
    """Kinds registered by one test (custom resources) must not leak into the next."""
    monkeypatch.setattr(kinds, "_REGISTRY", dict(kinds._REGISTRY))


# =============================================================================
# FAKE CLUSTER
# =============================================================================


@dataclass
class Call:
    """One recorded cluster call with loop timestamps."""

    op: str
    key: ObjectKey
    started: float
    finished: float
    ok: bool = True


def _matches_selector(body: dict[str, Any], selector: str | None) -> bool:
    if not selector:
        return True
    labels = (body.get("metadata") or {}).get("labels") or {}
    for term in selector.split(","):
        name, _, value = term.partition("=")
        if labels.get(name) != value:
            return False
    return True


class FakeCluster:
    """
    In-memory ClusterClient with artificial latency and call recording.

    Applied objects get the fields a real API server adds (uid,
    resourceVersion, generation, creationTimestamp) so diffing is exercised
    against realistic live bodies. ``statuses`` sets the status an object
    reports once applied.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.objects: dict[ObjectKey, dict[str, Any]] = {}
        self.calls: list[Call] = []
        self.statuses: dict[ObjectKey, dict[str, Any]] = {}
        self.apply_errors: dict[ObjectKey, ClusterError] = {}
        self.delete_errors: dict[ObjectKey, ClusterError] = {}
        self.list_errors: dict[str, Exception] = {}
        self.list_delays: dict[str, float] = {}
        self.on_apply: Callable[[ObjectKey], Any] | None = None
        self._version = 0
        self._watchers: list[tuple[str, asyncio.Queue[WatchEvent]]] = []

    # -- helpers for tests ----------------------------------------------------

    def put(self, manifest: dict[str, Any]) -> ObjectKey:
        """Seed a live object directly, without recording a call."""
        body = self._stamp(copy.deepcopy(manifest))
        key = ObjectKey.from_manifest(body)
        self.objects[key] = body
        return key

    def ops(self, op: str) -> list[Call]:
        return [c for c in self.calls if c.op == op]

    def applied(self) -> list[ObjectKey]:
        return [c.key for c in self.calls if c.op == "apply" and c.ok]

    def deleted(self) -> list[ObjectKey]:
        return [c.key for c in self.calls if c.op == "delete" and c.ok]

    def mutate(self, key: ObjectKey, func: Callable[[dict[str, Any]], None]) -> None:
        """Simulate an out-of-band change to a live object."""
        func(self.objects[key])
        self._version += 1
        self.objects[key]["metadata"]["resourceVersion"] = str(self._version)

    def _stamp(self, body: dict[str, Any]) -> dict[str, Any]:
        self._version += 1
        metadata = body.setdefault("metadata", {})
        if not is_namespaced(body["kind"]):
            metadata.pop("namespace", None)
        metadata.setdefault("uid", f"uid-{self._version}")
        metadata.setdefault("creationTimestamp", "2024-01-15T10:00:00Z")
        metadata["resourceVersion"] = str(self._version)
        metadata["generation"] = metadata.get("generation", 0) + 1
        return body

    async def _timed(self, op: str, key: ObjectKey, error: ClusterError | None) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        if self.latency:
            await asyncio.sleep(self.latency)
        self.calls.append(Call(op, key, started, loop.time(), ok=error is None))
        if error is not None:
            raise error

    def _emit(self, event_type: str, body: dict[str, Any]) -> None:
        for kind, queue in self._watchers:
            if kind == body["kind"]:
                queue.put_nowait(WatchEvent(event_type, LiveObject.from_manifest(copy.deepcopy(body))))

    # -- ClusterClient --------------------------------------------------------

    async def get(self, kind: str, namespace: str, name: str) -> LiveObject | None:
        key = ObjectKey(kind, namespace if is_namespaced(kind) else "", name)
        body = self.objects.get(key)
        return LiveObject.from_manifest(copy.deepcopy(body)) if body else None

    async def list(
        self,
        kind: str,
        namespace: str = "",
        label_selector: str | None = None,
    ) -> list[LiveObject]:
        if kind in self.list_delays:
            await asyncio.sleep(self.list_delays[kind])
        if kind in self.list_errors:
            raise self.list_errors[kind]
        return [
            LiveObject.from_manifest(copy.deepcopy(body))
            for key, body in sorted(self.objects.items())
            if key.kind == kind
            and (not namespace or key.namespace == namespace)
            and _matches_selector(body, label_selector)
        ]

    async def watch(
        self,
        kind: str,
        namespace: str = "",
        label_selector: str | None = None,
    ) -> AsyncIterator[WatchEvent]:
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        entry = (kind, queue)
        self._watchers.append(entry)
        try:
            while True:
                event = await queue.get()
                if _matches_selector(event.object.body, label_selector):
                    yield event
        finally:
            self._watchers.remove(entry)

    async def apply(self, body: dict[str, Any], *, force: bool = False) -> LiveObject:
        key = ObjectKey.from_manifest(body)
        error = self.apply_errors.get(key)
        if error is not None and force and error.immutable:
            self.objects.pop(key, None)
            error = None
        await self._timed("apply", key, error)

        stored = self._stamp(copy.deepcopy(body))
        previous = self.objects.get(key)
        if previous is not None:
            stored["metadata"]["uid"] = previous["metadata"]["uid"]
            stored["metadata"]["generation"] = previous["metadata"]["generation"] + 1
        if key in self.statuses:
            stored["status"] = copy.deepcopy(self.statuses[key])
        self.objects[key] = stored
        self._emit("MODIFIED" if previous else "ADDED", stored)
        if self.on_apply is not None:
            self.on_apply(key)
        return LiveObject.from_manifest(copy.deepcopy(stored))

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        key = ObjectKey(kind, namespace if is_namespaced(kind) else "", name)
        await self._timed("delete", key, self.delete_errors.get(key))
        body = self.objects.pop(key, None)
        if body is not None:
            self._emit("DELETED", body)


@pytest.fixture
def fake_cluster() -> FakeCluster:
    """An empty in-memory cluster without latency."""
    return FakeCluster()


@pytest.fixture
def slow_cluster() -> FakeCluster:
    """A cluster where every write takes 10ms, for ordering tests."""
    return FakeCluster(latency=0.01)


# =============================================================================
# MANIFESTS AND DECLARATIONS
# =============================================================================


def _meta(name: str, namespace: str | None, annotations: dict[str, str]) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if annotations:
        metadata["annotations"] = annotations
    return metadata


class Manifests:
    """Factories for the manifests used across tests."""

    @staticmethod
    def _annotations(wave: int | None = None, **extra: str) -> dict[str, str]:
        annotations = dict(extra)
        if wave is not None:
            annotations[ANNOTATION_SYNC_WAVE] = str(wave)
        return annotations

    def namespace(self, name: str = "guestbook", wave: int | None = None) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": _meta(name, None, self._annotations(wave)),
        }

    def configmap(
        self,
        name: str = "config",
        data: dict[str, str] | None = None,
        wave: int | None = None,
        annotations: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": _meta(name, None, {**self._annotations(wave), **(annotations or {})}),
            "data": data if data is not None else {"mode": "production"},
        }

    def deployment(
        self,
        name: str = "web",
        replicas: int = 3,
        image: str = "nginx:1.25",
        wave: int | None = None,
    ) -> dict[str, Any]:
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": _meta(name, None, self._annotations(wave)),
            "spec": {
                "replicas": replicas,
                "selector": {"matchLabels": {"app": name}},
                "template": {
                    "metadata": {"labels": {"app": name}},
                    "spec": {"containers": [{"name": name, "image": image}]},
                },
            },
        }

    def service(self, name: str = "web", wave: int | None = None) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": _meta(name, None, self._annotations(wave)),
            "spec": {"selector": {"app": name}, "ports": [{"port": 80, "targetPort": 8080}]},
        }

    def hook(
        self,
        name: str,
        phase: str,
        kind: str = "ConfigMap",
        delete_policy: str | None = None,
    ) -> dict[str, Any]:
        annotations = {ANNOTATION_HOOK: phase}
        if delete_policy:
            annotations[ANNOTATION_HOOK_DELETE_POLICY] = delete_policy
        if kind == "Job":
            return {
                "apiVersion": "batch/v1",
                "kind": "Job",
                "metadata": _meta(name, None, annotations),
                "spec": {
                    "template": {
                        "spec": {
                            "restartPolicy": "Never",
                            "containers": [{"name": name, "image": "busybox"}],
                        }
                    }
                },
            }
        return {
            "apiVersion": "v1",
            "kind": kind,
            "metadata": _meta(name, None, annotations),
            "data": {"phase": phase},
        }


@pytest.fixture
def manifests() -> Manifests:
    return Manifests()


@pytest.fixture
def make_app() -> Callable[..., Application]:
    """Factory for Applications pointing at the static test repository."""

    def factory(
        name: str = "guestbook",
        automated: bool = False,
        prune: bool = False,
        self_heal: bool = False,
        retry: RetryPolicy | None = None,
        ignore: list[Any] | None = None,
        project: str = "default",
        namespace: str = "guestbook",
        revision: str = "HEAD",
        target: str = "in-cluster",
    ) -> Application:
        return Application.model_validate(
            {
                "name": name,
                "project": project,
                "source": {"repoRef": "https://git.example.com/apps.git", "revision": revision},
                "destination": {"target": target, "namespace": namespace},
                "syncPolicy": {
                    "automated": automated,
                    "prune": prune,
                    "selfHeal": self_heal,
                    "retry": retry.model_dump(by_alias=True) if retry else None,
                },
                "ignoreDifferences": ignore or [],
            }
        )

    return factory


@pytest.fixture
def default_project() -> Project:
    return Project(name="default")


@pytest.fixture
def renderer() -> StaticRenderer:
    return StaticRenderer()


@pytest.fixture
def make_controller(
    fake_cluster: FakeCluster,
    renderer: StaticRenderer,
    default_project: Project,
) -> Callable[..., ApplicationController]:
    """Build an ApplicationController wired to the fake cluster and static renderer."""

    def factory(
        app: Application,
        project: Project | None = default_project,
        history_limit: int = 10,
        audit: Any = None,
        **orchestrator_kwargs: Any,
    ) -> ApplicationController:
        observer = LiveStateObserver(fake_cluster, timeout=1.0, max_age=0.0)
        orchestrator_kwargs.setdefault("hook_timeout", 1.0)
        orchestrator_kwargs.setdefault("hook_poll_interval", 0.01)
        orchestrator = SyncOrchestrator(fake_cluster, **orchestrator_kwargs)
        return ApplicationController(
            app,
            project,
            renderer=renderer,
            observer=observer,
            orchestrator=orchestrator,
            poll_interval=60.0,
            history_limit=history_limit,
            retry=RetryPolicy(limit=2, duration=0.05, factor=2.0, max_duration=1.0),
            audit=audit,
        )

    return factory


# =============================================================================
# SETTINGS AND OPERATOR SURFACE
# =============================================================================


@pytest.fixture
def cluster_instance() -> ClusterInstance:
    """Connection settings for respx-based client tests."""
    return ClusterInstance(
        url="https://kube.example.com:6443",
        token=SecretStr("test-token"),
        name="test",
        insecure=True,
    )


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Writable security settings for testing."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Default-safe security settings for testing."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def reconciler_settings(
    cluster_instance: ClusterInstance,
    mock_security_settings: SecuritySettings,
) -> ReconcilerSettings:
    return ReconcilerSettings(
        kube_url=cluster_instance.url,
        kube_token=cluster_instance.token,
        kube_insecure=True,
        poll_interval=60.0,
        observe_timeout=1.0,
        hook_timeout=1.0,
        hook_poll_interval=0.01,
        security=mock_security_settings,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    return SafetyGuard(read_only_security_settings)


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# Integration test fixtures


@pytest.fixture
def kube_url() -> str | None:
    """Get the API server URL from environment."""
    return os.environ.get("KUBE_URL")


@pytest.fixture
async def live_kube_client(kube_url: str | None) -> AsyncIterator[KubernetesClient | None]:
    """Create a live Kubernetes client for integration tests."""
    if not kube_url:
        yield None
        return

    instance = ClusterInstance(
        url=kube_url,
        token=SecretStr(os.environ.get("KUBE_TOKEN", "")),
        name="integration-test",
        insecure=os.environ.get("KUBE_INSECURE", "false").lower() == "true",
    )
    async with KubernetesClient(instance) as client:
        yield client
