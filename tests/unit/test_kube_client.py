# ABOUTME: Unit tests for the Kubernetes API client
# ABOUTME: Tests REST paths, error mapping, server-side apply, force replace and watch streams

import json

import httpx
import pytest
import respx

from gitops_reconciler.cluster import WatchEvent
from gitops_reconciler.config import ClusterInstance
from gitops_reconciler.errors import ClusterError
from gitops_reconciler.kinds import KindInfo, ensure_kind, kind_info
from gitops_reconciler.models import TRACKING_LABEL
from gitops_reconciler.observer import LiveStateObserver
from gitops_reconciler.renderer import build_desired
from gitops_reconciler.utils.kube_client import (
    APPLY_CONTENT_TYPE,
    FIELD_MANAGER,
    KubernetesClient,
    resource_path,
)

BASE_URL = "https://kube.example.com:6443"

DEPLOYMENT = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {"name": "web", "namespace": "prod"},
    "spec": {"replicas": 2},
}


@pytest.mark.unit
class TestResourcePath:
    """Tests for REST path construction."""

    def test_core_namespaced_kind(self):
        """Test that core kinds live under /api/v1 with a namespace segment."""
        assert resource_path("ConfigMap", "prod", "cfg") == "/api/v1/namespaces/prod/configmaps/cfg"

    def test_grouped_kind(self):
        """Test that grouped kinds live under /apis/<group>/<version>."""
        assert resource_path("Deployment", "prod", "web") == "/apis/apps/v1/namespaces/prod/deployments/web"

    def test_cluster_scoped_kind_ignores_namespace(self):
        """Test that cluster-scoped kinds never get a namespace segment."""
        assert resource_path("Namespace", "prod", "prod") == "/api/v1/namespaces/prod"
        assert resource_path("ClusterRole", "ignored") == "/apis/rbac.authorization.k8s.io/v1/clusterroles"

    def test_empty_namespace_lists_across_namespaces(self):
        """Test that listing with no namespace spans all namespaces."""
        assert resource_path("Deployment") == "/apis/apps/v1/deployments"

    def test_custom_kind_uses_api_version(self):
        """Test that unknown kinds derive the plural and use the given apiVersion."""
        path = resource_path("Widget", "prod", "w1", api_version="example.com/v1alpha1")
        assert path == "/apis/example.com/v1alpha1/namespaces/prod/widgets/w1"


@pytest.mark.unit
class TestClusterError:
    """Tests for ClusterError."""

    def test_str_with_details(self):
        """Test string representation includes code, message and details."""
        error = ClusterError(code=403, message="forbidden", details="Forbidden")
        assert str(error) == "Cluster API error (403): forbidden - Forbidden"

    def test_not_found(self):
        """Test that 404 is reported as not found."""
        assert ClusterError(404, "gone").not_found
        assert not ClusterError(500, "boom").not_found

    def test_immutable_detection(self):
        """Test that only 422 responses mentioning immutability are immutable."""
        assert ClusterError(422, "spec.selector: field is immutable").immutable
        assert not ClusterError(422, "spec.replicas: must be positive").immutable
        assert not ClusterError(409, "field is immutable").immutable


@pytest.mark.unit
class TestKubernetesClientContextManager:
    """Tests for the client lifecycle."""

    async def test_context_manager_creates_and_closes_client(self, cluster_instance: ClusterInstance):
        """Test async with creates an httpx client and closes it on exit."""
        client = KubernetesClient(cluster_instance)
        assert client._client is None

        async with client:
            assert isinstance(client._client, httpx.AsyncClient)

        assert client._client is None

    async def test_request_without_context_manager_fails(self, cluster_instance: ClusterInstance):
        """Test that using the client outside async with raises RuntimeError."""
        client = KubernetesClient(cluster_instance)
        with pytest.raises(RuntimeError, match="async with"):
            await client._request("GET", "/api/v1/namespaces")

    @respx.mock
    async def test_bearer_token_sent(self, cluster_instance: ClusterInstance):
        """Test that the bearer token is sent on every request."""
        route = respx.get(f"{BASE_URL}/api/v1/namespaces").mock(
            return_value=httpx.Response(200, json={"items": []})
        )

        async with KubernetesClient(cluster_instance) as client:
            await client.list("Namespace")

        assert route.calls[0].request.headers["Authorization"] == "Bearer test-token"


@pytest.mark.unit
class TestKubernetesClientRead:
    """Tests for get and list."""

    @respx.mock
    async def test_get_returns_live_object(self, cluster_instance: ClusterInstance):
        """Test that get parses the object body into a LiveObject."""
        respx.get(f"{BASE_URL}/apis/apps/v1/namespaces/prod/deployments/web").mock(
            return_value=httpx.Response(200, json=DEPLOYMENT)
        )

        async with KubernetesClient(cluster_instance) as client:
            obj = await client.get("Deployment", "prod", "web")

        assert obj is not None
        assert str(obj.key) == "Deployment/prod/web"
        assert obj.body["spec"]["replicas"] == 2

    @respx.mock
    async def test_get_missing_returns_none(self, cluster_instance: ClusterInstance):
        """Test that a 404 on get means the object does not exist."""
        respx.get(f"{BASE_URL}/api/v1/namespaces/prod/configmaps/nope").mock(
            return_value=httpx.Response(404, json={"kind": "Status", "code": 404, "reason": "NotFound"})
        )

        async with KubernetesClient(cluster_instance) as client:
            assert await client.get("ConfigMap", "prod", "nope") is None

    @respx.mock
    async def test_list_fills_kind_and_passes_selector(self, cluster_instance: ClusterInstance):
        """Test that list items get kind/apiVersion and the selector is sent."""
        route = respx.get(f"{BASE_URL}/apis/apps/v1/deployments").mock(
            return_value=httpx.Response(
                200,
                json={"items": [{"metadata": {"name": "web", "namespace": "prod"}}]},
            )
        )

        async with KubernetesClient(cluster_instance) as client:
            items = await client.list("Deployment", label_selector="app.kubernetes.io/instance=web")

        assert [str(i.key) for i in items] == ["Deployment/prod/web"]
        assert items[0].body["apiVersion"] == "apps/v1"
        assert route.calls[0].request.url.params["labelSelector"] == "app.kubernetes.io/instance=web"

    @respx.mock
    async def test_status_error_is_mapped(self, cluster_instance: ClusterInstance):
        """Test that a Kubernetes Status body becomes a ClusterError."""
        respx.get(f"{BASE_URL}/api/v1/secrets").mock(
            return_value=httpx.Response(
                403,
                json={"kind": "Status", "code": 403, "reason": "Forbidden", "message": "secrets is forbidden"},
            )
        )

        async with KubernetesClient(cluster_instance) as client:
            with pytest.raises(ClusterError) as exc_info:
                await client.list("Secret")

        assert exc_info.value.code == 403
        assert exc_info.value.message == "secrets is forbidden"
        assert exc_info.value.details == "Forbidden"

    @respx.mock
    async def test_non_json_error_body(self, cluster_instance: ClusterInstance):
        """Test that a non-JSON error body is kept as details."""
        respx.get(f"{BASE_URL}/api/v1/configmaps").mock(return_value=httpx.Response(502, text="Bad Gateway"))

        async with KubernetesClient(cluster_instance) as client:
            with pytest.raises(ClusterError) as exc_info:
                await client.list("ConfigMap")

        assert exc_info.value.code == 502
        assert exc_info.value.details == "Bad Gateway"

    @respx.mock
    async def test_network_errors_are_retried_then_mapped(self, cluster_instance: ClusterInstance):
        """Test that transport failures are retried and surface as a 503 ClusterError."""
        route = respx.get(f"{BASE_URL}/api/v1/configmaps").mock(
            side_effect=httpx.ConnectError("connection refused")
        )

        async with KubernetesClient(cluster_instance) as client:
            with pytest.raises(ClusterError) as exc_info:
                await client.list("ConfigMap")

        assert route.call_count == 3
        assert exc_info.value.code == 503
        assert "connection refused" in (exc_info.value.details or "")


@pytest.mark.unit
class TestKubernetesClientWrite:
    """Tests for apply and delete."""

    @respx.mock
    async def test_apply_uses_server_side_apply(self, cluster_instance: ClusterInstance):
        """Test that apply sends an apply-patch with our field manager."""
        route = respx.patch(f"{BASE_URL}/apis/apps/v1/namespaces/prod/deployments/web").mock(
            return_value=httpx.Response(200, json={**DEPLOYMENT, "status": {"readyReplicas": 2}})
        )

        async with KubernetesClient(cluster_instance) as client:
            live = await client.apply(DEPLOYMENT)

        request = route.calls[0].request
        assert request.headers["Content-Type"] == APPLY_CONTENT_TYPE
        assert request.url.params["fieldManager"] == FIELD_MANAGER
        assert json.loads(request.content) == DEPLOYMENT
        assert live.status == {"readyReplicas": 2}

    @respx.mock
    async def test_apply_immutable_without_force_raises(self, cluster_instance: ClusterInstance):
        """Test that an immutable-field rejection is raised when force is off."""
        respx.patch(f"{BASE_URL}/apis/apps/v1/namespaces/prod/deployments/web").mock(
            return_value=httpx.Response(422, json={"message": "spec.selector: field is immutable"})
        )

        async with KubernetesClient(cluster_instance) as client:
            with pytest.raises(ClusterError) as exc_info:
                await client.apply(DEPLOYMENT)

        assert exc_info.value.immutable

    @respx.mock
    async def test_apply_force_replaces_object(self, cluster_instance: ClusterInstance):
        """Test that force deletes and recreates on an immutable-field rejection."""
        url = f"{BASE_URL}/apis/apps/v1/namespaces/prod/deployments/web"
        patch = respx.patch(url).mock(
            side_effect=[
                httpx.Response(422, json={"message": "spec.selector: field is immutable"}),
                httpx.Response(200, json=DEPLOYMENT),
            ]
        )
        delete = respx.delete(url).mock(return_value=httpx.Response(200, json={}))
        respx.get(url).mock(return_value=httpx.Response(404, json={"reason": "NotFound"}))

        async with KubernetesClient(cluster_instance) as client:
            live = await client.apply(DEPLOYMENT, force=True)

        assert patch.call_count == 2
        assert delete.call_count == 1
        assert live.key.name == "web"

    @respx.mock
    async def test_delete_uses_foreground_propagation(self, cluster_instance: ClusterInstance):
        """Test that delete requests foreground propagation."""
        route = respx.delete(f"{BASE_URL}/api/v1/namespaces/prod/configmaps/cfg").mock(
            return_value=httpx.Response(200, json={})
        )

        async with KubernetesClient(cluster_instance) as client:
            await client.delete("ConfigMap", "prod", "cfg")

        assert json.loads(route.calls[0].request.content) == {"propagationPolicy": "Foreground"}

    @respx.mock
    async def test_delete_missing_is_not_an_error(self, cluster_instance: ClusterInstance):
        """Test that deleting an object that is already gone succeeds."""
        respx.delete(f"{BASE_URL}/api/v1/namespaces/prod/configmaps/cfg").mock(
            return_value=httpx.Response(404, json={"reason": "NotFound"})
        )

        async with KubernetesClient(cluster_instance) as client:
            await client.delete("ConfigMap", "prod", "cfg")


@pytest.mark.unit
class TestKubernetesClientWatch:
    """Tests for watch streams."""

    @respx.mock
    async def test_watch_yields_events(self, cluster_instance: ClusterInstance):
        """Test that each JSON line becomes a WatchEvent."""
        lines = "\n".join(
            json.dumps(event)
            for event in (
                {"type": "ADDED", "object": {"metadata": {"name": "a", "namespace": "prod"}}},
                {"type": "MODIFIED", "object": {"metadata": {"name": "a", "namespace": "prod"}}},
            )
        )
        route = respx.get(f"{BASE_URL}/api/v1/configmaps").mock(
            return_value=httpx.Response(200, text=lines + "\n")
        )

        async with KubernetesClient(cluster_instance) as client:
            events = [e async for e in client.watch("ConfigMap", label_selector="x=y")]

        assert [e.type for e in events] == ["ADDED", "MODIFIED"]
        assert all(isinstance(e, WatchEvent) for e in events)
        assert str(events[0].object.key) == "ConfigMap/prod/a"
        assert route.calls[0].request.url.params["watch"] == "1"

    @respx.mock
    async def test_watch_error_event_raises(self, cluster_instance: ClusterInstance):
        """Test that an ERROR event (e.g. expired resourceVersion) raises ClusterError."""
        line = json.dumps({"type": "ERROR", "object": {"code": 410, "message": "too old resource version"}})
        respx.get(f"{BASE_URL}/api/v1/configmaps").mock(return_value=httpx.Response(200, text=line))

        async with KubernetesClient(cluster_instance) as client:
            with pytest.raises(ClusterError) as exc_info:
                async for _ in client.watch("ConfigMap"):
                    pass

        assert exc_info.value.code == 410


WIDGET = {
    "apiVersion": "example.com/v1",
    "kind": "Widget",
    "metadata": {"name": "spinner", "labels": {TRACKING_LABEL: "guestbook"}},
    "spec": {"speed": 3},
}


@pytest.mark.unit
class TestCustomResources:
    """Tests for kinds outside the built-in registry."""

    def test_ensure_kind_keeps_registered_kinds(self):
        """Test that a manifest cannot re-route a built-in kind to another group."""
        info = ensure_kind("Deployment", "example.com/v9")

        assert info.api_version == "apps/v1"
        assert kind_info("Deployment").api_version == "apps/v1"

    def test_rendering_registers_custom_kind(self):
        """Test that rendering a custom resource makes its group/version addressable."""
        build_desired([WIDGET], "guestbook")

        assert kind_info("Widget") == KindInfo(kind="Widget", api_version="example.com/v1", plural="widgets")
        assert resource_path("Widget", "guestbook") == "/apis/example.com/v1/namespaces/guestbook/widgets"

    @respx.mock
    async def test_observer_lists_rendered_custom_resource(self, cluster_instance: ClusterInstance, make_app):
        """Test that a rendered custom resource is listed under its own group, not the core API."""
        live = {**WIDGET, "metadata": {**WIDGET["metadata"], "namespace": "guestbook"}}
        grouped = respx.get(f"{BASE_URL}/apis/example.com/v1/widgets").mock(
            return_value=httpx.Response(200, json={"items": [live]})
        )
        core = respx.get(f"{BASE_URL}/api/v1/widgets").mock(return_value=httpx.Response(404, json={}))

        desired = build_desired([WIDGET], "guestbook")
        async with KubernetesClient(cluster_instance) as client:
            observer = LiveStateObserver(client, kinds=())
            snap = await observer.snapshot(make_app(), kinds=[obj.kind for obj in desired])

        assert snap.errors == {}
        assert [str(k) for k in snap.objects] == ["Widget/guestbook/spinner"]
        assert grouped.called
        assert not core.called
