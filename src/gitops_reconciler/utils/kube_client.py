# ABOUTME: Kubernetes API client with retry logic and error handling
# ABOUTME: Async get/list/watch/apply/delete over the REST API using httpx

"""
Kubernetes API client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module is the concrete ``ClusterClient`` used against a real target
environment. It handles:

1. HTTP COMMUNICATION: REST calls to the API server
2. AUTHENTICATION: Bearer token on every request
3. ERROR HANDLING: Kubernetes ``Status`` bodies become ``ClusterError``
4. RETRY LOGIC: Transient network failures are retried with backoff
5. FORCE REPLACE: Immutable-field conflicts can delete-and-recreate

=============================================================================
KUBERNETES REST API OVERVIEW
=============================================================================

Core kinds live under /api/v1, grouped kinds under /apis/<group>/<version>:

    GET    /api/v1/namespaces/{ns}/services                 - List
    GET    /apis/apps/v1/namespaces/{ns}/deployments/{name} - Get
    PATCH  /apis/apps/v1/namespaces/{ns}/deployments/{name} - Server-side apply
    DELETE /api/v1/namespaces/{name}                        - Delete (cluster scoped)
    GET    /api/v1/namespaces/{ns}/pods?watch=1             - Watch stream

Errors come back as a ``Status`` object:
    {"kind": "Status", "code": 422, "reason": "Invalid",
     "message": "Deployment.apps \"web\" is invalid: spec.selector: ... field is immutable"}

=============================================================================
SERVER-SIDE APPLY
=============================================================================

Objects are applied with a PATCH whose content type is
``application/apply-patch+yaml`` (JSON is valid YAML). The API server merges
the fields we own under ``fieldManager=gitops-reconciler`` and returns the
resulting live object, which serves as the apply acknowledgment.

Usage:

    async with KubernetesClient(instance) as client:
        live = await client.list("Deployment", "prod", "app.kubernetes.io/instance=web")
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.cluster import WatchEvent
from gitops_reconciler.errors import ClusterError
from gitops_reconciler.kinds import kind_info
from gitops_reconciler.models import LiveObject, ObjectKey

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gitops_reconciler.config import ClusterInstance

logger = structlog.get_logger(__name__)

FIELD_MANAGER = "gitops-reconciler"
APPLY_CONTENT_TYPE = "application/apply-patch+yaml"

# Transient failures worth retrying: timeouts and refused/reset connections.
RETRYABLE_ERRORS = (httpx.TimeoutException, httpx.NetworkError)


def resource_path(
    kind: str,
    namespace: str = "",
    name: str | None = None,
    api_version: str | None = None,
) -> str:
    """
    Build the REST path for a kind.

    Cluster-scoped kinds ignore ``namespace``. Listing a namespaced kind
    with an empty namespace lists across all namespaces.

    Example:
        resource_path("Deployment", "prod", "web")
        -> "/apis/apps/v1/namespaces/prod/deployments/web"
    """
    info = kind_info(kind, api_version)
    version = api_version or info.api_version
    path = f"/apis/{version}" if "/" in version else f"/api/{version}"
    if info.namespaced and namespace:
        path += f"/namespaces/{namespace}"
    path += f"/{info.plural}"
    if name:
        path += f"/{name}"
    return path


def _live_object(item: dict[str, Any], kind: str, api_version: str) -> LiveObject:
    # List responses omit kind/apiVersion on their items.
    item.setdefault("kind", kind)
    item.setdefault("apiVersion", api_version)
    return LiveObject.from_manifest(item)


def _status_error(response: httpx.Response, body: str) -> ClusterError:
    message = f"HTTP {response.status_code}"
    details = None
    try:
        status = json.loads(body) if body else {}
        message = status.get("message", message)
        details = status.get("reason")
    except ValueError:
        details = body[:200] if body else None
    return ClusterError(code=response.status_code, message=message, details=details)


class KubernetesClient:
    """
    Async Kubernetes API client implementing the ``ClusterClient`` contract.

    LIFECYCLE:
    ----------
    ALWAYS use the context manager so the connection pool is closed:

        async with KubernetesClient(instance) as client:
            obj = await client.get("Namespace", "", "prod")

    RETRY LOGIC:
    ------------
    Requests failing with a timeout or network error are retried up to
    three times with exponential backoff (1s, 2s, ... capped at 10s).
    HTTP error statuses are NOT retried; they raise ``ClusterError``.
    """

    def __init__(
        self,
        instance: ClusterInstance,
        timeout: float = 30.0,
        delete_wait: float = 30.0,
    ) -> None:
        """
        Args:
            instance: Target environment connection (URL, token, TLS).
            timeout: HTTP request timeout in seconds.
            delete_wait: How long force-replace waits for a deleted object
                         to disappear before recreating it.
        """
        self._instance = instance
        self._timeout = timeout
        self._delete_wait = delete_wait
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> KubernetesClient:
        headers = {"Accept": "application/json"}
        token = self._instance.token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self._instance.url,
            headers=headers,
            timeout=self._timeout,
            verify=not self._instance.insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        content: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Make one HTTP request to the API server.

        Transport failures that survive the retries surface as a
        ``ClusterError`` with code 503, so callers handle a single type.

        Raises:
            ClusterError: On any 4xx/5xx response or an unreachable server.
            RuntimeError: If client not initialized (forgot async with).
        """
        try:
            return await self._send(method, path, params, json_data, content, headers)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise ClusterError(503, "API server unreachable", str(cause)) from e
        except httpx.HTTPError as e:
            raise ClusterError(503, "API server request failed", str(e)) from e

    @retry(
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
    )
    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        content: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        client = self._require_client()

        log = logger.bind(method=method, path=path, target=self._instance.name)
        log.debug("Making Kubernetes API request")

        response = await client.request(
            method,
            path,
            params=params,
            json=json_data,
            content=content,
            headers=headers,
        )

        if response.status_code >= 400:
            error_body = response.text
            log.debug("Kubernetes API error", status=response.status_code, body=error_body[:200])
            raise _status_error(response, error_body)

        result = response.json() if response.content else {}
        return result if isinstance(result, dict) else {}

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, kind: str, namespace: str, name: str) -> LiveObject | None:
        """Get one object, or None if it does not exist."""
        info = kind_info(kind)
        try:
            data = await self._request("GET", resource_path(kind, namespace, name))
        except ClusterError as e:
            if e.not_found:
                return None
            raise
        return _live_object(data, kind, info.api_version)

    async def list(
        self,
        kind: str,
        namespace: str = "",
        label_selector: str | None = None,
    ) -> list[LiveObject]:
        """
        List objects of one kind.

        Args:
            kind: Object kind, e.g. "Deployment".
            namespace: Namespace to list in; "" lists across all namespaces
                       (and is the only option for cluster-scoped kinds).
            label_selector: Kubernetes label selector, e.g.
                            "app.kubernetes.io/instance=guestbook".
        """
        info = kind_info(kind)
        params = {"labelSelector": label_selector} if label_selector else None
        data = await self._request("GET", resource_path(kind, namespace), params=params)
        items = data.get("items") or []
        return [_live_object(item, kind, info.api_version) for item in items]

    async def watch(
        self,
        kind: str,
        namespace: str = "",
        label_selector: str | None = None,
    ) -> AsyncIterator[WatchEvent]:
        """
        Stream change events for one kind until the server closes the stream.

        Each line of a watch response is one JSON event:
            {"type": "MODIFIED", "object": {...}}
        """
        client = self._require_client()
        info = kind_info(kind)
        params: dict[str, str] = {"watch": "1"}
        if label_selector:
            params["labelSelector"] = label_selector

        async with client.stream(
            "GET", resource_path(kind, namespace), params=params, timeout=None
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode(errors="replace")
                raise _status_error(response, body)
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                event = json.loads(line)
                obj = event.get("object") or {}
                if event.get("type") == "ERROR":
                    raise ClusterError(
                        code=int(obj.get("code") or 500),
                        message=obj.get("message", "watch error"),
                        details=obj.get("reason"),
                    )
                yield WatchEvent(
                    type=event.get("type", ""),
                    object=_live_object(obj, kind, info.api_version),
                )

    # =========================================================================
    # WRITE OPERATIONS
    # =========================================================================

    async def apply(self, body: dict[str, Any], *, force: bool = False) -> LiveObject:
        """
        Server-side apply one object and return the resulting live object.

        Args:
            body: Full manifest (apiVersion, kind, metadata, spec...).
            force: On an immutable-field rejection, delete the object and
                   apply it again instead of failing.

        Raises:
            ClusterError: If the apply is rejected.
        """
        key = ObjectKey.from_manifest(body)
        path = resource_path(key.kind, key.namespace, key.name, body.get("apiVersion"))
        try:
            data = await self._server_side_apply(path, body)
        except ClusterError as e:
            if not (force and e.immutable):
                raise
            logger.info("Replacing object with immutable field change", object=str(key))
            await self.delete(key.kind, key.namespace, key.name)
            await self._wait_deleted(key)
            data = await self._server_side_apply(path, body)
        return _live_object(data, key.kind, body.get("apiVersion") or kind_info(key.kind).api_version)

    async def _server_side_apply(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "PATCH",
            path,
            params={"fieldManager": FIELD_MANAGER, "force": "true"},
            content=json.dumps(body),
            headers={"Content-Type": APPLY_CONTENT_TYPE},
        )

    async def _wait_deleted(self, key: ObjectKey) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._delete_wait
        while await self.get(key.kind, key.namespace, key.name) is not None:
            if loop.time() >= deadline:
                raise ClusterError(409, f"{key} still exists after delete", "force replace timed out")
            await asyncio.sleep(0.5)

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        """
        Delete one object with foreground propagation.

        An object that is already gone counts as deleted.
        """
        try:
            await self._request(
                "DELETE",
                resource_path(kind, namespace, name),
                json_data={"propagationPolicy": "Foreground"},
            )
        except ClusterError as e:
            if not e.not_found:
                raise
