# ABOUTME: Cluster client contract consumed by the observer and the orchestrator
# ABOUTME: get/list/watch/apply/delete on typed resources plus watch event record

"""Cluster client contract."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gitops_reconciler.models import LiveObject


@dataclass(frozen=True)
class WatchEvent:
    """One change notification: ADDED, MODIFIED, DELETED or BOOKMARK."""

    type: str
    object: LiveObject


class ClusterClient(Protocol):
    """
    Typed access to the target environment's object store.

    Implementations raise ``ClusterError`` for API failures. ``apply`` with
    ``force=True`` deletes and recreates an object whose update was rejected
    because of an immutable field.
    """

    async def get(self, kind: str, namespace: str, name: str) -> LiveObject | None: ...

    async def list(
        self,
        kind: str,
        namespace: str = "",
        label_selector: str | None = None,
    ) -> list[LiveObject]: ...

    def watch(
        self,
        kind: str,
        namespace: str = "",
        label_selector: str | None = None,
    ) -> AsyncIterator[WatchEvent]: ...

    async def apply(self, body: dict[str, Any], *, force: bool = False) -> LiveObject: ...

    async def delete(self, kind: str, namespace: str, name: str) -> None: ...
