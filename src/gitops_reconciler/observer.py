# ABOUTME: Live state observer keeping a per-application snapshot of managed objects
# ABOUTME: Bounded per-kind reads, partial-failure tolerance, cache with notify-driven refresh

"""
Live State Observer.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The observer answers one question for the Policy Loop: "what does the
target environment look like for this Application right now?"

    snapshot = await observer.snapshot(app)
    snapshot.objects   # {ObjectKey: LiveObject}, a private copy
    snapshot.errors    # {kind: error message} for kinds that failed

Managed objects are found through the tracking label that the orchestrator
stamps on everything it applies (``app.kubernetes.io/instance=<app name>``).
Every kind is listed concurrently and each read is bounded by a timeout, so
``snapshot`` never blocks longer than that timeout.

=============================================================================
PARTIAL FAILURE
=============================================================================

A kind whose read fails or times out is reported in ``errors`` and simply
contributes no objects. Only when a kind listed in ``required_kinds`` fails
does the whole snapshot raise ``ObservationError``: without those kinds the
diff would report everything as Missing and trigger a destructive sync.

=============================================================================
CACHE AND NOTIFICATIONS
=============================================================================

Snapshots are cached per Application identity and reused until they are
older than ``max_age`` (the poll interval). ``notify(identity)`` marks the
cached entry stale and fires every registered listener; the controller
registers one that wakes the Application's loop immediately, so an external
change notification bypasses the poll timer. ``watch(app)`` feeds
``notify`` from the cluster's watch streams.

The cache is never handed out directly: callers get a shallow copy of the
object map, and the objects themselves are frozen.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.errors import ObservationError
from gitops_reconciler.kinds import known_kinds
from gitops_reconciler.models import TRACKING_LABEL, LiveObject, ObjectKey

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.cluster import ClusterClient
    from gitops_reconciler.models import Application

logger = structlog.get_logger(__name__)

Listener = Callable[[str], None]


@dataclass(frozen=True)
class Snapshot:
    """Live objects of one Application at one point in time."""

    objects: dict[ObjectKey, LiveObject] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def complete(self) -> bool:
        return not self.errors

    def copy(self) -> Snapshot:
        return Snapshot(dict(self.objects), dict(self.errors), self.observed_at)


def tracking_selector(app: Application) -> str:
    return f"{TRACKING_LABEL}={app.name}"


class LiveStateObserver:
    """Cached, timeout-bounded view of the live objects each Application manages."""

    def __init__(
        self,
        client: ClusterClient,
        *,
        timeout: float = 30.0,
        max_age: float = 180.0,
        kinds: Iterable[str] | None = None,
        required_kinds: Iterable[str] = (),
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._max_age = max_age
        self._kinds = tuple(kinds) if kinds is not None else tuple(known_kinds())
        self._required = frozenset(required_kinds)
        self._cache: dict[str, Snapshot] = {}
        self._stale: set[str] = set()
        self._listeners: list[Listener] = []

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    async def snapshot(
        self,
        app: Application,
        *,
        kinds: Iterable[str] = (),
        refresh: bool = False,
    ) -> Snapshot:
        """
        Return the live objects tracked for ``app``.

        Args:
            app: Application whose tracked objects to read.
            kinds: Extra kinds to read besides the registry (custom resources
                   that appear in the desired manifests).
            refresh: Ignore any cached snapshot.

        Raises:
            ObservationError: If a required kind could not be read.
        """
        identity = app.identity
        cached = self._cache.get(identity)
        if cached is not None and not refresh and not self._expired(identity, cached):
            return cached.copy()

        all_kinds = tuple(dict.fromkeys((*self._kinds, *kinds)))
        snap = await self._fetch(app, all_kinds)
        self._cache[identity] = snap
        self._stale.discard(identity)
        return snap.copy()

    def _expired(self, identity: str, snap: Snapshot) -> bool:
        if identity in self._stale:
            return True
        age = (datetime.now(UTC) - snap.observed_at).total_seconds()
        return age >= self._max_age

    async def _fetch(self, app: Application, kinds: tuple[str, ...]) -> Snapshot:
        log = logger.bind(app=app.identity)
        selector = tracking_selector(app)
        results = await asyncio.gather(*(self._list_kind(kind, selector) for kind in kinds))

        objects: dict[ObjectKey, LiveObject] = {}
        errors: dict[str, str] = {}
        for kind, items, error in results:
            if error is not None:
                errors[kind] = error
                continue
            for obj in items:
                objects[obj.key] = obj

        required_failures = {k: v for k, v in errors.items() if k in self._required}
        if required_failures:
            log.error("Required kinds could not be observed", errors=required_failures)
            raise ObservationError(
                f"cannot observe required kinds for {app.identity}",
                required_failures,
            )
        if errors:
            log.warning("Partial live state snapshot", errors=errors)

        log.debug("Observed live state", objects=len(objects), failed_kinds=len(errors))
        return Snapshot(objects=objects, errors=errors)

    async def _list_kind(
        self,
        kind: str,
        selector: str,
    ) -> tuple[str, list[LiveObject], str | None]:
        try:
            items = await asyncio.wait_for(
                self._client.list(kind, "", label_selector=selector),
                timeout=self._timeout,
            )
        except TimeoutError:
            return kind, [], f"timed out after {self._timeout:g}s"
        except Exception as e:  # noqa: BLE001 - one kind failing must not fail the snapshot
            return kind, [], str(e)
        return kind, items, None

    # =========================================================================
    # INVALIDATION AND NOTIFICATIONS
    # =========================================================================

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked with the identity passed to ``notify``."""
        self._listeners.append(listener)

    def notify(self, identity: str) -> None:
        """
        Signal that an Application's live state changed.

        The cached snapshot is marked stale and every listener is called,
        so the next cycle starts now instead of at the next poll tick.
        """
        self._stale.add(identity)
        for listener in self._listeners:
            listener(identity)

    def invalidate(self, identity: str) -> None:
        """Mark the cached snapshot stale without waking anyone."""
        self._stale.add(identity)

    def forget(self, identity: str) -> None:
        self._cache.pop(identity, None)
        self._stale.discard(identity)

    async def watch(self, app: Application, *, retry_delay: float = 5.0) -> None:
        """
        Feed ``notify`` from watch streams of every observed kind.

        Runs until cancelled. A stream that ends or fails is reopened after
        ``retry_delay`` seconds.
        """
        selector = tracking_selector(app)
        await asyncio.gather(
            *(self._watch_kind(app.identity, kind, selector, retry_delay) for kind in self._kinds)
        )

    async def _watch_kind(self, identity: str, kind: str, selector: str, retry_delay: float) -> None:
        log = logger.bind(app=identity, kind=kind)
        while True:
            try:
                async for event in self._client.watch(kind, "", label_selector=selector):
                    if event.type == "BOOKMARK":
                        continue
                    log.debug("Watch event", type=event.type, object=str(event.object.key))
                    self.notify(identity)
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001 - reconnect on any stream failure
                log.warning("Watch stream failed", error=str(e))
            await asyncio.sleep(retry_delay)
