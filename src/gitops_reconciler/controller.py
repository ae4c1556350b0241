# ABOUTME: Policy loop driving each Application through observe, evaluate and sync
# ABOUTME: Per-application state machine, wake channel, retry backoff, history and operator actions

"""
Policy Loop.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

One ``ApplicationController`` per Application runs the control loop:

    Idle --(timer tick | notify)--> Observing
    Observing --(no drift)--> Idle, Synced
    Observing --(drift)--> EvaluatingPolicy
    EvaluatingPolicy --(manual only)--> Idle, OutOfSync
    EvaluatingPolicy --(revision already synced, no selfHeal)--> Idle, OutOfSync
    EvaluatingPolicy --(new revision | selfHeal)--> Syncing
    Syncing --(success)--> Idle, Synced
    Syncing --(failure)--> Idle, OutOfSync, retry after backoff

The ``Reconciler`` owns one controller per Application, the shared
observer and orchestrator, and exposes the operator actions (sync,
history, rollback, get, diff, refresh, cancel, remove).

=============================================================================
CONCURRENCY
=============================================================================

- Each controller holds an ``asyncio.Lock``: a cycle and any operator
  action on the same Application never overlap, so two syncs for one
  Application are never in flight together.
- Controllers of different Applications run as independent tasks; the
  orchestrator's semaphore caps how many of them sync at once.
- ``cancel`` does not take the lock: it sets the in-flight run's cancel
  event, which the orchestrator checks at every wave boundary.

=============================================================================
FAILURES
=============================================================================

A failed automatic sync is retried for the same revision according to the
RetryPolicy (``limit`` attempts, exponential backoff). Once the limit is
reached the revision waits for a manual sync or a new revision. Errors
raised by a cycle (render, observation) never stop the loop; the next
cycle is scheduled after a backoff.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections import deque
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.diff import compute_deltas, has_drift
from gitops_reconciler.errors import (
    DeleteError,
    OperationRejected,
    ReconcilerError,
    ValidationError,
)
from gitops_reconciler.health import assess
from gitops_reconciler.kinds import kind_priority
from gitops_reconciler.models import (
    ApplicationStatus,
    ControllerState,
    ObjectOutcome,
    ObjectResult,
    OperationPhase,
    RetryPolicy,
    SyncResult,
    SyncStatus,
)
from gitops_reconciler.observer import LiveStateObserver
from gitops_reconciler.orchestrator import SyncOrchestrator
from gitops_reconciler.renderer import build_desired
from gitops_reconciler.utils.logging import new_operation_id
from gitops_reconciler.validation import validate_application

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.cluster import ClusterClient
    from gitops_reconciler.config import Declarations, ReconcilerSettings
    from gitops_reconciler.models import Application, Delta, DesiredObject, Project
    from gitops_reconciler.renderer import Renderer
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


class WakeChannel:
    """
    Single trigger source for a policy loop.

    ``wait(timeout)`` returns ``"timer"`` when the timeout elapses, or the
    reason passed to ``notify`` when something signalled first. The loop
    does not care which one fired.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    def notify(self, reason: str = "notify") -> None:
        self._reason = reason
        self._event.set()

    async def wait(self, timeout: float | None) -> str:
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except TimeoutError:
            return "timer"
        self._event.clear()
        return self._reason


@dataclasses.dataclass(frozen=True)
class Observation:
    """Everything one Observing step produced."""

    revision: str
    desired: list[DesiredObject]
    deltas: list[Delta]
    errors: dict[str, str]


class ApplicationController:
    """Policy loop and operator actions for one Application."""

    def __init__(
        self,
        app: Application,
        project: Project | None,
        *,
        renderer: Renderer,
        observer: LiveStateObserver,
        orchestrator: SyncOrchestrator,
        poll_interval: float = 180.0,
        history_limit: int = 10,
        retry: RetryPolicy | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.app = app
        self.project = project
        self._renderer = renderer
        self._observer = observer
        self._orchestrator = orchestrator
        self._poll_interval = poll_interval
        self._default_retry = retry or RetryPolicy()
        self._audit = audit

        self._lock = asyncio.Lock()
        self.wake = WakeChannel()
        self._status = ApplicationStatus()
        self._history: deque[SyncResult] = deque(maxlen=history_limit)
        self._next_id = 1
        self._cancel: asyncio.Event | None = None

        # Last revision known to match the live state after a successful sync.
        self._synced_revision: str | None = None
        # Retry bookkeeping for automatic syncs of one failing revision.
        self._failed_revision: str | None = None
        self._failures = 0
        self._retry_at: datetime | None = None
        self._error_streak = 0

    @property
    def identity(self) -> str:
        return self.app.identity

    @property
    def retry_policy(self) -> RetryPolicy:
        return self.app.sync_policy.retry or self._default_retry

    @property
    def status(self) -> ApplicationStatus:
        """A copy of the cached status; never the live record."""
        return dataclasses.replace(self._status, resource_health=dict(self._status.resource_health))

    @property
    def history(self) -> list[SyncResult]:
        """Sync results, oldest first."""
        return list(self._history)

    @property
    def syncing(self) -> bool:
        return self._cancel is not None

    def update(self, app: Application, project: Project | None) -> None:
        """Swap in a new declaration; the next cycle uses it."""
        self.app = app
        self.project = project
        self.wake.notify("policy update")

    # =========================================================================
    # OBSERVING
    # =========================================================================

    async def _render(self, revision: str) -> tuple[str, list[DesiredObject]]:
        src = self.app.source
        resolved = await asyncio.to_thread(self._renderer.resolve_revision, src.repo_ref, revision)
        manifests = await asyncio.to_thread(
            self._renderer.render, src.repo_ref, resolved, src.path, dict(src.params)
        )
        return resolved, build_desired(manifests, self.app.destination.namespace)

    async def _observe(self, revision: str | None = None, *, refresh: bool = False) -> Observation:
        """Render, snapshot and diff; updates cached health as a side effect."""
        resolved, desired = await self._render(revision or self.app.source.revision)
        extra_kinds = {obj.kind for obj in desired}
        snapshot = await self._observer.snapshot(self.app, kinds=sorted(extra_kinds), refresh=refresh)
        live = list(snapshot.objects.values())
        deltas = compute_deltas(desired, live, self.app.ignore_differences)

        tracked = {obj.key for obj in desired if not obj.is_hook}
        tracked |= {obj.key for obj in live if not obj.is_hook and not _owned(obj.body)}
        resource_health, health = assess(tracked, snapshot.objects)
        self._status.resource_health = resource_health
        self._status.health_status = health
        self._status.observed_at = snapshot.observed_at
        return Observation(resolved, desired, deltas, snapshot.errors)

    # =========================================================================
    # POLICY LOOP
    # =========================================================================

    async def reconcile_once(self) -> OperationPhase | None:
        """
        Run one Observing -> EvaluatingPolicy -> Syncing pass.

        Returns:
            None when no drift was found, ``OUT_OF_SYNC_NO_ACTION`` when the
            policy declined to sync, otherwise the phase of the sync run.

        Raises:
            ReconcilerError: Render or observation failure; the status keeps
                             its last known classification.
        """
        async with self._lock:
            new_operation_id()
            self._status.state = ControllerState.OBSERVING
            try:
                return await self._cycle()
            finally:
                self._status.state = ControllerState.IDLE

    async def _cycle(self) -> OperationPhase | None:
        log = logger.bind(app=self.identity)
        try:
            obs = await self._observe()
        except ReconcilerError as e:
            self._status.last_error = str(e)
            log.warning("Observation failed", error=str(e))
            raise

        self._status.last_error = None
        if not has_drift(obs.deltas):
            self._status.sync_status = SyncStatus.SYNCED
            self._status.revision = obs.revision
            self._synced_revision = obs.revision
            self._reset_retry()
            log.debug("No drift", revision=obs.revision[:12])
            return None

        self._status.sync_status = SyncStatus.OUT_OF_SYNC
        self._status.state = ControllerState.EVALUATING_POLICY
        decline = self._policy_declines(obs.revision)
        if decline:
            log.info("Out of sync, not syncing", reason=decline, revision=obs.revision[:12])
            return OperationPhase.OUT_OF_SYNC_NO_ACTION

        # Objects of an unread kind cannot be told apart from Extra ones.
        prune = False if obs.errors else None
        if obs.errors:
            log.warning("Snapshot incomplete, prune skipped", kinds=sorted(obs.errors))

        self._status.state = ControllerState.SYNCING
        result = await self._run_sync(obs, prune=prune, initiated_by="automated")
        return result.phase

    def _policy_declines(self, revision: str) -> str | None:
        """Reason not to sync automatically, or None to go ahead."""
        policy = self.app.sync_policy
        if not policy.automated:
            return "automated sync disabled"
        if revision == self._synced_revision and not policy.self_heal:
            return "revision already synced and self-heal disabled"
        if revision == self._failed_revision:
            if self._failures > self.retry_policy.limit:
                return "retry limit reached"
            if self._retry_at is not None and datetime.now(UTC) < self._retry_at:
                return "waiting for retry backoff"
        return None

    def _reset_retry(self) -> None:
        self._failed_revision = None
        self._failures = 0
        self._retry_at = None

    def next_delay(self) -> float:
        """Seconds until the next timer-driven cycle."""
        if self._error_streak:
            return min(self._poll_interval, self.retry_policy.backoff(self._error_streak))
        if self._retry_at is not None:
            remaining = (self._retry_at - datetime.now(UTC)).total_seconds()
            return max(0.0, min(self._poll_interval, remaining))
        return self._poll_interval

    async def run(self) -> None:
        """Run the policy loop until cancelled. A failing cycle never ends the loop."""
        log = logger.bind(app=self.identity)
        log.info("Policy loop started", poll_interval=self._poll_interval)
        delay: float | None = 0.0
        while True:
            trigger = await self.wake.wait(delay)
            log.debug("Cycle triggered", trigger=trigger)
            try:
                await self.reconcile_once()
                self._error_streak = 0
            except ReconcilerError:
                self._error_streak += 1
            except Exception:
                self._error_streak += 1
                log.exception("Unexpected error in reconciliation cycle")
            delay = self.next_delay()

    # =========================================================================
    # SYNCING
    # =========================================================================

    async def _run_sync(
        self,
        obs: Observation,
        *,
        dry_run: bool = False,
        force: bool = False,
        prune: bool | None = None,
        initiated_by: str,
    ) -> SyncResult:
        log = logger.bind(app=self.identity, revision=obs.revision[:12])
        try:
            validate_application(self.app, self.project, obs.desired)
        except ValidationError as e:
            log.warning("Sync rejected by project", violations=e.violations)
            now = datetime.now(UTC)
            result = SyncResult(
                revision=obs.revision,
                phase=OperationPhase.FAILED,
                started_at=now,
                finished_at=now,
                message=str(e),
                dry_run=dry_run,
                initiated_by=initiated_by,
            )
        else:
            self._cancel = asyncio.Event()
            try:
                result = await self._orchestrator.sync(
                    self.app,
                    obs.revision,
                    obs.desired,
                    obs.deltas,
                    dry_run=dry_run,
                    force=force,
                    prune=prune,
                    cancel=self._cancel,
                    initiated_by=initiated_by,
                )
            finally:
                self._cancel = None

        if dry_run:
            return result
        return self._record(result)

    def _record(self, result: SyncResult) -> SyncResult:
        result = dataclasses.replace(result, id=self._next_id)
        self._next_id += 1
        self._history.append(result)
        self._status.last_result = result
        self._observer.invalidate(self.identity)

        if result.succeeded:
            self._synced_revision = result.revision
            self._status.revision = result.revision
            self._status.sync_status = SyncStatus.SYNCED
            self._reset_retry()
        else:
            self._status.sync_status = SyncStatus.OUT_OF_SYNC
            if result.revision != self._failed_revision:
                self._failed_revision = result.revision
                self._failures = 0
            self._failures += 1
            delay = self.retry_policy.backoff(self._failures)
            self._retry_at = datetime.now(UTC) + timedelta(seconds=delay)
            logger.info(
                "Sync did not succeed, retry scheduled",
                app=self.identity,
                phase=result.phase.value,
                attempt=self._failures,
                retry_in=delay,
            )

        if self._audit is not None:
            self._audit.log_sync(self.identity, result)
        return result

    # =========================================================================
    # OPERATOR ACTIONS
    # =========================================================================

    async def sync(
        self,
        *,
        dry_run: bool = False,
        force: bool = False,
        prune: bool | None = None,
        revision: str | None = None,
        initiated_by: str = "operator",
    ) -> SyncResult:
        """
        Sync now, regardless of the automated policy.

        Raises:
            ReconcilerError: If rendering or observation fails.
        """
        async with self._lock:
            new_operation_id()
            self._status.state = ControllerState.OBSERVING
            try:
                obs = await self._observe(revision, refresh=True)
                self._status.state = ControllerState.SYNCING
                return await self._run_sync(
                    obs, dry_run=dry_run, force=force, prune=prune, initiated_by=initiated_by
                )
            finally:
                self._status.state = ControllerState.IDLE

    async def rollback(self, history_id: int, *, dry_run: bool = False, force: bool = False) -> SyncResult:
        """
        Re-sync the revision of a previous SyncResult.

        Raises:
            OperationRejected: If automated sync is enabled or the id is unknown.
        """
        if self.app.sync_policy.automated:
            raise OperationRejected(
                f"cannot roll back {self.identity}",
                "disable automated sync first or it would re-sync the newest revision",
            )
        target = next((r for r in self._history if r.id == history_id), None)
        if target is None:
            raise OperationRejected(f"no history entry {history_id} for {self.identity}")
        logger.info("Rolling back", app=self.identity, history_id=history_id, revision=target.revision[:12])
        return await self.sync(
            dry_run=dry_run,
            force=force,
            revision=target.revision,
            initiated_by=f"rollback:{history_id}",
        )

    async def diff(self) -> list[Delta]:
        """Current delta set (Unchanged entries included) against a fresh snapshot."""
        async with self._lock:
            new_operation_id()
            obs = await self._observe(refresh=True)
            self._status.sync_status = SyncStatus.OUT_OF_SYNC if has_drift(obs.deltas) else SyncStatus.SYNCED
            return obs.deltas

    def cancel(self) -> bool:
        """Abort the in-flight sync at its next wave boundary. False if nothing runs."""
        if self._cancel is None:
            return False
        self._cancel.set()
        logger.info("Sync cancellation requested", app=self.identity)
        return True

    async def delete_resources(self) -> list[ObjectResult]:
        """
        Delete every tracked live object, highest wave and kind priority first.

        Returns:
            One result per object; failures are recorded, not raised.
        """
        async with self._lock:
            snapshot = await self._observer.snapshot(self.app, refresh=True)
            ordered = sorted(
                snapshot.objects.values(),
                key=lambda obj: (-obj.wave, -kind_priority(obj.kind), obj.name),
            )
            results: list[ObjectResult] = []
            for obj in ordered:
                try:
                    await self._orchestrator.delete_object(obj.key)
                except DeleteError as e:
                    logger.warning("Cascade delete failed", object=str(obj.key), error=str(e))
                    results.append(ObjectResult(obj.key, ObjectOutcome.FAILED, str(e), obj.wave))
                    continue
                results.append(ObjectResult(obj.key, ObjectOutcome.DELETED, "cascade", obj.wave))
            self._observer.forget(self.identity)
            return results


def _owned(body: dict[str, Any]) -> bool:
    return bool((body.get("metadata") or {}).get("ownerReferences"))


class Reconciler:
    """
    Runs the policy loops of every declared Application against one target.

    Usage:

        reconciler = Reconciler(client, renderer, settings)
        reconciler.load(declarations)
        await reconciler.start()
        ...
        await reconciler.stop()
    """

    def __init__(
        self,
        client: ClusterClient,
        renderer: Renderer,
        settings: ReconcilerSettings,
        *,
        audit: AuditLogger | None = None,
    ) -> None:
        self._settings = settings
        self._renderer = renderer
        self._audit = audit
        self.observer = LiveStateObserver(
            client,
            timeout=settings.observe_timeout,
            max_age=settings.poll_interval,
            required_kinds=settings.required_kinds,
        )
        self.orchestrator = SyncOrchestrator(
            client,
            max_concurrent=settings.max_concurrent_syncs,
            hook_timeout=settings.hook_timeout,
            hook_poll_interval=settings.hook_poll_interval,
        )
        self.observer.add_listener(self._on_notify)
        self._projects: dict[str, Project] = {}
        self._controllers: dict[str, ApplicationController] = {}
        self._tasks: dict[str, list[asyncio.Task[None]]] = {}
        self._running = False

    # =========================================================================
    # DECLARATIONS
    # =========================================================================

    def load(self, declarations: Declarations) -> None:
        """
        Register every declared Project and Application.

        Applications addressed to another target environment are skipped with
        a warning so that one misaddressed declaration does not block startup.
        """
        for project in declarations.projects:
            self.set_project(project)
        for app in declarations.applications:
            try:
                self.add_application(app)
            except OperationRejected as e:
                logger.warning("Application skipped", app=app.identity, reason=str(e))

    def set_project(self, project: Project) -> None:
        """Add or replace a Project; controllers referencing it get the new snapshot."""
        self._projects[project.name] = project
        for ctrl in self._controllers.values():
            if ctrl.app.project == project.name:
                ctrl.update(ctrl.app, project)

    def add_application(self, app: Application) -> ApplicationController:
        """
        Add an Application, or update the declaration of an existing one.

        Raises:
            OperationRejected: If the Application targets another environment.
        """
        target = self._settings.target_name
        if app.destination.target != target:
            raise OperationRejected(
                f"application {app.identity} targets '{app.destination.target}'",
                f"this reconciler manages '{target}'",
            )
        project = self._projects.get(app.project)
        existing = self._controllers.get(app.identity)
        if existing is not None:
            existing.update(app, project)
            return existing

        ctrl = ApplicationController(
            app,
            project,
            renderer=self._renderer,
            observer=self.observer,
            orchestrator=self.orchestrator,
            poll_interval=self._settings.poll_interval,
            history_limit=self._settings.history_limit,
            retry=self._settings.retry,
            audit=self._audit,
        )
        self._controllers[app.identity] = ctrl
        if self._running:
            self._spawn(ctrl)
        logger.info("Application added", app=app.identity, project=app.project)
        return ctrl

    def applications(self) -> list[ApplicationController]:
        return [self._controllers[k] for k in sorted(self._controllers)]

    def controller(self, name: str) -> ApplicationController:
        """
        Look up by identity (``namespace/name``) or by a unique name.

        Raises:
            OperationRejected: If no (or more than one) Application matches.
        """
        if name in self._controllers:
            return self._controllers[name]
        matches = [c for c in self._controllers.values() if c.app.name == name]
        if len(matches) == 1:
            return matches[0]
        if not matches:
            raise OperationRejected(f"application '{name}' not found")
        raise OperationRejected(f"application name '{name}' is ambiguous", "use namespace/name")

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def _spawn(self, ctrl: ApplicationController) -> None:
        tasks = [asyncio.create_task(ctrl.run(), name=f"policy-loop:{ctrl.identity}")]
        if self._settings.watch:
            tasks.append(
                asyncio.create_task(self.observer.watch(ctrl.app), name=f"watch:{ctrl.identity}")
            )
        self._tasks[ctrl.identity] = tasks

    async def start(self) -> None:
        """Start one policy loop task per Application."""
        if self._running:
            return
        self._running = True
        for ctrl in self.applications():
            self._spawn(ctrl)
        logger.info("Reconciler started", applications=len(self._controllers))

    async def stop(self) -> None:
        """Cancel every loop and wait for it to finish."""
        self._running = False
        tasks = [t for group in self._tasks.values() for t in group]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Reconciler stopped")

    async def _stop_app(self, identity: str) -> None:
        tasks = self._tasks.pop(identity, [])
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _on_notify(self, identity: str) -> None:
        ctrl = self._controllers.get(identity)
        if ctrl is not None:
            ctrl.wake.notify("notify")

    # =========================================================================
    # OPERATOR SURFACE
    # =========================================================================

    async def sync(self, name: str, *, dry_run: bool = False, force: bool = False, prune: bool | None = None) -> SyncResult:
        return await self.controller(name).sync(dry_run=dry_run, force=force, prune=prune)

    def history(self, name: str) -> list[SyncResult]:
        return self.controller(name).history

    async def rollback(self, name: str, history_id: int, *, dry_run: bool = False) -> SyncResult:
        return await self.controller(name).rollback(history_id, dry_run=dry_run)

    def get(self, name: str) -> ApplicationStatus:
        return self.controller(name).status

    async def diff(self, name: str) -> list[Delta]:
        return await self.controller(name).diff()

    def refresh(self, name: str) -> None:
        """Webhook-equivalent: drop the cached snapshot and wake the loop now."""
        self.observer.notify(self.controller(name).identity)

    def cancel(self, name: str) -> bool:
        return self.controller(name).cancel()

    async def remove(self, name: str, *, cascade: bool = False) -> list[ObjectResult]:
        """
        Stop reconciling an Application.

        With ``cascade`` every tracked live object is deleted as well.
        """
        ctrl = self.controller(name)
        await self._stop_app(ctrl.identity)
        results: list[ObjectResult] = []
        if cascade:
            results = await ctrl.delete_resources()
        self.observer.forget(ctrl.identity)
        del self._controllers[ctrl.identity]
        logger.info("Application removed", app=ctrl.identity, cascade=cascade, deleted=len(results))
        return results


def summarize(results: Iterable[ObjectResult]) -> dict[str, int]:
    """Count results per outcome, e.g. for a status line."""
    counts: dict[str, int] = {}
    for result in results:
        counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
    return counts
