# ABOUTME: Sync orchestrator turning a delta set into an ordered, wave-barriered apply plan
# ABOUTME: Runs PreSync/Sync/PostSync/SyncFail hooks, applies waves, prunes in reverse wave order

"""
Sync Orchestrator.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Given the desired objects and the delta set for one revision, the
orchestrator builds a ``SyncPlan`` and executes it against the cluster:

    1. PreSync hooks        any failure stops the run before main objects
    2. apply waves          ascending wave, kind priority, then name
    3. prune                Extra objects, highest wave first
    4. Sync hooks
    5. PostSync hooks       only when everything before succeeded
    6. SyncFail hooks       only when something failed (best effort)

=============================================================================
WAVE BARRIER
=============================================================================

Objects of one wave are applied in plan order, each awaited until the API
server acknowledges it (the apply returns the live object). Wave N+1 never
starts before every apply of wave N has returned. When an apply fails, the
remaining objects of the same wave are still attempted, but no later wave,
no prune and no Sync/PostSync hook runs. Nothing already applied is rolled
back.

=============================================================================
HOOKS
=============================================================================

A hook succeeds once it is applied AND its health predicate reports
Healthy (a Job completes, a Pod succeeds). Degraded, or still not Healthy
after ``hook_timeout`` seconds, is a failure. Delete policies:

    BeforeHookCreation (default)  delete the previous instance before applying
    HookSucceeded                 delete the hook once it succeeded

=============================================================================
RUN-LEVEL FLAGS
=============================================================================

- ``dry_run``: build the full plan and report what would happen; no cluster
  call is made.
- ``force``: passed to ``apply``; immutable-field conflicts are resolved by
  delete-and-recreate.
- ``cancel``: an ``asyncio.Event``; once set, the run stops at the next wave
  (or hook phase) boundary and is recorded as Aborted.

Runs from all Applications share one semaphore, which caps how many syncs
hit the target environment at the same time.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from itertools import groupby
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.errors import ApplyError, ClusterError, DeleteError, HookError
from gitops_reconciler.health import evaluate
from gitops_reconciler.kinds import kind_priority
from gitops_reconciler.models import (
    TRACKING_LABEL,
    DeltaType,
    HealthStatus,
    HookPhase,
    ObjectOutcome,
    ObjectResult,
    OperationPhase,
    SyncResult,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.cluster import ClusterClient
    from gitops_reconciler.models import Application, Delta, DesiredObject, ObjectKey

logger = structlog.get_logger(__name__)

HOOK_SUCCEEDED = "HookSucceeded"
BEFORE_HOOK_CREATION = "BeforeHookCreation"
PRUNE_DISABLED_OPTION = "Prune=false"


class SyncAborted(Exception):
    """Raised internally when the cancel event is seen at a boundary."""


def apply_order(key: ObjectKey) -> tuple[int, str, str]:
    return (kind_priority(key.kind), key.name, key.namespace)


def _prune_order(delta: Delta) -> tuple[int, str, str]:
    return (-kind_priority(delta.key.kind), delta.key.name, delta.key.namespace)


def _hook_order(hook: DesiredObject) -> tuple[int, int, str, str]:
    return (hook.wave, *apply_order(hook.key))


def with_tracking_label(body: dict[str, Any], app: Application) -> dict[str, Any]:
    """Return a copy of ``body`` carrying the tracking label for ``app``."""
    stamped = copy.deepcopy(body)
    metadata = stamped.setdefault("metadata", {})
    labels = metadata.get("labels") or {}
    labels[TRACKING_LABEL] = app.name
    metadata["labels"] = labels
    return stamped


@dataclass(frozen=True)
class SyncPlan:
    """Ordered actions for one sync run."""

    hooks: dict[HookPhase, tuple[DesiredObject, ...]] = field(default_factory=dict)
    # (wave, deltas) ascending; Missing and Modified only.
    apply_waves: tuple[tuple[int, tuple[Delta, ...]], ...] = ()
    # (wave, deltas) descending; Extra objects to delete.
    prune_waves: tuple[tuple[int, tuple[Delta, ...]], ...] = ()
    # (delta, reason) Extra objects left in place.
    prune_skipped: tuple[tuple[Delta, str], ...] = ()
    unchanged: tuple[Delta, ...] = ()

    def hooks_for(self, phase: HookPhase) -> tuple[DesiredObject, ...]:
        return self.hooks.get(phase, ())

    @property
    def has_changes(self) -> bool:
        return bool(self.apply_waves or self.prune_waves)

    @property
    def has_hooks(self) -> bool:
        return any(self.hooks.values())

    @property
    def empty(self) -> bool:
        return not (self.has_changes or self.has_hooks)


def build_plan(
    desired: Iterable[DesiredObject],
    deltas: Iterable[Delta],
    *,
    prune: bool,
) -> SyncPlan:
    """
    Partition hooks and order deltas into apply and prune waves.

    Args:
        desired: All desired objects of the revision (hooks included).
        deltas: Output of ``compute_deltas`` for the same revision.
        prune: Whether Extra objects may be deleted.
    """
    hooks: dict[HookPhase, list[DesiredObject]] = {}
    for obj in desired:
        if obj.hook is not None:
            hooks.setdefault(obj.hook, []).append(obj)

    to_apply: list[Delta] = []
    to_prune: list[Delta] = []
    skipped: list[tuple[Delta, str]] = []
    unchanged: list[Delta] = []
    for delta in deltas:
        if delta.type in (DeltaType.MISSING, DeltaType.MODIFIED):
            to_apply.append(delta)
        elif delta.type is DeltaType.EXTRA:
            options = delta.live.sync_options if delta.live is not None else frozenset()
            if not prune:
                skipped.append((delta, "prune disabled"))
            elif PRUNE_DISABLED_OPTION in options:
                skipped.append((delta, PRUNE_DISABLED_OPTION))
            else:
                to_prune.append(delta)
        else:
            unchanged.append(delta)

    to_apply.sort(key=lambda d: (d.wave, *apply_order(d.key)))
    apply_waves = tuple(
        (wave, tuple(group)) for wave, group in groupby(to_apply, key=lambda d: d.wave)
    )
    to_prune.sort(key=lambda d: (-d.wave, *_prune_order(d)))
    prune_waves = tuple(
        (wave, tuple(group)) for wave, group in groupby(to_prune, key=lambda d: d.wave)
    )

    return SyncPlan(
        hooks={phase: tuple(sorted(objs, key=_hook_order)) for phase, objs in hooks.items()},
        apply_waves=apply_waves,
        prune_waves=prune_waves,
        prune_skipped=tuple(sorted(skipped, key=lambda item: item[0].key)),
        unchanged=tuple(sorted(unchanged, key=lambda d: d.key)),
    )


class _Run:
    """Mutable bookkeeping for one execution of a plan."""

    def __init__(self, cancel: asyncio.Event | None) -> None:
        self.results: list[ObjectResult] = []
        self.failed = False
        self.message = ""
        self._cancel = cancel

    def record(self, result: ObjectResult) -> None:
        self.results.append(result)

    def fail(self, message: str) -> None:
        if not self.failed:
            self.message = message
        self.failed = True

    def checkpoint(self, where: str) -> None:
        if self._cancel is not None and self._cancel.is_set():
            raise SyncAborted(f"cancelled before {where}")


class SyncOrchestrator:
    """Executes sync plans against one target environment."""

    def __init__(
        self,
        client: ClusterClient,
        *,
        max_concurrent: int = 5,
        hook_timeout: float = 300.0,
        hook_poll_interval: float = 2.0,
    ) -> None:
        self._client = client
        self._pool = asyncio.Semaphore(max_concurrent)
        self._hook_timeout = hook_timeout
        self._hook_poll_interval = hook_poll_interval

    async def sync(
        self,
        app: Application,
        revision: str,
        desired: Iterable[DesiredObject],
        deltas: Iterable[Delta],
        *,
        dry_run: bool = False,
        force: bool = False,
        prune: bool | None = None,
        cancel: asyncio.Event | None = None,
        initiated_by: str = "automated",
    ) -> SyncResult:
        """
        Build and execute the plan for one revision.

        Args:
            app: Application being synced (tracking label, prune policy).
            revision: Immutable revision the desired objects were rendered from.
            desired: Desired objects, hooks included.
            deltas: Delta set computed against the current live state.
            dry_run: Report the plan without touching the cluster.
            force: Delete-and-recreate on immutable-field conflicts.
            prune: Override the Application's prune policy for this run.
            cancel: Event that aborts the run at the next boundary.
            initiated_by: Recorded on the result ("automated", "operator"...).

        Returns:
            The SyncResult of the run. Failures are reported in the result,
            never raised.
        """
        started = datetime.now(UTC)
        plan = build_plan(
            desired,
            deltas,
            prune=app.sync_policy.prune if prune is None else prune,
        )
        log = logger.bind(app=app.identity, revision=revision[:12], dry_run=dry_run)

        if dry_run:
            run = self._dry_run(plan)
            phase = OperationPhase.SUCCEEDED
        else:
            run = _Run(cancel)
            async with self._pool:
                log.info("Starting sync", waves=len(plan.apply_waves), prune_waves=len(plan.prune_waves))
                phase = await self._execute(app, plan, run, force=force, log=log)

        result = SyncResult(
            revision=revision,
            phase=phase,
            started_at=started,
            finished_at=datetime.now(UTC),
            resources=tuple(run.results),
            message=run.message or _default_message(phase, plan),
            dry_run=dry_run,
            initiated_by=initiated_by,
        )
        log.info("Sync finished", phase=phase.value, message=result.message)
        return result

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def _execute(
        self,
        app: Application,
        plan: SyncPlan,
        run: _Run,
        *,
        force: bool,
        log: Any,
    ) -> OperationPhase:
        for delta in plan.unchanged:
            run.record(ObjectResult(delta.key, ObjectOutcome.NO_OP, "in sync", wave=delta.wave))
        for delta, reason in plan.prune_skipped:
            run.record(ObjectResult(delta.key, ObjectOutcome.NO_OP, reason, wave=delta.wave))

        try:
            run.checkpoint("PreSync hooks")
            await self._run_hooks(app, HookPhase.PRE_SYNC, plan, run, force=force)
            if run.failed:
                log.warning("PreSync hook failed, main phase skipped", message=run.message)
            else:
                await self._apply_waves(app, plan, run, force=force, log=log)
            if not run.failed:
                await self._prune(plan, run, log=log)
            if not run.failed:
                run.checkpoint("Sync hooks")
                await self._run_hooks(app, HookPhase.SYNC, plan, run, force=force)
            if not run.failed:
                run.checkpoint("PostSync hooks")
                await self._run_hooks(app, HookPhase.POST_SYNC, plan, run, force=force)
        except SyncAborted as e:
            log.warning("Sync aborted", reason=str(e))
            run.message = f"Sync aborted: {e}"
            return OperationPhase.ABORTED

        if run.failed:
            await self._run_sync_fail_hooks(app, plan, run, force=force, log=log)
            return OperationPhase.FAILED
        return OperationPhase.SUCCEEDED

    async def _apply_waves(
        self,
        app: Application,
        plan: SyncPlan,
        run: _Run,
        *,
        force: bool,
        log: Any,
    ) -> None:
        for wave, deltas in plan.apply_waves:
            run.checkpoint(f"wave {wave}")
            log.debug("Applying wave", wave=wave, objects=len(deltas))
            for delta in deltas:
                if delta.desired is None:
                    raise ValueError(f"{delta.type.value} delta for {delta.key} has no desired object")
                outcome = ObjectOutcome.CREATED if delta.type is DeltaType.MISSING else ObjectOutcome.UPDATED
                try:
                    await self._apply(app, delta.desired, force=force)
                except ApplyError as e:
                    log.warning("Apply failed", object=str(delta.key), error=str(e))
                    run.record(ObjectResult(delta.key, ObjectOutcome.FAILED, str(e), wave=wave))
                    run.fail(str(e))
                    continue
                run.record(ObjectResult(delta.key, outcome, wave=wave))
            if run.failed:
                log.warning("Wave failed, later waves skipped", wave=wave)
                return

    async def _prune(self, plan: SyncPlan, run: _Run, *, log: Any) -> None:
        for wave, deltas in plan.prune_waves:
            run.checkpoint(f"prune of wave {wave}")
            for delta in sorted(deltas, key=_prune_order):
                try:
                    await self.delete_object(delta.key)
                except DeleteError as e:
                    log.warning("Prune failed", object=str(delta.key), error=str(e))
                    run.record(ObjectResult(delta.key, ObjectOutcome.FAILED, str(e), wave=wave))
                    run.fail(str(e))
                    continue
                run.record(ObjectResult(delta.key, ObjectOutcome.DELETED, "pruned", wave=wave))
            if run.failed:
                return

    async def _apply(self, app: Application, obj: DesiredObject, *, force: bool) -> None:
        body = with_tracking_label(obj.body, app)
        try:
            await self._client.apply(body, force=force)
        except ClusterError as e:
            raise ApplyError(obj.key, e.message, e.details) from e

    async def delete_object(self, key: ObjectKey) -> None:
        try:
            await self._client.delete(key.kind, key.namespace, key.name)
        except ClusterError as e:
            raise DeleteError(key, e.message, e.details) from e

    # =========================================================================
    # HOOKS
    # =========================================================================

    async def _run_hooks(
        self,
        app: Application,
        phase: HookPhase,
        plan: SyncPlan,
        run: _Run,
        *,
        force: bool,
    ) -> None:
        """Run every hook of one phase in order; the first failure stops the phase."""
        for hook in plan.hooks_for(phase):
            try:
                await self._run_hook(app, hook, force=force, run=run)
            except HookError as e:
                run.record(ObjectResult(hook.key, ObjectOutcome.FAILED, str(e), hook.wave, phase))
                run.fail(str(e))
                return
            run.record(ObjectResult(hook.key, ObjectOutcome.CREATED, "hook succeeded", hook.wave, phase))

    async def _run_sync_fail_hooks(
        self,
        app: Application,
        plan: SyncPlan,
        run: _Run,
        *,
        force: bool,
        log: Any,
    ) -> None:
        for hook in plan.hooks_for(HookPhase.SYNC_FAIL):
            try:
                await self._run_hook(app, hook, force=force)
            except HookError as e:
                log.warning("SyncFail hook failed", hook=str(hook.key), error=str(e))
                run.record(ObjectResult(hook.key, ObjectOutcome.FAILED, str(e), hook.wave, hook.hook))
                continue
            run.record(ObjectResult(hook.key, ObjectOutcome.CREATED, "hook succeeded", hook.wave, hook.hook))

    async def _run_hook(
        self,
        app: Application,
        hook: DesiredObject,
        *,
        force: bool,
        run: _Run | None = None,
    ) -> None:
        """
        Create one hook object and wait for it to become Healthy.

        With ``run`` the wait honours its cancel event between polls.

        Raises:
            HookError: The hook failed, timed out or could not be created.
            SyncAborted: The run was cancelled while the hook was running.
        """
        phase = hook.hook
        if phase is None:
            raise ValueError(f"{hook.key} is not a hook")
        policies = hook.hook_delete_policies or frozenset({BEFORE_HOOK_CREATION})
        try:
            if BEFORE_HOOK_CREATION in policies:
                await self._client.delete(hook.kind, hook.namespace, hook.name)
            live = await self._client.apply(with_tracking_label(hook.body, app), force=force)
        except ClusterError as e:
            raise HookError(phase, hook.key, e.message, e.details) from e

        health = evaluate(live)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._hook_timeout
        while health is not HealthStatus.HEALTHY:
            if health is HealthStatus.DEGRADED:
                raise HookError(phase, hook.key, "hook failed", health.value)
            if loop.time() >= deadline:
                raise HookError(phase, hook.key, f"hook did not complete within {self._hook_timeout:g}s")
            await asyncio.sleep(self._hook_poll_interval)
            if run is not None:
                run.checkpoint(f"completion of hook {hook.key}")
            try:
                health = evaluate(await self._client.get(hook.kind, hook.namespace, hook.name))
            except ClusterError as e:
                raise HookError(phase, hook.key, e.message, e.details) from e

        if HOOK_SUCCEEDED in policies:
            try:
                await self._client.delete(hook.kind, hook.namespace, hook.name)
            except ClusterError as e:
                logger.warning("Could not delete succeeded hook", hook=str(hook.key), error=str(e))

    # =========================================================================
    # DRY RUN
    # =========================================================================

    def _dry_run(self, plan: SyncPlan) -> _Run:
        run = _Run(None)
        for hook in plan.hooks_for(HookPhase.PRE_SYNC):
            run.record(ObjectResult(hook.key, ObjectOutcome.CREATED, "dry run", hook.wave, hook.hook))
        for wave, deltas in plan.apply_waves:
            for delta in deltas:
                outcome = ObjectOutcome.CREATED if delta.type is DeltaType.MISSING else ObjectOutcome.UPDATED
                run.record(ObjectResult(delta.key, outcome, "dry run", wave=wave))
        for wave, deltas in plan.prune_waves:
            for delta in deltas:
                run.record(ObjectResult(delta.key, ObjectOutcome.DELETED, "dry run", wave=wave))
        for delta, reason in plan.prune_skipped:
            run.record(ObjectResult(delta.key, ObjectOutcome.NO_OP, reason, wave=delta.wave))
        for delta in plan.unchanged:
            run.record(ObjectResult(delta.key, ObjectOutcome.NO_OP, "in sync", wave=delta.wave))
        for phase in (HookPhase.SYNC, HookPhase.POST_SYNC):
            for hook in plan.hooks_for(phase):
                run.record(ObjectResult(hook.key, ObjectOutcome.CREATED, "dry run", hook.wave, phase))
        return run


def _default_message(phase: OperationPhase, plan: SyncPlan) -> str:
    if phase is OperationPhase.SUCCEEDED and plan.empty:
        return "Nothing to sync"
    return f"Sync {phase.value.lower()}"
