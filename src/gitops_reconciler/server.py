# ABOUTME: Operator surface of the reconciler exposed as an MCP server
# ABOUTME: Tools for status, diff, history, sync, rollback, refresh, cancel and removal

"""GitOps Reconciler operator surface - policy loops plus safety-gated operator tools."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from gitops_reconciler.config import ReconcilerSettings, load_declarations, load_settings
from gitops_reconciler.controller import Reconciler, summarize
from gitops_reconciler.errors import ReconcilerError
from gitops_reconciler.models import DeltaType, HealthStatus, ObjectKey, ObjectOutcome, SyncStatus
from gitops_reconciler.renderer import GitDirectoryRenderer
from gitops_reconciler.utils.kube_client import KubernetesClient
from gitops_reconciler.utils.logging import AuditLogger, configure_logging, set_operation_id
from gitops_reconciler.utils.safety import ConfirmationRequired, SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gitops_reconciler.models import Delta, SyncResult

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Objects listed by name in a deletion preview.
MAX_PREVIEW = 20

# Global state (initialized in lifespan)
_settings: ReconcilerSettings | None = None
_reconciler: Reconciler | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Load config, connect to the target, run the policy loops until shutdown."""
    global _settings, _reconciler, _safety_guard, _audit_logger

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)
    logger.info("Starting GitOps reconciler", target=_settings.target_name)

    instance = _settings.cluster_instance
    if instance is None:
        raise RuntimeError("KUBE_URL is not set; no target environment to reconcile")

    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)

    async with KubernetesClient(instance, timeout=_settings.observe_timeout) as client:
        _reconciler = Reconciler(
            client,
            GitDirectoryRenderer(_settings.repos_root),
            _settings,
            audit=_audit_logger,
        )
        if _settings.apps_file:
            _reconciler.load(load_declarations(_settings.apps_file))
        await _reconciler.start()
        logger.info("Connected to target", target=instance.name, url=instance.url)

        try:
            yield {"settings": _settings, "reconciler": _reconciler}
        finally:
            await _reconciler.stop()
            _reconciler = None
            logger.info("GitOps reconciler stopped")


mcp = FastMCP("gitops-reconciler", lifespan=lifespan)


def get_reconciler() -> Reconciler:
    if not _reconciler:
        raise RuntimeError("Server not initialized")
    return _reconciler


def get_settings() -> ReconcilerSettings:
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_safety_guard() -> SafetyGuard:
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _bind_request(ctx: MCPContext) -> None:
    set_operation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")


def _marker(ok: bool) -> str:
    return "[OK]" if ok else "[!]"


def format_result(result: SyncResult) -> str:
    """Render a SyncResult for an operator."""
    mode = "[DRY-RUN] " if result.dry_run else ""
    lines = [
        f"{mode}Sync #{result.id} {result.phase.value} at revision {result.revision[:12]}",
        f"Initiated by: {result.initiated_by}",
        f"Started: {result.started_at.isoformat()}  Finished: {result.finished_at.isoformat()}",
    ]
    if result.message:
        lines.append(f"Message: {result.message}")
    counts = summarize(result.resources)
    if counts:
        lines.append("Outcomes: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
    changed = [r for r in result.resources if r.outcome is not ObjectOutcome.NO_OP]
    if changed:
        lines.append("")
        for r in changed:
            hook = f" [{r.hook.value} hook]" if r.hook else ""
            detail = f" - {r.message}" if r.message else ""
            lines.append(f"  wave {r.wave:>3}  {r.outcome.value:<8} {r.key}{hook}{detail}")
    return "\n".join(lines)


def format_deltas(name: str, deltas: list[Delta]) -> str:
    """Group deltas into create/update/delete sections."""
    missing = [d for d in deltas if d.type is DeltaType.MISSING]
    modified = [d for d in deltas if d.type is DeltaType.MODIFIED]
    extra = [d for d in deltas if d.type is DeltaType.EXTRA]
    unchanged = [d for d in deltas if d.type is DeltaType.UNCHANGED]

    lines = [f"Diff for '{name}':", ""]
    if missing:
        lines.append(f"Objects to CREATE ({len(missing)}):")
        lines.extend(f"  + {d.key} (wave {d.wave})" for d in missing)
        lines.append("")
    if modified:
        lines.append(f"Objects to UPDATE ({len(modified)}):")
        for d in modified:
            lines.append(f"  ~ {d.key} (wave {d.wave})")
            lines.extend(f"      {path}" for path in d.changed_paths)
        lines.append("")
    if extra:
        lines.append(f"Objects to DELETE (with prune) ({len(extra)}):")
        lines.extend(f"  - {d.key}" for d in extra)
        lines.append("")
    lines.append(f"Objects in sync: {len(unchanged)}")
    if not (missing or modified or extra):
        lines.append("\nApplication is fully synced. No changes needed.")
    return "\n".join(lines)


async def deletion_preview(name: str, *, cascade: bool = False) -> dict[str, Any]:
    """
    Objects a prune (or a cascade removal) of ``name`` would delete.

    Attached to a confirmation request so the operator sees what is at
    stake before repeating the call with confirm=true.
    """
    try:
        reconciler = get_reconciler()
        if cascade:
            ctrl = reconciler.controller(name)
            snapshot = await reconciler.observer.snapshot(ctrl.app)
            keys = sorted(snapshot.objects, key=str)
        else:
            deltas = await reconciler.diff(name)
            keys = [d.key for d in deltas if d.type is DeltaType.EXTRA]
    except ReconcilerError as e:
        return {"preview unavailable": str(e)}

    shown = ", ".join(str(k) for k in keys[:MAX_PREVIEW])
    if len(keys) > MAX_PREVIEW:
        shown += f", ... ({len(keys) - MAX_PREVIEW} more)"
    return {"objects to delete": len(keys), "affected": shown or "none"}


# =============================================================================
# READ OPERATIONS
# =============================================================================


class ListApplicationsParams(BaseModel):
    project: str | None = Field(default=None, description="Filter by project name")
    health_status: HealthStatus | None = Field(default=None, description="Filter by health status")
    sync_status: SyncStatus | None = Field(default=None, description="Filter by sync status")


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """
    List reconciled applications with their cached sync and health status.

    Use this to find out-of-sync or unhealthy applications.
    """
    _bind_request(ctx)

    blocked = get_safety_guard().check_read_operation("list_applications")
    if blocked:
        get_audit_logger().log_blocked("list_applications", "all", blocked.reason)
        return blocked.format_message()

    controllers = get_reconciler().applications()
    if params.project:
        controllers = [c for c in controllers if c.app.project == params.project]
    if params.health_status:
        controllers = [c for c in controllers if c.status.health_status is params.health_status]
    if params.sync_status:
        controllers = [c for c in controllers if c.status.sync_status is params.sync_status]

    get_audit_logger().log_read("list_applications", f"project={params.project}")

    if not controllers:
        return "No applications found matching the specified filters."

    lines = [f"Found {len(controllers)} application(s):", ""]
    for ctrl in controllers:
        status = ctrl.status
        policy = ctrl.app.sync_policy
        lines.append(
            f"- {ctrl.identity} [{ctrl.app.project}] "
            f"health={status.health_status.value} {_marker(status.health_status is HealthStatus.HEALTHY)} "
            f"sync={status.sync_status.value} {_marker(status.sync_status is SyncStatus.SYNCED)} "
            f"auto={policy.automated} dest={ctrl.app.destination.namespace}@{ctrl.app.destination.target}"
        )
    return "\n".join(lines)


class GetApplicationParams(BaseModel):
    name: str = Field(description="Application name or namespace/name")


@mcp.tool()
async def get_application(params: GetApplicationParams, ctx: MCPContext) -> str:
    """
    Show sync status, health, per-object health and the last sync result.
    """
    _bind_request(ctx)

    blocked = get_safety_guard().check_read_operation("get_application")
    if blocked:
        get_audit_logger().log_blocked("get_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        ctrl = get_reconciler().controller(params.name)
    except ReconcilerError as e:
        get_audit_logger().log_error("get_application", params.name, str(e))
        return str(e)

    app = ctrl.app
    status = ctrl.status
    get_audit_logger().log_read("get_application", ctrl.identity)

    lines = [
        f"Application: {ctrl.identity}",
        f"Project: {app.project}",
        f"Source: {app.source.repo_ref} @ {app.source.revision} ({app.source.path})",
        f"Destination: {app.destination.target}/{app.destination.namespace}",
        f"Policy: automated={app.sync_policy.automated} prune={app.sync_policy.prune} "
        f"selfHeal={app.sync_policy.self_heal}",
        "",
        f"Sync Status: {status.sync_status.value}",
        f"Health Status: {status.health_status.value}",
        f"State: {status.state.value}",
        f"Revision: {status.revision or 'unknown'}",
    ]
    if status.observed_at:
        lines.append(f"Observed: {status.observed_at.isoformat()}")
    if status.last_error:
        lines.append(f"Last error: {status.last_error}")

    unhealthy = {k: v for k, v in status.resource_health.items() if v is not HealthStatus.HEALTHY}
    if unhealthy:
        lines.extend(["", "Unhealthy objects:"])
        lines.extend(f"  {key}: {health.value}" for key, health in unhealthy.items())

    if status.last_result:
        lines.extend(["", "Last sync:", format_result(status.last_result)])
    return "\n".join(lines)


class GetResourceParams(BaseModel):
    name: str = Field(description="Application name or namespace/name")
    kind: str = Field(description="Object kind, e.g. Deployment")
    resource_name: str = Field(description="Object name")
    namespace: str = Field(default="", description="Object namespace (empty for cluster-scoped)")


@mcp.tool()
async def get_resource(params: GetResourceParams, ctx: MCPContext) -> str:
    """
    Show the live manifest of one managed object. Secret values are masked.
    """
    _bind_request(ctx)

    blocked = get_safety_guard().check_read_operation("get_resource")
    if blocked:
        get_audit_logger().log_blocked("get_resource", params.name, blocked.reason)
        return blocked.format_message()

    try:
        reconciler = get_reconciler()
        ctrl = reconciler.controller(params.name)
        snapshot = await reconciler.observer.snapshot(ctrl.app)
    except ReconcilerError as e:
        get_audit_logger().log_error("get_resource", params.name, str(e))
        return str(e)

    key = ObjectKey(params.kind, params.namespace, params.resource_name)
    obj = snapshot.objects.get(key)
    get_audit_logger().log_read("get_resource", ctrl.identity)
    if obj is None:
        return f"{key} is not managed by '{ctrl.identity}' or does not exist"
    body = get_safety_guard().mask(obj.body)
    return yaml.safe_dump(body, sort_keys=False)


class GetApplicationDiffParams(BaseModel):
    name: str = Field(description="Application name or namespace/name")


@mcp.tool()
async def get_application_diff(params: GetApplicationDiffParams, ctx: MCPContext) -> str:
    """
    Preview what a sync would change: objects to create, update and prune.

    Renders the source and compares it with a fresh live snapshot.
    """
    _bind_request(ctx)

    blocked = get_safety_guard().check_read_operation("get_application_diff")
    if blocked:
        get_audit_logger().log_blocked("get_application_diff", params.name, blocked.reason)
        return blocked.format_message()

    try:
        await ctx.report_progress(0, 1, "Rendering and observing")
        deltas = await get_reconciler().diff(params.name)
        await ctx.report_progress(1, 1, "Complete")
    except ReconcilerError as e:
        get_audit_logger().log_error("get_application_diff", params.name, str(e))
        return str(e)

    get_audit_logger().log_read("get_application_diff", params.name)
    return format_deltas(params.name, deltas)


class GetApplicationHistoryParams(BaseModel):
    name: str = Field(description="Application name or namespace/name")
    limit: int = Field(default=10, description="Maximum number of entries", ge=1, le=50)


@mcp.tool()
async def get_application_history(params: GetApplicationHistoryParams, ctx: MCPContext) -> str:
    """
    List recent sync results, newest first. The ids are rollback targets.
    """
    _bind_request(ctx)

    blocked = get_safety_guard().check_read_operation("get_application_history")
    if blocked:
        get_audit_logger().log_blocked("get_application_history", params.name, blocked.reason)
        return blocked.format_message()

    try:
        history = get_reconciler().history(params.name)
    except ReconcilerError as e:
        get_audit_logger().log_error("get_application_history", params.name, str(e))
        return str(e)

    get_audit_logger().log_read("get_application_history", params.name)
    if not history:
        return f"No sync history for application '{params.name}'"

    entries = list(reversed(history))[: params.limit]
    lines = [f"Sync history for '{params.name}' (last {len(entries)} entries):", ""]
    for r in entries:
        lines.append(
            f"#{r.id} [{r.revision[:8]}] {r.phase.value} at {r.finished_at.isoformat()} by {r.initiated_by}"
        )
    return "\n".join(lines)


# =============================================================================
# WRITE OPERATIONS
# =============================================================================


class SyncApplicationParams(BaseModel):
    name: str = Field(description="Application name or namespace/name")
    dry_run: bool = Field(default=True, description="Preview only (default: true)")
    prune: bool | None = Field(
        default=None, description="Delete objects absent from the source (default: app policy)"
    )
    force: bool = Field(default=False, description="Recreate objects on immutable-field conflicts")
    confirm: bool = Field(default=False, description="Required for prune or force")
    confirm_name: str | None = Field(default=None, description="Application name, to confirm")


@mcp.tool()
async def sync_application(params: SyncApplicationParams, ctx: MCPContext) -> str:
    """
    Sync an application now, regardless of its automated policy.

    Runs in dry-run mode by default. prune=true or force=true are
    destructive and need confirm=true plus confirm_name.
    """
    _bind_request(ctx)
    guard = get_safety_guard()

    if params.dry_run:
        blocked = guard.check_read_operation("sync_application")
    elif params.prune or params.force:
        operation = "sync_with_prune" if params.prune else "sync_with_force"
        blocked = guard.check_destructive_operation(
            operation, params.name, confirmed=params.confirm, confirm_name=params.confirm_name
        )
    else:
        blocked = guard.check_write_operation("sync_application")
    if isinstance(blocked, ConfirmationRequired) and params.prune:
        blocked.details.update(await deletion_preview(params.name))
    if blocked:
        reason = "confirmation required" if isinstance(blocked, ConfirmationRequired) else blocked.reason
        get_audit_logger().log_blocked("sync_application", params.name, reason)
        return blocked.format_message()

    try:
        mode = "[DRY-RUN] " if params.dry_run else ""
        await ctx.report_progress(0, 1, f"{mode}Syncing {params.name}")
        result = await get_reconciler().sync(
            params.name, dry_run=params.dry_run, force=params.force, prune=params.prune
        )
        await ctx.report_progress(1, 1, "Complete")
    except ReconcilerError as e:
        get_audit_logger().log_error("sync_application", params.name, str(e))
        return str(e)

    if params.dry_run:
        get_audit_logger().log_write("sync_application", params.name, "dry_run")
        return (
            format_result(result)
            + f"\n\nTo apply:\n  sync_application(name='{params.name}', dry_run=false)"
        )
    get_audit_logger().log_write(
        "sync_application",
        params.name,
        result.phase.value,
        {"prune": params.prune, "force": params.force, "revision": result.revision},
    )
    return format_result(result)


class RollbackApplicationParams(BaseModel):
    name: str = Field(description="Application name or namespace/name")
    history_id: int = Field(description="Sync history id to roll back to")
    dry_run: bool = Field(default=True, description="Preview only (default: true)")
    confirm: bool = Field(default=False, description="Must be true to roll back")
    confirm_name: str | None = Field(default=None, description="Application name, to confirm")


@mcp.tool()
async def rollback_application(params: RollbackApplicationParams, ctx: MCPContext) -> str:
    """
    Re-sync the revision recorded in a previous sync result.

    Refused while automated sync is enabled. Needs confirmation unless dry_run.
    """
    _bind_request(ctx)

    if params.dry_run:
        blocked = get_safety_guard().check_read_operation("rollback")
    else:
        blocked = get_safety_guard().check_destructive_operation(
            "rollback", params.name, confirmed=params.confirm, confirm_name=params.confirm_name
        )
    if blocked:
        reason = "confirmation required" if isinstance(blocked, ConfirmationRequired) else blocked.reason
        get_audit_logger().log_blocked("rollback_application", params.name, reason)
        return blocked.format_message()

    try:
        result = await get_reconciler().rollback(params.name, params.history_id, dry_run=params.dry_run)
    except ReconcilerError as e:
        get_audit_logger().log_error("rollback_application", params.name, str(e))
        return str(e)

    get_audit_logger().log_write(
        "rollback_application",
        params.name,
        "dry_run" if params.dry_run else result.phase.value,
        {"history_id": params.history_id, "revision": result.revision},
    )
    return format_result(result)


class RefreshApplicationParams(BaseModel):
    name: str = Field(description="Application name or namespace/name")


@mcp.tool()
async def refresh_application(params: RefreshApplicationParams, ctx: MCPContext) -> str:
    """
    Drop the cached live snapshot and run a reconciliation cycle now.
    """
    _bind_request(ctx)

    blocked = get_safety_guard().check_read_operation("refresh_application")
    if blocked:
        get_audit_logger().log_blocked("refresh_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        get_reconciler().refresh(params.name)
    except ReconcilerError as e:
        get_audit_logger().log_error("refresh_application", params.name, str(e))
        return str(e)

    get_audit_logger().log_write("refresh_application", params.name, "triggered")
    return f"Refresh triggered for '{params.name}'. Use get_application to see the result."


class CancelSyncParams(BaseModel):
    name: str = Field(description="Application name or namespace/name")


@mcp.tool()
async def cancel_sync(params: CancelSyncParams, ctx: MCPContext) -> str:
    """
    Abort the in-flight sync at its next wave boundary.

    Objects already applied stay in place; the run is recorded as Aborted.
    """
    _bind_request(ctx)

    blocked = get_safety_guard().check_write_operation("cancel_sync")
    if blocked:
        get_audit_logger().log_blocked("cancel_sync", params.name, blocked.reason)
        return blocked.format_message()

    try:
        cancelled = get_reconciler().cancel(params.name)
    except ReconcilerError as e:
        get_audit_logger().log_error("cancel_sync", params.name, str(e))
        return str(e)

    get_audit_logger().log_write("cancel_sync", params.name, "cancelled" if cancelled else "idle")
    if not cancelled:
        return f"No sync in progress for '{params.name}'"
    return f"Cancellation requested for '{params.name}'. The run stops at the next wave boundary."


class DeleteApplicationParams(BaseModel):
    name: str = Field(description="Application name or namespace/name")
    cascade: bool = Field(default=False, description="Also delete every managed object")
    confirm: bool = Field(default=False, description="Required with cascade=true")
    confirm_name: str | None = Field(default=None, description="Application name, to confirm")


@mcp.tool()
async def delete_application(params: DeleteApplicationParams, ctx: MCPContext) -> str:
    """
    Stop reconciling an application.

    With cascade=true its live objects are deleted too (DESTRUCTIVE,
    requires confirm=true AND confirm_name).
    """
    _bind_request(ctx)
    guard = get_safety_guard()

    if params.cascade:
        blocked = guard.check_destructive_operation(
            "remove_with_cascade", params.name, confirmed=params.confirm, confirm_name=params.confirm_name
        )
    else:
        blocked = guard.check_write_operation("delete_application")
    if isinstance(blocked, ConfirmationRequired):
        blocked.details.update(await deletion_preview(params.name, cascade=True))
    if blocked:
        reason = "confirmation required" if isinstance(blocked, ConfirmationRequired) else blocked.reason
        get_audit_logger().log_blocked("delete_application", params.name, reason)
        return blocked.format_message()

    try:
        results = await get_reconciler().remove(params.name, cascade=params.cascade)
    except ReconcilerError as e:
        get_audit_logger().log_error("delete_application", params.name, str(e))
        return str(e)

    counts = summarize(results)
    get_audit_logger().log_write("delete_application", params.name, "removed", {"cascade": params.cascade, **counts})
    lines = [f"Application '{params.name}' removed.", f"Cascade: {params.cascade}"]
    if counts:
        lines.append("Objects: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
    return "\n".join(lines)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("gitops://applications")
async def get_applications_resource() -> str:
    """Declared applications and their cached status."""
    controllers = get_reconciler().applications()
    if not controllers:
        return "No applications declared"
    lines = ["Applications:", ""]
    for ctrl in controllers:
        status = ctrl.status
        lines.append(
            f"- {ctrl.identity}: sync={status.sync_status.value} "
            f"health={status.health_status.value} revision={(status.revision or 'unknown')[:12]}"
        )
    return "\n".join(lines)


@mcp.resource("gitops://security")
async def get_security_resource() -> str:
    """Current security settings."""
    sec = get_settings().security
    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the reconciler and its operator server."""
    configure_logging(level="INFO")
    logger.info("GitOps reconciler starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
