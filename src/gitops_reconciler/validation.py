# ABOUTME: Project allow-list validation run before any sync is permitted
# ABOUTME: Checks source repository, destination and object kinds against one Project

"""
Project validation.

Every Application must pass its Project's allow-lists before anything is
applied. The Project is passed in as an immutable value; there is no global
registry here. All violations are collected so the operator sees the full
list at once, and any violation rejects the whole sync.
"""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import TYPE_CHECKING

from gitops_reconciler.errors import ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.models import Application, DesiredObject, Project


def _allowed(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(value, pattern) for pattern in patterns)


def project_violations(
    app: Application,
    project: Project | None,
    desired: Iterable[DesiredObject] = (),
) -> list[str]:
    """Return every allow-list violation of ``app`` (and its objects) against ``project``."""
    if project is None:
        return [f"project '{app.project}' does not exist"]
    if project.name != app.project:
        return [f"application belongs to project '{app.project}', not '{project.name}'"]

    violations: list[str] = []
    if not _allowed(app.source.repo_ref, project.source_repos):
        violations.append(f"source repository '{app.source.repo_ref}' is not permitted")

    dest = app.destination
    if not any(
        fnmatchcase(dest.target, allowed.target) and fnmatchcase(dest.namespace, allowed.namespace)
        for allowed in project.destinations
    ):
        violations.append(f"destination {dest.target}/{dest.namespace} is not permitted")

    for obj in desired:
        if not _allowed(obj.kind, project.allowed_kinds):
            violations.append(f"kind {obj.kind} ({obj.key}) is not permitted")
        elif obj.namespace and obj.namespace != dest.namespace and not any(
            fnmatchcase(dest.target, allowed.target) and fnmatchcase(obj.namespace, allowed.namespace)
            for allowed in project.destinations
        ):
            violations.append(f"namespace '{obj.namespace}' of {obj.key} is not permitted")
    return violations


def validate_application(
    app: Application,
    project: Project | None,
    desired: Iterable[DesiredObject] = (),
) -> None:
    """
    Raise if ``app`` violates its Project.

    Raises:
        ValidationError: Listing every violation found.
    """
    violations = project_violations(app, project, desired)
    if violations:
        raise ValidationError(f"application {app.identity} rejected by project", violations)
