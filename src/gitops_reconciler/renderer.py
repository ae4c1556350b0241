# ABOUTME: Manifest renderer contract and plain-manifest renderers
# ABOUTME: Turns (repo, revision, path, params) into target manifests and DesiredObjects

"""
Manifest rendering.

Templating engines are external collaborators; the engine only needs
something that turns a ``(repo_ref, revision, path, params)`` tuple into a
list of manifests. Two renderers for plain manifests are provided:

- ``StaticRenderer``: revisions published in memory, for embedding the
  engine and for tests.
- ``GitDirectoryRenderer``: reads ``*.yaml``/``*.yml``/``*.json`` files under
  ``path`` at ``revision`` of a local Git clone, with ``${param}``
  substitution from the Application's render parameters.

``build_desired`` converts manifests to DesiredObjects, reading hook and
wave annotations and filling in the destination namespace.
"""

from __future__ import annotations

import string
from pathlib import Path
from typing import Any, Protocol

import structlog
import yaml
from git import BadName, InvalidGitRepositoryError, NoSuchPathError, Repo

from gitops_reconciler.errors import RenderError
from gitops_reconciler.kinds import ensure_kind
from gitops_reconciler.models import DesiredObject, ObjectKey

logger = structlog.get_logger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


class Renderer(Protocol):
    """Produces target manifests for a source reference."""

    def resolve_revision(self, repo_ref: str, revision: str) -> str:
        """Resolve a symbolic revision (branch, tag, HEAD) to an immutable id."""
        ...

    def render(
        self,
        repo_ref: str,
        revision: str,
        path: str,
        params: dict[str, str],
    ) -> list[dict[str, Any]]:
        """Return the manifests at ``path`` for ``revision``; raise RenderError on failure."""
        ...


def parse_manifests(text: str, source: str = "<string>") -> list[dict[str, Any]]:
    """
    Parse a multi-document YAML (or JSON) string into manifests.

    Empty documents are skipped and ``kind: List`` documents are expanded
    into their items.

    Raises:
        RenderError: On invalid YAML or a document that is not a mapping.
    """
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise RenderError(f"invalid YAML in {source}", str(e)) from e

    manifests: list[dict[str, Any]] = []
    for doc in documents:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise RenderError(f"manifest in {source} is not a mapping", type(doc).__name__)
        if doc.get("kind") == "List":
            manifests.extend(item for item in doc.get("items") or [] if item)
        else:
            manifests.append(doc)
    return manifests


def build_desired(
    manifests: list[dict[str, Any]],
    default_namespace: str,
) -> list[DesiredObject]:
    """
    Convert rendered manifests into DesiredObjects.

    Kinds outside the registry are registered under their manifest's
    apiVersion so the observer can list them.

    Raises:
        RenderError: On a malformed manifest, a bad hook/wave annotation,
                     or two manifests with the same (kind, namespace, name).
    """
    objects: list[DesiredObject] = []
    seen: set[ObjectKey] = set()
    for manifest in manifests:
        obj = DesiredObject.from_manifest(manifest, default_namespace)
        ensure_kind(obj.kind, manifest.get("apiVersion") or "v1")
        if obj.key in seen:
            raise RenderError("duplicate object in rendered manifests", str(obj.key))
        seen.add(obj.key)
        objects.append(obj)
    return objects


class StaticRenderer:
    """
    In-memory renderer: manifests are published per revision.

    Symbolic names ("HEAD", "main") are aliases that can be moved to a new
    revision, which is how a new commit "arrives":

        renderer.publish("abc123", manifests, aliases=("HEAD",))
        renderer.publish("def456", newer, aliases=("HEAD",))
    """

    def __init__(self) -> None:
        self._revisions: dict[str, list[dict[str, Any]]] = {}
        self._aliases: dict[str, str] = {}

    def publish(
        self,
        revision: str,
        manifests: list[dict[str, Any]] | str,
        aliases: tuple[str, ...] = (),
    ) -> None:
        if isinstance(manifests, str):
            manifests = parse_manifests(manifests, source=revision)
        self._revisions[revision] = [dict(m) for m in manifests]
        for alias in aliases:
            self._aliases[alias] = revision

    def resolve_revision(self, repo_ref: str, revision: str) -> str:  # noqa: ARG002
        resolved = self._aliases.get(revision, revision)
        if resolved not in self._revisions:
            raise RenderError(f"unknown revision '{revision}'", repo_ref)
        return resolved

    def render(
        self,
        repo_ref: str,
        revision: str,
        path: str,  # noqa: ARG002
        params: dict[str, str],  # noqa: ARG002
    ) -> list[dict[str, Any]]:
        resolved = self.resolve_revision(repo_ref, revision)
        return [dict(m) for m in self._revisions[resolved]]


class GitDirectoryRenderer:
    """
    Renders plain manifests from a directory of a local Git clone.

    ``repo_ref`` is either a path to a local repository or a remote URL whose
    clone lives under ``repos_root`` in a directory named after the
    repository (``https://git.example.com/team/apps.git`` ->
    ``<repos_root>/apps``).
    """

    def __init__(self, repos_root: Path | None = None) -> None:
        self._repos_root = repos_root

    def _local_path(self, repo_ref: str) -> Path:
        candidate = Path(repo_ref).expanduser()
        if candidate.is_dir():
            return candidate
        if self._repos_root is None:
            raise RenderError(f"no local clone for '{repo_ref}'", "repos_root is not configured")
        name = repo_ref.rstrip("/").rsplit("/", 1)[-1]
        if name.endswith(".git"):
            name = name[: -len(".git")]
        return self._repos_root / name

    def _open(self, repo_ref: str) -> Repo:
        path = self._local_path(repo_ref)
        try:
            return Repo(path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RenderError(f"not a Git repository: {path}", repo_ref) from e

    def resolve_revision(self, repo_ref: str, revision: str) -> str:
        repo = self._open(repo_ref)
        try:
            return repo.commit(revision).hexsha
        except (BadName, ValueError) as e:
            raise RenderError(f"unknown revision '{revision}'", repo_ref) from e

    def render(
        self,
        repo_ref: str,
        revision: str,
        path: str,
        params: dict[str, str],
    ) -> list[dict[str, Any]]:
        repo = self._open(repo_ref)
        try:
            commit = repo.commit(revision)
        except (BadName, ValueError) as e:
            raise RenderError(f"unknown revision '{revision}'", repo_ref) from e

        tree = commit.tree
        clean_path = path.strip("/")
        if clean_path and clean_path != ".":
            try:
                tree = tree / clean_path
            except KeyError as e:
                raise RenderError(f"path '{path}' not found at {commit.hexsha[:8]}", repo_ref) from e

        if tree.type == "blob":
            blobs = [tree]
        else:
            blobs = sorted(
                (
                    item
                    for item in tree.traverse()
                    if item.type == "blob" and item.path.endswith(MANIFEST_SUFFIXES)
                ),
                key=lambda blob: blob.path,
            )
        manifests: list[dict[str, Any]] = []
        for blob in blobs:
            try:
                text = blob.data_stream.read().decode("utf-8")
            except UnicodeDecodeError as e:
                raise RenderError(f"{blob.path} is not UTF-8 text", str(e)) from e
            if params:
                text = string.Template(text).safe_substitute(params)
            manifests.extend(parse_manifests(text, source=blob.path))

        logger.debug(
            "Rendered manifests",
            repo=repo_ref,
            revision=commit.hexsha[:8],
            files=len(blobs),
            objects=len(manifests),
        )
        return manifests
