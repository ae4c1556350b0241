# ABOUTME: Diff engine comparing desired manifests against live objects
# ABOUTME: Outer join on object identity with ignore rules and unordered list handling

"""
Desired-vs-live diffing.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

``compute_deltas(desired, live, ignore_rules)`` joins the two object sets on
``(kind, namespace, name)`` and classifies every key:

    desired only      -> Missing   (apply will create it)
    live only         -> Extra     (prune candidate)
    both, differ      -> Modified  (apply will update it)
    both, same        -> Unchanged

The function is pure: it never mutates its inputs and returns deltas sorted
by key, so the same input always yields the same output.

=============================================================================
WHAT COUNTS AS "DIFFERENT"?
=============================================================================

Before comparing, three kinds of fields are removed from BOTH sides:

1. SYSTEM FIELDS that the platform writes on its own (timestamps,
   resourceVersion, uid, generation, managedFields, status, ...). These are
   always ignored, independent of user rules.
2. USER IGNORE RULES from ``Application.ignore_differences``: dotted globs
   such as ``spec.replicas`` or ``metadata.annotations.*``, optionally
   scoped to a kind and name glob. JSON-pointer style (``/spec/replicas``)
   is accepted too.
3. FIELDS THE DESIRED BODY NEVER DECLARES. A live Deployment carries
   dozens of defaulted fields (``progressDeadlineSeconds``,
   ``terminationMessagePath``...). Only fields present in the desired body
   are compared, so computed defaults never show up as drift.

Lists are compared in order, except for fields the kind registry declares
unordered (container env, service ports, RBAC rules...), which are
compared as multisets.

=============================================================================
OBJECTS NEVER REPORTED AS EXTRA
=============================================================================

- hooks (they are transient and recreated on every sync)
- objects owned by another object (``metadata.ownerReferences``)
- objects annotated ``argocd.argoproj.io/compare-options: IgnoreExtraneous``
"""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any

from gitops_reconciler.kinds import kind_info
from gitops_reconciler.models import Delta, DeltaType

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.models import DesiredObject, IgnoreRule, LiveObject, ObjectKey

SYSTEM_IGNORED_FIELDS: tuple[str, ...] = (
    "status",
    "metadata.creationTimestamp",
    "metadata.deletionTimestamp",
    "metadata.deletionGracePeriodSeconds",
    "metadata.resourceVersion",
    "metadata.uid",
    "metadata.generation",
    "metadata.managedFields",
    "metadata.selfLink",
    "metadata.annotations.kubectl.kubernetes.io/last-applied-configuration",
    "metadata.annotations.deployment.kubernetes.io/revision",
)

IGNORE_EXTRANEOUS = "IgnoreExtraneous"


def normalize_path(path: str) -> str:
    """
    Normalize a user path to the dotted form.

    ``/spec/template/metadata/annotations/foo~1bar`` becomes
    ``spec.template.metadata.annotations.foo/bar``.
    """
    if not path.startswith("/"):
        return path
    parts = [p.replace("~1", "/").replace("~0", "~") for p in path.strip("/").split("/")]
    return ".".join(parts)


def _join(prefix: str, segment: str | int) -> str:
    return f"{prefix}.{segment}" if prefix else str(segment)


def _matches(path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(path, pattern) for pattern in patterns)


def strip_fields(value: Any, patterns: tuple[str, ...], prefix: str = "") -> Any:
    """Return a copy of ``value`` without any subtree whose path matches a pattern."""
    if isinstance(value, dict):
        result = {}
        for k, v in value.items():
            path = _join(prefix, k)
            if _matches(path, patterns):
                continue
            result[k] = strip_fields(v, patterns, path)
        return result
    if isinstance(value, list):
        return [strip_fields(item, patterns, _join(prefix, i)) for i, item in enumerate(value)]
    return value


def _same_scalar(desired: Any, live: Any) -> bool:
    # bool is an int subclass; True must not equal 1 here.
    if isinstance(desired, bool) or isinstance(live, bool):
        return type(desired) is type(live) and desired == live
    if isinstance(desired, (int, float)) and isinstance(live, (int, float)):
        return desired == live
    return type(desired) is type(live) and desired == live


def _compare(
    desired: Any,
    live: Any,
    path: str,
    unordered: tuple[str, ...],
    changed: list[str],
) -> None:
    """Append to ``changed`` every path where ``live`` does not contain ``desired``."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            changed.append(path or "<root>")
            return
        for key in sorted(desired):
            child = _join(path, key)
            if key not in live:
                if desired[key] is not None:
                    changed.append(child)
                continue
            _compare(desired[key], live[key], child, unordered, changed)
        return

    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            changed.append(path)
            return
        if _matches(path, unordered):
            if not _multiset_contains(desired, live, path, unordered):
                changed.append(path)
            return
        for index, (d_item, l_item) in enumerate(zip(desired, live, strict=True)):
            _compare(d_item, l_item, _join(path, index), unordered, changed)
        return

    if not _same_scalar(desired, live):
        changed.append(path)


def _multiset_contains(
    desired: list[Any],
    live: list[Any],
    path: str,
    unordered: tuple[str, ...],
) -> bool:
    """True if every desired item matches a distinct live item, in any order."""
    item_path = _join(path, "*")

    def contains(d_item: Any, l_item: Any) -> bool:
        mismatches: list[str] = []
        _compare(d_item, l_item, item_path, unordered, mismatches)
        return not mismatches

    candidates = [[j for j, l_item in enumerate(live) if contains(d_item, l_item)] for d_item in desired]
    # live index -> desired index currently holding it
    owner: dict[int, int] = {}

    def assign(i: int, visited: set[int]) -> bool:
        # A live item already taken moves to its owner's next candidate if one is free.
        for j in candidates[i]:
            if j in visited:
                continue
            visited.add(j)
            if j not in owner or assign(owner[j], visited):
                owner[j] = i
                return True
        return False

    return all(assign(i, set()) for i in range(len(desired)))


def _rule_patterns(rules: Iterable[IgnoreRule], key: ObjectKey) -> tuple[str, ...]:
    patterns: list[str] = []
    for rule in rules:
        if fnmatchcase(key.kind, rule.kind) and fnmatchcase(key.name, rule.name):
            patterns.extend(normalize_path(p) for p in rule.paths)
    return tuple(patterns)


def diff_object(
    desired: DesiredObject,
    live: LiveObject,
    ignore_rules: Iterable[IgnoreRule] = (),
) -> tuple[str, ...]:
    """
    Compare one desired object with its live counterpart.

    Returns:
        Sorted dotted paths that differ; empty when the objects are in sync.
    """
    patterns = SYSTEM_IGNORED_FIELDS + _rule_patterns(ignore_rules, desired.key)
    unordered = kind_info(desired.kind).unordered_fields
    desired_body = strip_fields(desired.body, patterns)
    live_body = strip_fields(live.body, patterns)
    changed: list[str] = []
    _compare(desired_body, live_body, "", unordered, changed)
    return tuple(sorted(set(changed)))


def _is_extraneous_exempt(live: LiveObject) -> bool:
    metadata = live.body.get("metadata") or {}
    return (
        live.is_hook
        or bool(metadata.get("ownerReferences"))
        or IGNORE_EXTRANEOUS in live.compare_options
    )


def compute_deltas(
    desired: Iterable[DesiredObject],
    live: Iterable[LiveObject],
    ignore_rules: Iterable[IgnoreRule] = (),
) -> list[Delta]:
    """
    Outer-join desired and live objects into a delta per key.

    Hook objects on either side are excluded: they are driven by the sync
    phases, not by drift.

    Returns:
        One Delta per key (Unchanged included), sorted by key.
    """
    rules = tuple(ignore_rules)
    desired_by_key = {obj.key: obj for obj in desired if not obj.is_hook}
    live_by_key = {obj.key: obj for obj in live}

    deltas: list[Delta] = []
    for key in sorted(set(desired_by_key) | set(live_by_key)):
        d = desired_by_key.get(key)
        lv = live_by_key.get(key)
        if d is not None and lv is not None:
            changed = diff_object(d, lv, rules)
            if changed:
                deltas.append(Delta(DeltaType.MODIFIED, key, desired=d, live=lv, changed_paths=changed))
            else:
                deltas.append(Delta(DeltaType.UNCHANGED, key, desired=d, live=lv))
        elif d is not None:
            deltas.append(Delta(DeltaType.MISSING, key, desired=d))
        elif lv is not None and not _is_extraneous_exempt(lv):
            deltas.append(Delta(DeltaType.EXTRA, key, live=lv))
    return deltas


def drift(deltas: Iterable[Delta]) -> list[Delta]:
    """The deltas that require action (everything but Unchanged)."""
    return [d for d in deltas if d.type is not DeltaType.UNCHANGED]


def has_drift(deltas: Iterable[Delta]) -> bool:
    return any(d.type is not DeltaType.UNCHANGED for d in deltas)
