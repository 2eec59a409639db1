"""Pairing desired manifests with the live objects found in a cluster."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

from . import hooks
from .common import ResourceKey, resource_key
from .kube import get_group, get_kind, get_name, get_namespace

Manifest = dict[str, Any]


@dataclass
class ReconciliationResult:
    """Targets and live objects paired by position, plus the hooks set aside."""

    live: list[Optional[Manifest]] = field(default_factory=list)
    target: list[Optional[Manifest]] = field(default_factory=list)
    hooks: list[Manifest] = field(default_factory=list)


def split_hooks(
    target: Iterable[Optional[Manifest]],
) -> tuple[list[Manifest], list[Manifest]]:
    """Separate hooks from regular targets, dropping empty entries and ignored hooks."""
    target_objs: list[Manifest] = []
    hook_objs: list[Manifest] = []
    for obj in target:
        if obj is None or hooks.ignore(obj):
            continue
        if hooks.is_hook(obj):
            hook_objs.append(obj)
        else:
            target_objs.append(obj)
    return target_objs, hook_objs


def _uid(obj: Mapping[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("uid") or ""


def dedup_live_resources(
    target_objs: Iterable[Manifest],
    live_objs_by_key: Mapping[ResourceKey, Optional[Manifest]],
) -> dict[ResourceKey, Optional[Manifest]]:
    """Return the live objects without duplicates that share a UID.

    The same object can be served under several API groups. Copies not named
    by any target are dropped, but at least one copy of each object remains.
    """
    target_keys = {resource_key(obj) for obj in target_objs}
    result = dict(live_objs_by_key)

    by_uid: dict[str, list[Manifest]] = defaultdict(list)
    for obj in live_objs_by_key.values():
        if obj is not None:
            by_uid[_uid(obj)].append(obj)

    for objs in by_uid.values():
        if len(objs) < 2:
            continue
        left = len(objs)
        for obj in objs:
            key = resource_key(obj)
            if key in target_keys:
                continue
            result.pop(key, None)
            left -= 1
            if left == 1:
                break
    return result


def reconcile(
    target_objs: Iterable[Optional[Manifest]],
    live_obj_by_key: Mapping[ResourceKey, Optional[Manifest]],
    namespace: str,
    is_namespaced: Optional[Callable[[str, str], Optional[bool]]] = None,
) -> ReconciliationResult:
    """Pair each target with its live object and append live objects with no target.

    ``is_namespaced(group, kind)`` tells whether a kind is namespaced; a result
    of None, or no callable at all, counts as namespaced.
    """
    targets, hook_objs = split_hooks(target_objs)
    remaining = dedup_live_resources(targets, live_obj_by_key)

    managed_live: list[Optional[Manifest]] = []
    for obj in targets:
        group, kind = get_group(obj), get_kind(obj)
        ns = get_namespace(obj) or namespace
        if is_namespaced is not None and is_namespaced(group, kind) is False:
            ns = ""
        key = ResourceKey(group, kind, ns, get_name(obj))
        managed_live.append(remaining.pop(key, None))

    all_targets: list[Optional[Manifest]] = list(targets)
    for obj in remaining.values():
        all_targets.append(None)
        managed_live.append(obj)

    return ReconciliationResult(live=managed_live, target=all_targets, hooks=hook_objs)