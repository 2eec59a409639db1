"""Classifying resources as sync hooks and deciding their phases and policies."""

from __future__ import annotations

from typing import Any, Mapping

from . import helm
from .annotations import get_annotation_csvs, get_annotations
from .common import (
    ANNOTATION_KEY_HOOK,
    ANNOTATION_KEY_HOOK_DELETE_POLICY,
    HookDeletePolicy,
    HookType,
    SyncPhase,
    parse_hook_delete_policy,
    parse_hook_type,
)

_PHASE_HOOK_TYPES = (HookType.PRE_SYNC, HookType.SYNC, HookType.POST_SYNC, HookType.SYNC_FAIL)


def is_hook(obj: Mapping[str, Any]) -> bool:
    """True if the object is a hook, Argo-style or Helm-style."""
    if ANNOTATION_KEY_HOOK in get_annotations(obj):
        return not skip(obj)
    return helm.is_hook(obj)


def skip(obj: Mapping[str, Any]) -> bool:
    """True if the object is marked Skip and with nothing else."""
    hook_types = types(obj)
    return HookType.SKIP in hook_types and len(hook_types) == 1


def types(obj: Mapping[str, Any]) -> list[HookType]:
    """Hook types of the object; Helm hooks count only when no Argo hook is set."""
    parsed = (parse_hook_type(text) for text in get_annotation_csvs(obj, ANNOTATION_KEY_HOOK))
    result = [t for t in parsed if t is not None]
    if not result:
        result = [t.hook_type() for t in helm.types(obj)]
    return result


def delete_policies(obj: Mapping[str, Any]) -> list[HookDeletePolicy]:
    """Delete policies of a hook, defaulting to BeforeHookCreation."""
    parsed = (
        parse_hook_delete_policy(text)
        for text in get_annotation_csvs(obj, ANNOTATION_KEY_HOOK_DELETE_POLICY)
    )
    policies = [p for p in parsed if p is not None]
    policies.extend(p.hook_delete_policy() for p in helm.delete_policies(obj))
    return policies or [HookDeletePolicy.BEFORE_HOOK_CREATION]


def ignore(obj: Mapping[str, Any]) -> bool:
    """True for hooks that name no known hook type and so run in no phase."""
    return is_hook(obj) and not types(obj)


def sync_phases(obj: Mapping[str, Any]) -> list[SyncPhase]:
    """Sync phases the object takes part in."""
    if skip(obj):
        return []
    if is_hook(obj):
        phases = (SyncPhase(t.value) for t in types(obj) if t in _PHASE_HOOK_TYPES)
        return list(dict.fromkeys(phases))
    return [SyncPhase.SYNC]