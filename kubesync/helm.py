"""Helm hook annotations and their mapping onto sync hook types and policies."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Mapping

from .annotations import get_annotation_csvs, get_annotations
from .common import HookDeletePolicy, HookType

ANNOTATION_HOOK = "helm.sh/hook"
ANNOTATION_HOOK_DELETE_POLICY = "helm.sh/hook-delete-policy"
ANNOTATION_HOOK_WEIGHT = "helm.sh/hook-weight"

_INTEGER = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return self.value


class DeletePolicy(_StrEnum):
    BEFORE_HOOK_CREATION = "before-hook-creation"
    HOOK_SUCCEEDED = "hook-succeeded"
    HOOK_FAILED = "hook-failed"

    def hook_delete_policy(self) -> HookDeletePolicy:
        return _HOOK_DELETE_POLICIES[self]


_HOOK_DELETE_POLICIES = {
    DeletePolicy.BEFORE_HOOK_CREATION: HookDeletePolicy.BEFORE_HOOK_CREATION,
    DeletePolicy.HOOK_SUCCEEDED: HookDeletePolicy.HOOK_SUCCEEDED,
    DeletePolicy.HOOK_FAILED: HookDeletePolicy.HOOK_FAILED,
}


class HelmHookType(_StrEnum):
    PRE_INSTALL = "pre-install"
    PRE_UPGRADE = "pre-upgrade"
    POST_UPGRADE = "post-upgrade"
    POST_INSTALL = "post-install"

    def hook_type(self) -> HookType:
        return _HOOK_TYPES[self]


_HOOK_TYPES = {
    HelmHookType.PRE_INSTALL: HookType.PRE_SYNC,
    HelmHookType.PRE_UPGRADE: HookType.PRE_SYNC,
    HelmHookType.POST_UPGRADE: HookType.POST_SYNC,
    HelmHookType.POST_INSTALL: HookType.POST_SYNC,
}


def parse_delete_policy(text: str) -> DeletePolicy | None:
    """Return the Helm delete policy named by ``text``, or None."""
    try:
        return DeletePolicy(text)
    except ValueError:
        return None


def parse_type(text: str) -> HelmHookType | None:
    """Return the supported Helm hook type named by ``text``, or None."""
    try:
        return HelmHookType(text)
    except ValueError:
        return None


def is_hook(obj: Mapping[str, Any]) -> bool:
    """True if the object carries a Helm hook annotation other than crd-install."""
    annotations = get_annotations(obj)
    # Helm marks CRDs with the same annotation, but they are not hooks.
    return ANNOTATION_HOOK in annotations and annotations[ANNOTATION_HOOK] != "crd-install"


def types(obj: Mapping[str, Any]) -> list[HelmHookType]:
    """Supported Helm hook types named on the object."""
    parsed = (parse_type(text) for text in get_annotation_csvs(obj, ANNOTATION_HOOK))
    return [t for t in parsed if t is not None]


def delete_policies(obj: Mapping[str, Any]) -> list[DeletePolicy]:
    """Helm delete policies named on the object."""
    parsed = (
        parse_delete_policy(text)
        for text in get_annotation_csvs(obj, ANNOTATION_HOOK_DELETE_POLICY)
    )
    return [p for p in parsed if p is not None]


def weight(obj: Mapping[str, Any]) -> int:
    """The Helm hook weight, or 0 when missing or not a valid integer."""
    text = get_annotations(obj).get(ANNOTATION_HOOK_WEIGHT)
    if text is None or not _INTEGER.fullmatch(text):
        return 0
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        return 0
    return value