"""Shared types and annotation keys for the sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

# Comma-separated list of options for syncing.
ANNOTATION_SYNC_OPTIONS = "argocd.argoproj.io/sync-options"
# Which wave of the sync the resource or hook belongs to.
ANNOTATION_SYNC_WAVE = "argocd.argoproj.io/sync-wave"
# Hook type(s) of a resource.
ANNOTATION_KEY_HOOK = "argocd.argoproj.io/hook"
# Policy of deleting a hook.
ANNOTATION_KEY_HOOK_DELETE_POLICY = "argocd.argoproj.io/hook-delete-policy"

SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE = "SkipDryRunOnMissingResource=true"
SYNC_OPTION_DISABLE_PRUNE = "Prune=false"
SYNC_OPTION_DISABLE_VALIDATION = "Validate=false"
SYNC_OPTION_PRUNE_LAST = "PruneLast=true"
SYNC_OPTION_REPLACE = "Replace=true"


class _StrEnum(str, Enum):
    """String enum whose str() is its value."""

    def __str__(self) -> str:
        return self.value


class SyncPhase(_StrEnum):
    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SYNC_FAIL = "SyncFail"


class OperationPhase(_StrEnum):
    RUNNING = "Running"
    TERMINATING = "Terminating"
    FAILED = "Failed"
    ERROR = "Error"
    SUCCEEDED = "Succeeded"

    def completed(self) -> bool:
        return self in (OperationPhase.FAILED, OperationPhase.ERROR, OperationPhase.SUCCEEDED)

    def running(self) -> bool:
        return self is OperationPhase.RUNNING

    def successful(self) -> bool:
        return self is OperationPhase.SUCCEEDED

    def failed(self) -> bool:
        return self is OperationPhase.FAILED


class ResultCode(_StrEnum):
    SYNCED = "Synced"
    SYNC_FAILED = "SyncFailed"
    PRUNED = "Pruned"
    PRUNE_SKIPPED = "PruneSkipped"


class HookType(_StrEnum):
    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SKIP = "Skip"
    SYNC_FAIL = "SyncFail"


class HookDeletePolicy(_StrEnum):
    HOOK_SUCCEEDED = "HookSucceeded"
    HOOK_FAILED = "HookFailed"
    BEFORE_HOOK_CREATION = "BeforeHookCreation"


def parse_hook_type(text: str) -> HookType | None:
    """Return the hook type named by ``text``, or None if it names none."""
    try:
        return HookType(text)
    except ValueError:
        return None


def parse_hook_delete_policy(text: str) -> HookDeletePolicy | None:
    """Return the delete policy named by ``text``, or None if it names none."""
    try:
        return HookDeletePolicy(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class ResourceKey:
    """Identity of a resource in a cluster."""

    group: str
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.group}/{self.kind}/{self.namespace}/{self.name}"


def resource_key(obj: Mapping[str, Any]) -> ResourceKey:
    """Build the key of a resource given as a manifest dictionary."""
    api_version = obj.get("apiVersion") or ""
    group = api_version.rsplit("/", 1)[0] if "/" in api_version else ""
    metadata = obj.get("metadata") or {}
    return ResourceKey(
        group=group,
        kind=obj.get("kind") or "",
        namespace=metadata.get("namespace") or "",
        name=metadata.get("name") or "",
    )


@dataclass
class ResourceSyncResult:
    """Outcome of syncing one resource in one phase."""

    resource_key: ResourceKey
    version: str = ""
    order: int = 0
    status: ResultCode | None = None
    message: str = ""
    hook_type: HookType | None = None
    hook_phase: OperationPhase | None = None
    sync_phase: SyncPhase | None = None