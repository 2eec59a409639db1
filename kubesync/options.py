"""Settings of a sync operation and the grouping of its inputs."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .common import ResourceKey, SyncPhase, resource_key
from .kube import APIResource, DeletionPropagation, HealthStatus
from .reconcile import ReconciliationResult

Manifest = dict[str, Any]


@dataclass
class SyncOptions:
    """Settings that shape one sync operation.

    ``permission_validator`` raises to refuse a resource. ``health_override``
    returns a health status for a live object, or None to leave it unknown.
    ``sync_wave_hook`` is called after each applied wave and raises to fail it.
    """

    dry_run: bool = False
    force: bool = False
    validate: bool = True
    skip_hooks: bool = False
    prune: bool = False
    replace: bool = False
    prune_last: bool = False
    prune_propagation_policy: Optional[DeletionPropagation] = None
    resources_filter: Optional[
        Callable[[ResourceKey, Optional[Manifest], Optional[Manifest]], bool]
    ] = None
    permission_validator: Optional[Callable[[Manifest, APIResource], None]] = None
    health_override: Optional[Callable[[Manifest], Optional[HealthStatus]]] = None
    create_namespace: bool = False
    namespace_modifier: Optional[Callable[[Manifest], bool]] = None
    sync_wave_hook: Optional[Callable[[SyncPhase, int, bool], None]] = None
    apply_out_of_sync_only: bool = False
    modification_result: Optional[dict[ResourceKey, bool]] = None


@dataclass
class DiffResult:
    """Comparison of one resource: its normalized and predicted live JSON."""

    normalized_live: bytes = b"null"
    predicted_live: bytes = b"null"
    modified: bool = False


@dataclass
class ReconciledResource:
    """A target manifest paired with the live object it corresponds to."""

    target: Optional[Manifest] = None
    live: Optional[Manifest] = None

    def key(self) -> ResourceKey:
        """Key of the live object if there is one, otherwise of the target."""
        return resource_key(self.live if self.live is not None else self.target)


def group_resources(
    reconciliation_result: ReconciliationResult,
) -> dict[ResourceKey, ReconciledResource]:
    """Index the paired resources by key; a later pair with the same key wins."""
    targets = reconciliation_result.target
    lives = reconciliation_result.live
    if len(lives) < len(targets):
        raise ValueError("every target needs a live entry, even if it is None")
    resources: dict[ResourceKey, ReconciledResource] = {}
    for target, live in zip(targets, lives):
        resource = ReconciledResource(target=target, live=live)
        resources[resource.key()] = resource
    return resources


def group_diff_results(diffs: Iterable[DiffResult]) -> dict[ResourceKey, bool]:
    """Map each compared resource to whether it was modified.

    Entries whose JSON cannot be read as an object are left out.
    """
    modified: dict[ResourceKey, bool] = {}
    for diff in diffs:
        raw = diff.normalized_live if bytes(diff.normalized_live) != b"null" else diff.predicted_live
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError):
            continue
        if not isinstance(obj, dict):
            continue
        modified[resource_key(obj)] = diff.modified
    return modified


def resource_result_key(key: ResourceKey, phase: SyncPhase) -> str:
    """Key under which the result of a resource in a phase is stored."""
    return f"{key}:{phase}"