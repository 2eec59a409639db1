"""Sync tasks: one resource in one phase, and ordered lists of them."""

from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import IntEnum
from functools import reduce
from typing import Any, Callable, Iterable, Optional

from . import helm, hooks
from .annotations import get_annotations
from .common import (
    ANNOTATION_SYNC_WAVE,
    HookDeletePolicy,
    HookType,
    OperationPhase,
    ResourceKey,
    ResultCode,
    SyncPhase,
    resource_key,
)
from .kube import get_group, get_kind, get_name, get_namespace

Manifest = dict[str, Any]

_INTEGER = re.compile(r"[+-]?[0-9]+")

_PHASE_ORDER = {
    SyncPhase.PRE_SYNC: -1,
    SyncPhase.SYNC: 0,
    SyncPhase.POST_SYNC: 1,
    SyncPhase.SYNC_FAIL: 2,
}

_KINDS = (
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ServiceAccount",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
)
# Known kinds get negative ranks; unknown kinds rank 0 and so come last.
_KIND_ORDER = {kind: index - len(_KINDS) for index, kind in enumerate(_KINDS)}


class RunState(IntEnum):
    """Outcome of running a batch of tasks; higher values dominate."""

    SUCCESSFUL = 0
    PENDING = 1
    FAILED = 2


def run_concurrently(
    current: RunState, funcs: Iterable[Callable[[RunState], RunState]]
) -> RunState:
    """Run each function with ``current`` in parallel and combine their states.

    Failed wins over pending, pending over successful; the combined state never
    improves on ``current``.
    """
    funcs = list(funcs)
    if not funcs:
        return current
    with ThreadPoolExecutor(max_workers=len(funcs)) as pool:
        results = list(pool.map(lambda func: func(current), funcs))
    return reduce(max, results, current)


@dataclass
class SyncTask:
    """Applying, pruning or running one resource within one sync phase."""

    phase: SyncPhase
    target_obj: Optional[Manifest] = None
    live_obj: Optional[Manifest] = None
    skip_dry_run: bool = False
    sync_status: Optional[ResultCode] = None
    operation_state: Optional[OperationPhase] = None
    message: str = ""

    def obj(self) -> Manifest:
        """The target object if there is one, otherwise the live object."""
        return self.target_obj if self.target_obj is not None else self.live_obj

    def is_hook(self) -> bool:
        return hooks.is_hook(self.obj())

    def is_prune(self) -> bool:
        return self.target_obj is None

    def pending(self) -> bool:
        return self.operation_state is None

    def running(self) -> bool:
        return self.operation_state is not None and self.operation_state.running()

    def completed(self) -> bool:
        return self.operation_state is not None and self.operation_state.completed()

    def successful(self) -> bool:
        return self.operation_state is not None and self.operation_state.successful()

    def wave(self) -> int:
        """The sync-wave annotation, else the Helm hook weight, else 0."""
        text = get_annotations(self.obj()).get(ANNOTATION_SYNC_WAVE, "")
        if text and _INTEGER.fullmatch(text):
            return int(text)
        return helm.weight(self.obj())

    def group(self) -> str:
        return get_group(self.obj())

    def kind(self) -> str:
        return get_kind(self.obj())

    def name(self) -> str:
        return get_name(self.obj())

    def namespace(self) -> str:
        return get_namespace(self.obj())

    def version(self) -> str:
        api_version = self.obj().get("apiVersion") or ""
        return api_version.rpartition("/")[2]

    def hook_type(self) -> Optional[HookType]:
        """The phase as a hook type for hooks; None for ordinary resources."""
        return HookType(self.phase.value) if self.is_hook() else None

    def resource_key(self) -> ResourceKey:
        return resource_key(self.obj())

    def result_key(self) -> str:
        return f"{self.resource_key()}:{self.phase}"

    def _has_hook_delete_policy(self, policy: HookDeletePolicy) -> bool:
        return self.is_hook() and policy in hooks.delete_policies(self.obj())

    def delete_on_phase_successful(self) -> bool:
        return self.live_obj is not None and self._has_hook_delete_policy(
            HookDeletePolicy.HOOK_SUCCEEDED
        )

    def delete_on_phase_failed(self) -> bool:
        return self.live_obj is not None and self._has_hook_delete_policy(
            HookDeletePolicy.HOOK_FAILED
        )

    def delete_on_phase_completion(self) -> bool:
        return self.delete_on_phase_failed() or self.delete_on_phase_successful()

    def delete_before_creation(self) -> bool:
        return (
            self.live_obj is not None
            and self.pending()
            and self._has_hook_delete_policy(HookDeletePolicy.BEFORE_HOOK_CREATION)
        )


def _sort_key(task: SyncTask) -> tuple[int, int, int, str]:
    return (
        _PHASE_ORDER[task.phase],
        task.wave(),
        _KIND_ORDER.get(task.kind(), 0),
        task.name(),
    )


class SyncTasks(list):
    """A list of sync tasks with the queries the sync loop needs."""

    def filter(self, predicate: Callable[[SyncTask], bool]) -> "SyncTasks":
        return SyncTasks(task for task in self if predicate(task))

    def split(self, predicate: Callable[[SyncTask], bool]) -> tuple["SyncTasks", "SyncTasks"]:
        """Tasks matching the predicate, and the rest."""
        matching, rest = SyncTasks(), SyncTasks()
        for task in self:
            (matching if predicate(task) else rest).append(task)
        return matching, rest

    def any(self, predicate: Callable[[SyncTask], bool]) -> bool:
        return any(predicate(task) for task in self)

    def all(self, predicate: Callable[[SyncTask], bool]) -> bool:
        return all(predicate(task) for task in self)

    def sort(self) -> None:
        """Order by phase, wave, kind (namespaces and CRDs first), then name."""
        super().sort(key=_sort_key)

    def phase(self) -> Optional[SyncPhase]:
        return self[0].phase if self else None

    def wave(self) -> int:
        return self[0].wave() if self else 0

    def last_phase(self) -> Optional[SyncPhase]:
        return self[-1].phase if self else None

    def last_wave(self) -> int:
        return self[-1].wave() if self else 0

    def multi_step(self) -> bool:
        """True if the tasks span more than one phase or wave."""
        return self.wave() != self.last_wave() or self.phase() != self.last_phase()