"""The sync operation: ordering tasks into phases and waves and running them step by step."""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from itertools import groupby
from typing import Any, Iterable, Mapping, Optional

from . import hooks
from .annotations import get_annotations, has_annotation_option
from .common import (
    ANNOTATION_SYNC_OPTIONS,
    ANNOTATION_SYNC_WAVE,
    SYNC_OPTION_DISABLE_VALIDATION,
    SYNC_OPTION_PRUNE_LAST,
    SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE,
    OperationPhase,
    ResourceSyncResult,
    ResultCode,
    SyncPhase,
    resource_key,
)
from .executor import Executor
from .kube import (
    NAMESPACE_KIND,
    Cluster,
    HealthStatus,
    HealthStatusCode,
    NotFoundError,
    get_group,
    get_kind,
    get_name,
    get_namespace,
    is_crd,
    is_namespace_with_name,
)
from .options import ReconciledResource, SyncOptions, group_resources, resource_result_key
from .reconcile import ReconciliationResult
from .tasks import RunState, SyncTask, SyncTasks, run_concurrently

log = logging.getLogger(__name__)

Manifest = dict[str, Any]

_OPERATION_PHASES = {
    ResultCode.SYNCED: OperationPhase.RUNNING,
    ResultCode.SYNC_FAILED: OperationPhase.FAILED,
    ResultCode.PRUNED: OperationPhase.SUCCEEDED,
    ResultCode.PRUNE_SKIPPED: OperationPhase.SUCCEEDED,
}


def is_crd_of_group_kind(group: str, kind: str, obj: Optional[Mapping[str, Any]]) -> bool:
    """True if ``obj`` is a CRD defining ``kind`` in ``group``."""
    if not is_crd(obj):
        return False
    spec = obj.get("spec")
    if not isinstance(spec, Mapping):
        return False
    crd_group = spec.get("group")
    names = spec.get("names")
    crd_kind = names.get("kind") if isinstance(names, Mapping) else None
    if not isinstance(crd_group, str) or not isinstance(crd_kind, str):
        return False
    return crd_group == group and crd_kind == kind


class SyncContext:
    """One sync operation; each call to sync() advances it by one step."""

    def __init__(
        self,
        cluster: Cluster,
        reconciliation_result: Optional[ReconciliationResult] = None,
        namespace: str = "",
        revision: str = "",
        options: Optional[SyncOptions] = None,
        *,
        phase: Optional[OperationPhase] = None,
        message: str = "",
        results: Iterable[ResourceSyncResult] = (),
        started_at: Optional[datetime] = None,
    ) -> None:
        result = reconciliation_result or ReconciliationResult()
        self.cluster = cluster
        self.options = options if options is not None else SyncOptions()
        self.executor = Executor(cluster, self.options)
        self.resources: dict = group_resources(result)
        self.hooks: list[Manifest] = list(result.hooks)
        self.namespace = namespace
        self.revision = revision
        self.phase = phase
        self.message = message
        self.started_at = started_at or datetime.now(timezone.utc)
        self.sync_res: dict[str, ResourceSyncResult] = {
            resource_result_key(r.resource_key, r.sync_phase): r for r in results
        }
        self._lock = threading.Lock()

    # -- state -------------------------------------------------------------

    def get_state(self) -> tuple[Optional[OperationPhase], str, list[ResourceSyncResult]]:
        """Operation phase, message and resource results in execution order."""
        ordered = sorted(self.sync_res.values(), key=lambda r: r.order)
        return self.phase, self.message, ordered

    def _started(self) -> bool:
        return bool(self.sync_res)

    def _set_operation_phase(self, phase: OperationPhase, message: str) -> None:
        if self.phase != phase or self.message != message:
            log.info(
                "Updating operation state. phase: %s -> %s, message: '%s' -> '%s'",
                self.phase, phase, self.message, message,
            )
        self.phase = phase
        self.message = message

    def set_running_phase(self, tasks: list[SyncTask], is_pending_deletion: bool) -> None:
        """Mark the operation running, naming the first task waited for."""
        if not tasks:
            return
        first = tasks[0]
        if first.is_hook():
            waiting_for, and_more = "completion of hook", "hooks"
        else:
            waiting_for, and_more = "healthy state of", "resources"
        if is_pending_deletion:
            waiting_for = "deletion of"
        message = f"waiting for {waiting_for} {first.group()}/{first.kind()}/{first.name()}"
        more = len(tasks) - 1
        if more > 0:
            message = f"{message} and {more} more {and_more}"
        self._set_operation_phase(OperationPhase.RUNNING, message)

    def _set_resource_result(
        self,
        task: SyncTask,
        sync_status: Optional[ResultCode],
        operation_state: Optional[OperationPhase],
        message: str,
    ) -> None:
        task.sync_status = sync_status
        task.operation_state = operation_state
        if message:
            task.message = message
        with self._lock:
            key = task.result_key()
            existing = self.sync_res.get(key)
            if existing is not None:
                existing.status = task.sync_status
                existing.hook_phase = task.operation_state
                existing.message = task.message
            else:
                self.sync_res[key] = ResourceSyncResult(
                    resource_key=resource_key(task.obj()),
                    version=task.version(),
                    order=len(self.sync_res) + 1,
                    status=task.sync_status,
                    message=task.message,
                    hook_type=task.hook_type(),
                    hook_phase=task.operation_state,
                    sync_phase=task.phase,
                )

    # -- health ------------------------------------------------------------

    def _health(self, obj: Manifest) -> Optional[HealthStatus]:
        override = self.options.health_override
        return override(obj) if override is not None else None

    def _get_operation_phase(self, hook: Manifest) -> tuple[OperationPhase, str]:
        phase, message = OperationPhase.SUCCEEDED, f"{get_name(hook)} created"
        health = self._health(hook)
        if health is not None:
            if health.status in (HealthStatusCode.UNKNOWN, HealthStatusCode.DEGRADED):
                phase, message = OperationPhase.FAILED, health.message
            elif health.status in (HealthStatusCode.PROGRESSING, HealthStatusCode.SUSPENDED):
                phase, message = OperationPhase.RUNNING, health.message
            elif health.status is HealthStatusCode.HEALTHY:
                phase, message = OperationPhase.SUCCEEDED, health.message
        return phase, message

    # -- task generation ---------------------------------------------------

    def _contains(self, resource: ReconciledResource) -> bool:
        flt = self.options.resources_filter
        return flt is None or flt(resource.key(), resource.live, resource.target)

    def live_obj(self, obj: Mapping[str, Any]) -> Optional[Manifest]:
        """The live object matching ``obj``; cluster-scoped keys match any namespace."""
        for key, resource in self.resources.items():
            if (
                key.group == get_group(obj)
                and key.kind == get_kind(obj)
                and (key.namespace == "" or key.namespace == get_namespace(obj))
                and key.name == get_name(obj)
            ):
                return resource.live
        return None

    def _target_objs(self) -> list[Manifest]:
        objs = list(self.hooks)
        objs.extend(r.target for r in self.resources.values() if r.target is not None)
        return objs

    def has_crd_of_group_kind(self, group: str, kind: str) -> bool:
        """True if a target or hook defines a CRD for ``group`` and ``kind``."""
        return any(is_crd_of_group_kind(group, kind, obj) for obj in self._target_objs())

    def _hook_name(self, obj: Manifest, phase: SyncPhase) -> str:
        revision = self.revision[:7] if len(self.revision) >= 8 else self.revision
        stamp = int(self.started_at.timestamp())
        postfix = f"{revision}-{phase}-{stamp}".lower()
        generate_name = (obj.get("metadata") or {}).get("generateName") or ""
        return f"{generate_name}{postfix}"

    def get_sync_tasks(self) -> tuple[SyncTasks, bool]:
        """Build the ordered tasks of this operation and whether all are valid."""
        successful = True
        tasks = SyncTasks()
        for resource in self.resources.values():
            if not self._contains(resource):
                continue
            obj = resource.target if resource.target is not None else resource.live
            if hooks.is_hook(obj):
                continue
            for phase in hooks.sync_phases(obj):
                tasks.append(SyncTask(phase, target_obj=resource.target, live_obj=resource.live))

        if not self.options.skip_hooks:
            for obj in self.hooks:
                for phase in hooks.sync_phases(obj):
                    target = copy.deepcopy(obj)
                    if not get_name(target):
                        target.setdefault("metadata", {})["name"] = self._hook_name(obj, phase)
                    tasks.append(SyncTask(phase, target_obj=target))

        for task in tasks:
            if task.target_obj is not None and not get_namespace(task.target_obj):
                # Set even for cluster-scoped objects so nothing lands in a default namespace.
                task.target_obj = copy.deepcopy(task.target_obj)
                task.target_obj.setdefault("metadata", {})["namespace"] = self.namespace

        if self.options.create_namespace and self.namespace:
            tasks = self._auto_create_namespace(tasks)

        for task in tasks:
            if task.target_obj is not None and task.live_obj is None:
                task.live_obj = self.live_obj(task.target_obj)

        for task in tasks:
            try:
                api_resource = self.cluster.server_resource(task.group(), task.version(), task.kind())
            except NotFoundError as err:
                if (
                    task.target_obj is not None
                    and has_annotation_option(
                        task.target_obj, ANNOTATION_SYNC_OPTIONS,
                        SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE,
                    )
                ) or self.has_crd_of_group_kind(task.group(), task.kind()):
                    task.skip_dry_run = True
                else:
                    self._set_resource_result(task, ResultCode.SYNC_FAILED, None, str(err))
                    successful = False
                continue
            except Exception as err:
                self._set_resource_result(task, ResultCode.SYNC_FAILED, None, str(err))
                successful = False
                continue
            validator = self.options.permission_validator
            if validator is not None:
                try:
                    validator(task.obj(), api_resource)
                except Exception as err:
                    self._set_resource_result(task, ResultCode.SYNC_FAILED, None, str(err))
                    successful = False

        last_wave = max(
            (t.wave() for t in tasks if t.phase is SyncPhase.SYNC and not t.is_prune()),
            default=0,
        )
        last_wave = max(last_wave, 0) + 1
        for task in tasks:
            if task.is_prune() and (
                self.options.prune_last
                or has_annotation_option(task.live_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_PRUNE_LAST)
            ):
                annotations = get_annotations(task.live_obj)
                annotations[ANNOTATION_SYNC_WAVE] = str(last_wave)
                task.live_obj.setdefault("metadata", {})["annotations"] = annotations

        tasks.sort()

        for task in tasks:
            result = self.sync_res.get(task.result_key())
            if result is not None:
                task.sync_status = result.status
                task.operation_state = result.hook_phase
                task.message = result.message

        return tasks, successful

    def _auto_create_namespace(self, tasks: SyncTasks) -> SyncTasks:
        targets = [r.target for r in self.resources.values()]
        if any(is_namespace_with_name(obj, self.namespace) for obj in targets):
            return tasks
        ns_obj: Manifest = {
            "apiVersion": "v1",
            "kind": NAMESPACE_KIND,
            "metadata": {"name": self.namespace},
        }
        try:
            live = self.cluster.get_resource("", "v1", NAMESPACE_KIND, self.namespace, "")
        except NotFoundError:
            tasks.append(SyncTask(SyncPhase.PRE_SYNC, target_obj=ns_obj))
            return tasks
        except Exception as err:
            task = SyncTask(SyncPhase.PRE_SYNC, target_obj=ns_obj)
            self._set_resource_result(
                task, ResultCode.SYNC_FAILED, OperationPhase.ERROR,
                f"Namespace auto creation failed: {err}",
            )
            tasks.append(task)
            return tasks
        ns_task = SyncTask(SyncPhase.PRE_SYNC, target_obj=ns_obj, live_obj=live)
        if ns_task.result_key() in self.sync_res:
            tasks.append(ns_task)
        else:
            log.info("Namespace %s already exists", self.namespace)
            live_copy = copy.deepcopy(live)
            modifier = self.options.namespace_modifier
            if modifier is not None and modifier(live_copy):
                tasks.append(SyncTask(SyncPhase.PRE_SYNC, target_obj=live_copy, live_obj=live))
        return tasks

    # -- running -----------------------------------------------------------

    def _filter_out_of_sync(self, tasks: SyncTasks) -> SyncTasks:
        modification = self.options.modification_result or {}

        def keep(task: SyncTask) -> bool:
            if task.is_hook():
                return True
            key = task.resource_key()
            if (
                key in modification
                and not modification[key]
                and task.target_obj is not None
                and task.live_obj is not None
            ):
                return False
            return True

        return tasks.filter(keep)

    def _delete_hooks(self, pending: SyncTasks) -> None:
        for task in pending:
            try:
                self.executor.delete_resource(task)
            except NotFoundError:
                pass
            except Exception as err:
                self._set_resource_result(
                    task, None, OperationPhase.ERROR, f"failed to delete resource: {err}"
                )

    def _set_operation_failed(self, sync_fail_tasks: SyncTasks, message: str) -> None:
        if sync_fail_tasks and not sync_fail_tasks.all(lambda t: t.completed()):
            # Start the failure hooks; another sync() will see them complete.
            if self._run_tasks(sync_fail_tasks, False) is RunState.FAILED:
                self._set_operation_phase(OperationPhase.FAILED, message)
            return
        self._set_operation_phase(OperationPhase.FAILED, message)

    def _run_tasks(self, tasks: SyncTasks, dry_run: bool) -> RunState:
        dry_run = dry_run or self.options.dry_run
        prune_tasks, create_tasks = tasks.split(lambda t: t.is_prune())

        def pruner(task: SyncTask):
            def run(state: RunState) -> RunState:
                result, message = self.executor.prune_object(task.live_obj, self.options.prune, dry_run)
                if result is ResultCode.SYNC_FAILED:
                    state = RunState.FAILED
                if not dry_run or self.options.dry_run or result is ResultCode.SYNC_FAILED:
                    self._set_resource_result(task, result, _OPERATION_PHASES[result], message)
                return state
            return run

        state = run_concurrently(RunState.SUCCESSFUL, [pruner(t) for t in prune_tasks])
        if state is not RunState.SUCCESSFUL:
            return state

        def deleter(task: SyncTask):
            def run(state: RunState) -> RunState:
                if dry_run:
                    return state
                try:
                    self.executor.delete_resource(task)
                except NotFoundError:
                    return state
                except Exception as err:
                    self._set_resource_result(
                        task, None, OperationPhase.ERROR, f"failed to delete resource: {err}"
                    )
                    return RunState.FAILED
                return RunState.PENDING
            return run

        pending_deletion = create_tasks.filter(lambda t: t.delete_before_creation())
        state = run_concurrently(state, [deleter(t) for t in pending_deletion])
        if state is not RunState.SUCCESSFUL:
            return state

        for _, group in groupby(create_tasks, key=lambda t: get_kind(t.target_obj)):
            state = self._process_create_tasks(state, SyncTasks(group), dry_run)
        return state

    def _process_create_tasks(self, state: RunState, tasks: SyncTasks, dry_run: bool) -> RunState:
        def applier(task: SyncTask):
            def run(state: RunState) -> RunState:
                validate = self.options.validate and not has_annotation_option(
                    task.target_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_DISABLE_VALIDATION
                )
                result, message = self.executor.apply_object(task, dry_run, self.options.force, validate)
                if result is ResultCode.SYNC_FAILED:
                    state = RunState.FAILED
                if not dry_run or self.options.dry_run or result is ResultCode.SYNC_FAILED:
                    phase = _OPERATION_PHASES[result]
                    # Nothing is created in a dry run, so a running phase means success.
                    if self.options.dry_run and phase is OperationPhase.RUNNING:
                        phase = OperationPhase.SUCCEEDED
                    self._set_resource_result(task, result, phase, message)
                return state
            return run

        runnable = [applier(t) for t in tasks if not (dry_run and t.skip_dry_run)]
        return run_concurrently(state, runnable)

    def _update_running(self, tasks: SyncTasks) -> None:
        for task in tasks.filter(lambda t: t.running() and t.live_obj is not None):
            if task.is_hook():
                try:
                    phase, message = self._get_operation_phase(task.live_obj)
                except Exception as err:
                    self._set_resource_result(
                        task, None, OperationPhase.ERROR, f"failed to get resource health: {err}"
                    )
                else:
                    self._set_resource_result(task, None, phase, message)
                continue
            try:
                health = self._health(task.live_obj)
            except Exception:
                continue
            if health is None:
                self._set_resource_result(task, task.sync_status, OperationPhase.SUCCEEDED, task.message)
            elif health.status is HealthStatusCode.HEALTHY:
                self._set_resource_result(task, task.sync_status, OperationPhase.SUCCEEDED, health.message)
            elif health.status is HealthStatusCode.DEGRADED:
                self._set_resource_result(task, task.sync_status, OperationPhase.FAILED, health.message)

    def sync(self) -> None:
        """Execute the next step of the operation and update its state."""
        tasks, ok = self.get_sync_tasks()
        if not ok:
            self._set_operation_phase(OperationPhase.FAILED, "one or more synchronization tasks are not valid")
            return

        if not self._started():
            # One dry run per operation catches most manifest errors before anything changes.
            dry_tasks = self._filter_out_of_sync(tasks) if self.options.apply_out_of_sync_only else tasks
            if self._run_tasks(dry_tasks, True) is RunState.FAILED:
                self._set_operation_phase(OperationPhase.FAILED, "one or more objects failed to apply (dry run)")
                return

        self._update_running(tasks)

        multi_step = tasks.multi_step()
        running = tasks.filter(lambda t: (multi_step or t.is_hook()) and t.running())
        if running:
            self.set_running_phase(running, False)
            return

        deletion_successful = tasks.filter(
            lambda t: t.is_hook() and t.live_obj is not None and not t.running() and t.delete_on_phase_successful()
        )
        deletion_failed = tasks.filter(
            lambda t: t.is_hook() and t.live_obj is not None and not t.running() and t.delete_on_phase_failed()
        )

        sync_fail_tasks, tasks = tasks.split(lambda t: t.phase is SyncPhase.SYNC_FAIL)

        if tasks.any(lambda t: t.completed() and not t.successful()):
            self._delete_hooks(deletion_failed)
            self._set_operation_failed(sync_fail_tasks, "one or more synchronization tasks completed unsuccessfully")
            return

        tasks = tasks.filter(lambda t: t.pending())
        if self.options.apply_out_of_sync_only:
            tasks = self._filter_out_of_sync(tasks)

        if not tasks:
            self._delete_hooks(deletion_successful)
            self._set_operation_phase(OperationPhase.SUCCEEDED, "successfully synced (no more tasks)")
            return

        phase, wave = tasks.phase(), tasks.wave()
        final_wave = phase == tasks.last_phase() and wave == tasks.last_wave()
        remaining = tasks.filter(lambda t: t.phase != phase or t.wave() != wave or t.is_hook())
        tasks = tasks.filter(lambda t: t.phase == phase and t.wave() == wave)

        self._set_operation_phase(OperationPhase.RUNNING, "one or more tasks are running")
        run_state = self._run_tasks(tasks, False)

        wave_hook = self.options.sync_wave_hook
        if wave_hook is not None and run_state is not RunState.FAILED:
            try:
                wave_hook(phase, wave, final_wave)
            except Exception as err:
                self._delete_hooks(deletion_failed)
                self._set_operation_phase(OperationPhase.FAILED, f"SyncWaveHook failed: {err}")
                log.error("SyncWaveHook failed: %s", err)
                return

        if run_state is RunState.FAILED:
            self._delete_hooks(deletion_failed)
            self._set_operation_failed(sync_fail_tasks, "one or more objects failed to apply")
        elif run_state is RunState.SUCCESSFUL:
            if not remaining:
                self._delete_hooks(deletion_successful)
                self._set_operation_phase(OperationPhase.SUCCEEDED, "successfully synced (all tasks run)")
            else:
                self.set_running_phase(remaining, False)
        else:
            self.set_running_phase(tasks.filter(lambda t: t.delete_on_phase_completion()), True)

    def terminate(self) -> None:
        """Delete running hooks and mark the operation as terminated."""
        ok = True
        tasks, _ = self.get_sync_tasks()
        for task in tasks:
            if not task.is_hook() or task.live_obj is None:
                continue
            try:
                phase, message = self._get_operation_phase(task.live_obj)
            except Exception as err:
                self._set_operation_phase(OperationPhase.ERROR, f"Failed to get hook health: {err}")
                return
            if phase is OperationPhase.RUNNING:
                try:
                    self.executor.delete_resource(task)
                except Exception as err:
                    self._set_resource_result(task, None, OperationPhase.FAILED, f"Failed to delete: {err}")
                    ok = False
                else:
                    self._set_resource_result(task, None, OperationPhase.SUCCEEDED, "Deleted")
            else:
                self._set_resource_result(task, None, phase, message)
        if ok:
            self._set_operation_phase(OperationPhase.FAILED, "Operation terminated")
        else:
            self._set_operation_phase(OperationPhase.ERROR, "Operation termination had errors")