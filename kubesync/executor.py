"""Applying, pruning and deleting single resources against a cluster."""

from __future__ import annotations

import copy
import logging
import time
from typing import Any, Mapping, Optional

from .annotations import has_annotation_option
from .common import (
    ANNOTATION_SYNC_OPTIONS,
    SYNC_OPTION_DISABLE_PRUNE,
    SYNC_OPTION_REPLACE,
    ResultCode,
)
from .kube import (
    Cluster,
    DeletionPropagation,
    DryRunStrategy,
    get_group,
    get_kind,
    get_name,
    get_namespace,
    is_crd,
)
from .options import SyncOptions
from .tasks import SyncTask

log = logging.getLogger(__name__)

CRD_READINESS_TIMEOUT = 3.0
CRD_POLL_INTERVAL = 0.1


def _version(obj: Mapping[str, Any]) -> str:
    return (obj.get("apiVersion") or "").rpartition("/")[2]


def _crd_established(crd: Mapping[str, Any]) -> bool:
    conditions = (crd.get("status") or {}).get("conditions") or []
    for condition in conditions:
        if condition.get("type") == "Established":
            return condition.get("status") == "True"
    return False


class Executor:
    """Carries out the cluster operations of individual sync tasks."""

    def __init__(
        self,
        cluster: Cluster,
        options: Optional[SyncOptions] = None,
        *,
        crd_readiness_timeout: float = CRD_READINESS_TIMEOUT,
        poll_interval: float = CRD_POLL_INTERVAL,
    ) -> None:
        self.cluster = cluster
        self.options = options if options is not None else SyncOptions()
        self.crd_readiness_timeout = crd_readiness_timeout
        self.poll_interval = poll_interval

    def get_delete_options(self) -> DeletionPropagation:
        """Propagation policy for deletions; foreground unless configured."""
        policy = self.options.prune_propagation_policy
        return policy if policy is not None else DeletionPropagation.FOREGROUND

    def apply_object(
        self, task: SyncTask, dry_run: bool, force: bool, validate: bool
    ) -> tuple[ResultCode, str]:
        """Apply, replace, create or update the task's target object."""
        strategy = DryRunStrategy.CLIENT if dry_run else DryRunStrategy.NONE
        target = task.target_obj
        should_replace = self.options.replace or has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_REPLACE
        )
        try:
            if not should_replace:
                message = self.cluster.apply_resource(target, strategy, force, validate)
            elif task.live_obj is None:
                message = self.cluster.create_resource(target, strategy, validate)
            elif is_crd(target):
                # Replacing a CRD could recreate it and delete all its instances.
                update = copy.deepcopy(target)
                metadata = update.setdefault("metadata", {})
                resource_version = (task.live_obj.get("metadata") or {}).get("resourceVersion")
                if resource_version:
                    metadata["resourceVersion"] = resource_version
                else:
                    metadata.pop("resourceVersion", None)
                self.cluster.update_resource(update, strategy)
                message = f"{get_kind(target)}/{get_name(target)} updated"
            else:
                message = self.cluster.replace_resource(target, strategy, force)
        except Exception as err:  # any cluster failure is a failed sync of this task
            return ResultCode.SYNC_FAILED, str(err)
        if is_crd(target) and not dry_run:
            self.ensure_crd_ready(get_name(target))
        return ResultCode.SYNCED, message

    def prune_object(
        self, live_obj: Mapping[str, Any], prune: bool, dry_run: bool
    ) -> tuple[ResultCode, str]:
        """Delete the live object if pruning is allowed and this is not a dry run."""
        if not prune:
            return ResultCode.PRUNE_SKIPPED, "ignored (requires pruning)"
        if has_annotation_option(live_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_DISABLE_PRUNE):
            return ResultCode.PRUNE_SKIPPED, "ignored (no prune)"
        if dry_run:
            return ResultCode.PRUNED, "pruned (dry run)"
        # An object already being deleted is left alone to avoid an update hot loop.
        if not (live_obj.get("metadata") or {}).get("deletionTimestamp"):
            try:
                self.cluster.delete_resource(
                    get_group(live_obj),
                    _version(live_obj),
                    get_kind(live_obj),
                    get_name(live_obj),
                    get_namespace(live_obj),
                    self.get_delete_options(),
                )
            except Exception as err:
                return ResultCode.SYNC_FAILED, str(err)
        return ResultCode.PRUNED, "pruned"

    def delete_resource(self, task: SyncTask) -> None:
        """Delete the task's object; errors, NotFoundError included, propagate."""
        log.debug("Deleting resource %s", task.result_key())
        group, version, kind = task.group(), task.version(), task.kind()
        api_resource = self.cluster.server_resource(group, version, kind)
        namespace = task.namespace() if api_resource.namespaced else ""
        self.cluster.delete_resource(
            group, version, kind, task.name(), namespace, self.get_delete_options()
        )

    def ensure_crd_ready(self, name: str) -> bool:
        """Wait until the CRD is established; best effort, True if it became ready."""
        deadline = time.monotonic() + self.crd_readiness_timeout
        while True:
            try:
                crd = self.cluster.get_crd(name)
            except Exception:
                return False
            if _crd_established(crd):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)