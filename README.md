# kubesync

A library that synchronizes Kubernetes resources with a cluster. It applies
every desired resource in a fixed order, prunes resources that should no
longer exist, and runs resource hooks in sync phases and waves. It works on
plain manifest dictionaries and talks to the cluster only through an object
you supply.

## Features

- **Ordered apply** – tasks are sorted by sync phase (`PreSync`, `Sync`,
  `PostSync`, `SyncFail`), then by wave, then by kind (namespaces first,
  workloads and ingresses late, unknown kinds last), then by name.
- **Pruning** – live resources with no desired counterpart are deleted when
  `SyncOptions.prune` is true. Otherwise they are only reported as
  `PruneSkipped` with the message `ignored (requires pruning)`.
- **Resource hooks** – resources annotated with `argocd.argoproj.io/hook`
  (`PreSync`, `Sync`, `PostSync`, `SyncFail`, or `Skip`) run in the named
  phases. Helm hooks (`helm.sh/hook`: `pre-install` and `pre-upgrade` map to
  `PreSync`, `post-install` and `post-upgrade` to `PostSync`) are understood
  when no `argocd.argoproj.io/hook` annotation gives a known type. A hook
  without a name gets one built from its `generateName`, the revision, the
  phase and the start time.
- **Hook deletion policies** – `HookSucceeded`, `HookFailed` and
  `BeforeHookCreation` (the default) via
  `argocd.argoproj.io/hook-delete-policy`, plus Helm's
  `helm.sh/hook-delete-policy` values.
- **Sync waves** – `argocd.argoproj.io/sync-wave: "5"` groups resources into
  batches applied one after another; lower waves go first and may be
  negative. Without it, a Helm `helm.sh/hook-weight` is used, else wave 0.
- **Sync options** – `argocd.argoproj.io/sync-options` accepts
  `SkipDryRunOnMissingResource=true`, `Prune=false`, `Validate=false`,
  `PruneLast=true` and `Replace=true`.

## Installation

```
pip install kubesync
```

The package has no runtime dependencies.

## Modules

| Module | Contents |
| --- | --- |
| `kubesync.common` | `SyncPhase`, `OperationPhase`, `ResultCode`, `HookType`, `HookDeletePolicy`, `ResourceKey`, `resource_key()`, `ResourceSyncResult`, annotation and option constants |
| `kubesync.annotations` | `get_annotations()`, `get_annotation_csvs()`, `has_annotation_option()` |
| `kubesync.helm` | Helm hook types, delete policies and `weight()` |
| `kubesync.hooks` | `is_hook()`, `skip()`, `types()`, `delete_policies()`, `ignore()`, `sync_phases()` |
| `kubesync.reconcile` | `ReconciliationResult`, `split_hooks()`, `dedup_live_resources()`, `reconcile()` |
| `kubesync.kube` | the `Cluster` protocol, `NotFoundError`, `APIResource`, `HealthStatus`, manifest accessors |
| `kubesync.tasks` | `SyncTask`, `SyncTasks`, `RunState`, `run_concurrently()` |
| `kubesync.options` | `SyncOptions`, `DiffResult`, `group_resources()`, `group_diff_results()` |
| `kubesync.executor` | `Executor`: apply, prune and delete single resources |
| `kubesync.sync_context` | `SyncContext`: the step-by-step sync operation |

## Objects

Resources are plain dictionaries in the usual manifest shape:

```python
pod = {
    "apiVersion": "v1",
    "kind": "Pod",
    "metadata": {
        "name": "my-pod",
        "namespace": "default",
        "annotations": {"argocd.argoproj.io/sync-wave": "1"},
    },
}
```

## Inspecting hooks

```python
from kubesync import hooks

migrate = {
    "apiVersion": "batch/v1",
    "kind": "Job",
    "metadata": {
        "generateName": "schema-migrate-",
        "annotations": {"argocd.argoproj.io/hook": "PreSync,PostSync"},
    },
}

hooks.is_hook(migrate)          # True
hooks.sync_phases(migrate)      # [SyncPhase.PRE_SYNC, SyncPhase.POST_SYNC]
hooks.delete_policies(migrate)  # [HookDeletePolicy.BEFORE_HOOK_CREATION]
```

## Reconciling desired and live state

`reconcile` pairs desired objects with the live objects found in the cluster,
keyed by `ResourceKey`. Hooks are split out, live copies of one object served
under several API groups (same UID) are reduced, and live objects with no
desired counterpart are appended with a `None` target so they can be pruned.

```python
from kubesync.common import resource_key
from kubesync.reconcile import reconcile

live = {resource_key(obj): obj for obj in live_objects}
result = reconcile(desired_objects, live, "default", is_namespaced)
```

`is_namespaced(group, kind)` returns `False` for cluster-scoped kinds; `None`,
or leaving the argument out, counts as namespaced.

## Talking to the cluster

Implement the `kubesync.kube.Cluster` protocol: `server_resource`,
`get_resource`, `apply_resource`, `replace_resource`, `create_resource`,
`update_resource`, `delete_resource` and `get_crd`. Lookups of missing
resources or resource types raise `NotFoundError`; any other exception counts
as a failure of that operation.

## Running a sync

A `SyncContext` is driven by calling `sync()` again and again until the
operation reaches a completed phase.

```python
from kubesync.options import SyncOptions
from kubesync.sync_context import SyncContext

ctx = SyncContext(
    cluster,
    result,
    namespace="default",
    revision="0123456789abcdef",
    options=SyncOptions(prune=True),
)
while True:
    ctx.sync()
    phase, message, results = ctx.get_state()
    if phase is not None and phase.completed():
        break

for res in results:
    print(res.resource_key, res.status, res.message)
```

The first step performs a client dry run of every task and fails the
operation if any of them fails. Each later step applies the next phase and
wave that still has pending tasks. `SyncOptions` also controls forcing,
validation, skipping hooks, replace instead of apply, pruning last, the
deletion propagation policy (foreground by default), a resources filter, a
permission validator, namespace auto-creation, applying only modified
resources (`apply_out_of_sync_only` with `modification_result`, built with
`group_diff_results()`), and a `sync_wave_hook` called after each applied
wave. An operation can also be resumed from an earlier state through the
`phase`, `message`, `results` and `started_at` arguments.

`terminate()` deletes hooks that are still running; the operation ends
`Failed` with "Operation terminated", or `Error` if a deletion failed.

## What the package does not do

- It contains no cluster client: all cluster access goes through the
  `Cluster` object you provide.
- It has no built-in health assessment. Health comes only from
  `SyncOptions.health_override`; without it, applied hooks and resources are
  treated as succeeded once they have been applied.
- It has no command-line interface.