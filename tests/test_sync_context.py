import json

import pytest

from kubesync.common import (
    ANNOTATION_KEY_HOOK,
    ANNOTATION_KEY_HOOK_DELETE_POLICY,
    ANNOTATION_SYNC_OPTIONS,
    ANNOTATION_SYNC_WAVE,
    SYNC_OPTION_PRUNE_LAST,
    SYNC_OPTION_REPLACE,
    OperationPhase,
    ResourceSyncResult,
    ResultCode,
    SyncPhase,
    resource_key,
)
from kubesync.kube import APIResource, HealthStatus, HealthStatusCode, NotFoundError
from kubesync.options import DiffResult, SyncOptions, group_diff_results
from kubesync.reconcile import ReconciliationResult
from kubesync.sync_context import SyncContext, is_crd_of_group_kind
from kubesync.tasks import SyncTask

NS = "fake-argocd-ns"


def new_pod(name="my-pod", namespace=None, annotations=None):
    meta = {"name": name}
    if namespace is not None:
        meta["namespace"] = namespace
    if annotations:
        meta["annotations"] = dict(annotations)
    return {"apiVersion": "v1", "kind": "Pod", "metadata": meta}


def new_service(name="my-service", namespace=None):
    meta = {"name": name}
    if namespace is not None:
        meta["namespace"] = namespace
    return {"apiVersion": "v1", "kind": "Service", "metadata": meta}


def new_crd():
    return {
        "apiVersion": "apiextensions.k8s.io/v1beta1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": "testcrds.argoproj.io"},
        "spec": {"group": "argoproj.io", "names": {"kind": "TestCrd"}},
        "status": {"conditions": [{"type": "Established", "status": "True"}]},
    }


def hook(hook_type, name="my-pod", namespace=None, policy=None):
    ann = {ANNOTATION_KEY_HOOK: hook_type}
    if policy:
        ann[ANNOTATION_KEY_HOOK_DELETE_POLICY] = policy
    return new_pod(name, namespace, ann)


class FakeCluster:
    def __init__(self, fail=None, extra_resources=None):
        self.fail = fail or {}
        self.api = {
            ("", "Pod"): APIResource("Pod", "", "v1"),
            ("", "Service"): APIResource("Service", "", "v1"),
            ("", "Namespace"): APIResource("Namespace", "", "v1", namespaced=False),
            ("apps", "Deployment"): APIResource("Deployment", "apps", "v1"),
        }
        for res in extra_resources or []:
            self.api[(res.group, res.kind)] = res
        self.last_validate = None
        self.commands = {}
        self.existing = set()
        self.deleted = []
        self.namespaces = {}

    def server_resource(self, group, version, kind):
        try:
            return self.api[(group, kind)]
        except KeyError:
            raise NotFoundError(f"{group}/{kind} not found") from None

    def get_resource(self, group, version, kind, name, namespace):
        if name in self.namespaces:
            return self.namespaces[name]
        raise NotFoundError(name)

    def _check(self, obj, command):
        self.commands[resource_key(obj)] = command
        name = obj["metadata"]["name"]
        if name in self.fail:
            raise RuntimeError(self.fail[name])

    def apply_resource(self, obj, dry_run, force, validate):
        self.last_validate = validate
        self._check(obj, "apply")
        return ""

    def replace_resource(self, obj, dry_run, force):
        self._check(obj, "replace")
        return ""

    def create_resource(self, obj, dry_run, validate):
        self.last_validate = validate
        self._check(obj, "create")
        return ""

    def update_resource(self, obj, dry_run):
        self._check(obj, "update")
        return dict(obj)

    def delete_resource(self, group, version, kind, name, namespace, propagation_policy):
        if name in self.fail:
            raise RuntimeError(self.fail[name])
        if name not in self.existing:
            raise NotFoundError(name)
        self.deleted.append(name)

    def get_crd(self, name):
        return new_crd()


def make_ctx(live=(), target=(), hooks=(), cluster=None, options=None, **kwargs):
    result = ReconciliationResult(live=list(live), target=list(target), hooks=list(hooks))
    return SyncContext(
        cluster or FakeCluster(), result, NS, "FooBarBaz", options or SyncOptions(), **kwargs
    )


def test_validate_false_disables_validation():
    pod = new_pod(namespace=NS)
    cluster = FakeCluster()
    ctx = make_ctx([pod], [pod], cluster=cluster, options=SyncOptions(validate=False))
    ctx.sync()
    assert cluster.last_validate is False


@pytest.mark.parametrize("value,want", [("", True), ("Validate=true", True), ("Validate=false", False)])
def test_validate_option_annotation(value, want):
    pod = new_pod(namespace=NS, annotations={ANNOTATION_SYNC_OPTIONS: value})
    cluster = FakeCluster()
    make_ctx([pod], [pod], cluster=cluster).sync()
    assert cluster.last_validate is want


def test_not_permitted_namespace():
    def deny(obj, res):
        raise PermissionError("not permitted in project")

    ctx = make_ctx([None, None], [new_pod(namespace="kube-system"), new_service()],
                   options=SyncOptions(permission_validator=deny))
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.FAILED
    assert "not permitted in project" in results[0].message


def test_create_in_sorted_order():
    ctx = make_ctx([None, None], [new_pod(), new_service()])
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.SUCCEEDED
    assert [r.resource_key.kind for r in results] == ["Service", "Pod"]
    assert all(r.status is ResultCode.SYNCED and r.message == "" for r in results)


@pytest.mark.parametrize(
    "skip_annotation,crd_present,crd_in_sync,want_dry_run,want_success",
    [
        (False, False, False, True, False),
        (False, False, True, False, True),
        (False, True, False, True, True),
        (True, True, False, True, True),
        (True, False, False, False, True),
    ],
)
def test_custom_resources(skip_annotation, crd_present, crd_in_sync, want_dry_run, want_success):
    extra = [APIResource("CustomResourceDefinition", "apiextensions.k8s.io", "v1beta1")]
    if crd_present:
        extra.append(APIResource("TestCrd", "argoproj.io", "v1"))
    cr = {"apiVersion": "argoproj.io/v1", "kind": "TestCrd", "metadata": {"name": "my-resource"}}
    if skip_annotation:
        cr["metadata"]["annotations"] = {ANNOTATION_SYNC_OPTIONS: "SkipDryRunOnMissingResource=true"}
    targets = [cr] + ([new_crd()] if crd_in_sync else [])
    ctx = make_ctx([None] * len(targets), targets, cluster=FakeCluster(extra_resources=extra))
    tasks, ok = ctx.get_sync_tasks()
    assert ok is want_success
    cr_task = next(t for t in tasks if t.kind() == "TestCrd")
    assert (not cr_task.skip_dry_run) is want_dry_run


def test_delete_successfully():
    cluster = FakeCluster()
    cluster.existing.update({"my-pod", "my-service"})
    ctx = make_ctx([new_service(namespace=NS), new_pod(namespace=NS)], [None, None],
                   cluster=cluster, options=SyncOptions(prune=True))
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.SUCCEEDED
    assert {(r.status, r.message) for r in results} == {(ResultCode.PRUNED, "pruned")}


def test_create_failure():
    ctx = make_ctx([None], [new_service()], cluster=FakeCluster(fail={"my-service": "foo"}))
    ctx.sync()
    _, _, results = ctx.get_state()
    assert len(results) == 1
    assert results[0].status is ResultCode.SYNC_FAILED
    assert results[0].message == "foo"


def test_prune_failure():
    svc = new_service("test-service", NS)
    ctx = make_ctx([svc], [None], cluster=FakeCluster(fail={"test-service": "foo"}),
                   options=SyncOptions(prune=True))
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.FAILED
    assert len(results) == 1
    assert results[0].status is ResultCode.SYNC_FAILED
    assert results[0].message == "foo"


def test_dont_sync_or_prune_hooks():
    ctx = make_ctx(hooks=[hook("PreSync", "dont-create-me"), hook("PreSync", "dont-prune-me", NS)],
                   options=SyncOptions(skip_hooks=True))
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert results == []
    assert phase is OperationPhase.SUCCEEDED


def test_dont_prune_prune_false():
    pod = new_pod(namespace=NS, annotations={ANNOTATION_SYNC_OPTIONS: "Prune=false"})
    ctx = make_ctx([pod], [None], options=SyncOptions(prune=True))
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.SUCCEEDED
    assert results[0].status is ResultCode.PRUNE_SKIPPED
    assert results[0].message == "ignored (no prune)"
    ctx.sync()
    assert ctx.get_state()[0] is OperationPhase.SUCCEEDED


@pytest.mark.parametrize(
    "annotated,has_live,command",
    [(False, True, "apply"), (True, True, "replace"), (True, False, "create")],
)
def test_replace(annotated, has_live, command):
    ann = {ANNOTATION_SYNC_OPTIONS: SYNC_OPTION_REPLACE} if annotated else None
    target = new_pod(namespace=NS, annotations=ann)
    live = new_pod(namespace=NS) if has_live else None
    cluster = FakeCluster()
    make_ctx([live], [target], cluster=cluster).sync()
    assert cluster.commands[resource_key(target)] == command


def test_selective_sync_only():
    opts = SyncOptions(resources_filter=lambda key, live, target: key.kind == "Pod" and key.name == "pod-1")
    ctx = make_ctx([None, None], [new_pod("pod-1"), new_pod("pod-2")], options=opts)
    tasks, ok = ctx.get_sync_tasks()
    assert ok
    assert [t.name() for t in tasks] == ["pod-1"]


@pytest.mark.parametrize("revision,prefix", [("FooBarBaz", "foobarb"), ("foobar", "foobar")])
def test_unnamed_hooks_get_unique_names(revision, prefix):
    pod = new_pod("", annotations={ANNOTATION_KEY_HOOK: "PreSync,PostSync"})
    ctx = make_ctx(hooks=[pod])
    ctx.revision = revision
    tasks, ok = ctx.get_sync_tasks()
    assert ok
    assert len(tasks) == 2
    assert f"{prefix}-presync-" in tasks[0].name()
    assert f"{prefix}-postsync-" in tasks[1].name()
    assert pod["metadata"]["name"] == ""


def test_managed_resources_are_not_named():
    pod = new_pod("")
    tasks, ok = make_ctx([None], [pod]).get_sync_tasks()
    assert ok
    assert tasks[0].name() == ""


def test_de_duping_tasks():
    pod = new_pod(annotations={ANNOTATION_KEY_HOOK: "Sync"})
    tasks, ok = make_ctx([None], [pod], hooks=[pod], options=SyncOptions(prune=True)).get_sync_tasks()
    assert ok
    assert len(tasks) == 1


def test_objects_get_a_namespace():
    pod = new_pod()
    tasks, ok = make_ctx([None], [pod]).get_sync_tasks()
    assert ok
    assert tasks[0].namespace() == NS
    assert "namespace" not in pod["metadata"]


def test_namespace_auto_creation():
    ns_obj = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": NS}}
    opts = SyncOptions(create_namespace=True, namespace_modifier=lambda obj: False)
    tasks, ok = make_ctx([None], [ns_obj], options=opts).get_sync_tasks()
    assert ok and len(tasks) == 1

    tasks, ok = make_ctx([None], [new_pod()], options=opts).get_sync_tasks()
    assert ok
    assert [t.kind() for t in tasks] == ["Namespace", "Pod"]
    assert tasks[0].phase is SyncPhase.PRE_SYNC

    cluster = FakeCluster()
    cluster.namespaces[NS] = ns_obj
    tasks, ok = make_ctx([None], [new_pod()], cluster=cluster, options=opts).get_sync_tasks()
    assert ok and [t.kind() for t in tasks] == ["Pod"]


def test_sync_failure_hook_with_successful_sync():
    ctx = make_ctx([None], [new_pod()], hooks=[hook("SyncFail", "fail-hook")])
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.SUCCEEDED
    assert len(results) == 1


def test_sync_failure_hook_with_failed_sync():
    ctx = make_ctx([None], [new_pod()], hooks=[hook("SyncFail", "fail-hook")],
                   cluster=FakeCluster(fail={"my-pod": "boom"}))
    ctx.sync()
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.FAILED
    assert len(results) == 2


def test_run_sync_fail_hooks_failed():
    ctx = make_ctx([None], [new_pod()],
                   hooks=[hook("SyncFail", "successful-sync-fail-hook"), hook("SyncFail", "failed-sync-fail-hook")],
                   cluster=FakeCluster(fail={"my-pod": "boom", "failed-sync-fail-hook": "boom"}))
    ctx.sync()
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.FAILED
    by_name = {r.resource_key.name: r for r in results}
    assert by_name["failed-sync-fail-hook"].hook_phase is OperationPhase.FAILED
    assert by_name["failed-sync-fail-hook"].status is ResultCode.SYNC_FAILED
    assert by_name["successful-sync-fail-hook"].hook_phase is OperationPhase.RUNNING
    assert by_name["successful-sync-fail-hook"].status is ResultCode.SYNCED


def test_before_hook_creation():
    h = hook("Sync", namespace=NS, policy="BeforeHookCreation")
    ctx = make_ctx([h], [None], hooks=[h])
    ctx.sync()
    _, message, results = ctx.get_state()
    assert len(results) == 1
    assert results[0].message == ""
    assert message == "waiting for completion of hook /Pod/my-pod"


def _initial(*entries):
    return [ResourceSyncResult(resource_key=resource_key(h), hook_phase=p, sync_phase=s) for h, p, s in entries]


def test_hooks_not_deleted_if_phase_not_completed():
    done = hook("PreSync", "completed-hook", NS, "HookSucceeded")
    busy = hook("PreSync", "in-progress-hook", NS, "HookSucceeded")
    cluster = FakeCluster()
    cluster.existing.update({"completed-hook", "in-progress-hook"})
    override = lambda obj: (HealthStatus(HealthStatusCode.PROGRESSING, "test")
                            if obj["metadata"]["name"] == "in-progress-hook" else None)
    ctx = make_ctx([done, busy], [None, None], hooks=[done, busy], cluster=cluster,
                   options=SyncOptions(health_override=override), phase=OperationPhase.RUNNING,
                   results=_initial((done, OperationPhase.SUCCEEDED, SyncPhase.PRE_SYNC),
                                    (busy, OperationPhase.RUNNING, SyncPhase.PRE_SYNC)))
    ctx.sync()
    assert ctx.phase is OperationPhase.RUNNING
    assert cluster.deleted == []


def test_hooks_deleted_after_phase_completed():
    h1 = hook("PreSync", "completed-hook1", NS, "HookSucceeded")
    h2 = hook("PreSync", "completed-hook2", NS, "HookSucceeded")
    cluster = FakeCluster()
    cluster.existing.update({"completed-hook1", "completed-hook2"})
    ctx = make_ctx([h1, h2], [None, None], hooks=[h1, h2], cluster=cluster, phase=OperationPhase.RUNNING,
                   results=_initial((h1, OperationPhase.SUCCEEDED, SyncPhase.PRE_SYNC),
                                    (h2, OperationPhase.SUCCEEDED, SyncPhase.PRE_SYNC)))
    ctx.sync()
    assert ctx.phase is OperationPhase.SUCCEEDED
    assert sorted(cluster.deleted) == ["completed-hook1", "completed-hook2"]


def test_hooks_deleted_after_phase_completed_failed():
    h1 = hook("Sync", "completed-hook1", NS, "HookFailed")
    h2 = hook("Sync", "completed-hook2", NS, "HookFailed")
    cluster = FakeCluster()
    cluster.existing.update({"completed-hook1", "completed-hook2"})
    ctx = make_ctx([h1, h2], [None, None], hooks=[h1, h2], cluster=cluster, phase=OperationPhase.RUNNING,
                   results=_initial((h1, OperationPhase.SUCCEEDED, SyncPhase.SYNC),
                                    (h2, OperationPhase.FAILED, SyncPhase.SYNC)))
    ctx.sync()
    assert ctx.phase is OperationPhase.FAILED
    assert len(cluster.deleted) == 2


def test_live_obj():
    obj = new_pod(namespace="my-ns")
    assert make_ctx().live_obj({}) is None
    found = new_pod()
    assert make_ctx([found], [None]).live_obj(obj) is found
    other_ns = new_pod(namespace="other")
    assert make_ctx([other_ns], [None]).live_obj(obj) is None


def test_has_crd_of_group_kind():
    assert not make_ctx([None], [new_crd()]).has_crd_of_group_kind("", "")
    assert make_ctx([None], [new_crd()]).has_crd_of_group_kind("argoproj.io", "TestCrd")
    assert not make_ctx(hooks=[new_crd()]).has_crd_of_group_kind("", "")
    assert make_ctx(hooks=[new_crd()]).has_crd_of_group_kind("argoproj.io", "TestCrd")
    assert is_crd_of_group_kind("argoproj.io", "TestCrd", new_crd())
    assert not is_crd_of_group_kind("argoproj.io", "TestCrd", new_pod())


@pytest.mark.parametrize(
    "tasks,pending,expected",
    [
        ([new_pod()] * 3, False, "waiting for healthy state of /Pod/my-pod and 2 more resources"),
        ([hook("SyncFail")], False, "waiting for completion of hook /Pod/my-pod"),
        ([new_pod()] * 3, True, "waiting for deletion of /Pod/my-pod and 2 more resources"),
    ],
)
def test_set_running_phase(tasks, pending, expected):
    ctx = make_ctx()
    ctx.set_running_phase([SyncTask(SyncPhase.SYNC, target_obj=t) for t in tasks], pending)
    assert ctx.message == expected
    assert ctx.phase is OperationPhase.RUNNING


def test_sync_wave_hook_called_once_per_wave():
    calls = []
    opts = SyncOptions(sync_wave_hook=lambda p, w, f: calls.append((p, w, f)))
    pod1 = new_pod("pod-1", annotations={ANNOTATION_SYNC_WAVE: "-1"})
    ctx = make_ctx([None, None], [pod1, new_pod("pod-2")], hooks=[hook("PostSync", "pod-3")], options=opts)
    ctx.sync()
    assert calls == [(SyncPhase.SYNC, -1, False)]
    ctx.sync()
    assert len(calls) == 1


def test_sync_wave_hook_fail():
    def fail(phase, wave, final):
        raise RuntimeError("intentional error")

    ctx = make_ctx([None], [new_pod("pod-1")], options=SyncOptions(sync_wave_hook=fail))
    ctx.sync()
    phase, message, results = ctx.get_state()
    assert phase is OperationPhase.FAILED
    assert message == "SyncWaveHook failed: intentional error"
    assert results[0].hook_phase is OperationPhase.RUNNING


@pytest.mark.parametrize(
    "prune_last,waves,prune_option,expected",
    [
        (True, (None, None, None), False, 1),
        (True, ("2", "1", "7"), False, 3),
        (False, ("2", "1", "7"), True, 3),
    ],
)
def test_prune_last(prune_last, waves, prune_option, expected):
    pods = []
    for index, wave in enumerate(waves, start=1):
        ann = {ANNOTATION_SYNC_WAVE: wave} if wave else {}
        if prune_option and index > 1:
            ann[ANNOTATION_SYNC_OPTIONS] = SYNC_OPTION_PRUNE_LAST
        pods.append(new_pod(f"pod-{index}", annotations=ann))
    ctx = make_ctx([None, pods[1], pods[2]], [pods[0], None, None], options=SyncOptions(prune_last=prune_last))
    tasks, ok = ctx.get_sync_tasks()
    assert ok
    assert len(tasks) == 3
    assert tasks.last_wave() == expected


def _diffs():
    p1, p2, p3 = (json.dumps(new_pod(f"pod-{i}", NS)).encode() for i in (1, 2, 3))
    return [DiffResult(b"null", p1, True), DiffResult(p2, b"null", True), DiffResult(p3, p3, False)]


@pytest.mark.parametrize("prune,pod2_status", [(False, ResultCode.PRUNE_SKIPPED), (True, ResultCode.PRUNED)])
def test_apply_out_of_sync_only(prune, pod2_status):
    cluster = FakeCluster()
    cluster.existing.add("pod-2")
    opts = SyncOptions(prune=prune, apply_out_of_sync_only=True, modification_result=group_diff_results(_diffs()))
    pod1, pod2, pod3 = new_pod("pod-1"), new_pod("pod-2"), new_pod("pod-3")
    ctx = make_ctx([None, pod2, pod3], [pod1, None, pod3], cluster=cluster, options=opts)
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.SUCCEEDED
    by_name = {r.resource_key.name: r.status for r in results}
    assert by_name == {"pod-1": ResultCode.SYNCED, "pod-2": pod2_status}


def test_terminate_deletes_running_hooks():
    h = hook("Sync", "running-hook", NS)
    cluster = FakeCluster()
    cluster.existing.add("running-hook")
    override = lambda obj: HealthStatus(HealthStatusCode.PROGRESSING, "busy")
    ctx = make_ctx([h], [None], hooks=[h], cluster=cluster, options=SyncOptions(health_override=override))
    ctx.terminate()
    phase, message, results = ctx.get_state()
    assert (phase, message) == (OperationPhase.FAILED, "Operation terminated")
    assert cluster.deleted == ["running-hook"]
    assert results[0].message == "Deleted"
    assert results[0].hook_phase is OperationPhase.SUCCEEDED