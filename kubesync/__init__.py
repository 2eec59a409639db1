"""Kubernetes resource synchronization: ordered apply, pruning, hooks and sync waves."""

__version__ = "0.1.0"

__all__ = [
    "annotations",
    "common",
    "executor",
    "helm",
    "hooks",
    "kube",
    "options",
    "reconcile",
    "sync_context",
    "tasks",
]