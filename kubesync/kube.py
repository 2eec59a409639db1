"""Cluster-facing types and helpers for reading manifest dictionaries."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"
CRD_GROUP = "apiextensions.k8s.io"


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return self.value


class NotFoundError(LookupError):
    """The requested resource or resource type does not exist in the cluster."""


class DryRunStrategy(_StrEnum):
    NONE = "None"
    CLIENT = "Client"
    SERVER = "Server"


class DeletionPropagation(_StrEnum):
    ORPHAN = "Orphan"
    BACKGROUND = "Background"
    FOREGROUND = "Foreground"


class HealthStatusCode(_StrEnum):
    UNKNOWN = "Unknown"
    PROGRESSING = "Progressing"
    HEALTHY = "Healthy"
    SUSPENDED = "Suspended"
    DEGRADED = "Degraded"
    MISSING = "Missing"


@dataclass(frozen=True)
class HealthStatus:
    """Health of a resource with an optional explanation."""

    status: HealthStatusCode
    message: str = ""


@dataclass(frozen=True)
class APIResource:
    """A resource type served by the cluster."""

    kind: str
    group: str = ""
    version: str = ""
    name: str = ""
    namespaced: bool = True


@runtime_checkable
class Cluster(Protocol):
    """Operations the sync engine performs against a cluster.

    Lookups raise NotFoundError when the resource or its type is unknown;
    other failures are raised as any other exception.
    """

    def server_resource(self, group: str, version: str, kind: str) -> APIResource:
        """Describe the resource type, or raise NotFoundError."""
        ...

    def get_resource(
        self, group: str, version: str, kind: str, name: str, namespace: str
    ) -> dict[str, Any]:
        """Fetch a live object, or raise NotFoundError."""
        ...

    def apply_resource(
        self, obj: Mapping[str, Any], dry_run: DryRunStrategy, force: bool, validate: bool
    ) -> str:
        """Apply the manifest and return a status message."""
        ...

    def replace_resource(
        self, obj: Mapping[str, Any], dry_run: DryRunStrategy, force: bool
    ) -> str:
        """Replace the live object with the manifest and return a status message."""
        ...

    def create_resource(
        self, obj: Mapping[str, Any], dry_run: DryRunStrategy, validate: bool
    ) -> str:
        """Create the object and return a status message."""
        ...

    def update_resource(
        self, obj: Mapping[str, Any], dry_run: DryRunStrategy
    ) -> dict[str, Any]:
        """Update the live object and return its new state."""
        ...

    def delete_resource(
        self,
        group: str,
        version: str,
        kind: str,
        name: str,
        namespace: str,
        propagation_policy: DeletionPropagation,
    ) -> None:
        """Delete a live object; raise NotFoundError if it is already gone."""
        ...

    def get_crd(self, name: str) -> dict[str, Any]:
        """Fetch a custom resource definition by name."""
        ...


def _metadata(obj: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    if not obj:
        return {}
    return obj.get("metadata") or {}


def get_name(obj: Optional[Mapping[str, Any]]) -> str:
    """metadata.name, or an empty string."""
    return _metadata(obj).get("name") or ""


def get_namespace(obj: Optional[Mapping[str, Any]]) -> str:
    """metadata.namespace, or an empty string."""
    return _metadata(obj).get("namespace") or ""


def get_kind(obj: Optional[Mapping[str, Any]]) -> str:
    """The object's kind, or an empty string."""
    if not obj:
        return ""
    return obj.get("kind") or ""


def get_group(obj: Optional[Mapping[str, Any]]) -> str:
    """The API group from apiVersion; empty for the core group."""
    if not obj:
        return ""
    api_version = obj.get("apiVersion") or ""
    group, sep, _ = api_version.rpartition("/")
    return group if sep else ""


def is_crd(obj: Optional[Mapping[str, Any]]) -> bool:
    """True for a custom resource definition manifest."""
    return get_kind(obj) == CRD_KIND and get_group(obj) == CRD_GROUP


def is_namespace_with_name(obj: Optional[Mapping[str, Any]], name: str) -> bool:
    """True if the object is the core Namespace called ``name``."""
    return (
        obj is not None
        and get_group(obj) == ""
        and get_kind(obj) == NAMESPACE_KIND
        and get_name(obj) == name
    )