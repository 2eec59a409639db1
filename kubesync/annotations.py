"""Reading comma-separated option lists from resource annotations."""

from __future__ import annotations

from typing import Any, Mapping


def get_annotations(obj: Mapping[str, Any] | None) -> dict[str, str]:
    """Return the annotations of a manifest, or an empty dict."""
    if not obj:
        return {}
    metadata = obj.get("metadata") or {}
    return dict(metadata.get("annotations") or {})


def get_annotation_csvs(obj: Mapping[str, Any] | None, key: str) -> list[str]:
    """Split the annotation ``key`` on commas, trimmed, de-duplicated, blanks dropped."""
    raw = get_annotations(obj).get(key, "")
    values = (item.strip() for item in raw.split(","))
    return list(dict.fromkeys(value for value in values if value))


def has_annotation_option(obj: Mapping[str, Any] | None, key: str, val: str) -> bool:
    """True if ``val`` is one of the comma-separated values of annotation ``key``."""
    return val in get_annotation_csvs(obj, key)