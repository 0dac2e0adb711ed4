"""Shared helpers for comparing and building child objects."""

import re
from typing import Any, Dict, List, Optional, Tuple

from csi_operator.models.csi import Generation

_version_re = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+].*)?$")


def object_key(obj: Dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace") or ""
    name = metadata.get("name") or ""
    return f"{namespace}/{name}" if namespace else name


def merge_object_meta(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    """Merge desired owner references, labels and annotations into live metadata.

    Owner references are replaced; labels and annotations are only added or
    updated, never removed.

    Returns:
        bool: True if the live metadata changed
    """
    changed = False

    desired_refs = desired.get("ownerReferences") or []
    if desired_refs != (live.get("ownerReferences") or []):
        changed = True
        if desired_refs:
            live["ownerReferences"] = desired_refs
        else:
            live.pop("ownerReferences", None)

    for field in ("labels", "annotations"):
        wanted = desired.get(field) or {}
        current = live.get(field) or {}
        for key, value in wanted.items():
            if current.get(key) != value:
                changed = True
                current[key] = value
        if current:
            live[field] = current

    return changed


def has_same_generation(
    obj: Dict[str, Any], group: str, kind: str, children: List[Generation]
) -> bool:
    """True if the recorded generation of a workload matches its live one."""
    metadata = obj.get("metadata") or {}
    for child in children:
        if (
            child.group == group
            and child.kind == kind
            and child.name == metadata.get("name")
            and child.namespace == metadata.get("namespace", "")
        ):
            return child.lastGeneration == metadata.get("generation")
    return False


def prune_empty(value: Any) -> Any:
    """Drop None, empty lists and empty dicts recursively.

    The API server omits empty fields, so desired objects are compared in
    this normalised form.
    """
    if isinstance(value, dict):
        pruned = {k: prune_empty(v) for k, v in value.items()}
        return {k: v for k, v in pruned.items() if v not in (None, [], {})}
    if isinstance(value, list):
        return [prune_empty(v) for v in value]
    return value


def sanitize_driver_name(driver: str) -> str:
    """Make a driver name usable as a directory name."""
    return re.sub(r"[^a-zA-Z0-9-.]", "-", driver)


def parse_image_version(image: str) -> Optional[Tuple[int, int, int]]:
    """Parse the tag of an image as a version, None if it is not one."""
    if ":" not in image:
        return None
    tag = image.rsplit(":", 1)[1]
    match = _version_re.match(tag)
    if "/" in tag or match is None:
        return None
    return tuple(int(part or 0) for part in match.groups())
