"""Owner labels, owner references and the CSI finalizer."""

import logging
from typing import Any, Dict, Optional, Tuple

from kubernetes.client.exceptions import ApiException

from csi_operator.crd.base import CRDMetadata
from csi_operator.models.csi import API_VERSION, CSI, KIND
from .errors import ReconcileError, is_not_found

logger = logging.getLogger(__name__)

FINALIZER = "storage.tke.cloud.tencent.com"
OWNER_NAME_LABEL = "storage.tke.cloud.tencent.com/owner-name"
OWNER_NAMESPACE_LABEL = "storage.tke.cloud.tencent.com/owner-namespace"


def owner_labels(csi: CSI) -> Dict[str, str]:
    return {OWNER_NAME_LABEL: csi.name, OWNER_NAMESPACE_LABEL: csi.namespace}


def owner_selector(csi: CSI) -> str:
    """Label selector matching every child of a CSI object."""
    return ",".join(f"{key}={value}" for key, value in sorted(owner_labels(csi).items()))


def owner_reference(csi: CSI) -> Dict[str, Any]:
    return {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "name": csi.name,
        "uid": csi.uid,
        "controller": True,
    }


def stamp_owner(obj: Dict[str, Any], csi: CSI, namespaced: bool) -> Dict[str, Any]:
    """Add owner labels, and an owner reference when GC can follow it.

    Owner references only work inside the owner's namespace, so objects
    placed elsewhere are tracked by labels alone.
    """
    metadata = obj.setdefault("metadata", {})
    labels = metadata.get("labels") or {}
    labels.update(owner_labels(csi))
    metadata["labels"] = labels

    if namespaced and metadata.get("namespace") == csi.namespace:
        metadata["ownerReferences"] = [owner_reference(csi)]
    return obj


def owner_from_labels(labels: Optional[Dict[str, str]]) -> Optional[Tuple[str, str]]:
    """Return (namespace, name) of the owning CSI object, if labelled."""
    labels = labels or {}
    name = labels.get(OWNER_NAME_LABEL)
    namespace = labels.get(OWNER_NAMESPACE_LABEL)
    if name and namespace:
        return namespace, name
    return None


def owner_from_references(metadata: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    """Return (namespace, name) of the controlling CSI object, if referenced."""
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("kind") == KIND and ref.get("apiVersion") == API_VERSION and ref.get("controller"):
            return metadata.get("namespace", ""), ref["name"]
    return None


def has_finalizer(csi: CSI) -> bool:
    return FINALIZER in csi.metadata.finalizers


def add_finalizer(client, csi: CSI) -> bool:
    """Persist the finalizer on the CSI object; a no-op when already present.

    Returns:
        bool: True if the object was updated
    """
    if has_finalizer(csi):
        return False

    body = csi.to_body()
    body["metadata"]["finalizers"] = list(csi.metadata.finalizers) + [FINALIZER]
    updated = client.replace_csi(body)
    csi.metadata = CRDMetadata.model_validate(updated["metadata"])
    logger.info(f"Added finalizer to {csi.namespace}/{csi.name}")
    return True


def clear_finalizer(client, csi: CSI) -> None:
    """Remove exactly our finalizer, keeping any others."""
    if not has_finalizer(csi):
        return

    body = csi.to_body()
    body["metadata"]["finalizers"] = [f for f in csi.metadata.finalizers if f != FINALIZER]
    try:
        updated = client.replace_csi(body)
    except ApiException as e:
        if is_not_found(e):
            return
        raise ReconcileError(
            f"clear finalizer of {csi.namespace}/{csi.name} failed: {e.reason or e}"
        ) from e

    csi.metadata = CRDMetadata.model_validate(updated["metadata"])
    logger.info(f"Finalizer of {csi.namespace}/{csi.name} cleared")
