"""StorageClasses declared by a CSI object.

StorageClass parameters are immutable, so a changed class is deleted and
created again.
"""

import copy
import logging

from .base import ChildManager

logger = logging.getLogger(__name__)

RECLAIM_POLICY_DELETE = "Delete"
VOLUME_BINDING_IMMEDIATE = "Immediate"


class StorageClassManager(ChildManager):
    kind = "StorageClass"
    api_version = "storage.k8s.io/v1"
    payload_fields = (
        "provisioner",
        "parameters",
        "reclaimPolicy",
        "volumeBindingMode",
        "allowVolumeExpansion",
        "mountOptions",
        "allowedTopologies",
    )
    payload_defaults = {
        "reclaimPolicy": RECLAIM_POLICY_DELETE,
        "volumeBindingMode": VOLUME_BINDING_IMMEDIATE,
    }
    recreate_on_change = True

    def desired(self, csi, spec):
        result = []
        for storage_class in spec.storageClasses:
            metadata = storage_class.get("metadata") or {}
            obj = {
                "apiVersion": self.api_version,
                "kind": self.kind,
                "metadata": {"name": metadata.get("name", "")},
            }
            for field in ("labels", "annotations"):
                if metadata.get(field):
                    obj["metadata"][field] = dict(metadata[field])
            for field in self.payload_fields:
                if storage_class.get(field) is not None:
                    obj[field] = copy.deepcopy(storage_class[field])
            # Always provisioned by the driver itself
            if obj.get("provisioner") not in (None, spec.driverName):
                logger.warning(
                    f"StorageClass {obj['metadata']['name']} of {csi.namespace}/{csi.name} "
                    f"declares provisioner {obj['provisioner']}, using {spec.driverName}"
                )
            obj["provisioner"] = spec.driverName
            obj.setdefault("reclaimPolicy", RECLAIM_POLICY_DELETE)
            result.append(obj)
        return result
