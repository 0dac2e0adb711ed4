"""ConfigMaps declared by a CSI object."""

import copy

from .base import ChildManager, user_metadata


class ConfigMapManager(ChildManager):
    kind = "ConfigMap"
    payload_fields = ("data", "binaryData")
    list_all_namespaces = True

    def desired(self, csi, spec):
        result = []
        for config_map in spec.configMaps:
            obj = {"apiVersion": "v1", "kind": self.kind, "metadata": user_metadata(csi, config_map)}
            for field in self.payload_fields:
                if config_map.get(field):
                    obj[field] = copy.deepcopy(config_map[field])
            result.append(obj)
        return result
