"""Enhancer for the Ceph RBD and CephFS drivers."""

import base64
import json
import logging
from typing import Any, Dict, List, NamedTuple, Optional

import yaml
from pydantic import BaseModel, ValidationError

from csi_operator.controller.errors import CredentialError
from csi_operator.models.csi import (
    CSI,
    CSI_DRIVER_CEPH_FS,
    CSI_DRIVER_CEPH_RBD,
    CSI_VERSION_V0,
    CSI_VERSION_V1,
    CSIDriverTemplate,
    CSISpec,
)
from .base import EnhancerBase, EnhancerRegistry, LivenessProbePorts
from .versions import lookup_versions

logger = logging.getLogger(__name__)

MONITORS_KEY = "monitors"
ADMIN_ID_KEY = "adminID"
ADMIN_KEY_KEY = "adminKey"
POOLS_KEY = "pools"
CONFIGS_KEY = "configs"

DEFAULT_FS_NAME = "cephfs"

CEPH_RBD_LIVENESS_PROBE_PORTS = LivenessProbePorts(node="9809", controller="9808")
CEPH_FS_LIVENESS_PROBE_PORTS = LivenessProbePorts(node="9819", controller="9818")


class SecretKeys(NamedTuple):
    name: str
    namespace: str


def _secret_keys(prefix: str) -> Dict[str, SecretKeys]:
    """Storage class parameter keys naming a secret, per CSI version."""
    legacy = "csi" + "".join(part.capitalize() for part in prefix.split("-"))
    return {
        CSI_VERSION_V1: SecretKeys(
            f"csi.storage.k8s.io/{prefix}-secret-name",
            f"csi.storage.k8s.io/{prefix}-secret-namespace",
        ),
        CSI_VERSION_V0: SecretKeys(f"{legacy}SecretName", f"{legacy}SecretNamespace"),
    }


CONTROLLER_EXPAND_SECRET_KEYS = _secret_keys("controller-expand")
CONTROLLER_PUBLISH_SECRET_KEYS = _secret_keys("controller-publish")
PROVISIONER_SECRET_KEYS = _secret_keys("provisioner")
NODE_SECRET_KEYS = {
    CSI_DRIVER_CEPH_RBD: _secret_keys("node-publish"),
    CSI_DRIVER_CEPH_FS: _secret_keys("node-stage"),
}

# Shared by both drivers; {driver_name}, {container_name}, {image} filled in
CEPH_DRIVER_TEMPLATE = """
spec:
  hostNetwork: true
  hostPID: true
  dnsPolicy: ClusterFirstWithHostNet
  tolerations:
    - key: node-role.kubernetes.io/master
      effect: NoSchedule
  containers:
    - name: {container_name}
      image: {image}
      imagePullPolicy: Always
      securityContext:
        privileged: true
        capabilities:
          add: ["SYS_ADMIN"]
        allowPrivilegeEscalation: true
      args:
        - --nodeid=$(NODE_ID)
        - --endpoint=$(CSI_ENDPOINT)
        - --v=5
        - --drivername={driver_name}
      env:
        - name: NODE_ID
          valueFrom:
            fieldRef:
              fieldPath: spec.nodeName
        - name: POD_NAMESPACE
          valueFrom:
            fieldRef:
              fieldPath: metadata.namespace
      volumeMounts:
        - name: host-dev
          mountPath: /dev
        - name: host-sys
          mountPath: /sys
        - name: lib-modules
          mountPath: /lib/modules
          readOnly: true
  volumes:
    - name: host-dev
      hostPath:
        path: /dev
    - name: host-sys
      hostPath:
        path: /sys
    - name: lib-modules
      hostPath:
        path: /lib/modules
"""


class CephInfo(NamedTuple):
    monitors: str
    admin_id: str
    admin_key: str
    pools: List[str]


class CephClusterConfig(BaseModel):
    """One entry of the CephFS `configs` parameter."""

    monitors: str = ""
    adminID: str = ""
    adminKey: str = ""
    pools: str = ""
    clusterID: str = ""
    fsName: str = ""
    subvolumeGroup: str = ""
    userID: str = ""
    userKey: str = ""


def secret_name(spec: CSISpec) -> str:
    return f"{spec.driverName}-secret"


def config_map_name(spec: CSISpec) -> str:
    return f"{spec.driverName}-config"


def encode_data(data: Dict[str, str]) -> Dict[str, str]:
    """Base64 encode secret values, as stored in Secret.data."""
    return {key: base64.b64encode(value.encode()).decode() for key, value in data.items()}


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@EnhancerRegistry.register(CSI_DRIVER_CEPH_RBD, CSI_DRIVER_CEPH_FS)
class CephEnhancer(EnhancerBase):
    """Enhances csi-rbd and csi-cephfs.

    Secrets and storage classes are only generated when monitors, admin
    credentials and pools are known, from the CSI parameters or the
    operator configuration.
    """

    def enhance(self, csi: CSI, spec: CSISpec) -> CSISpec:
        versions = lookup_versions(spec.driverName, spec.version)
        ports = (
            CEPH_RBD_LIVENESS_PROBE_PORTS
            if spec.driverName == CSI_DRIVER_CEPH_RBD
            else CEPH_FS_LIVENESS_PROBE_PORTS
        )
        self.expand_components(spec, versions, ports)

        image = self.image(versions.driver)
        if spec.driverName == CSI_DRIVER_CEPH_RBD:
            template = self.rbd_template(spec, image)
        else:
            template = self.cephfs_template(spec, image)
        spec.driverTemplate = CSIDriverTemplate(template=template)

        if spec.driverName == CSI_DRIVER_CEPH_FS and spec.version != CSI_VERSION_V0:
            configs = self.ceph_configs(spec)
            if configs is not None:
                self.multi_cluster_objects(csi, spec, configs)
            return spec

        info = self.ceph_info(spec)
        if info is not None:
            self.cluster_objects(csi, spec, info)
        else:
            logger.info(f"No Ceph credentials for {csi.namespace}/{csi.name}, skip secrets")
        return spec

    def _base_template(self, spec: CSISpec, container_name: str, image: str) -> Dict[str, Any]:
        return yaml.safe_load(
            CEPH_DRIVER_TEMPLATE.format(
                container_name=container_name, image=image, driver_name=spec.driverName
            )
        )

    def rbd_template(self, spec: CSISpec, image: str) -> Dict[str, Any]:
        template = self._base_template(spec, "csi-rbd", image)
        pod_spec = template["spec"]
        container = pod_spec["containers"][0]
        container["args"] += ["--containerized=true", "--metadatastorage=k8s_configmap"]
        container["env"].append({"name": "HOST_ROOTFS", "value": "/rootfs"})
        container["volumeMounts"].append({"name": "host-rootfs", "mountPath": "/rootfs"})
        pod_spec["volumes"].append({"name": "host-rootfs", "hostPath": {"path": "/"}})
        return template

    def cephfs_template(self, spec: CSISpec, image: str) -> Dict[str, Any]:
        template = self._base_template(spec, "csi-cephfs", image)
        pod_spec = template["spec"]
        container = pod_spec["containers"][0]
        if spec.version != CSI_VERSION_V1:
            container["args"].append("--metadatastorage=k8s_configmap")
            return template

        container["args"].append("--type=cephfs")
        container["env"].append(
            {"name": "POD_IP", "valueFrom": {"fieldRef": {"fieldPath": "status.podIP"}}}
        )
        container["volumeMounts"] += [
            {"name": "ceph-csi-config", "mountPath": "/etc/ceph-csi-config/"},
            {"name": "keys-tmp-dir", "mountPath": "/tmp/csi/keys"},
        ]
        pod_spec["volumes"] += [
            {"name": "ceph-csi-config", "configMap": {"name": config_map_name(spec)}},
            {"name": "keys-tmp-dir", "emptyDir": {"medium": "Memory"}},
        ]
        return template

    def ceph_info(self, spec: CSISpec) -> Optional[CephInfo]:
        params = spec.parameters
        ceph = self.config.ceph
        monitors = params.get(MONITORS_KEY) or ceph.monitors
        admin_id = params.get(ADMIN_ID_KEY) or ceph.admin_id
        admin_key = params.get(ADMIN_KEY_KEY) or ceph.admin_key
        pools = _split(params.get(POOLS_KEY, ""))
        if monitors and admin_id and admin_key and pools:
            return CephInfo(monitors, admin_id, admin_key, pools)
        return None

    def ceph_configs(self, spec: CSISpec) -> Optional[List[CephClusterConfig]]:
        body = spec.parameters.get(CONFIGS_KEY)
        if not body:
            logger.info(f"No {CONFIGS_KEY} parameter for {spec.driverName}")
            return None
        try:
            raw = json.loads(body)
            if not isinstance(raw, list):
                raise ValueError("must be a JSON list")
            return [CephClusterConfig.model_validate(item) for item in raw]
        except (ValueError, ValidationError) as e:
            raise CredentialError(f"parse {CONFIGS_KEY} parameter failed: {e}") from e

    def _secret_data(self, spec: CSISpec, admin_id: str, admin_key: str) -> Dict[str, str]:
        if spec.driverName == CSI_DRIVER_CEPH_RBD:
            return {admin_id: admin_key}
        return {"adminKey": admin_key, "adminID": admin_id}

    def _driver_parameters(self, spec: CSISpec) -> Dict[str, str]:
        if spec.driverName == CSI_DRIVER_CEPH_RBD:
            return {"imageFormat": "2"}
        return {"provisionVolume": "true"}

    def _with_secret(self, spec, parameters, key_sets, name, namespace):
        for keys in key_sets:
            parameters[keys[spec.version].name] = name
            parameters[keys[spec.version].namespace] = namespace
        return parameters

    def cluster_objects(self, csi: CSI, spec: CSISpec, info: CephInfo) -> None:
        """Single-cluster secret and one storage class per pool."""
        name = secret_name(spec)
        spec.secrets = [
            {
                "metadata": {"name": name, "namespace": csi.namespace},
                "data": encode_data(self._secret_data(spec, info.admin_id, info.admin_key)),
            }
        ]

        if not self.config.need_default_sc:
            spec.storageClasses = []
            return

        storage_classes = []
        for pool in info.pools:
            parameters = {
                "monitors": info.monitors,
                "pool": pool,
                "adminid": info.admin_id,
                "userid": info.admin_id,
            }
            self._with_secret(
                spec,
                parameters,
                [PROVISIONER_SECRET_KEYS, NODE_SECRET_KEYS[spec.driverName]],
                name,
                csi.namespace,
            )
            parameters.update(self._driver_parameters(spec))
            storage_classes.append(
                {
                    "metadata": {"name": f"{spec.driverName}-{pool}"},
                    "provisioner": spec.driverName,
                    "reclaimPolicy": "Delete",
                    "parameters": parameters,
                }
            )
        if len(storage_classes) == 1:
            storage_classes[0]["metadata"]["name"] = spec.driverName
        spec.storageClasses = self.with_filesystems(spec, storage_classes)

    def multi_cluster_objects(
        self, csi: CSI, spec: CSISpec, configs: List[CephClusterConfig]
    ) -> None:
        """Per-cluster secrets and storage classes plus the driver config map."""
        secrets = []
        storage_classes = []
        driver_configs = []

        for conf in configs:
            name = f"{secret_name(spec)}-{conf.clusterID}"
            data = self._secret_data(spec, conf.adminID, conf.adminKey)
            if spec.driverName == CSI_DRIVER_CEPH_FS and conf.userID and conf.userKey:
                data.update(userID=conf.userID, userKey=conf.userKey)
            secrets.append(
                {"metadata": {"name": name, "namespace": csi.namespace}, "data": encode_data(data)}
            )

            for pool in _split(conf.pools):
                parameters = {
                    "pool": pool,
                    "adminid": conf.adminID,
                    "userid": conf.adminID,
                    "clusterID": conf.clusterID,
                    "fsName": conf.fsName or DEFAULT_FS_NAME,
                }
                self._with_secret(
                    spec,
                    parameters,
                    [
                        CONTROLLER_PUBLISH_SECRET_KEYS,
                        CONTROLLER_EXPAND_SECRET_KEYS,
                        PROVISIONER_SECRET_KEYS,
                        NODE_SECRET_KEYS[spec.driverName],
                    ],
                    name,
                    csi.namespace,
                )
                parameters.update(self._driver_parameters(spec))
                storage_classes.append(
                    {
                        "metadata": {"name": f"{spec.driverName}-{conf.clusterID}-{pool}"},
                        "provisioner": spec.driverName,
                        "reclaimPolicy": "Delete",
                        "allowVolumeExpansion": True,
                        "parameters": parameters,
                    }
                )

            driver_config = {"clusterID": conf.clusterID, "monitors": _split(conf.monitors)}
            if conf.subvolumeGroup:
                driver_config["cephFS"] = {"subvolumeGroup": conf.subvolumeGroup}
            driver_configs.append(driver_config)

        if len(storage_classes) == 1:
            storage_classes[0]["metadata"]["name"] = spec.driverName

        spec.secrets = secrets
        spec.storageClasses = (
            self.with_filesystems(spec, storage_classes) if self.config.need_default_sc else []
        )
        spec.configMaps = [
            {
                "metadata": {"name": config_map_name(spec), "namespace": csi.namespace},
                "data": {"config.json": json.dumps(driver_configs, separators=(",", ":"))},
            }
        ]

    def with_filesystems(
        self, spec: CSISpec, storage_classes: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Block volumes get one storage class per supported file system."""
        if spec.driverName != CSI_DRIVER_CEPH_RBD:
            return storage_classes
        result = []
        for storage_class in storage_classes:
            for fs in self.config.filesystem_list:
                item = {
                    **storage_class,
                    "metadata": {"name": f"{storage_class['metadata']['name']}-{fs}"},
                    "parameters": dict(storage_class["parameters"], fstype=fs),
                }
                result.append(item)
        return result
