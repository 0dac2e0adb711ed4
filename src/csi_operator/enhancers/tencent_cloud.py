"""Enhancer for the Tencent Cloud CBS driver."""

import base64
import logging
from typing import Any, Dict, Optional, Tuple

import yaml

from csi_operator.controller.errors import CredentialError
from csi_operator.models.csi import (
    CSI,
    CSI_DRIVER_TENCENT_CBS,
    CSI_VERSION_V0,
    CSIDriverTemplate,
    CSISpec,
)
from .base import EnhancerBase, EnhancerRegistry, LivenessProbePorts
from .versions import lookup_versions

logger = logging.getLogger(__name__)

SECRET_ID_KEY = "secretID"
SECRET_KEY_KEY = "secretKey"

# Environment variables read by the CBS plugin
TENCENT_CLOUD_API_SECRET_ID = "TENCENTCLOUD_CBS_API_SECRET_ID"
TENCENT_CLOUD_API_SECRET_KEY = "TENCENTCLOUD_CBS_API_SECRET_KEY"

TENCENT_CBS_LIVENESS_PROBE_PORTS = LivenessProbePorts(node="9829", controller="9828")

LEGACY_COMMAND = "/bin/csi-tencentcloud"
COMMAND = "/csi-tencentcloud-cbs"

CBS_DRIVER_TEMPLATE = """
spec:
  hostNetwork: true
  hostPID: true
  hostIPC: true
  dnsPolicy: ClusterFirstWithHostNet
  tolerations:
    - key: node-role.kubernetes.io/master
      effect: NoSchedule
  containers:
    - name: com-tencent-cloud-csi-cbs
      image: {image}
      imagePullPolicy: Always
      securityContext:
        privileged: true
        capabilities:
          add: ["SYS_ADMIN"]
        allowPrivilegeEscalation: true
      command: ["{command}"]
      args:
        - --v=5
        - --logtostderr=true
        - --endpoint=$(CSI_ENDPOINT)
      env:
        - name: {secret_id_env}
          valueFrom:
            secretKeyRef:
              name: {secret_name}
              key: {secret_id_env}
        - name: {secret_key_env}
          valueFrom:
            secretKeyRef:
              name: {secret_name}
              key: {secret_key_env}
      volumeMounts:
        - name: device-dir
          mountPath: /dev
  volumes:
    - name: device-dir
      hostPath:
        path: /dev
"""

STORAGE_CLASS_PARAMETERS = {
    "cbs-basic-prepaid": {
        "diskType": "CLOUD_BASIC",
        "diskChargeType": "PREPAID",
        "diskChargeTypePrepaidPeriod": "2",
        "diskChargePrepaidRenewFlag": "NOTIFY_AND_AUTO_RENEW",
    },
    "cbs-premium": {"diskType": "CLOUD_PREMIUM"},
    "cbs-ssd": {"diskType": "CLOUD_SSD"},
}


def secret_name(spec: CSISpec) -> str:
    return f"{spec.driverName}-secret"


def decode_credential(name: str, value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except ValueError as e:
        raise CredentialError(f"{name} decoding failed: {e}") from e


@EnhancerRegistry.register(CSI_DRIVER_TENCENT_CBS)
class TencentCloudEnhancer(EnhancerBase):
    """Enhances com.tencent.cloud.csi.cbs.

    The API credentials are given base64 encoded, either as the secretID and
    secretKey parameters or through the operator configuration.
    """

    def enhance(self, csi: CSI, spec: CSISpec) -> CSISpec:
        versions = lookup_versions(spec.driverName, spec.version)
        self.expand_components(spec, versions, TENCENT_CBS_LIVENESS_PROBE_PORTS)

        command = LEGACY_COMMAND if spec.version == CSI_VERSION_V0 else COMMAND
        spec.driverTemplate = CSIDriverTemplate(
            template=self.driver_template(spec, self.image(versions.driver), command)
        )

        credentials = self.credentials(spec)
        if credentials is None:
            logger.info(f"No Tencent Cloud credentials for {csi.namespace}/{csi.name}")
            return spec

        secret_id, secret_key = credentials
        spec.secrets = [
            {
                "metadata": {"name": secret_name(spec), "namespace": csi.namespace},
                "data": {
                    TENCENT_CLOUD_API_SECRET_ID: base64.b64encode(
                        decode_credential(SECRET_ID_KEY, secret_id)
                    ).decode(),
                    TENCENT_CLOUD_API_SECRET_KEY: base64.b64encode(
                        decode_credential(SECRET_KEY_KEY, secret_key)
                    ).decode(),
                },
            }
        ]
        if self.config.need_default_sc:
            spec.storageClasses = [
                {
                    "metadata": {"name": name},
                    "provisioner": spec.driverName,
                    "reclaimPolicy": "Delete",
                    "parameters": dict(parameters),
                }
                for name, parameters in STORAGE_CLASS_PARAMETERS.items()
            ]
        return spec

    def driver_template(self, spec: CSISpec, image: str, command: str) -> Dict[str, Any]:
        return yaml.safe_load(
            CBS_DRIVER_TEMPLATE.format(
                image=image,
                command=command,
                secret_name=secret_name(spec),
                secret_id_env=TENCENT_CLOUD_API_SECRET_ID,
                secret_key_env=TENCENT_CLOUD_API_SECRET_KEY,
            )
        )

    def credentials(self, spec: CSISpec) -> Optional[Tuple[str, str]]:
        tencent_cloud = self.config.tencent_cloud
        secret_id = spec.parameters.get(SECRET_ID_KEY) or tencent_cloud.secret_id
        secret_key = spec.parameters.get(SECRET_KEY_KEY) or tencent_cloud.secret_key
        if not secret_id and not secret_key:
            return None
        return secret_id, secret_key
