"""Image versions of every CSI component, per well known driver and version."""

from types import MappingProxyType
from typing import Mapping, Optional

from pydantic import BaseModel

from csi_operator.controller.errors import UnknownDriverError, UnknownVersionError
from csi_operator.models.csi import (
    CSI_DRIVER_CEPH_FS,
    CSI_DRIVER_CEPH_RBD,
    CSI_DRIVER_TENCENT_CBS,
    CSI_VERSION_V0,
    CSI_VERSION_V1,
    CSI_VERSION_V1P1,
)


class ComponentVersions(BaseModel):
    """Image name and tag of each component, relative to the registry domain."""

    provisioner: Optional[str] = None
    attacher: Optional[str] = None
    resizer: Optional[str] = None
    snapshotter: Optional[str] = None
    livenessProbe: Optional[str] = None
    nodeRegistrar: Optional[str] = None
    clusterRegistrar: Optional[str] = None
    driver: str

    class Config:
        frozen = True
        extra = "forbid"


_TENCENT_CBS_V1 = dict(
    provisioner="csi-provisioner:v1.6.0",
    attacher="csi-attacher:v1.1.0",
    snapshotter="csi-snapshotter:v1.2.2",
    nodeRegistrar="csi-node-driver-registrar:v1.1.0",
    resizer="csi-resizer:v0.5.0",
)

VERSION_TABLE: Mapping[str, Mapping[str, ComponentVersions]] = MappingProxyType(
    {
        CSI_DRIVER_CEPH_RBD: MappingProxyType(
            {
                CSI_VERSION_V0: ComponentVersions(
                    provisioner="csi-provisioner:v0.4.2",
                    attacher="csi-attacher:v0.4.2",
                    snapshotter="csi-snapshotter:v0.4.1",
                    livenessProbe="livenessprobe:v0.4.1",
                    nodeRegistrar="driver-registrar:v0.3.0",
                    driver="rbdplugin:v0.3.0",
                ),
                CSI_VERSION_V1: ComponentVersions(
                    provisioner="csi-provisioner:v1.0.1",
                    attacher="csi-attacher:v1.1.0",
                    snapshotter="csi-snapshotter:v1.1.0",
                    livenessProbe="livenessprobe:v1.1.0",
                    nodeRegistrar="csi-node-driver-registrar:v1.1.0",
                    driver="rbdplugin:v1.0.0",
                ),
            }
        ),
        CSI_DRIVER_CEPH_FS: MappingProxyType(
            {
                CSI_VERSION_V0: ComponentVersions(
                    provisioner="csi-provisioner:v0.4.2",
                    attacher="csi-attacher:v0.4.2",
                    livenessProbe="livenessprobe:v0.4.1",
                    nodeRegistrar="driver-registrar:v0.3.0",
                    driver="cephfsplugin:v0.3.0",
                ),
                CSI_VERSION_V1: ComponentVersions(
                    provisioner="csi-provisioner:v1.0.1",
                    attacher="csi-attacher:v1.1.0",
                    livenessProbe="livenessprobe:v1.1.0",
                    nodeRegistrar="csi-node-driver-registrar:v1.1.0",
                    driver="cephfsplugin:v1.0.0",
                ),
            }
        ),
        CSI_DRIVER_TENCENT_CBS: MappingProxyType(
            {
                CSI_VERSION_V0: ComponentVersions(
                    provisioner="csi-provisioner:v0.4.2",
                    attacher="csi-attacher:v0.4.2",
                    nodeRegistrar="driver-registrar:v0.3.0",
                    driver="csi-tencentcloud-cbs:v0.2.1",
                ),
                CSI_VERSION_V1: ComponentVersions(
                    driver="csi-tencentcloud-cbs:v1.2.0", **_TENCENT_CBS_V1
                ),
                CSI_VERSION_V1P1: ComponentVersions(
                    driver="csi-tencentcloud-cbs:f9b4997", **_TENCENT_CBS_V1
                ),
            }
        ),
    }
)


def lookup_versions(driver_name: str, version: str) -> ComponentVersions:
    """Resolve the component versions of a well known driver.

    Raises:
        UnknownDriverError: the driver has no entry
        UnknownVersionError: the driver has no entry for the version
    """
    versions = VERSION_TABLE.get(driver_name)
    if versions is None:
        raise UnknownDriverError(f"unknown CSI type {driver_name}")
    result = versions.get(version)
    if result is None:
        raise UnknownVersionError(f"unknown CSI version {version}")
    return result


def get_image(domain: str, name: str) -> str:
    """Join the registry domain and an image name:tag."""
    return f"{domain.rstrip('/')}/{name.lstrip('/')}"
