"""Process-level configuration for the CSI operator."""

import logging
import os
from typing import List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_KUBELET_ROOT_DIR = "/var/lib/kubelet"
DEFAULT_REGISTRY_DOMAIN = "ccr.ccs.tencentyun.com/tke3/library"
DEFAULT_FILESYSTEMS = "xfs,ext4"
DEFAULT_CEPH_ADMIN_ID = "admin"


class CephConfig(BaseModel):
    """Default connection information of a Ceph cluster."""

    monitors: str = Field(default="", description="Monitor addresses of Ceph cluster")
    admin_id: str = Field(
        default=DEFAULT_CEPH_ADMIN_ID, description="ID of Ceph admin user"
    )
    admin_key: str = Field(default="", description="Key of Ceph admin user")


class TencentCloudConfig(BaseModel):
    """Default API credentials of Tencent Cloud, base64 encoded."""

    secret_id: str = Field(default="", description="API Secret ID of Tencent Cloud")
    secret_key: str = Field(default="", description="API Secret Key of Tencent Cloud")


class OperatorConfig(BaseModel):
    """Global configuration handed to the enhancers and workload managers.

    Read once at startup; the reconciliation code never looks at the
    environment itself.
    """

    kubelet_root_dir: str = Field(
        default=DEFAULT_KUBELET_ROOT_DIR, description="Path to Kubelet's root dir"
    )
    registry_domain: str = Field(
        default=DEFAULT_REGISTRY_DOMAIN, description="Domain of the image registry"
    )
    filesystems: str = Field(
        default=DEFAULT_FILESYSTEMS,
        description="Supported file systems for well known block volumes",
    )
    need_default_sc: bool = Field(
        default=True,
        description="Whether well known drivers get default storage classes",
    )
    ceph: CephConfig = Field(default_factory=CephConfig)
    tencent_cloud: TencentCloudConfig = Field(default_factory=TencentCloudConfig)

    class Config:
        frozen = True

    @property
    def filesystem_list(self) -> List[str]:
        return [fs.strip() for fs in self.filesystems.split(",") if fs.strip()]


def get_env_or_default(key: str, default: str) -> str:
    value = os.getenv(key, "")
    return value if value else default


def get_env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value.lower() == "true"


def load_config(
    kubelet_root_dir: Optional[str] = None,
    registry_domain: Optional[str] = None,
    filesystems: Optional[str] = None,
    need_default_sc: Optional[bool] = None,
    ceph_monitors: Optional[str] = None,
    ceph_admin_id: Optional[str] = None,
    ceph_admin_key: Optional[str] = None,
    tencent_cloud_secret_id: Optional[str] = None,
    tencent_cloud_secret_key: Optional[str] = None,
) -> OperatorConfig:
    """Build the operator configuration.

    Explicit arguments (CLI options) win over environment variables, which
    win over the built-in defaults.
    """

    def pick(value, env_key, default):
        if value is not None:
            return value
        return get_env_or_default(env_key, default)

    config = OperatorConfig(
        kubelet_root_dir=pick(
            kubelet_root_dir, "CSI_KUBELET_ROOT_DIR", DEFAULT_KUBELET_ROOT_DIR
        ),
        registry_domain=pick(
            registry_domain, "CSI_REGISTRY_DOMAIN", DEFAULT_REGISTRY_DOMAIN
        ),
        filesystems=pick(filesystems, "CSI_FILESYSTEMS", DEFAULT_FILESYSTEMS),
        need_default_sc=(
            need_default_sc
            if need_default_sc is not None
            else get_env_bool("CSI_NEED_DEFAULT_SC", True)
        ),
        ceph=CephConfig(
            monitors=pick(ceph_monitors, "CEPH_MONITORS", ""),
            admin_id=pick(ceph_admin_id, "CEPH_ADMIN_ID", DEFAULT_CEPH_ADMIN_ID),
            admin_key=pick(ceph_admin_key, "CEPH_ADMIN_KEY", ""),
        ),
        tencent_cloud=TencentCloudConfig(
            secret_id=pick(tencent_cloud_secret_id, "TENCENT_CLOUD_SECRET_ID", ""),
            secret_key=pick(tencent_cloud_secret_key, "TENCENT_CLOUD_SECRET_KEY", ""),
        ),
    )

    logger.debug(
        f"Loaded config: kubelet_root_dir={config.kubelet_root_dir}, "
        f"registry_domain={config.registry_domain}, filesystems={config.filesystems}, "
        f"need_default_sc={config.need_default_sc}"
    )
    return config
