import base64
import json

import pytest

from csi_operator.config import OperatorConfig, TencentCloudConfig
from csi_operator.controller.errors import (
    CredentialError,
    UnknownDriverError,
    UnknownVersionError,
)
from csi_operator.crd.base import CRDMetadata
from csi_operator.enhancers import EnhancerRegistry
from csi_operator.enhancers.base import COMPONENT_ROLES, check_component_roles
from csi_operator.enhancers.versions import VERSION_TABLE, get_image, lookup_versions
from csi_operator.models.csi import CSI, CSISpec


def make_csi(name="example", namespace="kube-system"):
    return CSI(metadata=CRDMetadata(name=name, namespace=namespace, uid="uid-1", generation=1))


def enhance(spec, config=None):
    registry = EnhancerRegistry(config or OperatorConfig())
    return registry.enhance(make_csi(), CSISpec.model_validate(spec))


RBD_PARAMETERS = {
    "monitors": "10.0.0.1:6789,10.0.0.2:6789",
    "adminID": "admin",
    "adminKey": "AQAkey==",
    "pools": "rbd,fast",
}


def test_role_table_matches_models():
    check_component_roles()
    assert {role.version_field for role in COMPONENT_ROLES} == {
        "provisioner",
        "attacher",
        "resizer",
        "snapshotter",
        "livenessProbe",
        "nodeRegistrar",
        "clusterRegistrar",
    }


@pytest.mark.parametrize(
    "driver, version",
    [(driver, version) for driver, versions in VERSION_TABLE.items() for version in versions],
)
def test_every_table_entry_resolves(driver, version):
    spec = enhance(
        {
            "driverName": driver,
            "version": version,
            "node": {"livenessProbe": {}},
            "controller": {"provisioner": {}, "attacher": {}, "livenessProbe": {}},
        }
    )

    assert spec.driverTemplate is not None
    assert len(spec.driverTemplate.template["spec"]["containers"]) == 1
    assert spec.node.nodeRegistrar.image
    assert lookup_versions(driver, version).driver in (
        spec.driverTemplate.template["spec"]["containers"][0]["image"]
    )


def test_unknown_driver():
    with pytest.raises(UnknownDriverError):
        enhance({"driverName": "com.example.unknown", "version": "v1"})


def test_unknown_version():
    with pytest.raises(UnknownVersionError):
        enhance({"driverName": "csi-cephfs", "version": "v1p1"})


def test_enhancing_twice_is_stable():
    first = enhance(
        {
            "driverName": "csi-rbd",
            "version": "v1",
            "parameters": RBD_PARAMETERS,
            "node": {"livenessProbe": {}},
            "controller": {"provisioner": {}, "attacher": {}, "snapshotter": {}},
        }
    )
    second = enhance(first.to_body())

    assert second.model_dump() == first.model_dump()


def test_input_spec_is_not_modified():
    spec = CSISpec.model_validate({"driverName": "csi-rbd", "version": "v1"})
    before = spec.model_dump()

    EnhancerRegistry(OperatorConfig()).enhance(make_csi(), spec)

    assert spec.model_dump() == before


def test_only_declared_components_are_expanded():
    spec = enhance({"driverName": "csi-rbd", "version": "v1", "controller": {"attacher": {}}})

    assert spec.controller.attacher is not None
    assert spec.controller.provisioner is None
    assert spec.controller.snapshotter is None
    assert spec.node.livenessProbe is None
    assert spec.node.nodeRegistrar is not None
    assert spec.controller.replicas == 1


def test_components_missing_from_the_table_are_dropped():
    spec = enhance({"driverName": "csi-rbd", "version": "v1", "controller": {"resizer": {}}})

    assert spec.controller.resizer is None
    assert spec.has_controller() is False
    assert spec.controller.replicas == 0


def test_critical_components_get_resource_limits():
    spec = enhance(
        {
            "driverName": "csi-rbd",
            "version": "v1",
            "node": {"livenessProbe": {"resources": {"limits": {"cpu": "1"}}}},
            "controller": {
                "provisioner": {"resources": {"limits": {"cpu": "2"}}},
                "replicas": 3,
            },
        }
    )

    assert spec.controller.provisioner.resources == {"limits": {"cpu": "100m", "memory": "100Mi"}}
    assert spec.node.livenessProbe.resources == {"limits": {"cpu": "1"}}
    assert spec.controller.replicas == 3


def test_images_use_the_registry_domain():
    config = OperatorConfig(registry_domain="registry.example.com/csi/")
    spec = enhance({"driverName": "csi-rbd", "version": "v0"}, config)

    assert spec.node.nodeRegistrar.image == "registry.example.com/csi/driver-registrar:v0.3.0"
    assert get_image("a/", "/b:v1") == "a/b:v1"


def test_liveness_probe_ports_per_backend():
    spec = enhance(
        {
            "driverName": "csi-cephfs",
            "version": "v1",
            "node": {"livenessProbe": {}},
            "controller": {"livenessProbe": {}},
        }
    )

    assert spec.node.livenessProbe.parameters == {"livenessProbePort": "9819"}
    assert spec.controller.livenessProbe.parameters == {"livenessProbePort": "9818"}


class TestCeph:
    def test_rbd_v1(self):
        spec = enhance({"driverName": "csi-rbd", "version": "v1", "parameters": RBD_PARAMETERS})

        container = spec.driverTemplate.template["spec"]["containers"][0]
        assert container["securityContext"]["privileged"] is True
        assert container["securityContext"]["capabilities"]["add"] == ["SYS_ADMIN"]
        assert "--drivername=csi-rbd" in container["args"]

        assert len(spec.secrets) == 1
        secret = spec.secrets[0]
        assert secret["metadata"] == {"name": "csi-rbd-secret", "namespace": "kube-system"}
        assert base64.b64decode(secret["data"]["admin"]).decode() == "AQAkey=="

        names = [sc["metadata"]["name"] for sc in spec.storageClasses]
        assert names == ["csi-rbd-rbd-xfs", "csi-rbd-rbd-ext4", "csi-rbd-fast-xfs", "csi-rbd-fast-ext4"]
        parameters = spec.storageClasses[0]["parameters"]
        assert parameters["pool"] == "rbd"
        assert parameters["fstype"] == "xfs"
        assert parameters["csi.storage.k8s.io/provisioner-secret-name"] == "csi-rbd-secret"
        assert parameters["csi.storage.k8s.io/node-publish-secret-namespace"] == "kube-system"

    def test_rbd_v0_uses_legacy_secret_keys(self):
        spec = enhance(
            {"driverName": "csi-rbd", "version": "v0", "parameters": dict(RBD_PARAMETERS, pools="rbd")}
        )

        parameters = spec.storageClasses[0]["parameters"]
        assert parameters["csiProvisionerSecretName"] == "csi-rbd-secret"
        assert parameters["csiNodePublishSecretNamespace"] == "kube-system"

    def test_credentials_from_configuration(self):
        config = OperatorConfig.model_validate(
            {"ceph": {"monitors": "10.0.0.1:6789", "admin_key": "AQAkey=="}}
        )
        spec = enhance(
            {"driverName": "csi-cephfs", "version": "v0", "parameters": {"pools": "data"}}, config
        )

        assert [sc["metadata"]["name"] for sc in spec.storageClasses] == ["csi-cephfs"]
        assert spec.storageClasses[0]["parameters"]["monitors"] == "10.0.0.1:6789"

    def test_missing_credentials_leave_children_untouched(self):
        spec = enhance(
            {
                "driverName": "csi-rbd",
                "version": "v1",
                "secrets": [{"metadata": {"name": "mine"}}],
            }
        )

        assert spec.secrets == [{"metadata": {"name": "mine"}}]
        assert spec.storageClasses == []

    def test_no_default_storage_classes(self):
        config = OperatorConfig(need_default_sc=False)
        spec = enhance(
            {"driverName": "csi-rbd", "version": "v1", "parameters": RBD_PARAMETERS}, config
        )

        assert len(spec.secrets) == 1
        assert spec.storageClasses == []

    def test_cephfs_v1_multi_cluster(self):
        configs = [
            {
                "clusterID": "c1",
                "monitors": "10.0.0.1:6789,10.0.0.2:6789",
                "adminID": "admin",
                "adminKey": "key1",
                "pools": "data1,data2",
                "subvolumeGroup": "csi",
            },
            {
                "clusterID": "c2",
                "monitors": "10.0.1.1:6789",
                "adminID": "admin",
                "adminKey": "key2",
                "pools": "data",
                "fsName": "myfs",
            },
        ]
        spec = enhance(
            {
                "driverName": "csi-cephfs",
                "version": "v1",
                "parameters": {"configs": json.dumps(configs)},
            }
        )

        assert [s["metadata"]["name"] for s in spec.secrets] == [
            "csi-cephfs-secret-c1",
            "csi-cephfs-secret-c2",
        ]
        assert [sc["metadata"]["name"] for sc in spec.storageClasses] == [
            "csi-cephfs-c1-data1",
            "csi-cephfs-c1-data2",
            "csi-cephfs-c2-data",
        ]
        assert spec.storageClasses[2]["parameters"]["fsName"] == "myfs"
        assert spec.storageClasses[0]["parameters"]["fsName"] == "cephfs"
        assert spec.storageClasses[0]["allowVolumeExpansion"] is True

        config_map = spec.configMaps[0]
        assert config_map["metadata"]["name"] == "csi-cephfs-config"
        assert json.loads(config_map["data"]["config.json"]) == [
            {
                "clusterID": "c1",
                "monitors": ["10.0.0.1:6789", "10.0.0.2:6789"],
                "cephFS": {"subvolumeGroup": "csi"},
            },
            {"clusterID": "c2", "monitors": ["10.0.1.1:6789"]},
        ]

        volumes = spec.driverTemplate.template["spec"]["volumes"]
        assert {"name": "ceph-csi-config", "configMap": {"name": "csi-cephfs-config"}} in volumes

    @pytest.mark.parametrize("configs", ["not json", '{"clusterID": "c1"}', '[{"pools": 1}]'])
    def test_malformed_cephfs_configs(self, configs):
        with pytest.raises(CredentialError):
            enhance(
                {"driverName": "csi-cephfs", "version": "v1", "parameters": {"configs": configs}}
            )


class TestTencentCloud:
    SECRET_ID = base64.b64encode(b"my-id").decode()
    SECRET_KEY = base64.b64encode(b"my-key").decode()

    def test_cbs_v1(self):
        spec = enhance(
            {
                "driverName": "com.tencent.cloud.csi.cbs",
                "version": "v1",
                "parameters": {"secretID": self.SECRET_ID, "secretKey": self.SECRET_KEY},
                "controller": {"provisioner": {}, "attacher": {}},
            }
        )

        container = spec.driverTemplate.template["spec"]["containers"][0]
        assert container["command"] == ["/csi-tencentcloud-cbs"]
        data = spec.secrets[0]["data"]
        assert base64.b64decode(data["TENCENTCLOUD_CBS_API_SECRET_ID"]) == b"my-id"
        assert base64.b64decode(data["TENCENTCLOUD_CBS_API_SECRET_KEY"]) == b"my-key"
        assert [sc["metadata"]["name"] for sc in spec.storageClasses] == [
            "cbs-basic-prepaid",
            "cbs-premium",
            "cbs-ssd",
        ]
        assert spec.storageClasses[2]["parameters"] == {"diskType": "CLOUD_SSD"}

    def test_cbs_v0_uses_legacy_command(self):
        spec = enhance({"driverName": "com.tencent.cloud.csi.cbs", "version": "v0"})

        container = spec.driverTemplate.template["spec"]["containers"][0]
        assert container["command"] == ["/bin/csi-tencentcloud"]
        assert spec.secrets == []

    def test_credentials_from_configuration(self):
        config = OperatorConfig(
            tencent_cloud=TencentCloudConfig(secret_id=self.SECRET_ID, secret_key=self.SECRET_KEY)
        )
        spec = enhance({"driverName": "com.tencent.cloud.csi.cbs", "version": "v1p1"}, config)

        assert spec.secrets[0]["metadata"]["name"] == "com.tencent.cloud.csi.cbs-secret"

    def test_bad_base64_is_permanent(self):
        with pytest.raises(CredentialError):
            enhance(
                {
                    "driverName": "com.tencent.cloud.csi.cbs",
                    "version": "v1",
                    "parameters": {"secretID": "not base64!", "secretKey": self.SECRET_KEY},
                }
            )
