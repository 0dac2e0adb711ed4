import pytest

from csi_operator.config import OperatorConfig
from csi_operator.controller.utils import parse_image_version
from csi_operator.crd.base import CRDMetadata
from csi_operator.models.csi import CSI, CSIComponent, CSISpec
from csi_operator.services.driver_manager import (
    ControllerDriverManager,
    NodeDriverManager,
    SidecarBuilder,
)


def make_csi(namespace="kube-system"):
    return CSI(metadata=CRDMetadata(name="example", namespace=namespace, uid="uid-1", generation=1))


def make_spec(**fields):
    base = {
        "driverName": "com.example.csi",
        "driverTemplate": {
            "template": {
                "spec": {
                    "containers": [
                        {"name": "driver", "image": "driver:v1", "securityContext": {"privileged": True}}
                    ]
                }
            }
        },
    }
    base.update(fields)
    return CSISpec.model_validate(base)


def containers_of(workload):
    return {c["name"]: c for c in workload["spec"]["template"]["spec"]["containers"]}


@pytest.mark.parametrize(
    "image, expected",
    [
        ("csi-provisioner:v1.0.1", (1, 0, 1)),
        ("registry:5000/csi-attacher:v1.1", (1, 1, 0)),
        ("csi-attacher:2.0.0-rc1", (2, 0, 0)),
        ("csi-tencentcloud-cbs:f9b4997", None),
        ("csi-provisioner", None),
    ],
)
def test_parse_image_version(image, expected):
    assert parse_image_version(image) == expected


class TestNodeDriver:
    def test_daemon_set(self, cluster):
        spec = make_spec(
            node={
                "nodeRegistrar": {"image": "registrar:v1.1.0"},
                "livenessProbe": {"image": "livenessprobe:v1.1.0", "parameters": {"livenessProbePort": "9900"}},
            }
        )
        manager = NodeDriverManager(cluster, OperatorConfig(kubelet_root_dir="/data/kubelet"))

        [daemon_set] = manager.desired(make_csi(), spec)

        assert daemon_set["kind"] == "DaemonSet"
        assert daemon_set["metadata"] == {"name": "example-node", "namespace": "kube-system"}
        pod_spec = daemon_set["spec"]["template"]["spec"]
        assert pod_spec["serviceAccountName"] == "csi-node-example"
        assert pod_spec["priorityClassName"] == "system-cluster-critical"

        containers = containers_of(daemon_set)
        assert list(containers) == ["driver", "node-driver-registrar", "liveness-probe"]
        driver = containers["driver"]
        assert {"name": "CSI_ENDPOINT", "value": "unix://csi/csi.sock"} in driver["env"]
        assert driver["ports"][0]["containerPort"] == 9900
        assert driver["livenessProbe"]["httpGet"] == {"path": "/healthz", "port": "healthz"}
        mounts = {m["mountPath"]: m for m in driver["volumeMounts"]}
        assert mounts["/data/kubelet/pods"]["mountPropagation"] == "Bidirectional"

        registrar = containers["node-driver-registrar"]
        assert {
            "name": "DRIVER_REG_SOCK_PATH",
            "value": "/data/kubelet/plugins/com.example.csi/csi.sock",
        } in registrar["env"]
        assert registrar["securityContext"] == {"privileged": True}
        assert "--health-port=9900" in containers["liveness-probe"]["args"]

        volumes = {v["name"]: v for v in pod_spec["volumes"]}
        assert volumes["csi-socket"]["hostPath"]["path"] == "/data/kubelet/plugins/com.example.csi"
        assert volumes["registration-dir"]["hostPath"]["path"] == "/data/kubelet/plugins_registry"

    def test_no_priority_class_outside_kube_system(self, cluster):
        manager = NodeDriverManager(cluster, OperatorConfig())
        [daemon_set] = manager.desired(make_csi("storage"), make_spec())

        assert "priorityClassName" not in daemon_set["spec"]["template"]["spec"]

    def test_no_workload_without_template(self, cluster):
        manager = NodeDriverManager(cluster, OperatorConfig())
        assert manager.desired(make_csi(), CSISpec(driverName="com.example.csi")) == []

    def test_template_is_not_modified(self, cluster):
        spec = make_spec(node={"nodeRegistrar": {"image": "registrar:v1.1.0"}})
        before = spec.model_dump()

        NodeDriverManager(cluster, OperatorConfig()).desired(make_csi(), spec)

        assert spec.model_dump() == before


class TestControllerDriver:
    def test_deployment(self, cluster):
        spec = make_spec(
            controller={
                "replicas": 2,
                "provisioner": {"image": "csi-provisioner:v1.0.1"},
                "attacher": {"image": "csi-attacher:v1.1.0"},
                "livenessProbe": {"image": "livenessprobe:v1.1.0"},
            }
        )
        manager = ControllerDriverManager(cluster, OperatorConfig())

        [deployment] = manager.desired(make_csi(), spec)

        assert deployment["metadata"]["name"] == "example-controller"
        assert deployment["spec"]["replicas"] == 2
        pod_spec = deployment["spec"]["template"]["spec"]
        assert pod_spec["serviceAccountName"] == "csi-controller-example"
        assert {"name": "csi-socket", "emptyDir": {}} in pod_spec["volumes"]

        containers = containers_of(deployment)
        assert list(containers) == ["driver", "csi-provisioner", "csi-attacher", "liveness-probe"]
        assert not any(a.startswith("--provisioner=") for a in containers["csi-provisioner"]["args"])
        assert "--leader-election-type=leases" in containers["csi-attacher"]["args"]
        assert containers["driver"]["ports"][0]["containerPort"] == 9809

    def test_old_sidecar_flags(self, cluster):
        spec = make_spec(
            controller={
                "provisioner": {"image": "csi-provisioner:v0.4.2"},
                "attacher": {"image": "csi-attacher:v2.0.0"},
            }
        )
        [deployment] = ControllerDriverManager(cluster, OperatorConfig()).desired(make_csi(), spec)

        containers = containers_of(deployment)
        assert "--provisioner=com.example.csi" in containers["csi-provisioner"]["args"]
        assert "--leader-election-type=leases" not in containers["csi-attacher"]["args"]

    def test_not_needed_without_controller_components(self, cluster):
        manager = ControllerDriverManager(cluster, OperatorConfig())
        assert manager.desired(make_csi(), make_spec(controller={"replicas": 1})) == []


def test_bad_liveness_port_falls_back_to_default():
    spec = make_spec(node={"livenessProbe": {"parameters": {"livenessProbePort": "http"}}})
    builder = SidecarBuilder(spec, OperatorConfig())

    container = builder.liveness_probe(CSIComponent(parameters={"livenessProbePort": "http"}), False)

    assert "--health-port=9808" in container["args"]
