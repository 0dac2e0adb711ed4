"""Node DaemonSet and controller Deployment running the CSI driver.

Both workloads are built from the single-container driver template; the
sidecars, the CSI socket volume and the kubelet directories are injected
here.
"""

import copy
import logging
import posixpath
from typing import Any, Dict, List, Optional, Tuple

from csi_operator.config import OperatorConfig
from csi_operator.controller.utils import (
    has_same_generation,
    parse_image_version,
    sanitize_driver_name,
)
from csi_operator.models.csi import LIVENESS_PROBE_PORT_KEY, CSI, CSIComponent, CSISpec, Generation
from .base import ChildManager
from .rbac_manager import service_account_name

logger = logging.getLogger(__name__)

NODE_DRIVER_LABEL = "storage.tkestack.io/nodedriver"
CONTROLLER_DRIVER_LABEL = "storage.tkestack.io/controllerdriver"

SOCKET_VOLUME_NAME = "csi-socket"
REGISTRATION_VOLUME_NAME = "registration-dir"
POD_MOUNT_DIR_VOLUME_NAME = "pod-mount"
DEVICE_MOUNT_DIR_VOLUME_NAME = "device-mount"

DEVICE_MOUNT_REL_PATH = "plugins/kubernetes.io/csi/volumeDevices"

ENDPOINT_ENV_NAME = "CSI_ENDPOINT"
ENDPOINT_INSIDE_CONTAINER = "/csi/csi.sock"

LIVENESS_PROBE_PORT_NAME = "healthz"
LIVENESS_PROBE_PERIOD = 2
LIVENESS_PROBE_TIMEOUT = 3
LIVENESS_PROBE_INITIAL_DELAY = 10
LIVENESS_PROBE_FAILURE_THRESHOLD = 5

# Different ports, as drivers may run with hostNetwork
NODE_LIVENESS_PROBE_PORT = 9808
CONTROLLER_LIVENESS_PROBE_PORT = 9809

SYSTEM_NAMESPACE = "kube-system"
SYSTEM_PRIORITY_CLASS = "system-cluster-critical"

CSI_V1 = (1, 0, 0)
CSI_V11 = (1, 1, 0)
CSI_V2 = (2, 0, 0)

WORKLOAD_GROUP = "apps"


def node_driver_name(csi: CSI) -> str:
    return f"{csi.name}-node"


def controller_driver_name(csi: CSI) -> str:
    return f"{csi.name}-controller"


def endpoint_env() -> List[Dict[str, Any]]:
    return [{"name": ENDPOINT_ENV_NAME, "value": "unix:/" + ENDPOINT_INSIDE_CONTAINER}]


def sidecar_env() -> List[Dict[str, Any]]:
    return [{"name": "ADDRESS", "value": ENDPOINT_INSIDE_CONTAINER}]


def leader_election_env() -> List[Dict[str, Any]]:
    return [
        {"name": "MY_NAME", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}},
        {
            "name": "MY_NAMESPACE",
            "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}},
        },
    ]


def socket_volume_mount() -> Dict[str, Any]:
    return {
        "name": SOCKET_VOLUME_NAME,
        "mountPath": posixpath.dirname(ENDPOINT_INSIDE_CONTAINER),
    }


def liveness_probe_port(parameters: Dict[str, str], controller: bool) -> int:
    value = parameters.get(LIVENESS_PROBE_PORT_KEY)
    if value is not None:
        try:
            return int(value)
        except ValueError:
            logger.error(f"Parse liveness probe port {value!r} failed, using default")
    return CONTROLLER_LIVENESS_PROBE_PORT if controller else NODE_LIVENESS_PROBE_PORT


def inject_liveness_probe(container: Dict[str, Any], parameters: Dict[str, str], controller: bool):
    container.setdefault("ports", []).append(
        {
            "name": LIVENESS_PROBE_PORT_NAME,
            "containerPort": liveness_probe_port(parameters, controller),
            "protocol": "TCP",
        }
    )
    container["livenessProbe"] = {
        "httpGet": {"path": "/healthz", "port": LIVENESS_PROBE_PORT_NAME},
        "periodSeconds": LIVENESS_PROBE_PERIOD,
        "timeoutSeconds": LIVENESS_PROBE_TIMEOUT,
        "failureThreshold": LIVENESS_PROBE_FAILURE_THRESHOLD,
        "initialDelaySeconds": LIVENESS_PROBE_INITIAL_DELAY,
    }


class SidecarBuilder:
    """Builds the sidecar containers of one CSI spec."""

    def __init__(self, spec: CSISpec, config: OperatorConfig):
        self.spec = spec
        self.config = config
        containers = spec.driverTemplate.template["spec"]["containers"]
        self.security_context = containers[0].get("securityContext")

    def _container(
        self,
        name: str,
        component: CSIComponent,
        args: List[str],
        env: Optional[List[Dict[str, Any]]] = None,
        volume_mounts: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        container = {
            "name": name,
            "image": component.image,
            "args": ["--v=5", "--csi-address=$(ADDRESS)"] + args,
            "env": env if env is not None else sidecar_env(),
            "volumeMounts": volume_mounts or [socket_volume_mount()],
        }
        if component.resources:
            container["resources"] = copy.deepcopy(component.resources)
        if self.security_context is not None:
            container["securityContext"] = copy.deepcopy(self.security_context)
        return container

    def node_socket_dir(self) -> str:
        return posixpath.join(
            self.config.kubelet_root_dir,
            "plugins",
            sanitize_driver_name(self.spec.driverName),
        )

    def node_registrar(self, component: CSIComponent) -> Dict[str, Any]:
        socket_path = posixpath.join(
            self.node_socket_dir(), posixpath.basename(ENDPOINT_INSIDE_CONTAINER)
        )
        env = sidecar_env() + [
            {"name": "DRIVER_REG_SOCK_PATH", "value": socket_path},
            {"name": "KUBE_NODE_NAME", "valueFrom": {"fieldRef": {"fieldPath": "spec.nodeName"}}},
        ]
        return self._container(
            "node-driver-registrar",
            component,
            ["--kubelet-registration-path=$(DRIVER_REG_SOCK_PATH)"],
            env=env,
            volume_mounts=[
                socket_volume_mount(),
                {"name": REGISTRATION_VOLUME_NAME, "mountPath": "/registration"},
            ],
        )

    def provisioner(self, component: CSIComponent) -> Dict[str, Any]:
        args = ["--enable-leader-election=true"]
        version = parse_image_version(component.image)
        if version is not None and version < CSI_V1:
            args.append(f"--provisioner={self.spec.driverName}")
        return self._container("csi-provisioner", component, args)

    def _leader_elected(self, name: str, component: CSIComponent, extra_args=()) -> Dict[str, Any]:
        args = [
            "--leader-election",
            "--leader-election-namespace=$(MY_NAMESPACE)",
            "--leader-election-identity=$(MY_NAME)",
        ] + list(extra_args)
        return self._container(name, component, args, env=leader_election_env() + sidecar_env())

    def attacher(self, component: CSIComponent) -> Dict[str, Any]:
        extra_args = []
        version = parse_image_version(component.image)
        if version is not None and CSI_V11 <= version < CSI_V2:
            logger.debug(f"Attacher {component.image} needs the leader-election-type arg")
            extra_args.append("--leader-election-type=leases")
        return self._leader_elected("csi-attacher", component, extra_args)

    def resizer(self, component: CSIComponent) -> Dict[str, Any]:
        return self._leader_elected("csi-resizer", component)

    def snapshotter(self, component: CSIComponent) -> Dict[str, Any]:
        return self._container("csi-snapshotter", component, ["--connection-timeout=1m"])

    def cluster_registrar(self, component: CSIComponent) -> Dict[str, Any]:
        return self._container("cluster-driver-registrar", component, ["--pod-info-mount"])

    def liveness_probe(self, component: CSIComponent, controller: bool) -> Dict[str, Any]:
        port = liveness_probe_port(component.parameters, controller)
        return self._container(
            "liveness-probe",
            component,
            [f"--health-port={port}", f"--connection-timeout={LIVENESS_PROBE_TIMEOUT}s"],
        )


class WorkloadManager(ChildManager):
    """Shared drift detection of the driver workloads.

    The pod template is not diffed field by field: the workload is replaced
    whenever its generation moved away from the one recorded in the CSI
    status, or the CSI spec changed since it was last observed.
    """

    api_version = "apps/v1"

    def __init__(self, client, config: OperatorConfig):
        super().__init__(client)
        self.config = config

    def needs_update(self, csi, desired, live):
        if not has_same_generation(live, WORKLOAD_GROUP, self.kind, csi.status.children):
            return True
        return csi.status.observedGeneration != csi.generation

    def generation_of(self, workload: Dict[str, Any]) -> Generation:
        metadata = workload["metadata"]
        return Generation(
            group=WORKLOAD_GROUP,
            kind=self.kind,
            namespace=metadata.get("namespace", ""),
            name=metadata["name"],
            lastGeneration=metadata.get("generation") or 0,
        )

    def base_template(self, csi: CSI, spec: CSISpec, controller: bool) -> Dict[str, Any]:
        template = copy.deepcopy(spec.driverTemplate.template)
        pod_spec = template.setdefault("spec", {})
        if csi.namespace == SYSTEM_NAMESPACE:
            pod_spec["priorityClassName"] = SYSTEM_PRIORITY_CLASS
        pod_spec["serviceAccountName"] = service_account_name(csi, controller)
        return template

    def sync_workload(
        self, csi: CSI, spec: CSISpec
    ) -> Tuple[Optional[Dict[str, Any]], bool, Optional[Exception]]:
        """Converge the workload.

        Returns:
            (the live workload or None when not needed, changed, error)
        """
        desired = self.desired(csi, spec)
        results, changed, error = self.converge(csi, desired)
        workload = results[0] if results else None
        return workload, changed, error

    def sync(self, csi, spec):
        _, changed, error = self.sync_workload(csi, spec)
        return changed, error


class NodeDriverManager(WorkloadManager):
    kind = "DaemonSet"

    def volumes(self, builder: SidecarBuilder) -> List[Dict[str, Any]]:
        root = self.config.kubelet_root_dir
        return [
            {
                "name": SOCKET_VOLUME_NAME,
                "hostPath": {"path": builder.node_socket_dir(), "type": "DirectoryOrCreate"},
            },
            {
                "name": REGISTRATION_VOLUME_NAME,
                "hostPath": {"path": posixpath.join(root, "plugins_registry"), "type": "Directory"},
            },
            {
                "name": DEVICE_MOUNT_DIR_VOLUME_NAME,
                "hostPath": {
                    "path": posixpath.join(root, DEVICE_MOUNT_REL_PATH),
                    "type": "DirectoryOrCreate",
                },
            },
            {
                "name": POD_MOUNT_DIR_VOLUME_NAME,
                "hostPath": {"path": posixpath.join(root, "pods"), "type": "DirectoryOrCreate"},
            },
        ]

    def driver_volume_mounts(self) -> List[Dict[str, Any]]:
        root = self.config.kubelet_root_dir
        return [
            socket_volume_mount(),
            {
                "name": DEVICE_MOUNT_DIR_VOLUME_NAME,
                "mountPath": posixpath.join(root, DEVICE_MOUNT_REL_PATH),
                "mountPropagation": "Bidirectional",
            },
            {
                "name": POD_MOUNT_DIR_VOLUME_NAME,
                "mountPath": posixpath.join(root, "pods"),
                "mountPropagation": "Bidirectional",
            },
        ]

    def desired(self, csi, spec):
        if spec.driverTemplate is None:
            logger.info(f"No driver template for {csi.namespace}/{csi.name}, skip node driver")
            return []

        builder = SidecarBuilder(spec, self.config)
        template = self.base_template(csi, spec, False)
        pod_spec = template["spec"]

        node = spec.node
        if node.nodeRegistrar is not None:
            pod_spec["containers"].append(builder.node_registrar(node.nodeRegistrar))
        if node.livenessProbe is not None:
            pod_spec["containers"].append(builder.liveness_probe(node.livenessProbe, False))

        pod_spec["volumes"] = (pod_spec.get("volumes") or []) + self.volumes(builder)

        driver = pod_spec["containers"][0]
        driver["volumeMounts"] = (driver.get("volumeMounts") or []) + self.driver_volume_mounts()
        driver["env"] = (driver.get("env") or []) + endpoint_env()
        if node.livenessProbe is not None:
            inject_liveness_probe(driver, node.livenessProbe.parameters, False)

        name = node_driver_name(csi)
        selector = {NODE_DRIVER_LABEL: name}
        template_meta = template.setdefault("metadata", {})
        template_meta["labels"] = dict(template_meta.get("labels") or {}, **selector)

        return [
            {
                "apiVersion": self.api_version,
                "kind": self.kind,
                "metadata": {"name": name, "namespace": csi.namespace},
                "spec": {
                    "selector": {"matchLabels": selector},
                    "template": template,
                    "updateStrategy": {"type": "RollingUpdate"},
                },
            }
        ]


class ControllerDriverManager(WorkloadManager):
    kind = "Deployment"

    def desired(self, csi, spec):
        if spec.driverTemplate is None or not spec.has_controller():
            logger.debug(f"Controller service disabled for {csi.namespace}/{csi.name}")
            return []

        builder = SidecarBuilder(spec, self.config)
        template = self.base_template(csi, spec, True)
        pod_spec = template["spec"]

        ctrl = spec.controller
        sidecars = [
            (ctrl.provisioner, builder.provisioner),
            (ctrl.attacher, builder.attacher),
            (ctrl.resizer, builder.resizer),
            (ctrl.snapshotter, builder.snapshotter),
            (ctrl.clusterRegistrar, builder.cluster_registrar),
        ]
        for component, build in sidecars:
            if component is not None:
                pod_spec["containers"].append(build(component))
        if ctrl.livenessProbe is not None:
            pod_spec["containers"].append(builder.liveness_probe(ctrl.livenessProbe, True))

        pod_spec["volumes"] = (pod_spec.get("volumes") or []) + [
            {"name": SOCKET_VOLUME_NAME, "emptyDir": {}}
        ]

        driver = pod_spec["containers"][0]
        driver["volumeMounts"] = (driver.get("volumeMounts") or []) + [socket_volume_mount()]
        driver["env"] = (driver.get("env") or []) + endpoint_env()
        if ctrl.livenessProbe is not None:
            inject_liveness_probe(driver, ctrl.livenessProbe.parameters, True)

        name = controller_driver_name(csi)
        selector = {CONTROLLER_DRIVER_LABEL: name}
        template_meta = template.setdefault("metadata", {})
        template_meta["labels"] = dict(template_meta.get("labels") or {}, **selector)

        return [
            {
                "apiVersion": self.api_version,
                "kind": self.kind,
                "metadata": {"name": name, "namespace": csi.namespace},
                "spec": {
                    "selector": {"matchLabels": selector},
                    "template": template,
                    "replicas": ctrl.replicas,
                    "strategy": {"type": "RollingUpdate"},
                },
            }
        ]


def unavailable_replicas(workload: Dict[str, Any], kind: str) -> int:
    status = workload.get("status") or {}
    if kind == "Deployment":
        return status.get("unavailableReplicas") or 0
    return status.get("numberUnavailable") or 0
