"""CSI storage driver deployment CRD models."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from csi_operator.crd.registry import CRDRegistry
from csi_operator.crd.base import CRDMetadata, CRDSpec, CRDStatus

GROUP = "storage.tkestack.io"
VERSION = "v1"
KIND = "CSI"
PLURAL = "csis"
API_VERSION = f"{GROUP}/{VERSION}"

# Well known CSI versions
CSI_VERSION_V0 = "v0"
CSI_VERSION_V1 = "v1"
CSI_VERSION_V1P1 = "v1p1"

# Well known drivers
CSI_DRIVER_CEPH_RBD = "csi-rbd"
CSI_DRIVER_CEPH_FS = "csi-cephfs"
CSI_DRIVER_TENCENT_CBS = "com.tencent.cloud.csi.cbs"

LIVENESS_PROBE_PORT_KEY = "livenessProbePort"

PHASE_PENDING = "Pending"
PHASE_RUNNING = "Running"
PHASE_FAILED = "Failed"


class CSIComponent(CRDSpec):
    """Basic configuration of an external CSI component (sidecar)."""

    image: str = Field(default="", description="Image of the sidecar container")
    resources: Dict[str, Any] = Field(
        default_factory=dict, description="Resource requirements of the container"
    )
    parameters: Dict[str, str] = Field(
        default_factory=dict,
        description="Additional parameters for the component",
    )


class CSINode(CRDSpec):
    """Sidecars running next to the driver on every node."""

    nodeRegistrar: Optional[CSIComponent] = Field(
        default=None, description="Configuration for the node driver registrar"
    )
    livenessProbe: Optional[CSIComponent] = Field(
        default=None, description="Configuration for the node liveness probe"
    )


class CSIController(CRDSpec):
    """Sidecars running next to the driver in the controller deployment."""

    replicas: int = Field(default=0, description="Replicas of the controller deployment")
    provisioner: Optional[CSIComponent] = Field(default=None, description="CSI provisioner")
    attacher: Optional[CSIComponent] = Field(default=None, description="CSI attacher")
    resizer: Optional[CSIComponent] = Field(default=None, description="CSI resizer")
    snapshotter: Optional[CSIComponent] = Field(default=None, description="CSI snapshotter")
    clusterRegistrar: Optional[CSIComponent] = Field(
        default=None, description="CSI cluster driver registrar"
    )
    livenessProbe: Optional[CSIComponent] = Field(
        default=None, description="Configuration for the controller liveness probe"
    )


class CSIDriverTemplate(CRDSpec):
    """Pod template of the driver plus the extra cluster rules it needs.

    The template must hold exactly one container, the driver itself, which
    reads the CSI socket path from the CSI_ENDPOINT variable.
    """

    template: Dict[str, Any] = Field(
        default_factory=dict, description="Pod template of the driver"
    )
    rules: List[Dict[str, Any]] = Field(
        default_factory=list, description="Extra ClusterRole rules needed by the driver"
    )


class Generation(BaseModel):
    """Last seen generation of a workload created for a CSI object."""

    group: str = ""
    kind: str
    namespace: str = ""
    name: str
    lastGeneration: int = 0


class CSIStatus(CRDStatus):
    """Observed state of a CSI object."""

    failedGeneration: Optional[int] = Field(
        default=None,
        description="Generation at which a non-retryable failure was recorded",
    )
    children: List[Generation] = Field(
        default_factory=list,
        description="Generations of the driver workloads managed by the operator",
    )


@CRDRegistry.register(
    GROUP,
    VERSION,
    KIND,
    PLURAL,
    status_model=CSIStatus,
    short_names=["csi"],
    printer_columns=[
        {"name": "Driver", "type": "string", "jsonPath": ".spec.driverName"},
        {"name": "Version", "type": "string", "jsonPath": ".spec.version"},
        {"name": "Phase", "type": "string", "jsonPath": ".status.phase"},
        {"name": "Age", "type": "date", "jsonPath": ".metadata.creationTimestamp"},
    ],
)
class CSISpec(CRDSpec):
    """CSI driver deployment specification.

    With `version` set to a well known CSI version and `driverName` set to a
    well known driver, the operator fills in the driver template, sidecars,
    secrets and storage classes by itself.
    """

    version: str = Field(
        default="", description="Well known CSI version, empty for a custom driver"
    )
    driverName: str = Field(..., description="Name of the CSI driver")
    parameters: Dict[str, str] = Field(
        default_factory=dict,
        description="Global parameters of a well known driver, such as Ceph cluster info",
    )
    driverTemplate: Optional[CSIDriverTemplate] = Field(
        default=None, description="Driver pod template and extra rules"
    )
    node: CSINode = Field(default_factory=CSINode, description="Node sidecars")
    controller: CSIController = Field(
        default_factory=CSIController, description="Controller sidecars"
    )
    secrets: List[Dict[str, Any]] = Field(
        default_factory=list, description="Secrets used to provision/attach/resize/snapshot"
    )
    storageClasses: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="StorageClasses of the driver; the provisioner is always the driver name",
    )
    configMaps: List[Dict[str, Any]] = Field(
        default_factory=list, description="ConfigMaps needed by the driver"
    )

    def has_controller(self) -> bool:
        ctrl = self.controller
        return any(
            component is not None
            for component in (
                ctrl.provisioner,
                ctrl.attacher,
                ctrl.snapshotter,
                ctrl.resizer,
                ctrl.clusterRegistrar,
                ctrl.livenessProbe,
            )
        )

    def needs_secret_rule(self) -> bool:
        ctrl = self.controller
        return any(
            component is not None
            for component in (ctrl.provisioner, ctrl.attacher, ctrl.resizer, ctrl.snapshotter)
        )

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class CSI(BaseModel):
    """A CSI object as stored in the cluster.

    The spec is kept raw here: a spec that does not parse is reported
    through the Validated condition rather than failing the whole object.
    """

    apiVersion: str = API_VERSION
    kind: str = KIND
    metadata: CRDMetadata
    spec: Dict[str, Any] = Field(default_factory=dict)
    status: CSIStatus = Field(default_factory=CSIStatus)

    class Config:
        extra = "allow"

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""

    @property
    def uid(self) -> str:
        return self.metadata.uid or ""

    @property
    def generation(self) -> int:
        return self.metadata.generation or 0

    @property
    def is_terminating(self) -> bool:
        return self.metadata.deletionTimestamp is not None

    def parse_spec(self) -> CSISpec:
        return CSISpec.model_validate(self.spec)

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
