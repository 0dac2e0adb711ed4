"""Enhancer strategies and the registry dispatching on driver name."""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Dict, NamedTuple, Optional, Type

from csi_operator.config import OperatorConfig
from csi_operator.controller.errors import UnknownDriverError
from csi_operator.models.csi import (
    LIVENESS_PROBE_PORT_KEY,
    CSI,
    CSIComponent,
    CSIController,
    CSINode,
    CSISpec,
)
from .versions import ComponentVersions, get_image

logger = logging.getLogger(__name__)

CRITICAL_RESOURCES = {"limits": {"cpu": "100m", "memory": "100Mi"}}


class ComponentRole(NamedTuple):
    """Where the image of one version table field goes in a CSI spec."""

    version_field: str
    node_slot: Optional[str]
    controller_slot: Optional[str]
    critical: bool
    # Added even when the CSI object does not declare it
    always: bool = False


COMPONENT_ROLES = (
    ComponentRole("provisioner", None, "provisioner", critical=True),
    ComponentRole("attacher", None, "attacher", critical=True),
    ComponentRole("resizer", None, "resizer", critical=True),
    ComponentRole("snapshotter", None, "snapshotter", critical=True),
    ComponentRole("livenessProbe", "livenessProbe", "livenessProbe", critical=False),
    ComponentRole("nodeRegistrar", "nodeRegistrar", None, critical=False, always=True),
    ComponentRole("clusterRegistrar", None, "clusterRegistrar", critical=False),
)


def check_component_roles():
    """Fail loudly if the role table and the models drifted apart."""
    version_fields = set(ComponentVersions.model_fields) - {"driver"}
    covered = {role.version_field for role in COMPONENT_ROLES}
    if covered != version_fields:
        raise RuntimeError(
            f"component roles do not match version fields: {sorted(covered ^ version_fields)}"
        )
    for role in COMPONENT_ROLES:
        if role.node_slot is not None and role.node_slot not in CSINode.model_fields:
            raise RuntimeError(f"unknown node slot {role.node_slot}")
        if (
            role.controller_slot is not None
            and role.controller_slot not in CSIController.model_fields
        ):
            raise RuntimeError(f"unknown controller slot {role.controller_slot}")


check_component_roles()


class LivenessProbePorts(NamedTuple):
    node: str
    controller: str


class EnhancerBase(ABC):
    """Expands a well known driver into a complete CSI spec."""

    def __init__(self, config: OperatorConfig):
        self.config = config

    @abstractmethod
    def enhance(self, csi: CSI, spec: CSISpec) -> CSISpec:
        """Return the enhanced copy of `spec`; the argument is not modified."""

    def image(self, name: str) -> str:
        return get_image(self.config.registry_domain, name)

    def expand_components(
        self, spec: CSISpec, versions: ComponentVersions, ports: LivenessProbePorts
    ) -> None:
        """Fill the declared sidecar slots with images from the version table."""
        for role in COMPONENT_ROLES:
            image_name = getattr(versions, role.version_field)
            slots = [
                (spec.node, role.node_slot, False),
                (spec.controller, role.controller_slot, True),
            ]
            for holder, slot, controller in slots:
                if slot is None:
                    continue
                declared = getattr(holder, slot)
                if image_name is None:
                    if declared is not None:
                        logger.warning(
                            f"{spec.driverName} {spec.version} has no {role.version_field}, dropping it"
                        )
                        setattr(holder, slot, None)
                    continue
                if declared is None and not role.always:
                    continue
                setattr(
                    holder,
                    slot,
                    self._component(role, image_name, declared, ports, controller),
                )

        if spec.has_controller() and spec.controller.replicas < 1:
            spec.controller.replicas = 1

    def _component(
        self,
        role: ComponentRole,
        image_name: str,
        declared: Optional[CSIComponent],
        ports: LivenessProbePorts,
        controller: bool,
    ) -> CSIComponent:
        resources = copy.deepcopy(CRITICAL_RESOURCES) if role.critical else {}
        parameters = {}
        if declared is not None:
            resources = resources or copy.deepcopy(declared.resources)
            parameters = dict(declared.parameters)
        if role.version_field == "livenessProbe":
            parameters[LIVENESS_PROBE_PORT_KEY] = ports.controller if controller else ports.node
        return CSIComponent(
            image=self.image(image_name), resources=resources, parameters=parameters
        )


class EnhancerRegistry:
    """Maps driver names to enhancer strategies."""

    _enhancer_classes: Dict[str, Type[EnhancerBase]] = {}

    @classmethod
    def register(cls, *driver_names):
        """Decorator registering an enhancer class for the given driver names."""

        def decorator(enhancer_class):
            for driver_name in driver_names:
                cls._enhancer_classes[driver_name] = enhancer_class
                logger.debug(f"Registered enhancer {enhancer_class.__name__} for {driver_name}")
            return enhancer_class

        return decorator

    def __init__(self, config: OperatorConfig):
        self.config = config
        instances = {}
        self._enhancers = {}
        for driver_name, enhancer_class in self._enhancer_classes.items():
            if enhancer_class not in instances:
                instances[enhancer_class] = enhancer_class(config)
            self._enhancers[driver_name] = instances[enhancer_class]

    def supported_drivers(self):
        return sorted(self._enhancers)

    def enhance(self, csi: CSI, spec: CSISpec) -> CSISpec:
        """Return an enhanced copy of the spec of a well known driver.

        Raises:
            UnknownDriverError: no enhancer for the driver name
            UnknownVersionError: the driver has no such version
            CredentialError: malformed credential parameters
        """
        enhancer = self._enhancers.get(spec.driverName)
        if enhancer is None:
            raise UnknownDriverError(f"unknown storage type: {spec.driverName}")
        return enhancer.enhance(csi, spec.model_copy(deep=True))
