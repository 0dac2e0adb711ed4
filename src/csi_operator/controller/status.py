"""Phase and condition computation for CSI objects."""

from typing import Any, Dict, Optional

from csi_operator.models.csi import CSI, PHASE_FAILED, PHASE_PENDING, PHASE_RUNNING
from csi_operator.services.driver_manager import unavailable_replicas
from .conditions import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    CONTROLLER_AVAILABLE,
    NODE_AVAILABLE,
    SYNCED,
    update_condition,
)
from .errors import is_permanent


def compute_phase(
    node_driver: Optional[Dict[str, Any]],
    controller_driver: Optional[Dict[str, Any]],
    controller_required: bool,
    error: Optional[BaseException],
) -> str:
    if is_permanent(error):
        return PHASE_FAILED
    if node_driver is None or unavailable_replicas(node_driver, "DaemonSet") > 0:
        return PHASE_PENDING
    if controller_required and (
        controller_driver is None or unavailable_replicas(controller_driver, "Deployment") > 0
    ):
        return PHASE_PENDING
    return PHASE_RUNNING


def _availability(workload, kind, label):
    if workload is None:
        return CONDITION_UNKNOWN, ""
    unavailable = unavailable_replicas(workload, kind)
    if unavailable > 0:
        return CONDITION_FALSE, f"{label} has {unavailable} not ready replicas"
    return CONDITION_TRUE, ""


def sync_status(
    csi: CSI,
    node_driver: Optional[Dict[str, Any]],
    controller_driver: Optional[Dict[str, Any]],
    controller_required: bool,
    error: Optional[BaseException],
) -> None:
    """Update phase, conditions and generations of the working copy."""
    status = csi.status
    status.phase = compute_phase(node_driver, controller_driver, controller_required, error)
    status.failedGeneration = csi.generation if status.phase == PHASE_FAILED else None

    if error is None:
        status.observedGeneration = csi.generation
        update_condition(status, SYNCED, CONDITION_TRUE)
    else:
        update_condition(status, SYNCED, CONDITION_FALSE, str(error))

    update_condition(
        status, NODE_AVAILABLE, *_availability(node_driver, "DaemonSet", "Node driver")
    )
    update_condition(
        status,
        CONTROLLER_AVAILABLE,
        *_availability(controller_driver, "Deployment", "Controller driver"),
    )


def is_failed(csi: CSI) -> bool:
    """A permanent failure recorded for the current generation."""
    status = csi.status
    return status.phase == PHASE_FAILED and status.failedGeneration == csi.generation
