"""Condition bookkeeping for CSI status."""

from datetime import datetime, timezone
from typing import List, Optional

from csi_operator.crd.base import CRDCondition, CRDStatus

VALIDATED = "Validated"
SYNCED = "Synced"
NODE_AVAILABLE = "NodeAvailable"
CONTROLLER_AVAILABLE = "ControllerAvailable"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"


def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def find_condition(
    conditions: List[CRDCondition], condition_type: str
) -> Optional[CRDCondition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def update_condition(
    status: CRDStatus, condition_type: str, condition_status: str, message: str = ""
) -> None:
    """Upsert a condition by type.

    lastTransitionTime only moves when the condition status changes.
    """
    existing = find_condition(status.conditions, condition_type)
    if existing is None:
        status.conditions.append(
            CRDCondition(
                type=condition_type,
                status=condition_status,
                reason=condition_type,
                message=message,
                lastTransitionTime=now(),
            )
        )
        return

    existing.message = message
    if existing.status != condition_status:
        existing.status = condition_status
        existing.lastTransitionTime = now()
