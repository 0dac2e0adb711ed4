"""CRD management for the CSI operator."""

from .registry import CRDRegistry
from .base import CRDSpec, CRDStatus, CRDMetadata, CRDCondition

__all__ = ["CRDRegistry", "CRDSpec", "CRDStatus", "CRDMetadata", "CRDCondition"]
