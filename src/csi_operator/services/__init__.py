"""Cluster access and child object managers for the CSI operator."""

from . import client
from . import secret_manager
from . import config_map_manager
from . import storage_class_manager
from . import rbac_manager
from . import driver_manager

__all__ = [
    "client",
    "secret_manager",
    "config_map_manager",
    "storage_class_manager",
    "rbac_manager",
    "driver_manager",
]
