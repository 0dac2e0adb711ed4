"""Enhancers expanding well known drivers into complete CSI specs."""

# Import all strategies to ensure they're registered
from . import ceph, tencent_cloud
from .base import EnhancerRegistry

__all__ = ["EnhancerRegistry", "ceph", "tencent_cloud"]
