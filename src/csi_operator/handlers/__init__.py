"""Handler modules for the CSI operator."""

# Import handlers to ensure they're registered with kopf
from . import csi_handler

__all__ = ["csi_handler"]
