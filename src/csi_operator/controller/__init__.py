"""Reconciliation of CSI objects: validation, ownership, status and the reconcile loop."""
