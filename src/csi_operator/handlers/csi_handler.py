"""kopf handlers feeding CSI objects into the reconciler.

Watch events of CSI objects and of their children, a periodic resync and the
deletion handler all end in `Reconciler.reconcile`, serialized per object.
"""

import logging
import os
import threading
from typing import Any, Dict, Optional, Tuple

import kopf

from csi_operator.controller import events
from csi_operator.controller.errors import ReconcileError
from csi_operator.controller.ownership import (
    OWNER_NAME_LABEL,
    owner_from_labels,
    owner_from_references,
)
from csi_operator.models.csi import GROUP, PLURAL, VERSION

logger = logging.getLogger(__name__)

RESYNC_INTERVAL = float(os.getenv("RESYNC_INTERVAL", "60"))
RETRY_DELAY = int(os.getenv("RETRY_DELAY", "10"))

# (group/version, plural) of every child kind, all labelled with the owner
CHILD_RESOURCES = [
    ("apps/v1", "daemonsets"),
    ("apps/v1", "deployments"),
    ("v1", "serviceaccounts"),
    ("v1", "secrets"),
    ("v1", "configmaps"),
    ("rbac.authorization.k8s.io/v1", "clusterroles"),
    ("rbac.authorization.k8s.io/v1", "clusterrolebindings"),
    ("storage.k8s.io/v1", "storageclasses"),
]

_reconciler = None
_locks: Dict[Tuple[str, str], threading.Lock] = {}
_locks_guard = threading.Lock()


class KopfEventRecorder:
    """Post Kubernetes events on CSI objects through kopf."""

    def event(self, obj, event_type: str, reason: str, message: str) -> None:
        body = obj.to_body() if hasattr(obj, "to_body") else obj
        if event_type == events.EVENT_WARNING:
            kopf.warn(body, reason=reason, message=message)
        else:
            kopf.info(body, reason=reason, message=message)


def configure(reconciler) -> None:
    """Install the reconciler used by every handler."""
    global _reconciler
    _reconciler = reconciler


def get_reconciler():
    if _reconciler is None:
        raise kopf.PermanentError("Reconciler not initialised")
    return _reconciler


def _lock_for(namespace: str, name: str) -> threading.Lock:
    with _locks_guard:
        return _locks.setdefault((namespace, name), threading.Lock())


def reconcile(namespace: str, name: str) -> None:
    """Run one reconciliation of a CSI object, never concurrently with another."""
    reconciler = get_reconciler()
    with _lock_for(namespace, name):
        found = reconciler.reconcile(namespace, name)
    if not found:
        # Gone, possibly deleted while the operator was not watching
        forget(namespace, name)


def forget(namespace: str, name: str) -> None:
    with _locks_guard:
        _locks.pop((namespace, name), None)


@kopf.on.event(GROUP, VERSION, PLURAL)
def csi_event(event, meta, **kwargs):
    """Reconcile a CSI object on every watch event."""
    namespace, name = meta.get("namespace", ""), meta["name"]
    if event["type"] == "DELETED":
        logger.debug(f"CSI {namespace}/{name} deleted")
        forget(namespace, name)
        return

    try:
        reconcile(namespace, name)
    except ReconcileError as e:
        # Picked up again by the resync timer
        logger.warning(f"Reconcile {namespace}/{name} failed, will retry: {e}")


@kopf.timer(GROUP, VERSION, PLURAL, interval=RESYNC_INTERVAL, idle=RESYNC_INTERVAL)
def csi_resync(meta, **kwargs):
    """Periodic full resync of a CSI object."""
    namespace, name = meta.get("namespace", ""), meta["name"]
    try:
        reconcile(namespace, name)
    except ReconcileError as e:
        raise kopf.TemporaryError(str(e), delay=RETRY_DELAY)


@kopf.on.delete(GROUP, VERSION, PLURAL)
def csi_delete(meta, **kwargs):
    """Tear down cluster-scoped children before kopf releases the object."""
    namespace, name = meta.get("namespace", ""), meta["name"]
    logger.info(f"CSI {namespace}/{name} is being deleted")
    try:
        reconcile(namespace, name)
    except ReconcileError as e:
        raise kopf.TemporaryError(str(e), delay=RETRY_DELAY)


def owner_of(meta: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    """(namespace, name) of the CSI object owning a child, if any."""
    return owner_from_labels(meta.get("labels")) or owner_from_references(meta)


def child_event(meta, **kwargs):
    owner = owner_of(meta)
    if owner is None:
        return

    namespace, name = owner
    logger.debug(f"Child {meta.get('namespace', '')}/{meta.get('name')} of {namespace}/{name} changed")
    try:
        reconcile(namespace, name)
    except ReconcileError as e:
        logger.warning(f"Reconcile {namespace}/{name} failed, will retry: {e}")


for _group_version, _plural in CHILD_RESOURCES:
    kopf.on.event(
        _group_version,
        _plural,
        labels={OWNER_NAME_LABEL: kopf.PRESENT},
        id=f"child-{_plural}",
    )(child_event)
