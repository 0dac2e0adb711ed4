"""ClusterRoles, ServiceAccounts and ClusterRoleBindings of the CSI drivers."""

import logging
from typing import Any, Dict, List

from csi_operator.controller.errors import ErrorList
from csi_operator.models.csi import CSI, CSISpec
from .base import ChildManager, SyncResult

logger = logging.getLogger(__name__)

NAME_PREFIX = "csi-"
NODE_PREFIX = "node-"
CONTROLLER_PREFIX = "controller-"

RBAC_API_VERSION = "rbac.authorization.k8s.io/v1"


def _rule(api_groups, resources, verbs) -> Dict[str, Any]:
    return {"apiGroups": list(api_groups), "resources": list(resources), "verbs": list(verbs)}


# Needed by both drivers
NODE_RULES = [
    _rule([""], ["persistentvolumes"], ["get", "list", "watch", "update"]),
    _rule([""], ["nodes"], ["get", "list", "update"]),
    _rule([""], ["namespaces"], ["get", "list"]),
    _rule(["storage.k8s.io"], ["volumeattachments"], ["get", "list", "watch", "update"]),
]

CONTROLLER_RULES = [
    _rule([""], ["persistentvolumes"], ["get", "list", "watch", "update", "create", "delete"]),
    _rule([""], ["events"], ["list", "watch", "create", "update", "patch"]),
    # leader election
    _rule([""], ["configmaps", "endpoints"], ["get", "list", "watch", "update", "create", "delete"]),
    _rule(["coordination.k8s.io"], ["leases"], ["get", "list", "watch", "update", "create", "delete"]),
]

SECRET_RULES = [_rule([""], ["secrets"], ["get", "list"])]

PROVISIONER_RULES = [
    _rule([""], ["persistentvolumeclaims"], ["get", "list", "watch", "update"]),
    _rule(["storage.k8s.io"], ["storageclasses"], ["get", "list", "watch"]),
]

ATTACHER_RULES = [
    _rule([""], ["nodes"], ["get", "list", "watch", "update", "patch"]),
    _rule(["storage.k8s.io"], ["volumeattachments"], ["get", "list", "watch", "update"]),
    _rule(["storage.k8s.io"], ["csinodes"], ["get", "list", "watch", "update"]),
]

SNAPSHOTTER_RULES = [
    _rule(["snapshot.storage.k8s.io"], ["volumesnapshotclasses"], ["get", "list", "watch"]),
    _rule(
        ["snapshot.storage.k8s.io"],
        ["volumesnapshotcontents"],
        ["create", "get", "list", "watch", "update", "delete"],
    ),
    _rule(["snapshot.storage.k8s.io"], ["volumesnapshots"], ["get", "list", "watch", "update"]),
    _rule(
        ["apiextensions.k8s.io"],
        ["customresourcedefinitions"],
        ["create", "list", "watch", "delete"],
    ),
]

RESIZER_RULES = [
    _rule([""], ["persistentvolumeclaims"], ["get", "list", "watch"]),
    _rule([""], ["persistentvolumeclaims/status"], ["update", "patch"]),
    _rule(["storage.k8s.io"], ["storageclasses"], ["get", "list", "watch"]),
]

CLUSTER_REGISTRAR_RULES = [_rule(["storage.k8s.io"], ["csidrivers"], ["create", "delete"])]


def _tag(controller: bool) -> str:
    return CONTROLLER_PREFIX if controller else NODE_PREFIX


def cluster_role_name(csi: CSI, controller: bool) -> str:
    return f"{NAME_PREFIX}{_tag(controller)}{csi.uid}"


def cluster_role_binding_name(csi: CSI, controller: bool) -> str:
    return f"{NAME_PREFIX}{_tag(controller)}{csi.uid}"


def service_account_name(csi: CSI, controller: bool) -> str:
    return f"{NAME_PREFIX}{_tag(controller)}{csi.name}"


def node_rules(spec: CSISpec) -> List[Dict[str, Any]]:
    rules = [dict(rule) for rule in NODE_RULES]
    if spec.driverTemplate is not None:
        rules.extend(spec.driverTemplate.rules)
    return rules


def controller_rules(spec: CSISpec) -> List[Dict[str, Any]]:
    ctrl = spec.controller
    rules = list(CONTROLLER_RULES)
    if spec.needs_secret_rule():
        rules += SECRET_RULES
    if ctrl.provisioner is not None:
        rules += PROVISIONER_RULES
    if ctrl.attacher is not None:
        rules += ATTACHER_RULES
    if ctrl.snapshotter is not None:
        rules += SNAPSHOTTER_RULES
    # The provisioner rules already cover the resizer
    if ctrl.resizer is not None and ctrl.provisioner is None:
        rules += RESIZER_RULES
    if ctrl.clusterRegistrar is not None:
        rules += CLUSTER_REGISTRAR_RULES
    return [dict(rule) for rule in rules]


def _roles(spec: CSISpec) -> List[bool]:
    """Which drivers need RBAC objects: node always, controller on demand."""
    return [False, True] if spec.has_controller() else [False]


class ClusterRoleManager(ChildManager):
    kind = "ClusterRole"
    api_version = RBAC_API_VERSION
    payload_fields = ("rules",)

    def desired(self, csi, spec):
        return [
            {
                "apiVersion": self.api_version,
                "kind": self.kind,
                "metadata": {"name": cluster_role_name(csi, controller)},
                "rules": controller_rules(spec) if controller else node_rules(spec),
            }
            for controller in _roles(spec)
        ]


class ServiceAccountManager(ChildManager):
    kind = "ServiceAccount"

    def desired(self, csi, spec):
        return [
            {
                "apiVersion": self.api_version,
                "kind": self.kind,
                "metadata": {
                    "name": service_account_name(csi, controller),
                    "namespace": csi.namespace,
                },
            }
            for controller in _roles(spec)
        ]


class ClusterRoleBindingManager(ChildManager):
    kind = "ClusterRoleBinding"
    api_version = RBAC_API_VERSION
    payload_fields = ("subjects", "roleRef")

    def desired(self, csi, spec):
        return [
            {
                "apiVersion": self.api_version,
                "kind": self.kind,
                "metadata": {"name": cluster_role_binding_name(csi, controller)},
                "subjects": [
                    {
                        "kind": "ServiceAccount",
                        "name": service_account_name(csi, controller),
                        "namespace": csi.namespace,
                    }
                ],
                "roleRef": {
                    "apiGroup": "rbac.authorization.k8s.io",
                    "kind": "ClusterRole",
                    "name": cluster_role_name(csi, controller),
                },
            }
            for controller in _roles(spec)
        ]


class RBACManager:
    """Syncs roles, service accounts and bindings as one category."""

    def __init__(self, client):
        self.roles = ClusterRoleManager(client)
        self.service_accounts = ServiceAccountManager(client)
        self.bindings = ClusterRoleBindingManager(client)

    def sync(self, csi: CSI, spec: CSISpec) -> SyncResult:
        return _combine(
            [
                self.roles.sync(csi, spec),
                self.service_accounts.sync(csi, spec),
                self.bindings.sync(csi, spec),
            ]
        )

    def clear(self, csi: CSI) -> SyncResult:
        """Delete the cluster-scoped RBAC objects.

        ServiceAccounts live in the CSI namespace and are collected through
        their owner references.
        """
        return _combine([self.roles.clear(csi), self.bindings.clear(csi)])


def _combine(results: List[SyncResult]) -> SyncResult:
    changed = False
    errors = ErrorList()
    for step_changed, error in results:
        changed = changed or step_changed
        if error is not None:
            errors.append(error)
    return changed, (errors if errors else None)
