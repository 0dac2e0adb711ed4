"""Thin dictionary-based wrapper over the typed Kubernetes APIs."""

import logging
from typing import Any, Dict, List, Optional

import kubernetes
import urllib3
from kubernetes.client.exceptions import ApiException

from csi_operator.controller.errors import ClusterTimeoutError
from csi_operator.models.csi import GROUP, PLURAL, VERSION

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 60

# kind -> (api class, method suffix, namespaced)
KINDS = {
    "DaemonSet": (kubernetes.client.AppsV1Api, "daemon_set", True),
    "Deployment": (kubernetes.client.AppsV1Api, "deployment", True),
    "ServiceAccount": (kubernetes.client.CoreV1Api, "service_account", True),
    "Secret": (kubernetes.client.CoreV1Api, "secret", True),
    "ConfigMap": (kubernetes.client.CoreV1Api, "config_map", True),
    "ClusterRole": (kubernetes.client.RbacAuthorizationV1Api, "cluster_role", False),
    "ClusterRoleBinding": (
        kubernetes.client.RbacAuthorizationV1Api,
        "cluster_role_binding",
        False,
    ),
    "StorageClass": (kubernetes.client.StorageV1Api, "storage_class", False),
}


class ClusterClient:
    """Get/list/create/replace/delete of the object kinds the operator owns.

    Objects go in and come out as camelCase dictionaries, the same shape
    kopf hands to handlers. Every call is bounded by REQUEST_TIMEOUT seconds;
    transport failures are raised as ClusterTimeoutError, API errors are
    raised unchanged.
    """

    def __init__(self, api_client=None, request_timeout=REQUEST_TIMEOUT):
        self.api_client = api_client or kubernetes.client.ApiClient()
        self.request_timeout = request_timeout
        self._apis = {}

    def is_namespaced(self, kind: str) -> bool:
        return KINDS[kind][2]

    def _api(self, api_class):
        if api_class not in self._apis:
            self._apis[api_class] = api_class(self.api_client)
        return self._apis[api_class]

    def _method(self, kind: str, verb: str, all_namespaces: bool = False):
        api_class, suffix, namespaced = KINDS[kind]
        if all_namespaces:
            name = f"list_{suffix}_for_all_namespaces"
        elif namespaced:
            name = f"{verb}_namespaced_{suffix}"
        else:
            name = f"{verb}_{suffix}"
        return getattr(self._api(api_class), name)

    def _call(self, func, *args, **kwargs):
        try:
            return func(*args, _request_timeout=self.request_timeout, **kwargs)
        except urllib3.exceptions.HTTPError as e:
            raise ClusterTimeoutError(f"cluster request failed: {e}") from e

    def _to_dict(self, obj) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        if self.is_namespaced(kind):
            result = self._call(self._method(kind, "read"), name, namespace)
        else:
            result = self._call(self._method(kind, "read"), name)
        return self._to_dict(result)

    def list(
        self, kind: str, label_selector: str, namespace: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """List objects by label selector.

        A namespaced kind is listed across all namespaces when no namespace
        is given.
        """
        if self.is_namespaced(kind) and namespace:
            result = self._call(
                self._method(kind, "list"), namespace, label_selector=label_selector
            )
        elif self.is_namespaced(kind):
            result = self._call(
                self._method(kind, "list", all_namespaces=True),
                label_selector=label_selector,
            )
        else:
            result = self._call(self._method(kind, "list"), label_selector=label_selector)
        return [self._to_dict(item) for item in result.items or []]

    def create(self, kind: str, body: Dict[str, Any]) -> Dict[str, Any]:
        metadata = body["metadata"]
        if self.is_namespaced(kind):
            result = self._call(self._method(kind, "create"), metadata["namespace"], body)
        else:
            result = self._call(self._method(kind, "create"), body)
        logger.debug(f"Created {kind} {metadata['name']}")
        return self._to_dict(result)

    def replace(self, kind: str, body: Dict[str, Any]) -> Dict[str, Any]:
        metadata = body["metadata"]
        if self.is_namespaced(kind):
            result = self._call(
                self._method(kind, "replace"), metadata["name"], metadata["namespace"], body
            )
        else:
            result = self._call(self._method(kind, "replace"), metadata["name"], body)
        logger.debug(f"Replaced {kind} {metadata['name']}")
        return self._to_dict(result)

    def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> None:
        if self.is_namespaced(kind):
            self._call(
                self._method(kind, "delete"),
                name,
                namespace,
                propagation_policy="Background",
            )
        else:
            self._call(self._method(kind, "delete"), name, propagation_policy="Background")
        logger.debug(f"Deleted {kind} {name}")

    # CSI objects

    def _custom_objects(self):
        return self._api(kubernetes.client.CustomObjectsApi)

    def get_csi(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._call(
            self._custom_objects().get_namespaced_custom_object,
            GROUP,
            VERSION,
            namespace,
            PLURAL,
            name,
        )

    def replace_csi(self, body: Dict[str, Any]) -> Dict[str, Any]:
        metadata = body["metadata"]
        return self._call(
            self._custom_objects().replace_namespaced_custom_object,
            GROUP,
            VERSION,
            metadata["namespace"],
            PLURAL,
            metadata["name"],
            body,
        )

    def replace_csi_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        metadata = body["metadata"]
        return self._call(
            self._custom_objects().replace_namespaced_custom_object_status,
            GROUP,
            VERSION,
            metadata["namespace"],
            PLURAL,
            metadata["name"],
            body,
        )


def describe_api_error(error: BaseException) -> str:
    if isinstance(error, ApiException):
        return f"{error.status} {error.reason}"
    return str(error)
