"""Generic list-diff-converge loop shared by every child object manager."""

import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from kubernetes.client.exceptions import ApiException

from csi_operator.controller.errors import ErrorList, ReconcileError, is_not_found
from csi_operator.controller.ownership import owner_selector, stamp_owner
from csi_operator.controller.utils import merge_object_meta, object_key, prune_empty
from csi_operator.models.csi import CSI, CSISpec
from .client import describe_api_error

logger = logging.getLogger(__name__)

SyncResult = Tuple[bool, Optional[Exception]]


class ChildManager:
    """Converge the children of one kind towards the desired set.

    Subclasses set `kind`, the top-level `payload_fields` compared between
    desired and live objects, and implement `desired()`.
    """

    kind = ""
    api_version = "v1"
    payload_fields: Tuple[str, ...] = ()
    # Server-side defaults applied before comparing payloads
    payload_defaults: Dict[str, Any] = {}
    # Objects whose payload cannot be updated in place
    recreate_on_change = False
    # Namespaced kinds listed across all namespaces instead of the CSI's own
    list_all_namespaces = False

    def __init__(self, client):
        self.client = client

    @property
    def namespaced(self) -> bool:
        return self.client.is_namespaced(self.kind)

    def desired(self, csi: CSI, spec: CSISpec) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def payload(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        result = {}
        for field in self.payload_fields:
            value = prune_empty(obj.get(field))
            if value in (None, [], {}):
                value = self.payload_defaults.get(field)
            result[field] = value
        return result

    def needs_update(self, csi: CSI, desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
        return self.payload(desired) != self.payload(live)

    def list_owned(self, csi: CSI) -> List[Dict[str, Any]]:
        namespace = None
        if self.namespaced and not self.list_all_namespaces:
            namespace = csi.namespace
        return self.client.list(self.kind, owner_selector(csi), namespace=namespace)

    def sync(self, csi: CSI, spec: CSISpec) -> SyncResult:
        _, changed, error = self.converge(csi, self.desired(csi, spec))
        return changed, error

    def converge(
        self, csi: CSI, desired: List[Dict[str, Any]]
    ) -> Tuple[List[Dict[str, Any]], bool, Optional[Exception]]:
        """Create, update and prune children so the live set matches `desired`.

        Returns:
            (the resulting live objects in desired order, changed, error)
        """
        try:
            live_objects = self.list_owned(csi)
        except (ApiException, ReconcileError) as e:
            return [], False, ReconcileError(
                f"list {self.kind} of {csi.namespace}/{csi.name} failed: {describe_api_error(e)}"
            )

        live_by_key = {object_key(obj): obj for obj in live_objects}
        errors = ErrorList()
        results = []
        changed = False

        for obj in desired:
            stamp_owner(obj, csi, self.namespaced)
            key = object_key(obj)
            try:
                result, obj_changed = self._sync_one(csi, obj, live_by_key.pop(key, None))
            except (ApiException, ReconcileError) as e:
                errors.append(
                    ReconcileError(f"sync {self.kind} {key} failed: {describe_api_error(e)}")
                )
                continue
            results.append(result)
            changed = changed or obj_changed

        for key, obj in live_by_key.items():
            try:
                if self._delete(obj):
                    logger.info(f"Pruned {self.kind} {key} of {csi.namespace}/{csi.name}")
                    changed = True
            except (ApiException, ReconcileError) as e:
                errors.append(
                    ReconcileError(f"delete {self.kind} {key} failed: {describe_api_error(e)}")
                )

        return results, changed, (errors if errors else None)

    def clear(self, csi: CSI) -> SyncResult:
        """Delete every child of this kind labelled with the CSI as owner."""
        _, changed, error = self.converge(csi, [])
        return changed, error

    def _create(self, csi: CSI, obj: Dict[str, Any]) -> Dict[str, Any]:
        key = object_key(obj)
        try:
            result = self.client.create(self.kind, obj)
        except ApiException as e:
            if e.status == 409:
                # Same name, but not labelled with this CSI as owner
                raise ReconcileError(
                    f"{self.kind} {key} already exists and is not owned by "
                    f"{csi.namespace}/{csi.name}"
                ) from e
            raise
        logger.info(f"Created {self.kind} {key}")
        return result

    def _delete(self, obj: Dict[str, Any]) -> bool:
        metadata = obj["metadata"]
        try:
            self.client.delete(self.kind, metadata["name"], metadata.get("namespace"))
        except ApiException as e:
            if is_not_found(e):
                return False
            raise
        return True

    def _sync_one(
        self, csi: CSI, obj: Dict[str, Any], live: Optional[Dict[str, Any]]
    ) -> Tuple[Dict[str, Any], bool]:
        key = object_key(obj)
        if live is None:
            return self._create(csi, obj), True

        live = copy.deepcopy(live)
        meta_changed = merge_object_meta(obj["metadata"], live["metadata"])
        payload_changed = self.needs_update(csi, obj, live)
        if not meta_changed and not payload_changed:
            return live, False

        if payload_changed and self.recreate_on_change:
            logger.info(f"Recreate {self.kind} {key}")
            self._delete(live)
            return self._create(csi, obj), True

        body = dict(live, apiVersion=self.api_version, kind=self.kind)
        if payload_changed:
            body = copy.deepcopy(obj)
            body["metadata"] = live["metadata"]
        logger.info(f"Update {self.kind} {key}")
        return self.client.replace(self.kind, body), True


def user_metadata(csi: CSI, obj: Dict[str, Any]) -> Dict[str, Any]:
    """Metadata of a declared namespaced object, defaulting to the CSI namespace."""
    metadata = obj.get("metadata") or {}
    result = {
        "name": metadata.get("name", ""),
        "namespace": metadata.get("namespace") or csi.namespace,
    }
    for field in ("labels", "annotations"):
        if metadata.get(field):
            result[field] = dict(metadata[field])
    return result
