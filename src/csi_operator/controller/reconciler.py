"""Reconciliation of a single CSI object.

One call converges every child object of one CSI object and writes back its
status. Calls for the same object must not overlap; the handlers in
csi_operator.handlers serialize them.
"""

import logging
from typing import Any, Dict, Optional

from kubernetes.client.exceptions import ApiException
from pydantic import ValidationError

from csi_operator.config import OperatorConfig
from csi_operator.crd.base import CRDMetadata
from csi_operator.enhancers import EnhancerRegistry
from csi_operator.models.csi import API_VERSION, CSI, KIND, CSISpec
from csi_operator.services.client import describe_api_error
from csi_operator.services.config_map_manager import ConfigMapManager
from csi_operator.services.driver_manager import ControllerDriverManager, NodeDriverManager
from csi_operator.services.rbac_manager import RBACManager
from csi_operator.services.secret_manager import SecretManager
from csi_operator.services.storage_class_manager import StorageClassManager
from . import events
from .conditions import CONDITION_FALSE, CONDITION_TRUE, SYNCED, VALIDATED, update_condition
from .errors import (
    ErrorList,
    InvalidSpecError,
    NoNeedRetryError,
    ReconcileError,
    is_not_found,
    is_permanent,
)
from .ownership import add_finalizer, clear_finalizer
from .status import is_failed, sync_status
from .validation import schema_errors, validate_spec

logger = logging.getLogger(__name__)


class Reconciler:
    """Drives the CSI state machine: teardown, validation, enhancement, sync.

    Args:
        client: ClusterClient (or a compatible fake)
        config: operator configuration handed to enhancers and workloads
        recorder: object with an `event(obj, type, reason, message)` method
        enhancers: EnhancerRegistry, built from `config` when omitted
    """

    def __init__(self, client, config: OperatorConfig, recorder, enhancers=None):
        self.client = client
        self.config = config
        self.recorder = recorder
        self.enhancers = enhancers or EnhancerRegistry(config)

        self.rbac = RBACManager(client)
        self.secrets = SecretManager(client)
        self.storage_classes = StorageClassManager(client)
        self.config_maps = ConfigMapManager(client)
        self.node_driver = NodeDriverManager(client, config)
        self.controller_driver = ControllerDriverManager(client, config)

    def reconcile(self, namespace: str, name: str) -> bool:
        """Fetch a CSI object and handle it; a missing object is not an error.

        Returns:
            bool: False if the object does not exist

        Raises:
            ReconcileError: a retryable failure, the call should be repeated
        """
        try:
            body = self.client.get_csi(namespace, name)
        except ApiException as e:
            if is_not_found(e):
                logger.debug(f"CSI {namespace}/{name} not found, already deleted")
                return False
            self._fetch_failed(namespace, name, describe_api_error(e))
            raise ReconcileError(f"get CSI {namespace}/{name} failed: {describe_api_error(e)}") from e
        except ReconcileError as e:
            self._fetch_failed(namespace, name, str(e))
            raise

        logger.debug(f"Start to handle {namespace}/{name}")
        self.handle(body)
        return True

    def _fetch_failed(self, namespace, name, message):
        reference = {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": {"namespace": namespace, "name": name},
        }
        self.recorder.event(reference, events.EVENT_WARNING, events.FETCH_ERROR, message)

    def handle(self, body: Dict[str, Any]) -> None:
        """Process one fetched CSI object and persist its status."""
        csi = CSI.model_validate(body)
        fetched_status = csi.status.model_dump(mode="json")

        if csi.is_terminating:
            error = self.clear(csi)
        else:
            error = self.sync(csi)

        if error is not None:
            logger.warning(f"Sync {csi.namespace}/{csi.name} failed: {error}")
            self.recorder.event(csi, events.EVENT_WARNING, events.SYNC_ERROR, str(error))

        self.update_status(csi, fetched_status)

        if error is None or is_permanent(error) or isinstance(error, InvalidSpecError):
            return
        if isinstance(error, ReconcileError):
            raise error
        raise ReconcileError(str(error)) from error

    def clear(self, csi: CSI) -> Optional[Exception]:
        """Delete cluster-scoped children, then release the finalizer.

        Namespaced children are left to garbage collection through their
        owner references. The finalizer stays if anything failed.
        """
        logger.info(f"Clear {csi.namespace}/{csi.name}")
        errors = ErrorList()
        for manager in (self.storage_classes, self.rbac):
            _, error = manager.clear(csi)
            if error is not None:
                errors.append(error)
        if errors:
            update_condition(csi.status, SYNCED, CONDITION_FALSE, str(errors))
            return errors

        try:
            clear_finalizer(self.client, csi)
        except ReconcileError as e:
            return e
        return None

    def validate(self, csi: CSI) -> CSISpec:
        """Parse and validate the spec, recording the Validated condition.

        Raises:
            InvalidSpecError: the spec is not valid
        """
        try:
            spec = csi.parse_spec()
            field_errors = validate_spec(spec)
        except ValidationError as e:
            field_errors = schema_errors(e)

        if field_errors:
            error = InvalidSpecError(field_errors)
            update_condition(csi.status, VALIDATED, CONDITION_FALSE, str(error))
            raise error

        update_condition(csi.status, VALIDATED, CONDITION_TRUE)
        return spec

    def sync(self, csi: CSI) -> Optional[Exception]:
        if is_failed(csi):
            logger.debug(f"Skip failed CSI {csi.namespace}/{csi.name}")
            return None

        try:
            spec = self.validate(csi)
        except InvalidSpecError as e:
            return e

        # Children must never exist without the finalizer
        try:
            add_finalizer(self.client, csi)
        except (ApiException, ReconcileError) as e:
            return ReconcileError(f"add finalizer failed: {describe_api_error(e)}")

        try:
            spec = self.enhance(csi, spec)
        except (NoNeedRetryError, ReconcileError) as e:
            sync_status(csi, None, None, spec.has_controller(), e)
            return e

        errors = ErrorList()
        categories = [
            (self.rbac, events.RBAC_SYNCED, "RBAC resources have been synced"),
            (self.secrets, events.SECRETS_SYNCED, "Secrets have been synced"),
            (
                self.storage_classes,
                events.STORAGE_CLASSES_SYNCED,
                "StorageClasses have been synced",
            ),
            (self.config_maps, events.CONFIG_MAPS_SYNCED, "ConfigMaps have been synced"),
        ]
        for manager, reason, message in categories:
            changed, error = manager.sync(csi, spec)
            if error is not None:
                errors.append(error)
            elif changed:
                self.recorder.event(csi, events.EVENT_NORMAL, reason, message)

        children = []
        workloads = {}
        for manager, reason, message in [
            (self.node_driver, events.NODE_DRIVER_SYNCED, "Node drivers have been synced"),
            (
                self.controller_driver,
                events.CONTROLLER_DRIVER_SYNCED,
                "Controller drivers have been synced",
            ),
        ]:
            workload, changed, error = manager.sync_workload(csi, spec)
            workloads[manager.kind] = workload
            if error is not None:
                errors.append(error)
                continue
            if workload is not None:
                children.append(manager.generation_of(workload))
            if changed:
                self.recorder.event(csi, events.EVENT_NORMAL, reason, message)

        error = errors if errors else None
        csi.status.children = children
        sync_status(
            csi,
            workloads.get(self.node_driver.kind),
            workloads.get(self.controller_driver.kind),
            spec.has_controller(),
            error,
        )
        return error

    def enhance(self, csi: CSI, spec: CSISpec) -> CSISpec:
        """Expand a well known driver and persist the result when it differs.

        Raises:
            NoNeedRetryError: the driver or version is unknown, or credentials are malformed
            ReconcileError: the enhanced spec could not be saved
        """
        if not spec.version:
            logger.debug(f"CSI {csi.namespace}/{csi.name} is not a well known type")
            return spec

        try:
            enhanced = self.enhancers.enhance(csi, spec)
        except NoNeedRetryError as e:
            raise type(e)(f"enhance failed: {e}") from e

        if enhanced.model_dump() == spec.model_dump():
            logger.debug(f"CSI {csi.namespace}/{csi.name} already enhanced")
            return spec

        body = csi.to_body()
        body["spec"] = enhanced.to_body()
        try:
            updated = self.client.replace_csi(body)
        except ApiException as e:
            raise ReconcileError(f"save enhanced spec failed: {describe_api_error(e)}") from e

        csi.spec = updated.get("spec", body["spec"])
        csi.metadata = CRDMetadata.model_validate(updated["metadata"])
        logger.info(f"Enhanced CSI {csi.namespace}/{csi.name}")
        return enhanced

    def update_status(self, csi: CSI, fetched_status: Dict[str, Any]) -> None:
        """Write the status back when it changed; a deleted object is fine."""
        if csi.status.model_dump(mode="json") == fetched_status:
            return

        try:
            self.client.replace_csi_status(csi.to_body())
        except ApiException as e:
            if is_not_found(e):
                return
            raise ReconcileError(
                f"update status of {csi.namespace}/{csi.name} failed: {describe_api_error(e)}"
            ) from e
        logger.debug(f"Updated status of {csi.namespace}/{csi.name}")
