"""CRD Registry for discovering the operator's custom resource models."""

import importlib
import pkgutil
import logging

logger = logging.getLogger(__name__)


class CRDRegistry:
    """Global registry for CRD models with auto-discovery."""

    _instance = None
    _initialised = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._models = {}
            cls._instance._initialised = False
        return cls._instance

    def __init__(self):
        if not self._initialised:
            self._models = {}
            self._initialised = True

    @classmethod
    def register(
        cls,
        group,
        version,
        kind,
        plural=None,
        scope="Namespaced",
        status_model=None,
        short_names=None,
        printer_columns=None,
    ):
        """Decorator to register CRD spec models.

        Args:
            group: API group (e.g., 'storage.tkestack.io')
            version: API version (e.g., 'v1')
            kind: Kind name (e.g., 'CSI')
            plural: Plural name (defaults to kind.lower() + 's')
            scope: 'Namespaced' or 'Cluster'
            status_model: Optional pydantic model describing the status subresource
            short_names: Optional list of kubectl short names
            printer_columns: Optional additionalPrinterColumns entries
        """

        def decorator(model_class):
            if not hasattr(model_class, "__annotations__"):
                raise ValueError(
                    f"CRD model {model_class.__name__} must have type annotations"
                )

            model_class._crd_group = group
            model_class._crd_version = version
            model_class._crd_kind = kind
            model_class._crd_plural = plural or f"{kind.lower()}s"
            model_class._crd_scope = scope

            registry_instance = cls()
            key = f"{group}/{version}/{kind}"

            registry_instance._models[key] = {
                "model": model_class,
                "status_model": status_model,
                "group": group,
                "version": version,
                "kind": kind,
                "plural": model_class._crd_plural,
                "scope": scope,
                "singular": kind.lower(),
                "short_names": list(short_names or []),
                "printer_columns": list(printer_columns or []),
            }

            logger.debug(f"Registered CRD: {key}")
            return model_class

        return decorator

    def discover_models(self, package_paths=None):
        """Import every module of the given packages so their models register.

        Args:
            package_paths: List of package paths to search (e.g., ['csi_operator.models'])
        """
        if package_paths is None:
            package_paths = ["csi_operator.models"]

        for package_path in package_paths:
            self._discover_in_package(package_path)

    def _discover_in_package(self, package_path):
        try:
            package = importlib.import_module(package_path)
        except ImportError as e:
            logger.warning(f"Package {package_path} not found: {e}")
            return

        if hasattr(package, "__path__"):
            for _, module_name, _ in pkgutil.iter_modules(package.__path__):
                full_module_name = f"{package_path}.{module_name}"
                importlib.import_module(full_module_name)
                logger.debug(f"Discovered models in {full_module_name}")

    def get_all_models(self):
        """Get all registered CRD models."""
        return self._models.copy()
