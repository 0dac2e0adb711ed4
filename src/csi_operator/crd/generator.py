"""CRD manifest generation from pydantic models."""

import hashlib
import json
import logging
from pathlib import Path

import yaml
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from .registry import CRDRegistry

logger = logging.getLogger(__name__)

PRESERVE_UNKNOWN_FIELDS = "x-kubernetes-preserve-unknown-fields"


class OpenAPIConverter:
    """Convert pydantic schemas to structural OpenAPI v3 schemas for CRDs."""

    @staticmethod
    def convert_schema(pydantic_schema):
        """Convert a pydantic JSON schema to an OpenAPI v3 object schema."""
        defs = pydantic_schema.get("$defs", {})
        openapi_schema = {"type": "object", "properties": {}}

        if "properties" in pydantic_schema:
            openapi_schema["properties"] = OpenAPIConverter._convert_properties(
                pydantic_schema["properties"], defs
            )

        if "required" in pydantic_schema:
            openapi_schema["required"] = pydantic_schema["required"]

        return openapi_schema

    @staticmethod
    def _convert_properties(properties, defs):
        return {
            prop_name: OpenAPIConverter._convert_property(prop_schema, defs)
            for prop_name, prop_schema in properties.items()
        }

    @staticmethod
    def _convert_property(prop_schema, defs):
        """Convert a single property schema."""
        if "$ref" in prop_schema:
            def_name = prop_schema["$ref"].replace("#/$defs/", "")
            resolved = dict(defs.get(def_name, {}))
            if "description" in prop_schema:
                resolved["description"] = prop_schema["description"]
            return OpenAPIConverter._convert_property(resolved, defs)

        # Optional[X] comes out of pydantic as anyOf [X, null]
        if "anyOf" in prop_schema:
            variants = [v for v in prop_schema["anyOf"] if v.get("type") != "null"]
            nullable = len(variants) != len(prop_schema["anyOf"])
            converted = (
                OpenAPIConverter._convert_property(variants[0], defs)
                if len(variants) == 1
                else {"type": "object", PRESERVE_UNKNOWN_FIELDS: True}
            )
            if nullable:
                converted["nullable"] = True
            if "description" in prop_schema:
                converted["description"] = prop_schema["description"]
            return converted

        prop_type = prop_schema.get("type")
        result = {}

        if prop_type == "array":
            result["type"] = "array"
            result["items"] = OpenAPIConverter._convert_property(
                prop_schema.get("items", {}), defs
            )
        elif prop_type == "object" or prop_type is None:
            result["type"] = "object"
            if "properties" in prop_schema:
                result["properties"] = OpenAPIConverter._convert_properties(
                    prop_schema["properties"], defs
                )
                if "required" in prop_schema:
                    result["required"] = prop_schema["required"]
            elif isinstance(prop_schema.get("additionalProperties"), dict):
                result["additionalProperties"] = OpenAPIConverter._convert_property(
                    prop_schema["additionalProperties"], defs
                )
            else:
                # Embedded Kubernetes objects (pod templates, secrets, ...)
                result[PRESERVE_UNKNOWN_FIELDS] = True
        else:
            result["type"] = prop_type
            if "format" in prop_schema:
                result["format"] = prop_schema["format"]
            if "enum" in prop_schema:
                result["enum"] = prop_schema["enum"]
            if prop_schema.get("default") is not None:
                result["default"] = prop_schema["default"]

        if "description" in prop_schema:
            result["description"] = prop_schema["description"]

        return result


class CRDManager:
    """Generates CRD manifests and applies them to the cluster."""

    def __init__(self, output_dir=None):
        self.output_dir = Path(output_dir) if output_dir else Path("crds/generated")
        self.registry = CRDRegistry()
        self.converter = OpenAPIConverter()

    def generate_all_crds(self, force=False):
        """Write CRD YAML files, skipping the work when the models did not change.

        Returns:
            bool: True if CRDs were generated/updated, False if no changes needed
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)

        current_hash = self._calculate_models_hash()
        hash_file = self.output_dir / ".models_hash"

        if not force and hash_file.exists():
            if hash_file.read_text().strip() == current_hash:
                logger.info("CRD models unchanged, skipping generation")
                return False

        models = self.registry.get_all_models()
        if not models:
            logger.warning("No CRD models found to generate")
            return False

        logger.info("Generating CRDs from pydantic models...")
        generated_files = []

        for model_info in models.values():
            crd_def = self.generate_crd_definition(model_info)
            filename = f"{crd_def['metadata']['name']}.yaml"

            with open(self.output_dir / filename, "w") as f:
                yaml.dump(crd_def, f, default_flow_style=False, sort_keys=False)

            generated_files.append(filename)
            logger.info(f"Generated CRD: {filename}")

        self._generate_kustomization(generated_files)
        hash_file.write_text(current_hash)

        logger.info(f"Generated {len(generated_files)} CRD files")
        return True

    def generate_crd_definition(self, model_info):
        """Build one apiextensions.k8s.io/v1 CustomResourceDefinition."""
        model_class = model_info["model"]
        group = model_info["group"]
        plural = model_info["plural"]

        spec_schema = self.converter.convert_schema(model_class.model_json_schema())

        status_model = model_info.get("status_model")
        if status_model is not None:
            status_schema = self.converter.convert_schema(
                status_model.model_json_schema()
            )
        else:
            status_schema = {"type": "object", PRESERVE_UNKNOWN_FIELDS: True}
        # Keeps fields written by other controllers (kopf progress, ...)
        status_schema[PRESERVE_UNKNOWN_FIELDS] = True

        version = {
            "name": model_info["version"],
            "served": True,
            "storage": True,
            "schema": {
                "openAPIV3Schema": {
                    "type": "object",
                    "properties": {
                        "spec": spec_schema,
                        "status": status_schema,
                    },
                    "required": ["spec"],
                }
            },
            "subresources": {"status": {}},
        }
        if model_info.get("printer_columns"):
            version["additionalPrinterColumns"] = model_info["printer_columns"]

        names = {
            "plural": plural,
            "singular": model_info["singular"],
            "kind": model_info["kind"],
            "listKind": f"{model_info['kind']}List",
        }
        if model_info.get("short_names"):
            names["shortNames"] = model_info["short_names"]

        return {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {"name": f"{plural}.{group}"},
            "spec": {
                "group": group,
                "versions": [version],
                "scope": model_info["scope"],
                "names": names,
            },
        }

    def _generate_kustomization(self, filenames):
        kustomization = {
            "apiVersion": "kustomize.config.k8s.io/v1beta1",
            "kind": "Kustomization",
            "resources": sorted(filenames),
        }

        with open(self.output_dir / "kustomization.yaml", "w") as f:
            yaml.dump(kustomization, f, default_flow_style=False)

        logger.info("Generated kustomization.yaml")

    def _calculate_models_hash(self):
        """Hash every model schema for change detection."""
        self.registry.discover_models()
        models = self.registry.get_all_models()

        model_data = {}
        for model_key, model_info in sorted(models.items()):
            model_data[model_key] = {
                "schema": model_info["model"].model_json_schema(),
                "group": model_info["group"],
                "version": model_info["version"],
                "kind": model_info["kind"],
                "scope": model_info["scope"],
            }

        model_json = json.dumps(model_data, sort_keys=True)
        return hashlib.sha256(model_json.encode()).hexdigest()

    def get_crds_as_dict(self):
        """Generate all CRDs in memory, keyed by CRD name."""
        self.registry.discover_models()

        crds = {}
        for model_info in self.registry.get_all_models().values():
            crd_def = self.generate_crd_definition(model_info)
            crds[crd_def["metadata"]["name"]] = crd_def
        return crds

    def apply_crds_to_cluster(self, api=None) -> bool:
        """Create or replace every registered CRD in the cluster.

        Kubernetes configuration must already be loaded.
        """
        api = api or client.ApiextensionsV1Api()

        applied_count = 0
        for crd_name, crd_def in self.get_crds_as_dict().items():
            try:
                existing = api.read_custom_resource_definition(crd_name)
                crd_def["metadata"]["resourceVersion"] = (
                    existing.metadata.resource_version
                )
                api.replace_custom_resource_definition(name=crd_name, body=crd_def)
                logger.info(f"Updated CRD: {crd_name}")
            except ApiException as e:
                if e.status != 404:
                    logger.error(f"Failed to apply CRD {crd_name}: {e}")
                    continue
                api.create_custom_resource_definition(body=crd_def)
                logger.info(f"Created CRD: {crd_name}")

            applied_count += 1

        logger.info(f"Applied {applied_count} CRDs to cluster")
        return applied_count > 0

    def validate_generated_crds(self):
        """Check that the generated files are well-formed CRD documents."""
        if not self.output_dir.exists():
            logger.error("CRD output directory does not exist")
            return False

        crd_files = [
            f for f in self.output_dir.glob("*.yaml") if f.name != "kustomization.yaml"
        ]
        if not crd_files:
            logger.error("No CRD files found to validate")
            return False

        valid_count = 0
        for crd_file in crd_files:
            with open(crd_file, "r") as f:
                crd_def = yaml.safe_load(f)

            if not isinstance(crd_def, dict):
                logger.error(f"Invalid YAML in {crd_file}")
                continue

            required_fields = ["apiVersion", "kind", "metadata", "spec"]
            if not all(field in crd_def for field in required_fields):
                logger.error(f"Missing required fields in {crd_file}")
                continue

            if crd_def["kind"] != "CustomResourceDefinition":
                logger.error(f"Not a CRD: {crd_file}")
                continue

            valid_count += 1
            logger.debug(f"Valid CRD: {crd_file}")

        logger.info(f"Validated {valid_count}/{len(crd_files)} CRD files")
        return valid_count == len(crd_files)
