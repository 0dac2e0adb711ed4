"""Structural validation of CSI objects."""

import re
from typing import List, NamedTuple

from pydantic import ValidationError

from csi_operator.models.csi import CSISpec

MAX_DRIVER_NAME_LENGTH = 63
DRIVER_NAME_PATTERN = r"^[a-zA-Z0-9][-a-zA-Z0-9_.]{0,61}[a-zA-Z0-9]$"

_driver_name_re = re.compile(DRIVER_NAME_PATTERN)


class FieldError(NamedTuple):
    path: str
    message: str

    def __str__(self):
        return f"{self.path}: {self.message}"


def validate_driver_name(driver_name: str, path: str = "spec.driverName") -> List[FieldError]:
    errors = []
    if len(driver_name) > MAX_DRIVER_NAME_LENGTH:
        errors.append(
            FieldError(
                path,
                f"Too long: must have at most {MAX_DRIVER_NAME_LENGTH} characters",
            )
        )
    if not _driver_name_re.match(driver_name):
        errors.append(
            FieldError(
                path,
                f"Invalid value: {driver_name!r}: must consist of alphanumeric characters, "
                f"'-', '_' or '.', and must start and end with an alphanumeric character "
                f"(e.g. 'csi-rbdplugin', regex used for validation is '{DRIVER_NAME_PATTERN}')",
            )
        )
    return errors


def validate_driver_template(spec: CSISpec, path: str = "spec.driverTemplate") -> List[FieldError]:
    if spec.driverTemplate is None:
        return []

    containers = (spec.driverTemplate.template.get("spec") or {}).get("containers") or []
    if len(containers) == 0:
        return [FieldError(f"{path}.template.spec.containers", "Invalid value: must not be empty")]
    if len(containers) > 1:
        return [
            FieldError(
                f"{path}.template.spec.containers",
                "Invalid value: must have one and only one container",
            )
        ]
    return []


def validate_spec(spec: CSISpec) -> List[FieldError]:
    """Return field errors in spec order; an empty list means valid."""
    return validate_driver_name(spec.driverName) + validate_driver_template(spec)


def schema_errors(error: ValidationError) -> List[FieldError]:
    """Translate a pydantic error for a raw spec into field errors."""
    errors = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        errors.append(FieldError(f"spec.{location}" if location else "spec", item["msg"]))
    return errors
