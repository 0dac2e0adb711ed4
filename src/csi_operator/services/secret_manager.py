"""Secrets declared by a CSI object."""

import base64
import copy
import logging

from .base import ChildManager, user_metadata

logger = logging.getLogger(__name__)

SECRET_TYPE_OPAQUE = "Opaque"


def normalize_secret(csi, secret):
    """Turn a declared Secret into the form the API server returns.

    stringData is folded into base64 data, which is how it is stored.
    """
    data = dict(secret.get("data") or {})
    for key, value in (secret.get("stringData") or {}).items():
        data[key] = base64.b64encode(value.encode()).decode()

    result = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": user_metadata(csi, secret),
        "type": secret.get("type") or SECRET_TYPE_OPAQUE,
    }
    if data:
        result["data"] = data
    if secret.get("immutable") is not None:
        result["immutable"] = secret["immutable"]
    return result


class SecretManager(ChildManager):
    kind = "Secret"
    payload_fields = ("type", "data")
    payload_defaults = {"type": SECRET_TYPE_OPAQUE}
    list_all_namespaces = True

    def desired(self, csi, spec):
        secrets = [normalize_secret(csi, copy.deepcopy(secret)) for secret in spec.secrets]
        logger.debug(f"{len(secrets)} Secrets declared by {csi.namespace}/{csi.name}")
        return secrets
