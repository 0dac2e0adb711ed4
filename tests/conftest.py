"""Shared fixtures: an in-memory cluster and an event recorder."""

import copy
import itertools
import uuid

import pytest
from kubernetes.client.exceptions import ApiException

from csi_operator.config import OperatorConfig
from csi_operator.controller.reconciler import Reconciler
from csi_operator.models.csi import API_VERSION, KIND
from csi_operator.services.client import KINDS

NAMESPACE = "kube-system"


def not_found(kind, name):
    return ApiException(status=404, reason=f"{kind} {name} Not Found")


def conflict(kind, name):
    return ApiException(status=409, reason=f"{kind} {name} Conflict")


def parse_selector(selector):
    result = {}
    for term in (selector or "").split(","):
        if term:
            key, value = term.split("=", 1)
            result[key] = value
    return result


class FakeClusterClient:
    """In-memory stand-in for ClusterClient.

    Objects are stored as dictionaries; generation moves when the spec of a
    workload or CSI object changes, resourceVersion on every write. Calls can
    be made to fail with `fail(verb, kind)`.
    """

    def __init__(self):
        self.objects = {}
        self.csis = {}
        self.calls = []
        self.failures = {}
        self._versions = itertools.count(1)

    # helpers

    def fail(self, verb, kind, error=None, times=None):
        self.failures[(verb, kind)] = [error or ApiException(status=500, reason="Boom"), times]

    def _check(self, verb, kind, name=""):
        self.calls.append((verb, kind, name))
        failure = self.failures.get((verb, kind))
        if failure is None:
            return
        error, times = failure
        if times is not None:
            if times <= 0:
                return
            failure[1] = times - 1
        raise error

    def _key(self, kind, name, namespace):
        return kind, (namespace or "") if KINDS[kind][2] else "", name

    def _stamp(self, obj, generation=1):
        metadata = obj.setdefault("metadata", {})
        metadata["resourceVersion"] = str(next(self._versions))
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata["generation"] = generation
        return obj

    def writes(self, kind=None):
        """Calls that modified the cluster, optionally of one kind."""
        return [
            call
            for call in self.calls
            if call[0] in ("create", "replace", "delete") and (kind is None or call[1] == kind)
        ]

    def objects_of(self, kind):
        return [copy.deepcopy(obj) for key, obj in sorted(self.objects.items()) if key[0] == kind]

    def put(self, kind, obj):
        """Store an object directly, bypassing the call log."""
        obj = copy.deepcopy(obj)
        obj.setdefault("kind", kind)
        metadata = obj["metadata"]
        self._stamp(obj, metadata.get("generation", 1))
        self.objects[self._key(kind, metadata["name"], metadata.get("namespace"))] = obj
        return obj

    # ClusterClient interface

    def is_namespaced(self, kind):
        return KINDS[kind][2]

    def get(self, kind, name, namespace=None):
        self._check("get", kind, name)
        obj = self.objects.get(self._key(kind, name, namespace))
        if obj is None:
            raise not_found(kind, name)
        return copy.deepcopy(obj)

    def list(self, kind, label_selector, namespace=None):
        self._check("list", kind)
        wanted = parse_selector(label_selector)
        result = []
        for (obj_kind, obj_namespace, _), obj in sorted(self.objects.items()):
            if obj_kind != kind or (namespace and obj_namespace != namespace):
                continue
            labels = obj["metadata"].get("labels") or {}
            if all(labels.get(k) == v for k, v in wanted.items()):
                result.append(copy.deepcopy(obj))
        return result

    def create(self, kind, body):
        metadata = body["metadata"]
        self._check("create", kind, metadata["name"])
        key = self._key(kind, metadata["name"], metadata.get("namespace"))
        if key in self.objects:
            raise conflict(kind, metadata["name"])
        obj = self._stamp(copy.deepcopy(body))
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def replace(self, kind, body):
        metadata = body["metadata"]
        self._check("replace", kind, metadata["name"])
        key = self._key(kind, metadata["name"], metadata.get("namespace"))
        live = self.objects.get(key)
        if live is None:
            raise not_found(kind, metadata["name"])
        if metadata.get("resourceVersion") not in (None, live["metadata"]["resourceVersion"]):
            raise conflict(kind, metadata["name"])

        obj = copy.deepcopy(body)
        generation = live["metadata"].get("generation", 1)
        if obj.get("spec") != live.get("spec"):
            generation += 1
        if "status" in live:
            obj["status"] = copy.deepcopy(live["status"])
        self._stamp(obj, generation)
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def delete(self, kind, name, namespace=None):
        self._check("delete", kind, name)
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise not_found(kind, name)
        del self.objects[key]

    # CSI objects

    def add_csi(self, name, spec, namespace=NAMESPACE, **metadata):
        body = {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": dict(metadata, name=name, namespace=namespace),
            "spec": copy.deepcopy(spec),
        }
        self._stamp(body)
        self.csis[(namespace, name)] = body
        return copy.deepcopy(body)

    def csi(self, name, namespace=NAMESPACE):
        return copy.deepcopy(self.csis.get((namespace, name)))

    def get_csi(self, namespace, name):
        self._check("get", KIND, name)
        body = self.csis.get((namespace, name))
        if body is None:
            raise not_found(KIND, name)
        return copy.deepcopy(body)

    def replace_csi(self, body):
        metadata = body["metadata"]
        self._check("replace", KIND, metadata["name"])
        key = (metadata["namespace"], metadata["name"])
        live = self.csis.get(key)
        if live is None:
            raise not_found(KIND, metadata["name"])
        if metadata.get("resourceVersion") != live["metadata"]["resourceVersion"]:
            raise conflict(KIND, metadata["name"])

        obj = copy.deepcopy(body)
        generation = live["metadata"]["generation"]
        if obj.get("spec") != live.get("spec"):
            generation += 1
        obj["status"] = copy.deepcopy(live.get("status"))
        if obj["status"] is None:
            obj.pop("status")
        self._stamp(obj, generation)

        if obj["metadata"].get("deletionTimestamp") and not obj["metadata"].get("finalizers"):
            del self.csis[key]
        else:
            self.csis[key] = obj
        return copy.deepcopy(obj)

    def replace_csi_status(self, body):
        metadata = body["metadata"]
        self._check("replace_status", KIND, metadata["name"])
        key = (metadata["namespace"], metadata["name"])
        live = self.csis.get(key)
        if live is None:
            raise not_found(KIND, metadata["name"])
        live["status"] = copy.deepcopy(body.get("status"))
        live["metadata"]["resourceVersion"] = str(next(self._versions))
        return copy.deepcopy(live)

    def mark_deleted(self, name, namespace=NAMESPACE):
        self.csis[(namespace, name)]["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"


class FakeRecorder:
    def __init__(self):
        self.events = []

    def event(self, obj, event_type, reason, message):
        body = obj.to_body() if hasattr(obj, "to_body") else obj
        self.events.append((body["metadata"]["name"], event_type, reason, message))

    def reasons(self):
        return [reason for _, _, reason, _ in self.events]

    def clear(self):
        self.events = []


@pytest.fixture
def config():
    return OperatorConfig()


@pytest.fixture
def cluster():
    return FakeClusterClient()


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest.fixture
def reconciler(cluster, config, recorder):
    return Reconciler(cluster, config, recorder)


@pytest.fixture
def spec_factory():
    return custom_spec


def driver_template(image="example.com/csi-driver:v1.0.0"):
    return {
        "template": {
            "spec": {
                "containers": [
                    {
                        "name": "driver",
                        "image": image,
                        "securityContext": {"privileged": True},
                    }
                ]
            }
        }
    }


def custom_spec(**overrides):
    """Spec of a custom (not well known) driver with node and controller sidecars."""
    spec = {
        "driverName": "com.example.csi",
        "driverTemplate": driver_template(),
        "node": {"nodeRegistrar": {"image": "example.com/registrar:v1.1.0"}},
        "controller": {
            "replicas": 1,
            "provisioner": {"image": "example.com/provisioner:v1.2.0"},
            "attacher": {"image": "example.com/attacher:v1.1.0"},
        },
        "secrets": [{"metadata": {"name": "example-secret"}, "stringData": {"key": "value"}}],
        "storageClasses": [
            {"metadata": {"name": "example-sc"}, "parameters": {"type": "fast"}}
        ],
        "configMaps": [{"metadata": {"name": "example-config"}, "data": {"a": "b"}}],
    }
    spec.update(overrides)
    return spec
