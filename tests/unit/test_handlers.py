import kopf
import pytest

from csi_operator.controller.errors import ReconcileError
from csi_operator.controller.ownership import OWNER_NAME_LABEL, OWNER_NAMESPACE_LABEL
from csi_operator.handlers import csi_handler


class RecordingReconciler:
    def __init__(self, error=None, missing=()):
        self.error = error
        self.missing = set(missing)
        self.calls = []

    def reconcile(self, namespace, name):
        self.calls.append((namespace, name))
        if self.error is not None:
            raise self.error
        return (namespace, name) not in self.missing


@pytest.fixture
def installed():
    def install(reconciler):
        csi_handler.configure(reconciler)
        return reconciler

    yield install
    csi_handler.configure(None)


def test_event_reconciles(installed):
    reconciler = installed(RecordingReconciler())

    csi_handler.csi_event(event={"type": "MODIFIED"}, meta={"namespace": "ns", "name": "a"})
    csi_handler.csi_event(event={"type": "DELETED"}, meta={"namespace": "ns", "name": "a"})

    assert reconciler.calls == [("ns", "a")]


def test_event_logs_retryable_errors(installed):
    reconciler = installed(RecordingReconciler(ReconcileError("boom")))

    csi_handler.csi_event(event={"type": "ADDED"}, meta={"namespace": "ns", "name": "a"})

    assert reconciler.calls == [("ns", "a")]


def test_resync_asks_kopf_to_retry(installed):
    installed(RecordingReconciler(ReconcileError("boom")))

    with pytest.raises(kopf.TemporaryError):
        csi_handler.csi_resync(meta={"namespace": "ns", "name": "a"})


def test_child_events_map_to_owner(installed):
    reconciler = installed(RecordingReconciler())

    csi_handler.child_event(
        meta={
            "name": "sc",
            "labels": {OWNER_NAME_LABEL: "a", OWNER_NAMESPACE_LABEL: "ns"},
        }
    )
    csi_handler.child_event(
        meta={
            "name": "ds",
            "namespace": "ns",
            "ownerReferences": [
                {"apiVersion": "storage.tkestack.io/v1", "kind": "CSI", "name": "b", "controller": True}
            ],
        }
    )
    csi_handler.child_event(meta={"name": "unrelated", "labels": {}})

    assert reconciler.calls == [("ns", "a"), ("ns", "b")]


def test_same_object_shares_a_lock():
    assert csi_handler._lock_for("ns", "a") is csi_handler._lock_for("ns", "a")
    assert csi_handler._lock_for("ns", "a") is not csi_handler._lock_for("ns", "b")


def test_unconfigured_reconciler():
    csi_handler.configure(None)
    with pytest.raises(kopf.PermanentError):
        csi_handler.reconcile("ns", "a")


def test_lock_dropped_when_object_is_gone(installed):
    installed(RecordingReconciler(missing=[("ns", "gone")]))

    csi_handler.child_event(
        meta={"name": "sc", "labels": {OWNER_NAME_LABEL: "gone", OWNER_NAMESPACE_LABEL: "ns"}}
    )
    csi_handler.csi_resync(meta={"namespace": "ns", "name": "present"})

    assert ("ns", "gone") not in csi_handler._locks
    assert ("ns", "present") in csi_handler._locks


def test_lock_kept_on_retryable_error(installed):
    installed(RecordingReconciler(ReconcileError("boom")))

    csi_handler.csi_event(event={"type": "MODIFIED"}, meta={"namespace": "ns", "name": "failing"})

    assert ("ns", "failing") in csi_handler._locks
    csi_handler.forget("ns", "failing")
