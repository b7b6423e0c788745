"""Pytest configuration and shared fixtures for admiral tests."""

import copy
import itertools

import pytest

from admiral import constants
from admiral.config import OperatorConfig
from admiral.errors import TransientReconcileError
from admiral.reconcilers.certs import CertificateReconciler
from admiral.reconcilers.policy import PolicyReconciler
from admiral.reconcilers.policy_server import PolicyServerReconciler

CLUSTER_SCOPED_KINDS = {
    constants.KIND_POLICY_SERVER,
    constants.KIND_CLUSTER_ADMISSION_POLICY,
    constants.KIND_CLUSTER_ADMISSION_POLICY_GROUP,
    "ValidatingWebhookConfiguration",
    "MutatingWebhookConfiguration",
}

NAMESPACE = "admiral"


def merge_patch(target, patch):
    """RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def _matches(labels, selector):
    if not selector:
        return True
    for term in selector.split(","):
        key, value = term.split("=", 1)
        if labels.get(key) != value:
            return False
    return True


class FakeCluster:
    """In-memory stand-in for KubeClient, recording every write."""

    def __init__(self):
        self.objects = {}
        self.writes = []
        self._counter = itertools.count(1)

    def _key(self, kind, name, namespace):
        if kind in CLUSTER_SCOPED_KINDS:
            namespace = None
        return kind, namespace, name

    def _bump(self, body):
        body["metadata"]["resourceVersion"] = str(next(self._counter))

    def add(self, body):
        """Seed an object without recording a write."""
        body = copy.deepcopy(body)
        metadata = body.setdefault("metadata", {})
        metadata.setdefault("uid", f"uid-{next(self._counter)}")
        metadata.setdefault("generation", 1)
        self._bump(body)
        key = self._key(body["kind"], metadata["name"], metadata.get("namespace"))
        self.objects[key] = body
        return copy.deepcopy(body)

    def get(self, kind, name, namespace=None):
        obj = self.objects.get(self._key(kind, name, namespace))
        return copy.deepcopy(obj)

    def list(self, kind, namespace=None, label_selector=None):
        items = []
        for (obj_kind, obj_namespace, _), obj in self.objects.items():
            if obj_kind != kind:
                continue
            if namespace is not None and obj_namespace != namespace:
                continue
            labels = obj["metadata"].get("labels") or {}
            if _matches(labels, label_selector):
                items.append(copy.deepcopy(obj))
        return items

    def create(self, kind, body, namespace=None):
        name = body["metadata"]["name"]
        key = self._key(kind, name, namespace or body["metadata"].get("namespace"))
        if key in self.objects:
            raise TransientReconcileError(f"{kind} {name} already exists")
        self.writes.append(("create", kind, name))
        body = copy.deepcopy(body)
        body["kind"] = kind
        if namespace and kind not in CLUSTER_SCOPED_KINDS:
            body["metadata"]["namespace"] = namespace
        return self.add(body)

    def patch(self, kind, name, body, namespace=None):
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            return None
        self.writes.append(("patch", kind, name))
        updated = merge_patch(self.objects[key], body)
        self._bump(updated)
        self.objects[key] = updated
        return copy.deepcopy(updated)

    def replace(self, kind, name, body, namespace=None):
        key = self._key(kind, name, namespace)
        current = self.objects.get(key)
        if current is None:
            return None
        expected = body["metadata"].get("resourceVersion")
        if expected != current["metadata"]["resourceVersion"]:
            raise TransientReconcileError(f"{kind} {name} was modified concurrently")
        self.writes.append(("replace", kind, name))
        body = copy.deepcopy(body)
        body["metadata"]["uid"] = current["metadata"]["uid"]
        self._bump(body)
        self.objects[key] = body
        return copy.deepcopy(body)

    def delete(self, kind, name, namespace=None):
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            return False
        self.writes.append(("delete", kind, name))
        del self.objects[key]
        return True

    def patch_status(self, kind, name, status, namespace=None):
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            return None
        self.writes.append(("patch_status", kind, name))
        obj = self.objects[key]
        obj["status"] = merge_patch(obj.get("status") or {}, status)
        return copy.deepcopy(obj)

    # Test helpers

    def set_ready_replicas(self, server_name, replicas):
        key = ("Deployment", NAMESPACE, constants.POLICY_SERVER_PREFIX + server_name)
        self.objects[key].setdefault("status", {})["readyReplicas"] = replicas

    def names(self, kind):
        return sorted(name for (k, _, name) in self.objects if k == kind)


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def config():
    return OperatorConfig(deployments_namespace=NAMESPACE, match_conditions_supported=True)


@pytest.fixture
def certificates(cluster, config):
    return CertificateReconciler(cluster, config)


@pytest.fixture
def policy_server_reconciler(cluster, config, certificates):
    return PolicyServerReconciler(cluster, config, certificates)


@pytest.fixture
def policy_reconciler(cluster, config):
    return PolicyReconciler(cluster, config)


# ============================================================================
# Resource builders
# ============================================================================


def policy_server_body(name="default", **spec):
    body = {
        "apiVersion": constants.API_GROUP_VERSION,
        "kind": constants.KIND_POLICY_SERVER,
        "metadata": {"name": name, "finalizers": [constants.FINALIZER]},
        "spec": {"image": "ghcr.io/admiral/policy-server:v1.0.0", "replicas": 1},
    }
    body["spec"].update(spec)
    return body


def admission_policy_body(name="privileged-pods", namespace="team-a", **spec):
    body = {
        "apiVersion": constants.API_GROUP_VERSION,
        "kind": constants.KIND_ADMISSION_POLICY,
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "module": "registry://ghcr.io/admiral/policies/pod-privileged:v1.0.0",
            "rules": [
                {
                    "apiGroups": [""],
                    "apiVersions": ["v1"],
                    "resources": ["pods"],
                    "operations": ["CREATE", "UPDATE"],
                }
            ],
        },
    }
    body["spec"].update(spec)
    return body


def cluster_admission_policy_body(name="privileged-pods", **spec):
    body = admission_policy_body(name=name, **spec)
    body["kind"] = constants.KIND_CLUSTER_ADMISSION_POLICY
    del body["metadata"]["namespace"]
    return body


def cluster_policy_group_body(name="signed-images", **spec):
    body = {
        "apiVersion": constants.API_GROUP_VERSION,
        "kind": constants.KIND_CLUSTER_ADMISSION_POLICY_GROUP,
        "metadata": {"name": name},
        "spec": {
            "expression": "signed_by_alice() || signed_by_bob()",
            "message": "the image is not signed by Alice or Bob",
            "policies": {
                "signed_by_alice": {
                    "module": "registry://ghcr.io/admiral/policies/verify-signature:v1",
                    "settings": {"owner": "alice"},
                },
                "signed_by_bob": {
                    "module": "registry://ghcr.io/admiral/policies/verify-signature:v1",
                    "settings": {"owner": "bob"},
                },
            },
            "rules": [
                {
                    "apiGroups": [""],
                    "apiVersions": ["v1"],
                    "resources": ["pods"],
                    "operations": ["CREATE"],
                }
            ],
        },
    }
    body["spec"].update(spec)
    return body
