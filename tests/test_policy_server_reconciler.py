"""Tests for the PolicyServer reconciler."""

import base64

import pytest
import yaml

from admiral import constants
from admiral.errors import TransientReconcileError
from admiral.handlers.policy_server_handler import policies_revision
from admiral.reconcilers.conditions import find_condition
from admiral.tls import dns_names, is_signed_by

from conftest import (
    admission_policy_body,
    cluster_policy_group_body,
    policy_server_body,
)

PREFIXED = "policy-server-default"


def _reconcile(cluster, reconciler, name="default"):
    return reconciler.reconcile(cluster.get(constants.KIND_POLICY_SERVER, name))


def _condition(status, type):
    return find_condition(status["conditions"], type)


class TestReconcilePass:
    """Test a full reconcile pass over a fresh PolicyServer."""

    def test_creates_owned_objects(self, cluster, policy_server_reconciler):
        """Test that every owned object is created and all conditions are True."""
        cluster.add(policy_server_body())

        status = _reconcile(cluster, policy_server_reconciler)

        assert cluster.get("Deployment", PREFIXED, "admiral") is not None
        assert cluster.get("Service", PREFIXED, "admiral") is not None
        assert cluster.get("ConfigMap", PREFIXED, "admiral") is not None
        assert cluster.get("Secret", PREFIXED, "admiral") is not None
        assert cluster.get("Secret", constants.CA_ROOT_SECRET_NAME, "admiral") is not None
        assert cluster.get("PodDisruptionBudget", PREFIXED, "admiral") is None

        assert [c["type"] for c in status["conditions"]] == [
            "CertSecretReconciled",
            "CARootSecretReconciled",
            "ConfigMapReconciled",
            "DeploymentReconciled",
            "ServiceReconciled",
            "PodDisruptionBudgetReconciled",
        ]
        assert all(c["status"] == "True" for c in status["conditions"])
        assert all(c["observedGeneration"] == 1 for c in status["conditions"])

    def test_status_written_to_resource(self, cluster, policy_server_reconciler):
        """Test that the status is patched onto the PolicyServer."""
        cluster.add(policy_server_body())

        _reconcile(cluster, policy_server_reconciler)

        stored = cluster.get(constants.KIND_POLICY_SERVER, "default")
        assert len(stored["status"]["conditions"]) == 6

    def test_second_pass_performs_no_writes(self, cluster, policy_server_reconciler):
        """Test that reconciling an unchanged PolicyServer writes nothing."""
        cluster.add(policy_server_body(minAvailable=1))
        cluster.add(admission_policy_body())

        _reconcile(cluster, policy_server_reconciler)
        cluster.writes.clear()
        _reconcile(cluster, policy_server_reconciler)

        assert cluster.writes == []

    def test_owned_objects_reference_the_server(self, cluster, policy_server_reconciler):
        """Test owner references and labels of the owned objects."""
        server = cluster.add(policy_server_body())

        _reconcile(cluster, policy_server_reconciler)

        deployment = cluster.get("Deployment", PREFIXED, "admiral")
        owner = deployment["metadata"]["ownerReferences"][0]
        assert owner["uid"] == server["metadata"]["uid"]
        assert owner["controller"] is True
        labels = deployment["spec"]["template"]["metadata"]["labels"]
        assert labels[constants.POLICY_SERVER_LABEL_KEY] == "default"
        assert labels[constants.APP_LABEL_KEY] == "admiral-policy-server-default"

    def test_server_certificate_signed_by_ca(self, cluster, policy_server_reconciler):
        """Test the policy server certificate SANs and issuer."""
        cluster.add(policy_server_body())

        _reconcile(cluster, policy_server_reconciler)

        secret = cluster.get("Secret", PREFIXED, "admiral")
        ca_secret = cluster.get("Secret", constants.CA_ROOT_SECRET_NAME, "admiral")
        cert = base64.b64decode(secret["data"]["tls.crt"])
        ca = base64.b64decode(ca_secret["data"]["ca.crt"])
        assert secret["type"] == "kubernetes.io/tls"
        assert is_signed_by(cert, ca)
        assert "policy-server-default.admiral.svc" in dns_names(cert)


class TestConfigMap:
    """Test the policies ConfigMap and its hash."""

    def test_policies_keyed_by_unique_name(self, cluster, policy_server_reconciler):
        """Test that bound policies appear in policies.yml."""
        cluster.add(policy_server_body())
        cluster.add(admission_policy_body(mode="monitor"))
        cluster.add(cluster_policy_group_body())
        cluster.add(admission_policy_body(name="other", policyServer="reserved"))

        _reconcile(cluster, policy_server_reconciler)

        config_map = cluster.get("ConfigMap", PREFIXED, "admiral")
        policies = yaml.safe_load(config_map["data"]["policies.yml"])
        assert sorted(policies) == [
            "clusterwidegroup-signed-images",
            "namespaced-team-a.privileged-pods",
        ]
        single = policies["namespaced-team-a.privileged-pods"]
        assert single["policyMode"] == "monitor"
        assert single["allowedToMutate"] is False
        assert single["namespacedName"] == {"namespace": "team-a", "name": "privileged-pods"}
        group = policies["clusterwidegroup-signed-images"]
        assert group["expression"] == "signed_by_alice() || signed_by_bob()"
        assert group["policies"]["signed_by_bob"]["settings"] == {"owner": "bob"}

    def test_invalid_policies_are_left_out(self, cluster, policy_server_reconciler):
        """Test that a group calling an unknown member is not served."""
        cluster.add(policy_server_body())
        cluster.add(cluster_policy_group_body(expression="signed_by_carol()"))

        _reconcile(cluster, policy_server_reconciler)

        config_map = cluster.get("ConfigMap", PREFIXED, "admiral")
        assert yaml.safe_load(config_map["data"]["policies.yml"]) == {}

    def test_policy_change_rolls_deployment(self, cluster, policy_server_reconciler):
        """Test that a new policy changes the pod template hash annotation."""
        cluster.add(policy_server_body())
        _reconcile(cluster, policy_server_reconciler)
        before = cluster.get("Deployment", PREFIXED, "admiral")

        cluster.add(admission_policy_body())
        cluster.writes.clear()
        _reconcile(cluster, policy_server_reconciler)
        after = cluster.get("Deployment", PREFIXED, "admiral")

        annotation = constants.CONFIG_HASH_ANNOTATION
        assert (
            before["spec"]["template"]["metadata"]["annotations"][annotation]
            != after["spec"]["template"]["metadata"]["annotations"][annotation]
        )
        assert after["metadata"]["uid"] == before["metadata"]["uid"]
        assert ("patch", "Deployment", PREFIXED) in cluster.writes

    def test_sources_config(self, cluster, policy_server_reconciler):
        """Test insecure sources and source authorities rendering."""
        cluster.add(
            policy_server_body(
                insecureSources=["registry.local:5000"],
                sourceAuthorities={"registry.corp:5000": ["PEM-DATA"]},
            )
        )

        _reconcile(cluster, policy_server_reconciler)

        config_map = cluster.get("ConfigMap", PREFIXED, "admiral")
        sources = yaml.safe_load(config_map["data"]["sources.yml"])
        assert sources["insecure_sources"] == ["registry.local:5000"]
        assert sources["source_authorities"]["registry.corp:5000"] == [
            {"type": "Data", "data": "PEM-DATA"}
        ]


class TestDeployment:
    """Test the desired Deployment."""

    def test_optional_fields_cleared(self, cluster, policy_server_reconciler):
        """Test that removing affinity from the spec removes it from the Deployment."""
        cluster.add(policy_server_body(affinity={"nodeAffinity": {"x": "y"}}))
        _reconcile(cluster, policy_server_reconciler)
        pod_spec = cluster.get("Deployment", PREFIXED, "admiral")["spec"]["template"]["spec"]
        assert pod_spec["affinity"] == {"nodeAffinity": {"x": "y"}}

        cluster.add(policy_server_body())
        _reconcile(cluster, policy_server_reconciler)

        pod_spec = cluster.get("Deployment", PREFIXED, "admiral")["spec"]["template"]["spec"]
        assert "affinity" not in pod_spec

    def test_default_security_context(self, cluster, policy_server_reconciler):
        """Test that the restricted security context is used when none is given."""
        cluster.add(policy_server_body())

        _reconcile(cluster, policy_server_reconciler)

        pod_spec = cluster.get("Deployment", PREFIXED, "admiral")["spec"]["template"]["spec"]
        container = pod_spec["containers"][0]
        assert container["securityContext"]["readOnlyRootFilesystem"] is True
        assert pod_spec["securityContext"]["runAsNonRoot"] is True

    def test_mtls_without_configmap_blocks_deployment(self, cluster, config, certificates):
        """Test that a missing client CA ConfigMap is reported, not ignored."""
        from admiral.reconcilers.policy_server import PolicyServerReconciler

        config.client_ca_configmap_name = "client-ca"
        reconciler = PolicyServerReconciler(cluster, config, certificates)
        cluster.add(policy_server_body())

        status = _reconcile(cluster, reconciler)

        condition = _condition(status, "DeploymentReconciled")
        assert condition["status"] == "False"
        assert condition["reason"] == "MissingDependency"
        assert cluster.get("Deployment", PREFIXED, "admiral") is None

    def test_mtls_mounts_client_ca(self, cluster, config, certificates):
        """Test the client CA volume when mTLS is configured."""
        from admiral.reconcilers.policy_server import PolicyServerReconciler

        config.client_ca_configmap_name = "client-ca"
        cluster.add(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": "client-ca", "namespace": "admiral"},
                "data": {"client-ca.crt": "PEM"},
            }
        )
        reconciler = PolicyServerReconciler(cluster, config, certificates)
        cluster.add(policy_server_body())

        _reconcile(cluster, reconciler)

        pod_spec = cluster.get("Deployment", PREFIXED, "admiral")["spec"]["template"]["spec"]
        volumes = {v["name"]: v for v in pod_spec["volumes"]}
        assert volumes["client-ca"]["configMap"]["name"] == "client-ca"


class TestInvalidBudget:
    """Test a PolicyServer with both budget fields set."""

    def test_reports_invalid_spec(self, cluster, policy_server_reconciler):
        """Test that the PDB condition is InvalidSpec and other steps still run."""
        cluster.add(policy_server_body(minAvailable=1, maxUnavailable=1))

        status = _reconcile(cluster, policy_server_reconciler)

        condition = _condition(status, "PodDisruptionBudgetReconciled")
        assert condition["status"] == "False"
        assert condition["reason"] == "InvalidSpec"
        assert _condition(status, "DeploymentReconciled")["status"] == "True"
        assert cluster.get("PodDisruptionBudget", PREFIXED, "admiral") is None


class TestTransientFailure:
    """Test that transient API errors are retried after recording status."""

    def test_status_written_then_raised(self, cluster, policy_server_reconciler,
                                        monkeypatch):
        """Test that a conflict on the Service is raised after the status write."""
        cluster.add(policy_server_body())
        original_create = cluster.create

        def failing_create(kind, body, namespace=None):
            if kind == "Service":
                raise TransientReconcileError("the server is currently unavailable")
            return original_create(kind, body, namespace)

        monkeypatch.setattr(cluster, "create", failing_create)

        with pytest.raises(TransientReconcileError):
            _reconcile(cluster, policy_server_reconciler)

        stored = cluster.get(constants.KIND_POLICY_SERVER, "default")
        condition = _condition(stored["status"], "ServiceReconciled")
        assert condition["status"] == "False"
        assert condition["reason"] == "ReconciliationFailed"


class TestFinalize:
    """Test cascading deletion of a PolicyServer."""

    def test_deletes_owned_objects_and_webhooks(self, cluster, policy_server_reconciler,
                                                policy_reconciler):
        """Test that finalize removes workloads, secrets and bound webhooks."""
        cluster.add(policy_server_body(minAvailable=1))
        cluster.add(admission_policy_body())
        cluster.add(admission_policy_body(name="inject-sidecar", mutating=True))
        _reconcile(cluster, policy_server_reconciler)
        cluster.set_ready_replicas("default", 1)
        for name in ("privileged-pods", "inject-sidecar"):
            policy_reconciler.reconcile(
                cluster.get(constants.KIND_ADMISSION_POLICY, name, "team-a")
            )
        assert cluster.names("ValidatingWebhookConfiguration")
        assert cluster.names("MutatingWebhookConfiguration")
        assert cluster.get("PodDisruptionBudget", PREFIXED, "admiral") is not None

        remaining = policy_server_reconciler.finalize(
            cluster.get(constants.KIND_POLICY_SERVER, "default")
        )

        assert remaining == 0
        for kind in ("Deployment", "Service", "ConfigMap", "PodDisruptionBudget", "Secret"):
            assert cluster.get(kind, PREFIXED, "admiral") is None
        assert cluster.names("ValidatingWebhookConfiguration") == []
        assert cluster.names("MutatingWebhookConfiguration") == []
        assert cluster.get("Secret", constants.CA_ROOT_SECRET_NAME, "admiral") is not None

    def test_waits_for_pods(self, cluster, policy_server_reconciler):
        """Test that running pods are reported so the finalizer is kept."""
        cluster.add(policy_server_body())
        cluster.add(
            {
                "apiVersion": "v1",
                "kind": "Pod",
                "metadata": {
                    "name": "policy-server-default-abc",
                    "namespace": "admiral",
                    "labels": {constants.POLICY_SERVER_LABEL_KEY: "default"},
                },
            }
        )

        remaining = policy_server_reconciler.finalize(
            cluster.get(constants.KIND_POLICY_SERVER, "default")
        )

        assert remaining == 1


class TestRequestRefresh:
    """Test how a policy change is handed to the PolicyServer's own handler."""

    def test_missing_server_is_ignored(self, cluster, policy_server_reconciler):
        assert policy_server_reconciler.request_refresh("absent", "uid-1/1") is False
        assert cluster.writes == []

    def test_deleting_server_is_ignored(self, cluster, policy_server_reconciler):
        body = policy_server_body()
        body["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        cluster.add(body)

        assert policy_server_reconciler.request_refresh("default", "uid-1/1") is False
        assert cluster.writes == []

    def test_annotates_server_without_reconciling(self, cluster, policy_server_reconciler):
        cluster.add(policy_server_body())

        assert policy_server_reconciler.request_refresh("default", "uid-1/1") is True

        server = cluster.get(constants.KIND_POLICY_SERVER, "default")
        assert server["metadata"]["annotations"] == {
            constants.POLICIES_REVISION_ANNOTATION: "uid-1/1"
        }
        assert cluster.writes == [("patch", constants.KIND_POLICY_SERVER, "default")]

    def test_same_revision_is_not_written_twice(self, cluster, policy_server_reconciler):
        cluster.add(policy_server_body())
        policy_server_reconciler.request_refresh("default", "uid-1/1")
        cluster.writes.clear()

        assert policy_server_reconciler.request_refresh("default", "uid-1/1") is False
        assert cluster.writes == []

    def test_transient_failure_propagates(self, cluster, policy_server_reconciler,
                                          monkeypatch):
        cluster.add(policy_server_body())

        def conflict(*args, **kwargs):
            raise TransientReconcileError("conflict")

        monkeypatch.setattr(cluster, "patch", conflict)

        with pytest.raises(TransientReconcileError):
            policy_server_reconciler.request_refresh("default", "uid-1/1")

    def test_revision_annotation_is_outside_kopf_storage_prefix(self):
        assert not constants.POLICIES_REVISION_ANNOTATION.startswith("admiral.io/")


class TestPoliciesRevision:
    def test_follows_generation(self):
        body = admission_policy_body()
        body["metadata"].update(uid="uid-1", generation=3)

        assert policies_revision(body) == "uid-1/3"

    def test_deletion(self):
        body = admission_policy_body()
        body["metadata"]["uid"] = "uid-1"

        assert policies_revision(body, deleted=True) == "uid-1/deleted"
