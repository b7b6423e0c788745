"""Tests for the policy reconciler and its status state machine."""

from admiral import constants
from admiral.reconcilers.conditions import find_condition
from admiral.reconcilers.policy import PolicyReconciler

from conftest import (
    admission_policy_body,
    cluster_admission_policy_body,
    cluster_policy_group_body,
    policy_server_body,
)

UNIQUE_NAME = "namespaced-team-a.privileged-pods"


def _get_policy(cluster, kind=constants.KIND_ADMISSION_POLICY,
                name="privileged-pods", namespace="team-a"):
    return cluster.get(kind, name, namespace)


def _start_server(cluster, policy_server_reconciler, ready=True):
    cluster.add(policy_server_body())
    policy_server_reconciler.reconcile(cluster.get(constants.KIND_POLICY_SERVER, "default"))
    if ready:
        cluster.set_ready_replicas("default", 1)


class TestPolicyStatus:
    """Test how the policy status follows the policy server."""

    def test_unschedulable_without_server(self, cluster, policy_reconciler):
        """Test a policy bound to a PolicyServer that does not exist."""
        cluster.add(admission_policy_body())

        status = policy_reconciler.reconcile(_get_policy(cluster))

        assert status["policyStatus"] == "unschedulable"
        assert status["mode"] == "unknown"
        active = find_condition(status["conditions"], "PolicyActive")
        assert active["status"] == "False"
        assert active["reason"] == "PolicyServerNotFound"
        assert cluster.names("ValidatingWebhookConfiguration") == []

    def test_never_active_without_ready_replica(self, cluster, policy_reconciler,
                                                policy_server_reconciler):
        """Test that a server without ready replicas keeps the policy unschedulable."""
        _start_server(cluster, policy_server_reconciler, ready=False)
        cluster.add(admission_policy_body())

        status = policy_reconciler.reconcile(_get_policy(cluster))

        assert status["policyStatus"] == "unschedulable"
        active = find_condition(status["conditions"], "PolicyActive")
        assert active["reason"] == "PolicyServerNotReady"
        assert cluster.names("ValidatingWebhookConfiguration") == []

    def test_becomes_active_once_server_ready(self, cluster, policy_reconciler,
                                              policy_server_reconciler):
        """Test the unschedulable to active transition."""
        _start_server(cluster, policy_server_reconciler, ready=False)
        cluster.add(admission_policy_body(mode="monitor"))
        policy_reconciler.reconcile(_get_policy(cluster))

        cluster.set_ready_replicas("default", 1)
        status = policy_reconciler.reconcile(_get_policy(cluster))

        assert status["policyStatus"] == "active"
        assert status["mode"] == "monitor"
        active = find_condition(status["conditions"], "PolicyActive")
        assert active["status"] == "True"
        assert active["reason"] == "WebhookConfigured"
        assert _get_policy(cluster)["status"]["policyStatus"] == "active"

    def test_back_to_unschedulable_when_server_deleted(self, cluster, policy_reconciler,
                                                       policy_server_reconciler):
        """Test that the webhook is removed when the PolicyServer is terminating."""
        _start_server(cluster, policy_server_reconciler)
        cluster.add(admission_policy_body())
        policy_reconciler.reconcile(_get_policy(cluster))
        assert cluster.names("ValidatingWebhookConfiguration") == [UNIQUE_NAME]

        server = cluster.get(constants.KIND_POLICY_SERVER, "default")
        server["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        cluster.add(server)
        status = policy_reconciler.reconcile(_get_policy(cluster))

        assert status["policyStatus"] == "unschedulable"
        assert cluster.names("ValidatingWebhookConfiguration") == []

    def test_invalid_module_is_pending(self, cluster, policy_reconciler,
                                       policy_server_reconciler):
        """Test that an invalid spec is pending and never routed."""
        _start_server(cluster, policy_server_reconciler)
        cluster.add(admission_policy_body(module="ftp://example.com/policy.wasm"))

        status = policy_reconciler.reconcile(_get_policy(cluster))

        assert status["policyStatus"] == "pending"
        valid = find_condition(status["conditions"], "PolicyValid")
        assert valid["status"] == "False"
        assert valid["reason"] == "InvalidSpec"
        assert cluster.names("ValidatingWebhookConfiguration") == []

    def test_second_pass_performs_no_writes(self, cluster, policy_reconciler,
                                            policy_server_reconciler):
        """Test that an active, unchanged policy is not written again."""
        _start_server(cluster, policy_server_reconciler)
        cluster.add(admission_policy_body())
        policy_reconciler.reconcile(_get_policy(cluster))

        cluster.writes.clear()
        policy_reconciler.reconcile(_get_policy(cluster))

        assert cluster.writes == []

    def test_transition_time_kept_while_status_unchanged(self, cluster, policy_reconciler):
        """Test that lastTransitionTime only moves on a status change."""
        cluster.add(admission_policy_body())
        first = policy_reconciler.reconcile(_get_policy(cluster))
        second = policy_reconciler.reconcile(_get_policy(cluster))

        before = find_condition(first["conditions"], "PolicyActive")
        after = find_condition(second["conditions"], "PolicyActive")
        assert before["lastTransitionTime"] == after["lastTransitionTime"]


class TestWebhookConfiguration:
    """Test the webhook configuration owned by a policy."""

    def test_validating_webhook(self, cluster, policy_reconciler, policy_server_reconciler):
        """Test routing, CA bundle and namespace selector of a namespaced policy."""
        _start_server(cluster, policy_server_reconciler)
        cluster.add(admission_policy_body())

        policy_reconciler.reconcile(_get_policy(cluster))

        configuration = cluster.get("ValidatingWebhookConfiguration", UNIQUE_NAME)
        webhook = configuration["webhooks"][0]
        ca_secret = cluster.get("Secret", constants.CA_ROOT_SECRET_NAME, "admiral")
        assert webhook["name"] == f"{UNIQUE_NAME}.admiral.io"
        assert webhook["clientConfig"]["service"] == {
            "name": "policy-server-default",
            "namespace": "admiral",
            "path": f"/validate/{UNIQUE_NAME}",
            "port": 8443,
        }
        assert webhook["clientConfig"]["caBundle"] == ca_secret["data"]["ca.crt"]
        assert webhook["namespaceSelector"] == {
            "matchLabels": {"kubernetes.io/metadata.name": "team-a"}
        }
        assert webhook["sideEffects"] == "None"
        assert webhook["admissionReviewVersions"] == ["v1"]
        labels = configuration["metadata"]["labels"]
        assert labels[constants.POLICY_SERVER_LABEL_KEY] == "default"

    def test_switching_to_mutating(self, cluster, policy_reconciler,
                                   policy_server_reconciler):
        """Test that only one webhook configuration kind exists per policy."""
        _start_server(cluster, policy_server_reconciler)
        cluster.add(admission_policy_body())
        policy_reconciler.reconcile(_get_policy(cluster))

        cluster.add(admission_policy_body(mutating=True))
        policy_reconciler.reconcile(_get_policy(cluster))

        assert cluster.names("ValidatingWebhookConfiguration") == []
        assert cluster.names("MutatingWebhookConfiguration") == [UNIQUE_NAME]

    def test_match_conditions_gated(self, cluster, config, policy_server_reconciler):
        """Test that match conditions are dropped on clusters that lack them."""
        _start_server(cluster, policy_server_reconciler)
        conditions = [{"name": "not-system", "expression": "true"}]
        cluster.add(admission_policy_body(matchConditions=conditions))

        config.match_conditions_supported = False
        PolicyReconciler(cluster, config).reconcile(_get_policy(cluster))
        webhook = cluster.get("ValidatingWebhookConfiguration", UNIQUE_NAME)["webhooks"][0]
        assert "matchConditions" not in webhook

        config.match_conditions_supported = True
        PolicyReconciler(cluster, config).reconcile(_get_policy(cluster))
        webhook = cluster.get("ValidatingWebhookConfiguration", UNIQUE_NAME)["webhooks"][0]
        assert webhook["matchConditions"] == conditions

    def test_cluster_policy_excludes_deployments_namespace(self, cluster, config,
                                                           policy_server_reconciler):
        """Test the always-accept flag on cluster-wide policies."""
        _start_server(cluster, policy_server_reconciler)
        cluster.add(
            cluster_admission_policy_body(
                namespaceSelector={"matchLabels": {"env": "prod"}}
            )
        )
        config.always_accept_admission_reviews_on_deployments_namespace = True

        PolicyReconciler(cluster, config).reconcile(
            cluster.get(constants.KIND_CLUSTER_ADMISSION_POLICY, "privileged-pods")
        )

        webhook = cluster.get(
            "ValidatingWebhookConfiguration", "clusterwide-privileged-pods"
        )["webhooks"][0]
        assert webhook["namespaceSelector"] == {
            "matchLabels": {"env": "prod"},
            "matchExpressions": [
                {
                    "key": "kubernetes.io/metadata.name",
                    "operator": "NotIn",
                    "values": ["admiral"],
                }
            ],
        }

    def test_policy_group_is_validating(self, cluster, policy_reconciler,
                                        policy_server_reconciler):
        """Test that a policy group gets a validating webhook of its own."""
        _start_server(cluster, policy_server_reconciler)
        cluster.add(cluster_policy_group_body())

        status = policy_reconciler.reconcile(
            cluster.get(constants.KIND_CLUSTER_ADMISSION_POLICY_GROUP, "signed-images")
        )

        assert status["policyStatus"] == "active"
        assert cluster.names("ValidatingWebhookConfiguration") == [
            "clusterwidegroup-signed-images"
        ]

    def test_finalize_removes_webhook(self, cluster, policy_reconciler,
                                      policy_server_reconciler):
        """Test that deleting a policy removes its webhook configuration."""
        _start_server(cluster, policy_server_reconciler)
        cluster.add(admission_policy_body())
        policy_reconciler.reconcile(_get_policy(cluster))

        policy_reconciler.finalize(_get_policy(cluster))

        assert cluster.names("ValidatingWebhookConfiguration") == []

    def test_finalize_keeps_webhook_of_similarly_named_policy(
        self, cluster, policy_reconciler, policy_server_reconciler
    ):
        """Test a cluster policy named like a group that shares its suffix."""
        _start_server(cluster, policy_server_reconciler)
        cluster.add(cluster_admission_policy_body(name="group-signed"))
        cluster.add(cluster_policy_group_body(name="signed"))
        policy_reconciler.reconcile(
            cluster.get(constants.KIND_CLUSTER_ADMISSION_POLICY, "group-signed")
        )
        policy_reconciler.reconcile(
            cluster.get(constants.KIND_CLUSTER_ADMISSION_POLICY_GROUP, "signed")
        )
        assert sorted(cluster.names("ValidatingWebhookConfiguration")) == [
            "clusterwide-group-signed",
            "clusterwidegroup-signed",
        ]

        policy_reconciler.finalize(
            cluster.get(constants.KIND_CLUSTER_ADMISSION_POLICY_GROUP, "signed")
        )

        assert cluster.names("ValidatingWebhookConfiguration") == [
            "clusterwide-group-signed"
        ]
