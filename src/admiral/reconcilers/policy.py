"""Policy reconciler, shared by the four policy kinds.

Each policy owns exactly one webhook configuration named after its unique
name, so concurrent passes over different policies never touch the same
object.
"""

import copy
import logging

from admiral import constants, metrics
from admiral.errors import MissingDependencyError, TransientReconcileError
from admiral.kube import create_or_patch, delete_ignore_not_found, prune_none
from admiral.models.policies import policy_from_body
from admiral.models.status import (
    ConditionReason,
    PolicyConditionType,
    PolicyModeStatus,
    PolicyStatusEnum,
)
from admiral.reconcilers.conditions import derive_policy_status, set_condition
from admiral.reconcilers.conditions import status_changed
from admiral.validation import validate_policy

logger = logging.getLogger(__name__)

VALIDATING = "ValidatingWebhookConfiguration"
MUTATING = "MutatingWebhookConfiguration"


class PolicyReconciler:
    def __init__(self, kube, config, record_metrics=False):
        self.kube = kube
        self.config = config
        self.namespace = config.deployments_namespace
        self.record_metrics = record_metrics

    def server_state(self, server_name):
        """Return (exists, terminating, ready) for the target policy server."""
        body = self.kube.get(constants.KIND_POLICY_SERVER, server_name)
        if body is None:
            return False, False, False
        terminating = bool(body.get("metadata", {}).get("deletionTimestamp"))

        deployment = self.kube.get(
            "Deployment", constants.POLICY_SERVER_PREFIX + server_name, self.namespace
        )
        ready_replicas = ((deployment or {}).get("status") or {}).get("readyReplicas") or 0
        return True, terminating, ready_replicas >= 1

    def ca_bundle(self):
        """Base64 CA certificate, as stored in the CA root secret."""
        secret = self.kube.get("Secret", constants.CA_ROOT_SECRET_NAME, self.namespace)
        bundle = ((secret or {}).get("data") or {}).get(constants.CA_ROOT_CERT_KEY)
        if not bundle:
            raise MissingDependencyError(
                f"CA root secret {constants.CA_ROOT_SECRET_NAME} is not available"
            )
        return bundle

    def _namespace_selector(self, policy):
        if not policy.cluster_scoped:
            return {"matchLabels": {constants.NAMESPACE_NAME_LABEL_KEY: policy.namespace}}

        selector = copy.deepcopy(policy.namespace_selector)
        if self.config.always_accept_admission_reviews_on_deployments_namespace:
            selector = selector or {}
            selector.setdefault("matchExpressions", []).append(
                {
                    "key": constants.NAMESPACE_NAME_LABEL_KEY,
                    "operator": "NotIn",
                    "values": [self.namespace],
                }
            )
        return selector

    def desired_webhook_configuration(self, policy, ca_bundle):
        unique_name = policy.unique_name
        webhook = {
            "name": f"{unique_name}.{constants.WEBHOOK_NAME_SUFFIX}",
            "clientConfig": {
                "service": {
                    "name": constants.POLICY_SERVER_PREFIX + policy.policy_server,
                    "namespace": self.namespace,
                    "path": f"{constants.WEBHOOK_PATH_PREFIX}/{unique_name}",
                    "port": constants.POLICY_SERVER_PORT,
                },
                "caBundle": ca_bundle,
            },
            "rules": [rule.model_dump(exclude_none=True) for rule in policy.rules],
            "failurePolicy": policy.failure_policy,
            "matchPolicy": policy.match_policy,
            "namespaceSelector": self._namespace_selector(policy),
            "objectSelector": policy.object_selector,
            "sideEffects": policy.side_effects or "None",
            "timeoutSeconds": policy.timeout_seconds,
            "admissionReviewVersions": ["v1"],
        }
        if self.config.match_conditions_supported and policy.match_conditions:
            webhook["matchConditions"] = [
                c.model_dump() for c in policy.match_conditions
            ]

        return {
            "apiVersion": "admissionregistration.k8s.io/v1",
            "kind": MUTATING if policy.is_mutating() else VALIDATING,
            "metadata": {
                "name": unique_name,
                "labels": {
                    constants.PART_OF_LABEL_KEY: constants.PART_OF_VALUE,
                    constants.MANAGED_BY_LABEL_KEY: constants.MANAGED_BY_VALUE,
                    constants.POLICY_SERVER_LABEL_KEY: policy.policy_server,
                    constants.POLICY_KIND_LABEL_KEY: policy.kind,
                },
                "annotations": {
                    constants.POLICY_NAME_ANNOTATION: policy.name,
                    constants.POLICY_NAMESPACE_ANNOTATION: policy.namespace,
                },
            },
            # Unset fields are left to the API server defaults.
            "webhooks": [prune_none(webhook)],
        }

    def apply_webhook(self, policy, ca_bundle):
        desired = self.desired_webhook_configuration(policy, ca_bundle)
        create_or_patch(self.kube, desired)
        other = VALIDATING if desired["kind"] == MUTATING else MUTATING
        delete_ignore_not_found(self.kube, other, policy.unique_name)

    def remove_webhooks(self, policy):
        for kind in (VALIDATING, MUTATING):
            delete_ignore_not_found(self.kube, kind, policy.unique_name)

    def reconcile(self, body, kind=None):
        """One reconcile pass. Returns the status written to the policy.

        Raises:
            TransientReconcileError: after the status is written, so kopf retries
        """
        policy = policy_from_body(body, kind)
        current_status = body.get("status") or {}
        conditions = list(current_status.get("conditions") or [])
        generation = policy.metadata.generation

        errors = validate_policy(policy)
        spec_valid = not errors
        if spec_valid:
            conditions = set_condition(
                conditions, PolicyConditionType.POLICY_VALID, "True",
                ConditionReason.RECONCILIATION_SUCCEEDED,
                observed_generation=generation,
            )
        else:
            logger.warning(f"{policy.kind} {policy.unique_name} is invalid: {errors}")
            conditions = set_condition(
                conditions, PolicyConditionType.POLICY_VALID, "False",
                ConditionReason.INVALID_SPEC, "; ".join(errors),
                observed_generation=generation,
            )

        exists, terminating, ready = self.server_state(policy.policy_server)
        routable = spec_valid and exists and not terminating and ready

        webhook_applied = False
        transient = None
        reason, message = None, ""
        try:
            if routable:
                self.apply_webhook(policy, self.ca_bundle())
                webhook_applied = True
            else:
                self.remove_webhooks(policy)
        except MissingDependencyError as e:
            reason, message = ConditionReason.MISSING_DEPENDENCY, str(e)
        except TransientReconcileError as e:
            logger.warning(f"Failed to converge webhook of {policy.unique_name}: {e}")
            reason, message = ConditionReason.RECONCILIATION_FAILED, str(e)
            transient = e

        policy_status = derive_policy_status(
            spec_valid, exists, terminating, ready, webhook_applied
        )

        if policy_status == PolicyStatusEnum.ACTIVE:
            reason, message = ConditionReason.WEBHOOK_CONFIGURED, ""
        elif not spec_valid:
            reason, message = ConditionReason.INVALID_SPEC, "policy spec is invalid"
        elif not exists or terminating:
            reason = ConditionReason.POLICY_SERVER_NOT_FOUND
            message = f"PolicyServer {policy.policy_server} not found or terminating"
        elif not ready:
            reason = ConditionReason.POLICY_SERVER_NOT_READY
            message = f"PolicyServer {policy.policy_server} has no ready replica"
        conditions = set_condition(
            conditions,
            PolicyConditionType.POLICY_ACTIVE,
            "True" if policy_status == PolicyStatusEnum.ACTIVE else "False",
            reason or ConditionReason.PENDING,
            message,
            observed_generation=generation,
        )

        policy.set_status(policy_status)
        if policy_status == PolicyStatusEnum.ACTIVE:
            policy.set_policy_mode_status(PolicyModeStatus(policy.get_policy_mode()))
        else:
            policy.set_policy_mode_status(PolicyModeStatus.UNKNOWN)

        status = policy.get_status().model_dump(
            mode="json", exclude={"conditions"}, exclude_none=True
        )
        status["conditions"] = conditions
        if status_changed(current_status, status):
            self.kube.patch_status(policy.kind, policy.name, status, policy.namespace or None)
            logger.info(f"{policy.kind} {policy.unique_name} is {policy_status.value}")

        if transient is not None:
            raise transient
        if self.record_metrics:
            metrics.record_policy(policy, policy_status)
        return status

    def finalize(self, body, kind=None):
        """Remove the webhook configurations of a deleted policy."""
        policy = policy_from_body(body, kind)
        self.remove_webhooks(policy)
        logger.info(f"Removed webhooks of {policy.kind} {policy.unique_name}")
