"""PodDisruptionBudget of a policy server."""

import logging

from admiral import constants
from admiral.errors import InvalidSpecError
from admiral.kube import create_or_patch, delete_ignore_not_found
from admiral.validation import budget_conflict

logger = logging.getLogger(__name__)


def desired_pod_disruption_budget(server, namespace):
    """Budget manifest for ``server``, or None when no budget is wanted.

    Exactly one of minAvailable/maxUnavailable is set, the other one is
    explicitly cleared so a patch removes it.
    """
    spec = server.spec
    if budget_conflict(spec):
        raise InvalidSpecError(
            f"PolicyServer {server.name}: minAvailable and maxUnavailable "
            "cannot be both set"
        )
    if spec.minAvailable is None and spec.maxUnavailable is None:
        return None

    labels = server.common_labels()
    return {
        "apiVersion": "policy/v1",
        "kind": "PodDisruptionBudget",
        "metadata": {
            "name": server.name_with_prefix,
            "namespace": namespace,
            "labels": labels,
            "ownerReferences": [server.owner_reference()],
        },
        "spec": {
            "selector": {
                "matchLabels": {
                    constants.INSTANCE_LABEL_KEY: labels[constants.INSTANCE_LABEL_KEY],
                    constants.PART_OF_LABEL_KEY: labels[constants.PART_OF_LABEL_KEY],
                    constants.POLICY_SERVER_LABEL_KEY: server.name,
                }
            },
            "minAvailable": spec.minAvailable,
            "maxUnavailable": spec.maxUnavailable if spec.minAvailable is None else None,
        },
    }


def reconcile_pod_disruption_budget(kube, server, namespace):
    """Create, patch or delete the budget. Raises InvalidSpecError on conflict."""
    desired = desired_pod_disruption_budget(server, namespace)
    if desired is None:
        if delete_ignore_not_found(
            kube, "PodDisruptionBudget", server.name_with_prefix, namespace
        ):
            logger.info(f"Removed PodDisruptionBudget of PolicyServer {server.name}")
        return None
    return create_or_patch(kube, desired)
