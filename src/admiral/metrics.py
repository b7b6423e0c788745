"""Prometheus metrics exposed by the controller."""

import logging

from prometheus_client import Counter, start_http_server

logger = logging.getLogger(__name__)

POLICY_TOTAL = Counter(
    "admiral_policy_total",
    "Successful policy reconcile passes",
    [
        "name",
        "policy_server",
        "module",
        "mutating",
        "namespace",
        "failure_policy",
        "policy_status",
    ],
)


def record_policy(policy, policy_status):
    """Count one successful reconcile pass of ``policy``."""
    POLICY_TOTAL.labels(
        name=policy.unique_name,
        policy_server=policy.policy_server,
        module=policy.module,
        mutating=str(policy.is_mutating()).lower(),
        namespace=policy.namespace,
        failure_policy=policy.failure_policy or "",
        policy_status=getattr(policy_status, "value", policy_status),
    ).inc()


def start_metrics_server(port):
    start_http_server(port)
    logger.info(f"Serving metrics on port {port}")
