"""kopf handlers for PolicyServer resources."""

import logging

import kopf

from admiral import constants
from admiral.errors import backoff_delay
from admiral.handlers import plural_of, reconcile_or_retry
from admiral.reconcilers.conditions import LifecyclePhase, lifecycle_phase

logger = logging.getLogger(__name__)


def _failed_conditions(status):
    return [c for c in status.get("conditions", []) if c.get("status") != "True"]


def _policy_server_of(policy):
    return (policy.get("spec") or {}).get("policyServer", constants.DEFAULT_POLICY_SERVER)


def policies_revision(policy, deleted=False):
    """Value of the revision annotation for a change of ``policy``."""
    metadata = policy.get("metadata") or {}
    suffix = "deleted" if deleted else str(metadata.get("generation", 0))
    return f"{metadata.get('uid', '')}/{suffix}"


def register_policy_server_handlers(registry, crd_registry, reconciler, config):
    """Bind the PolicyServer reconciler to kopf."""
    group, version = constants.API_GROUP, constants.API_VERSION
    plural = plural_of(crd_registry, constants.KIND_POLICY_SERVER)

    @kopf.on.create(group, version, plural, registry=registry)
    @kopf.on.update(group, version, plural, registry=registry)
    @kopf.on.resume(group, version, plural, registry=registry)
    def policy_server_reconcile(body, name, retry, **kwargs):
        """Converge the objects owned by a PolicyServer."""
        status = reconcile_or_retry(reconciler.reconcile, retry, body)
        failed = _failed_conditions(status)
        if failed:
            kopf.warn(
                body,
                reason="ReconciliationIncomplete",
                message="; ".join(f"{c['type']}: {c.get('message', '')}" for c in failed),
            )
        else:
            kopf.info(body, reason="Reconciled", message=f"PolicyServer {name} reconciled")

    @kopf.timer(group, version, plural, interval=config.resync_interval,
                idle=config.resync_interval, registry=registry)
    def policy_server_resync(body, retry, **kwargs):
        """Level-based resync so drift and late dependencies are picked up."""
        if lifecycle_phase(body) != LifecyclePhase.ACTIVE:
            return
        reconcile_or_retry(reconciler.reconcile, retry, body)

    @kopf.on.delete(group, version, plural, registry=registry)
    def policy_server_delete(body, name, retry, **kwargs):
        """Delete owned objects; keep the finalizer until the pods are gone."""
        remaining = reconcile_or_retry(reconciler.finalize, retry, body)
        if remaining:
            raise kopf.TemporaryError(
                f"waiting for {remaining} policy server pods to terminate",
                delay=backoff_delay(retry, cap=30.0),
            )
        logger.info(f"PolicyServer {name} cleanup completed")

    def register_policy_refresh(kind):
        policy_plural = plural_of(crd_registry, kind)

        @kopf.on.create(group, version, policy_plural, registry=registry)
        @kopf.on.update(group, version, policy_plural, registry=registry)
        def refresh_bound_server(body, old, retry, **kwargs):
            """Have the server a policy is (or was) bound to rebuild its ConfigMap."""
            servers = {_policy_server_of(body)}
            if old:
                servers.add(_policy_server_of(old))
            revision = policies_revision(body)
            for server_name in sorted(servers):
                reconcile_or_retry(reconciler.request_refresh, retry, server_name, revision)

        @kopf.on.delete(group, version, policy_plural, registry=registry)
        def refresh_server_after_delete(body, retry, **kwargs):
            reconcile_or_retry(
                reconciler.request_refresh,
                retry,
                _policy_server_of(body),
                policies_revision(body, deleted=True),
            )

    for kind in constants.POLICY_KINDS:
        register_policy_refresh(kind)
