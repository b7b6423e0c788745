"""kopf handlers for the four policy kinds."""

import logging

import kopf

from admiral import constants
from admiral.handlers import plural_of, reconcile_or_retry
from admiral.models.status import PolicyStatusEnum
from admiral.reconcilers.conditions import LifecyclePhase, lifecycle_phase

logger = logging.getLogger(__name__)


def register_policy_handlers(registry, crd_registry, reconciler, config):
    """Bind the policy reconciler to every policy kind."""
    for kind in constants.POLICY_KINDS:
        _register_kind(registry, reconciler, config, kind, plural_of(crd_registry, kind))


def _register_kind(registry, reconciler, config, kind, plural):
    group, version = constants.API_GROUP, constants.API_VERSION

    @kopf.on.create(group, version, plural, registry=registry)
    @kopf.on.update(group, version, plural, registry=registry)
    @kopf.on.resume(group, version, plural, registry=registry)
    def policy_reconcile(body, name, retry, **kwargs):
        status = reconcile_or_retry(reconciler.reconcile, retry, body, kind)
        if status["policyStatus"] == PolicyStatusEnum.ACTIVE.value:
            kopf.info(body, reason="PolicyActive", message=f"{kind} {name} is active")
        else:
            conditions = {c["type"]: c for c in status["conditions"]}
            active = conditions.get("PolicyActive", {})
            kopf.warn(
                body,
                reason=active.get("reason", "PolicyNotActive"),
                message=f"{kind} {name} is {status['policyStatus']}: "
                        f"{active.get('message', '')}",
            )

    @kopf.timer(group, version, plural, interval=config.resync_interval,
                idle=config.resync_interval, registry=registry)
    def policy_resync(body, retry, **kwargs):
        if lifecycle_phase(body) != LifecyclePhase.ACTIVE:
            return
        reconcile_or_retry(reconciler.reconcile, retry, body, kind)

    @kopf.on.delete(group, version, plural, registry=registry)
    def policy_delete(body, retry, **kwargs):
        reconcile_or_retry(reconciler.finalize, retry, body, kind)
