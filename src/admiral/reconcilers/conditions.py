"""Status conditions, policy status derivation and lifecycle phases."""

import datetime
from enum import Enum

from admiral import constants
from admiral.kube import is_subset
from admiral.models.status import PolicyStatusEnum


class LifecyclePhase(str, Enum):
    ACTIVE = "Active"
    TERMINATING = "Terminating"
    GONE = "Gone"


def _timestamp(now=None):
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


def set_condition(conditions, type, status, reason, message="",
                  observed_generation=None, now=None):
    """Return ``conditions`` with one condition set.

    lastTransitionTime only moves when the status value changes.
    """
    status = status if isinstance(status, str) else str(bool(status))
    type = getattr(type, "value", type)
    reason = getattr(reason, "value", reason)

    def build(transition):
        condition = {
            "type": type,
            "status": status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": transition,
        }
        if observed_generation is not None:
            condition["observedGeneration"] = observed_generation
        return condition

    updated = []
    found = False
    for condition in conditions or []:
        if condition.get("type") != type:
            updated.append(condition)
            continue
        found = True
        transition = condition.get("lastTransitionTime")
        if condition.get("status") != status or not transition:
            transition = _timestamp(now)
        updated.append(build(transition))

    if not found:
        updated.append(build(_timestamp(now)))
    return updated


def find_condition(conditions, type):
    type = getattr(type, "value", type)
    for condition in conditions or []:
        if condition.get("type") == type:
            return condition
    return None


def order_conditions(conditions, order):
    """Sort conditions by ``order``; unknown types keep their place at the end."""
    rank = {getattr(t, "value", t): i for i, t in enumerate(order)}
    return sorted(conditions, key=lambda c: rank.get(c.get("type"), len(rank)))


def derive_policy_status(spec_valid, server_exists, server_terminating,
                         server_ready, webhook_applied):
    """Re-derive the policy status from the facts observed in this pass."""
    if not spec_valid:
        return PolicyStatusEnum.PENDING
    if not server_exists or server_terminating:
        return PolicyStatusEnum.UNSCHEDULABLE
    if not server_ready:
        return PolicyStatusEnum.UNSCHEDULABLE
    if webhook_applied:
        return PolicyStatusEnum.ACTIVE
    return PolicyStatusEnum.SCHEDULED


def lifecycle_phase(body, finalizer=constants.FINALIZER):
    metadata = body.get("metadata", {})
    if not metadata.get("deletionTimestamp"):
        return LifecyclePhase.ACTIVE
    if finalizer in (metadata.get("finalizers") or []):
        return LifecyclePhase.TERMINATING
    return LifecyclePhase.GONE


def status_changed(current, desired):
    """True when writing ``desired`` would change the stored status."""
    return not is_subset(desired, current or {})
