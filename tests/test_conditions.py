"""Tests for status conditions and lifecycle helpers."""

import datetime

import pytest

from admiral import constants
from admiral.models.status import PolicyStatusEnum
from admiral.reconcilers.conditions import (
    LifecyclePhase,
    derive_policy_status,
    find_condition,
    lifecycle_phase,
    order_conditions,
    set_condition,
    status_changed,
)

T0 = datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)
T1 = datetime.datetime(2026, 1, 2, tzinfo=datetime.timezone.utc)


class TestSetCondition:
    def test_adds_condition(self):
        conditions = set_condition([], "Ready", "True", "Done", now=T0)

        assert conditions == [
            {
                "type": "Ready",
                "status": "True",
                "reason": "Done",
                "message": "",
                "lastTransitionTime": "2026-01-01T00:00:00Z",
            }
        ]

    def test_transition_time_kept_for_same_status(self):
        conditions = set_condition([], "Ready", "True", "Done", now=T0)
        conditions = set_condition(conditions, "Ready", "True", "StillDone", "msg", now=T1)

        assert conditions[0]["lastTransitionTime"] == "2026-01-01T00:00:00Z"
        assert conditions[0]["reason"] == "StillDone"
        assert conditions[0]["message"] == "msg"

    def test_transition_time_moves_on_status_change(self):
        conditions = set_condition([], "Ready", "True", "Done", now=T0)
        conditions = set_condition(conditions, "Ready", "False", "Broken", now=T1)

        assert conditions[0]["lastTransitionTime"] == "2026-01-02T00:00:00Z"

    def test_observed_generation(self):
        conditions = set_condition([], "Ready", "True", "Done", observed_generation=3)

        assert conditions[0]["observedGeneration"] == 3

    def test_other_conditions_untouched(self):
        conditions = set_condition([], "A", "True", "Done", now=T0)
        conditions = set_condition(conditions, "B", "False", "Broken", now=T1)

        assert [c["type"] for c in conditions] == ["A", "B"]
        assert find_condition(conditions, "A")["status"] == "True"
        assert find_condition(conditions, "C") is None


def test_order_conditions():
    conditions = [{"type": "B"}, {"type": "X"}, {"type": "A"}]

    assert [c["type"] for c in order_conditions(conditions, ["A", "B"])] == ["A", "B", "X"]


@pytest.mark.parametrize(
    "facts, expected",
    [
        ((False, True, False, True, False), PolicyStatusEnum.PENDING),
        ((True, False, False, False, False), PolicyStatusEnum.UNSCHEDULABLE),
        ((True, True, True, True, False), PolicyStatusEnum.UNSCHEDULABLE),
        ((True, True, False, False, False), PolicyStatusEnum.UNSCHEDULABLE),
        ((True, True, False, True, False), PolicyStatusEnum.SCHEDULED),
        ((True, True, False, True, True), PolicyStatusEnum.ACTIVE),
    ],
)
def test_derive_policy_status(facts, expected):
    assert derive_policy_status(*facts) == expected


class TestLifecyclePhase:
    def test_active(self):
        assert lifecycle_phase({"metadata": {}}) == LifecyclePhase.ACTIVE

    def test_terminating(self):
        body = {
            "metadata": {
                "deletionTimestamp": "2026-01-01T00:00:00Z",
                "finalizers": [constants.FINALIZER],
            }
        }

        assert lifecycle_phase(body) == LifecyclePhase.TERMINATING

    def test_gone(self):
        body = {"metadata": {"deletionTimestamp": "2026-01-01T00:00:00Z"}}

        assert lifecycle_phase(body) == LifecyclePhase.GONE


class TestStatusChanged:
    def test_unchanged(self):
        current = {"policyStatus": "active", "conditions": [{"type": "A"}], "extra": 1}

        assert not status_changed(current, {"policyStatus": "active",
                                            "conditions": [{"type": "A"}]})

    def test_changed(self):
        assert status_changed({"policyStatus": "pending"}, {"policyStatus": "active"})

    def test_empty_current(self):
        assert status_changed(None, {"policyStatus": "active"})
