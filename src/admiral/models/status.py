"""Status types shared by policy servers and policies."""

from enum import Enum
from typing import Optional

from pydantic import Field

from admiral.crd.base import CRDStatus


class PolicyStatusEnum(str, Enum):
    """Scheduling state of a policy."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    UNSCHEDULABLE = "unschedulable"


class PolicyModeStatus(str, Enum):
    PROTECT = "protect"
    MONITOR = "monitor"
    UNKNOWN = "unknown"


class PolicyServerConditionType(str, Enum):
    CERT_SECRET_RECONCILED = "CertSecretReconciled"
    CA_ROOT_SECRET_RECONCILED = "CARootSecretReconciled"
    CONFIG_MAP_RECONCILED = "ConfigMapReconciled"
    DEPLOYMENT_RECONCILED = "DeploymentReconciled"
    SERVICE_RECONCILED = "ServiceReconciled"
    POD_DISRUPTION_BUDGET_RECONCILED = "PodDisruptionBudgetReconciled"


# Order in which conditions are reported on a PolicyServer.
POLICY_SERVER_CONDITION_ORDER = [
    PolicyServerConditionType.CERT_SECRET_RECONCILED,
    PolicyServerConditionType.CA_ROOT_SECRET_RECONCILED,
    PolicyServerConditionType.CONFIG_MAP_RECONCILED,
    PolicyServerConditionType.DEPLOYMENT_RECONCILED,
    PolicyServerConditionType.SERVICE_RECONCILED,
    PolicyServerConditionType.POD_DISRUPTION_BUDGET_RECONCILED,
]


class PolicyConditionType(str, Enum):
    POLICY_VALID = "PolicyValid"
    POLICY_ACTIVE = "PolicyActive"


class ConditionReason(str, Enum):
    RECONCILIATION_SUCCEEDED = "ReconciliationSucceeded"
    RECONCILIATION_FAILED = "ReconciliationFailed"
    INVALID_SPEC = "InvalidSpec"
    MISSING_DEPENDENCY = "MissingDependency"
    POLICY_SERVER_NOT_FOUND = "PolicyServerNotFound"
    POLICY_SERVER_NOT_READY = "PolicyServerNotReady"
    WEBHOOK_CONFIGURED = "WebhookConfigured"
    PENDING = "Pending"


class PolicyServerStatus(CRDStatus):
    """Observed state of a PolicyServer."""


class PolicyStatus(CRDStatus):
    """Observed state of a policy or policy group."""

    policyStatus: PolicyStatusEnum = Field(
        default=PolicyStatusEnum.PENDING, description="Scheduling state of the policy"
    )
    mode: Optional[PolicyModeStatus] = Field(
        default=None, description="Policy mode observed on the policy server"
    )

    class Config:
        use_enum_values = True
