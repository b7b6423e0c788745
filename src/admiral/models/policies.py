"""Policy CRD models.

Four variants (namespaced/cluster-wide x single/group) implement the same
``Policy`` capability interface, so reconcilers never branch on the kind.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from admiral import constants
from admiral.crd.base import CRDMetadata, CRDSpec
from admiral.crd.registry import crd
from admiral.models.status import PolicyModeStatus, PolicyStatus, PolicyStatusEnum


POLICY_PRINTER_COLUMNS = [
    {"name": "Policy Server", "type": "string", "jsonPath": ".spec.policyServer"},
    {"name": "Mutating", "type": "boolean", "jsonPath": ".spec.mutating"},
    {"name": "BackgroundAudit", "type": "boolean", "jsonPath": ".spec.backgroundAudit"},
    {"name": "Mode", "type": "string", "jsonPath": ".spec.mode"},
    {"name": "Observed mode", "type": "string", "jsonPath": ".status.mode"},
    {"name": "Status", "type": "string", "jsonPath": ".status.policyStatus"},
]


class RuleWithOperations(CRDSpec):
    """Operations and resources a webhook applies to."""

    operations: List[str] = Field(
        default_factory=list, description="CREATE, UPDATE, DELETE, CONNECT or *"
    )
    apiGroups: List[str] = Field(default_factory=list, description="API groups")
    apiVersions: List[str] = Field(default_factory=list, description="API versions")
    resources: List[str] = Field(default_factory=list, description="Resources")
    scope: Optional[str] = Field(
        default=None, description="Cluster, Namespaced or *"
    )


class MatchCondition(CRDSpec):
    """CEL expression that must hold for the request to be sent to the webhook."""

    name: str = Field(..., description="Identifier of the match condition")
    expression: str = Field(..., description="CEL expression")


class ContextAwareResource(CRDSpec):
    """Cluster resource a policy may read at evaluation time."""

    apiVersion: str = Field(..., description="API version of the resource")
    kind: str = Field(..., description="Kind of the resource")


class PolicyGroupMember(CRDSpec):
    """A policy that is part of a group."""

    module: str = Field(..., description="Location of the policy module")
    settings: Dict[str, Any] = Field(
        default_factory=dict, description="Settings passed to the policy"
    )
    contextAwareResources: List[ContextAwareResource] = Field(
        default_factory=list, description="Resources the member may read"
    )


class PolicySpecBase(CRDSpec):
    """Fields shared by every policy variant."""

    policyServer: str = Field(
        default=constants.DEFAULT_POLICY_SERVER,
        description="PolicyServer hosting the policy",
    )
    mode: Literal["protect", "monitor"] = Field(
        default="protect", description="protect rejects requests, monitor only logs"
    )
    rules: List[RuleWithOperations] = Field(
        default_factory=list, description="Operations and resources to match"
    )
    failurePolicy: Optional[Literal["Fail", "Ignore"]] = Field(
        default=None, description="How webhook errors are handled"
    )
    matchPolicy: Optional[Literal["Exact", "Equivalent"]] = Field(
        default=None, description="How rules match equivalent resources"
    )
    objectSelector: Optional[Dict[str, Any]] = Field(
        default=None, description="Label selector on the object"
    )
    matchConditions: List[MatchCondition] = Field(
        default_factory=list, description="CEL match conditions"
    )
    sideEffects: Optional[Literal["None", "NoneOnDryRun", "Some", "Unknown"]] = Field(
        default=None, description="Side effects of calling the webhook"
    )
    timeoutSeconds: Optional[int] = Field(
        default=constants.DEFAULT_TIMEOUT_SECONDS, description="Webhook call timeout"
    )
    backgroundAudit: bool = Field(
        default=True, description="Whether the audit scanner evaluates this policy"
    )


class SinglePolicySpec(PolicySpecBase):
    module: str = Field(..., description="Location of the policy module")
    settings: Dict[str, Any] = Field(
        default_factory=dict, description="Settings passed to the policy"
    )
    mutating: bool = Field(default=False, description="Whether the policy mutates")


class GroupSpec(PolicySpecBase):
    expression: str = Field(
        ..., description="Boolean expression combining the member policies"
    )
    message: str = Field(
        ..., description="Message returned when the expression evaluates to false"
    )
    policies: Dict[str, PolicyGroupMember] = Field(
        ..., description="Member policies, referenced by name in the expression"
    )


@crd(
    constants.API_GROUP,
    constants.API_VERSION,
    constants.KIND_ADMISSION_POLICY,
    plural="admissionpolicies",
    scope="Namespaced",
    short_names=["ap"],
    status_model=PolicyStatus,
    printer_columns=POLICY_PRINTER_COLUMNS,
)
class AdmissionPolicySpec(SinglePolicySpec):
    """AdmissionPolicy CRD specification."""


@crd(
    constants.API_GROUP,
    constants.API_VERSION,
    constants.KIND_CLUSTER_ADMISSION_POLICY,
    plural="clusteradmissionpolicies",
    scope="Cluster",
    short_names=["cap"],
    status_model=PolicyStatus,
    printer_columns=POLICY_PRINTER_COLUMNS,
)
class ClusterAdmissionPolicySpec(SinglePolicySpec):
    """ClusterAdmissionPolicy CRD specification."""

    namespaceSelector: Optional[Dict[str, Any]] = Field(
        default=None, description="Label selector on the object's namespace"
    )
    contextAwareResources: List[ContextAwareResource] = Field(
        default_factory=list, description="Resources the policy may read"
    )


@crd(
    constants.API_GROUP,
    constants.API_VERSION,
    constants.KIND_ADMISSION_POLICY_GROUP,
    scope="Namespaced",
    short_names=["apg"],
    status_model=PolicyStatus,
    printer_columns=POLICY_PRINTER_COLUMNS,
)
class AdmissionPolicyGroupSpec(GroupSpec):
    """AdmissionPolicyGroup CRD specification."""


@crd(
    constants.API_GROUP,
    constants.API_VERSION,
    constants.KIND_CLUSTER_ADMISSION_POLICY_GROUP,
    scope="Cluster",
    short_names=["capg"],
    status_model=PolicyStatus,
    printer_columns=POLICY_PRINTER_COLUMNS,
)
class ClusterAdmissionPolicyGroupSpec(GroupSpec):
    """ClusterAdmissionPolicyGroup CRD specification."""

    namespaceSelector: Optional[Dict[str, Any]] = Field(
        default=None, description="Label selector on the object's namespace"
    )


class Policy(BaseModel, ABC):
    """Capability interface implemented by every policy variant."""

    apiVersion: str = constants.API_GROUP_VERSION
    kind: str
    metadata: CRDMetadata
    status: PolicyStatus = Field(default_factory=PolicyStatus)

    class Config:
        extra = "ignore"

    @property
    @abstractmethod
    def unique_name(self):
        """Name of the webhook entry; never shared between variants."""

    @property
    @abstractmethod
    def module(self):
        pass

    @property
    @abstractmethod
    def context_aware_resources(self):
        pass

    @abstractmethod
    def is_mutating(self):
        pass

    @property
    def name(self):
        return self.metadata.name

    @property
    def namespace(self):
        return self.metadata.namespace or ""

    @property
    def cluster_scoped(self):
        return False

    @property
    def is_group(self):
        return False

    @property
    def deleting(self):
        return self.metadata.deletionTimestamp is not None

    @property
    def policy_server(self):
        return self.spec.policyServer

    @property
    def settings(self):
        return {}

    @property
    def expression(self):
        return ""

    @property
    def message(self):
        return ""

    @property
    def members(self):
        return {}

    @property
    def rules(self):
        return self.spec.rules

    @property
    def namespace_selector(self):
        return None

    @property
    def object_selector(self):
        return self.spec.objectSelector

    @property
    def match_conditions(self):
        return self.spec.matchConditions

    @property
    def failure_policy(self):
        return self.spec.failurePolicy

    @property
    def match_policy(self):
        return self.spec.matchPolicy

    @property
    def side_effects(self):
        return self.spec.sideEffects

    @property
    def timeout_seconds(self):
        return self.spec.timeoutSeconds

    @property
    def background_audit(self):
        return self.spec.backgroundAudit

    def is_context_aware(self):
        return len(self.context_aware_resources) > 0

    def get_status(self):
        return self.status

    def set_status(self, policy_status: PolicyStatusEnum):
        self.status.policyStatus = policy_status

    def get_policy_mode(self):
        return self.spec.mode

    def set_policy_mode_status(self, mode: PolicyModeStatus):
        self.status.mode = mode


class AdmissionPolicy(Policy):
    kind: str = constants.KIND_ADMISSION_POLICY
    spec: AdmissionPolicySpec

    @property
    def unique_name(self):
        return f"namespaced-{self.namespace}.{self.name}"

    @property
    def module(self):
        return self.spec.module

    @property
    def settings(self):
        return self.spec.settings

    @property
    def context_aware_resources(self):
        return []

    def is_mutating(self):
        return self.spec.mutating


class ClusterAdmissionPolicy(Policy):
    kind: str = constants.KIND_CLUSTER_ADMISSION_POLICY
    spec: ClusterAdmissionPolicySpec

    @property
    def unique_name(self):
        return f"clusterwide-{self.name}"

    @property
    def cluster_scoped(self):
        return True

    @property
    def module(self):
        return self.spec.module

    @property
    def settings(self):
        return self.spec.settings

    @property
    def namespace_selector(self):
        return self.spec.namespaceSelector

    @property
    def context_aware_resources(self):
        return self.spec.contextAwareResources

    def is_mutating(self):
        return self.spec.mutating


class _PolicyGroup(Policy):
    """Groups are validating only and have no module of their own."""

    @property
    def is_group(self):
        return True

    @property
    def module(self):
        return ""

    @property
    def expression(self):
        return self.spec.expression

    @property
    def message(self):
        return self.spec.message

    @property
    def members(self):
        return self.spec.policies

    @property
    def context_aware_resources(self):
        # Members carry the context aware resources, not the group.
        return []

    def is_context_aware(self):
        return any(member.contextAwareResources for member in self.members.values())

    def is_mutating(self):
        return False


class AdmissionPolicyGroup(_PolicyGroup):
    kind: str = constants.KIND_ADMISSION_POLICY_GROUP
    spec: AdmissionPolicyGroupSpec

    @property
    def unique_name(self):
        return f"namespacedgroup-{self.namespace}.{self.name}"


class ClusterAdmissionPolicyGroup(_PolicyGroup):
    kind: str = constants.KIND_CLUSTER_ADMISSION_POLICY_GROUP
    spec: ClusterAdmissionPolicyGroupSpec

    @property
    def unique_name(self):
        return f"clusterwidegroup-{self.name}"

    @property
    def cluster_scoped(self):
        return True

    @property
    def namespace_selector(self):
        return self.spec.namespaceSelector


POLICY_CLASSES = {
    constants.KIND_ADMISSION_POLICY: AdmissionPolicy,
    constants.KIND_CLUSTER_ADMISSION_POLICY: ClusterAdmissionPolicy,
    constants.KIND_ADMISSION_POLICY_GROUP: AdmissionPolicyGroup,
    constants.KIND_CLUSTER_ADMISSION_POLICY_GROUP: ClusterAdmissionPolicyGroup,
}


def policy_from_body(body, kind=None):
    """Build the policy variant matching ``kind`` (or ``body['kind']``)."""
    kind = kind or body.get("kind")
    try:
        policy_class = POLICY_CLASSES[kind]
    except KeyError:
        raise ValueError(f"Unknown policy kind: {kind}")
    data = dict(body)
    data["kind"] = kind
    return policy_class.model_validate(data)
