"""Pydantic models for all CRDs."""

from .policy_server import PolicyServer, PolicyServerSpec
from .policies import (
    Policy,
    AdmissionPolicy,
    ClusterAdmissionPolicy,
    AdmissionPolicyGroup,
    ClusterAdmissionPolicyGroup,
    policy_from_body,
)
from .status import PolicyStatus, PolicyStatusEnum, PolicyServerStatus

__all__ = [
    "PolicyServer",
    "PolicyServerSpec",
    "Policy",
    "AdmissionPolicy",
    "ClusterAdmissionPolicy",
    "AdmissionPolicyGroup",
    "ClusterAdmissionPolicyGroup",
    "policy_from_body",
    "PolicyStatus",
    "PolicyStatusEnum",
    "PolicyServerStatus",
]
