"""PolicyServer CRD model."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from admiral import constants
from admiral.crd.base import CRDMetadata, CRDSpec
from admiral.crd.registry import crd
from admiral.models.status import PolicyServerStatus


class PolicyServerSecurity(CRDSpec):
    """Security contexts for the policy server workload."""

    container: Optional[Dict[str, Any]] = Field(
        default=None, description="securityContext of the policy server container"
    )
    pod: Optional[Dict[str, Any]] = Field(
        default=None, description="securityContext of the policy server Pod"
    )


@crd(
    constants.API_GROUP,
    constants.API_VERSION,
    constants.KIND_POLICY_SERVER,
    scope="Cluster",
    short_names=["ps"],
    status_model=PolicyServerStatus,
    printer_columns=[
        {"name": "Replicas", "type": "string", "jsonPath": ".spec.replicas"},
        {"name": "Image", "type": "string", "jsonPath": ".spec.image"},
    ],
)
class PolicyServerSpec(CRDSpec):
    """PolicyServer CRD specification."""

    image: str = Field(..., description="Policy server container image")
    replicas: int = Field(..., description="Number of desired replicas")
    minAvailable: Optional[Union[int, str]] = Field(
        default=None,
        description="Replicas that must stay available after an eviction "
        "(number or percentage). Mutually exclusive with maxUnavailable",
    )
    maxUnavailable: Optional[Union[int, str]] = Field(
        default=None,
        description="Replicas that can be unavailable after an eviction "
        "(number or percentage). Mutually exclusive with minAvailable",
    )
    annotations: Dict[str, str] = Field(
        default_factory=dict, description="Annotations added to the policy server pods"
    )
    env: List[Dict[str, Any]] = Field(
        default_factory=list, description="Environment variables for the container"
    )
    serviceAccountName: Optional[str] = Field(
        default=None, description="Service account used by the policy server"
    )
    imagePullSecret: Optional[str] = Field(
        default=None,
        description="dockerconfigjson Secret used to pull policies from registries",
    )
    insecureSources: List[str] = Field(
        default_factory=list, description="Registries reachable without TLS"
    )
    sourceAuthorities: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Registry URI to PEM encoded certificate authorities",
    )
    verificationConfig: Optional[str] = Field(
        default=None,
        description="ConfigMap holding the Sigstore verification configuration",
    )
    securityContexts: PolicyServerSecurity = Field(
        default_factory=PolicyServerSecurity,
        description="Security contexts for the pod and the container",
    )
    affinity: Dict[str, Any] = Field(
        default_factory=dict, description="Affinity rules for the pods"
    )
    limits: Dict[str, str] = Field(
        default_factory=dict, description="Compute resource limits"
    )
    requests: Dict[str, str] = Field(
        default_factory=dict, description="Compute resource requests"
    )
    tolerations: List[Dict[str, Any]] = Field(
        default_factory=list, description="Pod tolerations"
    )
    priorityClassName: Optional[str] = Field(
        default=None, description="PriorityClass of the policy server pods"
    )


class PolicyServer(BaseModel):
    """A PolicyServer resource as read from the cluster."""

    apiVersion: str = constants.API_GROUP_VERSION
    kind: str = constants.KIND_POLICY_SERVER
    metadata: CRDMetadata
    spec: PolicyServerSpec
    status: PolicyServerStatus = Field(default_factory=PolicyServerStatus)

    class Config:
        extra = "ignore"

    @classmethod
    def from_body(cls, body):
        return cls.model_validate(dict(body))

    @property
    def name(self):
        return self.metadata.name

    @property
    def name_with_prefix(self):
        return constants.POLICY_SERVER_PREFIX + self.metadata.name

    @property
    def app_label(self):
        return "admiral-" + self.name_with_prefix

    @property
    def deleting(self):
        return self.metadata.deletionTimestamp is not None

    def common_labels(self):
        """Labels shared by every object owned by this policy server."""
        return {
            constants.COMPONENT_LABEL_KEY: constants.COMPONENT_POLICY_SERVER,
            constants.INSTANCE_LABEL_KEY: self.name_with_prefix,
            constants.PART_OF_LABEL_KEY: constants.PART_OF_VALUE,
            constants.MANAGED_BY_LABEL_KEY: constants.MANAGED_BY_VALUE,
        }

    def pod_labels(self):
        return {
            **self.common_labels(),
            constants.APP_LABEL_KEY: self.app_label,
            constants.POLICY_SERVER_LABEL_KEY: self.metadata.name,
        }

    def owner_reference(self):
        return {
            "apiVersion": self.apiVersion,
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
