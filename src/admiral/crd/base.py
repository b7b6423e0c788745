"""Pydantic bases for custom resource specs, statuses and metadata."""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class CRDMetadata(BaseModel):
    """The part of ``metadata`` the reconcilers read."""

    name: str
    namespace: Optional[str] = None
    uid: Optional[str] = None
    generation: Optional[int] = None
    resourceVersion: Optional[str] = None
    deletionTimestamp: Optional[str] = None
    finalizers: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)

    class Config:
        extra = "ignore"


class CRDCondition(BaseModel):
    """One entry of ``status.conditions``."""

    type: str
    status: Literal["True", "False", "Unknown"]
    reason: str
    message: str = ""
    lastTransitionTime: Optional[str] = None
    observedGeneration: Optional[int] = None


class CRDStatus(BaseModel):
    conditions: List[CRDCondition] = Field(default_factory=list)

    class Config:
        extra = "allow"


class CRDSpec(BaseModel):
    """Specs reject unknown fields so typos surface as validation errors."""

    class Config:
        extra = "forbid"
        validate_assignment = True
