"""CRD management system for the admiral operator."""

from .registry import CRDRegistry, crd
from .base import CRDSpec, CRDStatus, CRDMetadata, CRDCondition

__all__ = ["CRDRegistry", "crd", "CRDSpec", "CRDStatus", "CRDMetadata", "CRDCondition"]
