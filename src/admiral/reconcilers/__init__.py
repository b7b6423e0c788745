"""Reconcilers converging cluster state to the admiral custom resources."""

from .certs import CertificateReconciler
from .policy import PolicyReconciler
from .policy_server import PolicyServerReconciler

__all__ = ["CertificateReconciler", "PolicyReconciler", "PolicyServerReconciler"]
