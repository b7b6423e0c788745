"""Operator configuration loaded from the environment."""

import os
from typing import Optional

from pydantic import BaseModel, Field


def _env_flag(key, default="false"):
    return os.getenv(key, default).lower() == "true"


class OperatorConfig(BaseModel):
    """Process-wide settings consumed by the reconcilers and handlers."""

    deployments_namespace: str = Field(
        default="admiral", description="Namespace where owned objects are created"
    )
    webhook_service_name: str = Field(
        default="admiral-controller-webhook-service",
        description="Service exposing the controller admission webhooks",
    )
    leader_election: bool = False
    client_ca_configmap_name: str = Field(
        default="", description="ConfigMap with the client CA; enables mTLS when set"
    )
    enable_metrics: bool = False
    enable_tracing: bool = False
    enable_otel_sidecar: bool = False
    metrics_port: int = 8088
    always_accept_admission_reviews_on_deployments_namespace: bool = False
    resync_interval: float = 30.0
    cert_check_interval: float = 3600.0
    ca_validity_days: int = 3650
    server_cert_validity_days: int = 365
    cert_rotation_threshold_days: int = 30
    worker_limit: int = 5
    posting_enabled: bool = False
    server_timeout: int = 60
    manage_crds: bool = True
    admission_webhooks_enabled: bool = False
    admission_webhook_port: int = 9443
    match_conditions_supported: Optional[bool] = Field(
        default=None,
        description="Feature gate result, filled in once at startup",
    )

    class Config:
        validate_assignment = True

    @property
    def mutual_tls_enabled(self):
        return self.client_ca_configmap_name != ""

    @property
    def webhook_service_dns_names(self):
        svc = self.webhook_service_name
        ns = self.deployments_namespace
        return [svc, f"{svc}.{ns}", f"{svc}.{ns}.svc", f"{svc}.{ns}.svc.cluster.local"]

    @classmethod
    def from_env(cls, **overrides):
        """Build the configuration from environment variables.

        Keyword arguments that are not None take precedence over the
        environment, so CLI flags can be layered on top.
        """
        values = {
            "deployments_namespace": os.getenv("DEPLOYMENTS_NAMESPACE", "admiral"),
            "webhook_service_name": os.getenv(
                "WEBHOOK_SERVICE_NAME", "admiral-controller-webhook-service"
            ),
            "leader_election": _env_flag("LEADER_ELECT"),
            "client_ca_configmap_name": os.getenv("CLIENT_CA_CONFIGMAP_NAME", ""),
            "enable_metrics": _env_flag("ENABLE_METRICS"),
            "enable_tracing": _env_flag("ENABLE_TRACING"),
            "enable_otel_sidecar": _env_flag("ENABLE_OTEL_SIDECAR"),
            "metrics_port": int(os.getenv("METRICS_PORT", "8088")),
            "always_accept_admission_reviews_on_deployments_namespace": _env_flag(
                "ALWAYS_ACCEPT_ADMISSION_REVIEWS_ON_DEPLOYMENTS_NAMESPACE"
            ),
            "resync_interval": float(os.getenv("RESYNC_INTERVAL", "30")),
            "cert_check_interval": float(os.getenv("CERT_CHECK_INTERVAL", "3600")),
            "ca_validity_days": int(os.getenv("CA_VALIDITY_DAYS", "3650")),
            "server_cert_validity_days": int(
                os.getenv("SERVER_CERT_VALIDITY_DAYS", "365")
            ),
            "cert_rotation_threshold_days": int(
                os.getenv("CERT_ROTATION_THRESHOLD_DAYS", "30")
            ),
            "worker_limit": int(os.getenv("WORKER_LIMIT", "5")),
            "posting_enabled": _env_flag("POSTING_ENABLED"),
            "server_timeout": int(os.getenv("SERVER_TIMEOUT", "60")),
            "manage_crds": _env_flag("MANAGE_CRDS", "true"),
            "admission_webhooks_enabled": _env_flag("ADMISSION_WEBHOOKS_ENABLED"),
            "admission_webhook_port": int(os.getenv("ADMISSION_WEBHOOK_PORT", "9443")),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
