"""kopf handlers keeping the certificate secrets valid."""

import logging

import kopf

from admiral import constants
from admiral.errors import (
    CertificateGenerationError,
    MissingDependencyError,
    ReconcileError,
)
from admiral.handlers import reconcile_or_retry

logger = logging.getLogger(__name__)


def register_certificate_handlers(registry, reconciler, config):
    """Run the certificate reconciler at startup, periodically and on deletion."""
    managed = {constants.CERTIFICATE_LABEL_KEY: kopf.PRESENT}

    def in_deployments_namespace(namespace, **_):
        return namespace == config.deployments_namespace

    @kopf.on.startup(registry=registry)
    def certificates_startup(retry, **kwargs):
        """Make sure the CA and the webhook server certificate exist."""
        try:
            reconcile_or_retry(reconciler.reconcile, retry)
        except MissingDependencyError as e:
            # Surfaced again on every PolicyServer pass and timer tick.
            logger.error(f"Certificate reconciliation incomplete: {e}")
        else:
            logger.info("Certificates reconciled")

    @kopf.timer("v1", "secrets", labels=managed, when=in_deployments_namespace,
                interval=config.cert_check_interval, registry=registry)
    def certificate_check(body, name, retry, **kwargs):
        """Rotate a certificate that is expiring, expired or invalid."""
        try:
            reconcile_or_retry(reconciler.reconcile_secret, retry, body)
        except (CertificateGenerationError, MissingDependencyError) as e:
            logger.error(f"Certificate {name} not reconciled, will retry: {e}")

    @kopf.on.event("v1", "secrets", labels=managed, when=in_deployments_namespace,
                   registry=registry)
    def certificate_deleted(body, name, type, **kwargs):
        """Recreate a managed certificate secret as soon as it is deleted."""
        if type != "DELETED":
            return
        logger.info(f"Certificate secret {name} was deleted, recreating")
        try:
            reconciler.reconcile_secret(body)
        except ReconcileError as e:
            logger.error(f"Failed to recreate certificate secret {name}: {e}")
