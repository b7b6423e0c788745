import base64
import logging
import os
import ssl
import tempfile

import kopf
import kubernetes

from admiral import constants
from admiral.config import OperatorConfig
from admiral.crd.generator import CRDManager
from admiral.crd.registry import CRDRegistry
from admiral.errors import MissingDependencyError
from admiral.featuregates import match_conditions_supported
from admiral.kube import KubeClient
from admiral.metrics import start_metrics_server
from admiral.plugins import OperatorContext, PluginRegistry

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

MODEL_PACKAGES = ["admiral.models"]
PEERING_NAME = "admiral"
ADMISSION_CONFIGURATION_NAME = "admiral.admission.io"


def load_kube_config():
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        kubernetes.config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except kubernetes.config.ConfigException:
        try:
            kubernetes.config.load_kube_config()
            logger.info("Loaded local Kubernetes config")
        except Exception as e:
            logger.warning(f"Could not load Kubernetes config: {e}")


def build_operator(config, api_client=None):
    """Wire registries, plugins and handlers.

    Returns:
        Tuple of (kopf.OperatorRegistry, OperatorContext, PluginRegistry)
    """
    crd_registry = CRDRegistry.from_packages(MODEL_PACKAGES)
    kube = KubeClient(crd_registry, api_client)
    context = OperatorContext(config, crd_registry, kube)

    plugin_registry = PluginRegistry(context)
    if plugin_registry.discover_plugins() == 0:
        logger.error("No plugins discovered - operator will have no functionality")
        raise RuntimeError("No plugins available")

    init_results = plugin_registry.initialise_all_plugins()
    if not any(init_results.values()):
        logger.error("No plugins initialised successfully")
        raise RuntimeError("Plugin initialisation failed")

    registry = kopf.OperatorRegistry()
    register_operator_handlers(registry, context, plugin_registry)
    plugin_registry.register_all_handlers(registry)
    if config.admission_webhooks_enabled:
        register_admission_server(registry, context)

    logger.info(f"Initialised plugins: {list(init_results.keys())}")
    return registry, context, plugin_registry


def register_operator_handlers(registry, context, plugin_registry):
    config = context.config

    @kopf.on.startup(registry=registry)
    def startup_fn(settings: kopf.OperatorSettings, **kwargs):
        """Configure kopf and the cluster-level prerequisites."""
        logger.info("Admiral operator is starting up...")

        settings.persistence.finalizer = constants.FINALIZER
        settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
            prefix="admiral.io"
        )
        settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
            prefix="admiral.io", key="last-handled-configuration"
        )
        settings.batching.worker_limit = config.worker_limit
        settings.posting.enabled = config.posting_enabled
        settings.watching.server_timeout = config.server_timeout

        if config.manage_crds:
            if CRDManager(context.crd_registry).apply_crds_to_cluster():
                logger.info("CRDs applied to cluster successfully")
            else:
                logger.warning("No CRDs were applied to cluster")

        if config.enable_metrics:
            start_metrics_server(config.metrics_port)

        logger.info(f"Deployments namespace: {config.deployments_namespace}")
        logger.info(f"Worker limit: {settings.batching.worker_limit}")
        logger.info(f"Mutual TLS: {config.mutual_tls_enabled}")
        logger.info(f"Match conditions: {config.match_conditions_supported}")

    @kopf.on.cleanup(registry=registry)
    def cleanup_fn(**kwargs):
        """Cleanup operator resources."""
        logger.info("Admiral operator is shutting down...")
        plugin_registry.shutdown_all_plugins()
        logger.info("Admiral operator shutdown complete")


def _write_pem(directory, filename, data):
    path = os.path.join(directory, filename)
    with open(path, "wb") as f:
        f.write(data if isinstance(data, bytes) else data.encode())
    return path


def register_admission_server(registry, context):
    """Serve the admission hooks with the webhook server certificate.

    Registered after the plugins so the certificates exist when it runs.
    """
    config = context.config

    @kopf.on.startup(registry=registry)
    def admission_server_startup(settings: kopf.OperatorSettings, **kwargs):
        ca = context.certificates.reconcile_ca()
        secret = context.kube.get(
            "Secret", constants.WEBHOOK_SERVER_CERT_SECRET_NAME, config.deployments_namespace
        )
        if secret is None:
            raise kopf.TemporaryError("webhook server certificate not issued yet", delay=5)

        data = secret.get("data") or {}
        cert_dir = tempfile.mkdtemp(prefix="admiral-webhook-")
        certfile = _write_pem(
            cert_dir, constants.SERVER_CERT_KEY, base64.b64decode(data[constants.SERVER_CERT_KEY])
        )
        pkeyfile = _write_pem(
            cert_dir,
            constants.SERVER_PRIVATE_KEY_KEY,
            base64.b64decode(data[constants.SERVER_PRIVATE_KEY_KEY]),
        )

        # No fallback to plain TLS when mTLS is configured but unusable.
        try:
            client_ca = context.certificates.client_ca_bundle()
        except MissingDependencyError as e:
            raise kopf.PermanentError(f"mutual TLS is enabled but unusable: {e}") from e
        tls_options = {}
        if client_ca is not None:
            tls_options["verify_mode"] = ssl.CERT_REQUIRED
            tls_options["verify_cafile"] = _write_pem(
                cert_dir, constants.CLIENT_CA_CERT_KEY, client_ca
            )

        settings.admission.server = kopf.WebhookServer(
            addr="0.0.0.0",
            port=config.admission_webhook_port,
            host=f"{config.webhook_service_name}.{config.deployments_namespace}.svc",
            certfile=certfile,
            pkeyfile=pkeyfile,
            cadata=ca.cert_pem,
            **tls_options,
        )
        settings.admission.managed = ADMISSION_CONFIGURATION_NAME
        logger.info(f"Admission webhooks served on port {config.admission_webhook_port}")


def run(config=None):
    """Build the operator and hand control to kopf."""
    config = config or OperatorConfig.from_env()
    load_kube_config()

    if config.match_conditions_supported is None:
        config.match_conditions_supported = match_conditions_supported()

    registry, _, _ = build_operator(config)

    run_options = {"standalone": not config.leader_election}
    if config.leader_election:
        run_options["peering_name"] = PEERING_NAME
    kopf.run(registry=registry, clusterwide=True, **run_options)


def main(config=None):
    try:
        run(config)
    except KeyboardInterrupt:
        logger.info("Operator stopped by user")
    except Exception as e:
        logger.error(f"Operator failed: {e}")
        raise


if __name__ == "__main__":
    main()
