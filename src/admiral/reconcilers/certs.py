"""CA root, webhook server and policy server certificate secrets."""

import base64
import logging
from typing import NamedTuple, Optional

from admiral import constants
from admiral.errors import MissingDependencyError, TransientReconcileError
from admiral.models.policy_server import PolicyServer
from admiral.tls import CertState, certificate_state, dns_names, generate_ca
from admiral.tls import generate_cert, is_signed_by

logger = logging.getLogger(__name__)

CERT_TYPE_CA = "ca"
CERT_TYPE_WEBHOOK_SERVER = "webhook-server"
CERT_TYPE_POLICY_SERVER = "policy-server"


class CAMaterial(NamedTuple):
    cert_pem: bytes
    key_pem: bytes
    secret: dict


def _b64(value):
    return base64.b64encode(value).decode()


def _secret_value(secret, key):
    if not secret:
        return None
    value = (secret.get("data") or {}).get(key)
    if not value:
        return None
    return base64.b64decode(value)


def policy_server_dns_names(server_name_with_prefix, namespace):
    return [
        server_name_with_prefix,
        f"{server_name_with_prefix}.{namespace}",
        f"{server_name_with_prefix}.{namespace}.svc",
        f"{server_name_with_prefix}.{namespace}.svc.cluster.local",
    ]


class CertificateReconciler:
    """Keeps the certificate secrets valid, rotating them before expiry."""

    def __init__(self, kube, config):
        self.kube = kube
        self.config = config
        self.namespace = config.deployments_namespace

    def _labels(self, cert_type, extra=None):
        labels = {
            constants.COMPONENT_LABEL_KEY: constants.COMPONENT_CERTIFICATE,
            constants.PART_OF_LABEL_KEY: constants.PART_OF_VALUE,
            constants.MANAGED_BY_LABEL_KEY: constants.MANAGED_BY_VALUE,
            constants.CERTIFICATE_LABEL_KEY: cert_type,
        }
        labels.update(extra or {})
        return labels

    def _write_secret(self, current, body):
        """Create the secret, or replace it guarded by the observed resourceVersion."""
        name = body["metadata"]["name"]
        if current is None:
            return self.kube.create("Secret", body, self.namespace)
        body["metadata"]["resourceVersion"] = current["metadata"]["resourceVersion"]
        written = self.kube.replace("Secret", name, body, self.namespace)
        if written is None:
            raise TransientReconcileError(f"Secret {name} was deleted while being replaced")
        return written

    def reconcile_ca(self):
        """Return the current CA, generating a new one when absent or expiring."""
        secret = self.kube.get("Secret", constants.CA_ROOT_SECRET_NAME, self.namespace)
        cert_pem = _secret_value(secret, constants.CA_ROOT_CERT_KEY)
        key_pem = _secret_value(secret, constants.CA_ROOT_PRIVATE_KEY_KEY)
        state = certificate_state(cert_pem, self.config.cert_rotation_threshold_days)
        if state == CertState.VALID and key_pem:
            return CAMaterial(cert_pem, key_pem, secret)

        logger.info(f"CA root secret is {state.value}, generating a new CA")
        cert_pem, key_pem = generate_ca(self.config.ca_validity_days)
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {
                "name": constants.CA_ROOT_SECRET_NAME,
                "namespace": self.namespace,
                "labels": self._labels(CERT_TYPE_CA),
            },
            "data": {
                constants.CA_ROOT_CERT_KEY: _b64(cert_pem),
                constants.CA_ROOT_PRIVATE_KEY_KEY: _b64(key_pem),
            },
        }
        written = self._write_secret(secret, body)
        return CAMaterial(cert_pem, key_pem, written)

    def _leaf_needs_renewal(self, secret, expected_dns_names, ca):
        cert_pem = _secret_value(secret, constants.SERVER_CERT_KEY)
        state = certificate_state(cert_pem, self.config.cert_rotation_threshold_days)
        if state != CertState.VALID:
            return state.value
        if not _secret_value(secret, constants.SERVER_PRIVATE_KEY_KEY):
            return "missing private key"
        if set(dns_names(cert_pem)) != set(expected_dns_names):
            return "SAN mismatch"
        if not is_signed_by(cert_pem, ca.cert_pem):
            return "not signed by the current CA"
        return None

    def reconcile_leaf(self, secret_name, common_name, expected_dns_names, ca,
                       owner_reference, labels):
        """Ensure a TLS secret signed by ``ca``. Returns True when it was (re)issued."""
        secret = self.kube.get("Secret", secret_name, self.namespace)
        reason = self._leaf_needs_renewal(secret, expected_dns_names, ca)
        if reason is None:
            return False

        logger.info(f"Issuing certificate {secret_name}: {reason}")
        cert_pem, key_pem = generate_cert(
            ca.cert_pem,
            ca.key_pem,
            common_name,
            expected_dns_names,
            self.config.server_cert_validity_days,
        )
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "kubernetes.io/tls",
            "metadata": {
                "name": secret_name,
                "namespace": self.namespace,
                "labels": labels,
                "ownerReferences": [owner_reference],
            },
            "data": {
                constants.SERVER_CERT_KEY: _b64(cert_pem),
                constants.SERVER_PRIVATE_KEY_KEY: _b64(key_pem),
                constants.CA_ROOT_CERT_KEY: _b64(ca.cert_pem),
            },
        }
        self._write_secret(secret, body)
        return True

    def reconcile_webhook_server_cert(self, ca):
        ca_meta = ca.secret["metadata"]
        owner = {
            "apiVersion": "v1",
            "kind": "Secret",
            "name": ca_meta["name"],
            "uid": ca_meta["uid"],
        }
        return self.reconcile_leaf(
            constants.WEBHOOK_SERVER_CERT_SECRET_NAME,
            self.config.webhook_service_name,
            self.config.webhook_service_dns_names,
            ca,
            owner,
            self._labels(CERT_TYPE_WEBHOOK_SERVER),
        )

    def reconcile_policy_server_cert(self, server, ca):
        names = policy_server_dns_names(server.name_with_prefix, self.namespace)
        labels = self._labels(
            CERT_TYPE_POLICY_SERVER,
            {
                constants.INSTANCE_LABEL_KEY: server.name_with_prefix,
                constants.POLICY_SERVER_LABEL_KEY: server.name,
            },
        )
        return self.reconcile_leaf(
            server.name_with_prefix,
            names[2],
            names,
            ca,
            server.owner_reference(),
            labels,
        )

    def client_ca_bundle(self) -> Optional[str]:
        """PEM of the client CA when mTLS is on, None otherwise.

        Raises:
            MissingDependencyError: mTLS is on but the ConfigMap or its key is missing
        """
        if not self.config.mutual_tls_enabled:
            return None
        name = self.config.client_ca_configmap_name
        configmap = self.kube.get("ConfigMap", name, self.namespace)
        if configmap is None:
            raise MissingDependencyError(
                f"client CA ConfigMap {name} not found in namespace {self.namespace}"
            )
        bundle = (configmap.get("data") or {}).get(constants.CLIENT_CA_CERT_KEY)
        if not bundle:
            raise MissingDependencyError(
                f"client CA ConfigMap {name} has no {constants.CLIENT_CA_CERT_KEY} key"
            )
        return bundle

    def reconcile(self):
        """Startup and timer entry point for the controller-wide certificates."""
        ca = self.reconcile_ca()
        self.reconcile_webhook_server_cert(ca)
        self.client_ca_bundle()
        return ca

    def reconcile_secret(self, secret):
        """Re-check whichever managed certificate ``secret`` holds."""
        labels = secret.get("metadata", {}).get("labels") or {}
        cert_type = labels.get(constants.CERTIFICATE_LABEL_KEY)
        if cert_type in (CERT_TYPE_CA, CERT_TYPE_WEBHOOK_SERVER):
            self.reconcile()
            return
        if cert_type != CERT_TYPE_POLICY_SERVER:
            return

        server_name = labels.get(constants.POLICY_SERVER_LABEL_KEY)
        body = self.kube.get(constants.KIND_POLICY_SERVER, server_name)
        if body is None:
            logger.debug(f"PolicyServer {server_name} is gone, skipping certificate")
            return
        server = PolicyServer.from_body(body)
        if server.deleting:
            return
        self.reconcile_policy_server_cert(server, self.reconcile_ca())
