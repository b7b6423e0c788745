"""CA and leaf certificate generation and inspection."""

import datetime
import logging
from enum import Enum

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from admiral.errors import CertificateGenerationError

logger = logging.getLogger(__name__)

CA_COMMON_NAME = "admiral-controller-ca"
ORGANIZATION = "Admiral"


class CertState(str, Enum):
    ABSENT = "absent"
    VALID = "valid"
    EXPIRING = "expiring"
    EXPIRED = "expired"


def _now():
    return datetime.datetime.now(datetime.timezone.utc)


def _private_key_pem(private_key):
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _load_cert(cert_pem):
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode()
    return x509.load_pem_x509_certificate(cert_pem)


def _load_key(key_pem):
    if isinstance(key_pem, str):
        key_pem = key_pem.encode()
    return serialization.load_pem_private_key(key_pem, password=None)


def generate_ca(validity_days, common_name=CA_COMMON_NAME):
    """Create a self-signed CA.

    Returns:
        Tuple of (cert_pem, key_pem) as bytes
    """
    try:
        private_key = ec.generate_private_key(ec.SECP256R1())
        subject = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
                x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            ]
        )
        now = _now()
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=validity_days))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
                critical=False,
            )
            .sign(private_key, hashes.SHA256())
        )
    except (ValueError, TypeError) as e:
        raise CertificateGenerationError(f"failed to generate CA: {e}") from e

    logger.info(f"Generated CA {common_name} valid for {validity_days} days")
    return cert.public_bytes(serialization.Encoding.PEM), _private_key_pem(private_key)


def generate_cert(ca_cert_pem, ca_key_pem, common_name, dns_names, validity_days):
    """Create a server certificate signed by the given CA.

    Returns:
        Tuple of (cert_pem, key_pem) as bytes
    """
    try:
        ca_cert = _load_cert(ca_cert_pem)
        ca_key = _load_key(ca_key_pem)
        private_key = ec.generate_private_key(ec.SECP256R1())
        now = _now()
        cert = (
            x509.CertificateBuilder()
            .subject_name(
                x509.Name(
                    [
                        x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
                        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
                    ]
                )
            )
            .issuer_name(ca_cert.subject)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=validity_days))
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]),
                critical=False,
            )
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )
    except (ValueError, TypeError) as e:
        raise CertificateGenerationError(
            f"failed to generate certificate {common_name}: {e}"
        ) from e

    logger.info(f"Generated certificate {common_name} for {dns_names}")
    return cert.public_bytes(serialization.Encoding.PEM), _private_key_pem(private_key)


def certificate_state(cert_pem, rotation_threshold_days, now=None):
    """Classify a certificate as absent, valid, expiring or expired."""
    if not cert_pem:
        return CertState.ABSENT
    try:
        cert = _load_cert(cert_pem)
    except ValueError:
        # Unparseable material is as good as missing.
        return CertState.ABSENT

    now = now or _now()
    not_after = cert.not_valid_after_utc
    if not_after <= now:
        return CertState.EXPIRED
    if not_after - now <= datetime.timedelta(days=rotation_threshold_days):
        return CertState.EXPIRING
    return CertState.VALID


def is_signed_by(cert_pem, ca_cert_pem):
    try:
        _load_cert(cert_pem).verify_directly_issued_by(_load_cert(ca_cert_pem))
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def dns_names(cert_pem):
    try:
        san = _load_cert(cert_pem).extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        )
    except (ValueError, x509.ExtensionNotFound):
        return []
    return san.value.get_values_for_type(x509.DNSName)
