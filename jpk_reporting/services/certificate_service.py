"""
Certificate Service

Loads signing credentials for the two supported signature types.
Certificates and private keys stay on the filesystem; settings only hold
references to them.
"""
import hashlib
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from jpk_reporting.core.config import Settings, settings as default_settings
from jpk_reporting.models.jpk_report import SignatureType


class CertificateError(Exception):
    """Base exception for certificate operations."""
    pass


class CertificateNotConfiguredError(CertificateError):
    """No certificate reference is configured for the signature type."""
    pass


class CertificateLoadError(CertificateError):
    """Error loading certificate from filesystem."""
    pass


class CertificateValidationError(CertificateError):
    """Certificate is expired, not yet valid or cannot sign."""
    pass


def resolve_ref(ref: str, what: str = "reference") -> str:
    """
    Resolve a settings reference.

    Supports:
    - Environment variables: "$JPK_CERT_PATH"
    - Plain values: "/secrets/cert.p12"
    """
    if ref.startswith('$'):
        env_var = ref[1:]
        value = os.getenv(env_var)
        if not value:
            raise CertificateLoadError(f"Environment variable {env_var} for {what} not set")
        return value
    return ref


def certificate_metadata(cert: x509.Certificate) -> Dict[str, Any]:
    """Fingerprint, subject, issuer, serial number and validity window."""
    return {
        'fingerprint': hashlib.sha256(cert.public_bytes(serialization.Encoding.DER)).hexdigest(),
        'subject': cert.subject.rfc4514_string(),
        'issuer': cert.issuer.rfc4514_string(),
        'serial_number': str(cert.serial_number),
        'valid_from': cert.not_valid_before_utc,
        'valid_to': cert.not_valid_after_utc,
    }


class CertificateService:
    """
    Loads the certificate and private key configured for a signature type.

    PKCS#12 bundles are tried first; otherwise the file is read as a PEM
    certificate with the private key next to it (same name, .key suffix).
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    def _refs(self, signature_type: SignatureType) -> Tuple[Optional[str], Optional[str]]:
        if signature_type == SignatureType.QUALIFIED:
            return self.config.JPK_QUALIFIED_CERT_REF, self.config.JPK_QUALIFIED_PASSPHRASE_REF
        return self.config.JPK_TRUSTED_PROFILE_CERT_REF, self.config.JPK_TRUSTED_PROFILE_PASSPHRASE_REF

    def load_for_signing(self, signature_type: SignatureType) -> Tuple[x509.Certificate, Any]:
        """
        Load certificate and private key for the signature type.

        Raises:
            CertificateNotConfiguredError: no reference configured
            CertificateLoadError: file missing or unreadable
            CertificateValidationError: certificate outside its validity window
        """
        cert_ref, passphrase_ref = self._refs(signature_type)
        if not cert_ref:
            raise CertificateNotConfiguredError(
                f"No certificate configured for signature type {signature_type.value}"
            )

        passphrase = resolve_ref(passphrase_ref, "passphrase") if passphrase_ref else None
        certificate, private_key = self.load_from_path(resolve_ref(cert_ref, "certificate"), passphrase)
        self.check_validity(certificate)
        return certificate, private_key

    def load_from_path(self, file_path: str, passphrase: Optional[str] = None) -> Tuple[x509.Certificate, Any]:
        if not os.path.exists(file_path):
            raise CertificateLoadError(f"Certificate file not found: {file_path}")

        with open(file_path, 'rb') as f:
            cert_bytes = f.read()
        password = passphrase.encode() if passphrase else None

        try:
            private_key, certificate, _ = pkcs12.load_key_and_certificates(cert_bytes, password)
            if certificate is not None and private_key is not None:
                return certificate, private_key
        except ValueError:
            pass

        try:
            certificate = x509.load_pem_x509_certificate(cert_bytes)
        except ValueError as e:
            raise CertificateLoadError(f"Failed to load certificate {file_path}: {e}") from e

        key_path = Path(file_path).with_suffix('.key')
        if not key_path.exists():
            raise CertificateLoadError(f"Private key file not found: {key_path}")
        try:
            private_key = serialization.load_pem_private_key(key_path.read_bytes(), password=password)
        except (ValueError, TypeError) as e:
            raise CertificateLoadError(f"Failed to load private key {key_path}: {e}") from e
        return certificate, private_key

    def check_validity(self, cert: x509.Certificate, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        metadata = certificate_metadata(cert)
        if metadata['valid_to'] < now:
            raise CertificateValidationError(f"Certificate expired on {metadata['valid_to']}")
        if metadata['valid_from'] > now:
            raise CertificateValidationError(
                f"Certificate not yet valid (valid from {metadata['valid_from']})"
            )
        try:
            key_usage = cert.extensions.get_extension_for_oid(x509.oid.ExtensionOID.KEY_USAGE).value
        except x509.ExtensionNotFound:
            return
        if not key_usage.digital_signature:
            raise CertificateValidationError("Certificate does not have digital signature capability")
