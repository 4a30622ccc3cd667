"""
XML Signing Service

Signs assembled JPK documents for submission to the Ministry of Finance
gateway. Implements an enveloped XMLDSig (RSA-SHA256) signature.
"""
import hashlib
from abc import ABC, abstractmethod
from base64 import b64decode, b64encode
from datetime import datetime, timezone
from typing import Optional
import xml.etree.ElementTree as ET

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from jpk_reporting.models.jpk_report import SignatureType
from jpk_reporting.services.certificate_service import CertificateService
from jpk_reporting.services.jpk.assembler import JPK_NAMESPACE

NS_DS = "http://www.w3.org/2000/09/xmldsig#"

ET.register_namespace('', JPK_NAMESPACE)
ET.register_namespace('ds', NS_DS)


class SigningError(Exception):
    """Base exception for signing operations."""
    pass


class SignatureProvider(ABC):
    """Applies a signature of the requested credential type to a document."""

    @abstractmethod
    async def sign(self, document: bytes, signature_type: SignatureType) -> bytes:
        """
        Returns:
            The signed document

        Raises:
            SigningError: the document could not be signed
            CertificateError: credentials for the signature type are unusable
        """


def canonicalize(root: ET.Element) -> str:
    """
    Whitespace-normalized serialization used for the digest.

    This is a simplified C14N; documents are produced by our own assembler
    so attribute order and namespace prefixes are stable.
    """
    xml_str = ET.tostring(root, encoding='unicode', method='xml')
    return ' '.join(xml_str.split())


def _ds(tag: str) -> str:
    return f"{{{NS_DS}}}{tag}"


class XmlDsigSignatureProvider(SignatureProvider):
    """
    Signs documents with the certificate configured for each signature type.

    Steps:
    1. Load the certificate and private key
    2. Canonicalize the document
    3. Compute the SHA256 digest
    4. Sign the digest with the private key
    5. Append a ds:Signature element to the document root
    """

    def __init__(self, cert_service: Optional[CertificateService] = None):
        self.cert_service = cert_service or CertificateService()

    async def sign(self, document: bytes, signature_type: SignatureType) -> bytes:
        cert, private_key = self.cert_service.load_for_signing(signature_type)
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise SigningError(f"Unsupported key type: {type(private_key).__name__}")

        try:
            root = ET.fromstring(document)
        except ET.ParseError as e:
            raise SigningError(f"Invalid XML content: {e}") from e

        digest = hashlib.sha256(canonicalize(root).encode('utf-8')).digest()
        signature = private_key.sign(digest, padding.PKCS1v15(), hashes.SHA256())

        cert_der = cert.public_bytes(encoding=serialization.Encoding.DER)
        signature_info = {
            'algorithm': 'RSA-SHA256',
            'signature_type': signature_type.value,
            'certificate_fingerprint': hashlib.sha256(cert_der).hexdigest(),
            'signature_timestamp': datetime.now(timezone.utc).isoformat(),
        }

        root.append(self._signature_element(
            b64encode(signature).decode('utf-8'),
            b64encode(digest).decode('utf-8'),
            b64encode(cert_der).decode('utf-8'),
            signature_info,
        ))

        xml_str = ET.tostring(root, encoding='unicode', method='xml')
        return ('<?xml version="1.0" encoding="UTF-8"?>\n' + xml_str).encode('utf-8')

    def _signature_element(
        self,
        signature_b64: str,
        digest_b64: str,
        cert_b64: str,
        signature_info: dict,
    ) -> ET.Element:
        signature = ET.Element(_ds("Signature"))

        signed_info = ET.SubElement(signature, _ds("SignedInfo"))
        ET.SubElement(signed_info, _ds("CanonicalizationMethod")).set(
            'Algorithm', 'http://www.w3.org/TR/2001/REC-xml-c14n-20010315'
        )
        ET.SubElement(signed_info, _ds("SignatureMethod")).set(
            'Algorithm', 'http://www.w3.org/2001/04/xmldsig-more#rsa-sha256'
        )

        # Empty URI: the whole document
        reference = ET.SubElement(signed_info, _ds("Reference"))
        reference.set('URI', '')
        transforms = ET.SubElement(reference, _ds("Transforms"))
        ET.SubElement(transforms, _ds("Transform")).set(
            'Algorithm', 'http://www.w3.org/2000/09/xmldsig#enveloped-signature'
        )
        ET.SubElement(reference, _ds("DigestMethod")).set(
            'Algorithm', 'http://www.w3.org/2001/04/xmlenc#sha256'
        )
        ET.SubElement(reference, _ds("DigestValue")).text = digest_b64

        ET.SubElement(signature, _ds("SignatureValue")).text = signature_b64

        key_info = ET.SubElement(signature, _ds("KeyInfo"))
        x509_data = ET.SubElement(key_info, _ds("X509Data"))
        ET.SubElement(x509_data, _ds("X509Certificate")).text = cert_b64

        signature.append(ET.Comment(
            f" Signature Info: "
            f"Type={signature_info['signature_type']}, "
            f"Algorithm={signature_info['algorithm']}, "
            f"Timestamp={signature_info['signature_timestamp']}, "
            f"Fingerprint={signature_info['certificate_fingerprint']} "
        ))
        return signature


def verify_signature(signed_document: bytes) -> bool:
    """
    Verify an enveloped signature produced by XmlDsigSignatureProvider.

    Recomputes the digest of the document without its ds:Signature element
    and checks the signature value against the embedded certificate.
    """
    try:
        root = ET.fromstring(signed_document)
    except ET.ParseError:
        return False

    signature = root.find(_ds("Signature"))
    if signature is None:
        return False
    digest_text = signature.findtext(f"{_ds('SignedInfo')}/{_ds('Reference')}/{_ds('DigestValue')}")
    signature_text = signature.findtext(_ds("SignatureValue"))
    cert_text = signature.findtext(f"{_ds('KeyInfo')}/{_ds('X509Data')}/{_ds('X509Certificate')}")
    if not digest_text or not signature_text or not cert_text:
        return False

    root.remove(signature)
    digest = hashlib.sha256(canonicalize(root).encode('utf-8')).digest()
    if b64encode(digest).decode('utf-8') != digest_text.strip():
        return False

    cert = x509.load_der_x509_certificate(b64decode(cert_text))
    try:
        cert.public_key().verify(b64decode(signature_text), digest, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True
