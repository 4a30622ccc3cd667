"""
Tests for XML Signing and Certificate Services

Tests the signing credentials and the enveloped signature, including:
- Loading PEM and PKCS#12 credentials per signature type
- Certificate validity checks
- XML signing and signature verification
- Error handling
"""
import xml.etree.ElementTree as ET
from datetime import datetime, timezone, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from jpk_reporting.core.config import Settings
from jpk_reporting.models.jpk_report import SignatureType
from jpk_reporting.services.certificate_service import (
    CertificateLoadError,
    CertificateNotConfiguredError,
    CertificateService,
    CertificateValidationError,
    certificate_metadata,
    resolve_ref,
)
from jpk_reporting.services.jpk.assembler import JPK_NAMESPACE
from jpk_reporting.services.signing_service import (
    NS_DS,
    SigningError,
    XmlDsigSignatureProvider,
    canonicalize,
    verify_signature,
)

DOCUMENT = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    f'<JPK xmlns="{JPK_NAMESPACE}">\n'
    '  <Naglowek>\n'
    '    <KodFormularza>JPK_V7M</KodFormularza>\n'
    '  </Naglowek>\n'
    '  <Ewidencja>\n'
    '    <SprzedazCtrl>\n'
    '      <PodatekNalezny>230.00</PodatekNalezny>\n'
    '    </SprzedazCtrl>\n'
    '  </Ewidencja>\n'
    '</JPK>\n'
).encode("utf-8")


def generate_test_certificate(
    private_key=None,
    valid_from: datetime = None,
    valid_to: datetime = None,
    digital_signature: bool = True,
):
    """Generate a self-signed certificate for testing purposes."""
    if private_key is None:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    now = datetime.now(timezone.utc)

    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "PL"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "JPK Test"),
        x509.NameAttribute(NameOID.COMMON_NAME, "test.jpk.example.pl"),
    ])

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from or now - timedelta(days=1))
        .not_valid_after(valid_to or now + timedelta(days=365))
        .add_extension(
            x509.KeyUsage(
                digital_signature=digital_signature,
                content_commitment=False,
                key_encipherment=not digital_signature,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(private_key, hashes.SHA256())
    )
    return cert, private_key


def write_pem(directory, cert, private_key, name: str = "signer") -> str:
    cert_path = directory / f"{name}.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    (directory / f"{name}.key").write_bytes(private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    return str(cert_path)


@pytest.fixture
def pem_credentials(tmp_path):
    cert, private_key = generate_test_certificate()
    return write_pem(tmp_path, cert, private_key), cert


@pytest.fixture
def provider(pem_credentials):
    cert_path, _ = pem_credentials
    config = Settings(JPK_TRUSTED_PROFILE_CERT_REF=cert_path)
    return XmlDsigSignatureProvider(CertificateService(config))


class TestCertificateService:
    """Credential loading per signature type."""

    def test_load_pem_with_key_next_to_it(self, pem_credentials):
        cert_path, cert = pem_credentials
        service = CertificateService(Settings(JPK_TRUSTED_PROFILE_CERT_REF=cert_path))

        loaded, private_key = service.load_for_signing(SignatureType.TRUSTED_PROFILE)

        assert loaded.serial_number == cert.serial_number
        assert isinstance(private_key, rsa.RSAPrivateKey)

    def test_load_pkcs12_with_passphrase(self, tmp_path, monkeypatch):
        cert, private_key = generate_test_certificate()
        bundle = pkcs12.serialize_key_and_certificates(
            b"jpk", private_key, cert, None, serialization.BestAvailableEncryption(b"secret")
        )
        bundle_path = tmp_path / "qualified.p12"
        bundle_path.write_bytes(bundle)
        monkeypatch.setenv("JPK_TEST_PASSPHRASE", "secret")

        service = CertificateService(Settings(
            JPK_QUALIFIED_CERT_REF=str(bundle_path),
            JPK_QUALIFIED_PASSPHRASE_REF="$JPK_TEST_PASSPHRASE",
        ))
        loaded, _ = service.load_for_signing(SignatureType.QUALIFIED)

        assert loaded.serial_number == cert.serial_number

    def test_signature_types_use_separate_credentials(self, pem_credentials):
        cert_path, _ = pem_credentials
        service = CertificateService(Settings(JPK_TRUSTED_PROFILE_CERT_REF=cert_path))

        with pytest.raises(CertificateNotConfiguredError):
            service.load_for_signing(SignatureType.QUALIFIED)

    def test_missing_file(self, tmp_path):
        service = CertificateService(Settings(JPK_TRUSTED_PROFILE_CERT_REF=str(tmp_path / "none.pem")))
        with pytest.raises(CertificateLoadError):
            service.load_for_signing(SignatureType.TRUSTED_PROFILE)

    def test_missing_private_key(self, tmp_path):
        cert, _ = generate_test_certificate()
        cert_path = tmp_path / "lonely.pem"
        cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))

        with pytest.raises(CertificateLoadError) as exc_info:
            CertificateService().load_from_path(str(cert_path))
        assert "Private key file not found" in str(exc_info.value)

    def test_unset_environment_reference(self, monkeypatch):
        monkeypatch.delenv("JPK_MISSING_REF", raising=False)
        with pytest.raises(CertificateLoadError):
            resolve_ref("$JPK_MISSING_REF", "certificate")
        assert resolve_ref("/secrets/cert.p12") == "/secrets/cert.p12"

    def test_expired_certificate(self):
        now = datetime.now(timezone.utc)
        cert, _ = generate_test_certificate(
            valid_from=now - timedelta(days=30), valid_to=now - timedelta(days=1)
        )
        with pytest.raises(CertificateValidationError) as exc_info:
            CertificateService().check_validity(cert)
        assert "expired" in str(exc_info.value)

    def test_not_yet_valid_certificate(self):
        now = datetime.now(timezone.utc)
        cert, _ = generate_test_certificate(
            valid_from=now + timedelta(days=1), valid_to=now + timedelta(days=30)
        )
        with pytest.raises(CertificateValidationError):
            CertificateService().check_validity(cert)

    def test_certificate_without_signing_usage(self):
        cert, _ = generate_test_certificate(digital_signature=False)
        with pytest.raises(CertificateValidationError):
            CertificateService().check_validity(cert)

    def test_metadata(self):
        cert, _ = generate_test_certificate()
        metadata = certificate_metadata(cert)

        assert len(metadata["fingerprint"]) == 64
        assert "CN=test.jpk.example.pl" in metadata["subject"]
        assert metadata["serial_number"] == str(cert.serial_number)


class TestCanonicalize:

    def test_whitespace_is_normalized(self):
        first = ET.fromstring("<root>\n   <element>value</element>\n</root>")
        second = ET.fromstring("<root> <element>value</element> </root>")
        assert canonicalize(first) == canonicalize(second)


@pytest.mark.asyncio
class TestXmlDsigSignatureProvider:

    async def test_sign_appends_signature(self, provider, pem_credentials):
        signed = await provider.sign(DOCUMENT, SignatureType.TRUSTED_PROFILE)

        assert signed.startswith(b'<?xml version="1.0" encoding="UTF-8"?>')
        root = ET.fromstring(signed)
        signature = root.find(f"{{{NS_DS}}}Signature")
        assert signature is not None
        assert signature.findtext(f"{{{NS_DS}}}SignatureValue")
        assert root.findtext(
            f"{{{JPK_NAMESPACE}}}Ewidencja/{{{JPK_NAMESPACE}}}SprzedazCtrl/{{{JPK_NAMESPACE}}}PodatekNalezny"
        ) == "230.00"

    async def test_signed_document_verifies(self, provider):
        signed = await provider.sign(DOCUMENT, SignatureType.TRUSTED_PROFILE)
        assert verify_signature(signed) is True

    async def test_tampered_document_fails_verification(self, provider):
        signed = await provider.sign(DOCUMENT, SignatureType.TRUSTED_PROFILE)
        tampered = signed.replace(b"230.00", b"231.00")
        assert verify_signature(tampered) is False

    async def test_unsigned_document_fails_verification(self):
        assert verify_signature(DOCUMENT) is False
        assert verify_signature(b"not xml") is False

    async def test_invalid_xml(self, provider):
        with pytest.raises(SigningError):
            await provider.sign(b"<JPK><unclosed>", SignatureType.TRUSTED_PROFILE)

    async def test_unconfigured_signature_type(self, provider):
        with pytest.raises(CertificateNotConfiguredError):
            await provider.sign(DOCUMENT, SignatureType.QUALIFIED)

    async def test_non_rsa_key_is_rejected(self, tmp_path):
        cert, private_key = generate_test_certificate(private_key=ec.generate_private_key(ec.SECP256R1()))
        cert_path = write_pem(tmp_path, cert, private_key, name="ec")
        provider = XmlDsigSignatureProvider(CertificateService(Settings(JPK_TRUSTED_PROFILE_CERT_REF=cert_path)))

        with pytest.raises(SigningError) as exc_info:
            await provider.sign(DOCUMENT, SignatureType.TRUSTED_PROFILE)
        assert "Unsupported key type" in str(exc_info.value)
