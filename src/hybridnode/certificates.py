"""X.509 helpers for certificate-based node credentials.

Issues short-lived node certificates from a caller-provided certificate
authority and validates a certificate/key pair already on disk before the
signing helper is pointed at it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import cast

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

CA_VALIDITY = timedelta(days=3650)
NODE_CERT_VALIDITY = timedelta(days=1)
# Tolerates small clock differences between the issuer and the node.
BACKDATE = timedelta(minutes=5)


class CertificateError(RuntimeError):
    """Raised when certificate material cannot be created or loaded."""


class FindingSeverity(Enum):
    """Validation severities for certificate checks."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class CertificateFinding:
    """Individual validation check outcome."""

    check: str
    severity: FindingSeverity
    message: str
    path: Path | None = None


@dataclass(frozen=True)
class CertificateReport:
    """Aggregate validation results for a certificate/key pair."""

    certificate: Path
    key: Path
    findings: tuple[CertificateFinding, ...]
    not_valid_before: datetime | None
    not_valid_after: datetime | None

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is classified as an error."""
        return any(f.severity is FindingSeverity.ERROR for f in self.findings)

    @property
    def errors(self) -> list[str]:
        """Return the messages of error findings."""
        return [f.message for f in self.findings if f.severity is FindingSeverity.ERROR]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "certificate": str(self.certificate),
            "key": str(self.key),
            "status": "error" if self.has_errors else "ok",
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "findings": [
                {
                    "check": finding.check,
                    "severity": finding.severity.value,
                    "message": finding.message,
                    "path": str(finding.path) if finding.path is not None else None,
                }
                for finding in self.findings
            ],
        }


@dataclass(frozen=True)
class IssuedCertificate:
    """A certificate together with its private key."""

    certificate: x509.Certificate
    private_key: ec.EllipticCurvePrivateKey

    def certificate_pem(self) -> bytes:
        """Return the certificate in PEM encoding."""
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def private_key_pem(self) -> bytes:
        """Return the unencrypted private key in PKCS#8 PEM encoding."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


@dataclass(frozen=True)
class CertificateAuthority(IssuedCertificate):
    """A signing certificate authority."""

    @classmethod
    def generate(
        cls,
        common_name: str = "hybridnode-ca",
        *,
        now: datetime | None = None,
    ) -> CertificateAuthority:
        """Create a self-signed ECDSA P-384 authority valid for ten years."""
        now = now or datetime.now(UTC)
        key = ec.generate_private_key(ec.SECP384R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - BACKDATE)
            .not_valid_after(now + CA_VALIDITY)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(key, hashes.SHA256())
        )
        return cls(certificate=certificate, private_key=key)

    @classmethod
    def load(cls, certificate_path: Path, key_path: Path) -> CertificateAuthority:
        """Load an authority from PEM files."""
        try:
            certificate = _load_certificate(certificate_path)
            key = _load_private_key(key_path)
        except (OSError, ValueError) as exc:
            raise CertificateError(f"Cannot load certificate authority: {exc}") from exc
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise CertificateError("Certificate authority key must be an EC private key.")
        if not _public_keys_match(certificate, key):
            raise CertificateError("Certificate authority key does not match its certificate.")
        return cls(certificate=certificate, private_key=key)


def issue_certificate(
    ca: CertificateAuthority,
    subject: x509.Name,
    *,
    validity: timedelta = NODE_CERT_VALIDITY,
    now: datetime | None = None,
) -> IssuedCertificate:
    """Mint a client certificate for *subject* signed by *ca*."""
    now = now or datetime.now(UTC)
    key = ec.generate_private_key(ec.SECP256R1())
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(ca.certificate.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - BACKDATE)
        .not_valid_after(now + validity)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
        .sign(ca.private_key, hashes.SHA256())
    )
    return IssuedCertificate(certificate=certificate, private_key=key)


def validate_certificate_pair(
    certificate: Path,
    key: Path,
    *,
    ca: x509.Certificate | None = None,
    now: datetime | None = None,
) -> CertificateReport:
    """Check that *certificate* and *key* exist, match, are current and chain to *ca*."""
    now = now or datetime.now(UTC)
    findings: list[CertificateFinding] = []
    not_before: datetime | None = None
    not_after: datetime | None = None

    cert_exists = _check_file(certificate, "certificate", findings)
    key_exists = _check_file(key, "key", findings)
    if not (cert_exists and key_exists):
        return CertificateReport(certificate, key, tuple(findings), None, None)

    try:
        cert_obj = _load_certificate(certificate)
    except ValueError as exc:
        findings.append(
            CertificateFinding(
                "parse-certificate",
                FindingSeverity.ERROR,
                f"Cannot parse certificate: {exc}",
                certificate,
            )
        )
        return CertificateReport(certificate, key, tuple(findings), None, None)
    try:
        key_obj = _load_private_key(key)
    except ValueError as exc:
        findings.append(
            CertificateFinding(
                "parse-key", FindingSeverity.ERROR, f"Cannot parse private key: {exc}", key
            )
        )
        return CertificateReport(certificate, key, tuple(findings), None, None)

    not_before = _as_utc(cert_obj.not_valid_before_utc)
    not_after = _as_utc(cert_obj.not_valid_after_utc)
    if now < not_before:
        findings.append(
            CertificateFinding(
                "validity",
                FindingSeverity.ERROR,
                f"Certificate is not yet valid (valid from {not_before.isoformat()}).",
                certificate,
            )
        )
    elif now > not_after:
        findings.append(
            CertificateFinding(
                "validity",
                FindingSeverity.ERROR,
                f"Certificate has expired (valid until {not_after.isoformat()}).",
                certificate,
            )
        )
    else:
        findings.append(
            CertificateFinding("validity", FindingSeverity.OK, "Certificate is current.")
        )

    if _public_keys_match(cert_obj, key_obj):
        findings.append(
            CertificateFinding("key-match", FindingSeverity.OK, "Private key matches.")
        )
    else:
        findings.append(
            CertificateFinding(
                "key-match",
                FindingSeverity.ERROR,
                "Private key does not match the certificate.",
                key,
            )
        )

    if ca is not None:
        try:
            cert_obj.verify_directly_issued_by(ca)
        except (ValueError, TypeError, InvalidSignature) as exc:
            reason = str(exc) or "bad signature"
            findings.append(
                CertificateFinding(
                    "issuer",
                    FindingSeverity.ERROR,
                    f"Certificate was not issued by the expected authority: {reason}",
                    certificate,
                )
            )
        else:
            findings.append(
                CertificateFinding("issuer", FindingSeverity.OK, "Issued by expected authority.")
            )

    return CertificateReport(certificate, key, tuple(findings), not_before, not_after)


def _check_file(path: Path, scope: str, findings: list[CertificateFinding]) -> bool:
    if path.is_file():
        return True
    findings.append(
        CertificateFinding(
            f"{scope}-exists", FindingSeverity.ERROR, f"No {scope} found at {path}.", path
        )
    )
    return False


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> ec.EllipticCurvePrivateKey:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(ec.EllipticCurvePrivateKey, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: ec.EllipticCurvePrivateKey) -> bool:
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "CertificateAuthority",
    "CertificateError",
    "CertificateFinding",
    "CertificateReport",
    "FindingSeverity",
    "IssuedCertificate",
    "issue_certificate",
    "validate_certificate_pair",
]
