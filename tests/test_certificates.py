"""Unit tests for node certificate helpers."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from hybridnode.certificates import (
    CertificateAuthority,
    CertificateError,
    CertificateFinding,
    FindingSeverity,
    IssuedCertificate,
    issue_certificate,
    validate_certificate_pair,
)


def _subject(name: str = "edge-01") -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])


def _write_pair(tmp_path: Path, issued: IssuedCertificate) -> tuple[Path, Path]:
    cert_path = tmp_path / "server.pem"
    key_path = tmp_path / "server.key"
    cert_path.write_bytes(issued.certificate_pem())
    key_path.write_bytes(issued.private_key_pem())
    return cert_path, key_path


def _checks(findings: tuple[CertificateFinding, ...]) -> dict[str, FindingSeverity]:
    return {finding.check: finding.severity for finding in findings}


def test_issue_certificate_is_client_auth_leaf() -> None:
    """Issued certificates are short-lived client-auth leaves signed by the CA."""
    now = datetime(2026, 1, 1, tzinfo=UTC)
    ca = CertificateAuthority.generate(now=now)

    issued = issue_certificate(ca, _subject(), now=now)

    cert = issued.certificate
    assert cert.subject == _subject()
    assert cert.issuer == ca.certificate.subject
    assert cert.not_valid_after_utc - now == timedelta(days=1)
    usage = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert list(usage) == [ExtendedKeyUsageOID.CLIENT_AUTH]
    constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    assert constraints.ca is False
    cert.verify_directly_issued_by(ca.certificate)


def test_validate_pair_accepts_current_matching_material(tmp_path: Path) -> None:
    """A current, matching pair issued by the CA has no errors."""
    ca = CertificateAuthority.generate()
    cert_path, key_path = _write_pair(tmp_path, issue_certificate(ca, _subject()))

    report = validate_certificate_pair(cert_path, key_path, ca=ca.certificate)

    assert report.has_errors is False
    assert _checks(report.findings) == {
        "validity": FindingSeverity.OK,
        "key-match": FindingSeverity.OK,
        "issuer": FindingSeverity.OK,
    }
    assert report.to_dict()["status"] == "ok"


def test_validate_pair_reports_missing_files(tmp_path: Path) -> None:
    """Missing files are reported without parsing anything."""
    report = validate_certificate_pair(tmp_path / "server.pem", tmp_path / "server.key")

    assert report.has_errors is True
    assert report.errors == [
        f"No certificate found at {tmp_path / 'server.pem'}.",
        f"No key found at {tmp_path / 'server.key'}.",
    ]
    assert report.not_valid_after is None


def test_validate_pair_detects_expiry(tmp_path: Path) -> None:
    """Expired certificates are flagged."""
    issued_at = datetime.now(UTC) - timedelta(days=10)
    ca = CertificateAuthority.generate(now=issued_at)
    cert_path, key_path = _write_pair(
        tmp_path, issue_certificate(ca, _subject(), now=issued_at)
    )

    report = validate_certificate_pair(cert_path, key_path)

    assert _checks(report.findings)["validity"] is FindingSeverity.ERROR
    assert "expired" in report.errors[0]


def test_validate_pair_detects_key_mismatch_and_foreign_issuer(tmp_path: Path) -> None:
    """A key from another certificate and a foreign CA are both errors."""
    ca = CertificateAuthority.generate()
    other_ca = CertificateAuthority.generate(common_name="other")
    issued = issue_certificate(ca, _subject())
    stray = issue_certificate(ca, _subject("stray"))
    cert_path = tmp_path / "server.pem"
    key_path = tmp_path / "server.key"
    cert_path.write_bytes(issued.certificate_pem())
    key_path.write_bytes(stray.private_key_pem())

    report = validate_certificate_pair(cert_path, key_path, ca=other_ca.certificate)

    checks = _checks(report.findings)
    assert checks["key-match"] is FindingSeverity.ERROR
    assert checks["issuer"] is FindingSeverity.ERROR


def test_validate_pair_reports_unparseable_certificate(tmp_path: Path) -> None:
    """Garbage certificate data is an error finding, not an exception."""
    cert_path = tmp_path / "server.pem"
    key_path = tmp_path / "server.key"
    cert_path.write_bytes(b"not a certificate")
    key_path.write_bytes(b"not a key")

    report = validate_certificate_pair(cert_path, key_path)

    assert _checks(report.findings) == {"parse-certificate": FindingSeverity.ERROR}


def test_load_authority_round_trip(tmp_path: Path) -> None:
    """An authority written to disk loads back with its key."""
    ca = CertificateAuthority.generate()
    cert_path, key_path = _write_pair(tmp_path, ca)

    loaded = CertificateAuthority.load(cert_path, key_path)

    assert loaded.certificate == ca.certificate


def test_load_authority_rejects_mismatched_key(tmp_path: Path) -> None:
    """Loading fails when the key does not belong to the certificate."""
    ca = CertificateAuthority.generate()
    other = CertificateAuthority.generate()
    cert_path = tmp_path / "ca.pem"
    key_path = tmp_path / "ca.key"
    cert_path.write_bytes(ca.certificate_pem())
    key_path.write_bytes(other.private_key_pem())

    with pytest.raises(CertificateError, match="does not match"):
        CertificateAuthority.load(cert_path, key_path)


def test_load_authority_missing_file(tmp_path: Path) -> None:
    """Missing authority files raise CertificateError."""
    with pytest.raises(CertificateError, match="Cannot load certificate authority"):
        CertificateAuthority.load(tmp_path / "ca.pem", tmp_path / "ca.key")
