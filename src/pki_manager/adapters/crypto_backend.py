"""
Cryptographic backend adapter — keys, CSRs, certificates, CRLs and PKCS#12.

Adapter layer — implements the CryptoBackend port with cryptography (PyCA):
  - EC (prime256v1 / secp384r1 / secp521r1) or RSA key generation
  - PKCS#10 CSRs with an optional DNS/IP subjectAltName
  - self-signed CA certificate (v3_ca profile)
  - leaf signing with the role-derived extension profile
  - CRL signing with CRLNumber, AKI and per-entry CRLReason
  - PKCS#12 export bundling key, leaf and CA certificate

All artifacts are PEM encoded except PKCS#12. Every exception raised by
cryptography is captured into a SIGNING_FAILURE at this boundary.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Sequence
from datetime import datetime

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from railway import ErrorCode
from railway.result import Result

from pki_manager.domain.models import (
    ExtensionProfile,
    KeyAlgorithm,
    KeyHandle,
    KeySpec,
    RevocationReason,
    RevokedEntry,
    SanType,
    Subject,
    SubjectAltName,
    ValidityWindow,
)

log = structlog.get_logger()

SUPPORTED_CURVES: dict[str, type[ec.EllipticCurve]] = {
    "prime256v1": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
}

_EXTENDED_KEY_USAGES = {
    "server_auth": ExtendedKeyUsageOID.SERVER_AUTH,
    "client_auth": ExtendedKeyUsageOID.CLIENT_AUTH,
}

_KEY_USAGE_FLAGS = (
    "digital_signature",
    "content_commitment",
    "key_encipherment",
    "data_encipherment",
    "key_agreement",
    "key_cert_sign",
    "crl_sign",
    "encipher_only",
    "decipher_only",
)

_REASON_FLAGS = {
    RevocationReason.KEY_COMPROMISE: x509.ReasonFlags.key_compromise,
    RevocationReason.CA_COMPROMISE: x509.ReasonFlags.ca_compromise,
    RevocationReason.AFFILIATION_CHANGED: x509.ReasonFlags.affiliation_changed,
    RevocationReason.SUPERSEDED: x509.ReasonFlags.superseded,
    RevocationReason.CESSATION_OF_OPERATION: x509.ReasonFlags.cessation_of_operation,
    RevocationReason.CERTIFICATE_HOLD: x509.ReasonFlags.certificate_hold,
    RevocationReason.PRIVILEGE_WITHDRAWN: x509.ReasonFlags.privilege_withdrawn,
}


# ─────────────────────── Value Conversion ───────────────────────


def _x509_name(subject: Subject) -> x509.Name:
    attributes = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, subject.organization)]
    if subject.organizational_unit:
        attributes.append(
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, subject.organizational_unit)
        )
    attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, subject.common_name))
    return x509.Name(attributes)


def _general_name(san: SubjectAltName) -> x509.GeneralName:
    """Encode a SAN; ip_address() rejects syntactically-IP but invalid values."""
    if san.type is SanType.IP:
        return x509.IPAddress(ipaddress.ip_address(san.value))
    return x509.DNSName(san.value)


def _key_usage(flags: frozenset[str]) -> x509.KeyUsage:
    unknown = flags.difference(_KEY_USAGE_FLAGS)
    if unknown:
        raise ValueError(f"Unknown key usage flags: {sorted(unknown)}")
    return x509.KeyUsage(**{name: name in flags for name in _KEY_USAGE_FLAGS})


def _signature_hash(key: KeyHandle) -> hashes.HashAlgorithm:
    if isinstance(key, ec.EllipticCurvePrivateKey) and key.curve.key_size > 384:
        return hashes.SHA512()
    if isinstance(key, ec.EllipticCurvePrivateKey) and key.curve.key_size > 256:
        return hashes.SHA384()
    return hashes.SHA256()


# ─────────────────────── Backend ───────────────────────


class CryptographyBackend:
    """
    Implements the CryptoBackend port with PyCA cryptography.

    Stateless: the CA key and certificate are passed in on every call.
    """

    def generate_keypair(self, spec: KeySpec) -> Result[KeyHandle]:
        return Result.from_computation(
            lambda: self._generate(spec),
            ErrorCode.SIGNING_FAILURE,
            f"Failed to generate {spec.algorithm.value} key pair",
        )

    def create_csr(
        self,
        key: KeyHandle,
        subject: Subject,
        san: SubjectAltName | None,
    ) -> Result[bytes]:
        return Result.from_computation(
            lambda: self._build_csr(key, subject, san),
            ErrorCode.SIGNING_FAILURE,
            f"Failed to create CSR for {subject.common_name!r}"
            + (f" ({san})" if san else ""),
        )

    def create_ca_certificate(
        self,
        key: KeyHandle,
        subject: Subject,
        validity: ValidityWindow,
    ) -> Result[bytes]:
        return Result.from_computation(
            lambda: self._build_ca_certificate(key, subject, validity),
            ErrorCode.SIGNING_FAILURE,
            "Failed to create self-signed CA certificate",
        )

    def sign_certificate(
        self,
        ca_key: KeyHandle,
        ca_certificate: bytes,
        csr: bytes,
        serial: int,
        validity: ValidityWindow,
        profile: ExtensionProfile,
    ) -> Result[bytes]:
        return Result.from_computation(
            lambda: self._sign_leaf(ca_key, ca_certificate, csr, serial, validity, profile),
            ErrorCode.SIGNING_FAILURE,
            f"Failed to sign certificate with serial {serial}",
        )

    def sign_crl(
        self,
        ca_key: KeyHandle,
        ca_certificate: bytes,
        revoked: Sequence[RevokedEntry],
        this_update: datetime,
        next_update: datetime,
        crl_number: int,
    ) -> Result[bytes]:
        return Result.from_computation(
            lambda: self._sign_crl(
                ca_key, ca_certificate, revoked, this_update, next_update, crl_number
            ),
            ErrorCode.SIGNING_FAILURE,
            f"Failed to sign CRL number {crl_number}",
        )

    def export_pkcs12(
        self,
        key: KeyHandle,
        certificate: bytes,
        ca_certificate: bytes,
        passphrase: str,
        friendly_name: str,
    ) -> Result[bytes]:
        return Result.from_computation(
            lambda: self._export_pkcs12(
                key, certificate, ca_certificate, passphrase, friendly_name
            ),
            ErrorCode.SIGNING_FAILURE,
            f"Failed to export PKCS#12 bundle for {friendly_name!r}",
        )

    def export_private_key(self, key: KeyHandle) -> Result[bytes]:
        return Result.from_computation(
            lambda: key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            ),
            ErrorCode.SIGNING_FAILURE,
            "Failed to serialize private key",
        )

    def load_private_key(self, key_pem: bytes) -> Result[KeyHandle]:
        return Result.from_computation(
            lambda: serialization.load_pem_private_key(key_pem, password=None),
            ErrorCode.SIGNING_FAILURE,
            "Failed to load CA private key",
        )

    # ─────────────────────── Internals (may raise) ───────────────────────

    def _generate(self, spec: KeySpec) -> KeyHandle:
        if spec.algorithm is KeyAlgorithm.RSA:
            return rsa.generate_private_key(public_exponent=65537, key_size=spec.rsa_bits)
        curve = SUPPORTED_CURVES.get(spec.ecc_curve)
        if curve is None:
            raise ValueError(f"Unsupported EC curve: {spec.ecc_curve}")
        return ec.generate_private_key(curve())

    def _build_csr(
        self,
        key: KeyHandle,
        subject: Subject,
        san: SubjectAltName | None,
    ) -> bytes:
        builder = x509.CertificateSigningRequestBuilder().subject_name(_x509_name(subject))
        if san is not None:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([_general_name(san)]),
                critical=False,
            )
        csr = builder.sign(key, _signature_hash(key))
        return csr.public_bytes(serialization.Encoding.PEM)

    def _build_ca_certificate(
        self,
        key: KeyHandle,
        subject: Subject,
        validity: ValidityWindow,
    ) -> bytes:
        name = _x509_name(subject)
        public_key = key.public_key()
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(validity.not_before)
            .not_valid_after(validity.not_after)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key),
                critical=False,
            )
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                _key_usage(frozenset({"digital_signature", "crl_sign", "key_cert_sign"})),
                critical=True,
            )
            .sign(key, _signature_hash(key))
        )
        log.info("crypto.ca_certificate_created", subject=name.rfc4514_string())
        return cert.public_bytes(serialization.Encoding.PEM)

    def _sign_leaf(
        self,
        ca_key: KeyHandle,
        ca_certificate: bytes,
        csr_pem: bytes,
        serial: int,
        validity: ValidityWindow,
        profile: ExtensionProfile,
    ) -> bytes:
        ca_cert = x509.load_pem_x509_certificate(ca_certificate)
        csr = x509.load_pem_x509_csr(csr_pem)
        if not csr.is_signature_valid:
            raise ValueError("CSR signature does not verify")

        public_key = csr.public_key()
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca_cert.subject)
            .public_key(public_key)
            .serial_number(serial)
            .not_valid_before(validity.not_before)
            .not_valid_after(validity.not_after)
            .add_extension(
                x509.BasicConstraints(ca=profile.is_ca, path_length=None),
                critical=False,
            )
            .add_extension(_key_usage(profile.key_usage), critical=True)
            .add_extension(
                x509.ExtendedKeyUsage(
                    [_EXTENDED_KEY_USAGES[usage] for usage in sorted(profile.extended_key_usage)]
                ),
                critical=False,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
            .add_extension(self._authority_key_identifier(ca_cert), critical=False)
        )

        # Requested SANs are copied over verbatim.
        try:
            san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            builder = builder.add_extension(san.value, critical=san.critical)
        except x509.ExtensionNotFound:
            pass

        cert = builder.sign(ca_key, _signature_hash(ca_key))
        return cert.public_bytes(serialization.Encoding.PEM)

    def _sign_crl(
        self,
        ca_key: KeyHandle,
        ca_certificate: bytes,
        revoked: Sequence[RevokedEntry],
        this_update: datetime,
        next_update: datetime,
        crl_number: int,
    ) -> bytes:
        ca_cert = x509.load_pem_x509_certificate(ca_certificate)
        builder = (
            x509.CertificateRevocationListBuilder()
            .issuer_name(ca_cert.subject)
            .last_update(this_update)
            .next_update(next_update)
            .add_extension(x509.CRLNumber(crl_number), critical=False)
            .add_extension(self._authority_key_identifier(ca_cert), critical=False)
        )
        for entry in sorted(revoked, key=lambda e: e.serial):
            revoked_builder = (
                x509.RevokedCertificateBuilder()
                .serial_number(entry.serial)
                .revocation_date(entry.revoked_at)
            )
            flag = _REASON_FLAGS.get(entry.reason)
            if flag is not None:
                revoked_builder = revoked_builder.add_extension(
                    x509.CRLReason(flag), critical=False
                )
            builder = builder.add_revoked_certificate(revoked_builder.build())

        crl = builder.sign(ca_key, _signature_hash(ca_key))
        return crl.public_bytes(serialization.Encoding.PEM)

    def _export_pkcs12(
        self,
        key: KeyHandle,
        certificate: bytes,
        ca_certificate: bytes,
        passphrase: str,
        friendly_name: str,
    ) -> bytes:
        encryption: serialization.KeySerializationEncryption
        if passphrase:
            encryption = serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
        else:
            encryption = serialization.NoEncryption()
        return pkcs12.serialize_key_and_certificates(
            name=friendly_name.encode("utf-8"),
            key=key,
            cert=x509.load_pem_x509_certificate(certificate),
            cas=[x509.load_pem_x509_certificate(ca_certificate)],
            encryption_algorithm=encryption,
        )

    @staticmethod
    def _authority_key_identifier(ca_cert: x509.Certificate) -> x509.AuthorityKeyIdentifier:
        """AKI from the CA's SKI, or derived from its public key if the SKI is absent."""
        try:
            ski = ca_cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
            return x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ski.value)
        except x509.ExtensionNotFound:
            return x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_cert.public_key())
