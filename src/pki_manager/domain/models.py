"""
Domain models — immutable value objects for the CA ledger and its workflows.

Pure data with self-describing helpers (SAN classification, role-derived
extension profiles, validity arithmetic, derived status). No I/O.

All models are frozen dataclasses; state changes (revocation) produce a new
record through dataclasses.replace inside the ledger adapters.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, TypeAlias

# Syntactic dotted-quad check only: "10.0.0.999" still classifies as IP.
_DOTTED_QUAD = re.compile(r"\A[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+\Z")

# Identifiers double as artifact directory names.
_SAFE_IDENTIFIER = re.compile(r"\A[A-Za-z0-9@_-][A-Za-z0-9@._-]*\Z")

KeyHandle: TypeAlias = Any
"""Opaque private-key handle owned by the cryptographic backend."""

Clock: TypeAlias = Callable[[], datetime]
"""Source of "now" for issuance, revocation and CRL timestamps."""


def utc_now() -> datetime:
    return datetime.now(UTC)


class Role(StrEnum):
    SERVER = "server"
    CLIENT = "client"


class CertificateStatus(StrEnum):
    VALID = "valid"
    REVOKED = "revoked"
    EXPIRED = "expired"


class SanType(StrEnum):
    DNS = "DNS"
    IP = "IP"


class KeyAlgorithm(StrEnum):
    ECC = "ecc"
    RSA = "rsa"


class RevocationReason(StrEnum):
    """RFC 5280 CRLReason values accepted for revocation."""

    UNSPECIFIED = "unspecified"
    KEY_COMPROMISE = "key_compromise"
    CA_COMPROMISE = "ca_compromise"
    AFFILIATION_CHANGED = "affiliation_changed"
    SUPERSEDED = "superseded"
    CESSATION_OF_OPERATION = "cessation_of_operation"
    CERTIFICATE_HOLD = "certificate_hold"
    PRIVILEGE_WITHDRAWN = "privilege_withdrawn"


@dataclass(frozen=True, slots=True)
class SubjectAltName:
    """A single typed Subject Alternative Name entry."""

    type: SanType
    value: str

    @classmethod
    def classify(cls, identifier: str) -> SubjectAltName:
        """
        Type an identifier by its syntactic form.

        Exactly four dot-separated runs of decimal digits map to IP; anything
        else is a DNS name. Octet ranges are not checked here.
        """
        if _DOTTED_QUAD.match(identifier):
            return cls(SanType.IP, identifier)
        return cls(SanType.DNS, identifier)

    def __str__(self) -> str:
        return f"{self.type.value}:{self.value}"


@dataclass(frozen=True, slots=True)
class Subject:
    """Distinguished name fields the CA issues under."""

    organization: str
    common_name: str
    organizational_unit: str | None = None

    def rfc4514(self) -> str:
        parts = [f"CN={self.common_name}"]
        if self.organizational_unit:
            parts.append(f"OU={self.organizational_unit}")
        parts.append(f"O={self.organization}")
        return ",".join(parts)


@dataclass(frozen=True, slots=True)
class SigningRequest:
    """
    The subject and (for servers) SAN a new certificate should bind.

    Built with for_server / for_client, which apply the fixed subject layout:
      server → O=<org>, CN=<domain or IP>, SAN classified from the identifier
      client → O=<org>, OU=<unit>, CN=<username>, no SAN
    """

    subject: Subject
    san: SubjectAltName | None = None

    @classmethod
    def for_server(cls, identifier: str, organization: str) -> SigningRequest:
        identifier = identifier.strip()
        return cls(
            subject=Subject(organization=organization, common_name=identifier),
            san=SubjectAltName.classify(identifier),
        )

    @classmethod
    def for_client(
        cls,
        username: str,
        organization: str,
        unit: str = "Users",
    ) -> SigningRequest:
        return cls(
            subject=Subject(
                organization=organization,
                common_name=username.strip(),
                organizational_unit=unit,
            ),
        )

    @property
    def identifier(self) -> str:
        return self.subject.common_name

    def problems_for(self, role: Role) -> list[str]:
        """Return every reason this request cannot be issued under `role`."""
        problems: list[str] = []
        if not self.identifier:
            problems.append("common name must not be empty")
        elif not _SAFE_IDENTIFIER.match(self.identifier):
            problems.append(
                f"common name {self.identifier!r} may only contain letters, digits "
                "and . _ - @ and must not start with a dot"
            )
        if not self.subject.organization:
            problems.append("organization must not be empty")
        if role is Role.SERVER and self.san is None:
            problems.append("server certificates require a subject alternative name")
        if role is Role.CLIENT and self.san is not None:
            problems.append("client certificates do not carry a subject alternative name")
        return problems


@dataclass(frozen=True, slots=True)
class ExtensionProfile:
    """X.509 v3 extensions applied at signing, derived from the certificate role."""

    key_usage: frozenset[str]
    extended_key_usage: frozenset[str]
    is_ca: bool = False

    @classmethod
    def for_role(cls, role: Role) -> ExtensionProfile:
        if role is Role.SERVER:
            return cls(
                key_usage=frozenset({"digital_signature", "key_encipherment"}),
                extended_key_usage=frozenset({"server_auth"}),
            )
        return cls(
            key_usage=frozenset({"digital_signature"}),
            extended_key_usage=frozenset({"client_auth"}),
        )


@dataclass(frozen=True, slots=True)
class ValidityWindow:
    not_before: datetime
    not_after: datetime

    @classmethod
    def starting_at(cls, start: datetime, days: int) -> ValidityWindow:
        """Window of exactly `days` days from `start`, truncated to whole seconds."""
        start = start.replace(microsecond=0)
        return cls(not_before=start, not_after=start + timedelta(days=days))


@dataclass(frozen=True, slots=True)
class KeySpec:
    """Key-pair parameters for the backend (mirrors the CA's algorithm settings)."""

    algorithm: KeyAlgorithm = KeyAlgorithm.ECC
    ecc_curve: str = "prime256v1"
    rsa_bits: int = 2048


@dataclass(frozen=True, slots=True)
class CertificateRecord:
    """
    One ledger entry per issued certificate, keyed by serial.

    Only VALID and REVOKED are ever persisted. EXPIRED is derived from the
    validity window at read time via effective_status().
    """

    serial: int
    subject: Subject
    role: Role
    not_before: datetime
    not_after: datetime
    san: SubjectAltName | None = None
    status: CertificateStatus = CertificateStatus.VALID
    revoked_at: datetime | None = None
    revocation_reason: RevocationReason | None = None
    certificate: bytes = field(default=b"", repr=False)

    @property
    def identifier(self) -> str:
        return self.subject.common_name

    @property
    def validity(self) -> ValidityWindow:
        return ValidityWindow(self.not_before, self.not_after)

    @property
    def is_revoked(self) -> bool:
        return self.status is CertificateStatus.REVOKED

    def effective_status(self, at: datetime) -> CertificateStatus:
        if self.status is CertificateStatus.VALID and at >= self.not_after:
            return CertificateStatus.EXPIRED
        return self.status


@dataclass(frozen=True, slots=True)
class RevokedEntry:
    """One CRL line: which serial, since when, and why."""

    serial: int
    revoked_at: datetime
    reason: RevocationReason = RevocationReason.UNSPECIFIED


@dataclass(frozen=True, slots=True)
class CrlArtifact:
    """
    A signed, complete CRL snapshot.

    Fully replaces the previously published CRL; never a delta.
    """

    crl_number: int
    this_update: datetime
    next_update: datetime
    entries: tuple[RevokedEntry, ...] = ()
    pem: bytes = field(default=b"", repr=False)

    @property
    def serials(self) -> frozenset[int]:
        return frozenset(entry.serial for entry in self.entries)


@dataclass(frozen=True, slots=True)
class CaMaterial:
    """Persisted form of the CA identity: PEM private key and PEM certificate."""

    key_pem: bytes = field(repr=False)
    certificate_pem: bytes


@dataclass(frozen=True, slots=True)
class CaIdentity:
    """The loaded CA: backend key handle plus the CA certificate PEM."""

    key: KeyHandle = field(repr=False)
    certificate_pem: bytes = field(repr=False)


class OrphanedCertificate(Exception):
    """
    A certificate that was signed but never made it into the ledger.

    Attached to LEDGER_INCONSISTENCY failures so the operator can reconcile
    (record or discard) the serial by hand.
    """

    def __init__(self, serial: int, certificate_pem: bytes, cause: str) -> None:
        super().__init__(f"Serial {serial} was signed but not recorded: {cause}")
        self.serial = serial
        self.certificate_pem = certificate_pem
        self.cause = cause
