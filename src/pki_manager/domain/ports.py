"""
Ports — Protocol-based interfaces for the CA's infrastructure.

These define WHAT the workflows need without specifying HOW it's done.
Following hexagonal architecture:

  Domain ← Ports (protocols) ← Adapters (implementations)

Each port is a Protocol (structural typing) so adapters and test fakes
satisfy the contract simply by implementing the methods.

Every method returns Result[T]; adapters convert library exceptions into
failures with a code from the CA taxonomy at their boundary.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Protocol, runtime_checkable

from railway.result import Result

from pki_manager.domain.models import (
    CaMaterial,
    CertificateRecord,
    CrlArtifact,
    ExtensionProfile,
    KeyHandle,
    KeySpec,
    RevocationReason,
    RevokedEntry,
    Role,
    Subject,
    SubjectAltName,
    ValidityWindow,
)


@runtime_checkable
class CryptoBackend(Protocol):
    """
    Port: key generation, CSRs, signing and PKCS#12 packaging.

    The workflows trust its outputs and never inspect key handles. Any
    refusal or error is reported as SIGNING_FAILURE.
    """

    def generate_keypair(self, spec: KeySpec) -> Result[KeyHandle]: ...

    def create_csr(
        self,
        key: KeyHandle,
        subject: Subject,
        san: SubjectAltName | None,
    ) -> Result[bytes]: ...

    def create_ca_certificate(
        self,
        key: KeyHandle,
        subject: Subject,
        validity: ValidityWindow,
    ) -> Result[bytes]: ...

    def sign_certificate(
        self,
        ca_key: KeyHandle,
        ca_certificate: bytes,
        csr: bytes,
        serial: int,
        validity: ValidityWindow,
        profile: ExtensionProfile,
    ) -> Result[bytes]: ...

    def sign_crl(
        self,
        ca_key: KeyHandle,
        ca_certificate: bytes,
        revoked: Sequence[RevokedEntry],
        this_update: datetime,
        next_update: datetime,
        crl_number: int,
    ) -> Result[bytes]: ...

    def export_pkcs12(
        self,
        key: KeyHandle,
        certificate: bytes,
        ca_certificate: bytes,
        passphrase: str,
        friendly_name: str,
    ) -> Result[bytes]: ...

    def export_private_key(self, key: KeyHandle) -> Result[bytes]: ...

    def load_private_key(self, key_pem: bytes) -> Result[KeyHandle]: ...


@runtime_checkable
class SerialAllocator(Protocol):
    """
    Port: a durable, strictly increasing counter.

    next() is an atomic read-modify-write against persistent state; the
    persisted counter alone decides the next value, whatever the ledger
    holds. Used for certificate serials and for CRL numbers.
    """

    def initialize(self, start: int) -> Result[int]:
        """Create the counter at `start`; ALREADY_INITIALIZED if it exists."""
        ...

    def next(self) -> Result[int]:
        """Consume and return the next value."""
        ...

    def peek(self) -> Result[int]:
        """Return the next value without consuming it."""
        ...


@runtime_checkable
class CertificateLedger(Protocol):
    """
    Port: the append/update-only record of every issued certificate.

    Every mutating call is durable before it reports success. Records are
    never deleted; status only moves VALID → REVOKED.
    """

    def initialize(self) -> Result[bool]:
        """Create an empty ledger; ALREADY_INITIALIZED if one exists."""
        ...

    def is_initialized(self) -> Result[bool]: ...

    def append(self, record: CertificateRecord) -> Result[CertificateRecord]:
        """Add a new record; DUPLICATE_SERIAL if the serial is taken."""
        ...

    def get(self, serial: int) -> Result[CertificateRecord]: ...

    def find_by_subject_identifier(
        self,
        identifier: str,
        role: Role | None = None,
    ) -> Result[CertificateRecord]:
        """
        Most recent non-revoked record for a common name.

        Falls back to the most recent revoked record when no other exists;
        CERTIFICATE_NOT_FOUND when the identifier was never issued.
        """
        ...

    def revoke(
        self,
        serial: int,
        at: datetime,
        reason: RevocationReason = RevocationReason.UNSPECIFIED,
    ) -> Result[CertificateRecord]:
        """CERTIFICATE_NOT_FOUND / ALREADY_REVOKED, else the revoked record."""
        ...

    def revoked_entries(self) -> Result[list[RevokedEntry]]:
        """Every revoked record as a CRL entry, serial-ascending."""
        ...

    def records(self) -> Result[list[CertificateRecord]]:
        """Every record, serial-ascending."""
        ...


@runtime_checkable
class CaStore(Protocol):
    """Port: durable storage of the CA key and certificate."""

    def exists(self) -> Result[bool]: ...

    def save(self, material: CaMaterial) -> Result[str]:
        """Persist the CA material; ALREADY_INITIALIZED if present."""
        ...

    def load(self) -> Result[CaMaterial]:
        """CA_NOT_INITIALIZED when nothing has been saved."""
        ...


@runtime_checkable
class CrlPublisher(Protocol):
    """Port: replace the published CRL with a new complete snapshot."""

    def publish(self, artifact: CrlArtifact) -> Result[str]: ...


@runtime_checkable
class ArtifactStore(Protocol):
    """Port: hand issued key material and certificates to the operator."""

    def store(
        self,
        role: Role,
        identifier: str,
        files: Mapping[str, bytes],
    ) -> Result[str]: ...
