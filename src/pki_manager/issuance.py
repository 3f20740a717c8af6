"""
Issuance workflow — from signing request to recorded, stored certificate.

Domain layer — PURE BUSINESS LOGIC over injected ports. The stages are
connected via flat_map, each one adding to an immutable draft:

  validate(request, role)
    → authority.identity()            CA_NOT_INITIALIZED
      → generate_keypair + create_csr  SIGNING_FAILURE
        → serials.next()               STORAGE_ERROR
          → sign_certificate           SIGNING_FAILURE
            → ledger.append            LEDGER_INCONSISTENCY (signed, not recorded)
              → artifacts.store        STORAGE_ERROR (recorded, files missing)

Signing and recording are two effects without a shared transaction. Once a
certificate has been signed, any failure to append it is reported as
LEDGER_INCONSISTENCY carrying the orphaned certificate, never dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

import structlog
from railway import ErrorCode, FailureDescription
from railway.result import Result

from pki_manager.authority import CertificateAuthority
from pki_manager.domain.models import (
    CaIdentity,
    CertificateRecord,
    Clock,
    ExtensionProfile,
    KeyHandle,
    KeySpec,
    OrphanedCertificate,
    Role,
    SigningRequest,
    ValidityWindow,
    utc_now,
)
from pki_manager.domain.ports import ArtifactStore

log = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class _Draft:
    """Issuance state accumulated along the railway up to signing."""

    request: SigningRequest
    role: Role
    ca: CaIdentity
    key: KeyHandle = None
    csr: bytes = b""
    serial: int = 0


@dataclass(frozen=True, slots=True)
class _Signed:
    """A signed certificate and the ledger record it becomes."""

    draft: _Draft
    record: CertificateRecord


class IssuanceWorkflow:
    """Issue server and client certificates under the CA."""

    def __init__(
        self,
        authority: CertificateAuthority,
        artifacts: ArtifactStore,
        key_spec: KeySpec = KeySpec(),
        validity_days: int = 825,
        clock: Clock = utc_now,
    ) -> None:
        self._authority = authority
        self._backend = authority.backend
        self._artifacts = artifacts
        self._key_spec = key_spec
        self._validity_days = validity_days
        self._clock = clock

    def issue(
        self,
        request: SigningRequest,
        role: Role,
        passphrase: str | None = None,
    ) -> Result[CertificateRecord]:
        """
        Sign and record a certificate for `request` under `role`.

        For clients, a PKCS#12 bundle is exported when `passphrase` is given
        (an empty passphrase yields an unencrypted bundle).
        """
        return (
            self._validate(request, role)
            .flat_map(lambda _: self._authority.identity())
            .map(lambda ca: _Draft(request=request, role=role, ca=ca))
            .flat_map(self._generate_key)
            .flat_map(self._create_csr)
            .flat_map(self._allocate_serial)
            .flat_map(self._sign)
            .flat_map(self._commit)
            .flat_map(lambda issued: self._store(issued, passphrase))
        )

    # ─────────────────────── Stages ───────────────────────

    @staticmethod
    def _validate(request: SigningRequest, role: Role) -> Result[SigningRequest]:
        problems = request.problems_for(role)
        if problems:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                f"Invalid {role.value} request: " + "; ".join(problems),
            )
        return Result.success(request)

    def _generate_key(self, draft: _Draft) -> Result[_Draft]:
        return self._backend.generate_keypair(self._key_spec).map(
            lambda key: replace(draft, key=key)
        )

    def _create_csr(self, draft: _Draft) -> Result[_Draft]:
        return self._backend.create_csr(
            draft.key, draft.request.subject, draft.request.san
        ).map(lambda csr: replace(draft, csr=csr))

    def _allocate_serial(self, draft: _Draft) -> Result[_Draft]:
        return self._authority.serials.next().map(lambda serial: replace(draft, serial=serial))

    def _sign(self, draft: _Draft) -> Result[_Signed]:
        validity = ValidityWindow.starting_at(self._clock(), self._validity_days)
        return self._backend.sign_certificate(
            draft.ca.key,
            draft.ca.certificate_pem,
            draft.csr,
            draft.serial,
            validity,
            ExtensionProfile.for_role(draft.role),
        ).map(
            lambda certificate: _Signed(
                draft=draft,
                record=CertificateRecord(
                    serial=draft.serial,
                    subject=draft.request.subject,
                    role=draft.role,
                    not_before=validity.not_before,
                    not_after=validity.not_after,
                    san=draft.request.san,
                    certificate=certificate,
                ),
            )
        )

    def _commit(self, signed: _Signed) -> Result[_Signed]:
        return (
            self._authority.ledger.append(signed.record)
            .map_failure(lambda error: self._orphaned(signed, error))
            .peek(
                lambda committed: log.info(
                    "issuance.committed",
                    serial=committed.serial,
                    role=committed.role.value,
                    subject=committed.subject.rfc4514(),
                    san=str(committed.san) if committed.san else None,
                    not_after=committed.not_after.isoformat(),
                )
            )
            .map(lambda committed: replace(signed, record=committed))
        )

    def _store(self, signed: _Signed, passphrase: str | None) -> Result[CertificateRecord]:
        record = signed.record
        return (
            self._artifact_files(signed, passphrase)
            .flat_map(
                lambda files: self._artifacts.store(record.role, record.identifier, files)
            )
            .map_failure(
                lambda error: FailureDescription(
                    code=error.code,
                    message=(
                        f"Serial {record.serial} is recorded but its artifacts "
                        f"were not stored: {error.message}"
                    ),
                    exception=error.exception,
                )
            )
            .map(lambda _: record)
        )

    # ─────────────────────── Helpers ───────────────────────

    def _artifact_files(self, signed: _Signed, passphrase: str | None) -> Result[dict[str, bytes]]:
        draft, certificate = signed.draft, signed.record.certificate
        name = draft.request.identifier
        if draft.role is Role.SERVER:
            return self._backend.export_private_key(draft.key).map(
                lambda key_pem: {"server.key": key_pem, "server.crt": certificate}
            )

        files = self._backend.export_private_key(draft.key).map(
            lambda key_pem: {f"{name}.key": key_pem, f"{name}.crt": certificate}
        )
        if passphrase is None:
            return files
        return files.flat_map(
            lambda partial: self._backend.export_pkcs12(
                draft.key, certificate, draft.ca.certificate_pem, passphrase, name
            ).map(lambda bundle: {**partial, f"{name}.p12": bundle})
        )

    @staticmethod
    def _orphaned(signed: _Signed, error: FailureDescription) -> FailureDescription:
        record = signed.record
        log.error(
            "issuance.ledger_inconsistency",
            serial=record.serial,
            subject=record.subject.rfc4514(),
            cause=str(error),
        )
        return FailureDescription(
            code=ErrorCode.LEDGER_INCONSISTENCY,
            message=(
                f"Certificate serial {record.serial} for {record.identifier!r} "
                f"was signed but not recorded ({error.code.value}: {error.message}); "
                "reconcile it manually"
            ),
            exception=OrphanedCertificate(record.serial, record.certificate, str(error)),
        )
