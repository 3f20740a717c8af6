"""
Revocation service — revoke a certificate and refresh the published CRL.

Domain layer. Revocation and CRL refresh form one logical unit: a revoked
serial that is missing from the published CRL is invisible to relying
parties. The ledger change is durable first; a failed CRL build afterwards
is surfaced (the revocation stays recorded and the next build completes the
unit).

  ledger.find_by_subject_identifier(identity)   CERTIFICATE_NOT_FOUND, no CRL build
    → ledger.revoke(serial, now, reason)        ALREADY_REVOKED, no CRL build
      → crl_builder.build()                     CRL failures, prefixed
"""

from __future__ import annotations

import structlog
from railway import FailureDescription
from railway.result import Result

from pki_manager.authority import CertificateAuthority
from pki_manager.crl import CRLBuilder
from pki_manager.domain.models import CertificateRecord, Clock, RevocationReason, Role, utc_now

log = structlog.get_logger()


class RevocationService:
    def __init__(
        self,
        authority: CertificateAuthority,
        crl_builder: CRLBuilder,
        clock: Clock = utc_now,
    ) -> None:
        self._ledger = authority.ledger
        self._crl_builder = crl_builder
        self._clock = clock

    def revoke(
        self,
        identity: str,
        reason: RevocationReason = RevocationReason.UNSPECIFIED,
        role: Role | None = None,
    ) -> Result[CertificateRecord]:
        """
        Revoke the most recent non-revoked certificate issued to `identity`.

        `identity` is the username or domain the certificate was issued for;
        `role` narrows the lookup when a name was used for both roles.
        """
        return self._ledger.find_by_subject_identifier(identity.strip(), role).flat_map(
            lambda record: self._revoke_and_publish(record.serial, reason)
        )

    def revoke_serial(
        self,
        serial: int,
        reason: RevocationReason = RevocationReason.UNSPECIFIED,
    ) -> Result[CertificateRecord]:
        """Revoke by serial; used to reconcile certificates found outside normal issuance."""
        return self._revoke_and_publish(serial, reason)

    def _revoke_and_publish(
        self,
        serial: int,
        reason: RevocationReason,
    ) -> Result[CertificateRecord]:
        return (
            self._ledger.revoke(serial, self._clock().replace(microsecond=0), reason)
            .peek(
                lambda record: log.info(
                    "revocation.recorded",
                    serial=record.serial,
                    subject=record.subject.rfc4514(),
                    reason=reason.value,
                )
            )
            .flat_map(self._refresh_crl)
        )

    def _refresh_crl(self, record: CertificateRecord) -> Result[CertificateRecord]:
        return (
            self._crl_builder.build()
            .map_failure(
                lambda error: FailureDescription(
                    code=error.code,
                    message=(
                        f"Serial {record.serial} is revoked in the ledger but the CRL "
                        f"was not refreshed: {error.message}"
                    ),
                    exception=error.exception,
                )
            )
            .peek_failure(
                lambda error: log.error(
                    "revocation.crl_refresh_failed",
                    serial=record.serial,
                    failure=str(error),
                )
            )
            .map(lambda _: record)
        )
