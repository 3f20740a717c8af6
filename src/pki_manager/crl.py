"""
CRL builder — derive, sign and publish a complete revocation list.

Domain layer. The CRL is never the source of truth: every build reads the
revoked set from the ledger and replaces the published snapshot whole.

  authority.identity()         CA_NOT_INITIALIZED
    → ledger.revoked_entries() STORAGE_ERROR
      → crl_numbers.next()     STORAGE_ERROR
        → sign_crl             SIGNING_FAILURE
          → publisher.publish  STORAGE_ERROR
"""

from __future__ import annotations

from datetime import timedelta

import structlog
from railway.result import Result

from pki_manager.authority import CertificateAuthority
from pki_manager.domain.models import CaIdentity, Clock, CrlArtifact, RevokedEntry, utc_now
from pki_manager.domain.ports import CrlPublisher

log = structlog.get_logger()


class CRLBuilder:
    def __init__(
        self,
        authority: CertificateAuthority,
        publisher: CrlPublisher,
        next_update_days: int = 30,
        clock: Clock = utc_now,
    ) -> None:
        self._authority = authority
        self._publisher = publisher
        self._next_update = timedelta(days=next_update_days)
        self._clock = clock

    def build(self) -> Result[CrlArtifact]:
        """Sign a CRL listing exactly the currently revoked serials and publish it."""
        return self._authority.identity().flat_map(
            lambda ca: self._authority.ledger.revoked_entries().flat_map(
                lambda entries: self._sign(ca, entries)
            )
        ).flat_map(self._publish)

    def _sign(self, ca: CaIdentity, entries: list[RevokedEntry]) -> Result[CrlArtifact]:
        ordered = tuple(sorted(entries, key=lambda entry: entry.serial))
        this_update = self._clock().replace(microsecond=0)
        next_update = this_update + self._next_update

        return self._authority.crl_numbers.next().flat_map(
            lambda number: self._authority.backend.sign_crl(
                ca.key, ca.certificate_pem, ordered, this_update, next_update, number
            ).map(
                lambda pem: CrlArtifact(
                    crl_number=number,
                    this_update=this_update,
                    next_update=next_update,
                    entries=ordered,
                    pem=pem,
                )
            )
        )

    def _publish(self, artifact: CrlArtifact) -> Result[CrlArtifact]:
        return (
            self._publisher.publish(artifact)
            .map(lambda _: artifact)
            .peek(
                lambda built: log.info(
                    "crl.built",
                    crl_number=built.crl_number,
                    revoked=len(built.entries),
                    next_update=built.next_update.isoformat(),
                )
            )
        )
