"""
Certificate Authority — the single owner of the CA identity and its stores.

Domain layer — no I/O of its own. The CA key and certificate, the ledger,
the serial allocator and the CRL-number allocator are all reached through
ports injected by the composition root.

Initialization is a one-time railway:

  ca_store.exists() / ledger.records()          (refuse to overwrite)
    → generate_keypair(key_spec)
      → create_ca_certificate(O=<org>, CN=<name>, ca_validity_days)
        → ledger.initialize()                   (skipped when resuming)
          → serials.initialize(serial_start) → crl_numbers.initialize(1)
            → export_private_key → ca_store.save(material)

The CA material is saved last: identity() only succeeds once the key, the
certificate and the ledger are all present. A run that stopped after the
ledger was created but before the material was saved leaves an empty ledger
and no key; the next initialize() resumes from there instead of refusing.
A ledger that already holds records is never reused without its CA key.
"""

from __future__ import annotations

import structlog
from railway import ErrorCode
from railway.result import Result

from pki_manager.domain.models import (
    CaIdentity,
    CaMaterial,
    Clock,
    KeyHandle,
    KeySpec,
    Subject,
    ValidityWindow,
    utc_now,
)
from pki_manager.domain.ports import CaStore, CertificateLedger, CryptoBackend, SerialAllocator

log = structlog.get_logger()

FIRST_CRL_NUMBER = 1


class CertificateAuthority:
    """
    Per-deployment CA: creates its identity once, then hands it out.

    The loaded identity is cached for the lifetime of the instance; the CA
    key is read-only after initialization.
    """

    def __init__(
        self,
        backend: CryptoBackend,
        ledger: CertificateLedger,
        serials: SerialAllocator,
        crl_numbers: SerialAllocator,
        ca_store: CaStore,
        key_spec: KeySpec = KeySpec(),
        organization: str = "HomeLab",
        ca_validity_days: int = 3650,
        serial_start: int = 0x1000,
        clock: Clock = utc_now,
    ) -> None:
        self._backend = backend
        self._ledger = ledger
        self._serials = serials
        self._crl_numbers = crl_numbers
        self._ca_store = ca_store
        self._key_spec = key_spec
        self._organization = organization
        self._ca_validity_days = ca_validity_days
        self._serial_start = serial_start
        self._clock = clock
        self._identity: CaIdentity | None = None

    @property
    def backend(self) -> CryptoBackend:
        return self._backend

    @property
    def ledger(self) -> CertificateLedger:
        return self._ledger

    @property
    def serials(self) -> SerialAllocator:
        return self._serials

    @property
    def crl_numbers(self) -> SerialAllocator:
        return self._crl_numbers

    @property
    def organization(self) -> str:
        return self._organization

    def initialize(self, common_name: str) -> Result[CaIdentity]:
        """Create the CA key, certificate, ledger and counters."""
        common_name = common_name.strip()
        if not common_name:
            return Result.failure(ErrorCode.VALIDATION_ERROR, "CA name must not be empty")
        subject = Subject(organization=self._organization, common_name=common_name)

        return (
            self._ensure_fresh()
            .flat_map(
                lambda resume: self._backend.generate_keypair(self._key_spec)
                .flat_map(lambda key: self._self_sign(key, subject))
                .flat_map(lambda identity: self._create_stores(identity, resume))
            )
            .flat_map(self._persist)
            .peek(
                lambda _: log.info(
                    "ca.initialized",
                    subject=subject.rfc4514(),
                    algorithm=self._key_spec.algorithm.value,
                    serial_start=hex(self._serial_start),
                )
            )
        )

    def identity(self) -> Result[CaIdentity]:
        """Load the CA identity; CA_NOT_INITIALIZED if any part is missing."""
        if self._identity is not None:
            return Result.success(self._identity)
        return (
            self._ca_store.load()
            .flat_map(self._load_identity)
            .flat_map(self._require_ledger)
            .peek(self._remember)
        )

    def is_initialized(self) -> Result[bool]:
        return self._ca_store.exists().flat_map(
            lambda has_material: self._ledger.is_initialized().map(
                lambda has_ledger: has_material and has_ledger
            )
        )

    # ─────────────────────── Steps ───────────────────────

    def _ensure_fresh(self) -> Result[bool]:
        """Succeed with True when an empty ledger is left to resume into."""
        return self._ca_store.exists().flat_map(
            lambda has_material: Result.failure(
                ErrorCode.ALREADY_INITIALIZED,
                "CA already initialized: refusing to overwrite existing CA material",
            )
            if has_material
            else self._ledger.is_initialized().flat_map(self._resumable)
        )

    def _resumable(self, has_ledger: bool) -> Result[bool]:
        if not has_ledger:
            return Result.success(False)
        return self._ledger.records().flat_map(
            lambda records: Result.failure(
                ErrorCode.ALREADY_INITIALIZED,
                f"Certificate ledger holds {len(records)} record(s) but the CA key is "
                "missing: restore ca.key and ca.crt instead of re-initializing",
            )
            if records
            else Result.success(True).peek(
                lambda _: log.warning("ca.initialization_resumed", ledger="empty")
            )
        )

    def _self_sign(self, key: KeyHandle, subject: Subject) -> Result[CaIdentity]:
        validity = ValidityWindow.starting_at(self._clock(), self._ca_validity_days)
        return self._backend.create_ca_certificate(key, subject, validity).map(
            lambda certificate_pem: CaIdentity(key=key, certificate_pem=certificate_pem)
        )

    def _create_stores(self, identity: CaIdentity, resume: bool) -> Result[CaIdentity]:
        ledger = Result.success(True) if resume else self._ledger.initialize()
        return (
            ledger.flat_map(lambda _: self._seed(self._serials, self._serial_start))
            .flat_map(lambda _: self._seed(self._crl_numbers, FIRST_CRL_NUMBER))
            .map(lambda _: identity)
        )

    @staticmethod
    def _seed(counter: SerialAllocator, start: int) -> Result[int]:
        # A counter left by an interrupted run is kept; nothing was issued from it.
        return counter.initialize(start).either(
            Result.success,
            lambda error: counter.peek()
            if error.code is ErrorCode.ALREADY_INITIALIZED
            else Result.failure_from(error),
        )

    def _persist(self, identity: CaIdentity) -> Result[CaIdentity]:
        return (
            self._backend.export_private_key(identity.key)
            .map(lambda key_pem: CaMaterial(key_pem, identity.certificate_pem))
            .flat_map(self._ca_store.save)
            .map(lambda _: identity)
            .peek(self._remember)
        )

    def _load_identity(self, material: CaMaterial) -> Result[CaIdentity]:
        return self._backend.load_private_key(material.key_pem).map(
            lambda key: CaIdentity(key=key, certificate_pem=material.certificate_pem)
        )

    def _require_ledger(self, identity: CaIdentity) -> Result[CaIdentity]:
        return self._ledger.is_initialized().flat_map(
            lambda exists: Result.success(identity)
            if exists
            else Result.failure(
                ErrorCode.CA_NOT_INITIALIZED,
                "CA material exists but the certificate ledger is missing",
            )
        )

    def _remember(self, identity: CaIdentity) -> None:
        self._identity = identity
