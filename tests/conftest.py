"""
Shared test fixtures for the pki-manager test suite.

Wires the real CryptographyBackend (ECC P-256, fast enough for unit tests)
to in-memory ports, so workflow tests sign real certificates and CRLs while
the ledger, counters and stores stay in process.
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from pki_manager.adapters.crypto_backend import CryptographyBackend
from pki_manager.authority import CertificateAuthority
from pki_manager.crl import CRLBuilder
from pki_manager.issuance import IssuanceWorkflow
from pki_manager.revocation import RevocationService
from tests.fakes import (
    FixedClock,
    InMemoryArtifactStore,
    InMemoryCaStore,
    InMemoryCrlPublisher,
    InMemoryLedger,
    InMemorySerialAllocator,
)

CA_NAME = "HomeLab Root"


@dataclass
class CaHarness:
    """A complete CA over in-memory ports, plus handles on every fake."""

    clock: FixedClock
    backend: CryptographyBackend
    ledger: InMemoryLedger
    serials: InMemorySerialAllocator
    crl_numbers: InMemorySerialAllocator
    ca_store: InMemoryCaStore
    publisher: InMemoryCrlPublisher
    artifacts: InMemoryArtifactStore
    authority: CertificateAuthority
    issuance: IssuanceWorkflow
    crl_builder: CRLBuilder
    revocation: RevocationService


def build_harness() -> CaHarness:
    clock = FixedClock()
    backend = CryptographyBackend()
    ledger = InMemoryLedger()
    serials = InMemorySerialAllocator()
    crl_numbers = InMemorySerialAllocator()
    ca_store = InMemoryCaStore()
    publisher = InMemoryCrlPublisher()
    artifacts = InMemoryArtifactStore()

    authority = CertificateAuthority(
        backend=backend,
        ledger=ledger,
        serials=serials,
        crl_numbers=crl_numbers,
        ca_store=ca_store,
        clock=clock,
    )
    crl_builder = CRLBuilder(authority, publisher, clock=clock)
    return CaHarness(
        clock=clock,
        backend=backend,
        ledger=ledger,
        serials=serials,
        crl_numbers=crl_numbers,
        ca_store=ca_store,
        publisher=publisher,
        artifacts=artifacts,
        authority=authority,
        issuance=IssuanceWorkflow(authority, artifacts, clock=clock),
        crl_builder=crl_builder,
        revocation=RevocationService(authority, crl_builder, clock=clock),
    )


@pytest.fixture()
def harness() -> CaHarness:
    """A CA that has NOT been initialized yet."""
    return build_harness()


@pytest.fixture()
def ca(harness: CaHarness) -> CaHarness:
    """A CA initialized as 'HomeLab Root'."""
    result = harness.authority.initialize(CA_NAME)
    assert result.is_success(), result
    return harness
