"""
Integration test fixtures — PostgreSQL testcontainer and schema reset.

Provides a real PostgreSQL instance for each test session via testcontainers.
The ledger creates its own schema on initialize(), so each test starts from
an empty database by dropping whatever the previous test created.
"""

from __future__ import annotations

import psycopg
import pytest
from testcontainers.postgres import PostgresContainer

from pki_manager.adapters.repository import (
    CRL_NUMBER_COUNTER,
    SERIAL_COUNTER,
    PsycopgCertificateLedger,
    PsycopgSerialAllocator,
)

DROP_ALL = "DROP TABLE IF EXISTS certificate_ledger, ca_counters"


def connection_url(container: PostgresContainer) -> str:
    return container.get_connection_url().replace("postgresql+psycopg2", "postgresql")


def reset_schema(dsn: str) -> None:
    with psycopg.connect(dsn) as conn:
        conn.execute(DROP_ALL)
        conn.commit()


@pytest.fixture(scope="session")
def postgres_container() -> PostgresContainer:
    """Start a PostgreSQL container for the entire test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        yield pg


@pytest.fixture()
def dsn(postgres_container: PostgresContainer) -> str:
    """Return a psycopg-compatible DSN for an empty database."""
    url = connection_url(postgres_container)
    reset_schema(url)
    return url


@pytest.fixture()
def ledger(dsn: str) -> PsycopgCertificateLedger:
    """An initialized ledger (schema created, no records)."""
    store = PsycopgCertificateLedger(dsn)
    assert store.initialize().is_success()
    return store


@pytest.fixture()
def serials(ledger: PsycopgCertificateLedger, dsn: str) -> PsycopgSerialAllocator:
    allocator = PsycopgSerialAllocator(dsn, SERIAL_COUNTER)
    assert allocator.initialize(0x1000).is_success()
    return allocator


@pytest.fixture()
def crl_numbers(ledger: PsycopgCertificateLedger, dsn: str) -> PsycopgSerialAllocator:
    allocator = PsycopgSerialAllocator(dsn, CRL_NUMBER_COUNTER)
    assert allocator.initialize(1).is_success()
    return allocator
