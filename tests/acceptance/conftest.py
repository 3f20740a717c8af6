"""
Acceptance test fixtures — PostgreSQL testcontainer for end-to-end tests.

Reuses the schema reset helpers from the integration suite but runs its own
container, scoped for acceptance.
"""

from __future__ import annotations

import pytest
from testcontainers.postgres import PostgresContainer

from tests.integration.conftest import connection_url, reset_schema


@pytest.fixture(scope="session")
def acceptance_pg() -> PostgresContainer:
    """Start a PostgreSQL container for the acceptance test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        yield pg


@pytest.fixture()
def acceptance_dsn(acceptance_pg: PostgresContainer) -> str:
    """Return a psycopg-compatible DSN for an empty database."""
    url = connection_url(acceptance_pg)
    reset_schema(url)
    return url
