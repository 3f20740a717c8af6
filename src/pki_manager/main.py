"""
Application entry point — wires dependencies and runs one CLI command.

Composition root: creates concrete adapters, injects them into the CA and
its workflows, and hands the result to the CLI.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Parse the command line (so --help works without configuration)
  2. Load and validate configuration from environment
  3. Configure structlog
  4. Create concrete adapters (crypto backend, PostgreSQL ledger and
     counters, filesystem stores)
  5. Wire the CertificateAuthority, IssuanceWorkflow, CRLBuilder and
     RevocationService, then dispatch the command
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Sequence
from dataclasses import dataclass

import structlog
from railway import ErrorCode
from railway.result import Result

from pki_manager import __version__
from pki_manager.adapters.crypto_backend import CryptographyBackend
from pki_manager.adapters.filesystem import FileArtifactStore, FileCaStore, FileCrlPublisher
from pki_manager.adapters.repository import (
    CRL_NUMBER_COUNTER,
    SERIAL_COUNTER,
    PsycopgCertificateLedger,
    PsycopgSerialAllocator,
)
from pki_manager.authority import CertificateAuthority
from pki_manager.cli import EXIT_FAILURE, build_parser, run
from pki_manager.config import AppSettings
from pki_manager.crl import CRLBuilder
from pki_manager.issuance import IssuanceWorkflow
from pki_manager.revocation import RevocationService


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for human-readable console logging.

    Log lines go to stderr so command output on stdout stays clean.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


@dataclass(frozen=True)
class Services:
    """Everything a CLI command can call, fully wired."""

    settings: AppSettings
    authority: CertificateAuthority
    issuance: IssuanceWorkflow
    crl_builder: CRLBuilder
    revocation: RevocationService
    artifacts: FileArtifactStore


def build_services(settings: AppSettings) -> Services:
    """
    Instantiate all concrete adapters and wire the workflows.

    The ledger and both counters share one database; each call opens its
    own connection, so nothing here touches the network.
    """
    database = settings.database
    ca = settings.ca
    storage = {
        "lock_timeout_ms": database.lock_timeout_ms,
        "connect_timeout_seconds": database.connect_timeout_seconds,
    }

    backend = CryptographyBackend()
    ledger = PsycopgCertificateLedger(database.get_dsn(), **storage)
    serials = PsycopgSerialAllocator(database.get_dsn(), SERIAL_COUNTER, **storage)
    crl_numbers = PsycopgSerialAllocator(database.get_dsn(), CRL_NUMBER_COUNTER, **storage)
    artifacts = FileArtifactStore(ca.storage_dir)

    authority = CertificateAuthority(
        backend=backend,
        ledger=ledger,
        serials=serials,
        crl_numbers=crl_numbers,
        ca_store=FileCaStore(ca.ca_dir),
        key_spec=ca.key_spec,
        organization=ca.organization,
        ca_validity_days=ca.ca_validity_days,
        serial_start=ca.serial_start,
    )
    crl_builder = CRLBuilder(
        authority,
        FileCrlPublisher(ca.crl_path),
        next_update_days=ca.crl_next_update_days,
    )
    return Services(
        settings=settings,
        authority=authority,
        issuance=IssuanceWorkflow(
            authority,
            artifacts,
            key_spec=ca.key_spec,
            validity_days=ca.leaf_validity_days,
        ),
        crl_builder=crl_builder,
        revocation=RevocationService(authority, crl_builder),
        artifacts=artifacts,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Parse arguments, wire dependencies and exit with the command's status."""
    args = build_parser().parse_args(argv)

    loaded = Result.from_computation(
        AppSettings, ErrorCode.CONFIGURATION_ERROR, "Invalid configuration"
    )
    if loaded.is_failure():
        error = loaded.error()
        print(f"FATAL {error}\n{error.exception}", file=sys.stderr)  # noqa: T201
        sys.exit(EXIT_FAILURE)
    settings = loaded.value()

    configure_structlog(settings.log_level)
    log = structlog.get_logger()

    log.info(
        "app.starting",
        version=__version__,
        command=args.command or "menu",
        storage_dir=str(settings.ca.storage_dir),
        key_algorithm=settings.ca.key_algorithm.value,
    )

    try:
        status = run(build_services(settings), args)
    except KeyboardInterrupt:
        log.info("app.shutdown", reason="interrupted")
        status = 130
    sys.exit(status)


if __name__ == "__main__":
    main()
