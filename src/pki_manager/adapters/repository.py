"""
PostgreSQL repository adapters — certificate ledger and durable counters.

Adapter layer — implements the CertificateLedger and SerialAllocator ports
using psycopg (v3) with raw parameterized SQL.

Consistency discipline:
  - every call opens its own connection and runs in one transaction;
    success is reported only after COMMIT
  - counters advance with a single UPDATE … RETURNING (row lock held by
    PostgreSQL), so concurrent next() calls never share a value
  - revoke() reads the row with SELECT … FOR UPDATE before changing it,
    so concurrent revocations serialize instead of overwriting each other
  - lock_timeout / connect_timeout make contention fail fast as
    STORAGE_ERROR; there is no retry here

Table mapping:
  CertificateRecord → certificate_ledger (status only 'valid' / 'revoked')
  counters          → ca_counters (one row per counter name)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

import psycopg
import structlog
from psycopg import errors
from psycopg.rows import dict_row
from railway import ErrorCode
from railway.result import Result

from pki_manager.domain.models import (
    CertificateRecord,
    CertificateStatus,
    RevocationReason,
    RevokedEntry,
    Role,
    SanType,
    Subject,
    SubjectAltName,
)

log = structlog.get_logger()

T = TypeVar("T")

SERIAL_COUNTER = "serial"
CRL_NUMBER_COUNTER = "crl_number"

SCHEMA_DDL = """
CREATE TABLE certificate_ledger (
    serial               BIGINT PRIMARY KEY,
    common_name          TEXT NOT NULL,
    organization         TEXT NOT NULL,
    organizational_unit  TEXT,
    role                 TEXT NOT NULL CHECK (role IN ('server', 'client')),
    san_type             TEXT CHECK (san_type IN ('DNS', 'IP')),
    san_value            TEXT,
    not_before           TIMESTAMPTZ NOT NULL,
    not_after            TIMESTAMPTZ NOT NULL,
    status               TEXT NOT NULL CHECK (status IN ('valid', 'revoked')),
    revoked_at           TIMESTAMPTZ,
    revocation_reason    TEXT,
    certificate          BYTEA NOT NULL,
    recorded_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK ((status = 'revoked') = (revoked_at IS NOT NULL)),
    CHECK (not_after > not_before)
);

CREATE INDEX certificate_ledger_identity_idx
    ON certificate_ledger (common_name, serial DESC);

CREATE TABLE ca_counters (
    name        TEXT PRIMARY KEY,
    next_value  BIGINT NOT NULL CHECK (next_value > 0)
);
"""

_LEDGER_EXISTS = "SELECT to_regclass('certificate_ledger') IS NOT NULL"

# Serializes concurrent initialize() calls; value is arbitrary but stable.
_INIT_LOCK_ID = 7_304_118

_RECORD_COLUMNS = """
    serial, common_name, organization, organizational_unit, role,
    san_type, san_value, not_before, not_after, status,
    revoked_at, revocation_reason, certificate
"""

_INSERT_RECORD = f"""
INSERT INTO certificate_ledger ({_RECORD_COLUMNS})
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

_SELECT_BY_SERIAL = f"SELECT {_RECORD_COLUMNS} FROM certificate_ledger WHERE serial = %s"

# FALSE sorts before TRUE: non-revoked rows first, newest serial first.
_SELECT_BY_IDENTITY = f"""
SELECT {_RECORD_COLUMNS} FROM certificate_ledger
WHERE common_name = %s AND (%s::text IS NULL OR role = %s::text)
ORDER BY (status = 'revoked'), serial DESC
LIMIT 1
"""

_LOCK_FOR_REVOKE = "SELECT status FROM certificate_ledger WHERE serial = %s FOR UPDATE"

_REVOKE = f"""
UPDATE certificate_ledger
SET status = 'revoked', revoked_at = %s, revocation_reason = %s
WHERE serial = %s
RETURNING {_RECORD_COLUMNS}
"""

_SELECT_REVOKED = """
SELECT serial, revoked_at, revocation_reason FROM certificate_ledger
WHERE status = 'revoked'
ORDER BY serial
"""

_SELECT_ALL = f"SELECT {_RECORD_COLUMNS} FROM certificate_ledger ORDER BY serial"

_INSERT_COUNTER = """
INSERT INTO ca_counters (name, next_value) VALUES (%s, %s)
ON CONFLICT (name) DO NOTHING
RETURNING next_value
"""

_ADVANCE_COUNTER = """
UPDATE ca_counters SET next_value = next_value + 1
WHERE name = %s
RETURNING next_value - 1
"""

_PEEK_COUNTER = "SELECT next_value FROM ca_counters WHERE name = %s"


class _PsycopgStore:
    """Connection handling and exception translation shared by both adapters."""

    def __init__(
        self,
        dsn: str,
        lock_timeout_ms: int = 5000,
        connect_timeout_seconds: int = 10,
    ) -> None:
        self._dsn = dsn
        self._lock_timeout_ms = lock_timeout_ms
        self._connect_timeout_seconds = connect_timeout_seconds

    def _connect(self) -> psycopg.Connection[dict[str, Any]]:
        return psycopg.connect(
            self._dsn,
            connect_timeout=self._connect_timeout_seconds,
            options=f"-c lock_timeout={self._lock_timeout_ms}",
            row_factory=dict_row,
        )

    def _attempt(self, operation: Callable[[], Result[T]], message: str) -> Result[T]:
        """
        Run a transactional operation that itself returns a Result.

        Domain outcomes (NOT_FOUND, ALREADY_REVOKED…) come back as failures
        from `operation`; anything psycopg raises becomes STORAGE_ERROR, or
        CA_NOT_INITIALIZED when the schema was never created.
        """
        try:
            return operation()
        except errors.UndefinedTable as e:
            return Result.failure(
                ErrorCode.CA_NOT_INITIALIZED,
                "Certificate ledger does not exist: run 'pki-manager init' first",
                e,
            )
        except psycopg.Error as e:
            log.error("repository.storage_error", operation=message, error=str(e))
            return Result.failure(ErrorCode.STORAGE_ERROR, message, e)


# ─────────────────────── Counters ───────────────────────


class PsycopgSerialAllocator(_PsycopgStore):
    """
    Durable strictly-increasing counter stored in ca_counters.

    Implements the SerialAllocator port. One instance per counter name:
    SERIAL_COUNTER for certificate serials, CRL_NUMBER_COUNTER for CRLs.
    """

    def __init__(
        self,
        dsn: str,
        counter: str = SERIAL_COUNTER,
        lock_timeout_ms: int = 5000,
        connect_timeout_seconds: int = 10,
    ) -> None:
        super().__init__(dsn, lock_timeout_ms, connect_timeout_seconds)
        self._counter = counter

    def initialize(self, start: int) -> Result[int]:
        if start < 1:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                f"Counter {self._counter!r} must start at a positive value, got {start}",
            )
        return self._attempt(
            lambda: self._initialize(start),
            f"Failed to initialize counter {self._counter!r}",
        )

    def next(self) -> Result[int]:
        return self._attempt(self._advance, f"Failed to advance counter {self._counter!r}")

    def peek(self) -> Result[int]:
        return self._attempt(self._peek, f"Failed to read counter {self._counter!r}")

    def _initialize(self, start: int) -> Result[int]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(_INSERT_COUNTER, (self._counter, start)).fetchone()
        if row is None:
            return Result.failure(
                ErrorCode.ALREADY_INITIALIZED,
                f"Counter {self._counter!r} already exists",
            )
        log.info("counter.initialized", counter=self._counter, start=start)
        return Result.success(row["next_value"])

    def _advance(self) -> Result[int]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(_ADVANCE_COUNTER, (self._counter,)).fetchone()
        if row is None:
            return self._missing()
        value = next(iter(row.values()))
        log.debug("counter.advanced", counter=self._counter, value=value)
        return Result.success(value)

    def _peek(self) -> Result[int]:
        with self._connect() as conn:
            row = conn.execute(_PEEK_COUNTER, (self._counter,)).fetchone()
        if row is None:
            return self._missing()
        return Result.success(row["next_value"])

    def _missing(self) -> Result[int]:
        return Result.failure(
            ErrorCode.CA_NOT_INITIALIZED,
            f"Counter {self._counter!r} has not been initialized",
        )


# ─────────────────────── Ledger ───────────────────────


class PsycopgCertificateLedger(_PsycopgStore):
    """
    Append/update-only certificate ledger in PostgreSQL.

    Implements the CertificateLedger port. initialize() owns the schema for
    both the ledger and the counters table.
    """

    def initialize(self) -> Result[bool]:
        return self._attempt(self._initialize, "Failed to create certificate ledger")

    def is_initialized(self) -> Result[bool]:
        return self._attempt(self._exists, "Failed to inspect certificate ledger")

    def append(self, record: CertificateRecord) -> Result[CertificateRecord]:
        return self._attempt(
            lambda: self._append(record),
            f"Failed to append serial {record.serial} to the ledger",
        )

    def get(self, serial: int) -> Result[CertificateRecord]:
        return self._attempt(lambda: self._get(serial), f"Failed to read serial {serial}")

    def find_by_subject_identifier(
        self,
        identifier: str,
        role: Role | None = None,
    ) -> Result[CertificateRecord]:
        return self._attempt(
            lambda: self._find(identifier, role),
            f"Failed to look up certificates for {identifier!r}",
        )

    def revoke(
        self,
        serial: int,
        at: datetime,
        reason: RevocationReason = RevocationReason.UNSPECIFIED,
    ) -> Result[CertificateRecord]:
        return self._attempt(
            lambda: self._revoke(serial, at, reason),
            f"Failed to revoke serial {serial}",
        )

    def revoked_entries(self) -> Result[list[RevokedEntry]]:
        return self._attempt(self._revoked_entries, "Failed to read revoked entries")

    def records(self) -> Result[list[CertificateRecord]]:
        return self._attempt(self._records, "Failed to read ledger records")

    # ─────────────────────── Transactions ───────────────────────

    def _initialize(self) -> Result[bool]:
        with self._connect() as conn, conn.transaction():
            conn.execute("SELECT pg_advisory_xact_lock(%s)", (_INIT_LOCK_ID,))
            if self._ledger_exists(conn):
                return Result.failure(
                    ErrorCode.ALREADY_INITIALIZED,
                    "Certificate ledger already exists",
                )
            conn.execute(SCHEMA_DDL)
        log.info("ledger.initialized")
        return Result.success(True)

    def _exists(self) -> Result[bool]:
        with self._connect() as conn:
            return Result.success(self._ledger_exists(conn))

    def _append(self, record: CertificateRecord) -> Result[CertificateRecord]:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(_INSERT_RECORD, _record_params(record))
        except errors.UniqueViolation as e:
            return Result.failure(
                ErrorCode.DUPLICATE_SERIAL,
                f"Serial {record.serial} is already present in the ledger",
                e,
            )
        log.info(
            "ledger.appended",
            serial=record.serial,
            role=record.role.value,
            subject=record.subject.rfc4514(),
        )
        return Result.success(record)

    def _get(self, serial: int) -> Result[CertificateRecord]:
        with self._connect() as conn:
            row = conn.execute(_SELECT_BY_SERIAL, (serial,)).fetchone()
        return Result.from_optional(
            _row_to_record(row) if row else None,
            f"No certificate with serial {serial}",
            ErrorCode.CERTIFICATE_NOT_FOUND,
        )

    def _find(self, identifier: str, role: Role | None) -> Result[CertificateRecord]:
        role_value = role.value if role else None
        with self._connect() as conn:
            row = conn.execute(
                _SELECT_BY_IDENTITY, (identifier, role_value, role_value)
            ).fetchone()
        return Result.from_optional(
            _row_to_record(row) if row else None,
            f"No certificate issued for {identifier!r}",
            ErrorCode.CERTIFICATE_NOT_FOUND,
        )

    def _revoke(
        self,
        serial: int,
        at: datetime,
        reason: RevocationReason,
    ) -> Result[CertificateRecord]:
        with self._connect() as conn, conn.transaction():
            current = conn.execute(_LOCK_FOR_REVOKE, (serial,)).fetchone()
            if current is None:
                return Result.failure(
                    ErrorCode.CERTIFICATE_NOT_FOUND,
                    f"No certificate with serial {serial}",
                )
            if current["status"] == CertificateStatus.REVOKED.value:
                return Result.failure(
                    ErrorCode.ALREADY_REVOKED,
                    f"Serial {serial} is already revoked",
                )
            row = conn.execute(_REVOKE, (at, reason.value, serial)).fetchone()
        log.info("ledger.revoked", serial=serial, reason=reason.value, revoked_at=at.isoformat())
        return Result.success(_row_to_record(row))

    def _revoked_entries(self) -> Result[list[RevokedEntry]]:
        with self._connect() as conn:
            rows = conn.execute(_SELECT_REVOKED).fetchall()
        return Result.success(
            [
                RevokedEntry(
                    serial=row["serial"],
                    revoked_at=row["revoked_at"],
                    reason=RevocationReason(row["revocation_reason"] or "unspecified"),
                )
                for row in rows
            ]
        )

    def _records(self) -> Result[list[CertificateRecord]]:
        with self._connect() as conn:
            rows = conn.execute(_SELECT_ALL).fetchall()
        return Result.success([_row_to_record(row) for row in rows])

    @staticmethod
    def _ledger_exists(conn: psycopg.Connection[dict[str, Any]]) -> bool:
        row = conn.execute(_LEDGER_EXISTS).fetchone()
        return bool(row and next(iter(row.values())))


# ─────────────────────── Row Mapping ───────────────────────


def _record_params(record: CertificateRecord) -> tuple[Any, ...]:
    return (
        record.serial,
        record.subject.common_name,
        record.subject.organization,
        record.subject.organizational_unit,
        record.role.value,
        record.san.type.value if record.san else None,
        record.san.value if record.san else None,
        record.not_before,
        record.not_after,
        record.status.value,
        record.revoked_at,
        record.revocation_reason.value if record.revocation_reason else None,
        record.certificate,
    )


def _row_to_record(row: dict[str, Any]) -> CertificateRecord:
    san = None
    if row["san_type"] is not None:
        san = SubjectAltName(SanType(row["san_type"]), row["san_value"])
    reason = row["revocation_reason"]
    return CertificateRecord(
        serial=row["serial"],
        subject=Subject(
            organization=row["organization"],
            common_name=row["common_name"],
            organizational_unit=row["organizational_unit"],
        ),
        role=Role(row["role"]),
        san=san,
        not_before=row["not_before"],
        not_after=row["not_after"],
        status=CertificateStatus(row["status"]),
        revoked_at=row["revoked_at"],
        revocation_reason=RevocationReason(reason) if reason else None,
        certificate=bytes(row["certificate"]),
    )
