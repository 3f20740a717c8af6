"""
Failure description — structured error information for the failure track.

Every failure carries an ErrorCode from the CA taxonomy plus a human-readable
message and, where one exists, the exception that caused it. Callers branch
on the code; the message is for operators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from typing import Optional


@unique
class ErrorCode(Enum):
    """
    Error codes for every outcome a CA operation can fail with.

    Domain outcomes:
      CA_NOT_INITIALIZED, ALREADY_INITIALIZED, DUPLICATE_SERIAL,
      LEDGER_INCONSISTENCY, CERTIFICATE_NOT_FOUND, ALREADY_REVOKED
    Infrastructure outcomes:
      STORAGE_ERROR, SIGNING_FAILURE, CONFIGURATION_ERROR
    Input and defects:
      VALIDATION_ERROR, TECHNICAL_ERROR
    """

    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Signing request or command input is malformed."""

    CA_NOT_INITIALIZED = "CA_NOT_INITIALIZED"
    """No CA material or no ledger exists yet."""

    ALREADY_INITIALIZED = "ALREADY_INITIALIZED"
    """Initialization attempted over existing CA material, ledger or counter."""

    STORAGE_ERROR = "STORAGE_ERROR"
    """Read, write or lock failure on the counters, ledger or artifact files."""

    DUPLICATE_SERIAL = "DUPLICATE_SERIAL"
    """A ledger append collided with an existing serial."""

    LEDGER_INCONSISTENCY = "LEDGER_INCONSISTENCY"
    """A certificate was signed but could not be recorded in the ledger."""

    CERTIFICATE_NOT_FOUND = "CERTIFICATE_NOT_FOUND"
    """No ledger record matches the serial or subject identifier."""

    ALREADY_REVOKED = "ALREADY_REVOKED"
    """The record is already revoked; revocation is one-way."""

    SIGNING_FAILURE = "SIGNING_FAILURE"
    """The cryptographic backend refused or failed an operation."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """Settings are missing or invalid."""

    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    """An exception escaped a port boundary (a defect, not a domain outcome)."""

    @property
    def requires_operator_attention(self) -> bool:
        """True for failures that leave state no automatic step can repair."""
        return self is ErrorCode.LEDGER_INCONSISTENCY


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor carrying error code, message, optional exception, and timestamp.

    >>> desc = FailureDescription(ErrorCode.ALREADY_REVOKED, "Serial 4097 is already revoked")
    >>> desc.code
    <ErrorCode.ALREADY_REVOKED: 'ALREADY_REVOKED'>
    """

    code: ErrorCode
    message: str
    exception: Optional[BaseException] = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"
