"""
Execution contexts — separate WHAT an operation does from HOW it is run.

Workflows describe the operation and return Result[T]; an execution context
wraps the call with cross-cutting behavior (timing and outcome logging for
CLI commands and scheduled CRL refreshes).

    ctx = LoggingExecutionContext(operation="RevokeCertificate")
    result = ctx.execute(lambda: revocation.revoke("alice"))
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from railway.failure import ErrorCode, FailureDescription
from railway.result import Failure, Result

T = TypeVar("T")
logger = logging.getLogger("railway.execution")


class LoggingExecutionContext:
    """
    Execution context that logs entry, exit, duration, and result state.

    An exception escaping the computation is a defect (ports never raise), so
    it is logged and converted into a TECHNICAL_ERROR failure instead of
    unwinding through the CLI.
    """

    def __init__(self, operation: str = "unknown", log_level: int = logging.INFO) -> None:
        self._operation = operation
        self._log_level = log_level

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        logger.log(self._log_level, "[%s] Starting execution", self._operation)
        start = time.monotonic()

        try:
            result = computation()
        except Exception as e:
            elapsed = time.monotonic() - start
            logger.error(
                "[%s] Execution failed after %.3fs: %s",
                self._operation,
                elapsed,
                e,
            )
            return Failure(
                FailureDescription(
                    ErrorCode.TECHNICAL_ERROR,
                    f"Execution failed: {e}",
                    e,
                )
            )

        elapsed = time.monotonic() - start
        state = "SUCCESS" if result.is_success() else f"FAILURE ({result.error().code.value})"
        logger.log(
            self._log_level,
            "[%s] Completed in %.3fs — %s",
            self._operation,
            elapsed,
            state,
        )
        return result
