"""
Railway-Oriented Programming (ROP) support for pki-manager.

Explicit, composable error handling — ports and workflows return Result
instead of raising, and failures carry an ErrorCode from the CA taxonomy.

    from railway import ErrorCode, Result

    def require_san(request: SigningRequest) -> Result[SigningRequest]:
        if request.san is None:
            return Result.failure(ErrorCode.VALIDATION_ERROR, "Server certificates need a SAN")
        return Result.success(request)
"""

from railway.result import Result, Success, Failure
from railway.failure import ErrorCode, FailureDescription
from railway.execution import LoggingExecutionContext
from railway.assertions import ResultAssertions

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "LoggingExecutionContext",
    "ResultAssertions",
]
