"""Error taxonomy shared by every supervised service.

Library calls accept a ``strict`` flag: strict callers get the exception,
non-strict callers get a tagged :class:`Result` they can inspect.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ErrorCode = Literal[
    "ALREADY_STARTING",
    "ALREADY_STOPPING",
    "CANCELLED",
    "TIMEOUT",
    "CANNOT_START",
    "CANNOT_STOP",
    "BUSY_ERROR",
    "PORT_IN_USE_ERROR",
    "PID_FILE_ERROR",
    "LOG_FILE_ERROR",
    "BASH_SCRIPT_EXEC_ERROR",
    "PROCESS_KILLED",
    "NOT_READY",
    "NOT_FOUND",
    "DBDIR_ERROR",
    "SIGNATURE_CONFLICT_ERROR",
    "MALFORMED_DISCOVERY",
    "EXTERNAL_TOOL_ERROR",
    "GANACHE_ERROR",
    "MONGO_ERROR",
    "REDIS_ERROR",
    "IPFS_ERROR",
    "MARKET_ERROR",
    "GROUP_ERROR",
    "UNKNOWN",
]


class CodeError(Exception):
    """Exception tagged with a machine-readable code.

    Attributes:
        message: Human-readable description
        code: Error code used by callers to branch on failure kind
        context: Optional caller-supplied value echoed back with the error
    """

    default_code: ErrorCode = "UNKNOWN"

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        context: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code: ErrorCode = code or self.default_code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code}


class NotFoundError(CodeError):
    default_code: ErrorCode = "NOT_FOUND"


class AlreadyBusyError(CodeError):
    """A live instance (or a foreign process) already owns the identity."""

    default_code: ErrorCode = "BUSY_ERROR"


class SignatureConflictError(CodeError):
    """A shared store is claimed by an incompatible configuration."""

    default_code: ErrorCode = "SIGNATURE_CONFLICT_ERROR"


class MalformedDiscoveryError(CodeError):
    """A process matched a discovery pattern but could not be parsed back."""

    default_code: ErrorCode = "MALFORMED_DISCOVERY"


class ExternalToolError(CodeError):
    """A spawned binary or script exited with a failure.

    Attributes:
        stderr: Captured error output of the tool (may be empty)
    """

    default_code: ErrorCode = "EXTERNAL_TOOL_ERROR"

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        context: Any = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, code, context)
        self.stderr = stderr


class OperationCancelledError(CodeError):
    default_code: ErrorCode = "CANCELLED"


class OperationTimeoutError(CodeError):
    default_code: ErrorCode = "TIMEOUT"


class NotReadyError(CodeError):
    default_code: ErrorCode = "NOT_READY"


class ProcessKilledError(CodeError):
    default_code: ErrorCode = "PROCESS_KILLED"


class GroupError(CodeError):
    """Aggregate failure of a group operation.

    Attributes:
        errors: Every collected sub-failure, in submission order
    """

    default_code: ErrorCode = "GROUP_ERROR"

    def __init__(
        self,
        message: str,
        errors: list[CodeError],
        code: ErrorCode | None = None,
        context: Any = None,
    ) -> None:
        super().__init__(message, code, context)
        self.errors = list(errors)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["errors"] = [e.to_dict() for e in self.errors]
        return payload


@dataclass(frozen=True)
class Result:
    """Tagged success/failure value returned by non-strict operations.

    Attributes:
        ok: True on success
        value: Operation payload when ok (may be None)
        error: The failure when not ok
        extra: Optional operation-specific fields (e.g. ``already_started``)
    """

    ok: bool
    value: Any = None
    error: CodeError | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate Result consistency."""
        if self.ok and self.error is not None:
            raise ValueError("successful Result must not carry an error")
        if not self.ok and self.error is None:
            raise ValueError("failed Result must carry an error")

    @classmethod
    def success(cls, value: Any = None, **extra: Any) -> Result:
        return cls(ok=True, value=value, extra=dict(extra))

    @classmethod
    def failure(cls, error: CodeError) -> Result:
        return cls(ok=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "value": self.value, **self.extra}
        assert self.error is not None
        return {"ok": False, "error": self.error.to_dict()}


def fail(error: CodeError, strict: bool) -> Result:
    """Raise ``error`` in strict mode, otherwise wrap it in a failed Result.

    Args:
        error: Failure to report
        strict: Whether the caller asked for exceptions

    Returns:
        ``Result.failure(error)`` when not strict

    Raises:
        CodeError: ``error`` itself when strict
    """
    if strict:
        raise error
    return Result.failure(error)
