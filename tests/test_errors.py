"""Tests for the error taxonomy and Result values."""

from __future__ import annotations

import pytest

from core.errors import (
    AlreadyBusyError,
    CodeError,
    ExternalToolError,
    GroupError,
    NotFoundError,
    Result,
    SignatureConflictError,
    fail,
)


class TestCodeError:
    """Tests for CodeError and its subclasses."""

    def test_default_codes(self) -> None:
        """Test each subclass carries its taxonomy code."""
        assert NotFoundError("x").code == "NOT_FOUND"
        assert AlreadyBusyError("x").code == "BUSY_ERROR"
        assert SignatureConflictError("x").code == "SIGNATURE_CONFLICT_ERROR"
        assert CodeError("x").code == "UNKNOWN"

    def test_explicit_code_overrides_default(self) -> None:
        """Test an explicit code wins over the subclass default."""
        err = AlreadyBusyError("port taken", code="PORT_IN_USE_ERROR")
        assert err.code == "PORT_IN_USE_ERROR"
        assert err.to_dict() == {"message": "port taken", "code": "PORT_IN_USE_ERROR"}

    def test_external_tool_error_keeps_stderr(self) -> None:
        """Test ExternalToolError captures the tool's error output."""
        err = ExternalToolError("ipfs init failed", stderr="permission denied")
        assert err.code == "EXTERNAL_TOOL_ERROR"
        assert err.stderr == "permission denied"

    def test_group_error_serializes_sub_errors(self) -> None:
        """Test GroupError lists every collected failure."""
        err = GroupError("2 failures", [NotFoundError("a"), CodeError("b", "TIMEOUT")])
        payload = err.to_dict()
        assert payload["code"] == "GROUP_ERROR"
        assert [e["code"] for e in payload["errors"]] == ["NOT_FOUND", "TIMEOUT"]


class TestResult:
    """Tests for Result and fail()."""

    def test_success_carries_extra_fields(self) -> None:
        """Test success keeps operation-specific fields."""
        res = Result.success(42, already_started=True)
        assert res.ok
        assert res.value == 42
        assert res.to_dict() == {"ok": True, "value": 42, "already_started": True}

    def test_rejects_inconsistent_results(self) -> None:
        """Test Result refuses ok with an error and failure without one."""
        with pytest.raises(ValueError, match="must not carry an error"):
            Result(ok=True, error=CodeError("x"))
        with pytest.raises(ValueError, match="must carry an error"):
            Result(ok=False)

    def test_fail_non_strict_returns_failure(self) -> None:
        """Test fail() wraps the error when not strict."""
        err = NotFoundError("missing")
        res = fail(err, strict=False)
        assert not res.ok
        assert res.error is err

    def test_fail_strict_raises(self) -> None:
        """Test fail() raises the error itself in strict mode."""
        with pytest.raises(NotFoundError, match="missing"):
            fail(NotFoundError("missing"), strict=True)
