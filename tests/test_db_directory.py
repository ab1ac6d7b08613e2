"""Tests for signed store directories."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from core.db_directory import (
    DBUUID_BASENAME,
    SIGNATURE_BASENAME,
    DBSignature,
    SignedDirectory,
)
from core.errors import CodeError, NotFoundError, SignatureConflictError

SIG_A = DBSignature(name="market", service_type="market", signature={"1337": "abc"})
SIG_A_OTHER = DBSignature(name="market", service_type="market", signature={"1337": "def"})
SIG_B = DBSignature(name="core", service_type="core", signature="sha-1")


class TestInstall:
    """Tests for SignedDirectory.install."""

    def test_creates_layout(self, tmp_path: Path) -> None:
        """Test the identifier file and payload directory are created."""
        handle = SignedDirectory.install("mongo", tmp_path / "mongo", signature=SIG_A)

        root = (tmp_path / "mongo").resolve()
        assert handle.directory == root
        assert (root / DBUUID_BASENAME).read_text(encoding="utf-8") == handle.dbuuid
        assert handle.db_dir == root / handle.dbuuid
        assert handle.db_dir.is_dir()
        ledger = json.loads((root / SIGNATURE_BASENAME).read_text(encoding="utf-8"))
        assert ledger == {"market": {"serviceType": "market", "signature": {"1337": "abc"}}}

    def test_refuses_existing_directory(self, tmp_path: Path) -> None:
        """Test install never overwrites an existing directory."""
        (tmp_path / "redis").mkdir()
        with pytest.raises(CodeError) as exc_info:
            SignedDirectory.install("redis", tmp_path / "redis")
        assert exc_info.value.code == "DBDIR_ERROR"

    def test_h2_requires_filename(self, tmp_path: Path) -> None:
        """Test h2 stores need a database file stem."""
        with pytest.raises(CodeError, match="h2"):
            SignedDirectory.install("h2", tmp_path / "h2")


class TestLoad:
    """Tests for SignedDirectory.load and its signature ledger."""

    def test_missing_directory(self, tmp_path: Path) -> None:
        """Test loading a missing directory is a not-found error."""
        with pytest.raises(NotFoundError):
            SignedDirectory.load("mongo", tmp_path / "nope")

    def test_missing_dbuuid_marker(self, tmp_path: Path) -> None:
        """Test a plain directory is not a signed directory."""
        (tmp_path / "plain").mkdir()
        with pytest.raises(CodeError, match="DBUUID"):
            SignedDirectory.load("mongo", tmp_path / "plain")

    def test_identical_signature_leaves_ledger_untouched(self, tmp_path: Path) -> None:
        """Test re-registering the same signature keeps the file byte-identical."""
        SignedDirectory.install("mongo", tmp_path / "db", signature=SIG_A)
        sig_file = tmp_path / "db" / SIGNATURE_BASENAME
        before = sig_file.read_bytes()

        handle = SignedDirectory.load("mongo", tmp_path / "db", requested_signature=SIG_A)

        assert sig_file.read_bytes() == before
        assert handle.is_sig_compatible(SIG_A)

    def test_conflicting_signature_is_rejected(self, tmp_path: Path) -> None:
        """Test a different signature under the same name is a conflict."""
        SignedDirectory.install("mongo", tmp_path / "db", signature=SIG_A)
        sig_file = tmp_path / "db" / SIGNATURE_BASENAME
        before = sig_file.read_bytes()

        with pytest.raises(SignatureConflictError):
            SignedDirectory.load("mongo", tmp_path / "db", requested_signature=SIG_A_OTHER)

        assert sig_file.read_bytes() == before

    def test_new_consumer_is_appended(self, tmp_path: Path) -> None:
        """Test another name is recorded next to the existing one."""
        SignedDirectory.install("redis", tmp_path / "db", signature=SIG_A)

        handle = SignedDirectory.load("redis", tmp_path / "db", requested_signature=SIG_B)

        assert handle.get_sig("core") == {"serviceType": "core", "signature": "sha-1"}
        assert handle.used_by_service_type("market")
        assert handle.used_by_service_type("core")
        assert not handle.used_by_service_type("sms")
        reloaded = SignedDirectory.load("redis", tmp_path / "db")
        assert set(reloaded.ledger or {}) == {"market", "core"}

    def test_load_from_payload_dir(self, tmp_path: Path) -> None:
        """Test the owning directory is found from its payload directory."""
        installed = SignedDirectory.install("mongo", tmp_path / "db")

        handle = SignedDirectory.load_from_payload_dir("mongo", installed.db_dir)

        assert handle.directory == installed.directory
        assert handle.dbuuid == installed.dbuuid

    def test_corrupt_ledger_is_a_code_error(self, tmp_path: Path) -> None:
        """Test an unreadable signature file is reported as a directory error."""
        SignedDirectory.install("mongo", tmp_path / "db", signature=SIG_A)
        (tmp_path / "db" / SIGNATURE_BASENAME).write_text("{not json", encoding="utf-8")

        with pytest.raises(CodeError, match="Invalid signature file") as exc_info:
            SignedDirectory.load("mongo", tmp_path / "db", requested_signature=SIG_A)
        assert exc_info.value.code == "DBDIR_ERROR"


def test_add_sig_reports_mismatch(tmp_path: Path) -> None:
    handle = SignedDirectory.install("mongo", tmp_path / "db")

    assert handle.add_sig(SIG_A)
    assert handle.add_sig(SIG_A)
    assert not handle.add_sig(SIG_A_OTHER)
    assert not handle.is_sig_compatible(SIG_A_OTHER)


def test_reset_changes_identifier(tmp_path: Path) -> None:
    first = SignedDirectory.install("redis", tmp_path / "db", signature=SIG_A)
    (first.db_dir / "dump.rdb").write_text("data", encoding="utf-8")

    second = SignedDirectory.reset("redis", tmp_path / "db")

    assert second.dbuuid != first.dbuuid
    assert not first.db_dir.exists()
    assert second.ledger is None
