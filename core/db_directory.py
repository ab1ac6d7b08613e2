"""Signed persistent-storage directories.

Layout of a signed directory::

    <directory>/
        DBUUID                       # opaque hex identifier, written once
        devstack-signature.json      # ledger: name -> {serviceType, signature}
        <DBUUID>/                    # store payload

Independent services may point at the same store directory. Each one
registers a signature under its name; a later request under the same name
with a different signature is a conflict, never silently accepted.
"""

from __future__ import annotations

import json
import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from core.errors import CodeError, NotFoundError, SignatureConflictError

logger = logging.getLogger(__name__)

DBType = Literal["mongo", "redis", "h2"]

DBUUID_BASENAME = "DBUUID"
SIGNATURE_BASENAME = "devstack-signature.json"


@dataclass(frozen=True)
class DBSignature:
    """A consumer's claim on a signed directory.

    Attributes:
        name: Logical consumer name (ledger key)
        service_type: Consumer service type
        signature: JSON-serializable comparison payload
    """

    name: str
    service_type: str
    signature: Any

    def __post_init__(self) -> None:
        """Validate DBSignature."""
        if not self.name:
            raise ValueError("name must not be empty")
        if not self.service_type:
            raise ValueError("service_type must not be empty")

    def entry(self) -> dict[str, Any]:
        """Ledger entry, normalized through JSON so it compares like a loaded one."""
        raw = {"serviceType": self.service_type, "signature": self.signature}
        return json.loads(json.dumps(raw))

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, **self.entry()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DBSignature:
        return cls(
            name=data["name"],
            service_type=data["serviceType"],
            signature=data.get("signature"),
        )


def _signature_file(directory: Path) -> Path:
    return directory / SIGNATURE_BASENAME


def _dbuuid_file(directory: Path) -> Path:
    return directory / DBUUID_BASENAME


def _read_dbuuid(directory: Path) -> str | None:
    try:
        text = _dbuuid_file(directory).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return text or None


def _save_ledger(directory: Path, ledger: dict[str, Any]) -> None:
    _signature_file(directory).write_text(json.dumps(ledger, indent=2), encoding="utf-8")


class SignedDirectory:
    """Handle on one store directory and its signature ledger.

    Instances are only produced by :meth:`install`, :meth:`load` and
    :meth:`load_from_payload_dir`.

    Attributes:
        db_type: Store kind
        directory: Absolute root directory
        dbuuid: Stable identifier
        filename: Database file stem (h2 stores only)
    """

    def __init__(
        self,
        db_type: DBType,
        directory: Path,
        dbuuid: str,
        ledger: dict[str, Any] | None,
        filename: str | None = None,
    ) -> None:
        self.db_type = db_type
        self.directory = directory
        self.dbuuid = dbuuid
        self.filename = filename
        self._ledger = ledger

    def __repr__(self) -> str:
        return f"SignedDirectory(db_type={self.db_type!r}, directory='{self.directory}')"

    @property
    def ledger(self) -> dict[str, Any] | None:
        return None if self._ledger is None else dict(self._ledger)

    @property
    def db_dir(self) -> Path:
        """Payload directory, named after the identifier."""
        return self.directory / self.dbuuid

    @property
    def db_file_no_ext(self) -> Path | None:
        if self.filename is None:
            return None
        return self.db_dir / self.filename

    def is_sig_compatible(self, sig: DBSignature | None) -> bool:
        """True if ``sig`` could be added without conflict."""
        if sig is None or not self._ledger:
            return True
        existing = self._ledger.get(sig.name)
        if existing is None:
            return True
        return bool(existing == sig.entry())

    def add_sig(self, sig: DBSignature | None) -> bool:
        """Record ``sig`` in the ledger.

        Returns:
            True if the entry was added or already identical, False on mismatch
        """
        if sig is None:
            return True
        if self._ledger is None:
            self._ledger = {}
        existing = self._ledger.get(sig.name)
        if existing is None:
            self._ledger[sig.name] = sig.entry()
            _save_ledger(self.directory, self._ledger)
            return True
        return bool(existing == sig.entry())

    def get_sig(self, name: str) -> dict[str, Any] | None:
        if not name or not self._ledger:
            return None
        return self._ledger.get(name)

    def used_by_service_type(self, service_type: str) -> bool:
        if not self._ledger:
            return False
        return any(entry.get("serviceType") == service_type for entry in self._ledger.values())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"directory": str(self.directory), "type": self.db_type}
        payload["DBUUID"] = self.dbuuid
        if self._ledger is not None:
            payload["signatureDict"] = dict(self._ledger)
        if self.filename is not None:
            payload["filename"] = self.filename
        return payload

    @staticmethod
    def _check_type(db_type: DBType, filename: str | None) -> None:
        if db_type not in ("mongo", "redis", "h2"):
            raise ValueError(f"Unknown db type: {db_type}")
        if db_type == "h2" and not filename:
            raise CodeError("Missing h2 db filename.", code="DBDIR_ERROR")

    @classmethod
    def install(
        cls,
        db_type: DBType,
        directory: str | Path,
        filename: str | None = None,
        signature: DBSignature | None = None,
    ) -> SignedDirectory:
        """Create a fresh signed directory.

        Args:
            db_type: Store kind
            directory: Root directory; must not exist yet
            filename: Database file stem (h2 only)
            signature: Optional first ledger entry

        Returns:
            Handle on the new directory

        Raises:
            CodeError: DBDIR_ERROR if ``directory`` already exists
        """
        cls._check_type(db_type, filename)
        root = Path(directory).expanduser().resolve()
        if root.exists():
            raise CodeError(f"Directory '{root}' already exists", code="DBDIR_ERROR")
        root.parent.mkdir(parents=True, exist_ok=True)
        root.mkdir()

        dbuuid = uuid.uuid4().hex
        _dbuuid_file(root).write_text(dbuuid, encoding="utf-8")
        (root / dbuuid).mkdir()

        ledger: dict[str, Any] | None = None
        if signature is not None:
            ledger = {signature.name: signature.entry()}
            _save_ledger(root, ledger)

        logger.info("installed %s directory %s (DBUUID=%s)", db_type, root, dbuuid)
        return cls(db_type, root, dbuuid, ledger, filename)

    @classmethod
    def load(
        cls,
        db_type: DBType,
        directory: str | Path,
        filename: str | None = None,
        requested_signature: DBSignature | None = None,
    ) -> SignedDirectory:
        """Open an existing signed directory, optionally registering a signature.

        Args:
            db_type: Store kind
            directory: Root directory
            filename: Database file stem (h2 only)
            requested_signature: Signature to check against (and add to) the ledger

        Returns:
            Handle on the directory

        Raises:
            NotFoundError: If ``directory`` does not exist
            CodeError: DBDIR_ERROR if the identifier marker or payload is missing
            SignatureConflictError: If the ledger holds a different entry
                under ``requested_signature.name``
        """
        cls._check_type(db_type, filename)
        root = Path(directory).expanduser().resolve()
        if not root.is_dir():
            raise NotFoundError(f"Directory '{root}' does not exist")

        if not _dbuuid_file(root).is_file():
            raise CodeError(
                f"Invalid {db_type} directory. DBUUID file '{_dbuuid_file(root)}' does not exist",
                code="DBDIR_ERROR",
            )
        dbuuid = _read_dbuuid(root)
        if not dbuuid:
            raise CodeError(
                f"Invalid {db_type} directory. Invalid DBUUID file '{_dbuuid_file(root)}'",
                code="DBDIR_ERROR",
            )
        db_dir = root / dbuuid
        if not db_dir.is_dir():
            raise CodeError(f"Invalid {db_type} db directory '{db_dir}'", code="DBDIR_ERROR")
        if db_type == "h2" and any(db_dir.iterdir()):
            if not (db_dir / f"{filename}.mv.db").is_file():
                raise CodeError(f"Invalid h2 db directory '{db_dir}'", code="DBDIR_ERROR")

        ledger: dict[str, Any] | None = None
        sig_file = _signature_file(root)
        if sig_file.is_file():
            try:
                ledger = json.loads(sig_file.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise CodeError(
                    f"Invalid signature file '{sig_file}': {exc}", code="DBDIR_ERROR"
                ) from exc
            if not isinstance(ledger, dict):
                raise CodeError(f"Invalid signature file '{sig_file}'", code="DBDIR_ERROR")

        if requested_signature is not None:
            requested = requested_signature.entry()
            if ledger is None:
                ledger = {requested_signature.name: requested}
                _save_ledger(root, ledger)
            else:
                existing = ledger.get(requested_signature.name)
                if existing is None:
                    ledger[requested_signature.name] = requested
                    _save_ledger(root, ledger)
                elif existing != requested:
                    raise SignatureConflictError(
                        f"Incompatible {db_type} db directory '{root}' (signature mismatch)"
                    )

        return cls(db_type, root, dbuuid, ledger, filename)

    @classmethod
    def load_from_payload_dir(
        cls,
        db_type: DBType,
        db_dir: str | Path,
        filename: str | None = None,
    ) -> SignedDirectory:
        """Open the signed directory owning payload directory ``db_dir``."""
        payload = Path(db_dir).expanduser().resolve()
        handle = cls.load(db_type, payload.parent, filename)
        if payload.name != handle.dbuuid:
            raise CodeError("Inconsistent DBUUID", code="DBDIR_ERROR")
        return handle

    @classmethod
    def reset(
        cls,
        db_type: DBType,
        directory: str | Path,
        filename: str | None = None,
        signature: DBSignature | None = None,
    ) -> SignedDirectory:
        """Delete ``directory`` and install a fresh one with a new identifier."""
        root = Path(directory).expanduser().resolve()
        if root.exists():
            shutil.rmtree(root)
        return cls.install(db_type, root, filename, signature)
