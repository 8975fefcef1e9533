"""Filesystem-based LedgerStore implementation.

Writes one JSON array per audit scope:
  {data_dir}/ledger/{scope}.json

Writes are atomic (tmp + rename) so a crash mid-save leaves the previous
ledger intact. A missing or corrupt file loads as an empty ledger.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Sequence

import bittensor as bt
from pydantic import ValidationError

from relayaudit.ledger.models import (
    BalanceRecord,
    TransactionRecord,
    domain_record_list,
)


def _write_json_atomic(path: Path, data: Any) -> None:
    """Write data as JSON via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(tmp_fd, "w") as f:
            json.dump(data, f, default=str)
        os.replace(tmp_path, str(path))
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_json(path: Path) -> Any:
    """Read plain JSON file."""
    with open(path) as f:
        return json.load(f)


class FilesystemStore:
    """Local filesystem LedgerStore implementation."""

    def __init__(self, data_dir: str):
        self.base = Path(data_dir) / "ledger"
        self.base.mkdir(parents=True, exist_ok=True)

    def path_for(self, scope: str) -> Path:
        return self.base / f"{scope}.json"

    async def load_records(
        self, scope: str,
    ) -> list[BalanceRecord | TransactionRecord]:
        """Load a scope's ledger. Missing/corrupt files start fresh."""
        path = self.path_for(scope)
        if not path.exists():
            bt.logging.info({"ledger_store": {"scope": scope, "state": "no_file, starting fresh"}})
            return []

        try:
            records = domain_record_list.validate_python(_read_json(path))
        except (OSError, ValueError, ValidationError) as e:
            bt.logging.warning({"ledger_store": {"scope": scope, "state": f"corrupt, starting fresh: {e}"}})
            return []

        bt.logging.info({"ledger_store": {"scope": scope, "loaded": len(records)}})
        return records

    async def save_records(
        self, scope: str, records: Sequence[BalanceRecord | TransactionRecord],
    ) -> None:
        """Atomically replace a scope's ledger on disk."""
        _write_json_atomic(
            self.path_for(scope),
            [r.model_dump(mode="json") for r in records],
        )
        bt.logging.debug({"ledger_store": {"scope": scope, "saved": len(records)}})


__all__ = ["FilesystemStore"]
