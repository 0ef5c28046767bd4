"""State store — JSON snapshot of the ledger state between runs.

The event log is the audit trail; the state store is the fast path for
reloading tables without replay. Writes go to a temporary file that is
then renamed over the target, so a crash never leaves a half-written
snapshot behind.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from drops.state import LedgerState


class StateStore:
    """Persists a LedgerState (plus optional collaborator state) as JSON."""

    def __init__(self, storage_path: Path) -> None:
        self._path = storage_path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def save(self, state: LedgerState, extras: Optional[dict[str, Any]] = None) -> None:
        document = {"ledger": state.to_dict(), "extras": extras or {}}
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, sort_keys=True)
        os.replace(tmp, self._path)

    def load(self) -> tuple[LedgerState, dict[str, Any]]:
        """Return (state, extras). A missing file yields a fresh state."""
        if not self._path.exists():
            return LedgerState(), {}
        with self._path.open("r", encoding="utf-8") as f:
            document = json.load(f)
        return LedgerState.from_dict(document["ledger"]), document.get("extras", {})
