"""Append-only event log — the audit trail of every committed operation.

Every operation that commits produces one event record appended to the
log. Events are immutable once written. The log serves as:
1. The audit trail a third party replays to verify issuance and entropy.
2. A record of which oracles committed and revealed, and when.
3. The source for reconstructing balances independently of the state file.
"""

from __future__ import annotations

import enum
import hashlib
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence


class EventKind(str, enum.Enum):
    """Classification of ledger events."""
    EPOCH_INITIALIZED = "epoch_initialized"
    EPOCH_ADVANCED = "epoch_advanced"
    COMMIT_RECORDED = "commit_recorded"
    REVEAL_RECORDED = "reveal_recorded"
    EPOCH_FINALIZED = "epoch_finalized"
    ENTROPY_ANCHORED = "entropy_anchored"
    # Drop ledger events
    DROPS_ISSUED = "drops_issued"
    DROPS_TRANSFERRED = "drops_transferred"
    DROPS_DESTROYED = "drops_destroyed"
    DROPS_DESTROYED_ALL = "drops_destroyed_all"
    ACCOUNT_ENROLLED = "account_enrolled"
    # Administrative events
    ORACLE_ADDED = "oracle_added"
    ORACLE_REMOVED = "oracle_removed"
    SUBSCRIBER_ADDED = "subscriber_added"
    SUBSCRIBER_REMOVED = "subscriber_removed"
    SYSTEM_ENABLED = "system_enabled"
    SYSTEM_WIPED = "system_wiped"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the ledger log.

    The event_hash is computed at creation time over the canonical JSON
    of every other field, so tampering is detected on reload.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(event_id, event_kind.value, ts_str, actor_id, payload),
        )


class EventLog:
    """Append-only event log with optional JSONL persistence.

    Events can only be appended, never modified or deleted. When a
    storage path is given, each event is written as one JSON line and
    the file is verified (hash and duplicate ids) when loaded back.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event. Raises ValueError on a duplicate event_id."""
        self.append_batch([event])

    def append_batch(self, events: Sequence[EventRecord]) -> None:
        """Append several events as one write, all or nothing.

        Every id is checked before anything is written. When the file
        write fails the file is truncated back to its previous length
        and the in-memory log is left untouched.
        """
        seen: set[str] = set()
        for event in events:
            if event.event_id in self._event_ids or event.event_id in seen:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            seen.add(event.event_id)

        if self._storage_path:
            self._write_lines([self._to_line(e) for e in events])

        self._events.extend(events)
        self._event_ids.update(seen)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    @staticmethod
    def _to_line(event: EventRecord) -> str:
        record = {
            "event_id": event.event_id,
            "event_kind": event.event_kind.value,
            "timestamp_utc": event.timestamp_utc,
            "actor_id": event.actor_id,
            "payload": event.payload,
            "event_hash": event.event_hash,
        }
        return json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n"

    def _write_lines(self, lines: list[str]) -> None:
        data = "".join(lines).encode("utf-8")
        path = self._storage_path
        offset = path.stat().st_size if path.exists() else 0
        try:
            with path.open("ab") as f:
                f.write(data)
        except OSError:
            if path.exists():
                os.truncate(path, offset)
            raise

    def _load_from_file(self, path: Path) -> None:
        """Load events, rejecting tampered records and duplicate ids."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    event_id,
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event_id)
