"""Ledger state context — every table the ledger persists, in one object.

There is no ambient global state. The service owns one LedgerState and
passes it into every component. Composite-key lookups (oracle+epoch,
account+epoch) are dicts keyed by tuples, which keeps each pair unique.

Atomicity: ``snapshot()`` captures a deep copy before an operation and
``restore()`` puts it back if the operation fails, so an operation's
writes either all land or none do.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields
from typing import Any

from drops.models.epoch import Commit, Epoch, EpochEntropy, Reveal
from drops.models.ledger import Account, EpochStat, GlobalState, Token


@dataclass
class LedgerState:
    global_state: GlobalState = field(default_factory=GlobalState)
    epochs: dict[int, Epoch] = field(default_factory=dict)
    commits: dict[tuple[str, int], Commit] = field(default_factory=dict)
    reveals: dict[tuple[str, int], Reveal] = field(default_factory=dict)
    entropy: dict[int, EpochEntropy] = field(default_factory=dict)
    tokens: dict[int, Token] = field(default_factory=dict)
    accounts: dict[str, Account] = field(default_factory=dict)
    stats: dict[tuple[str, int], EpochStat] = field(default_factory=dict)
    oracles: list[str] = field(default_factory=list)
    subscribers: list[str] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_epoch(self) -> int:
        return self.global_state.epoch

    def reveals_for(self, epoch: int) -> list[Reveal]:
        return [r for (_, e), r in self.reveals.items() if e == epoch]

    def stats_for(self, account: str) -> list[EpochStat]:
        return [s for (a, _), s in self.stats.items() if a == account]

    def tokens_of(self, owner: str) -> list[Token]:
        return sorted(
            (t for t in self.tokens.values() if t.owner == owner),
            key=lambda t: t.token_id,
        )

    # ------------------------------------------------------------------
    # Unit-of-work support
    # ------------------------------------------------------------------

    def snapshot(self) -> LedgerState:
        return copy.deepcopy(self)

    def restore(self, snapshot: LedgerState) -> None:
        restored = copy.deepcopy(snapshot)
        for f in fields(self):
            setattr(self, f.name, getattr(restored, f.name))

    def reset(self) -> None:
        """Drop every row (administrative full wipe)."""
        self.restore(LedgerState())

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "global_state": {
                "epoch": self.global_state.epoch,
                "enabled": self.global_state.enabled,
                "initialized": self.global_state.initialized,
            },
            "epochs": [e.to_dict() for e in sorted(self.epochs.values(), key=lambda e: e.number)],
            "commits": [
                {"oracle": c.oracle, "epoch": c.epoch, "digest": c.digest}
                for c in self.commits.values()
            ],
            "reveals": [
                {"oracle": r.oracle, "epoch": r.epoch, "payload": r.payload}
                for r in self.reveals.values()
            ],
            "entropy": [{"epoch": x.epoch, "value": x.value} for x in self.entropy.values()],
            "tokens": [
                # 64-bit ids exceed the JSON-safe integer range of many readers
                {"token_id": str(t.token_id), "owner": t.owner, "epoch": t.epoch}
                for t in self.tokens.values()
            ],
            "accounts": [{"account": a.account, "drops": a.drops} for a in self.accounts.values()],
            "stats": [
                {"account": s.account, "epoch": s.epoch, "drops": s.drops}
                for s in self.stats.values()
            ],
            "oracles": list(self.oracles),
            "subscribers": list(self.subscribers),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> LedgerState:
        gs = data["global_state"]
        state = LedgerState(
            global_state=GlobalState(
                epoch=int(gs["epoch"]),
                enabled=bool(gs["enabled"]),
                initialized=bool(gs["initialized"]),
            ),
            oracles=list(data["oracles"]),
            subscribers=list(data["subscribers"]),
        )
        for raw in data["epochs"]:
            epoch = Epoch.from_dict(raw)
            state.epochs[epoch.number] = epoch
        for raw in data["commits"]:
            commit = Commit(oracle=raw["oracle"], epoch=int(raw["epoch"]), digest=raw["digest"])
            state.commits[(commit.oracle, commit.epoch)] = commit
        for raw in data["reveals"]:
            reveal = Reveal(oracle=raw["oracle"], epoch=int(raw["epoch"]), payload=raw["payload"])
            state.reveals[(reveal.oracle, reveal.epoch)] = reveal
        for raw in data["entropy"]:
            state.entropy[int(raw["epoch"])] = EpochEntropy(epoch=int(raw["epoch"]), value=raw["value"])
        for raw in data["tokens"]:
            token = Token(token_id=int(raw["token_id"]), owner=raw["owner"], epoch=int(raw["epoch"]))
            state.tokens[token.token_id] = token
        for raw in data["accounts"]:
            state.accounts[raw["account"]] = Account(account=raw["account"], drops=int(raw["drops"]))
        for raw in data["stats"]:
            stat = EpochStat(account=raw["account"], epoch=int(raw["epoch"]), drops=int(raw["drops"]))
            state.stats[(stat.account, stat.epoch)] = stat
        return state
