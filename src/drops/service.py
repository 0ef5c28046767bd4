"""Drops service — unified facade for the ledger and the randomness protocol.

This is the primary interface for programmatic access to the ledger.
It orchestrates every subsystem:
- Epoch lifecycle (init, advance, catch-up)
- Commit-reveal randomness (commit, reveal, finalize, entropy queries)
- Drop issuance, transfer and destruction against the capacity market
- Administrative registry and system control (oracles, subscribers, enable, wipe)
- Persistence (event log, state store) and deferred message dispatch

Every mutating operation runs as one unit of work:
1. Authorize the caller and snapshot the ledger state.
2. Run the core components. They raise DropsError on any violation.
3. On error: restore the snapshot, roll back pending capacity
   reservations, discard the outbox and buffered audit events.
4. On success: append audit events (fail-closed), settle the market,
   persist the state (post-audit, degrades instead of rolling back),
   then dispatch the outbox.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Sequence, Union

from drops.crypto.anchor import AnchorRecord, anchor_entropy as _send_anchor
from drops.epochs.scheduler import EpochScheduler
from drops.errors import (
    AnchorError,
    AuthorizationError,
    Disabled,
    DropsError,
    DuplicateSubmission,
    EpochNotFound,
    EpochNotResolved,
    NotFound,
    ValidationError,
)
from drops.ledger.balances import AccountBalanceTracker
from drops.ledger.resource_ledger import ResourceLedger
from drops.market.capacity import BondingCurveMarket, CapacityMarket
from drops.models.epoch import Epoch, EpochEntropy, EpochPhase
from drops.models.ledger import Account, Token
from drops.outbox import Dispatcher, InMemoryDispatcher, Outbox, OutboxMessage
from drops.persistence.event_log import EventKind, EventLog, EventRecord
from drops.persistence.state_store import StateStore
from drops.policy.resolver import PolicyResolver
from drops.randomness.aggregator import RandomnessAggregator
from drops.randomness.commit_reveal import CommitRevealCoordinator
from drops.state import LedgerState

logger = logging.getLogger(__name__)

AnchorFn = Callable[..., AnchorRecord]


@dataclass
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None


@dataclass
class _UnitOfWork:
    """Buffers the deferred effects of one operation until it commits."""
    actor: str
    now: datetime
    outbox: Outbox = field(default_factory=Outbox)
    events: list[tuple[EventKind, dict[str, Any]]] = field(default_factory=list)

    def record(self, kind: EventKind, **payload: Any) -> None:
        self.events.append((kind, payload))


class DropsService:
    """Drops ledger facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = DropsService(resolver)
        admin = resolver.contract_account()

        service.add_oracle(admin, "oracle.a")
        service.init(admin, now)
        service.enable(admin, True)

        service.commit("oracle.a", "oracle.a", 1, sha256_hex("secret"), now)
        service.issue("alice", "alice", Decimal("5"), 3, seed)
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        market: Optional[CapacityMarket] = None,
        dispatcher: Optional[Dispatcher] = None,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        anchor_fn: Optional[AnchorFn] = None,
    ) -> None:
        self._resolver = resolver
        self._event_log = event_log
        self._state_store = state_store
        self._dispatcher = dispatcher if dispatcher is not None else InMemoryDispatcher()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._anchor_fn = anchor_fn or _send_anchor

        # Load persisted state or start fresh
        extras: dict[str, Any] = {}
        if state_store is not None:
            self._state, extras = state_store.load()
        else:
            self._state = LedgerState()

        if market is None:
            if "market" in extras:
                market = BondingCurveMarket.from_dict(extras["market"])
            else:
                units, funds = resolver.market_reserves()
                market = BondingCurveMarket(
                    units_reserve=units,
                    funds_reserve=funds,
                    fee_rate=resolver.capacity_policy().fee_rate,
                    precision=resolver.funds_precision(),
                )
        self._market = market

        self._scheduler = EpochScheduler(self._state, resolver.epoch_phase_duration())
        self._coordinator = CommitRevealCoordinator(self._state)
        self._aggregator = RandomnessAggregator(self._state)
        self._balances = AccountBalanceTracker(self._state)
        self._ledger = ResourceLedger(
            self._state,
            self._market,
            resolver.capacity_policy(),
            resolver.issuance_policy(),
        )

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0

        # Set when a StateStore write fails after the audit event was
        # appended. In-memory state matches the audit trail; the snapshot
        # on disk is stale until the next successful write.
        self._persistence_degraded: bool = False

        # Committed messages the dispatcher failed to deliver.
        self.undelivered: list[OutboxMessage] = []

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def init(self, caller: str, now: Optional[datetime] = None) -> ServiceResult:
        """Create epoch 1. The system starts disabled."""
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_admin(caller)
            epoch = self._scheduler.init(uow.now)
            uow.record(
                EventKind.EPOCH_INITIALIZED,
                epoch=epoch.number,
                start=epoch.start.isoformat(),
                end=epoch.end.isoformat(),
                oracles=list(epoch.oracles),
            )
            return {"epoch": epoch.to_dict()}

        return self._execute("init", caller, op, now)

    def add_oracle(self, caller: str, oracle: str) -> ServiceResult:
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_admin(caller)
            oracle_id = self._require_identity(oracle, "Oracle")
            if oracle_id in self._state.oracles:
                raise DuplicateSubmission(f"Oracle {oracle_id} is already registered")
            self._state.oracles.append(oracle_id)
            uow.record(EventKind.ORACLE_ADDED, oracle=oracle_id)
            return {"oracles": list(self._state.oracles)}

        return self._execute("add_oracle", caller, op)

    def remove_oracle(self, caller: str, oracle: str) -> ServiceResult:
        """Remove from the registry. Snapshots of existing epochs are unaffected."""
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_admin(caller)
            oracle_id = self._require_identity(oracle, "Oracle")
            if oracle_id not in self._state.oracles:
                raise NotFound(f"Oracle {oracle_id} is not registered")
            self._state.oracles.remove(oracle_id)
            uow.record(EventKind.ORACLE_REMOVED, oracle=oracle_id)
            return {"oracles": list(self._state.oracles)}

        return self._execute("remove_oracle", caller, op)

    def subscribe(self, caller: str, subscriber: str) -> ServiceResult:
        """Register for epoch-advance notices. Subscriber or admin may call."""
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_principal_or_admin(caller, subscriber)
            subscriber_id = self._require_identity(subscriber, "Subscriber")
            if subscriber_id in self._state.subscribers:
                raise DuplicateSubmission(f"{subscriber_id} is already subscribed")
            self._state.subscribers.append(subscriber_id)
            uow.record(EventKind.SUBSCRIBER_ADDED, subscriber=subscriber_id)
            return {"subscribers": list(self._state.subscribers)}

        return self._execute("subscribe", caller, op)

    def unsubscribe(self, caller: str, subscriber: str) -> ServiceResult:
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_principal_or_admin(caller, subscriber)
            subscriber_id = self._require_identity(subscriber, "Subscriber")
            if subscriber_id not in self._state.subscribers:
                raise NotFound(f"{subscriber_id} is not subscribed")
            self._state.subscribers.remove(subscriber_id)
            uow.record(EventKind.SUBSCRIBER_REMOVED, subscriber=subscriber_id)
            return {"subscribers": list(self._state.subscribers)}

        return self._execute("unsubscribe", caller, op)

    def enable(self, caller: str, enabled: bool) -> ServiceResult:
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_admin(caller)
            self._state.global_state.enabled = bool(enabled)
            uow.record(EventKind.SYSTEM_ENABLED, enabled=bool(enabled))
            return {"enabled": bool(enabled)}

        return self._execute("enable", caller, op)

    def wipe(self, caller: str) -> ServiceResult:
        """Erase every table. Capacity held in the market is not sold."""
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_admin(caller)
            dropped = len(self._state.tokens)
            self._state.reset()
            uow.record(EventKind.SYSTEM_WIPED, tokens_dropped=dropped)
            return {"tokens_dropped": dropped}

        return self._execute("wipe", caller, op)

    # ------------------------------------------------------------------
    # Epoch lifecycle
    # ------------------------------------------------------------------

    def advance(self, now: Optional[datetime] = None, caller: str = "anyone") -> ServiceResult:
        """Single-step advance. Anyone may call once the active epoch has ended."""
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            epoch = self._scheduler.advance(uow.now, uow.outbox)
            self._record_advanced(uow, [epoch])
            return {"epoch": epoch.to_dict()}

        return self._execute("advance", caller, op, now)

    def advance_until_current(
        self, now: Optional[datetime] = None, caller: str = "anyone",
    ) -> ServiceResult:
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            before = self._state.current_epoch
            latest = self._scheduler.advance_until_current(uow.now, uow.outbox)
            created = [self._state.epochs[n] for n in range(before + 1, latest.number + 1)]
            self._record_advanced(uow, created)
            return {"epoch": latest.to_dict(), "steps": len(created)}

        return self._execute("advance_until_current", caller, op, now)

    def _record_advanced(self, uow: _UnitOfWork, epochs: Sequence[Epoch]) -> None:
        for epoch in epochs:
            uow.record(
                EventKind.EPOCH_ADVANCED,
                epoch=epoch.number,
                start=epoch.start.isoformat(),
                end=epoch.end.isoformat(),
                oracles=list(epoch.oracles),
            )

    # ------------------------------------------------------------------
    # Commit-reveal
    # ------------------------------------------------------------------

    def commit(
        self,
        caller: str,
        oracle: str,
        epoch: int,
        digest: Union[str, bytes],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_principal(caller, oracle)
            self._require_enabled()
            record = self._coordinator.commit(oracle, epoch, digest, uow.now)
            uow.record(
                EventKind.COMMIT_RECORDED, oracle=oracle, epoch=epoch, digest=record.digest,
            )
            return {"oracle": oracle, "epoch": epoch, "digest": record.digest}

        return self._execute("commit", caller, op, now)

    def reveal(
        self,
        caller: str,
        oracle: str,
        epoch: int,
        payload: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record a reveal; finalizes the epoch if it was the last one missing."""
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_principal(caller, oracle)
            self._require_enabled()
            already_final = epoch in self._state.entropy
            self._coordinator.reveal(oracle, epoch, payload, uow.now)
            uow.record(EventKind.REVEAL_RECORDED, oracle=oracle, epoch=epoch, payload=payload)

            data: dict[str, Any] = {"oracle": oracle, "epoch": epoch, "finalized": False}
            entropy = self._state.entropy.get(epoch)
            if entropy is not None and not already_final:
                uow.record(EventKind.EPOCH_FINALIZED, epoch=epoch, entropy=entropy.value)
                data["finalized"] = True
                data["entropy"] = entropy.value
            return data

        return self._execute("reveal", caller, op, now)

    def finalize_if_ready(self, epoch: int, caller: str = "anyone") -> ServiceResult:
        """Recovery sweep. A no-op success when already final or still waiting."""
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            entropy = self._coordinator.finalize_if_ready(epoch)
            if entropy is None:
                return {
                    "epoch": epoch,
                    "finalized": False,
                    "completed": self._state.epochs[epoch].completed,
                    "pending_oracles": self._coordinator.pending_oracles(epoch),
                }
            uow.record(EventKind.EPOCH_FINALIZED, epoch=epoch, entropy=entropy.value)
            return {"epoch": epoch, "finalized": True, "entropy": entropy.value}

        return self._execute("finalize_if_ready", caller, op)

    # ------------------------------------------------------------------
    # Randomness queries
    # ------------------------------------------------------------------

    def compute_epoch_entropy(
        self, epoch: int, notify: Optional[str] = None, caller: str = "anyone",
    ) -> ServiceResult:
        """Recompute entropy from the stored reveals (verification by any party)."""
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            entropy = self._aggregator.compute_epoch_entropy(epoch)
            if notify:
                uow.outbox.notify(notify, "epoch_entropy", epoch=epoch, entropy=entropy.value)
            return {"epoch": epoch, "entropy": entropy.value}

        return self._execute("compute_epoch_entropy", caller, op, read_only=True)

    def compute_item_value(
        self, epoch: int, token_id: int, notify: Optional[str] = None, caller: str = "anyone",
    ) -> ServiceResult:
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            value = self._aggregator.derive_item_value(epoch, token_id)
            if notify:
                uow.outbox.notify(
                    notify, "item_value", epoch=epoch, token_id=token_id, value=value,
                )
            return {"epoch": epoch, "token_id": token_id, "value": value}

        return self._execute("compute_item_value", caller, op, read_only=True)

    def compute_latest_item_value(
        self, token_id: int, notify: Optional[str] = None, caller: str = "anyone",
    ) -> ServiceResult:
        """Item value against the epoch before the current one."""
        return self.compute_item_value(
            self._state.current_epoch - 1, token_id, notify=notify, caller=caller,
        )

    def anchor_entropy(
        self,
        caller: str,
        epoch: int,
        rpc_url: str,
        private_key: str,
        **anchor_options: Any,
    ) -> ServiceResult:
        """Publish a finalized epoch's entropy on-chain and log the anchor.

        The transaction is sent outside the unit of work; only the
        confirmed receipt is recorded. Chain or RPC failures come back as
        an ``anchor_failed`` result. If the receipt cannot be recorded the
        failed result still carries the transaction details.
        """
        try:
            self._require_admin(caller)
            entropy = self._finalized_entropy(epoch)
        except DropsError as e:
            return self._failure("anchor_entropy", caller, e)

        try:
            record = self._anchor_fn(entropy, rpc_url, private_key, **anchor_options)
        except Exception as e:
            logger.error("Anchoring epoch %d failed: %s", epoch, e)
            return self._failure(
                "anchor_entropy",
                caller,
                AnchorError(f"Anchoring epoch {epoch} failed: {e}", context={"epoch": epoch}),
            )

        anchored = {
            "epoch": record.epoch,
            "tx_hash": record.tx_hash,
            "block_number": record.block_number,
            "chain_id": record.chain_id,
            "explorer_url": record.explorer_url,
        }

        def op(uow: _UnitOfWork) -> dict[str, Any]:
            uow.record(
                EventKind.ENTROPY_ANCHORED,
                epoch=record.epoch,
                entropy=record.entropy,
                tx_hash=record.tx_hash,
                block_number=record.block_number,
                chain_id=record.chain_id,
            )
            return dict(anchored)

        result = self._execute("anchor_entropy", caller, op)
        if not result.success:
            logger.error("Anchor tx %s was sent but not recorded", record.tx_hash)
            result.data.update(anchored)
        return result

    def _finalized_entropy(self, epoch: int) -> EpochEntropy:
        if epoch not in self._state.epochs:
            raise EpochNotFound(f"Epoch {epoch} does not exist")
        entropy = self._state.entropy.get(epoch)
        if entropy is None:
            raise EpochNotResolved(f"Epoch {epoch} has not been finalized")
        return entropy

    # ------------------------------------------------------------------
    # Drops
    # ------------------------------------------------------------------

    def on_funds_received(
        self,
        sender: str,
        recipient: str,
        amount: Union[Decimal, str],
        memo: str,
    ) -> ServiceResult:
        """Entry point for a funds-transfer notification from the funds ledger.

        Transfers not addressed to the ledger, transfers the ledger itself
        sent (refunds, proceeds), market payouts and bypass-memo transfers
        are ignored. Anything else must carry a "<count>,<seed>" memo and
        issues drops to the sender. A failed issuance means the host must
        reject the transfer.
        """
        contract = self._resolver.contract_account()
        issuance = self._resolver.issuance_policy()
        reason: Optional[str] = None
        if recipient != contract:
            reason = "not_addressed_to_ledger"
        elif sender in (contract, self._resolver.market_account()):
            reason = "internal_transfer"
        elif memo == issuance.bypass_memo:
            reason = "bypass"
        if reason is not None:
            logger.debug("Ignoring funds transfer %s -> %s (%s)", sender, recipient, reason)
            return ServiceResult(success=True, data={"ignored": True, "reason": reason})

        parts = memo.split(issuance.memo_separator)
        if len(parts) != 2:
            return self._invalid(
                f"Memo must be '<count>{issuance.memo_separator}<seed>'", "parse_memo", sender,
            )
        try:
            count = int(parts[0].strip())
        except ValueError:
            return self._invalid(f"Invalid drop count in memo: {parts[0]!r}", "parse_memo", sender)
        return self.issue(sender, sender, amount, count, parts[1])

    def issue(
        self,
        caller: str,
        payer: str,
        funds: Union[Decimal, str],
        count: int,
        seed: str,
    ) -> ServiceResult:
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_principal(caller, payer)
            amount = self._parse_funds(funds)
            result = self._ledger.issue(payer, amount, count, seed, uow.outbox)
            uow.record(
                EventKind.DROPS_ISSUED,
                payer=payer,
                drops=result.drops,
                epoch=result.epoch,
                cost=str(result.cost),
                refund=str(result.refund),
                token_ids=[str(t) for t in result.token_ids],
            )
            return {
                "drops": result.drops,
                "epoch": result.epoch,
                "cost": str(result.cost),
                "refund": str(result.refund),
                "total_drops": result.total_drops,
                "epoch_drops": result.epoch_drops,
                "token_ids": list(result.token_ids),
            }

        return self._execute("issue", caller, op)

    def transfer(
        self, caller: str, sender: str, recipient: str, token_ids: Sequence[int],
    ) -> ServiceResult:
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_principal(caller, sender)
            self._ledger.transfer(sender, recipient, list(token_ids), uow.outbox)
            uow.record(
                EventKind.DROPS_TRANSFERRED,
                sender=sender,
                recipient=recipient,
                token_ids=[str(t) for t in token_ids],
            )
            return {"sender": sender, "recipient": recipient, "drops": len(token_ids)}

        return self._execute("transfer", caller, op)

    def destroy(self, caller: str, owner: str, token_ids: Sequence[int]) -> ServiceResult:
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_principal(caller, owner)
            result = self._ledger.destroy(owner, list(token_ids), uow.outbox)
            uow.record(
                EventKind.DROPS_DESTROYED,
                owner=owner,
                token_ids=[str(t) for t in token_ids],
                units_released=result.units_released,
                proceeds=str(result.proceeds),
            )
            return {"units_released": result.units_released, "proceeds": str(result.proceeds)}

        return self._execute("destroy", caller, op)

    def destroy_all(self, caller: str) -> ServiceResult:
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_admin(caller)
            result = self._ledger.destroy_all(uow.outbox)
            proceeds = {owner: str(p) for owner, p in result.proceeds_by_owner.items()}
            uow.record(
                EventKind.DROPS_DESTROYED_ALL,
                drops_destroyed=result.drops_destroyed,
                units_released=result.units_released,
                proceeds_by_owner=proceeds,
            )
            return {
                "drops_destroyed": result.drops_destroyed,
                "units_released": result.units_released,
                "proceeds_by_owner": proceeds,
            }

        return self._execute("destroy_all", caller, op)

    def enroll(self, caller: str, account: str, epoch: int) -> ServiceResult:
        """Pre-create a zero-balance stat row for (account, epoch)."""
        def op(uow: _UnitOfWork) -> dict[str, Any]:
            self._require_principal(caller, account)
            self._require_enabled()
            self._ledger.enroll(account, epoch)
            uow.record(EventKind.ACCOUNT_ENROLLED, account=account, epoch=epoch)
            return {"account": account, "epoch": epoch}

        return self._execute("enroll", caller, op)

    # ------------------------------------------------------------------
    # Status and queries
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        gs = self._state.global_state
        data: dict[str, Any] = {
            "initialized": gs.initialized,
            "enabled": gs.enabled,
            "epoch": gs.epoch,
            "oracles": list(self._state.oracles),
            "subscribers": list(self._state.subscribers),
            "epochs": {
                "total": len(self._state.epochs),
                "finalized": len(self._state.entropy),
            },
            "drops": {
                "outstanding": len(self._state.tokens),
                "accounts": len(self._state.accounts),
            },
            "events": self._event_log.count if self._event_log is not None else 0,
            "undelivered": len(self.undelivered),
            "persistence_degraded": self._persistence_degraded,
        }
        if isinstance(self._market, BondingCurveMarket):
            units, funds = self._market.reserves
            data["market"] = {
                "units_reserve": units,
                "funds_reserve": str(funds),
                "units_held": self._market.units_held,
                "fees_collected": str(self._market.fees_collected),
            }
        return data

    def get_epoch(self, epoch: int) -> Optional[Epoch]:
        return self._state.epochs.get(epoch)

    def get_entropy(self, epoch: int) -> Optional[EpochEntropy]:
        return self._state.entropy.get(epoch)

    def get_account(self, account: str) -> Optional[Account]:
        return self._state.accounts.get(account)

    def get_token(self, token_id: int) -> Optional[Token]:
        return self._state.tokens.get(token_id)

    def tokens_of(self, owner: str) -> list[Token]:
        return self._state.tokens_of(owner)

    def epoch_phase(self, epoch: int, now: Optional[datetime] = None) -> Optional[EpochPhase]:
        record = self._state.epochs.get(epoch)
        if record is None:
            return None
        return record.phase(now or self._clock())

    def check_invariants(self) -> dict[str, list]:
        """Accounts whose totals disagree with their stats, and epochs whose
        entropy and completed flag disagree. Both lists empty when healthy."""
        entropy_mismatches = [
            number for number, epoch in sorted(self._state.epochs.items())
            if epoch.completed != (number in self._state.entropy)
        ]
        return {
            "balance_mismatches": self._balances.inconsistent_accounts(),
            "entropy_mismatches": entropy_mismatches,
        }

    @property
    def state(self) -> LedgerState:
        return self._state

    @property
    def market(self) -> CapacityMarket:
        return self._market

    @property
    def persistence_degraded(self) -> bool:
        return self._persistence_degraded

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _execute(
        self,
        action: str,
        actor: str,
        op: Callable[[_UnitOfWork], dict[str, Any]],
        now: Optional[datetime] = None,
        read_only: bool = False,
    ) -> ServiceResult:
        """Run ``op`` as one unit of work.

        Read-only operations skip the state snapshot; they may still
        queue messages, which are dispatched on success.
        """
        uow = _UnitOfWork(actor=actor, now=now or self._clock())
        snapshot = None if read_only else self._state.snapshot()
        try:
            data = op(uow)
        except DropsError as e:
            self._rollback(snapshot)
            return self._failure(action, actor, e)
        except Exception:
            self._rollback(snapshot)
            logger.exception("%s by %s failed unexpectedly; state restored", action, actor)
            raise

        err = self._append_events(uow)
        if err:
            self._rollback(snapshot)
            return ServiceResult(success=False, errors=[err], error_code="audit_failure")

        self._ledger.settle()
        if uow.events:
            warning = self._safe_persist_post_audit()
            if warning:
                data["warning"] = warning
            logger.info("%s committed by %s (%d event(s))", action, actor, len(uow.events))
        self._dispatch(uow.outbox)
        return ServiceResult(success=True, data=data)

    @staticmethod
    def _failure(action: str, actor: str, error: DropsError) -> ServiceResult:
        logger.warning("%s by %s failed: [%s] %s", action, actor, error.code, error.message)
        return ServiceResult(
            success=False, errors=[error.message], data=dict(error.context), error_code=error.code,
        )

    def _rollback(self, snapshot: Optional[LedgerState]) -> None:
        if snapshot is not None:
            self._state.restore(snapshot)
        self._ledger.abandon()

    def _append_events(self, uow: _UnitOfWork) -> Optional[str]:
        """Append buffered audit events as one batch. Returns error string or None.

        Nothing reaches the log when the batch fails.
        """
        if self._event_log is None or not uow.events:
            return None
        counter = self._event_counter
        records = [
            EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=uow.actor,
                payload=payload,
                timestamp_utc=uow.now,
            )
            for kind, payload in uow.events
        ]
        try:
            self._event_log.append_batch(records)
        except (ValueError, OSError) as e:
            self._event_counter = counter
            logger.error("Audit-trail failure: %s", e)
            return f"Audit-trail failure: {e}"
        return None

    def _dispatch(self, outbox: Outbox) -> None:
        """Deliver committed messages. Failures never undo the operation."""
        for message in outbox.drain():
            try:
                self._dispatcher.deliver(message)
            except Exception as e:
                logger.warning(
                    "Delivery of %s to %s failed: %s", message.topic, message.recipient, e,
                )
                self.undelivered.append(message)

    def _next_event_id(self) -> str:
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _persist_state(self) -> None:
        if self._state_store is None:
            return
        extras: dict[str, Any] = {}
        if isinstance(self._market, BondingCurveMarket):
            extras["market"] = self._market.to_dict()
        self._state_store.save(self._state, extras)

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist state after audit events have been committed.

        Never rolls back in-memory state: the audit trail is already
        durable. On failure sets the degraded flag and returns a warning.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("State snapshot write failed: %s", e)
            return f"Persistence degraded: {e}; state committed in audit trail but StateStore is stale"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_admin(self, caller: str) -> None:
        contract = self._resolver.contract_account()
        if caller != contract:
            raise AuthorizationError(f"Missing required authority of {contract}")

    def _require_principal(self, caller: str, principal: str) -> None:
        if caller != principal:
            raise AuthorizationError(f"Missing required authority of {principal}")

    def _require_principal_or_admin(self, caller: str, principal: str) -> None:
        if caller not in (principal, self._resolver.contract_account()):
            raise AuthorizationError(f"Missing required authority of {principal}")

    def _require_enabled(self) -> None:
        if not self._state.global_state.enabled:
            raise Disabled("Ledger is currently disabled")

    @staticmethod
    def _require_identity(value: str, label: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValidationError(f"{label} id must be non-empty")
        return cleaned

    def _parse_funds(self, funds: Union[Decimal, str]) -> Decimal:
        try:
            amount = Decimal(str(funds))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid funds amount: {funds!r}") from e
        if not amount.is_finite():
            raise ValidationError(f"Invalid funds amount: {funds!r}")
        precision = self._resolver.funds_precision()
        if amount != amount.quantize(precision):
            raise ValidationError(
                f"Funds amount {amount} exceeds {self._resolver.funds_symbol()} precision {precision}"
            )
        return amount

    def _invalid(self, message: str, action: str, actor: str) -> ServiceResult:
        logger.warning("%s by %s rejected: %s", action, actor, message)
        return ServiceResult(
            success=False, errors=[message], error_code=ValidationError.code,
        )
