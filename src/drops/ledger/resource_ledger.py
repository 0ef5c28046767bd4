"""Resource ledger — issuance, transfer and destruction of drops.

Each drop is backed by capacity bought from the capacity market. Issuing
reserves capacity first and only then checks that the payer's funds
cover the cost the reservation actually charged; if they do not, the
reservation is rolled back and the error propagates so the caller's unit
of work discards every other write. Destroying drops quotes their
capacity's resale value and pays the proceeds to the owner.

Successful reservations and releases stay queued until ``settle()``
(confirm and sell) or ``abandon()`` (roll back), so the market only
moves when the caller's unit of work commits.

Capacity units for an issuance of ``n`` drops:
    n * (record_size + purchase_buffer)
    + account_row   if the payer has no account row yet
    + stat_row      if the payer has no stat row for the current epoch

Token ids are sha256(str(i) + seed) truncated to 64 bits. A collision
with an existing drop (or within the batch) fails the issuance.
"""

from __future__ import annotations

import hashlib
from collections import Counter
from decimal import Decimal
from typing import Sequence

from drops.errors import (
    AlreadyEnrolled,
    Disabled,
    EpochNotFound,
    InsufficientFunds,
    NotOwner,
    TokenIdCollision,
    TokenNotFound,
    ValidationError,
)
from drops.ledger.balances import AccountBalanceTracker
from drops.market.capacity import CapacityMarket, Reservation
from drops.models.ledger import DestroyAllResult, DestroyResult, EpochStat, IssueResult, Token
from drops.outbox import Outbox
from drops.policy.resolver import CapacityPolicy, IssuancePolicy
from drops.randomness.aggregator import token_id_from_digest
from drops.state import LedgerState


def derive_token_id(index: int, seed: str) -> int:
    digest = hashlib.sha256((str(index) + seed).encode("utf-8")).digest()
    return token_id_from_digest(digest)


class ResourceLedger:
    """Mints and burns drops against the capacity market.

    Usage:
        ledger = ResourceLedger(state, market, capacity_policy, issuance_policy)
        result = ledger.issue("alice", Decimal("10"), 3, seed, outbox)
        ledger.transfer("alice", "bob", [result.token_ids[0]], outbox)
        ledger.destroy("bob", [result.token_ids[0]], outbox)
        ledger.settle()
    """

    def __init__(
        self,
        state: LedgerState,
        market: CapacityMarket,
        capacity: CapacityPolicy,
        issuance: IssuancePolicy,
    ) -> None:
        self._state = state
        self._market = market
        self._capacity = capacity
        self._issuance = issuance
        self._balances = AccountBalanceTracker(state)
        self._pending_reservations: list[Reservation] = []
        self._pending_releases: list[int] = []

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def required_units(self, payer: str, count: int) -> int:
        """Capacity units an issuance of ``count`` drops would reserve now."""
        cap = self._capacity
        units = count * (cap.record_size + cap.purchase_buffer)
        if not self._balances.has_account(payer):
            units += cap.account_row
        if not self._balances.has_stat(payer, self._state.current_epoch):
            units += cap.stat_row
        return units

    def issue(
        self,
        payer: str,
        funds: Decimal,
        count: int,
        seed: str,
        outbox: Outbox,
    ) -> IssueResult:
        if funds <= Decimal("0"):
            raise ValidationError("The transaction amount must be a positive value")
        if count <= 0:
            raise ValidationError("The amount of drops to generate must be a positive value")
        if not seed or len(seed) < self._issuance.min_seed_length:
            raise ValidationError(
                f"Drop data must be at least {self._issuance.min_seed_length} characters in length"
            )
        self._require_enabled()
        epoch = self._state.current_epoch
        if epoch not in self._state.epochs:
            raise EpochNotFound(f"Epoch {epoch} does not exist")

        units = self.required_units(payer, count)
        try:
            reservation = self._market.reserve(units)
        except ValueError as e:
            raise ValidationError(f"Capacity reservation failed: {e}") from e

        try:
            token_ids = self._mint(payer, epoch, count, seed)
            total, epoch_total = self._balances.apply_delta(payer, epoch, count)
            if funds < reservation.cost:
                raise InsufficientFunds(
                    f"The amount sent does not cover the capacity purchase cost "
                    f"(requires {reservation.cost})",
                    context={"required": str(reservation.cost), "provided": str(funds)},
                )
        except Exception:
            self._market.rollback(reservation)
            raise
        self._pending_reservations.append(reservation)

        refund = funds - reservation.cost
        if refund > Decimal("0"):
            outbox.transfer_funds(payer, refund, memo=f"Refund for {count} drop(s)")

        return IssueResult(
            drops=count,
            epoch=epoch,
            cost=reservation.cost,
            refund=refund,
            total_drops=total,
            epoch_drops=epoch_total,
            token_ids=tuple(token_ids),
        )

    # ------------------------------------------------------------------
    # Transfer and destruction
    # ------------------------------------------------------------------

    def transfer(self, sender: str, recipient: str, token_ids: Sequence[int], outbox: Outbox) -> None:
        """Reassign ownership. No capacity is bought or sold."""
        self._require_enabled()
        if not recipient:
            raise ValidationError("Recipient account is required")
        tokens = self._owned_tokens(sender, token_ids, action="transfer")

        moved: Counter[int] = Counter(t.epoch for t in tokens)
        for token in tokens:
            token.owner = recipient
        self._balances.apply_epoch_counts(sender, moved, -1)
        self._balances.apply_epoch_counts(recipient, moved, +1)

        ids = [t.token_id for t in tokens]
        for party in (sender, recipient):
            outbox.notify(
                party, "drops_transferred", from_account=sender, to_account=recipient, drops=ids,
            )

    def destroy(self, owner: str, token_ids: Sequence[int], outbox: Outbox) -> DestroyResult:
        """Burn drops and pay their capacity's resale value to the owner."""
        self._require_enabled()
        tokens = self._owned_tokens(owner, token_ids, action="destroy")

        burned: Counter[int] = Counter(t.epoch for t in tokens)
        for token in tokens:
            del self._state.tokens[token.token_id]
        self._balances.apply_epoch_counts(owner, burned, -1)

        units = len(tokens) * self._capacity.record_size
        proceeds = self._market.sell_proceeds(units)
        self._pending_releases.append(units)
        if proceeds > Decimal("0"):
            outbox.transfer_funds(
                owner, proceeds, memo=f"Reclaimed capacity value of {len(tokens)} drop(s)"
            )
        return DestroyResult(units_released=units, proceeds=proceeds)

    def destroy_all(self, outbox: Outbox) -> DestroyAllResult:
        """Burn every outstanding drop and refund each owner separately.

        Proceeds are quoted per owner for that owner's own count at the
        current price, then the whole capacity is released in one sale.
        Account and stat rows are zeroed, not deleted.
        """
        per_owner: Counter[str] = Counter(t.owner for t in self._state.tokens.values())
        destroyed = sum(per_owner.values())
        record_size = self._capacity.record_size

        proceeds_by_owner: dict[str, Decimal] = {}
        for owner in sorted(per_owner):
            proceeds_by_owner[owner] = self._market.sell_proceeds(per_owner[owner] * record_size)

        self._state.tokens.clear()
        for account in self._state.accounts.values():
            account.drops = 0
        for stat in self._state.stats.values():
            stat.drops = 0

        units = destroyed * record_size
        if units > 0:
            self._pending_releases.append(units)
        for owner, proceeds in proceeds_by_owner.items():
            if proceeds > Decimal("0"):
                outbox.transfer_funds(
                    owner,
                    proceeds,
                    memo=f"Reset - reclaimed capacity value of {per_owner[owner]} drop(s)",
                )
        return DestroyAllResult(
            drops_destroyed=destroyed,
            units_released=units,
            proceeds_by_owner=proceeds_by_owner,
        )

    def enroll(self, account: str, epoch: int) -> EpochStat:
        """Open a zero-balance stat row for (account, epoch) ahead of issuance."""
        if epoch < 1:
            raise ValidationError(f"Epoch must be positive, got {epoch}")
        if self._balances.has_stat(account, epoch):
            raise AlreadyEnrolled(f"{account} is already registered for epoch {epoch}")
        return self._balances.open_stat(account, epoch)

    # ------------------------------------------------------------------
    # Market settlement
    # ------------------------------------------------------------------

    def settle(self) -> None:
        """Confirm reservations and execute releases queued since the last settle."""
        reservations, self._pending_reservations = self._pending_reservations, []
        releases, self._pending_releases = self._pending_releases, []
        for reservation in reservations:
            self._market.confirm(reservation)
        for units in releases:
            self._market.release(units)

    def abandon(self) -> None:
        """Roll back queued reservations and drop queued releases."""
        reservations, self._pending_reservations = self._pending_reservations, []
        self._pending_releases = []
        for reservation in reversed(reservations):
            self._market.rollback(reservation)

    @property
    def has_pending_settlement(self) -> bool:
        return bool(self._pending_reservations or self._pending_releases)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _mint(self, payer: str, epoch: int, count: int, seed: str) -> list[int]:
        token_ids: list[int] = []
        seen: set[int] = set()
        for i in range(count):
            token_id = derive_token_id(i, seed)
            if token_id in seen or token_id in self._state.tokens:
                raise TokenIdCollision(
                    f"Drop id {token_id} (index {i}) already exists; choose another seed",
                    context={"token_id": token_id, "index": i},
                )
            seen.add(token_id)
            token_ids.append(token_id)
        for token_id in token_ids:
            self._state.tokens[token_id] = Token(token_id=token_id, owner=payer, epoch=epoch)
        return token_ids

    def _owned_tokens(self, owner: str, token_ids: Sequence[int], action: str) -> list[Token]:
        if not token_ids:
            raise ValidationError(f"No drops were provided to {action}")
        if len(set(token_ids)) != len(token_ids):
            raise ValidationError(f"Duplicate drop ids in {action} request")
        tokens: list[Token] = []
        for token_id in token_ids:
            token = self._state.tokens.get(token_id)
            if token is None:
                raise TokenNotFound(f"Drop not found: {token_id}")
            if token.owner != owner:
                raise NotOwner(f"Account {owner} does not own drop {token_id}")
            tokens.append(token)
        return tokens

    def _require_enabled(self) -> None:
        if not self._state.global_state.enabled:
            raise Disabled("Ledger is currently disabled")
