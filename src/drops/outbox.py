"""Outbox — deferred messages produced inside an operation.

Operations never call other parties directly. Subscriber notices,
transfer notices, refunds, sale proceeds and result notifications are
appended to an Outbox while the operation runs. The service dispatches
them only after the operation commits; if the operation fails the
outbox is discarded with everything else.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Protocol


class MessageKind(str, enum.Enum):
    NOTIFY = "notify"
    FUNDS_TRANSFER = "funds_transfer"


@dataclass(frozen=True)
class OutboxMessage:
    kind: MessageKind
    recipient: str
    topic: str
    payload: dict[str, Any] = field(default_factory=dict)
    amount: Optional[Decimal] = None
    memo: str = ""


class Outbox:
    """Ordered buffer of messages for one unit of work."""

    def __init__(self) -> None:
        self._messages: list[OutboxMessage] = []

    def notify(self, recipient: str, topic: str, /, **payload: Any) -> None:
        self._messages.append(
            OutboxMessage(kind=MessageKind.NOTIFY, recipient=recipient, topic=topic, payload=payload)
        )

    def transfer_funds(self, recipient: str, amount: Decimal, memo: str = "") -> None:
        if amount <= Decimal("0"):
            raise ValueError(f"Funds transfer amount must be positive, got {amount}")
        self._messages.append(
            OutboxMessage(
                kind=MessageKind.FUNDS_TRANSFER,
                recipient=recipient,
                topic="transfer",
                amount=amount,
                memo=memo,
            )
        )

    @property
    def messages(self) -> list[OutboxMessage]:
        return list(self._messages)

    def drain(self) -> list[OutboxMessage]:
        """Return all buffered messages and empty the outbox."""
        drained, self._messages = self._messages, []
        return drained

    def clear(self) -> None:
        self._messages = []

    def __len__(self) -> int:
        return len(self._messages)


class Dispatcher(Protocol):
    """Delivers committed outbox messages to their recipients."""

    def deliver(self, message: OutboxMessage) -> None: ...


class InMemoryDispatcher:
    """Records deliveries and credits funds transfers to local balances.

    Stands in for the host's notification mechanism and funds ledger in
    tests and in the CLI.
    """

    def __init__(self) -> None:
        self.delivered: list[OutboxMessage] = []
        self.balances: dict[str, Decimal] = {}

    def deliver(self, message: OutboxMessage) -> None:
        if message.kind == MessageKind.FUNDS_TRANSFER and message.amount is not None:
            self.balances[message.recipient] = (
                self.balances.get(message.recipient, Decimal("0")) + message.amount
            )
        self.delivered.append(message)

    def notifications_for(self, recipient: str) -> list[OutboxMessage]:
        return [
            m for m in self.delivered
            if m.kind == MessageKind.NOTIFY and m.recipient == recipient
        ]

    def funds_for(self, recipient: str) -> Decimal:
        return self.balances.get(recipient, Decimal("0"))
