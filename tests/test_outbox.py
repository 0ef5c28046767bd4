"""Tests for the outbox and in-memory dispatcher."""

from decimal import Decimal

import pytest

from drops.outbox import InMemoryDispatcher, MessageKind, Outbox


class TestOutbox:
    def test_preserves_order(self) -> None:
        outbox = Outbox()
        outbox.notify("a", "first")
        outbox.transfer_funds("b", Decimal("1.5"), memo="refund")
        outbox.notify("c", "third", epoch=3)
        assert [m.recipient for m in outbox.messages] == ["a", "b", "c"]
        assert outbox.messages[2].payload == {"epoch": 3}

    def test_payload_may_reuse_parameter_names(self) -> None:
        outbox = Outbox()
        outbox.notify("alice", "drops_transferred", recipient="bob", topic="x")
        message = outbox.messages[0]
        assert message.recipient == "alice"
        assert message.topic == "drops_transferred"
        assert message.payload == {"recipient": "bob", "topic": "x"}

    def test_drain_empties(self) -> None:
        outbox = Outbox()
        outbox.notify("a", "topic")
        drained = outbox.drain()
        assert len(drained) == 1
        assert len(outbox) == 0

    def test_non_positive_transfer_rejected(self) -> None:
        with pytest.raises(ValueError):
            Outbox().transfer_funds("a", Decimal("0"))


class TestInMemoryDispatcher:
    def test_credits_funds_and_records_notices(self) -> None:
        outbox = Outbox()
        outbox.transfer_funds("alice", Decimal("1.25"))
        outbox.transfer_funds("alice", Decimal("0.75"))
        outbox.notify("alice", "drops_transferred", drops=[1])
        dispatcher = InMemoryDispatcher()
        for message in outbox.drain():
            dispatcher.deliver(message)
        assert dispatcher.funds_for("alice") == Decimal("2.00")
        notices = dispatcher.notifications_for("alice")
        assert len(notices) == 1
        assert notices[0].kind == MessageKind.NOTIFY
        assert dispatcher.funds_for("bob") == Decimal("0")
