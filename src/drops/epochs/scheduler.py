"""Epoch scheduler — epoch creation and advancement.

Epoch numbers increase by exactly one per advancement, with no gaps.
Each new epoch starts where the previous one ended, lasts one phase
duration, and freezes a snapshot of the oracle registry at creation.

advance() performs a single step. After several missed phases the
caller (or advance_until_current) repeats it until the active epoch's
end lies in the future.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from drops.errors import Disabled, DuplicateSubmission, EpochNotFound, NoOracles, NotEnded
from drops.models.epoch import Epoch
from drops.outbox import Outbox
from drops.state import LedgerState


class EpochScheduler:
    """Creates and advances epochs in a LedgerState.

    Usage:
        scheduler = EpochScheduler(state, phase_duration=timedelta(seconds=90))
        scheduler.init(now)                      # epoch 1
        epoch = scheduler.advance(now, outbox)   # epoch 2, subscribers notified
    """

    def __init__(self, state: LedgerState, phase_duration: timedelta) -> None:
        if phase_duration <= timedelta(0):
            raise ValueError("Epoch phase duration must be positive")
        self._state = state
        self._phase = phase_duration

    def init(self, now: datetime) -> Epoch:
        """Create epoch 1, aligned down to a multiple of the phase duration.

        The system starts disabled; an administrator enables it once
        oracles and subscribers are in place.
        """
        if self._state.global_state.initialized:
            raise DuplicateSubmission("Ledger is already initialized")
        oracles = self._oracle_snapshot()

        phase_seconds = int(self._phase.total_seconds())
        epoch_seconds = int(now.timestamp())
        start = datetime.fromtimestamp(
            (epoch_seconds // phase_seconds) * phase_seconds, tz=now.tzinfo
        )
        first = Epoch(number=1, start=start, end=start + self._phase, oracles=oracles)
        self._state.epochs[1] = first

        gs = self._state.global_state
        gs.epoch = 1
        gs.enabled = False
        gs.initialized = True
        return first

    def advance(self, now: datetime, outbox: Outbox) -> Epoch:
        """Advance the epoch pointer by one and create the next epoch."""
        gs = self._state.global_state
        if not gs.enabled:
            raise Disabled("Ledger is currently disabled")

        active = self._state.epochs.get(gs.epoch)
        if active is None:
            raise EpochNotFound(f"Epoch {gs.epoch} from state does not exist")
        if now < active.end:
            raise NotEnded(
                f"Current epoch {active.number} has not ended ({active.end.isoformat()})"
            )
        oracles = self._oracle_snapshot()

        new_epoch = Epoch(
            number=active.number + 1,
            start=active.end,
            end=active.end + self._phase,
            oracles=oracles,
        )
        self._state.epochs[new_epoch.number] = new_epoch
        gs.epoch = new_epoch.number

        for subscriber in self._state.subscribers:
            outbox.notify(
                subscriber,
                "epoch_advanced",
                epoch=new_epoch.number,
                start=new_epoch.start.isoformat(),
                end=new_epoch.end.isoformat(),
            )
        return new_epoch

    def advance_until_current(self, now: datetime, outbox: Outbox) -> Epoch:
        """Advance repeatedly until the returned epoch's end is after now."""
        epoch = self.advance(now, outbox)
        while now >= epoch.end:
            epoch = self.advance(now, outbox)
        return epoch

    def active_epoch(self) -> Epoch:
        epoch = self._state.epochs.get(self._state.current_epoch)
        if epoch is None:
            raise EpochNotFound(f"Epoch {self._state.current_epoch} does not exist")
        return epoch

    def _oracle_snapshot(self) -> tuple[str, ...]:
        if not self._state.oracles:
            raise NoOracles("No oracles registered, cannot create an epoch")
        return tuple(self._state.oracles)
