"""Per-account serialization of balance recomputes.

Mutation hooks (request threads) and the sweeper (scheduler thread) may ask
for the same account at the same time. Only one run per account executes at
once; requests that arrive while a run is in flight are coalesced into a
single follow-up run, started by the thread that owns the current run as soon
as it finishes. Every coalesced caller blocks until that follow-up completes
and receives its outcome, so nobody observes a balance computed from data
older than their own request.
"""

import logging
import threading
from typing import Callable, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Slot:
    def __init__(self) -> None:
        self.running = False
        self.pending = False
        self.started = 0
        self.finished = 0
        # run number -> callers waiting for that run
        self.waiters: dict[int, int] = {}
        # run number -> (result, error), kept while someone waits for it
        self.outcomes: dict[int, tuple[object, Optional[BaseException]]] = {}

    @property
    def waiting(self) -> int:
        return sum(self.waiters.values())


class AccountRecomputeQueue:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._slots: dict[Hashable, _Slot] = {}

    def waiting(self, key: Hashable) -> int:
        with self._cond:
            slot = self._slots.get(key)
            return slot.waiting if slot else 0

    def run(self, key: Hashable, fn: Callable[[], T]) -> T:
        with self._cond:
            slot = self._slots.setdefault(key, _Slot())
            if slot.running:
                return self._join_follow_up(key, slot)
            slot.running = True

        outcome: Optional[tuple[object, Optional[BaseException]]] = None
        while True:
            with self._cond:
                slot.started += 1
                slot.pending = False
                run_number = slot.started
            try:
                result, error = fn(), None
            except Exception as exc:
                result, error = None, exc
            if outcome is None:
                outcome = (result, error)
            with self._cond:
                slot.finished = run_number
                if slot.waiters.get(run_number):
                    slot.outcomes[run_number] = (result, error)
                self._cond.notify_all()
                if not slot.pending:
                    slot.running = False
                    self._discard_if_idle(key, slot)
                    break
            logger.info(f"recompute_queue: key={key} follow_up_run={run_number + 1}")

        own_result, own_error = outcome
        if own_error is not None:
            raise own_error
        return own_result  # type: ignore[return-value]

    def _join_follow_up(self, key: Hashable, slot: _Slot):
        # Caller holds self._cond.
        slot.pending = True
        target = slot.started + 1
        slot.waiters[target] = slot.waiters.get(target, 0) + 1
        try:
            while slot.finished < target:
                self._cond.wait()
            result, error = slot.outcomes[target]
            if error is not None:
                raise error
            return result
        finally:
            slot.waiters[target] -= 1
            if slot.waiters[target] == 0:
                del slot.waiters[target]
                slot.outcomes.pop(target, None)
            self._discard_if_idle(key, slot)

    def _discard_if_idle(self, key: Hashable, slot: _Slot) -> None:
        if not slot.running and not slot.waiters and self._slots.get(key) is slot:
            self._slots.pop(key, None)
