import threading
import time

import pytest

from locks import AccountRecomputeQueue


def wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def test_single_run_returns_result():
    queue = AccountRecomputeQueue()
    assert queue.run(1, lambda: 42) == 42
    assert queue.waiting(1) == 0


def test_requests_during_a_run_coalesce_into_one_follow_up():
    queue = AccountRecomputeQueue()
    started = threading.Event()
    release = threading.Event()
    runs: list[str] = []

    def recompute():
        runs.append(threading.current_thread().name)
        if len(runs) == 1:
            started.set()
            release.wait(5)
        return len(runs)

    results: dict[str, int] = {}

    def call(name: str) -> None:
        results[name] = queue.run(7, recompute)

    leader = threading.Thread(target=call, args=("leader",), name="leader")
    leader.start()
    assert started.wait(5)

    followers = [
        threading.Thread(target=call, args=(f"f{i}",), name=f"f{i}") for i in range(3)
    ]
    for thread in followers:
        thread.start()
    wait_for(lambda: queue.waiting(7) == 3)

    release.set()
    for thread in [leader, *followers]:
        thread.join(5)

    assert len(runs) == 2
    assert results == {"leader": 1, "f0": 2, "f1": 2, "f2": 2}
    assert queue.waiting(7) == 0


def test_different_keys_run_in_parallel():
    queue = AccountRecomputeQueue()
    release = threading.Event()
    started = threading.Event()

    def slow():
        started.set()
        release.wait(5)
        return "slow"

    thread = threading.Thread(target=lambda: queue.run(1, slow))
    thread.start()
    assert started.wait(5)

    assert queue.run(2, lambda: "fast") == "fast"
    release.set()
    thread.join(5)


def test_follow_up_error_reaches_every_coalesced_caller():
    queue = AccountRecomputeQueue()
    started = threading.Event()
    release = threading.Event()
    calls = {"count": 0}

    def recompute():
        calls["count"] += 1
        if calls["count"] == 1:
            started.set()
            release.wait(5)
            return "ok"
        raise RuntimeError("store down")

    errors: list[BaseException] = []

    def follower() -> None:
        try:
            queue.run(3, recompute)
        except RuntimeError as exc:
            errors.append(exc)

    leader_result: dict[str, str] = {}
    leader = threading.Thread(
        target=lambda: leader_result.setdefault("value", queue.run(3, recompute))
    )
    leader.start()
    assert started.wait(5)
    followers = [threading.Thread(target=follower) for _ in range(2)]
    for thread in followers:
        thread.start()
    wait_for(lambda: queue.waiting(3) == 2)

    release.set()
    for thread in [leader, *followers]:
        thread.join(5)

    assert leader_result == {"value": "ok"}
    assert len(errors) == 2
    assert calls["count"] == 2


def test_error_propagates_and_queue_recovers():
    queue = AccountRecomputeQueue()

    def fail():
        raise ValueError("bad")

    with pytest.raises(ValueError):
        queue.run(5, fail)
    assert queue.run(5, lambda: "again") == "again"


def test_each_waiter_gets_the_outcome_of_its_own_run():
    queue = AccountRecomputeQueue()
    first_started = threading.Event()
    first_release = threading.Event()
    second_started = threading.Event()
    second_release = threading.Event()
    calls = {"count": 0}

    def recompute():
        calls["count"] += 1
        run = calls["count"]
        if run == 1:
            first_started.set()
            first_release.wait(5)
            return "r1"
        if run == 2:
            second_started.set()
            second_release.wait(5)
            return "r2"
        raise RuntimeError("run 3 failed")

    outcomes: dict[str, object] = {}

    def call(name: str) -> None:
        try:
            outcomes[name] = queue.run(9, recompute)
        except RuntimeError as exc:
            outcomes[name] = exc

    leader = threading.Thread(target=call, args=("leader",))
    leader.start()
    assert first_started.wait(5)

    early = threading.Thread(target=call, args=("early",))
    early.start()
    wait_for(lambda: queue.waiting(9) == 1)
    first_release.set()
    assert second_started.wait(5)

    late = threading.Thread(target=call, args=("late",))
    late.start()
    wait_for(lambda: queue.waiting(9) == 2)
    second_release.set()
    for thread in (leader, early, late):
        thread.join(5)

    assert calls["count"] == 3
    assert outcomes["leader"] == "r1"
    assert outcomes["early"] == "r2"
    assert isinstance(outcomes["late"], RuntimeError)
    assert queue.waiting(9) == 0
