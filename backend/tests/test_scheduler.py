from __future__ import annotations

import threading

import pytest

from tts_pipeline.errors import AllKeysRateLimited, BatchCancelled
from tts_pipeline.scheduler import run_bounded


def test_fills_worker_limit_without_exceeding_it_and_keeps_order() -> None:
    lock = threading.Lock()
    saturated = threading.Event()
    in_flight = 0
    peak = 0

    def worker(item: int) -> int:
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
            if in_flight == 3:
                saturated.set()
        # Hold the first slots open until the pool is full.
        saturated.wait(timeout=2.0)
        with lock:
            in_flight -= 1
        return item * 10

    outcomes = run_bounded(list(range(10)), worker, max_workers=3)

    assert peak == 3
    assert [outcome.value for outcome in outcomes] == [item * 10 for item in range(10)]
    assert all(outcome.ok for outcome in outcomes)


def test_worker_exception_becomes_item_failure() -> None:
    def worker(item: str) -> str:
        if item == "bad":
            raise ValueError("Empty text for TTS.")
        return item.upper()

    outcomes = run_bounded(["a", "bad", "c"], worker, max_workers=2)

    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert isinstance(outcomes[1].error, ValueError)
    assert outcomes[2].value == "C"


def test_cancel_event_skips_items_not_yet_started() -> None:
    cancel = threading.Event()
    started: list[int] = []

    def worker(item: int) -> int:
        started.append(item)
        if item == 1:
            cancel.set()
        return item

    outcomes = run_bounded(list(range(5)), worker, max_workers=1, cancel_event=cancel)

    assert started == [0, 1]
    assert [outcome.cancelled for outcome in outcomes] == [False, False, True, True, True]
    assert all(isinstance(outcome.error, BatchCancelled) for outcome in outcomes[2:])


def test_batch_abort_cancels_pending_items_and_is_reraised() -> None:
    started: list[int] = []

    def worker(item: int) -> int:
        started.append(item)
        if item == 0:
            raise AllKeysRateLimited()
        return item

    with pytest.raises(AllKeysRateLimited):
        run_bounded(list(range(6)), worker, max_workers=1)

    assert started == [0]


def test_empty_input_returns_no_outcomes() -> None:
    assert run_bounded([], lambda item: item, max_workers=4) == []
