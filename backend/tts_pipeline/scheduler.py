from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Sequence, TypeVar

from tts_pipeline.errors import BatchAbort, BatchCancelled

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class ItemOutcome(Generic[T, R]):
    index: int
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], R],
    max_workers: int,
    cancel_event: Optional[threading.Event] = None,
) -> list[ItemOutcome[T, R]]:
    """Run ``worker`` over ``items`` with at most ``max_workers`` in flight.

    Items start in submission order. Outcomes come back in input order once
    every started item has finished. A ``BatchAbort`` from any item stops new
    items from starting and is re-raised after the in-flight ones complete.
    """
    if not items:
        return []
    cancel = cancel_event or threading.Event()
    abort_lock = threading.Lock()
    aborts: list[BatchAbort] = []

    def run_item(index: int, item: T) -> ItemOutcome[T, R]:
        if cancel.is_set():
            return ItemOutcome(index=index, item=item, error=BatchCancelled(), cancelled=True)
        try:
            return ItemOutcome(index=index, item=item, value=worker(item))
        except BatchAbort as exc:
            with abort_lock:
                aborts.append(exc)
            cancel.set()
            return ItemOutcome(index=index, item=item, error=exc)
        except Exception as exc:  # noqa: BLE001
            return ItemOutcome(index=index, item=item, error=exc)

    workers = max(1, min(int(max_workers), len(items)))
    outcomes: list[ItemOutcome[T, R]] = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(run_item, index, item) for index, item in enumerate(items)]
        for future in concurrent.futures.as_completed(futures):
            outcomes.append(future.result())

    if aborts:
        raise aborts[0]
    return sorted(outcomes, key=lambda outcome: outcome.index)
