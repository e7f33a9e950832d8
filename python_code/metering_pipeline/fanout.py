"""
Concurrent fan-out with per-task outcomes.

Independent store and queue calls within a batch run in a thread pool. Every
task is dispatched first, then all of them are awaited; each task's value or
exception is captured in an `Outcome` so one failure never cancels or hides
its siblings.
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class Outcome(Generic[T, R]):
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def fan_out(fn: Callable[[T], R], items: Sequence[T], max_workers: int = 10) -> List[Outcome]:
    """
    Applies `fn` to every item concurrently.

    Returns:
        One Outcome per item, in the order of `items`.
    """
    if not items:
        return []

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as executor:
        futures: List[Future] = [executor.submit(fn, item) for item in items]
        wait(futures)

    outcomes: List[Outcome] = []
    for item, future in zip(items, futures):
        error = future.exception()
        if error is not None:
            outcomes.append(Outcome(item=item, error=error))
        else:
            outcomes.append(Outcome(item=item, value=future.result()))
    return outcomes
