"""
Progress events and cooperative cancellation for long-running operations.

Long operations are written as generators that yield ProgressEvent objects
and return a Result. ProgressRun wraps such a generator so a caller can
either iterate over the events on its own schedule or simply call run().
"""
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Generator, Generic, Iterator, Optional, TypeVar

from . import config
from .exceptions import OperationCancelled, StoreError, StoreUnreadable
from .results import Result

T = TypeVar("T")


@dataclass(frozen=True)
class ProgressEvent:
    percent: int
    message: str
    cancellable: bool = True


class CancellationToken:
    """A flag shared between the caller and an operation, polled per batch."""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self, message: str = "Operation cancelled."):
        if self._cancelled:
            raise OperationCancelled(message)


class ProgressThrottle:
    """
    Limits how often progress is reported.
    The first event and any event at 100% always pass.
    """

    def __init__(self, interval: float = config.PROGRESS_THROTTLE_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def due(self, percent: int) -> bool:
        now = self._clock()
        if self._last is None or percent >= 100 or now - self._last >= self.interval:
            self._last = now
            return True
        return False


def percent_of(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, int(done * 100 / total))


ProgressGenerator = Generator[ProgressEvent, None, Result[T]]


class ProgressRun(Generic[T]):
    """
    Iterable of ProgressEvents produced by one operation.
    After iteration ends, `result` holds the operation's Result.
    """

    def __init__(self, steps: ProgressGenerator, name: str = "operation"):
        self._steps = steps
        self.name = name
        self.result: Optional[Result[T]] = None

    def __iter__(self) -> Iterator[ProgressEvent]:
        try:
            self.result = yield from self._steps
        except StoreError as e:
            logging.warning(f"{self.name} failed: {e}")
            self.result = Result.from_error(e)
        except sqlite3.DatabaseError as e:
            logging.error(f"{self.name} failed with a database error: {e}")
            self.result = Result.from_error(StoreUnreadable(str(e)))

    def run(self) -> Result[T]:
        """Drains the events and returns the result."""
        for _ in self:
            pass
        return self.result
