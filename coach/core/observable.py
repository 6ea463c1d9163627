"""
Observable Cell
===============

Single-writer, multi-reader broadcast of a piece of state.

The owner calls ``publish()``; readers call ``subscribe()`` and iterate
the returned ``Subscription``. A conflating subscription only ever
holds the latest value, so slow readers skip stale states instead of
queueing them. Cancelling a subscription detaches it immediately.

Usage:
    cell = ObservableCell()
    sub = cell.subscribe()
    cell.publish(status)
    async for value in sub:
        ...
    sub.cancel()
"""
import asyncio
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Set, TypeVar

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """A reader's view of an ObservableCell."""

    def __init__(self, cell: "ObservableCell[T]", conflate: bool = True):
        self._cell = cell
        self._conflate = conflate
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, value: T) -> None:
        """Deliver a value to this reader only."""
        if self._closed:
            return
        if self._conflate:
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(value)

    async def get(self) -> T:
        """Wait for the next value. Raises LookupError once cancelled."""
        if self._closed and self._queue.empty():
            raise LookupError("Subscription cancelled")
        value = await self._queue.get()
        if value is _CLOSED:
            raise LookupError("Subscription cancelled")
        return value

    def pending(self) -> int:
        return self._queue.qsize()

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cell._detach(self)
        # Wake a reader blocked in get()
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except LookupError:
            raise StopAsyncIteration


class ObservableCell(Generic[T]):
    """Holds the current value and fans it out to subscribers."""

    def __init__(
        self,
        initial: Optional[T] = None,
        conflate: bool = True,
        on_unobserved: Optional[Callable[[], None]] = None,
    ):
        self._value = initial
        self._conflate = conflate
        self._subscribers: Set[Subscription[T]] = set()
        self._on_unobserved = on_unobserved

    @property
    def value(self) -> Optional[T]:
        return self._value

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, value: T) -> None:
        self._value = value
        for subscription in list(self._subscribers):
            subscription.offer(value)

    def subscribe(self, replay: bool = True) -> Subscription[T]:
        """Attach a reader; with ``replay`` it first receives the current value."""
        subscription: Subscription[T] = Subscription(self, conflate=self._conflate)
        self._subscribers.add(subscription)
        if replay and self._value is not None:
            subscription.offer(self._value)
        return subscription

    def _detach(self, subscription: Subscription[T]) -> None:
        self._subscribers.discard(subscription)
        if not self._subscribers and self._on_unobserved is not None:
            self._on_unobserved()


def _retain_all(value: Any) -> bool:
    return True


def watched_only(value: Any) -> bool:
    """Retention policy for cells whose values already live in a store."""
    return False


class KeyedCells(Generic[T]):
    """
    Lazily created cells, one per key (user id, advice id, ...).

    A cell with no subscribers is dropped as soon as ``retain`` rejects its
    latest value, so keys nobody watches do not accumulate.
    """

    def __init__(self, conflate: bool = True, retain: Callable[[T], bool] = _retain_all):
        self._conflate = conflate
        self._retain = retain
        self._cells: Dict[Hashable, ObservableCell[T]] = {}

    def cell(self, key: Hashable) -> ObservableCell[T]:
        if key not in self._cells:
            self._cells[key] = ObservableCell(
                conflate=self._conflate, on_unobserved=lambda: self._prune(key)
            )
        return self._cells[key]

    def get(self, key: Hashable) -> Optional[T]:
        cell = self._cells.get(key)
        return cell.value if cell else None

    def publish(self, key: Hashable, value: T) -> None:
        if key not in self._cells and not self._retain(value):
            return
        self.cell(key).publish(value)
        self._prune(key)

    def subscribe(self, key: Hashable, replay: bool = True) -> Subscription[T]:
        return self.cell(key).subscribe(replay=replay)

    def _prune(self, key: Hashable) -> None:
        cell = self._cells.get(key)
        if cell is None or cell.subscriber_count:
            return
        if cell.value is None or not self._retain(cell.value):
            del self._cells[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._cells

    def __len__(self) -> int:
        return len(self._cells)
