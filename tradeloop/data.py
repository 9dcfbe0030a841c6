"""Market event feeds and the metadata carried from market events downstream."""

from __future__ import annotations

import enum
import queue
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Iterable, Iterator, TypeVar

E = TypeVar("E")

_SHUTDOWN: Any = getattr(queue, "ShutDown", ())
_EXHAUSTED = object()


class DataError(Exception):
    """Raised for errors in the market data components."""


class FeedStatus(enum.Enum):
    """State of a market feed when asked for its next event."""

    NEXT = "next"
    UNHEALTHY = "unhealthy"
    FINISHED = "finished"


@dataclass(frozen=True)
class Feed(Generic[E]):
    """The state of a feed together with the next event, if there is one."""

    status: FeedStatus
    event: E | None = None

    @staticmethod
    def next_event(event: E) -> Feed[E]:
        """A feed result carrying the next market event."""
        return Feed(FeedStatus.NEXT, event)

    @staticmethod
    def unhealthy() -> Feed[Any]:
        """A feed result signalling that the feed is temporarily unhealthy."""
        return Feed(FeedStatus.UNHEALTHY)

    @staticmethod
    def finished() -> Feed[Any]:
        """A feed result signalling that no more events will be produced."""
        return Feed(FeedStatus.FINISHED)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MarketMeta:
    """Close price and exchange timestamp of the market event a signal came from."""

    close: float = 100.0
    time: datetime = field(default_factory=_utc_now)


class HistoricalMarketFeed(Generic[E]):
    """Feed of market events taken from any iterable, for backtesting."""

    def __init__(self, market_iterator: Iterable[E]) -> None:
        self.market_iterator: Iterator[E] = iter(market_iterator)

    def next(self) -> Feed[E]:
        """Return the next event, or a finished feed once the iterable is exhausted."""
        event = next(self.market_iterator, _EXHAUSTED)
        if event is _EXHAUSTED:
            return Feed.finished()
        return Feed.next_event(event)


class LiveMarketFeed(Generic[E]):
    """Feed of market events arriving on a queue from a live producer.

    The producer signals that it is gone by putting ``None`` on the queue
    (or, where supported, by shutting the queue down). From then on the
    feed reports itself finished.
    """

    def __init__(self, market_rx: queue.Queue) -> None:
        self.market_rx = market_rx
        self._finished = False

    def next(self) -> Feed[E]:
        """Block until the next event arrives, or report the feed finished."""
        if self._finished:
            return Feed.finished()
        try:
            event = self.market_rx.get()
        except _SHUTDOWN:
            event = None
        if event is None:
            self._finished = True
            return Feed.finished()
        return Feed.next_event(event)