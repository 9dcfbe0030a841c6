"""A trader running the event loop for a single market."""

from __future__ import annotations

import collections
import logging
import queue
import threading
import weakref
from typing import Any

from tradeloop.command import BuilderIncompleteError, Command, CommandKind
from tradeloop.data import FeedStatus
from tradeloop.event import Event, EventKind

logger = logging.getLogger(__name__)

_SHUTDOWN: Any = getattr(queue, "ShutDown", ())

_LOCKS: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()
_LOCKS_GUARD = threading.Lock()
_FALLBACK_LOCK = threading.RLock()


def _lock_for(portfolio: Any) -> Any:
    """The lock guarding a portfolio shared between traders."""
    own = getattr(portfolio, "lock", None)
    if own is not None and hasattr(own, "__enter__"):
        return own
    with _LOCKS_GUARD:
        try:
            lock = _LOCKS.get(portfolio)
            if lock is None:
                lock = _LOCKS[portfolio] = threading.RLock()
        except TypeError:
            return _FALLBACK_LOCK
    return lock


class Trader:
    """Trades one market with its own data feed, strategy and execution.

    The portfolio is shared with the other traders of an engine; access to
    it is serialised by a lock (its own ``lock`` attribute if it has one).
    Commands arrive on ``command_rx``, a queue; ``None`` on that queue, or
    a shut down queue, means the command sender is gone and the trader
    terminates. A forced exit hands the market to the portfolio's
    ``generate_exit_order``.
    """

    def __init__(
        self,
        *,
        engine_id: Any,
        market: Any,
        command_rx: queue.Queue,
        event_tx: Any,
        portfolio: Any,
        data: Any,
        strategy: Any,
        execution: Any,
    ) -> None:
        self.engine_id = engine_id
        self.market = market
        self.command_rx = command_rx
        self.event_tx = event_tx
        self.portfolio = portfolio
        self.data = data
        self.strategy = strategy
        self.execution = execution
        self.event_q: collections.deque[Event] = collections.deque()
        self._portfolio_lock = _lock_for(portfolio)
        logger.info(
            "constructed new Trader instance (engine_id=%s, market=%r)",
            engine_id,
            market,
        )

    @staticmethod
    def builder() -> TraderBuilder:
        """A fresh builder for traders."""
        return TraderBuilder()

    def run(self) -> None:
        """Trade until a terminate command arrives or the data feed finishes."""
        while True:
            if self._action_commands():
                break

            feed = self.data.next()
            if feed.status is FeedStatus.UNHEALTHY:
                logger.warning(
                    "MarketFeed unhealthy (engine_id=%s, market=%r); "
                    "continuing while waiting for healthy Feed",
                    self.engine_id,
                    self.market,
                )
                continue
            if feed.status is FeedStatus.FINISHED:
                break
            market_event = Event(EventKind.MARKET, feed.event)
            self.event_tx.send(market_event)
            self.event_q.append(market_event)

            while self.event_q:
                self._handle(self.event_q.popleft())

        logger.debug(
            "Trader trading loop stopped (engine_id=%s, market=%r)",
            self.engine_id,
            self.market,
        )

    def _action_commands(self) -> bool:
        """Act on pending commands; True when the trader must terminate."""
        while (command := self._receive_remote_command()) is not None:
            if command.kind is CommandKind.TERMINATE:
                return True
            if command.kind is CommandKind.EXIT_POSITION:
                self.event_q.append(
                    Event(EventKind.SIGNAL_FORCE_EXIT, command.payload)
                )
        return False

    def _receive_remote_command(self) -> Command | None:
        try:
            command = self.command_rx.get_nowait()
        except queue.Empty:
            return None
        except _SHUTDOWN:
            command = None
        if command is None:
            logger.warning(
                "remote Command transmitter has been dropped; "
                "synthesising a Command::Terminate"
            )
            return Command.terminate("remote command transmitter dropped")
        logger.debug(
            "Trader received remote command %r (engine_id=%s, market=%r)",
            command,
            self.engine_id,
            self.market,
        )
        return command

    def _handle(self, event: Event) -> None:
        kind = event.kind
        if kind is EventKind.MARKET:
            signal = self.strategy.generate_signal(event.payload)
            if signal is not None:
                signal_event = Event(EventKind.SIGNAL, signal)
                self.event_tx.send(signal_event)
                self.event_q.append(signal_event)
            with self._portfolio_lock:
                position_update = self.portfolio.update_from_market(event.payload)
            if position_update is not None:
                self.event_tx.send(Event(EventKind.POSITION_UPDATE, position_update))
        elif kind is EventKind.SIGNAL:
            with self._portfolio_lock:
                order = self.portfolio.generate_order(event.payload)
            self._queue_order(order)
        elif kind is EventKind.SIGNAL_FORCE_EXIT:
            with self._portfolio_lock:
                order = self.portfolio.generate_exit_order(event.payload)
            self._queue_order(order)
        elif kind is EventKind.ORDER_NEW:
            fill = self.execution.generate_fill(event.payload)
            fill_event = Event(EventKind.FILL, fill)
            self.event_tx.send(fill_event)
            self.event_q.append(fill_event)
        elif kind is EventKind.FILL:
            with self._portfolio_lock:
                side_effects = self.portfolio.update_from_fill(event.payload)
            self.event_tx.send_many(list(side_effects))

    def _queue_order(self, order: Any) -> None:
        if order is None:
            return
        order_event = Event(EventKind.ORDER_NEW, order)
        self.event_tx.send(order_event)
        self.event_q.append(order_event)


_TRADER_PARTS = (
    "engine_id",
    "market",
    "command_rx",
    "event_tx",
    "portfolio",
    "data",
    "strategy",
    "execution",
)


class TraderBuilder:
    """Collects the components of a trader and builds it once all are set."""

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    def _set(self, name: str, value: Any) -> TraderBuilder:
        self._values[name] = value
        return self

    def engine_id(self, value: Any) -> TraderBuilder:
        return self._set("engine_id", value)

    def market(self, value: Any) -> TraderBuilder:
        return self._set("market", value)

    def command_rx(self, value: queue.Queue) -> TraderBuilder:
        return self._set("command_rx", value)

    def event_tx(self, value: Any) -> TraderBuilder:
        return self._set("event_tx", value)

    def portfolio(self, value: Any) -> TraderBuilder:
        return self._set("portfolio", value)

    def data(self, value: Any) -> TraderBuilder:
        return self._set("data", value)

    def strategy(self, value: Any) -> TraderBuilder:
        return self._set("strategy", value)

    def execution(self, value: Any) -> TraderBuilder:
        return self._set("execution", value)

    def build(self) -> Trader:
        """Build the trader, raising BuilderIncompleteError for the first missing part."""
        for name in _TRADER_PARTS:
            if name not in self._values:
                raise BuilderIncompleteError(name)
        return Trader(**self._values)