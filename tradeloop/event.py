"""Events produced while trading and a transmitter that forwards them to a sink."""

from __future__ import annotations

import asyncio
import enum
import logging
import queue
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Union

logger = logging.getLogger(__name__)

_SEND_FAILURES: tuple[type[BaseException], ...] = tuple(
    exc
    for exc in (
        queue.Full,
        asyncio.QueueFull,
        getattr(queue, "ShutDown", None),
        getattr(asyncio, "QueueShutDown", None),
        BrokenPipeError,
        EOFError,
    )
    if exc is not None
)


class EventKind(enum.Enum):
    """Kinds of event that occur in the trading loop."""

    MARKET = "Market"
    SIGNAL = "Signal"
    SIGNAL_FORCE_EXIT = "SignalForceExit"
    ORDER_NEW = "OrderNew"
    ORDER_UPDATE = "OrderUpdate"
    FILL = "Fill"
    POSITION_NEW = "PositionNew"
    POSITION_UPDATE = "PositionUpdate"
    POSITION_EXIT = "PositionExit"
    BALANCE = "Balance"


@dataclass(frozen=True)
class Event:
    """An event of a given kind with the data it carries.

    Market, signal, order and fill events drive the trading loop; the
    position and balance events report work done by the system.
    """

    kind: EventKind
    payload: Any = None


Sink = Union["queue.Queue[Event]", "asyncio.Queue[Event]", Callable[[Event], Any]]


class EventTx:
    """Sends events to an external sink such as a queue or a callable.

    Once a send fails because the receiving side is gone (a full or shut
    down queue, a broken pipe), the transmitter stops sending.
    """

    def __init__(self, sink: Sink) -> None:
        self.receiver_dropped = False
        put = getattr(sink, "put_nowait", None)
        if put is None:
            if not callable(sink):
                raise TypeError("event sink must be a queue or a callable")
            put = sink
        self._put: Callable[[Event], Any] = put
        self.sink = sink

    def send(self, message: Event) -> None:
        """Send one event, noting a dropped receiver on failure."""
        if self.receiver_dropped:
            return
        try:
            self._put(message)
        except _SEND_FAILURES:
            logger.warning(
                "cannot send Events: event receiver dropped; "
                "setting receiver_dropped = true"
            )
            self.receiver_dropped = True

    def send_many(self, messages: Iterable[Event]) -> None:
        """Send several events, ignoring individual failures."""
        if self.receiver_dropped:
            return
        for message in messages:
            try:
                self._put(message)
            except _SEND_FAILURES:
                pass