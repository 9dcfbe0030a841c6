"""Trading engine running one trader per market on its own thread."""

from __future__ import annotations

import asyncio
import concurrent.futures
import dataclasses
import logging
import queue
import threading
from collections.abc import Mapping
from typing import Any, Callable, Iterable

from tradeloop.command import (
    BuilderIncompleteError,
    Command,
    CommandKind,
    RepositoryInteractionError,
)
from tradeloop.trader import _lock_for

logger = logging.getLogger(__name__)

_TERMINATE_GRACE_SECONDS = 1.0

_ASYNC_QUEUE_SHUTDOWN: Any = getattr(asyncio, "QueueShutDown", ())

_SEND_FAILURES: tuple[type[BaseException], ...] = tuple(
    exc
    for exc in (
        queue.Full,
        asyncio.QueueFull,
        getattr(queue, "ShutDown", None),
        getattr(asyncio, "QueueShutDown", None),
    )
    if exc is not None
)

_REPLY_FAILURES = (concurrent.futures.InvalidStateError, asyncio.InvalidStateError)


def _run_trader(trader: Any, on_exit: Callable[[], None]) -> None:
    try:
        trader.run()
    except Exception:
        logger.exception("Trader thread has panicked during execution")
    finally:
        on_exit()


def _metrics(statistic: Any) -> dict[str, Any]:
    """Flatten a statistic into named metric values for display."""
    if isinstance(statistic, Mapping):
        items = dict(statistic)
    elif dataclasses.is_dataclass(statistic) and not isinstance(statistic, type):
        items = dataclasses.asdict(statistic)
    elif hasattr(statistic, "__dict__"):
        items = {
            key: value
            for key, value in vars(statistic).items()
            if not key.startswith("_")
        }
    else:
        items = {"value": statistic}

    flat: dict[str, Any] = {}
    for key, value in items.items():
        if isinstance(value, Mapping):
            for sub_key, sub_value in value.items():
                flat[f"{key}.{sub_key}"] = sub_value
        else:
            flat[str(key)] = value
    return flat


def _format(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.4f}"
    return str(value)


def _render_summary(summary: Mapping[str, Any]) -> str:
    """Render per-market and total statistics as a plain text table."""
    rows = {name: _metrics(statistic) for name, statistic in summary.items()}
    columns: list[str] = []
    for metrics in rows.values():
        columns.extend(key for key in metrics if key not in columns)

    header = [""] + columns
    body = [
        [name] + [_format(metrics[col]) if col in metrics else "" for col in columns]
        for name, metrics in rows.items()
    ]
    widths = [max(len(row[i]) for row in [header, *body]) for i in range(len(header))]

    def line(cells: list[str]) -> str:
        return " | ".join(cell.ljust(width) for cell, width in zip(cells, widths))

    separator = "-+-".join("-" * width for width in widths)
    return "\n".join([line(header), separator, *(line(row) for row in body)])


class Engine:
    """Runs any number of traders, one per market, sharing a portfolio.

    Each trader runs on its own thread. Commands arrive on ``command_rx``,
    an ``asyncio.Queue``; ``None`` on it means the command sender is gone.
    ``trader_command_txs`` maps each market to the queue its trader reads
    commands from. When every trader stops by itself, or a terminate
    command arrives, the engine prints a session summary and returns it.
    """

    def __init__(
        self,
        *,
        engine_id: Any,
        command_rx: asyncio.Queue,
        portfolio: Any,
        traders: Iterable[Any],
        trader_command_txs: Mapping[Any, Any],
        statistics_summary: Any,
    ) -> None:
        self.engine_id = engine_id
        self.command_rx = command_rx
        self.portfolio = portfolio
        self.traders = list(traders)
        self.trader_command_txs = dict(trader_command_txs)
        self.statistics_summary = statistics_summary
        self._portfolio_lock = _lock_for(portfolio)
        logger.info("constructed new Engine instance (engine_id=%s)", engine_id)

    @staticmethod
    def builder() -> EngineBuilder:
        """A fresh builder for engines."""
        return EngineBuilder()

    async def run(self) -> dict[str, Any]:
        """Trade until the traders stop or a terminate command arrives.

        Returns the session summary: statistics per market followed by
        the total under ``"Total"``.
        """
        traders_stopped = self._run_traders()

        while True:
            command_task = asyncio.ensure_future(self.command_rx.get())
            stopped_task = asyncio.ensure_future(traders_stopped.wait())
            try:
                done, _ = await asyncio.wait(
                    {command_task, stopped_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                for task in (command_task, stopped_task):
                    if not task.done():
                        task.cancel()

            if stopped_task in done:
                break

            try:
                command = command_task.result()
            except _ASYNC_QUEUE_SHUTDOWN:
                command = None
            if command is None:
                break

            if command.kind is CommandKind.FETCH_OPEN_POSITIONS:
                self._fetch_open_positions(command.payload)
            elif command.kind is CommandKind.TERMINATE:
                await self._terminate_traders(command.payload)
                break
            elif command.kind is CommandKind.EXIT_POSITION:
                self._exit_position(command.payload)
            elif command.kind is CommandKind.EXIT_ALL_POSITIONS:
                self._exit_all_positions()

        summary = self._generate_session_summary()
        print(_render_summary(summary))
        return summary

    def _run_traders(self) -> asyncio.Event:
        """Start each trader on a thread; the event is set once all have stopped."""
        loop = asyncio.get_running_loop()
        stopped = asyncio.Event()
        traders, self.traders = self.traders, []
        if not traders:
            stopped.set()
            return stopped

        remaining = len(traders)

        def on_exit() -> None:
            nonlocal remaining
            remaining -= 1
            if remaining == 0:
                stopped.set()

        def notify() -> None:
            try:
                loop.call_soon_threadsafe(on_exit)
            except RuntimeError:
                pass

        for number, trader in enumerate(traders):
            threading.Thread(
                target=_run_trader,
                args=(trader, notify),
                name=f"trader-{number}",
                daemon=True,
            ).start()
        return stopped

    def _fetch_open_positions(self, reply: Any) -> None:
        try:
            with self._portfolio_lock:
                positions = list(
                    self.portfolio.get_open_positions(
                        self.engine_id, list(self.trader_command_txs)
                    )
                )
        except Exception as exc:
            error = RepositoryInteractionError(exc)
            deliver, outcome = reply.set_exception, error
        else:
            deliver, outcome = reply.set_result, positions

        try:
            deliver(outcome)
        except _REPLY_FAILURES:
            logger.warning(
                "cannot action Command::FetchOpenPositions: reply receiver dropped"
            )

    def _send(self, market: Any, command_tx: Any, command: Command) -> None:
        try:
            command_tx.put_nowait(command)
        except _SEND_FAILURES:
            logger.error(
                "failed to send %s to Trader command_rx for market %r: dropped receiver",
                command.kind.value,
                market,
            )

    async def _terminate_traders(self, message: str) -> None:
        self._exit_all_positions()
        await asyncio.sleep(_TERMINATE_GRACE_SECONDS)
        for market, command_tx in self.trader_command_txs.items():
            self._send(market, command_tx, Command.terminate(message))

    def _exit_all_positions(self) -> None:
        for market, command_tx in self.trader_command_txs.items():
            self._send(market, command_tx, Command.exit_position(market))

    def _exit_position(self, market: Any) -> None:
        command_tx = self.trader_command_txs.get(market)
        if command_tx is None:
            logger.warning(
                "failed to exit Position for market %r: Engine has no "
                "trader_command_tx associated with provided Market",
                market,
            )
            return
        self._send(market, command_tx, Command.exit_position(market))

    def _generate_session_summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {}
        for market in self.trader_command_txs:
            try:
                with self._portfolio_lock:
                    statistics = self.portfolio.get_statistics(market)
            except Exception:
                logger.exception(
                    "failed to get Market statistics for %r when generating "
                    "trading session summary",
                    market,
                )
                continue
            summary[str(market)] = statistics

        try:
            with self._portfolio_lock:
                exited_positions = list(
                    self.portfolio.get_exited_positions(self.engine_id)
                )
        except Exception:
            logger.warning(
                "failed to generate Statistics summary for trading session: "
                "failed to get exited Positions from Portfolio's repository",
                exc_info=True,
            )
        else:
            self.statistics_summary.generate_summary(exited_positions)

        summary["Total"] = self.statistics_summary
        return summary


_ENGINE_PARTS = (
    "engine_id",
    "command_rx",
    "portfolio",
    "traders",
    "trader_command_txs",
    "statistics_summary",
)


class EngineBuilder:
    """Collects the components of an engine and builds it once all are set."""

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    def _set(self, name: str, value: Any) -> EngineBuilder:
        self._values[name] = value
        return self

    def engine_id(self, value: Any) -> EngineBuilder:
        return self._set("engine_id", value)

    def command_rx(self, value: asyncio.Queue) -> EngineBuilder:
        return self._set("command_rx", value)

    def portfolio(self, value: Any) -> EngineBuilder:
        return self._set("portfolio", value)

    def traders(self, value: Iterable[Any]) -> EngineBuilder:
        return self._set("traders", value)

    def trader_command_txs(self, value: Mapping[Any, Any]) -> EngineBuilder:
        return self._set("trader_command_txs", value)

    def statistics_summary(self, value: Any) -> EngineBuilder:
        return self._set("statistics_summary", value)

    def build(self) -> Engine:
        """Build the engine, raising BuilderIncompleteError for the first missing part."""
        for name in _ENGINE_PARTS:
            if name not in self._values:
                raise BuilderIncompleteError(name)
        return Engine(**self._values)