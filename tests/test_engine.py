import asyncio
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field

import pytest

from tradeloop.command import BuilderIncompleteError, Command, RepositoryInteractionError
from tradeloop.data import Feed, HistoricalMarketFeed, MarketMeta
from tradeloop.engine import Engine
from tradeloop.event import EventKind, EventTx
from tradeloop.execution import Fees, SimulatedExecution, SimulatedExecutionConfig
from tradeloop.trader import Trader


@dataclass
class MarketEvent:
    price: float = 1000.0


@dataclass
class StatsSummary:
    starting_equity: float = 1000.0
    positions: list = field(default_factory=list)

    def generate_summary(self, positions):
        self.positions = list(positions)


class FakePortfolio:
    def __init__(self, open_positions=None, exited=None, failing_markets=(), repo_error=None):
        self.open_positions = open_positions or []
        self.exited = exited or []
        self.failing_markets = set(failing_markets)
        self.repo_error = repo_error
        self.open_queries = []
        self.exit_orders = []
        self.market_updates = 0

    def update_from_market(self, market):
        self.market_updates += 1
        return None

    def generate_order(self, signal):
        return None

    def generate_exit_order(self, market):
        self.exit_orders.append(market)
        return None

    def update_from_fill(self, fill):
        return []

    def get_open_positions(self, engine_id, markets):
        if self.repo_error is not None:
            raise self.repo_error
        self.open_queries.append((engine_id, list(markets)))
        return list(self.open_positions)

    def get_exited_positions(self, engine_id):
        return list(self.exited)

    def get_statistics(self, market):
        if market in self.failing_markets:
            raise KeyError(market)
        return {"market": market, "trades": 3}


class NoSignalStrategy:
    def generate_signal(self, market):
        return None


class BlockingTrader:
    def __init__(self, release):
        self.release = release

    def run(self):
        self.release.wait(timeout=10)


class CrashingTrader:
    def run(self):
        raise RuntimeError("boom")


class SpinningFeed:
    def next(self):
        time.sleep(0.001)
        return Feed.next_event(MarketEvent())


def _drain(q):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


def _engine(command_rx, portfolio, traders, txs, stats=None):
    return (
        Engine.builder()
        .engine_id(uuid.uuid4())
        .command_rx(command_rx)
        .portfolio(portfolio)
        .traders(traders)
        .trader_command_txs(txs)
        .statistics_summary(stats if stats is not None else StatsSummary())
        .build()
    )


def _trader(engine_id, market, command_rx, event_tx, portfolio, data):
    return (
        Trader.builder()
        .engine_id(engine_id)
        .market(market)
        .command_rx(command_rx)
        .event_tx(event_tx)
        .portfolio(portfolio)
        .data(data)
        .strategy(NoSignalStrategy())
        .execution(
            SimulatedExecution(
                SimulatedExecutionConfig(Fees(exchange=0.1, slippage=0.05, network=0.0))
            )
        )
        .build()
    )


@pytest.mark.asyncio
async def test_engine_with_historic_data_stops_after_candles_finished():
    engine_id = uuid.uuid4()
    market = "binance_btc_usdt_spot"
    command_rx = asyncio.Queue()
    sink = queue.Queue()
    portfolio = FakePortfolio()
    trader_command_tx = queue.Queue(maxsize=10)
    trader = _trader(
        engine_id,
        market,
        trader_command_tx,
        EventTx(sink),
        portfolio,
        HistoricalMarketFeed([MarketEvent()]),
    )
    engine = (
        Engine.builder()
        .engine_id(engine_id)
        .command_rx(command_rx)
        .portfolio(portfolio)
        .traders([trader])
        .trader_command_txs({market: trader_command_tx})
        .statistics_summary(StatsSummary(starting_equity=1000.0))
        .build()
    )

    summary = await asyncio.wait_for(engine.run(), timeout=5)

    assert list(summary) == [market, "Total"]
    assert portfolio.market_updates == 1
    assert [event.kind for event in _drain(sink)] == [EventKind.MARKET]


def test_builder_without_attributes_reports_engine_id():
    with pytest.raises(BuilderIncompleteError) as info:
        Engine.builder().build()
    assert info.value.attribute == "engine_id"


def test_builder_without_statistics_summary_reports_it():
    builder = (
        Engine.builder()
        .engine_id(uuid.uuid4())
        .command_rx(object())
        .portfolio(FakePortfolio())
        .traders([])
        .trader_command_txs({})
    )
    with pytest.raises(BuilderIncompleteError) as info:
        builder.build()
    assert info.value.attribute == "statistics_summary"


@pytest.mark.asyncio
async def test_summary_lists_markets_then_total_and_skips_failing_markets(capsys):
    portfolio = FakePortfolio(exited=["closed-1", "closed-2"], failing_markets={"m2"})
    stats = StatsSummary()
    engine = _engine(asyncio.Queue(), portfolio, [], {"m1": queue.Queue(), "m2": queue.Queue()}, stats)

    summary = await asyncio.wait_for(engine.run(), timeout=5)

    assert list(summary) == ["m1", "Total"]
    assert summary["m1"] == {"market": "m1", "trades": 3}
    assert summary["Total"] is stats
    assert stats.positions == ["closed-1", "closed-2"]
    out = capsys.readouterr().out
    assert "Total" in out
    assert "m1" in out


@pytest.mark.asyncio
async def test_exit_commands_are_routed_to_trader_queues():
    release = threading.Event()
    q1, q2 = queue.Queue(), queue.Queue()
    command_rx = asyncio.Queue()
    portfolio = FakePortfolio(open_positions=["open-1"])
    engine = _engine(command_rx, portfolio, [BlockingTrader(release)], {"m1": q1, "m2": q2})
    task = asyncio.create_task(engine.run())
    try:
        await command_rx.put(Command.exit_position("m1"))
        await command_rx.put(Command.exit_position("unknown"))
        await command_rx.put(Command.exit_all_positions())
        reply = asyncio.get_running_loop().create_future()
        await command_rx.put(Command.fetch_open_positions(reply))
        positions = await asyncio.wait_for(reply, timeout=5)
    finally:
        release.set()
    summary = await asyncio.wait_for(task, timeout=5)

    assert positions == ["open-1"]
    assert portfolio.open_queries == [(engine.engine_id, ["m1", "m2"])]
    assert _drain(q1) == [Command.exit_position("m1"), Command.exit_position("m1")]
    assert _drain(q2) == [Command.exit_position("m2")]
    assert list(summary) == ["m1", "m2", "Total"]


@pytest.mark.asyncio
async def test_fetch_open_positions_reports_repository_error():
    release = threading.Event()
    command_rx = asyncio.Queue()
    portfolio = FakePortfolio(repo_error=KeyError("gone"))
    engine = _engine(command_rx, portfolio, [BlockingTrader(release)], {"m1": queue.Queue()})
    task = asyncio.create_task(engine.run())
    try:
        reply = asyncio.get_running_loop().create_future()
        await command_rx.put(Command.fetch_open_positions(reply))
        with pytest.raises(RepositoryInteractionError) as info:
            await asyncio.wait_for(reply, timeout=5)
    finally:
        release.set()
    summary = await asyncio.wait_for(task, timeout=5)

    assert isinstance(info.value.__cause__, KeyError)
    assert info.value.__cause__.args == ("gone",)
    assert portfolio.open_queries == []
    assert list(summary) == ["m1", "Total"]


@pytest.mark.asyncio
async def test_terminate_exits_positions_then_terminates_traders():
    release = threading.Event()
    q1 = queue.Queue()
    command_rx = asyncio.Queue()
    engine = _engine(command_rx, FakePortfolio(), [BlockingTrader(release)], {"m1": q1})
    task = asyncio.create_task(engine.run())
    try:
        await command_rx.put(Command.terminate("stop"))
        summary = await asyncio.wait_for(task, timeout=5)
    finally:
        release.set()

    assert _drain(q1) == [Command.exit_position("m1"), Command.terminate("stop")]
    assert "Total" in summary


@pytest.mark.asyncio
async def test_dropped_command_sender_stops_engine():
    release = threading.Event()
    command_rx = asyncio.Queue()
    engine = _engine(command_rx, FakePortfolio(), [BlockingTrader(release)], {"m1": queue.Queue()})
    task = asyncio.create_task(engine.run())
    try:
        await command_rx.put(None)
        summary = await asyncio.wait_for(task, timeout=5)
    finally:
        release.set()

    assert list(summary) == ["m1", "Total"]


@pytest.mark.asyncio
async def test_crashing_trader_still_lets_engine_finish():
    engine = _engine(asyncio.Queue(), FakePortfolio(), [CrashingTrader()], {"m1": queue.Queue()})

    summary = await asyncio.wait_for(engine.run(), timeout=5)

    assert list(summary) == ["m1", "Total"]


@pytest.mark.asyncio
async def test_terminate_forces_exit_in_running_trader():
    engine_id = uuid.uuid4()
    market = "m1"
    trader_command_tx = queue.Queue()
    portfolio = FakePortfolio()
    trader = _trader(
        engine_id, market, trader_command_tx, EventTx(queue.Queue()), portfolio, SpinningFeed()
    )
    command_rx = asyncio.Queue()
    engine = _engine(command_rx, portfolio, [trader], {market: trader_command_tx})
    task = asyncio.create_task(engine.run())
    await command_rx.put(Command.terminate("done"))
    await asyncio.wait_for(task, timeout=5)

    deadline = time.monotonic() + 5
    while not portfolio.exit_orders and time.monotonic() < deadline:
        await asyncio.sleep(0.01)

    assert portfolio.exit_orders == [market]


@pytest.mark.asyncio
async def test_market_meta_default_close_reaches_fill_value():
    # A fill generated from an order built with default market metadata
    # uses the default close of 100.0.
    order = type(
        "Order",
        (),
        {
            "exchange": "binance",
            "instrument": "btc_usdt",
            "market_meta": MarketMeta(),
            "decision": "long",
            "quantity": 2.0,
        },
    )()
    fill = SimulatedExecution().generate_fill(order)
    engine = _engine(asyncio.Queue(), FakePortfolio(exited=[fill]), [], {})
    summary = await asyncio.wait_for(engine.run(), timeout=5)

    assert summary["Total"].positions[0].fill_value_gross == 200.0