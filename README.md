# tradeloop

`tradeloop` is the core of an event-driven trading system. The same pieces
drive a backtest over historical data and a dry run against a live feed:
market events go in, a strategy may turn them into signals, a portfolio
turns signals into orders, an execution client turns orders into fills, and
the portfolio is updated from the fills.

It has no dependencies outside the standard library.

## Modules

- `tradeloop.data`: market feeds and `MarketMeta`.
- `tradeloop.execution`: `Fees`, `FillEvent`, `FillEventBuilder` and a
  `SimulatedExecution` client.
- `tradeloop.event`: `Event`, `EventKind` and the `EventTx` transmitter.
- `tradeloop.command`: `Command`, `CommandKind` and the engine errors.
- `tradeloop.trader`: `Trader` and `TraderBuilder`.
- `tradeloop.engine`: `Engine` and `EngineBuilder`.

## Market feeds

Every feed has a `next()` method returning a `Feed`. Its `status` is a
`FeedStatus`: `NEXT` (with the event in `event`), `UNHEALTHY`, or
`FINISHED`. `Feed.next_event(e)`, `Feed.unhealthy()` and `Feed.finished()`
build the three cases.

- `HistoricalMarketFeed(iterable)` yields the items of any iterable, then
  reports `FINISHED`.
- `LiveMarketFeed(q)` blocks on a `queue.Queue` for the next event. Putting
  `None` on the queue (or shutting the queue down, where Python supports
  that) marks the feed finished for good.

```python
from tradeloop.data import FeedStatus, HistoricalMarketFeed

feed = HistoricalMarketFeed(market_events)

while True:
    item = feed.next()
    if item.status is FeedStatus.FINISHED:
        break
    if item.status is FeedStatus.UNHEALTHY:
        continue
    handle(item.event)
```

`MarketMeta(close=100.0, time=<now, UTC>)` carries the close price and time
of the market event behind a signal, order or fill.

## Simulated execution

```python
from tradeloop.execution import Fees, SimulatedExecution, SimulatedExecutionConfig

execution = SimulatedExecution(
    SimulatedExecutionConfig(
        simulated_fees_pct=Fees(exchange=0.1, slippage=0.05, network=0.0),
    )
)

fill = execution.generate_fill(order)
print(fill.fill_value_gross, fill.fees.calculate_total_fees())
```

An order is any object with `exchange`, `instrument`, `market_meta`,
`decision` and `quantity`. It is filled at `market_meta.close`: the gross
fill value is `abs(quantity) * close`, and each fee is its rate times that
value. Rates are decimal fractions, so for 10 units at a close of 10.0 the
rates above give a gross value of 100.0, an exchange fee of 10.0 and
slippage of 5.0.

`FillEvent.builder()` returns a `FillEventBuilder`; its `build()` raises
`ExecutionError` naming the first missing field.

## Events

An `Event` is a frozen pair of an `EventKind` (`MARKET`, `SIGNAL`,
`SIGNAL_FORCE_EXIT`, `ORDER_NEW`, `ORDER_UPDATE`, `FILL`, `POSITION_NEW`,
`POSITION_UPDATE`, `POSITION_EXIT`, `BALANCE`) and a payload.

`EventTx(sink)` forwards events to a `queue.Queue`, an `asyncio.Queue` or
any callable. If `send()` fails because the receiver is gone (a full or
shut-down queue, a broken pipe, end of file), it logs a warning, sets
`receiver_dropped`, and sends nothing more. `send_many()` ignores failures
of single events.

## Commands

- `Command.fetch_open_positions(reply)`: the engine calls
  `reply.set_result(positions)`, or `reply.set_exception(...)` with a
  `RepositoryInteractionError` if the portfolio fails; a
  `concurrent.futures.Future` works as `reply`.
- `Command.exit_position(market)`: force an exit in one market.
- `Command.exit_all_positions()`: force an exit in every market.
- `Command.terminate(message)`: stop trading.

## Traders and the engine

Both are assembled with builders; `build()` raises `BuilderIncompleteError`
(an `EngineError`) naming the first missing part.

```python
import asyncio
import queue

from tradeloop.data import HistoricalMarketFeed
from tradeloop.engine import Engine
from tradeloop.event import EventTx
from tradeloop.trader import Trader

trader_commands = queue.Queue()
events = queue.Queue()

trader = (
    Trader.builder()
    .engine_id(engine_id)
    .market(market)
    .command_rx(trader_commands)
    .event_tx(EventTx(events))
    .portfolio(portfolio)
    .data(HistoricalMarketFeed(market_events))
    .strategy(strategy)
    .execution(execution)
    .build()
)

async def main():
    engine = (
        Engine.builder()
        .engine_id(engine_id)
        .command_rx(asyncio.Queue())
        .portfolio(portfolio)
        .traders([trader])
        .trader_command_txs({market: trader_commands})
        .statistics_summary(summary)
        .build()
    )
    return await engine.run()

session = asyncio.run(main())
```

A trader reads commands from a `queue.Queue` without blocking before each
market event; `None` there, or a shut-down queue, is taken as a terminate.
It stops on a terminate command or when its feed is finished, and it skips
ahead while the feed is unhealthy. Portfolio calls are serialised by a lock
(the portfolio's own `lock` attribute if it has one), so one portfolio can
be shared by many traders.

`Engine.run()` is a coroutine. It starts each trader on its own daemon
thread and then reads commands from an `asyncio.Queue`. It stops when every
trader has stopped, when `None` arrives on the queue, or after a terminate
command; on terminate it first sends an exit to every trader, waits one
second, then sends each trader the terminate. At the end it prints a plain
text table and returns a dict of statistics: one entry per market (keyed by
`str(market)`) and the overall summary under `"Total"`.

## What you supply

The package has no portfolio, strategy, statistics or connection to an
exchange of its own. The components you pass in need only these methods:

- strategy: `generate_signal(market_event)` returning a signal or `None`;
- portfolio: `update_from_market(event)`, `generate_order(signal)`,
  `generate_exit_order(market)` (these may return `None`),
  `update_from_fill(fill)` returning side-effect events,
  `get_open_positions(engine_id, markets)`, `get_statistics(market)` and
  `get_exited_positions(engine_id)`;
- execution: `generate_fill(order)`;
- statistics summary: `generate_summary(exited_positions)`.