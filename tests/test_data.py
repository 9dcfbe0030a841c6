import dataclasses
import queue
import threading
import time

import pytest

from tradeloop.data import (
    Feed,
    FeedStatus,
    HistoricalMarketFeed,
    LiveMarketFeed,
    MarketMeta,
)


def test_feed_next_event_carries_event():
    feed = Feed.next_event("trade")
    assert feed.status is FeedStatus.NEXT
    assert feed.event == "trade"


def test_feed_unhealthy_and_finished_have_no_event():
    assert Feed.unhealthy() == Feed(FeedStatus.UNHEALTHY, None)
    assert Feed.finished() == Feed(FeedStatus.FINISHED, None)


def test_feed_is_immutable():
    feed = Feed.next_event(1)
    with pytest.raises(dataclasses.FrozenInstanceError):
        feed.event = 2
    assert feed.event == 1
    assert feed == Feed.next_event(1)


def test_market_meta_default_close_and_utc_time():
    meta = MarketMeta()
    assert meta.close == 100.0
    assert meta.time.utcoffset().total_seconds() == 0


def test_market_meta_is_mutable():
    meta = MarketMeta()
    meta.close = 10.0
    assert meta.close == 10.0


def test_historical_feed_yields_events_in_order_then_finishes():
    events = ["a", "b", "c"]
    feed = HistoricalMarketFeed(events)
    produced = [feed.next() for _ in range(len(events))]
    assert [f.event for f in produced] == events
    assert all(f.status is FeedStatus.NEXT for f in produced)
    assert feed.next() == Feed.finished()


def test_historical_feed_stays_finished():
    feed = HistoricalMarketFeed(iter([]))
    assert feed.next().status is FeedStatus.FINISHED
    assert feed.next().status is FeedStatus.FINISHED


def test_historical_feed_accepts_none_as_event():
    feed = HistoricalMarketFeed([None])
    first = feed.next()
    assert first.status is FeedStatus.NEXT
    assert first.event is None
    assert feed.next().status is FeedStatus.FINISHED


def test_historical_feed_accepts_generator():
    feed = HistoricalMarketFeed(n * 2 for n in range(3))
    assert [feed.next().event for _ in range(3)] == [0, 2, 4]


def test_live_feed_yields_queued_events_then_finishes_on_close():
    rx = queue.Queue()
    rx.put("trade_1")
    rx.put("trade_2")
    rx.put(None)
    feed = LiveMarketFeed(rx)
    assert feed.next() == Feed.next_event("trade_1")
    assert feed.next() == Feed.next_event("trade_2")
    assert feed.next() == Feed.finished()
    assert feed.next() == Feed.finished()


def test_live_feed_waits_for_producer():
    rx = queue.Queue()
    feed = LiveMarketFeed(rx)

    def produce():
        time.sleep(0.05)
        rx.put("late_trade")

    producer = threading.Thread(target=produce)
    producer.start()
    result = feed.next()
    producer.join()
    assert result == Feed.next_event("late_trade")