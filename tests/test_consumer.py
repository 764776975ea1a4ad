from datetime import datetime, timezone, timedelta
import orjson
import pytest
from outages.config import Settings
from outages.consumer import IngestConsumer
from outages.engine import OutageAggregator
from outages.errors import PersistenceError, PublishError, TransactionConflict
from outages.memory import InMemoryOutageStore
from outages.schemas import OutageType

class FakeMessage:
    def __init__(self, value, offset=0, key=b"CTRL-1:led_outage"):
        self._value = value
        self._offset = offset
        self._key = key

    def value(self): return self._value
    def key(self): return self._key
    def topic(self): return "outage.raw"
    def partition(self): return 0
    def offset(self): return self._offset
    def error(self): return None

class FakeConsumer:
    def __init__(self, messages):
        self.messages = list(messages)
        self.committed = []
        self.subscribed = None
        self.closed = False

    def subscribe(self, topics): self.subscribed = topics
    def poll(self, timeout): return self.messages.pop(0) if self.messages else None
    def commit(self, message=None, asynchronous=True): self.committed.append(message.offset())
    def close(self): self.closed = True

class FakeProducer:
    def __init__(self, err=None, remaining=0):
        self.err = err
        self.remaining = remaining
        self.produced = []
        self._callbacks = []

    def produce(self, topic, key=None, value=None, headers=None, callback=None):
        self.produced.append({"topic": topic, "key": key, "value": value, "headers": dict(headers or [])})
        self._callbacks.append(callback)

    def flush(self, timeout=None):
        for cb in self._callbacks:
            if cb is not None and not self.remaining:
                cb(self.err, None)
        self._callbacks = []
        return self.remaining

class FlakyAggregator:
    def __init__(self, failures):
        self.failures = list(failures)
        self.calls = 0

    def ingest(self, controller_id, outage_type, occurred_at):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return 42

SETTINGS = Settings(max_attempts=3, topic="outage.raw", dlq_topic="outage.raw.dlq")

def payload(controller="CTRL-1", ts="2025-01-15T10:00:00Z"):
    return orjson.dumps({"controllerId": controller, "outageType": "led_outage", "occurredAt": ts})

def make(aggregator, messages=(), dlq=None):
    consumer, dlq = FakeConsumer(messages), dlq or FakeProducer()
    return IngestConsumer(aggregator, settings=SETTINGS, consumer=consumer, dlq_producer=dlq), consumer, dlq

def test_run_aggregates_and_commits_every_message():
    store = InMemoryOutageStore()
    agg = OutageAggregator(store, gap=timedelta(minutes=60))
    msgs = [FakeMessage(payload(ts=ts), offset=i) for i, ts in enumerate(
        ["2025-01-15T10:20:00Z", "2025-01-15T10:00:00Z", "2025-01-15T10:20:00Z", "2025-01-15T10:40:00Z"])]
    ic, consumer, dlq = make(agg, msgs)

    stats = ic.run(max_messages=len(msgs))
    assert stats["processed"] == 4 and stats["aggregated"] == 4 and stats["dead_lettered"] == 0
    assert consumer.subscribed == ["outage.raw"]
    assert consumer.committed == [0, 1, 2, 3]
    assert consumer.closed
    assert dlq.produced == []
    [w] = store.windows()
    assert (w.start_time, w.end_time) == (datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc),
                                          datetime(2025, 1, 15, 10, 40, tzinfo=timezone.utc))

def test_invalid_payload_is_dead_lettered_and_committed():
    ic, consumer, dlq = make(FlakyAggregator([]), [FakeMessage(b"{not json", offset=5),
                                                   FakeMessage(orjson.dumps({"controllerId": "x"}), offset=6)])
    stats = ic.run(max_messages=2)
    assert stats["dead_lettered"] == 2 and stats["aggregated"] == 0
    assert consumer.committed == [5, 6]
    assert dlq.produced[0]["topic"] == "outage.raw.dlq"
    assert dlq.produced[0]["value"] == b"{not json"
    assert dlq.produced[0]["headers"]["error"].startswith(b"invalid payload")
    assert ic.aggregator.calls == 0

def test_conflict_is_retried_then_succeeds():
    agg = FlakyAggregator([TransactionConflict("40001"), TransactionConflict("40001")])
    ic, _, dlq = make(agg)
    assert ic.handle(FakeMessage(payload())) is True
    assert agg.calls == 3
    assert ic.stats["retries"] == 2
    assert dlq.produced == []

def test_persistent_conflict_is_dead_lettered():
    agg = FlakyAggregator([TransactionConflict("40001")] * 3)
    ic, _, dlq = make(agg)
    assert ic.handle(FakeMessage(payload())) is False
    assert agg.calls == 3
    assert dlq.produced[0]["headers"]["error"].startswith(b"conflict after 3 attempts")

def test_persistence_error_is_not_retried():
    agg = FlakyAggregator([PersistenceError("disk full")])
    ic, _, dlq = make(agg)
    assert ic.handle(FakeMessage(payload())) is False
    assert agg.calls == 1
    assert dlq.produced[0]["headers"]["error"] == b"disk full"
    assert dlq.produced[0]["key"] == b"CTRL-1:led_outage"

@pytest.mark.parametrize("dlq", [FakeProducer(remaining=1), FakeProducer(err="dlq topic unavailable")])
def test_unreachable_dead_letter_topic_stops_without_commit(dlq):
    ic, consumer, _ = make(FlakyAggregator([]), [FakeMessage(b"{bad", offset=9),
                                                 FakeMessage(payload(), offset=10)], dlq=dlq)
    with pytest.raises(PublishError):
        ic.run(max_messages=2)
    assert consumer.committed == []
    assert consumer.closed
    assert ic.stats["dead_lettered"] == 0
    assert ic.aggregator.calls == 0

def test_handle_raises_when_dead_letter_delivery_fails():
    agg = FlakyAggregator([PersistenceError("disk full")])
    ic, _, _ = make(agg, dlq=FakeProducer(remaining=1))
    with pytest.raises(PublishError):
        ic.handle(FakeMessage(payload()))
