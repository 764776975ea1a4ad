from datetime import datetime, timezone, timedelta
import orjson
import pytest
from outages.engine import OutageAggregator
from outages.errors import PublishError
from outages.memory import InMemoryOutageStore
from outages.producer import EventPublisher, synthetic_burst
from outages.schemas import OutageEvent, OutageType

class FakeProducer:
    def __init__(self, err=None):
        self.err = err
        self.produced = []
        self._callbacks = []

    def produce(self, topic, key=None, value=None, callback=None):
        self.produced.append((topic, key, value))
        self._callbacks.append(callback)

    def poll(self, timeout): return 0

    def flush(self, timeout=None):
        for cb in self._callbacks:
            cb(self.err, None)
        self._callbacks = []
        return 0

def event():
    return OutageEvent(controller_id="CTRL-1", outage_type=OutageType.led_outage,
                       occurred_at=datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc))

def test_publish_keys_by_controller_and_type():
    fake = FakeProducer()
    EventPublisher("unused:9092", "outage.raw", producer=fake).publish(event())
    [(topic, key, value)] = fake.produced
    assert topic == "outage.raw"
    assert key == b"CTRL-1:led_outage"
    assert orjson.loads(value) == {"controllerId": "CTRL-1", "outageType": "led_outage",
                                   "occurredAt": "2025-01-15T10:00:00Z"}

def test_encoded_event_decodes_back():
    fake = FakeProducer()
    EventPublisher("unused:9092", "outage.raw", producer=fake).publish(event())
    assert OutageEvent.model_validate(orjson.loads(fake.produced[0][2])) == event()

def test_publish_raises_on_delivery_failure():
    with pytest.raises(PublishError):
        EventPublisher("unused:9092", "outage.raw", producer=FakeProducer(err="broker down")).publish(event())

def test_synthetic_burst_aggregates_to_one_window_per_controller():
    start = datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)
    events = synthetic_burst(controllers=3, events=12, spacing_minutes=10, start=start, duplicate_prob=0.3, seed=11)
    assert len(events) >= 36
    assert len({(e.controller_id, e.occurred_at) for e in events}) == 36

    store = InMemoryOutageStore()
    agg = OutageAggregator(store, gap=timedelta(minutes=60))
    for e in events:
        agg.ingest(e.controller_id, e.outage_type, e.occurred_at)

    windows = store.windows()
    assert sorted(w.controller_id for w in windows) == ["CTRL-0001", "CTRL-0002", "CTRL-0003"]
    assert {(w.start_time, w.end_time) for w in windows} == {(start, start + timedelta(minutes=110))}
    with store.transaction() as repo:
        assert repo.count_raw_events() == 36

def test_publish_many_counts_failures():
    assert EventPublisher("unused:9092", "t", producer=FakeProducer()).publish_many([event(), event()]) == 2
    assert EventPublisher("unused:9092", "t", producer=FakeProducer(err="x")).publish_many([event()]) == 0
