from __future__ import annotations
import logging
import random
from datetime import datetime, timezone, timedelta
from typing import List, Optional
from confluent_kafka import Producer
import orjson
from outages.errors import PublishError
from outages.schemas import OutageEvent, OutageType

logger = logging.getLogger(__name__)

def encode_event(evt: OutageEvent) -> bytes:
    return orjson.dumps(evt.model_dump(mode="json", by_alias=True))

class EventPublisher:
    """
    Puts ingest events on the outage topic. Messages are keyed by
    controller/type so one key always lands on one partition and is consumed
    in order by a single worker.
    """

    def __init__(self, bootstrap: str, topic: str, producer: Optional[Producer] = None):
        self.topic = topic
        self._producer = producer or Producer({"bootstrap.servers": bootstrap})

    def publish(self, evt: OutageEvent, timeout: float = 10.0) -> None:
        errors: List[str] = []

        def delivery(err, msg):
            if err is not None:
                errors.append(str(err))

        self._producer.produce(
            topic=self.topic,
            key=evt.partition_key.encode("utf-8"),
            value=encode_event(evt),
            callback=delivery,
        )
        remaining = self._producer.flush(timeout)
        if errors or remaining:
            raise PublishError(errors[0] if errors else f"{remaining} message(s) still in flight")

    def publish_many(self, events: List[OutageEvent], timeout: float = 30.0) -> int:
        errors = 0

        def delivery(err, msg):
            nonlocal errors
            if err is not None:
                errors += 1

        for evt in events:
            self._producer.produce(topic=self.topic, key=evt.partition_key.encode("utf-8"),
                                   value=encode_event(evt), callback=delivery)
            self._producer.poll(0)
        self._producer.flush(timeout)
        if errors:
            logger.warning("%d of %d events failed delivery", errors, len(events))
        return len(events) - errors

def synthetic_burst(controllers: int, events: int, spacing_minutes: float,
                    outage_type: OutageType = OutageType.led_outage,
                    start: Optional[datetime] = None, duplicate_prob: float = 0.1,
                    seed: Optional[int] = None) -> List[OutageEvent]:
    """
    ``events`` samples per controller, ``spacing_minutes`` apart, delivered in
    shuffled order with some exact duplicates mixed in.
    """
    rnd = random.Random(seed)
    start = start or datetime.now(timezone.utc).replace(second=0, microsecond=0)
    out: List[OutageEvent] = []
    for c in range(1, controllers + 1):
        cid = f"CTRL-{c:04d}"
        for i in range(events):
            evt = OutageEvent(controller_id=cid, outage_type=outage_type,
                              occurred_at=start + timedelta(minutes=spacing_minutes * i))
            out.append(evt)
            if rnd.random() < duplicate_prob:
                out.append(evt)
    rnd.shuffle(out)
    return out
