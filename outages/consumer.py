from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional
from confluent_kafka import Consumer, Producer
import orjson
from pydantic import ValidationError
from outages.config import Settings, settings as default_settings
from outages.engine import OutageAggregator
from outages.errors import PersistenceError, PublishError, TransactionConflict
from outages.schemas import OutageEvent

logger = logging.getLogger(__name__)

class IngestConsumer:
    """
    Feeds the outage topic into the aggregator. A message is committed once it
    has been aggregated or dead-lettered; serialization conflicts are retried
    in place up to ``max_attempts`` times first. If the dead-letter topic does
    not take the message, ``run`` stops without committing it so it is
    redelivered.
    """

    def __init__(self, aggregator: OutageAggregator, settings: Optional[Settings] = None,
                 consumer: Optional[Consumer] = None, dlq_producer: Optional[Producer] = None):
        self.s = settings or default_settings
        self.aggregator = aggregator
        self._consumer = consumer or Consumer({
            "bootstrap.servers": self.s.kafka_bootstrap,
            "group.id": self.s.group,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
        })
        self._dlq = dlq_producer or Producer({"bootstrap.servers": self.s.kafka_bootstrap})
        self.stats = {"processed": 0, "aggregated": 0, "dead_lettered": 0, "retries": 0}

    def handle(self, msg) -> bool:
        """Process one message. Returns True if it was aggregated, False if dead-lettered."""
        raw = msg.value()
        try:
            evt = OutageEvent.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as e:
            self._dead_letter(msg, f"invalid payload: {e}")
            return False

        for attempt in range(1, self.s.max_attempts + 1):
            try:
                window_id = self.aggregator.ingest(evt.controller_id, evt.outage_type, evt.occurred_at)
            except TransactionConflict as e:
                if attempt == self.s.max_attempts:
                    self._dead_letter(msg, f"conflict after {attempt} attempts: {e}")
                    return False
                self.stats["retries"] += 1
                logger.warning("Retrying %s after conflict (attempt %d/%d)", evt.partition_key, attempt,
                               self.s.max_attempts)
            except PersistenceError as e:
                self._dead_letter(msg, str(e))
                return False
            else:
                logger.debug("Event %s@%s -> window %s", evt.partition_key, evt.occurred_at.isoformat(), window_id)
                return True
        return False

    def _dead_letter(self, msg, reason: str) -> None:
        logger.error("Dead-lettering message from %s[%s]@%s: %s", msg.topic(), msg.partition(), msg.offset(), reason)
        errors: List[str] = []

        def delivery(err, _msg):
            if err is not None:
                errors.append(str(err))

        self._dlq.produce(
            topic=self.s.dlq_topic,
            key=msg.key(),
            value=msg.value(),
            headers=[("error", reason.encode("utf-8")), ("source_topic", msg.topic().encode("utf-8"))],
            callback=delivery,
        )
        remaining = self._dlq.flush(10.0)
        if errors or remaining:
            reason = errors[0] if errors else f"{remaining} message(s) still in flight"
            raise PublishError(f"dead-letter delivery failed: {reason}")
        self.stats["dead_lettered"] += 1

    def run(self, max_messages: int = 0) -> Dict[str, Any]:
        self._consumer.subscribe([self.s.topic])
        logger.info("Consuming %s as group %s", self.s.topic, self.s.group)
        try:
            while True:
                msg = self._consumer.poll(1.0)
                if msg is None:
                    continue
                if msg.error():
                    logger.warning("Consumer error: %s", msg.error())
                    continue

                self.stats["processed"] += 1
                if self.handle(msg):
                    self.stats["aggregated"] += 1
                self._consumer.commit(message=msg, asynchronous=False)

                if max_messages and self.stats["processed"] >= max_messages:
                    break
        finally:
            self._consumer.close()
            logger.info("Consumer stopped: %s", self.stats)
        return dict(self.stats)
