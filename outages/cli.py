from __future__ import annotations
import argparse, logging
from datetime import datetime
import orjson
import uvicorn
from outages.config import settings
from outages.db import init_db, make_engine
from outages.engine import OutageAggregator
from outages.producer import EventPublisher, synthetic_burst
from outages.query import OutageQueryService
from outages.repository import SqlOutageStore
from outages.schemas import OutageType
from outages.windowing import gap_delta

def _store(args) -> SqlOutageStore:
    engine = make_engine(args.database_url)
    init_db(engine)
    return SqlOutageStore(engine)

def cmd_init_db(args):
    _store(args)
    print({"initialized": True})

def cmd_api(args):
    from outages.api import app, get_store
    store = _store(args)
    app.dependency_overrides[get_store] = lambda: store
    uvicorn.run(app, host="0.0.0.0", port=args.port, reload=False)

def cmd_consume(args):
    from outages.consumer import IngestConsumer
    s = settings.model_copy(update={
        "kafka_bootstrap": args.kafka_bootstrap,
        "topic": args.topic,
        "group": args.group,
        "gap_minutes": args.gap_minutes,
    })
    aggregator = OutageAggregator(_store(args), gap=gap_delta(s.gap_minutes))
    print(IngestConsumer(aggregator, settings=s).run(max_messages=args.max_messages))

def cmd_produce(args):
    events = synthetic_burst(
        controllers=args.controllers,
        events=args.events,
        spacing_minutes=args.spacing_minutes,
        outage_type=OutageType(args.type),
        seed=args.seed,
    )
    published = EventPublisher(args.kafka_bootstrap, args.topic).publish_many(events)
    print({"published": published, "generated": len(events)})

def cmd_query(args):
    svc = OutageQueryService(_store(args))
    rows = svc.find(OutageType(args.type), datetime.fromisoformat(args.start), datetime.fromisoformat(args.end),
                    controller_id=args.controller_id)
    for w in rows:
        print(orjson.dumps(w.model_dump(mode="json", by_alias=True)).decode("utf-8"))

def main():
    p = argparse.ArgumentParser(prog="outages")
    p.add_argument("--database-url", default=settings.database_url)
    p.add_argument("--log-level", default=settings.log_level)
    sub = p.add_subparsers(dest="cmd", required=True)

    i = sub.add_parser("init-db")
    i.set_defaults(fn=cmd_init_db)

    a = sub.add_parser("api")
    a.add_argument("--port", type=int, default=settings.port)
    a.set_defaults(fn=cmd_api)

    c = sub.add_parser("consume")
    c.add_argument("--kafka-bootstrap", default=settings.kafka_bootstrap)
    c.add_argument("--topic", default=settings.topic)
    c.add_argument("--group", default=settings.group)
    c.add_argument("--gap-minutes", type=float, default=settings.gap_minutes)
    c.add_argument("--max-messages", type=int, default=0, help="0=run forever")
    c.set_defaults(fn=cmd_consume)

    pr = sub.add_parser("produce")
    pr.add_argument("--kafka-bootstrap", default=settings.kafka_bootstrap)
    pr.add_argument("--topic", default=settings.topic)
    pr.add_argument("--type", choices=[t.value for t in OutageType], default=OutageType.led_outage.value)
    pr.add_argument("--controllers", type=int, default=5)
    pr.add_argument("--events", type=int, default=20)
    pr.add_argument("--spacing-minutes", type=float, default=10.0)
    pr.add_argument("--seed", type=int)
    pr.set_defaults(fn=cmd_produce)

    q = sub.add_parser("query")
    q.add_argument("--type", choices=[t.value for t in OutageType], required=True)
    q.add_argument("--start", required=True)
    q.add_argument("--end", required=True)
    q.add_argument("--controller-id")
    q.set_defaults(fn=cmd_query)

    args = p.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args.fn(args)

if __name__ == "__main__":
    main()
