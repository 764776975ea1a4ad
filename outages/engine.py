"""
Outage window aggregation.

Each call to :meth:`OutageAggregator.ingest` takes one raw event and, inside a
single store transaction, either widens the window it belongs to or opens a
new one. Windows for the same controller/type are kept more than ``gap``
apart: when an event lands within reach of several windows they are folded
into the one with the latest end.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Optional
from outages.config import settings
from outages.repository import OutageStore
from outages.schemas import OutageType
from outages.windowing import extend_bounds, gap_delta, reach, to_utc, union_bounds

logger = logging.getLogger(__name__)

class OutageAggregator:
    def __init__(self, store: OutageStore, gap: Optional[timedelta] = None):
        self.store = store
        self.gap = gap if gap is not None else gap_delta(settings.gap_minutes)

    def ingest(self, controller_id: str, outage_type: OutageType, occurred_at: datetime) -> int:
        occurred_at = to_utc(occurred_at)
        outage_type = OutageType(outage_type)
        lo, hi = reach(occurred_at, self.gap)

        with self.store.transaction() as repo:
            if not repo.insert_raw_if_absent(controller_id, outage_type, occurred_at):
                logger.debug("Duplicate raw event %s/%s@%s", controller_id, outage_type.value, occurred_at.isoformat())

            candidates = repo.find_candidate_windows(controller_id, outage_type, lo, hi)
            if not candidates:
                window = repo.create_window(controller_id, outage_type, occurred_at, occurred_at)
                logger.info("Opened window %s for %s/%s at %s", window.id, controller_id, outage_type.value,
                            occurred_at.isoformat())
                return window.id

            current, others = candidates[0], candidates[1:]
            start, end = extend_bounds(current.start_time, current.end_time, occurred_at, self.gap)

            # every other candidate is within gap of occurred_at, which now lies in [start, end]
            absorbed = [w.id for w in others]
            if absorbed:
                start, end = union_bounds([(start, end)] + [(w.start_time, w.end_time) for w in others])
                repo.delete_windows(absorbed)
                logger.info("Merged windows %s into %s for %s/%s", absorbed, current.id, controller_id,
                            outage_type.value)

            if (start, end) != (current.start_time, current.end_time):
                repo.extend_window(current.id, start, end)
                logger.debug("Window %s now [%s, %s]", current.id, start.isoformat(), end.isoformat())
            return current.id
