from __future__ import annotations
import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Set, Tuple
from datetime import datetime
from outages.repository import OutageRepository, OutageStore
from outages.schemas import OutageType, OutageWindow
from outages.windowing import to_utc

RawKey = Tuple[str, OutageType, datetime]

@dataclass
class _Tables:
    raw: Set[RawKey] = field(default_factory=set)
    windows: Dict[int, OutageWindow] = field(default_factory=dict)
    next_id: int = 1

class InMemoryOutageRepository(OutageRepository):
    def __init__(self, tables: _Tables):
        self.t = tables

    def insert_raw_if_absent(self, controller_id, outage_type, occurred_at) -> bool:
        key = (controller_id, outage_type, to_utc(occurred_at))
        if key in self.t.raw:
            return False
        self.t.raw.add(key)
        return True

    def find_candidate_windows(self, controller_id, outage_type, lo, hi) -> List[OutageWindow]:
        found = [w for w in self.t.windows.values()
                 if w.controller_id == controller_id and w.outage_type == outage_type
                 and w.end_time >= lo and w.start_time <= hi]
        return sorted(found, key=lambda w: (w.end_time, w.id), reverse=True)

    def create_window(self, controller_id, outage_type, start_time, end_time) -> OutageWindow:
        w = OutageWindow(id=self.t.next_id, controller_id=controller_id, outage_type=outage_type,
                         start_time=start_time, end_time=end_time)
        self.t.windows[w.id] = w
        self.t.next_id += 1
        return w

    def extend_window(self, window_id, start_time, end_time) -> None:
        w = self.t.windows[window_id]
        self.t.windows[window_id] = w.model_copy(update={"start_time": start_time, "end_time": end_time})

    def delete_windows(self, window_ids) -> None:
        for wid in window_ids:
            self.t.windows.pop(wid, None)

    def find_windows(self, outage_type, start, end, controller_id=None) -> List[OutageWindow]:
        found = [w for w in self.t.windows.values()
                 if w.outage_type == outage_type and w.end_time >= start and w.start_time <= end
                 and (not controller_id or w.controller_id == controller_id)]
        return sorted(found, key=lambda w: (w.start_time, w.id), reverse=True)

    def count_raw_events(self, controller_id=None, outage_type=None) -> int:
        return sum(1 for (cid, typ, _) in self.t.raw
                   if (controller_id is None or cid == controller_id)
                   and (outage_type is None or typ == outage_type))

class InMemoryOutageStore(OutageStore):
    """
    Store for tests and local demos. Transactions run one at a time against a
    private copy of the tables; the copy replaces the committed state only if
    the block exits cleanly.
    """

    def __init__(self):
        self._tables = _Tables()
        self._lock = threading.Lock()

    @contextmanager
    def transaction(self) -> Iterator[InMemoryOutageRepository]:
        with self._lock:
            working = copy.deepcopy(self._tables)
            yield InMemoryOutageRepository(working)
            self._tables = working

    def windows(self) -> List[OutageWindow]:
        return sorted(self._tables.windows.values(), key=lambda w: w.id)
