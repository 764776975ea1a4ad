from __future__ import annotations
from datetime import datetime
from typing import List, Optional
from outages.repository import OutageStore
from outages.schemas import OutageType, OutageWindow
from outages.windowing import to_utc

class OutageQueryService:
    def __init__(self, store: OutageStore):
        self.store = store

    def find(self, type: OutageType, start: datetime, end: datetime,
             controller_id: Optional[str] = None) -> List[OutageWindow]:
        """Windows of ``type`` overlapping the inclusive range ``[start, end]``, newest start first."""
        start, end = to_utc(start), to_utc(end)
        if start > end:
            raise ValueError("end must be greater than or equal to start")
        with self.store.transaction() as repo:
            return repo.find_windows(OutageType(type), start, end, controller_id=controller_id)
