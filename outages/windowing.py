from __future__ import annotations
from typing import Iterable, Tuple
from datetime import datetime, timezone, timedelta

Bounds = Tuple[datetime, datetime]

def to_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)

def gap_delta(gap_minutes: float) -> timedelta:
    return timedelta(minutes=gap_minutes)

def reach(occurred_at: datetime, gap: timedelta) -> Bounds:
    """Range a window must touch for ``occurred_at`` to join it."""
    return occurred_at - gap, occurred_at + gap

def extend_bounds(start: datetime, end: datetime, occurred_at: datetime, gap: timedelta) -> Bounds:
    """
    Push ``start``/``end`` outward to cover ``occurred_at`` if it lies within
    ``gap`` of the window. An event already inside the window, or beyond the
    gap, leaves the bounds untouched.
    """
    if occurred_at < start and start - occurred_at <= gap:
        return occurred_at, end
    if occurred_at > end and occurred_at - end <= gap:
        return start, occurred_at
    return start, end

def union_bounds(bounds: Iterable[Bounds]) -> Bounds:
    starts, ends = zip(*bounds)
    return min(starts), max(ends)
