"""
Persistence port for the aggregation engine.

The engine only ever talks to an :class:`OutageRepository` obtained from
``OutageStore.transaction()``. Everything done through one repository commits
or rolls back as a unit, and the SQL store runs it under SERIALIZABLE
isolation so concurrent decide-then-write sequences on the same
controller/type cannot both succeed.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Sequence
from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from outages.errors import PersistenceError, TransactionConflict
from outages.models import AggregatedOutage, RawOutage
from outages.schemas import OutageType, OutageWindow
from outages.windowing import to_utc

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}

class OutageRepository(ABC):
    @abstractmethod
    def insert_raw_if_absent(self, controller_id: str, outage_type: OutageType, occurred_at: datetime) -> bool:
        """Record a raw event. Returns False when the identical event already exists."""

    @abstractmethod
    def find_candidate_windows(self, controller_id: str, outage_type: OutageType,
                               lo: datetime, hi: datetime) -> List[OutageWindow]:
        """Windows touching ``[lo, hi]``, latest ``end_time`` first (ties: newest id first)."""

    @abstractmethod
    def create_window(self, controller_id: str, outage_type: OutageType,
                      start_time: datetime, end_time: datetime) -> OutageWindow: ...

    @abstractmethod
    def extend_window(self, window_id: int, start_time: datetime, end_time: datetime) -> None: ...

    @abstractmethod
    def delete_windows(self, window_ids: Sequence[int]) -> None: ...

    @abstractmethod
    def find_windows(self, outage_type: OutageType, start: datetime, end: datetime,
                     controller_id: Optional[str] = None) -> List[OutageWindow]:
        """Windows overlapping ``[start, end]``, ordered by ``start_time`` descending."""

    @abstractmethod
    def count_raw_events(self, controller_id: Optional[str] = None,
                         outage_type: Optional[OutageType] = None) -> int: ...

class OutageStore(ABC):
    @abstractmethod
    def transaction(self):
        """Context manager yielding an :class:`OutageRepository` bound to one atomic transaction."""

def _window(row: AggregatedOutage) -> OutageWindow:
    # SQLite hands back naive datetimes
    return OutageWindow(
        id=row.id,
        controller_id=row.controller_id,
        outage_type=row.outage_type,
        start_time=to_utc(row.start_time),
        end_time=to_utc(row.end_time),
    )

def _insert_ignoring_duplicates(dialect: str):
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise PersistenceError(f"unsupported database dialect: {dialect}")
    return (insert(RawOutage)
            .on_conflict_do_nothing(index_elements=["controller_id", "outage_type", "occurred_at"]))

class SqlOutageRepository(OutageRepository):
    def __init__(self, session: Session):
        self.session = session

    def insert_raw_if_absent(self, controller_id, outage_type, occurred_at) -> bool:
        stmt = _insert_ignoring_duplicates(self.session.get_bind().dialect.name).values(
            controller_id=controller_id,
            outage_type=outage_type,
            occurred_at=to_utc(occurred_at),
        )
        res = self.session.execute(stmt)
        return res.rowcount == 1

    def find_candidate_windows(self, controller_id, outage_type, lo, hi) -> List[OutageWindow]:
        q = (select(AggregatedOutage)
             .where(AggregatedOutage.controller_id == controller_id)
             .where(AggregatedOutage.outage_type == outage_type)
             .where(AggregatedOutage.end_time >= lo)
             .where(AggregatedOutage.start_time <= hi)
             .order_by(AggregatedOutage.end_time.desc(), AggregatedOutage.id.desc()))
        return [_window(r) for r in self.session.execute(q).scalars().all()]

    def create_window(self, controller_id, outage_type, start_time, end_time) -> OutageWindow:
        row = AggregatedOutage(controller_id=controller_id, outage_type=outage_type,
                               start_time=start_time, end_time=end_time)
        self.session.add(row)
        self.session.flush()
        return _window(row)

    def extend_window(self, window_id, start_time, end_time) -> None:
        self.session.execute(
            update(AggregatedOutage)
            .where(AggregatedOutage.id == window_id)
            .values(start_time=start_time, end_time=end_time)
        )

    def delete_windows(self, window_ids) -> None:
        if not window_ids:
            return
        self.session.execute(delete(AggregatedOutage).where(AggregatedOutage.id.in_(list(window_ids))))

    def find_windows(self, outage_type, start, end, controller_id=None) -> List[OutageWindow]:
        q = (select(AggregatedOutage)
             .where(AggregatedOutage.outage_type == outage_type)
             .where(AggregatedOutage.end_time >= start)
             .where(AggregatedOutage.start_time <= end))
        if controller_id:
            q = q.where(AggregatedOutage.controller_id == controller_id)
        q = q.order_by(AggregatedOutage.start_time.desc(), AggregatedOutage.id.desc())
        return [_window(r) for r in self.session.execute(q).scalars().all()]

    def count_raw_events(self, controller_id=None, outage_type=None) -> int:
        q = select(func.count()).select_from(RawOutage)
        if controller_id is not None:
            q = q.where(RawOutage.controller_id == controller_id)
        if outage_type is not None:
            q = q.where(RawOutage.outage_type == outage_type)
        return int(self.session.execute(q).scalar_one())

def is_retryable(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()

class SqlOutageStore(OutageStore):
    def __init__(self, engine: Engine):
        self.engine = engine.execution_options(isolation_level="SERIALIZABLE")
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def transaction(self) -> Iterator[SqlOutageRepository]:
        session = self.SessionLocal()
        try:
            with session.begin():
                yield SqlOutageRepository(session)
        except DBAPIError as e:
            if is_retryable(e):
                logger.warning("Serialization conflict, transaction rolled back: %s", e.orig)
                raise TransactionConflict("transaction aborted by a concurrent update; retry") from e
            raise PersistenceError(str(e.orig)) from e
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e
        finally:
            session.close()
