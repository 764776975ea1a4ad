from sqlalchemy import BigInteger, CheckConstraint, Column, DateTime, Enum, Index, Integer, String, UniqueConstraint
from sqlalchemy.sql import func
from outages.db import Base
from outages.schemas import OutageType

# SQLite only autoincrements INTEGER PRIMARY KEY
BigId = BigInteger().with_variant(Integer, "sqlite")

outage_type_enum = Enum(OutageType, name="outage_type", native_enum=True)

class RawOutage(Base):
    __tablename__ = "raw_outages"
    id = Column(BigId, primary_key=True, autoincrement=True)
    controller_id = Column(String(64), nullable=False)
    outage_type = Column(outage_type_enum, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("controller_id", "outage_type", "occurred_at", name="uq_raw_outages_identity"),
    )

class AggregatedOutage(Base):
    __tablename__ = "aggregated_outages"
    id = Column(BigId, primary_key=True, autoincrement=True)
    controller_id = Column(String(64), nullable=False)
    outage_type = Column(outage_type_enum, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("start_time <= end_time", name="ck_aggregated_outages_bounds"),
        Index("idx_aggregated_outages_range", "controller_id", "outage_type", "start_time", "end_time"),
    )
