from __future__ import annotations
from enum import Enum
from typing import Optional
from datetime import datetime
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
from outages.windowing import to_utc

class OutageType(str, Enum):
    led_outage = "led_outage"
    temperature_outage = "temperature_outage"

class OutageEvent(BaseModel):
    """One raw outage sample as it crosses the HTTP or queue boundary."""
    model_config = ConfigDict(populate_by_name=True)

    controller_id: str = Field(alias="controllerId", min_length=1, max_length=64)
    outage_type: OutageType = Field(alias="outageType")
    occurred_at: datetime = Field(
        validation_alias=AliasChoices("timestamp", "occurredAt", "occurred_at"),
        serialization_alias="occurredAt",
    )

    @field_validator("controller_id", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @property
    def partition_key(self) -> str:
        return f"{self.controller_id}:{self.outage_type.value}"

class OutageWindow(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    controller_id: str = Field(alias="controllerId")
    outage_type: OutageType = Field(alias="outageType")
    start_time: datetime = Field(alias="startTime")
    end_time: datetime = Field(alias="endTime")

    # BIGINT ids lose precision as JSON numbers in most clients
    @field_serializer("id", when_used="json")
    def _id_as_text(self, v: int) -> str:
        return str(v)

class OutageQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: OutageType
    start: datetime
    end: datetime
    controller_id: Optional[str] = Field(default=None, alias="controllerId")

    @field_validator("controller_id", mode="before")
    @classmethod
    def _strip(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @model_validator(mode="after")
    def _ordered(self) -> "OutageQuery":
        if self.start > self.end:
            raise ValueError("end must be greater than or equal to start")
        return self

class IngestAck(BaseModel):
    ok: bool = True
    queued: bool = True
