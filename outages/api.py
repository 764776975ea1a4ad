from __future__ import annotations
from datetime import datetime
from functools import lru_cache
from typing import List, Optional
from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from outages.config import settings
from outages.db import make_engine
from outages.errors import PersistenceError, PublishError, TransactionConflict
from outages.producer import EventPublisher
from outages.query import OutageQueryService
from outages.repository import OutageStore, SqlOutageStore
from outages.schemas import IngestAck, OutageEvent, OutageQuery, OutageType, OutageWindow

app = FastAPI(title="Outage Aggregator API", version="1.0.0")

@lru_cache
def get_store() -> OutageStore:
    return SqlOutageStore(make_engine(settings.database_url))

@lru_cache
def get_publisher() -> EventPublisher:
    return EventPublisher(settings.kafka_bootstrap, settings.topic)

def get_query_service(store: OutageStore = Depends(get_store)) -> OutageQueryService:
    return OutageQueryService(store)

def _validation_failed(errors) -> JSONResponse:
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": jsonable_encoder(errors)})

@app.exception_handler(RequestValidationError)
def _on_request_validation(request: Request, exc: RequestValidationError):
    return _validation_failed(exc.errors())

@app.exception_handler(TransactionConflict)
def _on_conflict(request: Request, exc: TransactionConflict):
    return JSONResponse(status_code=503, content={"message": str(exc)}, headers={"Retry-After": "1"})

@app.exception_handler(PublishError)
def _on_publish_error(request: Request, exc: PublishError):
    return JSONResponse(status_code=503, content={"message": f"ingest queue unavailable: {exc}"})

@app.exception_handler(PersistenceError)
def _on_persistence_error(request: Request, exc: PersistenceError):
    return JSONResponse(status_code=500, content={"message": "internal storage error"})

@app.get("/health")
def health():
    return {"ok": True}

@app.post("/ingest", status_code=201, response_model=IngestAck)
def ingest(evt: OutageEvent, publisher: EventPublisher = Depends(get_publisher)):
    publisher.publish(evt)
    return IngestAck()

@app.get("/outages", response_model=List[OutageWindow])
def find_outages(
    type: OutageType = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    controller_id: Optional[str] = Query(None, alias="controllerId"),
    svc: OutageQueryService = Depends(get_query_service),
):
    try:
        q = OutageQuery(type=type, start=start, end=end, controller_id=controller_id)
    except ValidationError as e:
        return _validation_failed(e.errors(include_url=False, include_context=False))
    return svc.find(q.type, q.start, q.end, controller_id=q.controller_id)
