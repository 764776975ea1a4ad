from __future__ import annotations
from typing import Optional
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase
from outages.config import settings

class Base(DeclarativeBase):
    pass

def make_engine(url: Optional[str] = None, **kwargs) -> Engine:
    url = url or settings.database_url
    if url.startswith("sqlite"):
        # API handlers run in a threadpool
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, **kwargs)

def init_db(engine: Engine) -> None:
    from outages import models  # noqa
    Base.metadata.create_all(bind=engine)
