# rqm/models/base.py
from __future__ import annotations

from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from rqm.config import settings as app_settings

Base = declarative_base()

SQLITE_PREFIX = "sqlite:///"


def sqlite_file(url: str) -> Optional[Path]:
    """Absoluter Pfad der SQLite-Datei, None fuer In-Memory oder andere DBs."""
    if not url.startswith(SQLITE_PREFIX):
        return None
    rel = url[len(SQLITE_PREFIX):]  # z. B. ./db/rqm.db
    if rel in ("", ":memory:"):
        return None
    path = Path(rel)
    return path if path.is_absolute() else Path.cwd() / path


def build_engine(url: str) -> Engine:
    db_file = sqlite_file(url)
    if db_file is not None:
        # Ordner fuer die Datei anlegen
        db_file.parent.mkdir(parents=True, exist_ok=True)
        url = f"{SQLITE_PREFIX}{db_file.as_posix()}"
    if url.startswith("sqlite:"):
        return create_engine(url, connect_args={"check_same_thread": False},
                             future=True, echo=app_settings.SQL_ECHO)
    # Postgres/MySQL: Verbindungen vor Gebrauch pruefen
    return create_engine(url, future=True, pool_pre_ping=True, echo=app_settings.SQL_ECHO)


engine = build_engine(app_settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
