from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from rqm.config import settings as app_settings
from rqm.models.base import Base, engine, SessionLocal
# Alle Modelle registrieren (Side-Effect-Import)
import rqm.models.entities  # noqa: F401
import rqm.models.user  # noqa: F401
from rqm.models.entities import TransactionCategory
from rqm.models.user import User, ROLE_ADMIN, ROLE_KOMITE
from rqm.services.auth import hash_password
from rqm.services.classifier import classify

logger = logging.getLogger(__name__)


def seed_users_if_empty(db: Session) -> None:
    """Legt Demo-Admin und -Komite an, falls Tabelle leer ist."""
    if db.query(User).count() > 0:
        return
    seeds = [
        ("admin", "Administrator", "admin1234", ROLE_ADMIN),
        ("komite", "Komite RQM", "komite1234", ROLE_KOMITE),
    ]
    for username, name, pw, role in seeds:
        db.add(User(username=username, name=name, password_hash=hash_password(pw), role=role, is_active=True))
    db.commit()
    logger.info("Seeded demo users")


def seed_categories(db: Session) -> None:
    """Systemkategorien anlegen; vorhandene Codes bleiben unveraendert."""
    existing = {code for (code,) in db.query(TransactionCategory.code)}
    added = 0
    for cat in app_settings.system_categories():
        if cat["code"] in existing:
            continue
        kind = classify(cat["code"], cat["name"], cat["type"])
        db.add(TransactionCategory(kind=kind.value, is_system=True, is_active=True, **cat))
        added += 1
    db.commit()
    if added:
        logger.info("Seeded %s system categories", added)


def init_db(dev_seed: bool = app_settings.DEV_SEED, bind=None) -> None:
    """
    Initialisiert die DB-Struktur, legt die Systemkategorien und (optional) Demo-User an.
    Wird beim App-Startup von main.py aufgerufen.
    """
    Base.metadata.create_all(bind=bind or engine)

    with SessionLocal(bind=bind or engine) as db:
        seed_categories(db)
        if dev_seed:
            seed_users_if_empty(db)
