# rqm/services/handover.py
"""
Serah Terima: Bargeld, das der Admin kassiert, geht an das Komite.

Zustaende: NONE (nie noetig) -> PENDING (beim Admin) -> COMPLETED (beim Komite).
COMPLETED ist endgueltig.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from rqm.config import settings as app_settings
from rqm.models.entities import (
    Transaction, TransactionCategory, TYPE_EXPENSE,
    HANDOVER_NONE, HANDOVER_PENDING, HANDOVER_COMPLETED,
)
from rqm.models.user import User, ROLE_ADMIN, ROLE_KOMITE
from rqm.services.auth import SessionUser, has_role, require_role
from rqm.services.classifier import category_map
from rqm.services.errors import commit, guarded

logger = logging.getLogger(__name__)


def created_by(role: str):
    return Transaction.creator_id.in_(select(User.id).where(User.role == role))


def komite_visible():
    """Mittel beim Komite: alles vom Komite plus uebergebene Admin-Buchungen."""
    return or_(
        created_by(ROLE_KOMITE),
        and_(created_by(ROLE_ADMIN), Transaction.handover_status == HANDOVER_COMPLETED),
    )


def admin_held():
    """Mittel beim Admin: Admin-Buchungen, die noch nicht uebergeben wurden."""
    return and_(created_by(ROLE_ADMIN), Transaction.handover_status != HANDOVER_COMPLETED)


def visible_to(role: str):
    return komite_visible() if role == ROLE_KOMITE else admin_held()


def requires_handover(category: Optional[TransactionCategory], code: str) -> bool:
    if category is not None and category.requires_handover is not None:
        return bool(category.requires_handover)
    return code in app_settings.HANDOVER_FALLBACK_CODES


def initial_state(actor_role: str, category: Optional[TransactionCategory], code: str) -> tuple[bool, str]:
    """(is_handover, handover_status) fuer eine neue Buchung."""
    is_handover = actor_role == ROLE_ADMIN and requires_handover(category, code)
    return is_handover, (HANDOVER_PENDING if is_handover else HANDOVER_NONE)


def _pending_query(db: Session):
    return db.query(Transaction).filter(
        Transaction.is_handover == True,  # noqa: E712
        Transaction.handover_status == HANDOVER_PENDING,
        created_by(ROLE_ADMIN),
    )


def signed_amount(cats: dict[str, TransactionCategory], txn: Transaction) -> int:
    """Einnahme positiv, Ausgabe negativ; unbekannte Codes zaehlen nicht."""
    cat = cats.get(txn.type)
    if cat is None:
        return 0
    return -txn.amount if cat.type == TYPE_EXPENSE else txn.amount


def _pending_summary(db: Session) -> dict:
    cats = category_map(db)
    pending = _pending_query(db).all()
    by_type: dict[str, int] = {}
    for t in pending:
        if t.type in cats:
            by_type[t.type] = by_type.get(t.type, 0) + signed_amount(cats, t)
    return {
        "total_pending": sum(by_type.values()),
        "by_type": by_type,
        "count": len(pending),
    }


def handover_stats(db: Session, actor: Optional[SessionUser]) -> dict:
    if not has_role(actor, ROLE_ADMIN):
        return {"total_pending": 0, "by_type": {}, "count": 0}
    return _pending_summary(db)


def perform_handover(db: Session, actor: Optional[SessionUser], now: Optional[datetime] = None) -> dict:
    """Setzt alle PENDING-Buchungen des Admins in einem UPDATE auf COMPLETED."""
    require_role(actor, ROLE_ADMIN)
    now = now or datetime.utcnow()

    with guarded(db, "perform_handover"):
        # Netto: Ausgaben mindern den uebergebenen Betrag
        total = _pending_summary(db)["total_pending"]
        count = _pending_query(db).update(
            {Transaction.handover_status: HANDOVER_COMPLETED, Transaction.handover_date: now},
            synchronize_session=False,
        )
    commit(db, "perform_handover")
    logger.info("Handover by user %s: %s transactions, total %s", actor.user_id, count, total)
    return {"count": count, "total": total}
