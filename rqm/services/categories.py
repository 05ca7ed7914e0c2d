# rqm/services/categories.py
from __future__ import annotations

import logging
import re
from typing import List, Optional

from sqlalchemy.orm import Session

from rqm.models.entities import Transaction, TransactionCategory, TYPE_INCOME, TYPE_EXPENSE
from rqm.models.user import ROLE_ADMIN, ROLE_KOMITE
from rqm.services.auth import SessionUser, require_role
from rqm.services.classifier import CategoryKind, classify
from rqm.services.currency import to_rupiah
from rqm.services.errors import CategoryInUse, InvalidAmount, InvalidCategory, NotFound, ValidationError, commit, guarded

logger = logging.getLogger(__name__)


def code_from_name(name: str) -> str:
    """'Infaq Raport Santri' -> 'INFAQ_RAPORT_SANTRI'"""
    return re.sub(r"\s+", "_", name.strip().upper())


def categories_for_role(db: Session, actor: Optional[SessionUser], role: str,
                        type_: Optional[str] = None) -> List[TransactionCategory]:
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE)
    q = db.query(TransactionCategory).filter(TransactionCategory.is_active == True)  # noqa: E712
    if role == ROLE_KOMITE:
        q = q.filter(TransactionCategory.show_to_komite == True)  # noqa: E712
    elif role == ROLE_ADMIN:
        q = q.filter(TransactionCategory.show_to_admin == True)  # noqa: E712
    if type_:
        q = q.filter(TransactionCategory.type == type_)
    return q.order_by(TransactionCategory.name.asc()).all()


def all_categories(db: Session, actor: Optional[SessionUser]) -> List[TransactionCategory]:
    require_role(actor, ROLE_ADMIN)
    return db.query(TransactionCategory).order_by(
        TransactionCategory.created_at.desc(), TransactionCategory.id.desc()
    ).all()


def _default_amount(value) -> int:
    if value in (None, "", 0):
        return 0
    amount = to_rupiah(value)
    if amount < 0:
        raise InvalidAmount()
    return amount


def create_category(db: Session, actor: Optional[SessionUser], *, name: str, type: str,
                    show_to_komite: bool = True, show_to_admin: bool = True,
                    requires_handover: Optional[bool] = None, default_amount=0,
                    kind: Optional[str] = None, is_system: bool = False) -> TransactionCategory:
    require_role(actor, ROLE_ADMIN)
    if not name or not name.strip():
        raise ValidationError("Nama kategori wajib diisi")
    if type not in (TYPE_INCOME, TYPE_EXPENSE):
        raise InvalidCategory("Jenis kategori harus INCOME atau EXPENSE")

    code = code_from_name(name)
    # Art wird einmalig festgelegt
    resolved_kind = CategoryKind(kind) if kind else classify(code, name, type)
    amount = _default_amount(default_amount)

    with guarded(db, "create category"):
        if db.query(TransactionCategory).filter(TransactionCategory.code == code).first():
            raise InvalidCategory(f"Kode kategori {code} sudah ada")
        category = TransactionCategory(
            code=code,
            name=name.strip(),
            type=type,
            kind=resolved_kind.value,
            show_to_komite=show_to_komite,
            show_to_admin=show_to_admin,
            requires_handover=requires_handover,
            default_amount=amount,
            is_system=is_system,
            is_active=True,
        )
        db.add(category)
    commit(db, "create category")
    logger.info("Category %s created (%s)", code, resolved_kind.value)
    return category


def update_category(db: Session, actor: Optional[SessionUser], category_id: int, *,
                    name: Optional[str] = None, show_to_komite: Optional[bool] = None,
                    show_to_admin: Optional[bool] = None, is_active: Optional[bool] = None,
                    requires_handover: Optional[bool] = None, default_amount=None) -> TransactionCategory:
    # code und kind bleiben unveraendert
    require_role(actor, ROLE_ADMIN)
    with guarded(db, "update category"):
        category = db.get(TransactionCategory, category_id)
        if category is None:
            raise NotFound("Kategori tidak ditemukan")
        if name is not None:
            if not name.strip():
                raise ValidationError("Nama kategori wajib diisi")
            category.name = name.strip()
        if show_to_komite is not None:
            category.show_to_komite = show_to_komite
        if show_to_admin is not None:
            category.show_to_admin = show_to_admin
        if is_active is not None:
            category.is_active = is_active
        if requires_handover is not None:
            category.requires_handover = requires_handover
        if default_amount is not None:
            category.default_amount = _default_amount(default_amount)
    commit(db, "update category")
    return category


def delete_category(db: Session, actor: Optional[SessionUser], category_id: int) -> None:
    require_role(actor, ROLE_ADMIN)
    with guarded(db, "delete category"):
        category = db.get(TransactionCategory, category_id)
        if category is None:
            raise NotFound("Kategori tidak ditemukan")
        if category.is_system:
            raise InvalidCategory("Kategori sistem tidak dapat dihapus")
        if db.query(Transaction.id).filter(Transaction.type == category.code).first() is not None:
            raise CategoryInUse()
        db.delete(category)
    commit(db, "delete category")
