# rqm/services/transactions.py
"""
Anlegen, Aendern und Auflisten von Buchungen.

``create_transaction`` prueft in fester Reihenfolge und bricht beim ersten
Fehler ab, ohne etwas zu speichern:

 1. Kategorie existiert und ist aktiv
 2. SPP/KAS brauchen einen Santri
 3. SPP: max. eine Buchung pro Monat, ausser der Santri hat eine aktive Cicilan
 4. KAS: max. eine Buchung pro Monat
 5. Kategorien "santri"/TABUNGAN brauchen einen Santri
 6. Kategorien "guru"/"ustadz"/HONOR_GURU brauchen einen Guru
 7. Tabungan-Auszahlung nur bis zum aktuellen Saldo
 8. is_handover bestimmen, 9. speichern

``update_transaction`` laesst die Schritte 2-7 fuer die geaenderte Zeile erneut
laufen; die Zeile selbst zaehlt dabei nicht zum Tabungan-Saldo.

Pruefung und Insert laufen in derselben DB-Transaktion; der Santri wird
(wo die DB es kann) per SELECT ... FOR UPDATE gesperrt, und SPP/KAS-Zeilen
tragen einen ``monthly_slot`` unter Unique-Constraint.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rqm.config import settings as app_settings
from rqm.models.entities import Transaction, TransactionCategory, TYPE_EXPENSE, HANDOVER_COMPLETED
from rqm.models.user import User, ROLE_ADMIN, ROLE_KOMITE, ROLE_SANTRI, ROLE_GURU
from rqm.services.auth import SessionUser, require_role
from rqm.services.balances import student_savings_balance, transaction_row
from rqm.services.classifier import CategoryKind, category_map, codes_of_kind, kind_of
from rqm.services.currency import format_rupiah, to_rupiah
from rqm.services.errors import (
    DuplicateMonthlyPayment, InsufficientSavingsBalance, InvalidAmount, InvalidCategory,
    MissingStudent, MissingTeacher, NotFound, StorageError, ValidationError, commit, guarded,
)
from rqm.services.handover import created_by, initial_state, komite_visible
from rqm.services.installments import has_active_installment

logger = logging.getLogger(__name__)

MONTH_NAMES = [
    "Januari", "Februari", "Maret", "April", "Mei", "Juni",
    "Juli", "Agustus", "September", "Oktober", "November", "Desember",
]


# ---------- Hilfen ----------------------------------------------------------

def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise ValidationError("Tanggal tidak valid")


def month_bounds(d: datetime) -> tuple[datetime, datetime]:
    """[erster Tag 00:00, erster Tag des Folgemonats)"""
    start = datetime(d.year, d.month, 1)
    if d.month == 12:
        return start, datetime(d.year + 1, 1, 1)
    return start, datetime(d.year, d.month + 1, 1)


def _slot(kind: CategoryKind, d: datetime) -> str:
    return f"{kind.value}:{d.year:04d}-{d.month:02d}"


def _month_label(d: datetime) -> str:
    return f"{MONTH_NAMES[d.month - 1]} {d.year}"


def _month_taken(db: Session, student_id: int, codes: List[str], d: datetime,
                 exclude_id: Optional[int] = None) -> bool:
    start, end = month_bounds(d)
    q = db.query(Transaction.id).filter(
        Transaction.student_id == student_id,
        Transaction.type.in_(codes),
        Transaction.date >= start,
        Transaction.date < end,
    )
    if exclude_id is not None:
        q = q.filter(Transaction.id != exclude_id)
    return q.first() is not None


def _resolve_category(db: Session, code: str) -> TransactionCategory:
    category = db.query(TransactionCategory).filter(TransactionCategory.code == code).first()
    if category is None or not category.is_active:
        raise InvalidCategory()
    return category


def _resolve_amount(category: TransactionCategory, amount) -> int:
    # default_amount > 0 sperrt den Betrag
    if category.default_amount and category.default_amount > 0:
        return int(category.default_amount)
    value = to_rupiah(amount)
    if value <= 0:
        raise InvalidAmount()
    return value


def _lock_member(db: Session, user_id: int, role: str) -> User:
    user = db.query(User).filter(User.id == user_id).with_for_update().first()
    if user is None or user.role != role:
        raise NotFound("Santri tidak ditemukan" if role == ROLE_SANTRI else "Guru tidak ditemukan")
    return user


def _monthly_slot(db: Session, kind: CategoryKind, student_id: Optional[int],
                  d: datetime, exclude_id: Optional[int] = None) -> Optional[str]:
    """Schritte 3 und 4; liefert den Slot-Schluessel oder None, wenn keine Monatsregel greift."""
    if student_id is None:
        return None
    if kind == CategoryKind.SPP:
        if has_active_installment(db, student_id):
            return None
        if _month_taken(db, student_id, codes_of_kind(db, CategoryKind.SPP), d, exclude_id):
            raise DuplicateMonthlyPayment(
                f"SPP bulan {_month_label(d)} untuk santri ini sudah tercatat. "
                "Gunakan menu Cicilan untuk pembayaran bertahap."
            )
        return _slot(kind, d)
    if kind == CategoryKind.KAS:
        if _month_taken(db, student_id, codes_of_kind(db, CategoryKind.KAS), d, exclude_id):
            raise DuplicateMonthlyPayment(f"Uang kas bulan {_month_label(d)} untuk santri ini sudah tercatat.")
        return _slot(kind, d)
    return None


def _savings_effect(db: Session, code: str, amount: int) -> int:
    """Beitrag einer bestehenden Buchung zum Tabungan-Saldo (+Setoran, -Penarikan)."""
    category = db.query(TransactionCategory).filter(TransactionCategory.code == code).first()
    if category is None:
        return 0
    kind = kind_of(category)
    if kind == CategoryKind.SAVINGS_DEPOSIT:
        return amount
    if kind == CategoryKind.SAVINGS_WITHDRAWAL:
        return -amount
    return 0


def _check_rules(db: Session, category: TransactionCategory, value: int, d: datetime,
                 student_id: Optional[int], teacher_id: Optional[int],
                 exclude_id: Optional[int] = None, own_effect: int = 0) -> Optional[str]:
    """
    Schritte 2-7 fuer Anlegen und Aendern; liefert den monthly_slot.
    ``own_effect`` ist der Saldo-Beitrag der Zeile selbst, die gerade geaendert wird.
    """
    kind = kind_of(category)
    name = (category.name or "").lower()

    # 2
    if kind in (CategoryKind.SPP, CategoryKind.KAS) and not student_id:
        raise MissingStudent()
    if student_id:
        _lock_member(db, student_id, ROLE_SANTRI)

    # 3 + 4
    slot = _monthly_slot(db, kind, student_id, d, exclude_id)

    # 5
    if ("santri" in name or category.code == app_settings.CODE_TABUNGAN) and not student_id:
        raise MissingStudent()

    # 6
    if "guru" in name or "ustadz" in name or category.code == app_settings.CODE_HONOR_GURU:
        if not teacher_id:
            raise MissingTeacher()
    if teacher_id:
        _lock_member(db, teacher_id, ROLE_GURU)

    # 7
    if category.type == TYPE_EXPENSE and kind == CategoryKind.SAVINGS_WITHDRAWAL and student_id:
        balance = student_savings_balance(db, student_id) - own_effect
        if balance < value:
            raise InsufficientSavingsBalance(
                f"Saldo tabungan tidak mencukupi. Saldo saat ini: {format_rupiah(balance)}"
            )
    return slot


def _flush(db: Session, context: str) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        if "monthly_slot" in str(exc.orig) or "uq_transactions_student_slot" in str(exc.orig):
            raise DuplicateMonthlyPayment() from exc
        logger.exception("Integrity failure during %s", context)
        raise StorageError() from exc


# ---------- Anlegen ---------------------------------------------------------

def _build(db: Session, actor: SessionUser, code: str, amount, when, description: Optional[str],
           student_id: Optional[int], teacher_id: Optional[int]) -> Transaction:
    d = _as_datetime(when)

    # 1
    category = _resolve_category(db, code)
    value = _resolve_amount(category, amount)

    slot = _check_rules(db, category, value, d, student_id, teacher_id)

    # 8 + 9
    is_handover, status = initial_state(actor.role, category, category.code)
    txn = Transaction(
        type=category.code,
        amount=value,
        description=description,
        date=d,
        student_id=student_id or None,
        teacher_id=teacher_id or None,
        creator_id=actor.user_id,
        is_handover=is_handover,
        handover_status=status,
        monthly_slot=slot,
    )
    db.add(txn)
    return txn


def create_transaction(db: Session, actor: Optional[SessionUser], *, type: str, amount, date,
                       description: Optional[str] = None, student_id: Optional[int] = None,
                       teacher_id: Optional[int] = None) -> Transaction:
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE)
    with guarded(db, "create transaction"):
        txn = _build(db, actor, type, amount, date, description, student_id, teacher_id)
        _flush(db, "create transaction")
    commit(db, "create transaction")
    logger.info("Transaction %s created by %s: %s %s", txn.id, actor.user_id, txn.type, txn.amount)
    return txn


def create_mass_transaction(db: Session, actor: Optional[SessionUser], *, type: str, amount, date,
                            student_ids: Iterable[int], description: Optional[str] = None) -> List[Transaction]:
    """Eine Buchung je Santri; alles oder nichts."""
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE)
    ids = list(dict.fromkeys(int(s) for s in student_ids))
    if not ids:
        raise MissingStudent("Belum ada santri yang dipilih")

    created = []
    with guarded(db, "create mass transaction"):
        for sid in ids:
            created.append(_build(db, actor, type, amount, date, description, sid, None))
            _flush(db, "create mass transaction")
    commit(db, "create mass transaction")
    logger.info("Mass transaction %s created by %s for %s students", type, actor.user_id, len(created))
    return created


# ---------- Aendern / Loeschen ---------------------------------------------

def update_transaction(db: Session, actor: Optional[SessionUser], transaction_id: int, *,
                       type: Optional[str] = None, amount=None, description: Optional[str] = None,
                       date=None) -> Transaction:
    """Admin-Korrektur; Santri und Guru der Zeile bleiben, alle Regeln laufen erneut."""
    require_role(actor, ROLE_ADMIN)
    with guarded(db, "update transaction"):
        txn = db.get(Transaction, transaction_id)
        if txn is None:
            raise NotFound("Transaksi tidak ditemukan")

        category = _resolve_category(db, type or txn.type)
        changed = category.code != txn.type
        # COMPLETED ist endgueltig
        if changed and txn.handover_status == HANDOVER_COMPLETED:
            raise ValidationError("Kategori transaksi yang sudah diserahterimakan tidak dapat diubah")

        value = _resolve_amount(category, txn.amount if amount is None else amount)
        d = txn.date if date is None else _as_datetime(date)
        own_effect = _savings_effect(db, txn.type, txn.amount)
        slot = _check_rules(db, category, value, d, txn.student_id, txn.teacher_id,
                            exclude_id=txn.id, own_effect=own_effect)

        if changed:
            txn.is_handover, txn.handover_status = initial_state(txn.creator_role, category, category.code)
        txn.type = category.code
        txn.amount = value
        txn.date = d
        txn.monthly_slot = slot
        if description is not None:
            txn.description = description
        _flush(db, "update transaction")
    commit(db, "update transaction")
    logger.info("Transaction %s updated by %s", txn.id, actor.user_id)
    return txn


def delete_transaction(db: Session, actor: Optional[SessionUser], transaction_id: int) -> None:
    require_role(actor, ROLE_ADMIN)
    with guarded(db, "delete transaction"):
        txn = db.get(Transaction, transaction_id)
        if txn is None:
            raise NotFound("Transaksi tidak ditemukan")
        db.delete(txn)
    commit(db, "delete transaction")


def bulk_delete_transactions(db: Session, actor: Optional[SessionUser], ids: Iterable[int]) -> int:
    require_role(actor, ROLE_ADMIN)
    ids = [int(i) for i in ids]
    if not ids:
        raise ValidationError("Tidak ada transaksi yang dipilih")
    with guarded(db, "bulk delete transactions"):
        count = db.query(Transaction).filter(Transaction.id.in_(ids)).delete(synchronize_session=False)
    commit(db, "bulk delete transactions")
    return count


# ---------- Berichte --------------------------------------------------------

@dataclass
class TransactionFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category_code: Optional[str] = None
    type: Optional[str] = None  # INCOME|EXPENSE
    search: Optional[str] = None
    creator_role: Optional[str] = None
    page: int = 1
    page_size: int = app_settings.DEFAULT_PAGE_SIZE


def _day_start(d) -> datetime:
    return datetime(d.year, d.month, d.day)


def filtered_transactions(db: Session, actor: Optional[SessionUser], filters: Optional[TransactionFilters] = None) -> dict:
    require_role(actor, ROLE_ADMIN)
    f = filters or TransactionFilters()
    page = max(1, int(f.page))
    page_size = max(1, int(f.page_size))
    cats = category_map(db)

    q = db.query(Transaction)
    if f.start_date:
        q = q.filter(Transaction.date >= _day_start(f.start_date))
    if f.end_date:
        q = q.filter(Transaction.date < _day_start(f.end_date) + timedelta(days=1))
    if f.category_code:
        q = q.filter(Transaction.type == f.category_code)
    if f.creator_role:
        q = q.filter(created_by(f.creator_role))
    if f.type:
        codes = sorted(code for code, c in cats.items() if c.type == f.type)
        if not codes:
            return {"transactions": [], "total_count": 0, "page": page, "page_size": page_size, "total_pages": 0}
        q = q.filter(Transaction.type.in_(codes))
    if f.search:
        q = q.filter(Transaction.description.ilike(f"%{f.search}%"))

    total = q.count()
    rows = (
        q.order_by(Transaction.date.desc(), Transaction.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {
        "transactions": [transaction_row(t, cats) for t in rows],
        "total_count": total,
        "page": page,
        "page_size": page_size,
        "total_pages": math.ceil(total / page_size),
    }


def komite_reports(db: Session, actor: Optional[SessionUser], start: date, end: date) -> dict:
    require_role(actor, ROLE_KOMITE)
    cats = category_map(db)
    txns = (
        db.query(Transaction)
        .filter(
            komite_visible(),
            Transaction.date >= _day_start(start),
            Transaction.date < _day_start(end) + timedelta(days=1),
        )
        .order_by(Transaction.date.desc(), Transaction.id.desc())
        .all()
    )
    out = {"pemasukan_lain": [], "pengeluaran_komite": [], "kas_santri": [], "tabungan_santri": []}
    for t in txns:
        cat = cats.get(t.type)
        if cat is None:
            continue
        kind = kind_of(cat)
        row = transaction_row(t, cats)
        row["student_nis"] = ""  # fuer das Komite ausgeblendet
        if kind == CategoryKind.OTHER_INCOME:
            out["pemasukan_lain"].append(row)
        elif kind == CategoryKind.OTHER_EXPENSE:
            out["pengeluaran_komite"].append(row)
        elif kind == CategoryKind.KAS and t.student_id:
            out["kas_santri"].append(row)
        elif kind in (CategoryKind.SAVINGS_DEPOSIT, CategoryKind.SAVINGS_WITHDRAWAL) and t.student_id:
            out["tabungan_santri"].append(row)
    return out
