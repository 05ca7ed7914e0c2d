# rqm/services/balances.py
"""
Salden und Monitoring-Raster.

Alles wird bei jedem Aufruf aus dem Transaktionsbestand neu berechnet;
es gibt keinen Cache. Buchungen mit unbekanntem Kategorie-Code fliessen
in keine Summe ein (Warnung im Log).

Dashboard-Lesezugriffe werfen nicht: falsche Rolle oder Storage-Fehler
liefern das leere Ergebnis und werden als WARNING geloggt.
"""
from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rqm.config import settings as app_settings
from rqm.models.entities import (
    Transaction, TransactionCategory, SppInstallmentSettings, SppInstallmentPayment,
    TYPE_INCOME, TYPE_EXPENSE, HANDOVER_PENDING,
)
from rqm.models.user import User, ROLE_ADMIN, ROLE_KOMITE, ROLE_SANTRI
from rqm.services.auth import SessionUser, require_role
from rqm.services.classifier import CategoryKind, SAVINGS_KINDS, category_map, kind_of, codes_where
from rqm.services.errors import Unauthorized
from rqm.services.handover import created_by, komite_visible, visible_to

logger = logging.getLogger(__name__)

MONTHS = range(12)


def dashboard_read(default: Callable[[], Any]):
    """Wrong role or storage failure -> default(), logged as warning."""
    def deco(fn):
        @wraps(fn)
        def wrapper(db: Session, actor: Optional[SessionUser], *args, **kwargs):
            try:
                return fn(db, actor, *args, **kwargs)
            except Unauthorized:
                logger.warning("%s: denied for %s, returning empty result", fn.__name__, actor)
                return default()
            except SQLAlchemyError:
                db.rollback()
                logger.warning("%s: storage failure, returning empty result", fn.__name__, exc_info=True)
                return default()
        return wrapper
    return deco


# ---------- Hilfen ----------------------------------------------------------

def _code_totals(db: Session, cats: Dict[str, TransactionCategory], *criteria) -> Dict[str, int]:
    rows = (
        db.query(Transaction.type, func.sum(Transaction.amount))
        .filter(*criteria)
        .group_by(Transaction.type)
        .all()
    )
    out: Dict[str, int] = {}
    unknown = []
    for code, total in rows:
        if code not in cats:
            unknown.append(code)
            continue
        out[code] = int(total or 0)
    if unknown:
        logger.warning("Ignoring transactions with unknown category codes: %s", ", ".join(sorted(unknown)))
    return out


def _income_expense(cats: Dict[str, TransactionCategory], totals: Dict[str, int]) -> tuple[int, int]:
    income = expense = 0
    for code, total in totals.items():
        cat = cats[code]
        if cat.type == TYPE_EXPENSE:
            expense += total
        else:
            income += total
    return income, expense


def _savings(cats: Dict[str, TransactionCategory], totals: Dict[str, int]) -> int:
    balance = 0
    for code, total in totals.items():
        kind = kind_of(cats[code])
        if kind == CategoryKind.SAVINGS_DEPOSIT:
            balance += total
        elif kind == CategoryKind.SAVINGS_WITHDRAWAL:
            balance -= total
    return balance


def _year_bounds(year: int) -> tuple[datetime, datetime]:
    return datetime(year, 1, 1), datetime(year + 1, 1, 1)


def _active_students(db: Session, halaqah_id: Optional[int] = None) -> List[User]:
    q = db.query(User).filter(User.role == ROLE_SANTRI, User.is_active == True)  # noqa: E712
    if halaqah_id:
        q = q.filter(User.halaqah_id == halaqah_id)
    return q.order_by(User.name.asc(), User.id.asc()).all()


def _student_head(student: User, actor: SessionUser) -> dict:
    return {
        "id": student.id,
        "name": student.name,
        # NIS ist fuer das Komite ausgeblendet
        "nis": "" if actor.role == ROLE_KOMITE else student.username,
        "halaqah_id": student.halaqah_id,
        "halaqah": student.halaqah.name if student.halaqah else "-",
        "shift": student.shift.name if student.shift else "-",
    }


def _savings_by_student(db: Session, cats: Dict[str, TransactionCategory], student_ids=None) -> Dict[int, int]:
    kinds = {code: kind_of(c) for code, c in cats.items()}
    codes = codes_where(kinds, SAVINGS_KINDS)
    if not codes:
        return {}
    q = db.query(Transaction.student_id, Transaction.type, func.sum(Transaction.amount)).filter(
        Transaction.type.in_(codes), Transaction.student_id.isnot(None)
    )
    if student_ids is not None:
        q = q.filter(Transaction.student_id.in_(student_ids))
    out: Dict[int, int] = {}
    for sid, code, total in q.group_by(Transaction.student_id, Transaction.type):
        sign = 1 if kinds[code] == CategoryKind.SAVINGS_DEPOSIT else -1
        out[sid] = out.get(sid, 0) + sign * int(total or 0)
    return out


def transaction_row(t: Transaction, cats: Dict[str, TransactionCategory]) -> dict:
    """Flache Projektion fuer Listen und Export."""
    cat = cats.get(t.type)
    return {
        "id": t.id,
        "date": t.date,
        "type": t.type,
        "category_name": cat.name if cat else t.type,
        "category_type": cat.type if cat else "UNKNOWN",
        "amount": t.amount,
        "description": t.description,
        "student_id": t.student_id,
        "student_name": t.student.name if t.student else None,
        "teacher_id": t.teacher_id,
        "teacher_name": t.teacher.name if t.teacher else None,
        "creator_name": t.creator.name if t.creator else "Unknown",
        "creator_role": t.creator_role or "Unknown",
        "is_handover": t.is_handover,
        "handover_status": t.handover_status,
    }


# ---------- Salden ----------------------------------------------------------

@dashboard_read(lambda: 0)
def operational_balance(db: Session, actor: Optional[SessionUser], role: Optional[str] = None) -> int:
    """Einnahmen ohne Tabungan/SPP minus Ausgaben ohne Tabungan, gefiltert nach Verwahrung."""
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE)
    cats = category_map(db)
    totals = _code_totals(db, cats, visible_to(role or actor.role))
    income, expense = 0, 0
    for code, total in totals.items():
        cat = cats[code]
        kind = kind_of(cat)
        if kind in SAVINGS_KINDS:
            continue
        if cat.type == TYPE_EXPENSE:
            expense += total
        elif kind != CategoryKind.SPP:
            income += total
    return income - expense


def student_savings_balance(db: Session, student_id: int) -> int:
    cats = category_map(db)
    return _savings_by_student(db, cats, [student_id]).get(student_id, 0)


@dashboard_read(lambda: 0)
def savings_balance(db: Session, actor: Optional[SessionUser], student_id: Optional[int] = None) -> int:
    """Institutionsweit (Admin/Komite) oder fuer einen Santri; Santri sieht nur sich selbst."""
    if actor is not None and actor.role == ROLE_SANTRI:
        if student_id not in (None, actor.user_id):
            raise Unauthorized()
        return student_savings_balance(db, actor.user_id)
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE)
    if student_id is not None:
        return student_savings_balance(db, student_id)
    cats = category_map(db)
    return _savings(cats, _code_totals(db, cats))


@dashboard_read(lambda: 0)
def pending_at_admin(db: Session, actor: Optional[SessionUser]) -> int:
    """Netto beim Admin wartender Betrag; PENDING-Ausgaben werden abgezogen."""
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE)
    cats = category_map(db)
    income, expense = _income_expense(
        cats, _code_totals(db, cats, created_by(ROLE_ADMIN), Transaction.handover_status == HANDOVER_PENDING)
    )
    return income - expense


@dashboard_read(lambda: {"current_balance": 0, "pending_at_admin": 0, "total_income": 0, "total_expense": 0})
def komite_stats(db: Session, actor: Optional[SessionUser]) -> dict:
    require_role(actor, ROLE_KOMITE)
    cats = category_map(db)
    income, expense = _income_expense(cats, _code_totals(db, cats, komite_visible()))
    return {
        "current_balance": income - expense,
        "pending_at_admin": pending_at_admin(db, actor),
        "total_income": income,
        "total_expense": expense,
    }


@dashboard_read(lambda: {"total_income": 0, "total_expense": 0, "balance": 0, "operational_balance": 0,
                         "active_students": 0, "pending_at_admin": 0})
def admin_stats(db: Session, actor: Optional[SessionUser]) -> dict:
    require_role(actor, ROLE_ADMIN)
    cats = category_map(db)
    income, expense = _income_expense(cats, _code_totals(db, cats, visible_to(ROLE_ADMIN)))
    active = db.query(func.count(User.id)).filter(User.role == ROLE_SANTRI, User.is_active == True).scalar()  # noqa: E712
    return {
        "total_income": income,
        "total_expense": expense,
        "balance": income - expense,
        "operational_balance": operational_balance(db, actor),
        "active_students": int(active or 0),
        "pending_at_admin": pending_at_admin(db, actor),
    }


@dashboard_read(list)
def top_savers(db: Session, actor: Optional[SessionUser], limit: int = app_settings.TOP_SAVERS_LIMIT) -> List[dict]:
    """Absteigend nach Saldo; Gleichstand in Anlagereihenfolge (created_at, id)."""
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE)
    students = (
        db.query(User)
        .filter(User.role == ROLE_SANTRI, User.is_active == True)  # noqa: E712
        .order_by(User.created_at.asc(), User.id.asc())
        .all()
    )
    balances = _savings_by_student(db, category_map(db))
    ranked = [
        {"id": s.id, "name": s.name, "username": s.username, "balance": balances.get(s.id, 0)}
        for s in students
        if balances.get(s.id, 0) > 0
    ]
    ranked.sort(key=lambda r: r["balance"], reverse=True)  # stabil
    return ranked[:limit]


# ---------- Monitoring ------------------------------------------------------

@dashboard_read(list)
def monthly_payment_status(db: Session, actor: Optional[SessionUser], year: int,
                           halaqah_id: Optional[int] = None) -> List[dict]:
    """
    SPP/KAS bezahlt ja/nein je Santri und Monat (0-11).
    SPP mit aktiver Cicilan: Summe der Raten >= default_amount.
    Santri sehen nur die eigene Zeile.
    """
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE, ROLE_SANTRI)
    if actor.role == ROLE_SANTRI:
        students = db.query(User).filter(User.id == actor.user_id).all()
    else:
        students = _active_students(db, halaqah_id)
    if not students:
        return []
    ids = [s.id for s in students]

    cats = category_map(db)
    kinds = {code: kind_of(c) for code, c in cats.items()}
    spp_codes = set(codes_where(kinds, [CategoryKind.SPP]))
    kas_codes = set(codes_where(kinds, [CategoryKind.KAS]))

    start, end = _year_bounds(year)
    rows = (
        db.query(Transaction.student_id, Transaction.type, Transaction.date)
        .filter(
            Transaction.student_id.in_(ids),
            Transaction.type.in_(sorted(spp_codes | kas_codes)),
            Transaction.date >= start,
            Transaction.date < end,
        )
        .all()
    )
    settings = {
        s.student_id: s
        for s in db.query(SppInstallmentSettings).filter(
            SppInstallmentSettings.student_id.in_(ids), SppInstallmentSettings.is_active == True  # noqa: E712
        )
    }
    paid_installments: Dict[tuple, int] = {}
    for sid, month, total in (
        db.query(SppInstallmentPayment.student_id, SppInstallmentPayment.month, func.sum(SppInstallmentPayment.amount))
        .filter(SppInstallmentPayment.student_id.in_(ids), SppInstallmentPayment.year == year)
        .group_by(SppInstallmentPayment.student_id, SppInstallmentPayment.month)
    ):
        paid_installments[(sid, month)] = int(total or 0)

    spp_seen = {(sid, d.month - 1) for sid, code, d in rows if code in spp_codes}
    kas_seen = {(sid, d.month - 1) for sid, code, d in rows if code in kas_codes}

    out = []
    for s in students:
        setting = settings.get(s.id)
        if setting is not None:
            spp = {m: paid_installments.get((s.id, m), 0) >= setting.default_amount for m in MONTHS}
        else:
            spp = {m: (s.id, m) in spp_seen for m in MONTHS}
        kas = {m: (s.id, m) in kas_seen for m in MONTHS}
        out.append(_student_head(s, actor) | {
            "has_installment": setting is not None,
            "spp_by_month": spp,
            "kas_by_month": kas,
        })
    return out


@dashboard_read(list)
def tabungan_balances(db: Session, actor: Optional[SessionUser]) -> List[dict]:
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE)
    students = _active_students(db)
    balances = _savings_by_student(db, category_map(db))
    return [_student_head(s, actor) | {"saldo_tabungan": balances.get(s.id, 0)} for s in students]


@dashboard_read(list)
def student_monitoring(db: Session, actor: Optional[SessionUser]) -> List[dict]:
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE)
    students = _active_students(db)
    cats = category_map(db)
    kinds = {code: kind_of(c) for code, c in cats.items()}
    balances = _savings_by_student(db, cats)

    totals: Dict[int, Dict[str, Any]] = {s.id: {"total_spp": 0, "last_spp_date": None, "total_kas": 0} for s in students}
    rows = (
        db.query(Transaction.student_id, Transaction.type, Transaction.amount, Transaction.date)
        .filter(Transaction.student_id.in_(list(totals)))
        .all()
    )
    for sid, code, amount, d in rows:
        kind = kinds.get(code)
        acc = totals[sid]
        if kind == CategoryKind.SPP:
            acc["total_spp"] += amount
            if acc["last_spp_date"] is None or d > acc["last_spp_date"]:
                acc["last_spp_date"] = d
        elif kind == CategoryKind.KAS:
            acc["total_kas"] += amount

    return [
        _student_head(s, actor) | totals[s.id] | {"saldo_tabungan": balances.get(s.id, 0)}
        for s in students
    ]


@dashboard_read(list)
def category_balances(db: Session, actor: Optional[SessionUser]) -> List[dict]:
    """Komite: Einnahmen/Ausgaben je Kategorie mit den letzten Buchungen."""
    require_role(actor, ROLE_KOMITE)
    categories = (
        db.query(TransactionCategory)
        .filter(TransactionCategory.is_active == True,  # noqa: E712
                TransactionCategory.code.in_(app_settings.KOMITE_BALANCE_CODES))
        .order_by(TransactionCategory.name.asc())
        .all()
    )
    cats = category_map(db)
    out = []
    for category in categories:
        txns = (
            db.query(Transaction)
            .filter(komite_visible(), Transaction.type == category.code)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .all()
        )
        total = sum(t.amount for t in txns)
        income = total if category.type == TYPE_INCOME else 0
        expense = total if category.type == TYPE_EXPENSE else 0
        out.append({
            "code": category.code,
            "name": category.name,
            "type": category.type,
            "total_income": income,
            "total_expense": expense,
            "balance": income - expense,
            "transaction_count": len(txns),
            "recent_transactions": [transaction_row(t, cats) for t in txns[:app_settings.CATEGORY_RECENT_LIMIT]],
        })
    out.sort(key=lambda c: c["name"])
    out.sort(key=lambda c: c["balance"], reverse=True)
    return out


@dashboard_read(list)
def komite_recent_transactions(db: Session, actor: Optional[SessionUser],
                               limit: int = app_settings.RECENT_LIMIT) -> List[dict]:
    require_role(actor, ROLE_KOMITE)
    cats = category_map(db)
    txns = (
        db.query(Transaction)
        .filter(komite_visible())
        .order_by(Transaction.date.desc(), Transaction.id.desc())
        .limit(limit)
        .all()
    )
    return [transaction_row(t, cats) for t in txns]


@dashboard_read(lambda: {"transactions": [], "current_tabungan": 0})
def santri_history(db: Session, actor: Optional[SessionUser]) -> dict:
    require_role(actor, ROLE_SANTRI)
    cats = category_map(db)
    txns = (
        db.query(Transaction)
        .filter(Transaction.student_id == actor.user_id)
        .order_by(Transaction.date.desc(), Transaction.id.desc())
        .all()
    )
    return {
        "transactions": [transaction_row(t, cats) for t in txns],
        "current_tabungan": student_savings_balance(db, actor.user_id),
    }
