# rqm/services/installments.py
"""
Cicilan: SPP in Raten.

Ein Santri mit aktiver Einstellung ist von der "eine SPP pro Monat"-Regel
ausgenommen. Raten werden pro (Jahr, Monat 0-11) gesammelt und gegen
``default_amount`` verglichen. Der Status wird immer gegen den aktuellen
``default_amount`` berechnet, auch fuer vergangene Monate.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from rqm.models.entities import SppInstallmentSettings, SppInstallmentPayment
from rqm.models.user import User, ROLE_ADMIN, ROLE_SANTRI
from rqm.services.auth import SessionUser, require_role
from rqm.services.currency import format_rupiah, to_rupiah
from rqm.services.errors import (
    InstallmentNotEnabled, InvalidAmount, NotFound, OutstandingBalance, Unauthorized, ValidationError,
    commit, guarded,
)

logger = logging.getLogger(__name__)

STATUS_PAID = "paid"
STATUS_PARTIAL = "partial"
STATUS_UNPAID = "unpaid"


def month_status(default_amount: int, total_paid: int) -> dict:
    if total_paid >= default_amount:
        status = STATUS_PAID
    elif total_paid > 0:
        status = STATUS_PARTIAL
    else:
        status = STATUS_UNPAID
    return {
        "default_amount": default_amount,
        "total_paid": total_paid,
        "remaining": max(0, default_amount - total_paid),
        "status": status,
    }


def active_settings(db: Session, student_id: int) -> Optional[SppInstallmentSettings]:
    return (
        db.query(SppInstallmentSettings)
        .filter(SppInstallmentSettings.student_id == student_id,
                SppInstallmentSettings.is_active == True)  # noqa: E712
        .first()
    )


def has_active_installment(db: Session, student_id: int) -> bool:
    return active_settings(db, student_id) is not None


def _positive(amount) -> int:
    value = to_rupiah(amount)
    if value <= 0:
        raise InvalidAmount()
    return value


def _paid_in_month(db: Session, student_id: int, year: int, month: int) -> int:
    total = (
        db.query(func.coalesce(func.sum(SppInstallmentPayment.amount), 0))
        .filter(SppInstallmentPayment.student_id == student_id,
                SppInstallmentPayment.year == year,
                SppInstallmentPayment.month == month)
        .scalar()
    )
    return int(total or 0)


# ---------- Einstellungen -------------------------------------------------

def enable(db: Session, actor: Optional[SessionUser], student_id: int, default_amount) -> SppInstallmentSettings:
    require_role(actor, ROLE_ADMIN)
    amount = _positive(default_amount)
    with guarded(db, "enable installment"):
        student = db.query(User).filter(User.id == student_id, User.role == ROLE_SANTRI).first()
        if not student:
            raise NotFound("Santri tidak ditemukan")

        settings = db.query(SppInstallmentSettings).filter(SppInstallmentSettings.student_id == student_id).first()
        if settings is None:
            settings = SppInstallmentSettings(student_id=student_id)
            db.add(settings)
        settings.default_amount = amount
        settings.is_active = True
    commit(db, "enable installment")
    logger.info("Installment enabled for student %s (%s)", student_id, amount)
    return settings


def disable(db: Session, actor: Optional[SessionUser], student_id: int,
            today: Optional[date] = None) -> SppInstallmentSettings:
    """Nur wenn der laufende Monat voll bezahlt ist; Historie bleibt erhalten."""
    require_role(actor, ROLE_ADMIN)
    today = today or date.today()
    with guarded(db, "disable installment"):
        settings = active_settings(db, student_id)
        if settings is None:
            raise InstallmentNotEnabled()

        paid = _paid_in_month(db, student_id, today.year, today.month - 1)
        if paid < settings.default_amount:
            remaining = settings.default_amount - paid
            raise OutstandingBalance(
                f"Cicilan bulan ini belum lunas. Sisa pembayaran: {format_rupiah(remaining)}"
            )

        settings.is_active = False
    commit(db, "disable installment")
    logger.info("Installment disabled for student %s", student_id)
    return settings


def update_default_amount(db: Session, actor: Optional[SessionUser], student_id: int, amount) -> SppInstallmentSettings:
    require_role(actor, ROLE_ADMIN)
    value = _positive(amount)
    with guarded(db, "update installment amount"):
        settings = active_settings(db, student_id)
        if settings is None:
            raise InstallmentNotEnabled()
        settings.default_amount = value
    commit(db, "update installment amount")
    return settings


# ---------- Zahlungen -----------------------------------------------------

def record_payment(db: Session, actor: Optional[SessionUser], student_id: int, year: int, month: int,
                   amount, description: Optional[str] = None) -> SppInstallmentPayment:
    # Ueberzahlung ist erlaubt
    require_role(actor, ROLE_ADMIN)
    if not 0 <= int(month) <= 11:
        raise ValidationError("Bulan tidak valid")
    value = _positive(amount)
    with guarded(db, "record installment payment"):
        if not has_active_installment(db, student_id):
            raise InstallmentNotEnabled()

        payment = SppInstallmentPayment(
            student_id=student_id, year=int(year), month=int(month), amount=value,
            description=description, created_by_id=actor.user_id,
        )
        db.add(payment)
    commit(db, "record installment payment")
    return payment


def delete_payment(db: Session, actor: Optional[SessionUser], payment_id: int) -> None:
    require_role(actor, ROLE_ADMIN)
    with guarded(db, "delete installment payment"):
        payment = db.get(SppInstallmentPayment, payment_id)
        if payment is None:
            raise NotFound("Pembayaran cicilan tidak ditemukan")
        db.delete(payment)
    commit(db, "delete installment payment")


# ---------- Lesen ---------------------------------------------------------

def monthly_status(db: Session, student_id: int, year: int) -> Optional[List[dict]]:
    settings = active_settings(db, student_id)
    if settings is None:
        return None
    payments = (
        db.query(SppInstallmentPayment)
        .filter(SppInstallmentPayment.student_id == student_id, SppInstallmentPayment.year == year)
        .order_by(SppInstallmentPayment.month.asc(), SppInstallmentPayment.created_at.asc(),
                  SppInstallmentPayment.id.asc())
        .all()
    )
    out = []
    for month in range(12):
        month_payments = [p for p in payments if p.month == month]
        row = month_status(settings.default_amount, sum(p.amount for p in month_payments))
        row["month"] = month
        row["payments"] = [_payment_row(p) for p in month_payments]
        out.append(row)
    return out


def _payment_row(p: SppInstallmentPayment) -> dict:
    return {
        "id": p.id,
        "year": p.year,
        "month": p.month,
        "amount": p.amount,
        "description": p.description,
        "created_by": p.created_by.name if p.created_by else None,
        "created_at": p.created_at,
    }


def installment_data(db: Session, actor: Optional[SessionUser], student_id: int, year: int) -> Optional[dict]:
    """Admin, oder der Santri selbst."""
    if actor is None or not (actor.role == ROLE_ADMIN or (actor.role == ROLE_SANTRI and actor.user_id == student_id)):
        raise Unauthorized()
    settings = active_settings(db, student_id)
    if settings is None:
        return None
    months = monthly_status(db, student_id, year)
    return {
        "settings": {"student_id": student_id, "default_amount": settings.default_amount,
                     "is_active": settings.is_active},
        "monthly_data": months,
        "all_payments": [p for m in months for p in m["payments"]],
    }


def enabled_students(db: Session, actor: Optional[SessionUser]) -> List[dict]:
    require_role(actor, ROLE_ADMIN)
    rows = (
        db.query(User, SppInstallmentSettings)
        .join(SppInstallmentSettings, SppInstallmentSettings.student_id == User.id)
        .filter(User.role == ROLE_SANTRI, User.is_active == True,  # noqa: E712
                SppInstallmentSettings.is_active == True)  # noqa: E712
        .order_by(User.name.asc())
        .all()
    )
    return [
        {"id": u.id, "name": u.name, "username": u.username,
         "halaqah": u.halaqah.name if u.halaqah else None, "default_amount": s.default_amount}
        for u, s in rows
    ]


def students_for_installment(db: Session, actor: Optional[SessionUser]) -> List[dict]:
    require_role(actor, ROLE_ADMIN)
    students = (
        db.query(User)
        .filter(User.role == ROLE_SANTRI, User.is_active == True)  # noqa: E712
        .order_by(User.name.asc())
        .all()
    )
    settings = {s.student_id: s for s in db.query(SppInstallmentSettings).all()}
    out = []
    for u in students:
        s = settings.get(u.id)
        out.append({
            "id": u.id, "name": u.name, "username": u.username,
            "halaqah": u.halaqah.name if u.halaqah else None,
            "installment": None if s is None else {"default_amount": s.default_amount, "is_active": s.is_active},
        })
    return out
