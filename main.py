from __future__ import annotations

import logging
import datetime as dt
from datetime import date
from typing import List, Optional

from fastapi import FastAPI, Request, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware
from sqlalchemy.orm import Session

from rqm.config import settings as app_settings
from rqm.models.base import get_db
from rqm.models.entities import TransactionCategory, Transaction
from rqm.services import balances, categories, handover, installments, transactions, users
from rqm.services.auth import SessionUser, authenticate_user, login_user, logout_user, session_user
from rqm.services.db_init import init_db
from rqm.services.errors import RqmError, Unauthorized, NotFound, StorageError

logging.basicConfig(
    level=app_settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("rqm")

# ------------------------------------------------------------------------------
# App / Middleware
# ------------------------------------------------------------------------------
app = FastAPI(title=app_settings.APP_NAME, version=app_settings.APP_VERSION)
app.add_middleware(SessionMiddleware, secret_key=app_settings.SECRET_KEY,
                   session_cookie=app_settings.SESSION_COOKIE)


@app.on_event("startup")
def _startup():
    init_db()


@app.exception_handler(RqmError)
def _rqm_error(request: Request, exc: RqmError):
    if isinstance(exc, Unauthorized):
        status = 403
    elif isinstance(exc, NotFound):
        status = 404
    elif isinstance(exc, StorageError):
        status = 500
    else:
        status = 400
    return JSONResponse({"ok": False, "error": exc.message, "code": exc.code}, status_code=status)


def current_actor(request: Request) -> Optional[SessionUser]:
    return session_user(request)

# ------------------------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------------------------
class LoginIn(BaseModel):
    username: str
    password: str


class TransactionIn(BaseModel):
    type: str
    amount: Optional[int] = None
    date: dt.date
    description: Optional[str] = None
    student_id: Optional[int] = None
    teacher_id: Optional[int] = None


class MassTransactionIn(BaseModel):
    type: str
    amount: Optional[int] = None
    date: dt.date
    description: Optional[str] = None
    student_ids: List[int] = Field(default_factory=list)


class TransactionUpdateIn(BaseModel):
    type: Optional[str] = None
    amount: Optional[int] = None
    date: Optional[dt.date] = None
    description: Optional[str] = None


class BulkDeleteIn(BaseModel):
    ids: List[int]


class CategoryIn(BaseModel):
    name: str
    type: str
    show_to_komite: bool = True
    show_to_admin: bool = True
    requires_handover: Optional[bool] = None
    default_amount: int = 0
    kind: Optional[str] = None


class CategoryUpdateIn(BaseModel):
    name: Optional[str] = None
    show_to_komite: Optional[bool] = None
    show_to_admin: Optional[bool] = None
    is_active: Optional[bool] = None
    requires_handover: Optional[bool] = None
    default_amount: Optional[int] = None


class InstallmentIn(BaseModel):
    default_amount: int


class InstallmentPaymentIn(BaseModel):
    year: int
    month: int = Field(ge=0, le=11)
    amount: int
    description: Optional[str] = None


class MemberIn(BaseModel):
    name: str
    username: str
    role: str
    password: Optional[str] = None
    parent_name: Optional[str] = None
    subject: Optional[str] = None
    halaqah_id: Optional[int] = None
    shift_id: Optional[int] = None
    is_active: bool = True


def _category(c: TransactionCategory) -> dict:
    return {
        "id": c.id, "code": c.code, "name": c.name, "type": c.type, "kind": c.kind,
        "is_active": c.is_active, "requires_handover": c.requires_handover,
        "default_amount": c.default_amount, "show_to_komite": c.show_to_komite,
        "show_to_admin": c.show_to_admin, "is_system": c.is_system,
    }


def _txn(t: Transaction) -> dict:
    return {
        "id": t.id, "type": t.type, "amount": t.amount, "date": t.date, "description": t.description,
        "student_id": t.student_id, "teacher_id": t.teacher_id,
        "is_handover": t.is_handover, "handover_status": t.handover_status,
    }

# ------------------------------------------------------------------------------
# Login
# ------------------------------------------------------------------------------
@app.post("/login")
def login(request: Request, body: LoginIn, db: Session = Depends(get_db)):
    user = authenticate_user(db, body.username, body.password)
    if not user:
        return JSONResponse({"ok": False, "error": "Username atau password salah"}, status_code=401)
    login_user(request, user)
    return {"ok": True, "user_id": user.id, "role": user.role}


@app.post("/logout")
def logout(request: Request):
    logout_user(request)
    return {"ok": True}

# ------------------------------------------------------------------------------
# Kategorien
# ------------------------------------------------------------------------------
@app.get("/categories")
def categories_list(role: str, type: Optional[str] = None, db: Session = Depends(get_db),
                    actor=Depends(current_actor)):
    return [_category(c) for c in categories.categories_for_role(db, actor, role, type)]


@app.get("/categories/all")
def categories_all(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return [_category(c) for c in categories.all_categories(db, actor)]


@app.post("/categories")
def categories_create(body: CategoryIn, db: Session = Depends(get_db), actor=Depends(current_actor)):
    c = categories.create_category(db, actor, **body.model_dump())
    return {"ok": True, "category": _category(c)}


@app.put("/categories/{category_id}")
def categories_update(category_id: int, body: CategoryUpdateIn, db: Session = Depends(get_db),
                      actor=Depends(current_actor)):
    c = categories.update_category(db, actor, category_id, **body.model_dump())
    return {"ok": True, "category": _category(c)}


@app.delete("/categories/{category_id}")
def categories_delete(category_id: int, db: Session = Depends(get_db), actor=Depends(current_actor)):
    categories.delete_category(db, actor, category_id)
    return {"ok": True}

# ------------------------------------------------------------------------------
# Transaksi
# ------------------------------------------------------------------------------
@app.post("/transactions")
def transactions_create(body: TransactionIn, db: Session = Depends(get_db), actor=Depends(current_actor)):
    t = transactions.create_transaction(db, actor, **body.model_dump())
    return {"ok": True, "transaction": _txn(t)}


@app.post("/transactions/mass")
def transactions_mass(body: MassTransactionIn, db: Session = Depends(get_db), actor=Depends(current_actor)):
    created = transactions.create_mass_transaction(db, actor, **body.model_dump())
    return {"ok": True, "count": len(created)}


@app.get("/transactions")
def transactions_list(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    category_code: Optional[str] = None,
    type: Optional[str] = None,
    search: Optional[str] = None,
    creator_role: Optional[str] = None,
    page: int = 1,
    page_size: int = app_settings.DEFAULT_PAGE_SIZE,
    db: Session = Depends(get_db),
    actor=Depends(current_actor),
):
    filters = transactions.TransactionFilters(
        start_date=start_date, end_date=end_date, category_code=category_code, type=type,
        search=search, creator_role=creator_role, page=page, page_size=page_size,
    )
    return transactions.filtered_transactions(db, actor, filters)


@app.put("/transactions/{transaction_id}")
def transactions_update(transaction_id: int, body: TransactionUpdateIn, db: Session = Depends(get_db),
                        actor=Depends(current_actor)):
    t = transactions.update_transaction(db, actor, transaction_id, **body.model_dump())
    return {"ok": True, "transaction": _txn(t)}


@app.delete("/transactions/{transaction_id}")
def transactions_delete(transaction_id: int, db: Session = Depends(get_db), actor=Depends(current_actor)):
    transactions.delete_transaction(db, actor, transaction_id)
    return {"ok": True}


@app.post("/transactions/bulk-delete")
def transactions_bulk_delete(body: BulkDeleteIn, db: Session = Depends(get_db), actor=Depends(current_actor)):
    count = transactions.bulk_delete_transactions(db, actor, body.ids)
    return {"ok": True, "deleted_count": count}

# ------------------------------------------------------------------------------
# Serah Terima
# ------------------------------------------------------------------------------
@app.get("/handover")
def handover_overview(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return handover.handover_stats(db, actor)


@app.post("/handover")
def handover_perform(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return {"ok": True} | handover.perform_handover(db, actor)

# ------------------------------------------------------------------------------
# Dashboard / Salden / Monitoring
# ------------------------------------------------------------------------------
@app.get("/dashboard/admin")
def dashboard_admin(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return balances.admin_stats(db, actor) | {
        "top_savers": balances.top_savers(db, actor),
        "handover": handover.handover_stats(db, actor),
    }


@app.get("/dashboard/komite")
def dashboard_komite(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return balances.komite_stats(db, actor) | {
        "recent_transactions": balances.komite_recent_transactions(db, actor),
    }


@app.get("/balances/operational")
def balance_operational(role: Optional[str] = None, db: Session = Depends(get_db), actor=Depends(current_actor)):
    return {"balance": balances.operational_balance(db, actor, role)}


@app.get("/balances/savings")
def balance_savings(student_id: Optional[int] = None, db: Session = Depends(get_db), actor=Depends(current_actor)):
    return {"balance": balances.savings_balance(db, actor, student_id)}


@app.get("/balances/pending")
def balance_pending(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return {"pending_at_admin": balances.pending_at_admin(db, actor)}


@app.get("/balances/top-savers")
def balance_top_savers(limit: int = app_settings.TOP_SAVERS_LIMIT, db: Session = Depends(get_db),
                       actor=Depends(current_actor)):
    return balances.top_savers(db, actor, limit)


@app.get("/monitoring/monthly")
def monitoring_monthly(year: int, halaqah_id: Optional[int] = None, db: Session = Depends(get_db),
                       actor=Depends(current_actor)):
    return balances.monthly_payment_status(db, actor, year, halaqah_id)


@app.get("/monitoring/tabungan")
def monitoring_tabungan(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return balances.tabungan_balances(db, actor)


@app.get("/monitoring/students")
def monitoring_students(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return balances.student_monitoring(db, actor)


@app.get("/komite/categories")
def komite_categories(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return balances.category_balances(db, actor)


@app.get("/komite/reports")
def komite_reports(start: date, end: date, db: Session = Depends(get_db), actor=Depends(current_actor)):
    return transactions.komite_reports(db, actor, start, end)


@app.get("/santri/history")
def santri_history(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return balances.santri_history(db, actor)

# ------------------------------------------------------------------------------
# Cicilan
# ------------------------------------------------------------------------------
@app.get("/installments/students")
def installment_students(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return installments.students_for_installment(db, actor)


@app.get("/installments/enabled")
def installment_enabled(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return installments.enabled_students(db, actor)


@app.get("/installments/{student_id}")
def installment_detail(student_id: int, year: int, db: Session = Depends(get_db), actor=Depends(current_actor)):
    return installments.installment_data(db, actor, student_id, year)


@app.post("/installments/{student_id}/enable")
def installment_enable(student_id: int, body: InstallmentIn, db: Session = Depends(get_db),
                       actor=Depends(current_actor)):
    s = installments.enable(db, actor, student_id, body.default_amount)
    return {"ok": True, "default_amount": s.default_amount, "is_active": s.is_active}


@app.post("/installments/{student_id}/disable")
def installment_disable(student_id: int, db: Session = Depends(get_db), actor=Depends(current_actor)):
    installments.disable(db, actor, student_id)
    return {"ok": True}


@app.put("/installments/{student_id}/amount")
def installment_amount(student_id: int, body: InstallmentIn, db: Session = Depends(get_db),
                       actor=Depends(current_actor)):
    s = installments.update_default_amount(db, actor, student_id, body.default_amount)
    return {"ok": True, "default_amount": s.default_amount}


@app.post("/installments/{student_id}/payments")
def installment_pay(student_id: int, body: InstallmentPaymentIn, db: Session = Depends(get_db),
                    actor=Depends(current_actor)):
    p = installments.record_payment(db, actor, student_id, body.year, body.month, body.amount, body.description)
    return {"ok": True, "payment_id": p.id}


@app.delete("/installments/payments/{payment_id}")
def installment_payment_delete(payment_id: int, db: Session = Depends(get_db), actor=Depends(current_actor)):
    installments.delete_payment(db, actor, payment_id)
    return {"ok": True}

# ------------------------------------------------------------------------------
# Santri / Guru
# ------------------------------------------------------------------------------
@app.get("/students")
def students(db: Session = Depends(get_db), actor=Depends(current_actor)):
    return users.list_students(db, actor)


@app.get("/gurus")
def gurus(db: Session = Depends(get_db)):
    return users.list_gurus(db)


@app.get("/users")
def users_list(role: str, db: Session = Depends(get_db), actor=Depends(current_actor)):
    return users.users_by_role(db, actor, role.upper())


@app.post("/members")
def members_create(body: MemberIn, db: Session = Depends(get_db), actor=Depends(current_actor)):
    u = users.create_member(db, actor, **body.model_dump())
    return {"ok": True, "id": u.id}

# ------------------------------------------------------------------------------
# Dev-Server
# ------------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
