# rqm/services/classifier.py
"""
Ordnet Kategorie-Codes einer fachlichen Art zu.

Reihenfolge der Heuristik: Tabungan > SPP > Kas > Typ (INCOME/EXPENSE).
Die Art wird beim Anlegen einer Kategorie einmal berechnet und in
``TransactionCategory.kind`` gespeichert; ein spaeteres Umbenennen
klassifiziert die Kategorie daher nicht neu.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from rqm.config import settings as app_settings
from rqm.models.entities import TransactionCategory, TYPE_EXPENSE


class CategoryKind(str, Enum):
    SPP = "SPP"
    KAS = "KAS"
    SAVINGS_DEPOSIT = "SAVINGS_DEPOSIT"
    SAVINGS_WITHDRAWAL = "SAVINGS_WITHDRAWAL"
    OTHER_INCOME = "OTHER_INCOME"
    OTHER_EXPENSE = "OTHER_EXPENSE"


SAVINGS_KINDS = {CategoryKind.SAVINGS_DEPOSIT, CategoryKind.SAVINGS_WITHDRAWAL}
INCOME_KINDS = {CategoryKind.SPP, CategoryKind.KAS, CategoryKind.SAVINGS_DEPOSIT, CategoryKind.OTHER_INCOME}


def _name(name: Optional[str]) -> str:
    return (name or "").lower()


def is_savings(code: str, name: Optional[str] = None) -> bool:
    return code in app_settings.SAVINGS_CODES or "tabungan" in _name(name)


def is_spp(code: str, name: Optional[str] = None) -> bool:
    return code in app_settings.SPP_CODES or "spp" in _name(name)


def is_kas(code: str, name: Optional[str] = None) -> bool:
    return code in app_settings.KAS_CODES or "kas" in _name(name)


def classify(code: str, name: Optional[str], type_: Optional[str]) -> CategoryKind:
    if is_savings(code, name):
        if code == app_settings.CODE_PENARIKAN_TABUNGAN or type_ == TYPE_EXPENSE:
            return CategoryKind.SAVINGS_WITHDRAWAL
        return CategoryKind.SAVINGS_DEPOSIT
    if is_spp(code, name):
        return CategoryKind.SPP
    if is_kas(code, name):
        return CategoryKind.KAS
    if type_ == TYPE_EXPENSE:
        return CategoryKind.OTHER_EXPENSE
    return CategoryKind.OTHER_INCOME


def kind_of(category: TransactionCategory) -> CategoryKind:
    # Zeilen ohne gespeicherte Art (Altbestand) fallen auf die Heuristik zurueck
    if category.kind:
        return CategoryKind(category.kind)
    return classify(category.code, category.name, category.type)


def is_income(kind: CategoryKind) -> bool:
    return kind in INCOME_KINDS


def category_map(db: Session) -> dict[str, TransactionCategory]:
    """Alle Kategorien (auch inaktive) nach Code; pro Aufruf frisch gelesen."""
    return {c.code: c for c in db.query(TransactionCategory).all()}


def kind_map(db: Session) -> dict[str, CategoryKind]:
    return {code: kind_of(c) for code, c in category_map(db).items()}


def codes_of_kind(db: Session, *kinds: CategoryKind) -> list[str]:
    wanted = set(kinds)
    return sorted(code for code, kind in kind_map(db).items() if kind in wanted)


def codes_where(kinds: dict[str, CategoryKind], wanted: Iterable[CategoryKind]) -> list[str]:
    wanted = set(wanted)
    return sorted(code for code, kind in kinds.items() if kind in wanted)
