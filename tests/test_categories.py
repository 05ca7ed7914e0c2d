from datetime import date

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Query

from rqm.models.entities import TransactionCategory
from rqm.services import categories
from rqm.services.errors import (
    CategoryInUse, InvalidAmount, InvalidCategory, StorageError, Unauthorized, ValidationError,
)
from rqm.services.transactions import create_transaction


def _by_code(db, code):
    return db.query(TransactionCategory).filter(TransactionCategory.code == code).one()


def test_code_from_name():
    assert categories.code_from_name("  Infaq Raport   Santri ") == "INFAQ_RAPORT_SANTRI"


def test_create_stores_kind(db, as_admin):
    category = categories.create_category(db, as_admin, name="Iuran Kas Kelas", type="INCOME")
    assert category.code == "IURAN_KAS_KELAS"
    assert category.kind == "KAS"
    assert category.is_system is False


def test_explicit_kind_overrides_heuristic(db, as_admin):
    category = categories.create_category(db, as_admin, name="Iuran Bulanan", type="INCOME", kind="SPP")
    assert category.kind == "SPP"


def test_rename_keeps_code_and_kind(db, as_admin):
    category = categories.create_category(db, as_admin, name="Uang Kas Kelas", type="INCOME")
    categories.update_category(db, as_admin, category.id, name="Iuran Kelas", default_amount="5.000")

    db.refresh(category)
    assert category.code == "UANG_KAS_KELAS"
    assert category.name == "Iuran Kelas"
    assert category.kind == "KAS"
    assert category.default_amount == 5000


def test_create_validation(db, as_admin, as_komite):
    categories.create_category(db, as_admin, name="Donasi", type="INCOME")
    with pytest.raises(InvalidCategory):
        categories.create_category(db, as_admin, name="donasi", type="INCOME")
    with pytest.raises(InvalidCategory):
        categories.create_category(db, as_admin, name="Hibah", type="TRANSFER")
    with pytest.raises(ValidationError):
        categories.create_category(db, as_admin, name="   ", type="INCOME")
    with pytest.raises(InvalidAmount):
        categories.create_category(db, as_admin, name="Denda", type="INCOME", default_amount=-1)
    with pytest.raises(Unauthorized):
        categories.create_category(db, as_komite, name="Sedekah", type="INCOME")


def test_system_category_cannot_be_deleted(db, as_admin):
    with pytest.raises(InvalidCategory):
        categories.delete_category(db, as_admin, _by_code(db, "SPP").id)


def test_referenced_category_cannot_be_deleted(db, as_admin):
    category = categories.create_category(db, as_admin, name="Donasi", type="INCOME")
    create_transaction(db, as_admin, type="DONASI", amount=1000, date=date(2025, 3, 5))

    with pytest.raises(CategoryInUse):
        categories.delete_category(db, as_admin, category.id)

    unused = categories.create_category(db, as_admin, name="Hibah", type="INCOME")
    categories.delete_category(db, as_admin, unused.id)
    assert db.query(TransactionCategory).filter(TransactionCategory.code == "HIBAH").first() is None


def test_categories_for_role(db, as_admin, as_komite):
    komite_codes = {c.code for c in categories.categories_for_role(db, as_komite, "KOMITE")}
    assert "SPP" not in komite_codes
    assert "PENGELUARAN_ADMIN" not in komite_codes
    assert "TABUNGAN" in komite_codes

    expense = categories.categories_for_role(db, as_admin, "ADMIN", "EXPENSE")
    assert {c.code for c in expense} == {"PENARIKAN_TABUNGAN", "PENGELUARAN_KOMITE", "PENGELUARAN_ADMIN"}


def test_inactive_categories_are_hidden(db, as_admin):
    category = categories.create_category(db, as_admin, name="Donasi", type="INCOME")
    categories.update_category(db, as_admin, category.id, is_active=False)

    active = {c.code for c in categories.categories_for_role(db, as_admin, "ADMIN")}
    assert "DONASI" not in active
    assert "DONASI" in {c.code for c in categories.all_categories(db, as_admin)}


def test_create_storage_failure_rolls_back(db, as_admin, monkeypatch, caplog):
    def broken(self):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(Query, "first", broken)
    with pytest.raises(StorageError):
        categories.create_category(db, as_admin, name="Infaq Raport", type="INCOME")
    monkeypatch.undo()

    assert "Storage failure during create category" in caplog.text
    assert db.query(TransactionCategory).filter(TransactionCategory.code == "INFAQ_RAPORT").count() == 0
