import logging
from datetime import date, datetime

from sqlalchemy.exc import SQLAlchemyError

from rqm.models.user import ROLE_SANTRI
from rqm.services import balances, installments
from rqm.services.auth import SessionUser
from rqm.services.transactions import create_transaction


def test_savings_balance_scopes(db, admin, komite, santri, santri2, add_txn, as_admin, as_komite, as_santri):
    add_txn(admin, "TABUNGAN", 50000, student=santri)
    add_txn(komite, "TABUNGAN", 30000, student=santri2)
    add_txn(admin, "PENARIKAN_TABUNGAN", 20000, student=santri)

    assert balances.savings_balance(db, as_admin) == 60000
    assert balances.savings_balance(db, as_komite) == 60000
    assert balances.savings_balance(db, as_admin, santri.id) == 30000
    assert balances.savings_balance(db, as_santri) == 30000
    # Santri sehen nur den eigenen Saldo
    assert balances.savings_balance(db, as_santri, santri2.id) == 0


def test_dashboard_reads_return_defaults_for_wrong_role(db, as_santri, as_admin):
    assert balances.operational_balance(db, None) == 0
    assert balances.operational_balance(db, as_santri) == 0
    assert balances.pending_at_admin(db, as_santri) == 0
    assert balances.top_savers(db, as_santri) == []
    assert balances.category_balances(db, as_admin) == []
    assert balances.komite_stats(db, as_admin)["current_balance"] == 0
    assert balances.admin_stats(db, None)["active_students"] == 0
    assert balances.santri_history(db, as_admin) == {"transactions": [], "current_tabungan": 0}


def test_dashboard_read_logs_storage_failure(db, as_admin, monkeypatch, caplog):
    def boom(_db):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(balances, "category_map", boom)
    with caplog.at_level(logging.WARNING, logger="rqm.services.balances"):
        assert balances.operational_balance(db, as_admin) == 0
    assert "storage failure" in caplog.text


def test_unknown_category_is_ignored(db, admin, add_txn, as_admin, caplog):
    add_txn(admin, "PEMASUKAN_LAIN", 1000)
    add_txn(admin, "DIHAPUS", 99999)

    with caplog.at_level(logging.WARNING, logger="rqm.services.balances"):
        stats = balances.admin_stats(db, as_admin)
    assert stats["total_income"] == 1000
    assert "DIHAPUS" in caplog.text


def test_admin_stats(db, admin, santri, santri2, add_txn, as_admin):
    add_txn(admin, "SPP", 150000, student=santri)
    add_txn(admin, "PENGELUARAN_ADMIN", 20000)
    add_txn(admin, "KAS", 10000, student=santri, status="COMPLETED")

    stats = balances.admin_stats(db, as_admin)
    assert stats["total_income"] == 150000
    assert stats["total_expense"] == 20000
    assert stats["balance"] == 130000
    assert stats["operational_balance"] == -20000
    assert stats["active_students"] == 2
    assert stats["pending_at_admin"] == 0


def test_top_savers_order_and_ties(db, admin, make_user, add_txn, as_admin):
    ahmad = make_user(ROLE_SANTRI, name="Ahmad")
    budi = make_user(ROLE_SANTRI, name="Budi")
    citra = make_user(ROLE_SANTRI, name="Citra")
    dodi = make_user(ROLE_SANTRI, name="Dodi")
    make_user(ROLE_SANTRI, name="Eka")
    add_txn(admin, "TABUNGAN", 50000, student=ahmad)
    add_txn(admin, "TABUNGAN", 50000, student=budi)
    add_txn(admin, "TABUNGAN", 80000, student=citra)
    add_txn(admin, "TABUNGAN", 10000, student=dodi)
    add_txn(admin, "PENARIKAN_TABUNGAN", 10000, student=dodi)

    ranked = balances.top_savers(db, as_admin)
    assert [r["name"] for r in ranked] == ["Citra", "Ahmad", "Budi"]
    assert [r["name"] for r in balances.top_savers(db, as_admin, limit=2)] == ["Citra", "Ahmad"]


def test_monthly_payment_status(db, admin, santri, santri2, add_txn, as_admin, as_komite, as_santri):
    add_txn(admin, "SPP", 150000, when=datetime(2025, 3, 5), student=santri)
    add_txn(admin, "KAS", 10000, when=datetime(2025, 4, 30, 23, 59), student=santri)
    add_txn(admin, "SPP", 150000, when=datetime(2024, 5, 5), student=santri)
    installments.enable(db, as_admin, santri2.id, 100000)
    installments.record_payment(db, as_admin, santri2.id, 2025, 0, 100000)
    installments.record_payment(db, as_admin, santri2.id, 2025, 1, 50000)

    rows = balances.monthly_payment_status(db, as_admin, 2025)
    assert [r["name"] for r in rows] == ["Ahmad", "Budi"]
    ahmad, budi = rows

    assert ahmad["nis"] == "1001"
    assert ahmad["has_installment"] is False
    assert [m for m, paid in ahmad["spp_by_month"].items() if paid] == [2]
    assert [m for m, paid in ahmad["kas_by_month"].items() if paid] == [3]

    assert budi["has_installment"] is True
    assert budi["spp_by_month"][0] is True
    assert budi["spp_by_month"][1] is False

    komite_rows = balances.monthly_payment_status(db, as_komite, 2025)
    assert {r["nis"] for r in komite_rows} == {""}

    own = balances.monthly_payment_status(db, as_santri, 2025)
    assert [r["id"] for r in own] == [santri.id]


def test_monthly_payment_status_by_halaqah(db, make_user, as_admin):
    from rqm.models.user import Halaqah

    halaqah = Halaqah(name="Halaqah Umar")
    db.add(halaqah)
    db.commit()
    make_user(ROLE_SANTRI, name="Fajar", halaqah_id=halaqah.id)
    make_user(ROLE_SANTRI, name="Gilang")

    rows = balances.monthly_payment_status(db, as_admin, 2025, halaqah_id=halaqah.id)
    assert [(r["name"], r["halaqah"]) for r in rows] == [("Fajar", "Halaqah Umar")]


def test_student_monitoring(db, admin, santri, add_txn, as_komite):
    add_txn(admin, "SPP", 150000, when=datetime(2025, 1, 5), student=santri)
    add_txn(admin, "SPP", 150000, when=datetime(2025, 2, 5), student=santri)
    add_txn(admin, "KAS", 10000, student=santri)
    add_txn(admin, "TABUNGAN", 7000, student=santri)

    (row,) = balances.student_monitoring(db, as_komite)
    assert row["total_spp"] == 300000
    assert row["last_spp_date"] == datetime(2025, 2, 5)
    assert row["total_kas"] == 10000
    assert row["saldo_tabungan"] == 7000
    assert row["nis"] == ""


def test_category_balances_for_komite(db, admin, komite, santri, add_txn, as_komite):
    add_txn(komite, "TABUNGAN", 5000, student=santri)
    add_txn(admin, "TABUNGAN", 9000, student=santri, status="COMPLETED")
    add_txn(admin, "TABUNGAN", 4000, student=santri, status="PENDING")

    (tabungan,) = balances.category_balances(db, as_komite)
    assert tabungan["code"] == "TABUNGAN"
    assert tabungan["total_income"] == 14000
    assert tabungan["balance"] == 14000
    assert tabungan["transaction_count"] == 2


def test_komite_recent_and_santri_history(db, admin, komite, santri, santri2, add_txn, as_komite, as_santri):
    add_txn(komite, "PEMASUKAN_LAIN", 1000, when=datetime(2025, 3, 1))
    add_txn(admin, "PEMASUKAN_LAIN", 2000, when=datetime(2025, 3, 2))
    add_txn(admin, "TABUNGAN", 3000, student=santri)
    add_txn(admin, "TABUNGAN", 4000, student=santri2)

    recent = balances.komite_recent_transactions(db, as_komite)
    assert [r["amount"] for r in recent] == [1000]

    history = balances.santri_history(db, as_santri)
    assert [t["amount"] for t in history["transactions"]] == [3000]
    assert history["current_tabungan"] == 3000


def test_balances_are_recomputed_on_every_read(db, as_admin, santri):
    assert balances.savings_balance(db, as_admin) == 0
    create_transaction(db, as_admin, type="TABUNGAN", amount=12000, student_id=santri.id, date=date(2025, 3, 5))
    assert balances.savings_balance(db, as_admin) == 12000


def test_tabungan_balances_hide_nis_for_komite(db, admin, santri, add_txn, as_admin):
    add_txn(admin, "TABUNGAN", 5000, student=santri)
    komite_actor = SessionUser(user_id=admin.id, role="KOMITE")

    assert balances.tabungan_balances(db, as_admin)[0]["nis"] == "1001"
    row = balances.tabungan_balances(db, komite_actor)[0]
    assert row["nis"] == ""
    assert row["saldo_tabungan"] == 5000
