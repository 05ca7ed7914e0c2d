import pytest
from fastapi.testclient import TestClient

from main import app
from rqm.models.base import get_db


@pytest.fixture
def client(db):
    def _db():
        yield db

    app.dependency_overrides[get_db] = _db
    # ohne "with": kein Startup, also keine Datei-DB
    yield TestClient(app)
    app.dependency_overrides.clear()


def _login(client, username, password="rahasia"):
    res = client.post("/login", json={"username": username, "password": password})
    assert res.status_code == 200, res.text
    return res.json()


def test_login_and_logout(client, admin):
    res = client.post("/login", json={"username": "admin", "password": "falsch"})
    assert res.status_code == 401

    assert _login(client, "admin")["role"] == "ADMIN"
    assert client.get("/categories/all").status_code == 200

    client.post("/logout")
    res = client.get("/categories/all")
    assert res.status_code == 403
    assert res.json()["code"] == "Unauthorized"


def test_anonymous_mutation_is_rejected(client):
    res = client.post("/transactions", json={"type": "PEMASUKAN_LAIN", "amount": 1000, "date": "2025-03-05"})
    assert res.status_code == 403
    assert res.json() == {"ok": False, "error": "Unauthorized", "code": "Unauthorized"}


def test_anonymous_dashboard_read_is_empty(client):
    res = client.get("/dashboard/komite")
    assert res.status_code == 200
    body = res.json()
    assert body["current_balance"] == 0
    assert body["recent_transactions"] == []
    assert client.get("/balances/operational").json() == {"balance": 0}


def test_spp_duplicate_over_http(client, admin, santri):
    _login(client, "admin")
    payload = {"type": "SPP", "amount": 150000, "student_id": santri.id, "date": "2025-03-05"}

    first = client.post("/transactions", json=payload)
    assert first.status_code == 200
    assert first.json()["transaction"]["handover_status"] == "NONE"

    second = client.post("/transactions", json=payload | {"date": "2025-03-20"})
    assert second.status_code == 400
    assert second.json()["code"] == "DuplicateMonthlyPayment"
    assert "Maret 2025" in second.json()["error"]

    third = client.post("/transactions", json=payload | {"date": "2025-04-01"})
    assert third.status_code == 200


def test_missing_rows_map_to_404(client, admin):
    _login(client, "admin")
    res = client.delete("/transactions/999")
    assert res.status_code == 404
    assert res.json()["code"] == "NotFound"


def test_handover_flow(client, admin, komite, santri):
    _login(client, "admin")
    client.post("/transactions", json={"type": "KAS", "amount": 10000, "student_id": santri.id, "date": "2025-03-05"})
    assert client.get("/balances/pending").json() == {"pending_at_admin": 10000}
    assert client.get("/handover").json()["count"] == 1

    res = client.post("/handover")
    assert res.json() == {"ok": True, "count": 1, "total": 10000}

    _login(client, "komite")
    assert client.post("/handover").status_code == 403
    dashboard = client.get("/dashboard/komite").json()
    assert dashboard["current_balance"] == 10000
    assert dashboard["pending_at_admin"] == 0


def test_installment_flow(client, admin, santri):
    _login(client, "admin")
    assert client.post(f"/installments/{santri.id}/enable", json={"default_amount": 100000}).status_code == 200
    res = client.post(f"/installments/{santri.id}/payments", json={"year": 2025, "month": 0, "amount": 50000})
    assert res.status_code == 200
    assert client.post(f"/installments/{santri.id}/payments",
                       json={"year": 2025, "month": 12, "amount": 50000}).status_code == 422

    _login(client, "1001")
    data = client.get(f"/installments/{santri.id}", params={"year": 2025}).json()
    assert data["monthly_data"][0]["status"] == "partial"
    assert data["monthly_data"][0]["remaining"] == 50000


def test_santri_views(client, admin, santri):
    _login(client, "admin")
    client.post("/transactions", json={"type": "TABUNGAN", "amount": 25000, "student_id": santri.id,
                                       "date": "2025-03-05"})

    _login(client, "1001")
    assert client.get("/balances/savings").json() == {"balance": 25000}
    history = client.get("/santri/history").json()
    assert history["current_tabungan"] == 25000
    assert [t["type"] for t in history["transactions"]] == ["TABUNGAN"]


def test_category_management(client, admin):
    _login(client, "admin")
    res = client.post("/categories", json={"name": "Infaq Raport", "type": "INCOME", "default_amount": 25000})
    assert res.status_code == 200
    created = res.json()["category"]
    assert created["code"] == "INFAQ_RAPORT"
    assert created["kind"] == "OTHER_INCOME"

    komite_list = client.get("/categories", params={"role": "KOMITE", "type": "INCOME"}).json()
    assert "INFAQ_RAPORT" in {c["code"] for c in komite_list}

    spp = next(c for c in client.get("/categories/all").json() if c["code"] == "SPP")
    res = client.delete(f"/categories/{spp['id']}")
    assert res.status_code == 400
    assert res.json()["code"] == "InvalidCategory"


def test_users_by_role_route(client, admin, komite, santri, guru):
    _login(client, "admin")
    res = client.get("/users", params={"role": "guru"})
    assert res.status_code == 200
    assert [(u["name"], u["username"]) for u in res.json()] == [("Ustadz Hasan", "G01")]
    assert client.get("/users", params={"role": "wali"}).status_code == 400

    _login(client, "komite")
    assert client.get("/users", params={"role": "SANTRI"}).status_code == 403
