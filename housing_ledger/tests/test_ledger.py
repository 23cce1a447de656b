import pytest
from httpx import AsyncClient

@pytest.mark.asyncio
async def test_create_account(client: AsyncClient):
    response = await client.post("/api/accounts", json={"code": "5300", "name": "Security Expense", "type": "Expense"})
    assert response.status_code == 201
    data = response.json()
    assert data["code"] == "5300"
    assert data["type"] == "Expense"

    resp = await client.get("/api/accounts/5300")
    assert resp.status_code == 200
    assert resp.json()["name"] == "Security Expense"

@pytest.mark.asyncio
async def test_duplicate_account(client: AsyncClient):
    resp = await client.post("/api/accounts", json={"code": "1000", "name": "Cash Again", "type": "Asset"})
    assert resp.status_code == 409
    assert "1000" in resp.json()["detail"]

@pytest.mark.asyncio
async def test_seed_is_idempotent(client: AsyncClient):
    resp = await client.post("/api/accounts/seed")
    assert resp.status_code == 200
    assert resp.json() == {"added": 0}

    resp = await client.get("/api/accounts", params={"type": "Income"})
    assert [a["code"] for a in resp.json()] == ["4000", "4100", "4200", "4900"]

@pytest.mark.asyncio
async def test_manual_entry_round_trip(client: AsyncClient):
    entry = {
        "date": "2025-01-02",
        "description": "Owner capital",
        "entries": [
            {"account_code": "1001", "debit": "5000.00"},
            {"account_code": "3000", "credit": "5000.00"},
        ],
        "metadata": {"kind": "manual", "extra": {"memo": "opening"}},
    }
    resp = await client.post("/api/entries", json=entry)
    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "posted"
    assert len(data["entries"]) == 2
    assert data["metadata"]["kind"] == "manual"

    resp = await client.get(f"/api/entries/{data['transaction_id']}")
    assert resp.status_code == 200
    assert resp.json()["id"] == data["id"]

    resp = await client.get("/api/accounts/1001/lines")
    lines = resp.json()
    assert len(lines) == 1
    assert float(lines[0]["debit"]) == 5000.00

    resp = await client.delete(f"/api/entries/{data['id']}")
    assert resp.json()["status"] == "deleted"
    resp = await client.get("/api/entries")
    assert resp.json() == []

@pytest.mark.asyncio
async def test_unbalanced_entry(client: AsyncClient):
    resp = await client.post("/api/entries", json={
        "date": "2025-01-02",
        "entries": [
            {"account_code": "1000", "debit": "100.00"},
            {"account_code": "3000", "credit": "80.00"},
        ],
    })
    assert resp.status_code == 400
    body = resp.json()
    assert "Unbalanced" in body["detail"]
    assert body["context"]["account_codes"] == ["1000", "3000"]

@pytest.mark.asyncio
async def test_expense_with_unknown_account(client: AsyncClient):
    resp = await client.post("/api/expenses", json={
        "vendor_id": "v-1",
        "account_code": "5999",
        "amount": "250.00",
        "date": "2025-06-01",
    })
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Account not found: 5999"

    resp = await client.get("/api/entries")
    assert resp.json() == []

@pytest.mark.asyncio
async def test_expense_must_hit_expense_account(client: AsyncClient):
    resp = await client.post("/api/expenses", json={
        "vendor_id": "v-1",
        "account_code": "4000",
        "amount": "250.00",
        "date": "2025-06-01",
    })
    assert resp.status_code == 400

    resp = await client.post("/api/expenses", json={
        "vendor_id": "v-1",
        "account_code": "5100",
        "amount": "250.00",
        "date": "2025-06-01",
    })
    assert resp.status_code == 201
    codes = {(line["account_code"], float(line["debit"]), float(line["credit"])) for line in resp.json()["entries"]}
    assert codes == {("5100", 250.0, 0.0), ("2000", 0.0, 250.0)}

@pytest.mark.asyncio
async def test_student_flow(client: AsyncClient):
    resp = await client.post("/api/residences", json={
        "id": "oak",
        "name": "Oak Hall",
        "admin_fee": "0",
        "rooms": [{"name": "R1", "price": "180.00"}],
    })
    assert resp.status_code == 201
    assert resp.json()["rooms"][0]["name"] == "R1"

    resp = await client.post("/api/students", json={
        "id": "S",
        "name": "Student S",
        "residence_id": "oak",
        "room_name": "R1",
        "lease_start": "2025-04-01",
        "lease_end": "2026-04-30",
    })
    assert resp.status_code == 201

    for month in (5, 6, 7):
        resp = await client.post("/api/accruals", json={"student_id": "S", "residence_id": "oak", "month": month, "year": 2025})
        assert resp.status_code == 200
        assert resp.json()["created"] is True

    # Accruing again returns the same entry
    resp = await client.post("/api/accruals", json={"student_id": "S", "residence_id": "oak", "month": 7, "year": 2025})
    assert resp.json()["created"] is False

    resp = await client.post("/api/payments", json={"student_id": "S", "amount": "400.00", "date": "2025-08-06"})
    assert resp.status_code == 201
    allocations = [(a["month"], a["component"], float(a["amount_applied"])) for a in resp.json()["allocations"]]
    assert allocations == [("2025-05", "rent", 180.0), ("2025-06", "rent", 180.0), ("2025-07", "rent", 40.0)]

    resp = await client.get("/api/students/S/outstanding", params={"as_of_month": "2025-07"})
    assert resp.status_code == 200
    months = {m["month"]: float(m["total_outstanding"]) for m in resp.json()["months"]}
    assert months == {"2025-05": 0.0, "2025-06": 0.0, "2025-07": 140.0}

    resp = await client.get("/api/reports/balance-sheet", params={"as_of": "2025-08-31"})
    assert resp.json()["is_balanced"] is True

@pytest.mark.asyncio
async def test_accrual_missing_pricing(client: AsyncClient):
    await client.post("/api/residences", json={"id": "elm", "name": "Elm", "rooms": [{"name": "R9"}]})
    await client.post("/api/students", json={"id": "E1", "name": "E", "residence_id": "elm", "room_name": "R9"})

    resp = await client.post("/api/accruals", json={"student_id": "E1", "residence_id": "elm", "month": 6, "year": 2025})
    assert resp.status_code == 422
    assert resp.json()["context"]["student_id"] == "E1"

@pytest.mark.asyncio
async def test_payment_unknown_student(client: AsyncClient):
    resp = await client.post("/api/payments", json={"student_id": "nobody", "amount": "10.00", "date": "2025-06-01"})
    assert resp.status_code == 404

@pytest.mark.asyncio
async def test_reconciliation_endpoints(client: AsyncClient):
    resp = await client.post("/api/reconciliation/month-settled", params={"dry_run": True})
    assert resp.status_code == 200
    assert resp.json()["scanned"] == 0

    resp = await client.get("/api/reconciliation/integrity")
    assert resp.status_code == 200
    assert resp.json()["findings"] == []

@pytest.mark.asyncio
async def test_duplicate_transaction_id_conflict(client: AsyncClient):
    entry = {
        "transaction_id": "CAP-001",
        "date": "2025-01-02",
        "entries": [
            {"account_code": "1001", "debit": "5000.00"},
            {"account_code": "3000", "credit": "5000.00"},
        ],
    }
    resp = await client.post("/api/entries", json=entry)
    assert resp.status_code == 201

    resp = await client.post("/api/entries", json=entry)
    assert resp.status_code == 409
    assert "CAP-001" in resp.json()["detail"]
    assert resp.json()["context"]["transaction_id"] == "CAP-001"

@pytest.mark.asyncio
async def test_cash_flow_report(client: AsyncClient):
    await client.post("/api/entries", json={
        "date": "2025-04-01",
        "entries": [
            {"account_code": "1000", "debit": "100.00"},
            {"account_code": "3000", "credit": "100.00"},
        ],
    })
    await client.post("/api/expenses", json={
        "vendor_id": "v-1",
        "account_code": "5000",
        "amount": "30.00",
        "date": "2025-05-09",
        "paid": True,
    })

    resp = await client.get("/api/reports/cash-flow", params={"month": 5, "year": 2025})
    assert resp.status_code == 200
    data = resp.json()
    assert float(data["opening_cash"]) == 100.0
    assert [(o["source"], float(o["amount"])) for o in data["outflows"]] == [("expense", 30.0)]
    assert data["inflows"] == []
    assert float(data["closing_cash"]) == 70.0

    resp = await client.get("/api/reports/cash-flow", params={"month": 13, "year": 2025})
    assert resp.status_code == 422
