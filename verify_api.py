import asyncio
import httpx

BASE_URL = "http://localhost:8000/api"

async def main():
    async with httpx.AsyncClient() as client:
        print("Seeding chart of accounts...")
        resp = await client.post(f"{BASE_URL}/accounts/seed")
        print(resp.json())
        assert resp.status_code == 200

        print("\nCreating residence and student S...")
        resp = await client.post(f"{BASE_URL}/residences", json={
            "id": "verify-res",
            "name": "Verify Residence",
            "rooms": [{"name": "R1", "price": "180.00"}],
        })
        print(resp.json())
        assert resp.status_code in (201, 400)

        resp = await client.post(f"{BASE_URL}/students", json={
            "id": "verify-S",
            "name": "Student S",
            "residence_id": "verify-res",
            "room_name": "R1",
            "lease_start": "2025-04-01",
        })
        print(resp.json())
        assert resp.status_code in (201, 400)

        for month in (5, 6, 7):
            print(f"\nAccruing rent for 2025-{month:02d}...")
            resp = await client.post(f"{BASE_URL}/accruals", json={
                "student_id": "verify-S", "residence_id": "verify-res", "month": month, "year": 2025,
            })
            print(resp.json()["created"], resp.json()["entry"]["transaction_id"])
            assert resp.status_code == 200

        print("\nRecording $400 payment on 2025-08-06...")
        resp = await client.post(f"{BASE_URL}/payments", json={
            "student_id": "verify-S", "amount": "400.00", "date": "2025-08-06",
        })
        print(resp.json())
        assert resp.status_code == 201
        for allocation in resp.json()["allocations"]:
            print(f" - {allocation['month']} {allocation['component']} {allocation['amount_applied']}")

        print("\nChecking outstanding as of 2025-07 (Expected 140 for July)...")
        resp = await client.get(f"{BASE_URL}/students/verify-S/outstanding", params={"as_of_month": "2025-07"})
        months = {m["month"]: float(m["total_outstanding"]) for m in resp.json()["months"]}
        print(months)
        assert months["2025-07"] == 140.0

        print("\nRecording $250 expense against a missing account (Expected 404)...")
        resp = await client.post(f"{BASE_URL}/expenses", json={
            "vendor_id": "verify-vendor", "account_code": "5999", "amount": "250.00", "date": "2025-08-07",
        })
        print(resp.json())
        assert resp.status_code == 404

        print("\nChecking balance sheet...")
        resp = await client.get(f"{BASE_URL}/reports/balance-sheet", params={"as_of": "2025-08-31"})
        sheet = resp.json()
        print(f"Assets {sheet['total_assets']} = Liabilities {sheet['total_liabilities']} + Equity {sheet['total_equity']}")
        assert sheet["is_balanced"]

        print("\nChecking August cash flow...")
        resp = await client.get(f"{BASE_URL}/reports/cash-flow", params={"month": 8, "year": 2025})
        flow = resp.json()
        print(f"Opening {flow['opening_cash']}, in {flow['total_inflows']}, out {flow['total_outflows']}, closing {flow['closing_cash']}")
        assert resp.status_code == 200

if __name__ == "__main__":
    asyncio.run(main())
