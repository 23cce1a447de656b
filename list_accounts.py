import asyncio
from datetime import date

from housing_ledger.db.session import AsyncSessionLocal
from housing_ledger.services.accounts import ChartOfAccountsService
from housing_ledger.services.balances import BalanceAggregator

async def list_accounts():
    async with AsyncSessionLocal() as db:
        accounts = await ChartOfAccountsService(db).list_accounts()
        balances = {b.account_code: b.balance for b in await BalanceAggregator(db).account_balances_as_of(date.today())}
        with open("results.txt", "w") as f:
            f.write(f"\n--- CHART OF ACCOUNTS (as of {date.today()}) ---\n")
            for a in accounts:
                f.write(f"{a.code:16} {a.name:40} {a.type.value:10} {balances.get(a.code, 0):>14}\n")
            f.write("--------------------------\n")

if __name__ == "__main__":
    asyncio.run(list_accounts())
