import pytest_asyncio

from toa_ledger.sql_store import SqlLedgerStore
from toa_ledger.store import InMemoryLedgerStore


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryLedgerStore()
        return
    sql_store = SqlLedgerStore(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await sql_store.init()
    yield sql_store
    await sql_store.close()
