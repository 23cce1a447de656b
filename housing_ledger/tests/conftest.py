import pytest
import pytest_asyncio
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from housing_ledger.main import app
from housing_ledger.db.session import get_db
from housing_ledger.models import Base, Residence, Room, Student
from housing_ledger.services.accounts import ChartOfAccountsService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

@event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly.
    dbapi_conn.isolation_level = None

@event.listens_for(engine.sync_engine, "begin")
def do_begin(conn):
    conn.exec_driver_sql("BEGIN")

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)

@pytest_asyncio.fixture(loop_scope="function", autouse=True)
async def setup_database():
    """Fresh schema and default chart for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with TestingSessionLocal() as session:
        await ChartOfAccountsService(session).seed_default_chart()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

@pytest_asyncio.fixture(loop_scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with TestingSessionLocal() as session:
        yield session

@pytest_asyncio.fixture(loop_scope="function")
async def client() -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()

@pytest_asyncio.fixture(loop_scope="function")
async def residence(db_session: AsyncSession) -> Residence:
    """Maple House: Single at 180, Double at 120, an unpriced Attic, admin fee 50."""
    maple = Residence(
        id="maple",
        name="Maple House",
        admin_fee=Decimal("50.00"),
        rooms=[
            Room(name="Single", price=Decimal("180.00")),
            Room(name="Double", price=Decimal("120.00")),
            Room(name="Attic", price=None),
        ],
    )
    db_session.add(maple)
    await db_session.commit()
    return maple

@pytest_asyncio.fixture(loop_scope="function")
async def student(db_session: AsyncSession, residence: Residence) -> Student:
    s = Student(
        id="S1",
        name="Sam Student",
        residence_id=residence.id,
        room_name="Single",
        lease_start=date(2025, 5, 1),
        lease_end=date(2026, 4, 30),
    )
    db_session.add(s)
    await db_session.commit()
    return s

@pytest_asyncio.fixture(loop_scope="function")
async def file_sessionmaker(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Sessions on a file-backed database, each with its own connection."""
    file_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with file_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    sessions = async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with sessions() as session:
        await ChartOfAccountsService(session).seed_default_chart()

    yield sessions

    await file_engine.dispose()
