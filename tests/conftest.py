from pathlib import Path
import sys

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.core.database import Base  # noqa: E402
from src.modules.appointments import models as _appointment_models  # noqa: E402,F401
from src.modules.checkin import models as _checkin_models  # noqa: E402,F401
from src.modules.checkin.coordinator import CheckInCoordinator  # noqa: E402
from src.shared.enums import UserRole  # noqa: E402
from src.shared.schemas import Actor  # noqa: E402
from tests.fakes import FakeCheckInStore, FakeNotifier, FakePaymentProcessor  # noqa: E402


@pytest_asyncio.fixture
async def db_session():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
    async with SessionLocal() as session:
        yield session
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Independent sessions over one file database, for cross-session races."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def patient() -> Actor:
    return Actor(user_id="P7", role=UserRole.PATIENT)


@pytest.fixture
def doctor() -> Actor:
    return Actor(user_id="D1", role=UserRole.DOCTOR)


@pytest.fixture
def nurse() -> Actor:
    return Actor(user_id="N1", role=UserRole.NURSE)


@pytest.fixture
def staff() -> Actor:
    return Actor(user_id="S1", role=UserRole.STAFF)


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id="A1", role=UserRole.ADMIN)


@pytest.fixture
def check_in_store() -> FakeCheckInStore:
    return FakeCheckInStore()


@pytest.fixture
def payment_processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def coordinator(db_session, check_in_store, payment_processor, notifier) -> CheckInCoordinator:
    return CheckInCoordinator(
        db_session,
        check_ins=check_in_store,
        payments=payment_processor,
        notifier=notifier,
        checkin_timeout=0.2,
        payment_timeout=0.2,
        payment_supports_idempotency=True,
    )
