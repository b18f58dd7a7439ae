import hashlib
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
import pytest_asyncio

from course_payments.access import AccessGranter
from course_payments.catalog import SqlCatalogReader
from course_payments.checkout import CheckoutInitiator
from course_payments.config import Settings
from course_payments.database import build_engine, build_session_factory, init_db
from course_payments.models import Course, Profile
from course_payments.notify import NotificationHandler
from course_payments.schemas import NotificationPayload
from course_payments.store import PaymentStore
from course_payments.validators import CourseValidator, UserValidator

MERCHANT_ID = "1211149"
MERCHANT_SECRET = "MzE2NjQ5NTg1MTk0MDk1NzU0NDIzNTAzNjE3OTE0"

COURSE_ID = "3f2b8c1e-6d4a-4b7e-9a51-0c8e2d7f4a10"
COURSE_1500_ID = "9a7d5e21-2c3b-4f8a-8e6d-51b0c4a2f3e7"
DRAFT_COURSE_ID = "c41e7a90-5b2d-4c8f-a3e1-7d9b0f6e2a54"
USER_ID = "b8e5f2a3-1c7d-4e9b-8a6f-2d4c0e1b3a79"


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def gateway_signature(order_id, amount, currency, status_code, merchant_id=MERCHANT_ID, secret=MERCHANT_SECRET):
    """What PayHere sends as md5sig, computed independently of the service code."""
    return _md5_upper(merchant_id + order_id + amount + currency + status_code + _md5_upper(secret))


@pytest.fixture
def settings():
    return Settings(
        merchant_id=MERCHANT_ID,
        merchant_secret=MERCHANT_SECRET,
        database_url="sqlite+aiosqlite://",
        messaging_enabled=False,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def catalog_rows(session_factory):
    async with session_factory() as session:
        session.add_all([
            Course(id=COURSE_ID, title="Combined Maths - Theory", price=Decimal("2500.00"), status="published"),
            Course(id=COURSE_1500_ID, title="Physics Revision", price=Decimal("1500.00"), status="published"),
            Course(id=DRAFT_COURSE_ID, title="Chemistry (coming soon)", price=Decimal("1800.00"), status="draft"),
            Profile(id=USER_ID, email="student@example.com", name="Nimal Perera"),
        ])
        await session.commit()


@pytest.fixture
def store(session_factory):
    return PaymentStore(session_factory)


@pytest.fixture
def granter(session_factory):
    return AccessGranter(session_factory)


@pytest.fixture
def publisher():
    publisher = AsyncMock()
    publisher.publish.return_value = True
    return publisher


@pytest.fixture
def initiator(settings, store, session_factory, catalog_rows):
    catalog = SqlCatalogReader(session_factory)
    return CheckoutInitiator(settings, store, CourseValidator(catalog), UserValidator(catalog))


@pytest.fixture
def handler(settings, store, granter, publisher):
    return NotificationHandler(settings, store, granter, publisher)


@pytest_asyncio.fixture
async def pending_payment(store):
    return await store.create_pending(
        order_id=str(uuid4()),
        user_id=USER_ID,
        course_id=COURSE_ID,
        amount=Decimal("2500.00"),
        currency="LKR",
    )


@pytest.fixture
def make_notification():
    def _make(order_id, amount="2500.00", currency="LKR", status_code="2", signature=None, **extra):
        data = {
            "order_id": order_id,
            "payhere_amount": amount,
            "payhere_currency": currency,
            "status_code": status_code,
            "md5sig": signature or gateway_signature(order_id, amount, currency, status_code),
            "payment_id": extra.pop("payment_id", "320025071275"),
            "method": extra.pop("method", "VISA"),
            "status_message": extra.pop("status_message", "Successfully completed the payment."),
        }
        data.update(extra)
        return NotificationPayload.model_validate(data)

    return _make
