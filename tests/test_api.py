import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

from course_payments.checkout import CheckoutTicket
from course_payments.errors import AccessGrantError, NotFoundError, PersistenceError, ValidationError
from course_payments.main import (
    app,
    get_checkout_initiator,
    get_notification_handler,
    get_payment_store,
    shutdown_event,
)
from course_payments.models import Payment, PaymentStatus
from course_payments.notify import NotificationOutcome, Outcome
from course_payments.results import Err, Ok

COURSE_ID = "3f2b8c1e-6d4a-4b7e-9a51-0c8e2d7f4a10"
USER_ID = "b8e5f2a3-1c7d-4e9b-8a6f-2d4c0e1b3a79"

CHECKOUT_BODY = {
    "courseId": COURSE_ID,
    "userId": USER_ID,
    "amount": 2500,
    "title": "Combined Maths - Theory",
    "currency": "LKR",
}


@pytest.fixture
def mock_initiator():
    return AsyncMock()


@pytest.fixture
def mock_handler():
    return AsyncMock()


@pytest.fixture
def mock_store():
    return AsyncMock()


@pytest.fixture
def client(mock_initiator, mock_handler, mock_store):
    app.dependency_overrides[get_checkout_initiator] = lambda: mock_initiator
    app.dependency_overrides[get_notification_handler] = lambda: mock_handler
    app.dependency_overrides[get_payment_store] = lambda: mock_store
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_checkout_returns_signed_redirect(client, mock_initiator):
    mock_initiator.start.return_value = Ok(CheckoutTicket(
        digest="A1B2C3D4E5F60718293A4B5C6D7E8F90",
        merchant_id="1211149",
        order_id="order-1",
        amount="2500.00",
        currency="LKR",
    ))

    response = client.post("/api/payments/checkout", json=CHECKOUT_BODY)

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "digest": "A1B2C3D4E5F60718293A4B5C6D7E8F90",
        "merchantId": "1211149",
        "orderId": "order-1",
        "amount": "2500.00",
        "currency": "LKR",
    }
    request = mock_initiator.start.call_args.args[0]
    assert str(request.course_id) == COURSE_ID
    assert request.amount == Decimal("2500")


def test_checkout_price_mismatch_is_400(client, mock_initiator):
    mock_initiator.start.return_value = Err(ValidationError("Price mismatch", {"reason": "price_mismatch"}))

    response = client.post("/api/payments/checkout", json=CHECKOUT_BODY)

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert response.json()["success"] is False


def test_checkout_unknown_course_is_404(client, mock_initiator):
    mock_initiator.start.return_value = Err(NotFoundError.for_resource("Course", course_id=COURSE_ID))

    response = client.post("/api/payments/checkout", json=CHECKOUT_BODY)

    assert response.status_code == 404
    assert response.json()["message"] == "Course not found"


@pytest.mark.parametrize("field, value", [("amount", -5), ("courseId", "not-a-uuid"), ("title", "")])
def test_checkout_invalid_body_is_400(client, mock_initiator, field, value):
    response = client.post("/api/payments/checkout", json={**CHECKOUT_BODY, field: value})

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"]["validation_errors"]
    mock_initiator.start.assert_not_called()


def test_checkout_persistence_failure_is_503(client, mock_initiator):
    mock_initiator.start.side_effect = PersistenceError("Failed to create payment record")

    response = client.post("/api/payments/checkout", json=CHECKOUT_BODY)

    assert response.status_code == 503
    assert response.json()["code"] == "PERSISTENCE_ERROR"


def test_notify_accepts_json(client, mock_handler):
    mock_handler.handle.return_value = NotificationOutcome(
        Outcome.COMPLETED, "success", "Payment completed successfully", PaymentStatus.COMPLETED
    )

    response = client.post("/api/payments/notify", json={
        "orderId": "order-1",
        "amount": "2500.00",
        "currency": "LKR",
        "statusCode": 2,
        "signature": "A1B2C3D4E5F60718293A4B5C6D7E8F90",
        "gatewayPaymentId": "320025071275",
    })

    assert response.status_code == 200
    assert response.json() == {"status": "success", "outcome": "completed", "message": "Payment completed successfully"}
    notification = mock_handler.handle.call_args.args[0]
    assert notification.status_code == "2"
    assert notification.gateway_payment_id == "320025071275"


def test_notify_accepts_gateway_form_post(client, mock_handler):
    mock_handler.handle.return_value = NotificationOutcome(Outcome.FAILED, "failed", "Payment declined")

    response = client.post(
        "/api/payments/notify",
        data={
            "merchant_id": "1211149",
            "order_id": "order-1",
            "payment_id": "320025071275",
            "payhere_amount": "2500.00",
            "payhere_currency": "LKR",
            "status_code": "-2",
            "md5sig": "A1B2C3D4E5F60718293A4B5C6D7E8F90",
            "method": "VISA",
            "status_message": "Payment declined",
        },
        headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    notification = mock_handler.handle.call_args.args[0]
    assert notification.order_id == "order-1"
    assert notification.amount == "2500.00"
    assert notification.signature == "A1B2C3D4E5F60718293A4B5C6D7E8F90"
    assert mock_handler.handle.call_args.kwargs["client_ip"] == "203.0.113.7"


def test_notify_rejects_malformed_body(client, mock_handler):
    response = client.post("/api/payments/notify", json={"orderId": "order-1"})

    assert response.status_code == 400
    assert response.json()["outcome"] == "malformed"
    mock_handler.handle.assert_not_called()


def test_notify_rejects_non_json_body(client, mock_handler):
    response = client.post(
        "/api/payments/notify", content=b"{not json", headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 400
    mock_handler.handle.assert_not_called()


def test_notify_grant_failure_asks_for_redelivery(client, mock_handler):
    mock_handler.handle.side_effect = AccessGrantError("Failed to grant course access", {"payment_id": "order-1"})

    response = client.post("/api/payments/notify", json={
        "orderId": "order-1",
        "amount": "2500.00",
        "currency": "LKR",
        "statusCode": "2",
        "signature": "A1B2C3D4E5F60718293A4B5C6D7E8F90",
    })

    assert response.status_code == 500
    assert response.json()["code"] == "ACCESS_GRANT_ERROR"


def test_get_payment(client, mock_store):
    now = datetime(2026, 3, 2, 10, 0, 0)
    mock_store.get.return_value = Payment(
        id="order-1",
        user_id=USER_ID,
        course_id=COURSE_ID,
        amount=Decimal("2500.00"),
        currency="LKR",
        status=PaymentStatus.COMPLETED,
        method="payhere",
        gateway_payment_id="320025071275",
        access_granted_at=now,
        created_at=now,
        updated_at=now,
    )

    response = client.get("/api/payments/order-1")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["gateway_payment_id"] == "320025071275"
    mock_store.get.assert_awaited_once_with("order-1")


def test_get_unknown_payment_is_404(client, mock_store):
    mock_store.get.return_value = None

    response = client.get("/api/payments/missing")

    assert response.status_code == 404
    assert response.json()["details"] == {"resource_type": "Payment", "order_id": "missing"}


def test_notify_persistence_failure_asks_for_redelivery(client, mock_handler):
    mock_handler.handle.side_effect = PersistenceError("Failed to update payment status", {"order_id": "order-1"})

    response = client.post("/api/payments/notify", json={
        "orderId": "order-1",
        "amount": "2500.00",
        "currency": "LKR",
        "statusCode": "2",
        "signature": "A1B2C3D4E5F60718293A4B5C6D7E8F90",
    })

    assert response.status_code == 503
    assert response.json()["code"] == "PERSISTENCE_ERROR"


@pytest.mark.asyncio
async def test_shutdown_after_failed_startup_is_noop():
    for name in ("publisher", "engine"):
        if hasattr(app.state, name):
            delattr(app.state, name)

    await shutdown_event()


@pytest.mark.asyncio
async def test_shutdown_closes_publisher_and_engine():
    app.state.publisher = AsyncMock()
    app.state.engine = AsyncMock()
    try:
        await shutdown_event()

        app.state.publisher.close.assert_awaited_once()
        app.state.engine.dispose.assert_awaited_once()
    finally:
        del app.state.publisher
        del app.state.engine
