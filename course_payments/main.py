import uvicorn
import structlog
from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from course_payments.access import AccessGranter
from course_payments.catalog import SqlCatalogReader
from course_payments.checkout import CheckoutInitiator
from course_payments.config import Settings
from course_payments.database import build_engine, build_session_factory, init_db
from course_payments.errors import NotFoundError, PaymentServiceError, ValidationError
from course_payments.logging_config import configure_logging
from course_payments.messaging import EventPublisher, NullPublisher
from course_payments.notify import NotificationHandler
from course_payments.results import Err
from course_payments.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    NotificationPayload,
    NotificationResponse,
    PaymentRead,
)
from course_payments.store import PaymentStore
from course_payments.validators import CourseValidator, UserValidator

logger = structlog.get_logger(__name__)

app = FastAPI(title="Course Payment Service")


def wire(target: FastAPI, settings: Settings, session_factory, publisher):
    catalog = SqlCatalogReader(session_factory)
    store = PaymentStore(session_factory)
    target.state.settings = settings
    target.state.publisher = publisher
    target.state.store = store
    target.state.checkout = CheckoutInitiator(
        settings,
        store,
        CourseValidator(catalog, tolerance=settings.price_tolerance),
        UserValidator(catalog),
    )
    target.state.notifications = NotificationHandler(
        settings, store, AccessGranter(session_factory), publisher
    )


@app.on_event("startup")
async def startup_event():
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    engine = build_engine(settings.database_url)
    await init_db(engine)
    app.state.engine = engine

    publisher = EventPublisher(settings.rabbitmq_url) if settings.messaging_enabled else NullPublisher()
    try:
        await publisher.connect()
    except Exception as e:
        # publish() reconnects lazily
        logger.error("rabbitmq_setup_failed", error=str(e))

    wire(app, settings, build_session_factory(engine), publisher)


@app.on_event("shutdown")
async def shutdown_event():
    # Startup may have failed before either was set
    publisher = getattr(app.state, "publisher", None)
    if publisher is not None:
        await publisher.close()
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()


def get_checkout_initiator(request: Request) -> CheckoutInitiator:
    return request.app.state.checkout


def get_notification_handler(request: Request) -> NotificationHandler:
    return request.app.state.notifications


def get_payment_store(request: Request) -> PaymentStore:
    return request.app.state.store


def _client_ip(request: Request):
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@app.exception_handler(PaymentServiceError)
async def payment_service_error_handler(request: Request, exc: PaymentServiceError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, message=exc.message,
                     retryable=exc.retryable, details=exc.details)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()]
    error = ValidationError(f"Validation failed: {', '.join(messages)}", {"validation_errors": messages})
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/payments/checkout", response_model=CheckoutResponse)
async def start_checkout(payload: CheckoutRequest, initiator: CheckoutInitiator = Depends(get_checkout_initiator)):
    result = await initiator.start(payload)
    if isinstance(result, Err):
        return JSONResponse(status_code=result.error.status_code, content=result.error.to_dict())
    ticket = result.value
    return CheckoutResponse(
        digest=ticket.digest,
        merchant_id=ticket.merchant_id,
        order_id=ticket.order_id,
        amount=ticket.amount,
        currency=ticket.currency,
    )


@app.post("/api/payments/notify", response_model=NotificationResponse)
async def payment_notify(request: Request, handler: NotificationHandler = Depends(get_notification_handler)):
    client_ip = _client_ip(request)
    try:
        if request.headers.get("content-type", "").startswith("application/x-www-form-urlencoded"):
            data = dict(await request.form())
        else:
            data = await request.json()
        notification = NotificationPayload.model_validate(data)
    except ValueError as e:
        logger.warning("notification_rejected", outcome="malformed", reason=str(e), client_ip=client_ip)
        return JSONResponse(
            status_code=400,
            content={"status": "failed", "outcome": "malformed", "message": "Invalid notification data"},
        )

    outcome = await handler.handle(notification, client_ip=client_ip)
    return NotificationResponse(status=outcome.status, outcome=outcome.outcome.value, message=outcome.message)


@app.get("/api/payments/{order_id}", response_model=PaymentRead)
async def get_payment(order_id: str, store: PaymentStore = Depends(get_payment_store)):
    payment = await store.get(order_id)
    if not payment:
        raise NotFoundError.for_resource("Payment", order_id=order_id)
    return PaymentRead.model_validate(payment)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
