import uvicorn
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from order_pipeline.checkout import create_attempt
from order_pipeline.courier import CourierClient
from order_pipeline.database import get_session, init_db
from order_pipeline.errors import NotFoundError, PipelineError
from order_pipeline.logging_config import configure_logging
from order_pipeline.messaging import close_rabbitmq, setup_rabbitmq
from order_pipeline.models import Order
from order_pipeline.payments import PaymentConfirmationService
from order_pipeline.provisioner import ShipmentProvisioner
from order_pipeline.reconciler import StatusReconciler
from order_pipeline.schemas import (
    CheckoutAttemptCreate,
    CheckoutAttemptRead,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    CourierPush,
    CourierPushResult,
    LabelResult,
    OrderRead,
    ReconcileResult,
    ShipmentRequest,
    ShipmentResult,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_db()
    await setup_rabbitmq()
    yield
    await close_rabbitmq()


app = FastAPI(title="Order Pipeline", lifespan=lifespan)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    body = {"detail": exc.message}
    if exc.details is not None:
        body["errors"] = jsonable_encoder(exc.details)
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=body)


async def get_courier_client():
    client = CourierClient()
    try:
        yield client
    finally:
        await client.aclose()


@app.post("/api/checkout/attempts", response_model=CheckoutAttemptRead, status_code=201)
async def create_checkout_attempt(data: CheckoutAttemptCreate, db: AsyncSession = Depends(get_session)):
    attempt = await create_attempt(data, db)
    return CheckoutAttemptRead.model_validate(attempt)


@app.post("/api/payments/confirm", response_model=ConfirmPaymentResponse)
async def confirm_payment(data: ConfirmPaymentRequest, db: AsyncSession = Depends(get_session)):
    return await PaymentConfirmationService(db).confirm_payment(data)


@app.post("/api/payments/webhook")
async def payment_webhook(request: Request, db: AsyncSession = Depends(get_session)):
    # Signature covers the exact bytes sent, so read the raw body
    raw_body = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    return await PaymentConfirmationService(db).handle_gateway_webhook(raw_body, signature)


@app.post("/api/shipments", response_model=ShipmentResult)
async def provision_shipment(
    data: ShipmentRequest,
    db: AsyncSession = Depends(get_session),
    client: CourierClient = Depends(get_courier_client),
):
    return await ShipmentProvisioner(db, client).provision(data.ids)


@app.post("/api/shipments/{order_id}/label", response_model=LabelResult)
async def generate_label(
    order_id: str,
    db: AsyncSession = Depends(get_session),
    client: CourierClient = Depends(get_courier_client),
):
    return await ShipmentProvisioner(db, client).generate_label(order_id)


@app.post("/api/orders/{order_id}/reconcile", response_model=ReconcileResult)
async def reconcile_status(
    order_id: str,
    db: AsyncSession = Depends(get_session),
    client: CourierClient = Depends(get_courier_client),
):
    return await StatusReconciler(db, client).reconcile(order_id)


@app.post("/api/webhooks/courier", response_model=CourierPushResult)
async def courier_webhook(data: CourierPush, db: AsyncSession = Depends(get_session)):
    return await StatusReconciler(db).apply_courier_push(data)


@app.get("/api/orders/{order_id}", response_model=OrderRead)
async def get_order(order_id: str, db: AsyncSession = Depends(get_session)):
    order = await db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return OrderRead.model_validate(order)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
