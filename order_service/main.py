from datetime import datetime
from typing import List, Optional
import logging

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import config, db, schemas
from .collaborators import (
    HttpEventPublisher,
    HttpPaymentGateway,
    HttpPushNotifier,
    PaymentGateway,
    default_client_factory,
)
from .coordinator import StatusCoordinator
from .deps import get_actor, get_correlation_id
from .errors import OrderServiceError
from .lifecycle import Actor
from .metrics import MetricsMiddleware, metrics_endpoint
from .services import OrderService


# ----- Logging -----
class CorrelationIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


_handler = logging.StreamHandler()
_handler.addFilter(CorrelationIdFilter())
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] [order-service] [cid=%(correlation_id)s] %(message)s",
    handlers=[_handler],
)
logger = logging.getLogger("order-service")

# ----- Init -----
db.init_db()
app = FastAPI(title="order-service", version="v1", dependencies=[Depends(get_correlation_id)])
app.add_middleware(MetricsMiddleware, service_name="order-service")

settings = config.load_settings()
_clients = default_client_factory(settings.http_timeout_seconds)
coordinator = StatusCoordinator(
    HttpEventPublisher(config.REALTIME_SERVICE_URL, _clients),
    HttpPushNotifier(config.NOTIFICATION_SERVICE_URL, _clients),
)
payment_gateway = HttpPaymentGateway(config.PAYMENT_SERVICE_URL, _clients)


# ----- Dependencies -----
def get_db():
    s = db.SessionLocal()
    try:
        yield s
    finally:
        s.close()


def get_coordinator() -> StatusCoordinator:
    return coordinator


def get_payment_gateway() -> PaymentGateway:
    return payment_gateway


def get_settings() -> config.Settings:
    return settings


def get_service(
    background_tasks: BackgroundTasks,
    db_sess: Session = Depends(get_db),
    cid: str = Depends(get_correlation_id),
    coord: StatusCoordinator = Depends(get_coordinator),
    payments: PaymentGateway = Depends(get_payment_gateway),
    cfg: config.Settings = Depends(get_settings),
) -> OrderService:
    return OrderService(db_sess, coord, payments, cfg, schedule=background_tasks.add_task, cid=cid)


# ----- Error mapping -----
def _request_cid(request: Request) -> str:
    return getattr(request.state, "correlation_id", "-")


def _error_body(code: str, message: str, request: Request) -> dict:
    cid = _request_cid(request)
    return {"detail": {"code": code, "message": message, "correlationId": cid}}


@app.exception_handler(OrderServiceError)
async def order_error_handler(request: Request, exc: OrderServiceError):
    logger.info(
        f"{request.method} {request.url.path} -> {exc.code}: {exc.message}",
        extra={"correlation_id": _request_cid(request)},
    )
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message, request))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    return JSONResponse(
        status_code=400,
        content=_error_body("VALIDATION_ERROR", f"Invalid request fields: {fields}", request),
    )


# ----- Infra Endpoints -----
@app.get("/health")
def health():
    return {"status": "ok", "service": "order-service"}


@app.get("/metrics")
def metrics():
    return metrics_endpoint()


# ----- API: Orders -----
@app.post("/v1/orders", response_model=schemas.OrderRead, status_code=201)
def create_order(
    payload: schemas.CreateOrderRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.place_order(actor, payload)


@app.get("/v1/orders", response_model=schemas.OrderPage)
def list_orders(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    result = service.list_orders(actor, status=status, page=page, limit=limit)
    return {"count": result.count, "total": result.total, "page": result.page, "pages": result.pages, "data": result.data}


@app.get("/v1/orders/{order_id}", response_model=schemas.OrderRead)
def get_order(
    order_id: int,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.get_order(actor, order_id)


@app.put("/v1/orders/{order_id}/status", response_model=schemas.OrderRead)
def update_order_status(
    order_id: int,
    payload: schemas.UpdateStatusRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.update_status(actor, order_id, payload.status, payload.note)


@app.put("/v1/orders/{order_id}/cancel", response_model=schemas.OrderRead)
def cancel_order(
    order_id: int,
    payload: schemas.CancelOrderRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.cancel_order(actor, order_id, payload.reason)


# ----- API: Delivery -----
@app.get("/v1/delivery/available", response_model=List[schemas.CandidateRead])
def available_orders(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = None,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.available_orders(actor, lat, lng, radius_km)


@app.post("/v1/delivery/accept/{order_id}", response_model=schemas.OrderRead)
def accept_order(
    order_id: int,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.accept_order(actor, order_id)


@app.put("/v1/delivery/location")
def update_location(
    payload: schemas.LocationUpdateRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    active = service.update_location(actor, payload.latitude, payload.longitude)
    return {"message": "Location updated", "active_order_id": active.order_id if active else None}


@app.put("/v1/delivery/toggle-availability", response_model=schemas.AvailabilityRead)
def toggle_availability(
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.toggle_availability(actor)


@app.get("/v1/delivery/earnings", response_model=schemas.DriverEarningsRead)
def driver_earnings(
    driver_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.driver_earnings(actor, driver_id=driver_id, start=start_date, end=end_date)


@app.put("/v1/delivery/{order_id}/pickup", response_model=schemas.OrderRead)
def pickup_order(
    order_id: int,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.pickup_order(actor, order_id)


@app.put("/v1/delivery/{order_id}/on-the-way", response_model=schemas.OrderRead)
def start_delivery(
    order_id: int,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.start_delivery(actor, order_id)


@app.put("/v1/delivery/{order_id}/complete", response_model=schemas.OrderRead)
def complete_delivery(
    order_id: int,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.complete_delivery(actor, order_id)


# ----- API: Payments -----
async def raw_body(request: Request) -> bytes:
    return await request.body()


@app.post("/v1/payments/webhook")
def payment_webhook(
    body: bytes = Depends(raw_body),
    x_payment_signature: Optional[str] = Header(None),
    service: OrderService = Depends(get_service),
):
    # verified events are always acknowledged, the gateway retries anything that isn't 2xx
    handled = service.receive_payment_webhook(body, x_payment_signature)
    return {"received": True, "handled": handled}


@app.get("/v1/payments/history", response_model=schemas.OrderPage)
def payment_history(
    page: int = 1,
    limit: int = 20,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    result = service.payment_history(actor, page=page, limit=limit)
    return {"count": result.count, "total": result.total, "page": result.page, "pages": result.pages, "data": result.data}


@app.post("/v1/payments/{order_id}/authorize", response_model=schemas.PaymentAuthorizationRead)
def authorize_payment(
    order_id: int,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    order = service.authorize_payment(actor, order_id)
    return {"order_id": order.order_id, "transaction_id": order.payment_transaction_id}


@app.post("/v1/payments/{order_id}/confirm", response_model=schemas.OrderRead)
def confirm_payment(
    order_id: int,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.confirm_payment(actor, order_id)


@app.post("/v1/payments/{order_id}/refund", response_model=schemas.RefundRead)
def refund_payment(
    order_id: int,
    payload: schemas.RefundRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    order, refund_id = service.refund_payment(actor, order_id, payload.amount)
    return {
        "order_id": order.order_id,
        "refund_id": refund_id,
        "amount": payload.amount,
        "payment_status": order.payment_status,
    }


# ----- API: Reporting -----
@app.get("/v1/restaurants/{restaurant_id}/analytics", response_model=schemas.RestaurantAnalyticsRead)
def restaurant_analytics(
    restaurant_id: int,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.restaurant_analytics(actor, restaurant_id, start=start_date, end=end_date)


@app.get("/v1/admin/stats", response_model=schemas.PlatformStatsRead)
def platform_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.platform_stats(actor, start=start_date, end=end_date)


@app.get("/v1/admin/analytics/revenue", response_model=schemas.RevenueAnalyticsRead)
def revenue_analytics(
    period: str = "week",
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    return service.revenue_analytics(actor, period=period)
