from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import coupons, orders, queries
from .auth import Identity, get_current_identity, require_admin
from .capabilities import SchemaCapabilities
from .database import Base, engine, get_db
from .errors import NotFoundError, OrderServiceError
from .logconfig import configure_logging
from .messaging.producer import OrderEventPublisher, get_publisher
from .schemas import (
    CouponOut,
    CouponValidateRequest,
    CouponValidateResponse,
    MessageResponse,
    OrderCreate,
    OrderDetail,
    OrderSummary,
    StatusUpdate,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    # Create database tables on startup if they don't exist.
    Base.metadata.create_all(bind=engine)
    app.state.capabilities = SchemaCapabilities.detect(engine)
    yield


app = FastAPI(title="Storefront Order Service", lifespan=lifespan)


def get_capabilities(request: Request) -> SchemaCapabilities:
    return getattr(request.app.state, "capabilities", None) or SchemaCapabilities()


# --- Error Handlers ---
@app.exception_handler(OrderServiceError)
async def handle_order_service_error(request: Request, exc: OrderServiceError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.user_message})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid request")
    return JSONResponse(
        status_code=400,
        content={"message": f"{field}: {message}" if field else message},
    )


@app.exception_handler(SQLAlchemyError)
async def handle_database_error(request: Request, exc: SQLAlchemyError):
    logger.error("database_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"message": "internal server error"})


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.error("unhandled_error", path=request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"message": "internal server error"})


def _publish(background_tasks: BackgroundTasks, publisher: Optional[OrderEventPublisher],
             routing_key: str, message: dict):
    # Runs after the response is sent; the transaction has already committed.
    if publisher is not None:
        background_tasks.add_task(publisher.publish, routing_key, message)


# --- Endpoints ---
@app.get("/")
def root():
    """Health check endpoint."""
    return {"message": "Order service is running"}


@app.get("/health")
def health(capabilities: SchemaCapabilities = Depends(get_capabilities)):
    """Liveness plus the optional schema features this deployment has."""
    return {"status": "ok", "capabilities": capabilities.as_dict()}


# Places an order for the authenticated caller.
@app.post("/orders", status_code=201, response_model=OrderDetail,
          responses={400: {"model": MessageResponse}})
def create_order(
    req: OrderCreate,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
    publisher: Optional[OrderEventPublisher] = Depends(get_publisher),
):
    order_id = orders.create_order(
        db,
        user_id=identity.user_id,
        lines=[orders.CartLine(i.product_id, i.quantity) for i in req.items],
        shipping_address=req.shipping_address,
        payment_method=req.payment_method,
        coupon_code=req.coupon_code,
        capabilities=capabilities,
    )
    detail = queries.get_order_by_id(db, order_id, capabilities)
    _publish(background_tasks, publisher, "order.created", {
        "order_id": order_id,
        "user_id": identity.user_id,
        "total": detail.total,
        "items": [{"product_id": i.product_id, "quantity": i.quantity} for i in detail.items],
    })
    return detail


# Retrieves the caller's own order history.
@app.get("/orders/me", response_model=List[OrderSummary])
def list_my_orders(
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    return queries.list_orders_by_user(db, identity.user_id, capabilities)


# Retrieves a list of all orders.
@app.get("/orders", response_model=List[OrderSummary])
def list_orders(
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    return queries.list_orders(db, capabilities)


# Retrieves a single order by its ID.
@app.get("/orders/{order_id}", response_model=OrderDetail,
         responses={404: {"model": MessageResponse}})
def get_order(
    order_id: int,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    # Other customers' orders are reported as missing, not forbidden.
    if not identity.is_admin and queries.order_owner_user_id(db, order_id) != identity.user_id:
        raise NotFoundError("order not found")
    detail = queries.get_order_by_id(db, order_id, capabilities)
    if detail is None:
        raise NotFoundError("order not found")
    return detail


# Moves an order to another status; cancelling puts its stock back.
@app.patch("/orders/{order_id}/status", response_model=OrderDetail,
           responses={400: {"model": MessageResponse}, 403: {"model": MessageResponse},
                      404: {"model": MessageResponse}})
def update_order_status(
    order_id: int,
    req: StatusUpdate,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
    publisher: Optional[OrderEventPublisher] = Depends(get_publisher),
):
    previous = orders.set_status(
        db, order_id, req.status, actor_id=identity.user_id, capabilities=capabilities
    )
    detail = queries.get_order_by_id(db, order_id, capabilities)
    _publish(background_tasks, publisher, "order.status_changed", {
        "order_id": order_id,
        "from_status": previous.value,
        "to_status": detail.status.value,
        "changed_by": identity.user_id,
    })
    return detail


# Previews a coupon against a cart total without redeeming it.
@app.post("/coupons/validate", response_model=CouponValidateResponse,
          responses={400: {"model": MessageResponse}, 404: {"model": MessageResponse}})
def validate_coupon(req: CouponValidateRequest, db: Session = Depends(get_db)):
    coupon, discount = coupons.preview_coupon(db, req.code, req.order_total)
    return CouponValidateResponse(
        valid=True,
        coupon=CouponOut.model_validate(coupon),
        discount_amount=discount,
        final_total=Decimal(req.order_total) - discount,
    )

