"""HTTP surface for the rental core.

Routes stay thin: they read the caller from ``X-User-Id`` (verified
upstream), call one service operation and shape the response. Errors from
the services are turned into the ``{success, message, code}`` envelope by the
handlers registered in ``create_app``.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rental_core.config import Settings
from rental_core.errors import ForbiddenError, RentalCoreError
from rental_core.observability import setup_logging
from rental_core.providers import CallbackRequest, OrderInfo
from rental_core.schemas import (
    OrderCancel, OrderCreate, OrderPage, OrderRead, OrderStats, OrderStatusUpdate,
    PaymentCreate, PaymentCreated, PaymentEventRead, PaymentInfo, PaymentMethod,
    PaymentStatusRead, ProviderStatus, RefundCreate, RefundRead,
)
from rental_core.services import Services, build_services

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_caller(x_user_id: str | None = Header(None)) -> str:
    if not x_user_id:
        raise RentalCoreError("Missing caller identity", code="UNAUTHENTICATED", http_status=401)
    return x_user_id


def _ensure_payer(info: dict, caller: str):
    if info["user_id"] != caller:
        raise ForbiddenError("Not allowed to access this payment")


# Health

@router.get("/health")
async def health(services: Services = Depends(get_services)):
    db_ok = await services.db.health_check()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": db_ok,
        "messaging": services.publisher.exchange is not None,
        "payments": services.registry.status(),
    }


# Orders

@router.post("/api/orders", response_model=OrderRead, status_code=201)
async def create_order(
    order_data: OrderCreate,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    order = await services.booking.create_order(
        resource_id=order_data.resource_id,
        renter_id=caller,
        start_date=order_data.start_date,
        end_date=order_data.end_date,
        delivery_method=order_data.delivery_method,
        delivery_address=order_data.delivery_address,
        notes=order_data.notes,
    )
    return OrderRead.model_validate(order)


@router.get("/api/orders", response_model=OrderPage)
async def list_orders(
    role: str = Query("renter"),
    page: int = Query(1),
    limit: int = Query(20),
    order_status: str | None = Query(None, alias="status"),
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    result = await services.lifecycle.list_orders(caller, role, page=page, limit=limit, status=order_status)
    return OrderPage(
        items=[OrderRead.model_validate(order) for order in result.items],
        page=result.page,
        limit=result.limit,
        total=result.total,
        total_pages=result.total_pages,
    )


@router.get("/api/orders/upcoming", response_model=list[OrderRead])
async def upcoming_orders(
    days: int = Query(7, ge=1, le=365),
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    orders = await services.lifecycle.get_upcoming_orders(caller, days=days)
    return [OrderRead.model_validate(order) for order in orders]


@router.get("/api/orders/stats", response_model=OrderStats)
async def order_stats(
    role: str = Query("renter"),
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.lifecycle.get_order_stats(caller, role)


@router.get("/api/orders/{order_id}", response_model=OrderRead)
async def get_order(order_id: str, caller: str = Depends(get_caller), services: Services = Depends(get_services)):
    return OrderRead.model_validate(await services.lifecycle.get_order(order_id, caller))


@router.post("/api/orders/{order_id}/confirm", response_model=OrderRead)
async def confirm_order(order_id: str, caller: str = Depends(get_caller), services: Services = Depends(get_services)):
    return OrderRead.model_validate(await services.lifecycle.confirm_order(order_id, caller))


@router.post("/api/orders/{order_id}/cancel", response_model=OrderRead)
async def cancel_order(
    order_id: str,
    body: OrderCancel | None = None,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    reason = body.reason if body else None
    return OrderRead.model_validate(await services.lifecycle.cancel_order(order_id, caller, reason))


@router.post("/api/orders/{order_id}/complete", response_model=OrderRead)
async def complete_order(order_id: str, caller: str = Depends(get_caller), services: Services = Depends(get_services)):
    return OrderRead.model_validate(await services.lifecycle.complete_order(order_id, caller))


@router.patch("/api/orders/{order_id}/status", response_model=OrderRead)
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    order = await services.lifecycle.update_order_status(order_id, caller, body.status, body.notes)
    return OrderRead.model_validate(order)


# Payments

@router.get("/api/payments/methods", response_model=list[PaymentMethod])
async def payment_methods(services: Services = Depends(get_services)):
    return services.registry.available_methods()


@router.get("/api/payments/status", response_model=ProviderStatus)
async def payment_provider_status(services: Services = Depends(get_services)):
    return services.registry.status()


@router.post("/api/payments/callback/{provider}")
async def payment_callback(provider: str, request: Request, services: Services = Depends(get_services)):
    body = await request.body()
    ack = await services.webhooks.handle_payment_callback(
        provider, CallbackRequest(body=body, headers=dict(request.headers)),
    )
    return Response(content=ack.content, status_code=ack.status_code, media_type=ack.media_type)


@router.post("/api/payments", response_model=PaymentCreated, status_code=201)
async def create_payment(
    payment_data: PaymentCreate,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    result = await services.payments.create_payment(
        OrderInfo(
            order_id=payment_data.order_id,
            amount=payment_data.amount,
            title=payment_data.title,
            user_id=caller,
            description=payment_data.description,
            return_url=payment_data.return_url,
        ),
        provider_id=payment_data.payment_method,
    )
    return PaymentCreated(
        payment_id=result.payment_id,
        order_id=result.order_id,
        amount=result.amount,
        provider=result.provider.value,
        payment_url=result.payment_url,
        qr_code=result.qr_code,
        message=result.message,
    )


@router.get("/api/payments/{payment_id}", response_model=PaymentInfo)
async def get_payment(payment_id: str, caller: str = Depends(get_caller), services: Services = Depends(get_services)):
    info = await services.payments.get_payment_info(payment_id)
    _ensure_payer(info, caller)
    return info


@router.get("/api/payments/{payment_id}/events", response_model=list[PaymentEventRead])
async def payment_events(payment_id: str, caller: str = Depends(get_caller), services: Services = Depends(get_services)):
    _ensure_payer(await services.payments.get_payment_info(payment_id), caller)
    return await services.payments.get_payment_events(payment_id)


@router.post("/api/payments/{payment_id}/query", response_model=PaymentStatusRead)
async def query_payment(payment_id: str, caller: str = Depends(get_caller), services: Services = Depends(get_services)):
    _ensure_payer(await services.payments.get_payment_info(payment_id), caller)
    payment_status = await services.payments.query_payment_status(payment_id)
    return PaymentStatusRead(payment_id=payment_id, status=payment_status.value)


@router.post("/api/payments/{payment_id}/refund", response_model=RefundRead)
async def refund_payment(
    payment_id: str,
    body: RefundCreate,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    _ensure_payer(await services.payments.get_payment_info(payment_id), caller)
    result = await services.payments.refund_payment(payment_id, body.amount, body.reason)
    return RefundRead(
        refund_id=result.refund_id,
        payment_id=result.payment_id,
        refund_amount=result.refund_amount,
        message=result.message,
    )


@router.post("/api/payments/{payment_id}/cancel", response_model=PaymentInfo)
async def cancel_payment(payment_id: str, caller: str = Depends(get_caller), services: Services = Depends(get_services)):
    _ensure_payer(await services.payments.get_payment_info(payment_id), caller)
    await services.payments.cancel_payment(payment_id)
    return await services.payments.get_payment_info(payment_id)


@router.post("/api/payments/{payment_id}/simulate-success", response_model=PaymentInfo)
async def simulate_payment_success(
    payment_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    _ensure_payer(await services.payments.get_payment_info(payment_id), caller)
    return await services.webhooks.simulate_success(payment_id)


# Application

def register_error_handlers(app: FastAPI):

    @app.exception_handler(RentalCoreError)
    async def rental_core_error_handler(request: Request, exc: RentalCoreError):
        log = logger.error if exc.http_status >= 500 else logger.warning
        log(
            f"{type(exc).__name__}: {exc.message}",
            extra={"error_code": exc.code},
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "message": "Invalid request data",
                "code": "VALIDATION_ERROR",
                "details": [
                    {
                        "field": ".".join(str(loc) for loc in e["loc"]),
                        "message": e["msg"],
                    }
                    for e in exc.errors()
                ],
            },
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "An unexpected error occurred", "code": "INTERNAL_ERROR"},
        )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_format)
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        await app.state.services.db.create_all()
        await app.state.services.start()
        logger.info("Rental core started")
        yield
        logger.info("Rental core shutting down")
        await app.state.services.close()

    app = FastAPI(title="Rental Core", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    register_error_handlers(app)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
