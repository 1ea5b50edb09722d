"""
Payment Microservice

Responsibilities:
- Credit card holds (J5) through Hyp Pay
- Scheduled capture of ready orders, partial capture and retry/backoff
- Hold cancellation and transaction lookup
- Item refunds
"""

from fastapi import FastAPI, HTTPException, Depends, Request, status, Path
from fastapi.responses import JSONResponse
import uvicorn
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from core.config import get_settings
from core.logger import setup_service_logger
from core.ttl_cache import RateLimiter, TTLCache

from microservices.order_service.protocols import (
    ConcurrentModificationError, InvariantViolationError, OrderNotFoundError,
    OrderServiceError, OrderValidationError,
)

from .factory import PaymentComponents, create_payment_components
from .models import (
    CancelHoldRequest, CancelResult, CaptureOutcome, CaptureResult, ChargeRunStats,
    HealthCheckResponse, HoldRequest, HoldResult, OrderRefundsResponse,
    RefundEligibility, RefundRequest, RefundResult, TransactionQueryResult,
)
from .payment_service import charge_lock_key
from .protocols import GatewayNotConfiguredError

# Initialize configuration
config = get_settings()
SERVICE_PORT = config.payment_service_port

logger = setup_service_logger("payment_service", config=config.logging)


class PaymentMicroservice:
    """Payment microservice core class"""

    def __init__(self):
        self.components: Optional[PaymentComponents] = None
        self.cache: Optional[TTLCache] = None
        self.payment_limiter: Optional[RateLimiter] = None
        self.refund_limiter: Optional[RateLimiter] = None

    async def initialize(self):
        """Initialize the microservice"""
        try:
            limits = config.rate_limits
            self.cache = TTLCache(default_ttl=limits.cache_ttl_seconds)
            self.cache.start_sweeper(interval=limits.cache_sweep_seconds)
            self.payment_limiter = RateLimiter(
                self.cache, limits.payment_limit, limits.payment_window_seconds, prefix="rate:payment"
            )
            self.refund_limiter = RateLimiter(
                self.cache, limits.refund_limit, limits.refund_window_seconds, prefix="rate:refund"
            )

            self.components = create_payment_components(config=config, cache=self.cache)
            await self.components.order_service.repository.initialize()
            await self.components.lock_store.initialize()

            if config.scheduler.enabled:
                self.components.scheduler.start()
            else:
                logger.info("Charge scheduler disabled (CHARGE_SCHEDULER_ENABLED=false)")

            logger.info("Payment microservice initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize payment microservice: {e}")
            raise

    async def shutdown(self):
        """Shutdown the microservice"""
        components = self.components
        try:
            if components:
                components.scheduler.shutdown()
                close = getattr(components.gateway, "close", None)
                if close:
                    await close()
                await components.order_service.repository.close()
            if self.cache:
                await self.cache.stop_sweeper()
            logger.info("Payment microservice shutdown completed")
        except Exception as e:
            logger.error(f"❌ Error during shutdown: {e}")


# Global microservice instance
payment_microservice = PaymentMicroservice()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    await payment_microservice.initialize()
    logger.info(f"✅ Payment service started on port {SERVICE_PORT}")
    try:
        yield
    finally:
        await payment_microservice.shutdown()


# Create FastAPI application
app = FastAPI(
    title="Payment Service",
    description="Card holds, scheduled capture and refunds for dropship orders",
    version="1.0.0",
    lifespan=lifespan
)


# Dependency injection
def get_components() -> PaymentComponents:
    """Get payment components"""
    if not payment_microservice.components:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment service not initialized"
        )
    return payment_microservice.components


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _enforce(limiter: Optional[RateLimiter], request: Request) -> None:
    if limiter is None:
        return
    decision = limiter.hit(_client_key(request))
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many payment requests, please try again later",
            headers={"Retry-After": str(int(decision.reset_in) + 1)},
        )


def payment_rate_limit(request: Request) -> None:
    _enforce(payment_microservice.payment_limiter, request)


def refund_rate_limit(request: Request) -> None:
    _enforce(payment_microservice.refund_limiter, request)


# Health check endpoints
@app.get("/api/v1/payments/health")
@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Service health check"""
    dependencies = {}
    components = payment_microservice.components
    try:
        if components and getattr(components.order_service.repository, "db", None):
            result = await components.order_service.repository.db.health_check()
            dependencies["database"] = "healthy" if result.get("healthy") else "unhealthy"
        else:
            dependencies["database"] = "not_configured"
    except Exception:
        dependencies["database"] = "unhealthy"

    dependencies["scheduler"] = "healthy" if components and components.scheduler.is_scheduled else "not_configured"
    dependencies["gateway"] = "configured" if config.gateway.is_configured else "not_configured"

    overall = "healthy" if dependencies["database"] != "unhealthy" else "degraded"
    return HealthCheckResponse(
        status=overall,
        service="payment_service",
        port=SERVICE_PORT,
        version="1.0.0",
        dependencies=dependencies,
        timestamp=datetime.now(timezone.utc),
    )


# Hold / capture / cancel

@app.post("/api/v1/payments/orders/{order_id}/hold", response_model=HoldResult)
async def hold_credit(
    request: HoldRequest,
    order_id: str = Path(..., description="Order ID"),
    components: PaymentComponents = Depends(get_components),
    _: None = Depends(payment_rate_limit),
):
    """Place a credit hold for the order total"""
    result = await components.payment_service.hold_credit(order_id, request.card)
    if not result.success:
        return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=result.model_dump(mode="json"))
    return result


@app.post("/api/v1/payments/orders/{order_id}/capture", response_model=CaptureResult)
async def capture_order(
    order_id: str = Path(...),
    components: PaymentComponents = Depends(get_components),
):
    """Capture one order now instead of waiting for the scheduler"""
    async with components.locks.lock(charge_lock_key(order_id), config.scheduler.lock_ttl_seconds) as acquired:
        if not acquired:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Order is already being charged")
        result = await components.payment_service.capture_payment(order_id)
    if result.kind == CaptureOutcome.ERROR:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.error)
    return result


@app.post("/api/v1/payments/orders/{order_id}/cancel", response_model=CancelResult)
async def cancel_hold(
    request: CancelHoldRequest,
    order_id: str = Path(...),
    components: PaymentComponents = Depends(get_components),
):
    """Cancel the whole order and release its hold"""
    result = await components.payment_service.cancel_hold(order_id, request.reason, request.actor)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.error)
    return result


@app.get("/api/v1/payments/transactions/{transaction_id}", response_model=TransactionQueryResult)
async def query_transaction(
    transaction_id: str = Path(...),
    components: PaymentComponents = Depends(get_components),
):
    """Look up a gateway transaction"""
    return await components.payment_service.query_transaction(transaction_id)


# Refunds

@app.post("/api/v1/payments/orders/{order_id}/refunds", response_model=RefundResult)
async def create_refund(
    request: RefundRequest,
    order_id: str = Path(...),
    components: PaymentComponents = Depends(get_components),
    _: None = Depends(refund_rate_limit),
):
    """Refund items (or a custom amount) to the card"""
    result = await components.refund_service.process_refund(
        order_id,
        request.item_ids,
        request.reason,
        request.actor,
        request.card,
        custom_amount=request.custom_amount,
    )
    if not result.success:
        return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=result.model_dump(mode="json"))
    return result


@app.get("/api/v1/payments/orders/{order_id}/refunds", response_model=OrderRefundsResponse)
async def list_refunds(
    order_id: str = Path(...),
    components: PaymentComponents = Depends(get_components),
):
    """Refund records and totals for an order"""
    return await components.refund_service.get_order_refunds(order_id)


@app.get("/api/v1/payments/orders/{order_id}/refunds/eligibility", response_model=RefundEligibility)
async def refund_eligibility(
    order_id: str = Path(...),
    components: PaymentComponents = Depends(get_components),
):
    order = await components.order_service.load(order_id)
    return components.refund_service.can_refund(order)


# Scheduler

@app.post("/api/v1/payments/charge/run", response_model=ChargeRunStats)
async def run_charge_job(components: PaymentComponents = Depends(get_components)):
    """Run one charge batch immediately"""
    return await components.scheduler.run_once()


# Error handlers
@app.exception_handler(OrderValidationError)
async def validation_error_handler(request, exc):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc)}
    )


@app.exception_handler(OrderNotFoundError)
async def not_found_error_handler(request, exc):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc)}
    )


@app.exception_handler(InvariantViolationError)
@app.exception_handler(ConcurrentModificationError)
async def conflict_error_handler(request, exc):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc)}
    )


@app.exception_handler(GatewayNotConfiguredError)
async def gateway_error_handler(request, exc):
    logger.error(f"❌ {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc)}
    )


@app.exception_handler(OrderServiceError)
async def service_error_handler(request, exc):
    logger.error(f"Payment service error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)}
    )


if __name__ == "__main__":
    uvicorn.run(
        "microservices.payment_service.main:app",
        host=config.default_host,
        port=SERVICE_PORT,
        reload=config.debug,
        log_level=config.logging.log_level.lower()
    )
