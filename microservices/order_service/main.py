"""
Order Microservice

Responsibilities:
- Order creation with pricing and order number
- Staff item decisions (order from supplier, cancel, status progression, bulk)
- Customer cancellation of pending items
- Hold -> ready_to_charge transition once every item is decided
"""

from fastapi import FastAPI, HTTPException, Depends, status, Path
from fastapi.responses import JSONResponse
import uvicorn
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from core.config import get_settings
from core.logger import setup_service_logger
from core.ttl_cache import TTLCache

from .factory import create_order_service
from .models import (
    BulkUpdateRequest, CancelItemRequest, CustomerCancelRequest,
    HealthCheckResponse, ItemStatusUpdateRequest, Order, OrderCreateRequest,
    OrderResponse, SupplierOrderRequest,
)
from .order_service import OrderService
from .protocols import (
    ConcurrentModificationError, InvariantViolationError, OrderNotFoundError,
    OrderServiceError, OrderValidationError,
)

# Initialize configuration
config = get_settings()
SERVICE_PORT = config.order_service_port

logger = setup_service_logger("order_service", config=config.logging)


class OrderMicroservice:
    """Order microservice core class"""

    def __init__(self):
        self.order_service: Optional[OrderService] = None
        self.cache: Optional[TTLCache] = None

    async def initialize(self):
        """Initialize the microservice"""
        try:
            self.cache = TTLCache(default_ttl=config.rate_limits.cache_ttl_seconds)
            self.cache.start_sweeper(interval=config.rate_limits.cache_sweep_seconds)
            self.order_service = create_order_service(config=config, cache=self.cache)
            await self.order_service.repository.initialize()
            await self.order_service.locks.store.initialize()
            logger.info("Order microservice initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize order microservice: {e}")
            raise

    async def shutdown(self):
        """Shutdown the microservice"""
        try:
            if self.cache:
                await self.cache.stop_sweeper()
            if self.order_service:
                await self.order_service.repository.close()
            logger.info("Order microservice shutdown completed")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")


# Global microservice instance
order_microservice = OrderMicroservice()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    await order_microservice.initialize()
    logger.info(f"✅ Order service started on port {SERVICE_PORT}")
    yield
    await order_microservice.shutdown()


# Create FastAPI application
app = FastAPI(
    title="Order Service",
    description="Dropship order lifecycle and item decisions",
    version="1.0.0",
    lifespan=lifespan
)


# Dependency injection
def get_order_service() -> OrderService:
    """Get order service instance"""
    if not order_microservice.order_service:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Order service not initialized"
        )
    return order_microservice.order_service


def _raise_for(response: OrderResponse) -> OrderResponse:
    if response.success:
        return response
    codes = {"ORDER_NOT_FOUND": status.HTTP_404_NOT_FOUND, "PAYMENT_BUSY": status.HTTP_409_CONFLICT}
    code = codes.get(response.error_code, status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=code, detail=response.message)


# Health check endpoints
@app.get("/api/v1/orders/health")
@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Service health check"""
    dependencies = {}
    service = order_microservice.order_service
    try:
        if service and getattr(service.repository, "db", None):
            result = await service.repository.db.health_check()
            dependencies["database"] = "healthy" if result.get("healthy") else "unhealthy"
        else:
            dependencies["database"] = "not_configured"
    except Exception:
        dependencies["database"] = "unhealthy"

    overall = "healthy" if all(v in ("healthy", "not_configured") for v in dependencies.values()) else "degraded"
    return HealthCheckResponse(
        status=overall,
        service="order_service",
        port=SERVICE_PORT,
        version="1.0.0",
        dependencies=dependencies,
        timestamp=datetime.now(timezone.utc),
    )


# Core order endpoints

@app.post("/api/v1/orders", response_model=OrderResponse)
async def create_order(
    request: OrderCreateRequest,
    order_service: OrderService = Depends(get_order_service)
):
    """Create a new order"""
    return await order_service.create_order(request)


@app.get("/api/v1/orders/{order_id}", response_model=Order)
async def get_order(
    order_id: str = Path(..., description="Order ID"),
    order_service: OrderService = Depends(get_order_service)
):
    """Get order details"""
    order = await order_service.get_order(order_id)
    if not order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order


# Item decision endpoints

@app.post("/api/v1/orders/{order_id}/items/{item_id}/order-from-supplier", response_model=OrderResponse)
async def order_from_supplier(
    request: SupplierOrderRequest,
    order_id: str = Path(...),
    item_id: str = Path(...),
    order_service: OrderService = Depends(get_order_service)
):
    """Mark an item as ordered from the supplier"""
    return _raise_for(await order_service.order_from_supplier(order_id, item_id, request))


@app.post("/api/v1/orders/{order_id}/items/{item_id}/cancel", response_model=OrderResponse)
async def cancel_item(
    request: CancelItemRequest,
    order_id: str = Path(...),
    item_id: str = Path(...),
    order_service: OrderService = Depends(get_order_service)
):
    """Staff cancellation of a single item"""
    return _raise_for(await order_service.cancel_item(order_id, item_id, request.reason, request.actor))


@app.post("/api/v1/orders/{order_id}/items/{item_id}/customer-cancel", response_model=OrderResponse)
async def customer_cancel_item(
    request: CustomerCancelRequest,
    order_id: str = Path(...),
    item_id: str = Path(...),
    order_service: OrderService = Depends(get_order_service)
):
    """Customer cancellation of a pending item"""
    return _raise_for(
        await order_service.request_item_cancellation(order_id, item_id, request.user_id, request.reason)
    )


@app.put("/api/v1/orders/{order_id}/items/{item_id}/status", response_model=OrderResponse)
async def update_item_status(
    request: ItemStatusUpdateRequest,
    order_id: str = Path(...),
    item_id: str = Path(...),
    order_service: OrderService = Depends(get_order_service)
):
    """Advance an item's fulfillment status"""
    return _raise_for(
        await order_service.update_item_status(order_id, item_id, request.status, request.actor, request.notes)
    )


@app.post("/api/v1/orders/{order_id}/items/bulk", response_model=OrderResponse)
async def bulk_update_items(
    request: BulkUpdateRequest,
    order_id: str = Path(...),
    order_service: OrderService = Depends(get_order_service)
):
    """Apply several item changes at once"""
    return _raise_for(await order_service.bulk_update_items(order_id, request))


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


@app.exception_handler(OrderServiceError)
async def service_error_handler(request, exc):
    logger.error(f"Order service error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)}
    )


if __name__ == "__main__":
    uvicorn.run(
        "microservices.order_service.main:app",
        host=config.default_host,
        port=SERVICE_PORT,
        reload=config.debug,
        log_level=config.logging.log_level.lower()
    )
