"""HTTP surface of the gateway.

Routes stay thin: parse, authenticate, call `GatewayService`, and map
`PaySettleError` to `{"error": {"code", "description"}}` bodies.
"""

from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paysettle.common.errors import PaySettleError
from paysettle.common.logging import trace_id_ctx
from paysettle.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from paysettle.common.models import Merchant
from paysettle.common.schemas import (
    LoginRequest,
    OrderCreateRequest,
    PaymentCreateRequest,
    RefundCreateRequest,
)
from paysettle.services.gateway.service import GatewayService


def _validation_description(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "invalid request"


def create_app(service: GatewayService, lifespan=None, service_name: str = "gateway") -> FastAPI:
    """Build the FastAPI app around an already-wired `GatewayService`."""

    app = FastAPI(title="PaySettle API", lifespan=lifespan)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency; tag the request with a correlation id."""

        trace_id = request.headers.get("x-correlation-id") or str(uuid4())
        token = trace_id_ctx.set(trace_id)
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Correlation-Id"] = trace_id
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            trace_id_ctx.reset(token)
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(PaySettleError)
    async def paysettle_error_handler(_: Request, exc: PaySettleError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": {"code": "BAD_REQUEST_ERROR", "description": _validation_description(exc)}},
        )

    def current_merchant(
        x_api_key: str | None = Header(default=None),
        x_api_secret: str | None = Header(default=None),
    ) -> Merchant:
        return service.authenticate(x_api_key, x_api_secret)

    @app.get("/health")
    def health():
        """Container health probe endpoint with dependency status."""

        return service.health()

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.post("/api/v1/login")
    def login(req: LoginRequest):
        """Dashboard sign-in with email and API secret; returns the merchant's public profile."""

        return service.login(req.email, req.secret)

    @app.post("/api/v1/orders", status_code=201)
    def create_order(req: OrderCreateRequest, merchant: Merchant = Depends(current_merchant)):
        return service.create_order(merchant, req)

    @app.get("/api/v1/orders")
    def list_orders(limit: int = 50, offset: int = 0, merchant: Merchant = Depends(current_merchant)):
        return service.list_orders(merchant, limit=limit, offset=offset)

    @app.get("/api/v1/orders/{order_id}")
    def get_order(order_id: str, merchant: Merchant = Depends(current_merchant)):
        return service.get_order(merchant, order_id)

    @app.get("/api/v1/orders/{order_id}/public")
    def get_public_order(order_id: str):
        """Checkout-page view of an order; no credentials required."""

        return service.get_public_order(order_id)

    @app.post("/api/v1/payments")
    def create_payment(
        req: PaymentCreateRequest,
        merchant: Merchant = Depends(current_merchant),
        idempotency_key: str | None = Header(default=None),
    ):
        """Create a pending payment; repeated `Idempotency-Key`s replay the first response."""

        response = service.create_payment(req, merchant=merchant, idempotency_key=idempotency_key)
        return JSONResponse(status_code=response.status_code, content=response.body)

    @app.post("/api/v1/payments/public")
    def create_public_payment(req: PaymentCreateRequest):
        """Checkout-page payment creation; no credentials, no idempotency guard."""

        response = service.create_payment(req)
        return JSONResponse(status_code=response.status_code, content=response.body)

    @app.get("/api/v1/payments/{payment_id}")
    def get_payment(payment_id: str):
        return service.get_payment(payment_id)

    @app.post("/api/v1/payments/{payment_id}/capture")
    def capture_payment(payment_id: str, merchant: Merchant = Depends(current_merchant)):
        return service.capture_payment(merchant, payment_id)

    @app.post("/api/v1/payments/{payment_id}/refunds", status_code=201)
    def create_refund(
        payment_id: str,
        req: RefundCreateRequest,
        merchant: Merchant = Depends(current_merchant),
    ):
        return service.create_refund(merchant, payment_id, req)

    @app.get("/api/v1/refunds/{refund_id}")
    def get_refund(refund_id: str, merchant: Merchant = Depends(current_merchant)):
        return service.get_refund(merchant, refund_id)

    @app.get("/api/v1/webhooks")
    def list_webhooks(limit: int = 10, offset: int = 0, merchant: Merchant = Depends(current_merchant)):
        return service.list_webhook_logs(merchant, limit=limit, offset=offset)

    @app.post("/api/v1/webhooks/{log_id}/retry")
    def retry_webhook(log_id: str, merchant: Merchant = Depends(current_merchant)):
        """Reset a delivery log to pending and schedule an immediate attempt."""

        return service.retry_webhook(merchant, log_id)

    @app.get("/api/v1/test/jobs/status")
    def job_status():
        """Queue depth for operational checks."""

        return service.job_status()

    return app
