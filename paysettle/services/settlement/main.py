"""Worker process: payment, refund and webhook consumers plus health/metrics endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from paysettle.common.config import settings
from paysettle.common.db import create_session_factory
from paysettle.common.jobs import JobQueue
from paysettle.common.logging import configure_logging
from paysettle.common.metrics import metrics_response
from paysettle.common.startup import log_startup_config
from paysettle.common.tracing import instrument_app, setup_tracing
from paysettle.services.settlement.service import OutcomePolicy, SettlementService
from paysettle.services.webhooks.retry import schedule_for
from paysettle.services.webhooks.service import WebhookDeliveryService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "test_mode",
        "test_payment_success",
        "test_processing_delay",
        "webhook_retry_intervals_test",
        "queue_max_deliveries",
    ],
)
session_factory = create_session_factory(settings.postgres_dsn)
queue = JobQueue(
    session_factory,
    poll_interval_seconds=settings.queue_poll_interval_seconds,
    visibility_timeout_seconds=settings.queue_visibility_timeout_seconds,
    max_deliveries=settings.queue_max_deliveries,
    redelivery_delay_seconds=settings.queue_redelivery_delay_seconds,
)
service = SettlementService(
    session_factory,
    queue,
    policy=OutcomePolicy(
        test_mode=settings.test_mode,
        forced_success=settings.test_payment_success,
        test_delay_ms=settings.test_processing_delay,
        upi_success_rate=settings.upi_success_rate,
        card_success_rate=settings.card_success_rate,
        refund_delay_ms=settings.refund_processing_delay,
    ),
)
webhooks = WebhookDeliveryService(
    session_factory,
    queue,
    schedule=schedule_for(settings.webhook_retry_intervals_test),
    timeout_seconds=settings.webhook_timeout_seconds,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run consumer loops with FastAPI application lifecycle."""

    app.state.consumer_task = asyncio.create_task(service.start_consumers(webhooks))
    yield
    app.state.consumer_task.cancel()


app = FastAPI(title="PaySettle Worker", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint; fails once the consumer loops have stopped."""

    task = getattr(app.state, "consumer_task", None)
    if task is None or task.done():
        return JSONResponse(status_code=503, content={"ok": False})
    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
