"""Gateway process entrypoint: wires store, queue, cache and the HTTP app."""

from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI

from paysettle.common.config import settings
from paysettle.common.db import create_session_factory
from paysettle.common.jobs import JobQueue
from paysettle.common.logging import configure_logging
from paysettle.common.startup import log_startup_config, retry_on_boot
from paysettle.common.tracing import instrument_app, setup_tracing
from paysettle.services.gateway.app import create_app
from paysettle.services.gateway.idempotency import IdempotencyGuard
from paysettle.services.gateway.service import GatewayService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    ["postgres_dsn", "redis_url", "idempotency_ttl_seconds", "test_mode", "test_merchant_api_key"],
)
session_factory = create_session_factory(settings.postgres_dsn)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
queue = JobQueue(session_factory, max_deliveries=settings.queue_max_deliveries)
service = GatewayService(
    session_factory,
    queue,
    guard=IdempotencyGuard(session_factory, ttl_seconds=settings.idempotency_ttl_seconds, cache=rdb),
    redis_client=rdb,
    service_name=settings.service_name,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Bootstrap the test merchant once the database accepts connections."""

    retry_on_boot(lambda: service.ensure_test_merchant(settings), "test merchant bootstrap")
    yield
    rdb.close()


app = create_app(service, lifespan=lifespan, service_name=settings.service_name)
instrument_app(app)
