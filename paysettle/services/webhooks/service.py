"""Webhook event fan-out and delivery worker.

Every event gets a `webhook_logs` row plus a `webhook` job written in the
caller's transaction. The worker signs the stored payload, POSTs it to the
merchant and either finishes the log or re-enqueues itself with backoff.
"""

import time
from datetime import timedelta
from typing import Any

import httpx

from paysettle.common.db import utcnow
from paysettle.common.jobs import JobQueue, Task
from paysettle.common.logging import entity_id_ctx, logger
from paysettle.common.metrics import (
    duplicate_jobs_skipped_total,
    webhook_attempts_total,
    webhook_retries_scheduled_total,
)
from paysettle.common.models import Merchant, WebhookLog
from paysettle.common.state_machine import WEBHOOK_TRANSITIONS, validate_transition
from paysettle.services.webhooks.retry import MAX_ATTEMPTS, PRODUCTION_SCHEDULE, next_delivery_state
from paysettle.services.webhooks.signing import SIGNATURE_HEADER, serialize_payload, sign_payload
from paysettle.services.webhooks.store import WebhookLogStore


RESPONSE_BODY_LIMIT = 1000
MISSING_URL_BODY = "Merchant webhook URL not configured"
WEBHOOK_TOPIC = "webhook"


def build_event(event: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event": event, "timestamp": int(time.time()), "data": data}


def enqueue_webhook(
    db,
    queue: JobQueue,
    store: WebhookLogStore,
    merchant_id: str,
    event: str,
    data: dict[str, Any],
) -> WebhookLog | None:
    """Create the log row and its delivery job inside `db`'s transaction.

    Merchants without a registered URL get nothing.
    """

    merchant = db.get(Merchant, merchant_id)
    if merchant is None:
        logger.warning("webhook skipped, merchant not found merchant_id=%s event=%s", merchant_id, event)
        return None
    if not merchant.webhook_url:
        logger.info("webhook skipped, no url configured merchant_id=%s event=%s", merchant_id, event)
        return None

    payload = build_event(event, data)
    log = store.create(db, merchant_id=merchant_id, event=event, payload=payload)
    queue.enqueue(
        WEBHOOK_TOPIC,
        {"log_id": log.id, "merchant_id": merchant_id, "payload": payload},
        db=db,
    )
    return log


def schedule_manual_retry(db, queue: JobQueue, store: WebhookLogStore, log: WebhookLog) -> None:
    """Reset a log to `pending` / attempts 0 and enqueue an immediate delivery."""

    validate_transition(log.status, "pending", WEBHOOK_TRANSITIONS)
    store.update(
        db,
        log.id,
        status="pending",
        attempts=0,
        next_retry_at=utcnow(),
    )
    queue.enqueue(
        WEBHOOK_TOPIC,
        {"log_id": log.id, "merchant_id": log.merchant_id, "payload": log.payload},
        db=db,
    )


class WebhookDeliveryService:
    """Consumes `webhook` jobs: sign, POST, record the attempt, maybe retry."""

    def __init__(
        self,
        session_factory,
        queue: JobQueue,
        store: WebhookLogStore | None = None,
        schedule: tuple[int, ...] = PRODUCTION_SCHEDULE,
        timeout_seconds: float = 5.0,
        max_attempts: int = MAX_ATTEMPTS,
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str = "webhooks",
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.store = store or WebhookLogStore()
        self.schedule = schedule
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.transport = transport
        self.service_name = service_name

    async def _post(self, url: str, body: bytes, signature: str) -> tuple[int, str, bool]:
        """POST the signed body; returns `(response_code, response_body, delivered)`."""

        headers = {"Content-Type": "application/json", SIGNATURE_HEADER: signature}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                resp = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            return 0, (str(exc) or exc.__class__.__name__)[:RESPONSE_BODY_LIMIT], False
        return resp.status_code, resp.text[:RESPONSE_BODY_LIMIT], resp.is_success

    async def deliver(self, task: Task) -> None:
        """Run one delivery attempt for the log referenced by `task`."""

        log_id = task.payload["log_id"]
        merchant_id = task.payload["merchant_id"]
        payload = task.payload["payload"]
        token = entity_id_ctx.set(log_id)
        try:
            with self.session_factory() as db:
                log = self.store.get(db, log_id)
                if log is None:
                    logger.warning("webhook dropped, log not found log_id=%s", log_id)
                    return
                if log.status != "pending":
                    logger.info("duplicate webhook job skipped log_id=%s status=%s", log_id, log.status)
                    duplicate_jobs_skipped_total.labels(service=self.service_name, topic=WEBHOOK_TOPIC).inc()
                    return
                merchant = db.get(Merchant, merchant_id)
                if merchant is None or not merchant.webhook_url:
                    # No destination left; close the log.
                    validate_transition(log.status, "failed", WEBHOOK_TRANSITIONS)
                    self.store.update(
                        db,
                        log_id,
                        status="failed",
                        last_attempt_at=utcnow(),
                        response_code=0,
                        response_body=MISSING_URL_BODY,
                        next_retry_at=None,
                    )
                    db.commit()
                    logger.warning("webhook failed, merchant or url missing log_id=%s", log_id)
                    return
                url = merchant.webhook_url
                secret = merchant.webhook_secret or ""
                previous_attempts = log.attempts
                event = log.event

            attempts = previous_attempts + 1
            body = serialize_payload(payload)
            logger.info("webhook POST url=%s log_id=%s attempt=%s", url, log_id, attempts)
            response_code, response_body, delivered = await self._post(url, body, sign_payload(secret, body))

            status, delay = next_delivery_state(attempts, delivered, self.schedule, self.max_attempts)
            validate_transition("pending", status, WEBHOOK_TRANSITIONS)
            now = utcnow()
            next_retry_at = now + timedelta(seconds=delay) if delay is not None else None
            with self.session_factory() as db:
                written = self.store.update(
                    db,
                    log_id,
                    expected_attempts=previous_attempts,
                    status=status,
                    attempts=attempts,
                    last_attempt_at=now,
                    response_code=response_code,
                    response_body=response_body,
                    next_retry_at=next_retry_at,
                )
                if not written:
                    db.rollback()
                    logger.warning("webhook attempt lost a race log_id=%s attempt=%s", log_id, attempts)
                    return
                if delay is not None:
                    self.queue.enqueue(WEBHOOK_TOPIC, task.payload, delay=delay, db=db)
                db.commit()

            webhook_attempts_total.labels(service=self.service_name, event=event, outcome=status).inc()
            if delay is not None:
                webhook_retries_scheduled_total.labels(service=self.service_name).inc()
                logger.warning(
                    "webhook delivery failed log_id=%s attempt=%s code=%s retry_in_s=%s",
                    log_id,
                    attempts,
                    response_code,
                    delay,
                )
            elif status == "failed":
                logger.error("webhook delivery exhausted log_id=%s attempts=%s", log_id, attempts)
            else:
                logger.info("webhook delivered log_id=%s code=%s", log_id, response_code)
        finally:
            entity_id_ctx.reset(token)
