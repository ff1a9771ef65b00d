"""Payment and refund settlement workers.

Both consume jobs that carry only an entity id, re-read the row, and apply
their transition with a conditional `UPDATE ... WHERE status = 'pending'` so a
redelivered job can never settle the same entity twice.
"""

import asyncio
import random
from dataclasses import dataclass

from sqlalchemy import update

from paysettle.common.db import as_utc, utcnow
from paysettle.common.jobs import JobQueue, Task, run_worker
from paysettle.common.logging import entity_id_ctx, logger
from paysettle.common.metrics import (
    duplicate_jobs_skipped_total,
    payment_settlement_seconds,
    payment_settlements_total,
    refunds_processed_total,
)
from paysettle.common.models import Order, Payment, Refund
from paysettle.common.schemas import PaymentResponse, dump
from paysettle.common.state_machine import ORDER_TRANSITIONS, REFUND_TRANSITIONS, validate_transition
from paysettle.services.webhooks.service import WebhookDeliveryService, enqueue_webhook
from paysettle.services.webhooks.store import WebhookLogStore


PAYMENT_TOPIC = "payment"
REFUND_TOPIC = "refund"


@dataclass(frozen=True)
class OutcomePolicy:
    """How the simulated payment network decides outcomes and latency."""

    test_mode: bool = False
    forced_success: bool | None = None
    test_delay_ms: int = 1000
    upi_success_rate: float = 0.95
    card_success_rate: float = 0.90
    min_delay_ms: int = 5000
    max_delay_ms: int = 10000
    refund_delay_ms: int = 2000

    def processing_delay_seconds(self) -> float:
        if self.test_mode:
            return self.test_delay_ms / 1000
        return random.uniform(self.min_delay_ms, self.max_delay_ms) / 1000

    def refund_delay_seconds(self) -> float:
        if self.test_mode:
            return self.test_delay_ms / 1000
        return self.refund_delay_ms / 1000

    def decide(self, method: str) -> bool:
        if self.test_mode and self.forced_success is not None:
            return self.forced_success
        rate = self.upi_success_rate if method == "upi" else self.card_success_rate
        return random.random() < rate


def payment_snapshot(payment: Payment) -> dict:
    """JSON-safe view of a payment used in webhook payloads."""

    return dump(PaymentResponse, payment)


class SettlementService:
    """Settles pending payments and refunds pulled from the job queue."""

    def __init__(
        self,
        session_factory,
        queue: JobQueue,
        policy: OutcomePolicy | None = None,
        webhook_store: WebhookLogStore | None = None,
        service_name: str = "settlement",
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.policy = policy or OutcomePolicy()
        self.webhook_store = webhook_store or WebhookLogStore()
        self.service_name = service_name

    def _skip_duplicate(self, topic: str, entity_id: str, status: str) -> None:
        logger.info("duplicate job skipped topic=%s id=%s status=%s", topic, entity_id, status)
        duplicate_jobs_skipped_total.labels(service=self.service_name, topic=topic).inc()

    async def handle_payment(self, task: Task) -> None:
        """Decide and record the outcome of one pending payment, then emit its webhook event."""

        payment_id = task.payload["payment_id"]
        token = entity_id_ctx.set(payment_id)
        try:
            with self.session_factory() as db:
                payment = db.get(Payment, payment_id)
            if payment is None:
                logger.error("payment not found, dropping job payment_id=%s", payment_id)
                return
            if payment.status != "pending":
                self._skip_duplicate(PAYMENT_TOPIC, payment_id, payment.status)
                return

            await asyncio.sleep(self.policy.processing_delay_seconds())
            success = self.policy.decide(payment.method)
            status = "success" if success else "failed"
            validate_transition(payment.status, status)

            with self.session_factory() as db:
                result = db.execute(
                    update(Payment)
                    .where(Payment.id == payment_id, Payment.status == "pending")
                    .values(
                        status=status,
                        captured=success,
                        error_code=None if success else "PAYMENT_FAILED",
                        error_description=None if success else "Processing failed",
                        updated_at=utcnow(),
                    )
                )
                if result.rowcount != 1:
                    db.rollback()
                    self._skip_duplicate(PAYMENT_TOPIC, payment_id, "settled-concurrently")
                    return

                if success:
                    validate_transition("created", "paid", ORDER_TRANSITIONS)
                    db.execute(
                        update(Order)
                        .where(Order.id == payment.order_id, Order.status == "created")
                        .values(status="paid", updated_at=utcnow())
                    )

                updated = db.get(Payment, payment_id, populate_existing=True)
                event = "payment.success" if success else "payment.failed"
                enqueue_webhook(
                    db,
                    self.queue,
                    self.webhook_store,
                    merchant_id=updated.merchant_id,
                    event=event,
                    data={"payment": payment_snapshot(updated)},
                )
                db.commit()

            payment_settlements_total.labels(
                service=self.service_name, method=payment.method, outcome=status
            ).inc()
            created_at = as_utc(payment.created_at)
            if created_at is not None:
                elapsed = max(0.0, (utcnow() - created_at).total_seconds())
                payment_settlement_seconds.labels(service=self.service_name, outcome=status).observe(elapsed)
            logger.info("payment settled payment_id=%s status=%s", payment_id, status)
        finally:
            entity_id_ctx.reset(token)

    async def handle_refund(self, task: Task) -> None:
        """Mark one pending refund as processed after the simulated network latency."""

        refund_id = task.payload["refund_id"]
        token = entity_id_ctx.set(refund_id)
        try:
            with self.session_factory() as db:
                refund = db.get(Refund, refund_id)
            if refund is None:
                logger.error("refund not found, dropping job refund_id=%s", refund_id)
                return
            if refund.status != "pending":
                self._skip_duplicate(REFUND_TOPIC, refund_id, refund.status)
                return

            await asyncio.sleep(self.policy.refund_delay_seconds())
            validate_transition(refund.status, "processed", REFUND_TRANSITIONS)
            with self.session_factory() as db:
                result = db.execute(
                    update(Refund)
                    .where(Refund.id == refund_id, Refund.status == "pending")
                    .values(status="processed", processed_at=utcnow())
                )
                db.commit()
            if result.rowcount != 1:
                self._skip_duplicate(REFUND_TOPIC, refund_id, "processed-concurrently")
                return
            refunds_processed_total.labels(service=self.service_name).inc()
            logger.info("refund processed refund_id=%s", refund_id)
        finally:
            entity_id_ctx.reset(token)

    async def start_consumers(self, webhooks: WebhookDeliveryService) -> None:
        """Run payment, refund and webhook consumers in parallel."""

        await asyncio.gather(
            run_worker(self.queue, PAYMENT_TOPIC, self.handle_payment, self.service_name),
            run_worker(self.queue, REFUND_TOPIC, self.handle_refund, self.service_name),
            run_worker(self.queue, "webhook", webhooks.deliver, webhooks.service_name),
        )
