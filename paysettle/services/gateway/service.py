"""Gateway use cases: orders, payment creation, refunds, capture and webhook admin.

Business-rule violations are rejected here, synchronously, and never reach the
job queue. Every state change that needs async work writes its job in the same
transaction as the row it refers to.
"""

from datetime import datetime, timezone

from sqlalchemy import func, select, text, update

from paysettle.common.config import CommonSettings
from paysettle.common.db import utcnow
from paysettle.common.errors import AuthenticationError, BadRequestError, NotFoundError
from paysettle.common.ids import generate_id
from paysettle.common.jobs import JobQueue
from paysettle.common.logging import logger
from paysettle.common.metrics import idempotent_replays_total, payment_requests_total
from paysettle.common.models import Merchant, Order, Payment, Refund
from paysettle.common.schemas import (
    MerchantResponse,
    OrderCreateRequest,
    OrderResponse,
    PaymentCreateRequest,
    PaymentResponse,
    PublicOrderResponse,
    RefundCreateRequest,
    RefundResponse,
    WebhookLogResponse,
    dump,
)
from paysettle.services.gateway.idempotency import IdempotencyGuard, StoredResponse
from paysettle.services.gateway.validation import (
    detect_card_network,
    sanitize_card_number,
    validate_expiry,
    validate_luhn,
    validate_vpa,
)
from paysettle.services.webhooks.service import schedule_manual_retry
from paysettle.services.webhooks.store import WebhookLogStore


MIN_ORDER_AMOUNT = 100


class GatewayService:
    """Synchronous API-side operations over the relational store and the queue."""

    def __init__(
        self,
        session_factory,
        queue: JobQueue,
        guard: IdempotencyGuard,
        webhook_store: WebhookLogStore | None = None,
        redis_client=None,
        service_name: str = "gateway",
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.guard = guard
        self.webhook_store = webhook_store or WebhookLogStore()
        self.redis_client = redis_client
        self.service_name = service_name

    def ensure_test_merchant(self, settings: CommonSettings) -> None:
        """Create the configured test merchant when it does not exist yet."""

        with self.session_factory() as db:
            if db.get(Merchant, settings.test_merchant_id) is not None:
                return
            db.add(
                Merchant(
                    id=settings.test_merchant_id,
                    name=settings.test_merchant_name,
                    email=settings.test_merchant_email,
                    api_key=settings.test_merchant_api_key,
                    api_secret=settings.test_merchant_api_secret,
                    webhook_url=settings.test_merchant_webhook_url,
                    webhook_secret=settings.test_merchant_webhook_secret,
                )
            )
            db.commit()
            logger.info("test merchant created merchant_id=%s", settings.test_merchant_id)

    def authenticate(self, api_key: str | None, api_secret: str | None) -> Merchant:
        if not api_key or not api_secret:
            raise AuthenticationError("Invalid API credentials")
        with self.session_factory() as db:
            merchant = db.execute(
                select(Merchant).where(Merchant.api_key == api_key, Merchant.api_secret == api_secret)
            ).scalar_one_or_none()
        if merchant is None:
            raise AuthenticationError("Invalid API credentials")
        return merchant

    def login(self, email: str | None, secret: str | None) -> dict:
        """Look up a merchant by email and API secret for dashboard sign-in."""

        if not email or not secret:
            raise BadRequestError("Email and Secret are required")
        with self.session_factory() as db:
            merchant = db.execute(
                select(Merchant).where(Merchant.email == email, Merchant.api_secret == secret)
            ).scalar_one_or_none()
        if merchant is None:
            raise AuthenticationError("Invalid credentials")
        logger.info("merchant login merchant_id=%s", merchant.id)
        return dump(MerchantResponse, merchant)

    # Orders

    def create_order(self, merchant: Merchant, req: OrderCreateRequest) -> dict:
        if req.amount < MIN_ORDER_AMOUNT:
            raise BadRequestError(f"amount must be at least {MIN_ORDER_AMOUNT}")
        with self.session_factory() as db:
            order = Order(
                id=generate_id("order_"),
                merchant_id=merchant.id,
                amount=req.amount,
                currency=req.currency.upper(),
                receipt=req.receipt,
                notes=req.notes,
                status="created",
            )
            db.add(order)
            db.commit()
            return dump(OrderResponse, order)

    def list_orders(self, merchant: Merchant, limit: int = 50, offset: int = 0) -> list[dict]:
        """Orders newest first, with the successful payment id and the amount refunded so far."""

        refunded = (
            select(func.coalesce(func.sum(Refund.amount), 0))
            .where(Refund.payment_id == Payment.id)
            .scalar_subquery()
        )
        with self.session_factory() as db:
            rows = db.execute(
                select(Order, Payment.id, refunded)
                .outerjoin(Payment, (Payment.order_id == Order.id) & (Payment.status == "success"))
                .where(Order.merchant_id == merchant.id)
                .order_by(Order.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
        return [
            {**dump(OrderResponse, order), "payment_id": payment_id, "refunded_amount": int(refunded_amount or 0)}
            for order, payment_id, refunded_amount in rows
        ]

    def get_order(self, merchant: Merchant, order_id: str) -> dict:
        with self.session_factory() as db:
            order = db.execute(
                select(Order).where(Order.id == order_id, Order.merchant_id == merchant.id)
            ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found")
        return dump(OrderResponse, order)

    def get_public_order(self, order_id: str) -> dict:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return dump(PublicOrderResponse, order)

    # Payments

    def create_payment(
        self,
        req: PaymentCreateRequest,
        merchant: Merchant | None = None,
        idempotency_key: str | None = None,
    ) -> StoredResponse:
        """Create a pending payment and queue its settlement.

        With a merchant and an idempotency key, a live stored response is
        replayed verbatim and nothing is created. The response is stored only
        after the payment and its job committed.
        """

        guarded = merchant is not None and bool(idempotency_key)
        if guarded:
            stored = self.guard.check(merchant.id, idempotency_key)
            if stored is not None:
                idempotent_replays_total.labels(service=self.service_name).inc()
                logger.info("idempotent replay merchant_id=%s key=%s", merchant.id, idempotency_key)
                return stored

        payment_requests_total.labels(service=self.service_name).inc()
        body = self._create_payment(req, merchant)
        response = StoredResponse(status_code=201, body=body)
        if guarded:
            self.guard.store(merchant.id, idempotency_key, response)
        return response

    def _create_payment(self, req: PaymentCreateRequest, merchant: Merchant | None) -> dict:
        with self.session_factory() as db:
            order = db.get(Order, req.order_id)
            if order is None:
                raise NotFoundError("Order not found")
            if merchant is not None and order.merchant_id != merchant.id:
                raise BadRequestError("Order does not belong to merchant")

            vpa = card_network = card_last4 = None
            if req.method == "upi":
                if not req.vpa or not validate_vpa(req.vpa):
                    raise BadRequestError("VPA format invalid", code="INVALID_VPA")
                vpa = req.vpa
            elif req.method == "card":
                if req.card is None or not validate_luhn(req.card.number):
                    raise BadRequestError("Card validation failed", code="INVALID_CARD")
                if not validate_expiry(req.card.expiry_month, req.card.expiry_year):
                    raise BadRequestError("Card expiry date invalid", code="EXPIRED_CARD")
                card_network = detect_card_network(req.card.number)
                card_last4 = sanitize_card_number(req.card.number)[-4:]
            else:
                raise BadRequestError("Invalid payment method")

            payment = Payment(
                id=generate_id("pay_"),
                order_id=order.id,
                merchant_id=order.merchant_id,
                amount=order.amount,
                currency=order.currency,
                method=req.method,
                status="pending",
                captured=False,
                vpa=vpa,
                card_network=card_network,
                card_last4=card_last4,
            )
            db.add(payment)
            db.flush()
            self.queue.enqueue("payment", {"payment_id": payment.id}, db=db)
            db.commit()
            logger.info("payment created payment_id=%s order_id=%s method=%s", payment.id, order.id, req.method)
            return dump(PaymentResponse, payment)

    def get_payment(self, payment_id: str) -> dict:
        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        return dump(PaymentResponse, payment)

    def capture_payment(self, merchant: Merchant, payment_id: str) -> dict:
        """Set `captured` on a successful, not yet captured payment."""

        with self.session_factory() as db:
            payment = db.execute(
                select(Payment).where(Payment.id == payment_id, Payment.merchant_id == merchant.id)
            ).scalar_one_or_none()
            if payment is None:
                raise NotFoundError("Payment not found")
            if payment.status != "success":
                raise BadRequestError("Payment not in capturable state")
            if payment.captured:
                raise BadRequestError("Payment already captured")
            result = db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == "success", Payment.captured.is_(False))
                .values(captured=True, updated_at=utcnow())
            )
            if result.rowcount != 1:
                db.rollback()
                raise BadRequestError("Payment already captured")
            db.commit()
            db.refresh(payment)
            return dump(PaymentResponse, payment)

    # Refunds

    def create_refund(self, merchant: Merchant, payment_id: str, req: RefundCreateRequest) -> dict:
        """Create a pending refund if it fits in the payment's remaining amount.

        The payment row is locked while the existing refunds are summed, so two
        concurrent requests for the same payment cannot both pass the cap.
        """

        with self.session_factory() as db:
            payment = db.execute(
                select(Payment)
                .where(Payment.id == payment_id, Payment.merchant_id == merchant.id)
                .with_for_update()
            ).scalar_one_or_none()
            if payment is None:
                raise NotFoundError("Payment not found")
            if payment.status != "success":
                raise BadRequestError("Payment not successful")

            refunded = db.execute(
                select(func.coalesce(func.sum(Refund.amount), 0)).where(Refund.payment_id == payment_id)
            ).scalar_one()
            if req.amount > payment.amount - int(refunded):
                raise BadRequestError("Refund amount exceeds available")

            refund = Refund(
                id=generate_id("rfnd_"),
                payment_id=payment_id,
                merchant_id=merchant.id,
                amount=req.amount,
                reason=req.reason,
                status="pending",
            )
            db.add(refund)
            db.flush()
            self.queue.enqueue("refund", {"refund_id": refund.id}, db=db)
            db.commit()
            logger.info("refund created refund_id=%s payment_id=%s amount=%s", refund.id, payment_id, req.amount)
            return dump(RefundResponse, refund)

    def get_refund(self, merchant: Merchant, refund_id: str) -> dict:
        with self.session_factory() as db:
            refund = db.execute(
                select(Refund).where(Refund.id == refund_id, Refund.merchant_id == merchant.id)
            ).scalar_one_or_none()
        if refund is None:
            raise NotFoundError("Refund not found")
        return dump(RefundResponse, refund)

    # Webhooks

    def list_webhook_logs(self, merchant: Merchant, limit: int = 10, offset: int = 0) -> dict:
        with self.session_factory() as db:
            logs = self.webhook_store.list_for_merchant(db, merchant.id, limit=limit, offset=offset)
        return {"data": [dump(WebhookLogResponse, log) for log in logs], "limit": limit, "offset": offset}

    def retry_webhook(self, merchant: Merchant, log_id: str) -> dict:
        with self.session_factory() as db:
            log = self.webhook_store.get(db, log_id, merchant_id=merchant.id)
            if log is None:
                raise NotFoundError("Webhook log not found")
            schedule_manual_retry(db, self.queue, self.webhook_store, log)
            db.commit()
        logger.info("webhook manual retry scheduled log_id=%s", log_id)
        return {"id": log_id, "status": "pending", "message": "Webhook retry scheduled"}

    # Operations

    def job_status(self) -> dict:
        """Payment queue counters plus per-topic depth."""

        by_topic = self.queue.counts_by_topic()
        payment = by_topic["payment"]
        return {
            "pending": payment.waiting + payment.delayed,
            "processing": payment.active,
            "completed": payment.completed,
            "failed": payment.failed,
            "worker_status": "running",
            "queues": {topic: counts.as_dict() for topic, counts in by_topic.items()},
        }

    def health(self) -> dict:
        database = "disconnected"
        try:
            with self.session_factory() as db:
                db.execute(text("SELECT 1"))
            database = "connected"
        except Exception as exc:
            logger.error("database health check failed: %s", exc)

        redis_status = "disconnected"
        if self.redis_client is not None:
            try:
                if self.redis_client.ping():
                    redis_status = "connected"
            except Exception as exc:
                logger.warning("redis health check failed: %s", exc)

        return {
            "status": "healthy",
            "database": database,
            "redis": redis_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
