"""Persistence for webhook delivery logs (create / read / update-by-id)."""

from typing import Any

from sqlalchemy import select, update

from paysettle.common.db import utcnow
from paysettle.common.models import WebhookLog


class WebhookLogStore:
    """CRUD over `webhook_logs`; callers own the session and the commit."""

    def create(self, db, merchant_id: str, event: str, payload: dict[str, Any]) -> WebhookLog:
        log = WebhookLog(
            merchant_id=merchant_id,
            event=event,
            payload=payload,
            status="pending",
            attempts=0,
            next_retry_at=utcnow(),
        )
        db.add(log)
        db.flush()
        return log

    def get(self, db, log_id: str, merchant_id: str | None = None) -> WebhookLog | None:
        query = select(WebhookLog).where(WebhookLog.id == log_id)
        if merchant_id is not None:
            query = query.where(WebhookLog.merchant_id == merchant_id)
        return db.execute(query).scalar_one_or_none()

    def update(self, db, log_id: str, expected_attempts: int | None = None, **values: Any) -> bool:
        """Update one log; with `expected_attempts` the write only lands if nobody else attempted first."""

        query = update(WebhookLog).where(WebhookLog.id == log_id)
        if expected_attempts is not None:
            query = query.where(WebhookLog.attempts == expected_attempts)
        result = db.execute(query.values(**values).execution_options(synchronize_session="fetch"))
        return result.rowcount == 1

    def list_for_merchant(self, db, merchant_id: str, limit: int = 10, offset: int = 0) -> list[WebhookLog]:
        return list(
            db.execute(
                select(WebhookLog)
                .where(WebhookLog.merchant_id == merchant_id)
                .order_by(WebhookLog.created_at.desc(), WebhookLog.id)
                .limit(limit)
                .offset(offset)
            ).scalars()
        )
