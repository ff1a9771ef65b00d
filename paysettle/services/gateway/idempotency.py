"""Idempotency guard for payment creation.

Records live in the `idempotency_keys` table, scoped by merchant. A Redis copy
with the same TTL is consulted first when a client is configured; cache errors
never fail a request, the table stays authoritative.
"""

import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from paysettle.common.db import as_utc, utcnow
from paysettle.common.logging import logger
from paysettle.common.models import IdempotencyRecord


@dataclass(frozen=True)
class StoredResponse:
    status_code: int
    body: Any

    def to_record(self) -> dict[str, Any]:
        return {"status": self.status_code, "body": self.body}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "StoredResponse":
        return cls(status_code=int(record.get("status") or 200), body=record.get("body"))


def _cache_key(merchant_id: str, key: str) -> str:
    # Scope by merchant so two merchants may reuse the same client key.
    return f"idempotency:payment:{merchant_id}:{key}"


class IdempotencyGuard:
    """Replays the first response stored under a (merchant, key) pair until it expires."""

    def __init__(self, session_factory, ttl_seconds: int = 86400, cache=None, clock=utcnow) -> None:
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.cache = cache
        self.clock = clock

    def check(self, merchant_id: str, key: str) -> StoredResponse | None:
        """Return the stored response for a live key; purge and return None for an expired one."""

        if self.cache is not None:
            try:
                cached = self.cache.get(_cache_key(merchant_id, key))
                if cached:
                    return StoredResponse.from_record(json.loads(cached))
            except Exception as exc:
                logger.warning("idempotency_cache_read_failed: %s", exc)

        with self.session_factory() as db:
            record = db.get(IdempotencyRecord, {"key": key, "merchant_id": merchant_id})
            if record is None:
                return None
            if self.clock() < as_utc(record.expires_at):
                return StoredResponse.from_record(record.response)
            db.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.merchant_id == merchant_id,
                )
            )
            db.commit()
            logger.info("idempotency_key_expired merchant_id=%s key=%s", merchant_id, key)
            return None

    def store(self, merchant_id: str, key: str, response: StoredResponse) -> None:
        """Persist `response` under the key; call only after the side effect committed."""

        now = self.clock()
        with self.session_factory() as db:
            db.add(
                IdempotencyRecord(
                    key=key,
                    merchant_id=merchant_id,
                    response=response.to_record(),
                    created_at=now,
                    expires_at=now + timedelta(seconds=self.ttl_seconds),
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # A concurrent request with the same key stored first; its response wins.
                db.rollback()
                logger.warning("idempotency_key_conflict merchant_id=%s key=%s", merchant_id, key)
                return

        if self.cache is not None:
            try:
                self.cache.setex(_cache_key(merchant_id, key), self.ttl_seconds, json.dumps(response.to_record()))
            except Exception as exc:
                logger.warning("idempotency_cache_write_failed: %s", exc)
