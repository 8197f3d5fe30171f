"""Redis-backed webhook queue and its in-process consumer.

An accepted delivery is stored as a JSON envelope under
`webhook:{payment_id}:{epoch_ms}` (24h TTL) and its key is pushed on the
`webhook:queue:provider` list. The consumer pops keys, reconciles, and files
envelopes it could not apply into the `webhook:failed` / `webhook:errors`
hashes for later replay.
"""

import asyncio
import json
from datetime import datetime, timezone
from time import time
from typing import Any

import redis

from docpay.common.errors import OrderNotFound
from docpay.common.logging import log_context, logger
from docpay.common.metrics import webhook_queue_depth
from docpay.services.orders.store import AuditTrail
from docpay.services.reconciliation.schemas import OrderRef, ReconcileSource
from docpay.services.reconciliation.service import ReconciliationService


QUEUE_KEY = "webhook:queue:provider"
FAILED_KEY = "webhook:failed"
ERRORS_KEY = "webhook:errors"
PROCESSED_KEY = "webhook:processed"
ENVELOPE_TTL_SECONDS = 86400


class WebhookQueue:
    """Thin wrapper over the Redis keys making up the queue."""

    def __init__(self, rdb: redis.Redis, service_name: str = "docpay") -> None:
        self.rdb = rdb
        self.service_name = service_name

    def push(self, payment_id: str, envelope: dict[str, Any]) -> str:
        key = f"webhook:{payment_id}:{int(time() * 1000)}"
        self.rdb.setex(key, ENVELOPE_TTL_SECONDS, json.dumps(envelope))
        self.rdb.lpush(QUEUE_KEY, key)
        self._update_depth()
        return key

    def pop(self) -> str | None:
        return self.rdb.rpop(QUEUE_KEY)

    def load(self, key: str) -> dict[str, Any] | None:
        raw = self.rdb.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def delete(self, key: str) -> None:
        self.rdb.delete(key)

    def _file(self, hash_key: str, key: str, envelope: dict[str, Any], error: str | None = None) -> None:
        record = dict(envelope)
        record["filed_at"] = datetime.now(timezone.utc).isoformat()
        if error is not None:
            record["error"] = error
        self.rdb.hset(hash_key, key, json.dumps(record))

    def mark_failed(self, key: str, envelope: dict[str, Any], error: str) -> None:
        self._file(FAILED_KEY, key, envelope, error)

    def mark_error(self, key: str, envelope: dict[str, Any], error: str) -> None:
        self._file(ERRORS_KEY, key, envelope, error)

    def mark_processed(self, key: str, envelope: dict[str, Any]) -> None:
        self._file(PROCESSED_KEY, key, envelope)

    def depth(self) -> int:
        return int(self.rdb.llen(QUEUE_KEY))

    def _update_depth(self) -> None:
        try:
            webhook_queue_depth.labels(service=self.service_name).set(self.depth())
        except redis.RedisError as exc:
            logger.warning("webhook_queue_depth_unavailable error=%s", exc)

    def requeue_failed(self, dry_run: bool = False) -> list[str]:
        """Push envelopes filed in `webhook:failed` back on the queue."""

        moved = []
        for key, raw in self.rdb.hgetall(FAILED_KEY).items():
            envelope = json.loads(raw)
            envelope.pop("error", None)
            envelope.pop("filed_at", None)
            moved.append(key)
            if dry_run:
                continue
            self.rdb.setex(key, ENVELOPE_TTL_SECONDS, json.dumps(envelope))
            self.rdb.lpush(QUEUE_KEY, key)
            self.rdb.hdel(FAILED_KEY, key)
        if not dry_run:
            self._update_depth()
        return moved


class WebhookQueueConsumer:
    """Drains the webhook queue into the reconciliation writer."""

    def __init__(
        self,
        queue: WebhookQueue,
        reconciler: ReconciliationService,
        audit: AuditTrail,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.queue = queue
        self.reconciler = reconciler
        self.audit = audit
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def process_one(self) -> bool:
        """Handle the next queued envelope; False when the queue is empty."""

        key = self.queue.pop()
        if key is None:
            return False
        envelope = self.queue.load(key)
        if envelope is None:
            logger.warning("webhook_envelope_missing key=%s", key)
            return True

        with log_context(trace_id=envelope.get("trace_id"), source=ReconcileSource.WEBHOOK):
            await self._reconcile(key, envelope)
        return True

    async def _reconcile(self, key: str, envelope: dict[str, Any]) -> None:
        payment = envelope.get("payment") or {}
        payment_id = str(payment.get("id"))
        try:
            result = await self.reconciler.reconcile(
                OrderRef.by_payment_id(payment_id),
                payment.get("status"),
                ReconcileSource.WEBHOOK,
                {"event": envelope.get("event"), "queue_key": key, "received_at": envelope.get("received_at")},
            )
        except OrderNotFound as exc:
            logger.warning("webhook_queue_order_not_found key=%s", key)
            self.queue.mark_failed(key, envelope, str(exc))
            self.audit.record(
                "WEBHOOK_ORDER_NOT_FOUND",
                "WEBHOOK",
                resource_id=payment_id,
                ip_address=envelope.get("ip_address"),
                meta={"event": envelope.get("event"), "provider_status": payment.get("status"), "queue_key": key},
            )
        except Exception as exc:
            logger.exception("webhook_queue_processing_failed key=%s", key)
            self.queue.mark_error(key, envelope, str(exc))
            self.audit.record(
                "WEBHOOK_PROCESSING_FAILED",
                "WEBHOOK",
                resource_id=payment_id,
                ip_address=envelope.get("ip_address"),
                meta={"event": envelope.get("event"), "error": str(exc), "queue_key": key},
            )
        else:
            if result.applied:
                self.queue.mark_processed(key, envelope)
            self.queue.delete(key)

    async def run_forever(self) -> None:
        """Pop and process until `stop()` is called."""

        self._stop.clear()
        logger.info("webhook_queue_consumer_started")
        while not self._stop.is_set():
            try:
                handled = await self.process_one()
            except redis.RedisError as exc:
                logger.warning("webhook_queue_redis_error error=%s", exc)
                handled = False
            if not handled:
                await asyncio.sleep(self.poll_interval_seconds)
        logger.info("webhook_queue_consumer_stopped")
