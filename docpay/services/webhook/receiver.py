"""Webhook intake for provider payment notifications.

Order of checks: rate limit, signature, payload shape. Only a delivery that
passes all three is accepted; from then on the provider always gets a 200,
whether the event is queued, applied in-request, or fails while applying.
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any

import redis

from docpay.common.errors import InvalidSignature, MalformedWebhook, OrderNotFound, RateLimited
from docpay.common.logging import logger, payment_id_ctx, trace_id_ctx
from docpay.common.metrics import webhook_requests_total
from docpay.services.orders.store import AuditTrail
from docpay.services.reconciliation.schemas import OrderRef, ReconcileSource
from docpay.services.reconciliation.service import ReconciliationService
from docpay.services.webhook.queue import WebhookQueue
from docpay.services.webhook.rate_limit import TokenBucketLimiter


SIGNATURE_MODES = ("token", "hmac")


def truncate_signature(signature: str | None) -> str | None:
    if not signature:
        return None
    return signature[:8] + "..." if len(signature) > 8 else signature


class WebhookReceiver:
    def __init__(
        self,
        reconciler: ReconciliationService,
        audit: AuditTrail,
        limiter: TokenBucketLimiter,
        secret: str,
        signature_mode: str = "token",
        queue: WebhookQueue | None = None,
        service_name: str = "docpay",
    ) -> None:
        if signature_mode not in SIGNATURE_MODES:
            raise ValueError(f"unknown webhook signature mode: {signature_mode}")
        self.reconciler = reconciler
        self.audit = audit
        self.limiter = limiter
        self.secret = secret
        self.signature_mode = signature_mode
        self.queue = queue
        self.service_name = service_name

    def _count(self, result: str) -> None:
        webhook_requests_total.labels(service=self.service_name, result=result).inc()

    def verify_signature(self, raw_body: bytes, signature: str | None) -> None:
        """Raise `InvalidSignature` unless the header authenticates the body.

        With no secret configured every delivery is rejected.
        """

        if not self.secret or not signature:
            raise InvalidSignature("missing webhook signature or secret")
        if self.signature_mode == "hmac":
            expected = hmac.new(self.secret.encode(), raw_body, hashlib.sha256).hexdigest()
        else:
            expected = self.secret
        if not hmac.compare_digest(expected.encode(), signature.strip().encode()):
            raise InvalidSignature("webhook signature mismatch")

    @staticmethod
    def parse(raw_body: bytes) -> dict[str, Any]:
        """Decode `{event, payment: {id, status, ...}}`."""

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedWebhook("webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedWebhook("webhook body must be a JSON object")
        payment = payload.get("payment")
        if not isinstance(payment, dict) or not payment.get("id"):
            raise MalformedWebhook("webhook payload lacks payment.id")
        return payload

    async def handle(self, raw_body: bytes, signature: str | None, client_ip: str) -> dict[str, Any]:
        """Run one delivery through the intake checks and process it.

        Raises `RateLimited`, `InvalidSignature` or `MalformedWebhook` for
        rejected deliveries; returns the response body once accepted.
        """

        if not self.limiter.allow(client_ip):
            self._count("rate_limited")
            logger.warning("webhook_rate_limited ip=%s", client_ip)
            self.audit.record("WEBHOOK_RATE_LIMITED", "WEBHOOK", ip_address=client_ip)
            raise RateLimited(f"rate limit exceeded for {client_ip}")

        try:
            self.verify_signature(raw_body, signature)
        except InvalidSignature:
            self._count("invalid_signature")
            logger.warning("webhook_signature_invalid ip=%s", client_ip)
            self.audit.record(
                "WEBHOOK_SIGNATURE_INVALID",
                "WEBHOOK",
                ip_address=client_ip,
                meta={"signature": truncate_signature(signature), "mode": self.signature_mode},
            )
            raise

        try:
            payload = self.parse(raw_body)
        except MalformedWebhook:
            self._count("malformed")
            raise

        payment = payload["payment"]
        payment_id = str(payment["id"])
        payment_id_ctx.set(payment_id)
        received_at = datetime.now(timezone.utc).isoformat()

        if self.queue is not None:
            envelope = {
                "event": payload.get("event"),
                "payment": payment,
                "received_at": received_at,
                "ip_address": client_ip,
                "trace_id": trace_id_ctx.get(),
            }
            try:
                key = self.queue.push(payment_id, envelope)
            except redis.RedisError as exc:
                logger.warning("webhook_queue_push_failed payment_id=%s error=%s", payment_id, exc)
            else:
                self._count("queued")
                logger.info("webhook_queued payment_id=%s key=%s", payment_id, key)
                return {"received": True, "queued": True}

        return await self._process_direct(payload, client_ip, received_at)

    async def _process_direct(self, payload: dict[str, Any], client_ip: str, received_at: str) -> dict[str, Any]:
        payment = payload["payment"]
        payment_id = str(payment["id"])
        try:
            result = await self.reconciler.reconcile(
                OrderRef.by_payment_id(payment_id),
                payment.get("status"),
                ReconcileSource.WEBHOOK,
                {"event": payload.get("event"), "received_at": received_at},
            )
        except OrderNotFound:
            self._count("order_not_found")
            self.audit.record(
                "WEBHOOK_ORDER_NOT_FOUND",
                "WEBHOOK",
                resource_id=payment_id,
                ip_address=client_ip,
                meta={"event": payload.get("event"), "provider_status": payment.get("status")},
            )
            return {"received": True, "processed": False}
        except Exception as exc:
            # Accepted deliveries are acknowledged even when applying them fails.
            self._count("failed")
            logger.exception("webhook_processing_failed payment_id=%s", payment_id)
            self.audit.record(
                "WEBHOOK_PROCESSING_FAILED",
                "WEBHOOK",
                resource_id=payment_id,
                ip_address=client_ip,
                meta={"event": payload.get("event"), "error": str(exc)},
            )
            return {"received": True, "processed": False}

        self._count("processed")
        return {"received": True, "processed": result.applied, "outcome": str(result.outcome)}
