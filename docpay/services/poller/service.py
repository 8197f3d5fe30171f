"""Periodic payment status sweep.

Safety net for lost or late webhooks: every interval, recent orders whose
payment is still settling are checked against the gateway and fed through the
reconciliation writer with source `cron`.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from docpay.common.config import settings
from docpay.common.errors import GatewayError, ReconciliationError
from docpay.common.logging import logger
from docpay.common.metrics import poller_orders_total, poller_runs_total
from docpay.services.gateway.client import PaymentGatewayClient
from docpay.services.orders.store import list_unsettled
from docpay.services.reconciliation.schemas import OrderRef, ReconcileSource
from docpay.services.reconciliation.service import ReconciliationService


class PaymentStatusPoller:
    def __init__(
        self,
        session_factory,
        gateway: PaymentGatewayClient,
        reconciler: ReconciliationService,
        interval_seconds: int | None = None,
        window_days: int | None = None,
        request_delay_seconds: float | None = None,
        service_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds or settings.poller_interval_seconds
        self.window_days = window_days or settings.poller_window_days
        self.request_delay_seconds = (
            request_delay_seconds if request_delay_seconds is not None else settings.poller_request_delay_seconds
        )
        self.service_name = service_name or settings.service_name
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._sweep_lock = asyncio.Lock()
        self.last_run_at: datetime | None = None
        self.last_result: dict[str, Any] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> dict[str, Any]:
        """Check every unsettled order once; one failure never stops the sweep."""

        async with self._sweep_lock:
            since = datetime.now(timezone.utc) - timedelta(days=self.window_days)
            with self.session_factory() as db:
                candidates = [
                    (order.order_number, order.provider_payment_id)
                    for order in list_unsettled(db, since)
                ]

            result: dict[str, Any] = {"checked": 0, "updated": 0, "errors": 0, "details": []}
            for index, (order_number, provider_payment_id) in enumerate(candidates):
                if self.running and self._stop.is_set():
                    logger.info("payment_check_interrupted remaining=%s", len(candidates) - index)
                    break
                result["checked"] += 1
                try:
                    payment = await self.gateway.get_payment(provider_payment_id)
                    outcome = await self.reconciler.reconcile(
                        OrderRef.by_payment_id(provider_payment_id),
                        payment.status,
                        ReconcileSource.CRON,
                        {"provider_payment": payment.model_dump(mode="json", by_alias=True)},
                    )
                except (GatewayError, ReconciliationError) as exc:
                    result["errors"] += 1
                    result["details"].append({"order_number": order_number, "error": str(exc)})
                    poller_orders_total.labels(service=self.service_name, result="error").inc()
                    logger.warning("payment_check_failed order=%s error=%s", order_number, exc)
                except Exception as exc:
                    result["errors"] += 1
                    result["details"].append({"order_number": order_number, "error": str(exc)})
                    poller_orders_total.labels(service=self.service_name, result="error").inc()
                    logger.exception("payment_check_crashed order=%s", order_number)
                else:
                    if outcome.applied:
                        result["updated"] += 1
                        result["details"].append(
                            {
                                "order_number": order_number,
                                "status": outcome.order.status,
                                "payment_status": outcome.order.payment_status,
                            }
                        )
                    poller_orders_total.labels(service=self.service_name, result=str(outcome.outcome)).inc()
                if self.request_delay_seconds and index < len(candidates) - 1:
                    await asyncio.sleep(self.request_delay_seconds)

            poller_runs_total.labels(service=self.service_name).inc()
            self.last_run_at = datetime.now(timezone.utc)
            self.last_result = result
            logger.info(
                "payment_check_finished checked=%s updated=%s errors=%s",
                result["checked"],
                result["updated"],
                result["errors"],
            )
            return result

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("payment_check_sweep_failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> bool:
        """Start the periodic sweep; False if it was already running."""

        if self.running:
            return False
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("payment_checker_started interval_seconds=%s", self.interval_seconds)
        return True

    async def stop(self) -> bool:
        """Stop after the order in flight is done; False if not running."""

        if not self.running:
            return False
        self._stop.set()
        await self._task
        self._task = None
        logger.info("payment_checker_stopped")
        return True

    async def run_now(self) -> dict[str, Any]:
        return await self.run_once()

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "window_days": self.window_days,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result,
        }
