"""Thin async client for the external payment provider.

Only two calls are needed by the reconciler: read a payment and create one.
Every call carries a timeout and is never retried here; callers decide what a
failure means (the cron sweep simply records it and moves on).
"""

from time import perf_counter

import httpx
from pydantic import ValidationError

from docpay.common.config import settings
from docpay.common.errors import GatewayError, GatewayTimeout
from docpay.common.logging import logger
from docpay.common.metrics import gateway_latency_seconds, gateway_requests_total
from docpay.services.gateway.schemas import CreatePaymentRequest, ProviderPayment


class PaymentGatewayClient:
    """Lazy `httpx.AsyncClient` wrapper speaking the provider's REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str | None = None,
    ) -> None:
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.gateway_api_key
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds
        self.service_name = service_name or settings.service_name
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
                headers={"access_token": self.api_key, "Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _count(self, operation: str, result: str) -> None:
        gateway_requests_total.labels(service=self.service_name, operation=operation, result=result).inc()

    async def _request(self, operation: str, method: str, path: str, json: dict | None = None) -> dict:
        if not self.api_key:
            raise GatewayError("gateway API key not configured")

        start = perf_counter()
        try:
            resp = await self.client().request(method, path, json=json)
        except httpx.TimeoutException as exc:
            self._count(operation, "timeout")
            logger.warning("gateway_timeout operation=%s path=%s", operation, path)
            raise GatewayTimeout(f"{operation} timed out after {self.timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            self._count(operation, "error")
            logger.error("gateway_transport_error operation=%s path=%s error=%s", operation, path, exc)
            raise GatewayError(f"{operation} failed: {exc}") from exc
        finally:
            gateway_latency_seconds.labels(service=self.service_name, operation=operation).observe(
                max(0.0, perf_counter() - start)
            )

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if resp.status_code >= 400:
            self._count(operation, "error")
            errors = payload.get("errors") if isinstance(payload, dict) else None
            message = errors[0].get("description") if isinstance(errors, list) and errors else None
            logger.error(
                "gateway_error operation=%s status_code=%s message=%s", operation, resp.status_code, message
            )
            raise GatewayError(message or f"provider returned {resp.status_code}", status_code=resp.status_code)
        if not isinstance(payload, dict):
            self._count(operation, "error")
            raise GatewayError(f"{operation} returned a non-object body", status_code=resp.status_code)
        self._count(operation, "ok")
        return payload

    def _parse(self, operation: str, payload: dict) -> ProviderPayment:
        try:
            return ProviderPayment.model_validate(payload)
        except ValidationError as exc:
            self._count(operation, "invalid")
            logger.error("gateway_invalid_payload operation=%s error=%s", operation, exc)
            raise GatewayError(f"{operation} returned an unexpected payment body: {exc}") from exc

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        """Fetch the provider's current view of one payment."""

        payload = await self._request("get_payment", "GET", f"/payments/{payment_id}")
        return self._parse("get_payment", payload)

    async def create_payment(self, req: CreatePaymentRequest) -> ProviderPayment:
        """Open a new charge and return the created payment."""

        payload = await self._request(
            "create_payment",
            "POST",
            "/payments",
            json=req.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        return self._parse("create_payment", payload)
