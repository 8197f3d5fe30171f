"""Order creation and gateway payment attachment.

Orders start in AWAITING_PAYMENT before any provider payment exists; the
provider payment id is attached once, when the charge is created.
"""

import random
import re
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from docpay.common.errors import InvalidStatus, OrderNotFound, OrderNumberExhausted
from docpay.common.logging import log_context, logger
from docpay.common.state_machine import OrderStatus, PaymentStatus
from docpay.services.gateway.client import PaymentGatewayClient
from docpay.services.gateway.schemas import CreatePaymentRequest
from docpay.services.orders.models import Order
from docpay.services.orders.schemas import DocumentType, OrderCreateRequest
from docpay.services.orders.store import add_audit, add_history, find_by_id, list_for_user, order_number_taken


MAX_ORDER_NUMBER_ATTEMPTS = 10
DEFAULT_DUE_DAYS = 3


def generate_order_number(today: date | None = None) -> str:
    """`ORD-YYYYMMDD-NNNN` with a random four digit suffix."""

    today = today or datetime.now(timezone.utc).date()
    return f"ORD-{today:%Y%m%d}-{random.randint(0, 9999):04d}"


def document_type_for(document_number: str) -> tuple[str, DocumentType]:
    """Strip formatting and classify by digit count (11 = CPF, 14 = CNPJ)."""

    digits = re.sub(r"\D", "", document_number)
    if len(digits) == 11:
        return digits, DocumentType.CPF
    if len(digits) == 14:
        return digits, DocumentType.CNPJ
    raise ValueError("document number must have 11 (CPF) or 14 (CNPJ) digits")


class OrderService:
    """Creates orders and opens their provider payments."""

    def __init__(
        self,
        session_factory,
        gateway: PaymentGatewayClient,
        number_factory=generate_order_number,
        max_number_attempts: int = MAX_ORDER_NUMBER_ATTEMPTS,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.number_factory = number_factory
        self.max_number_attempts = max_number_attempts

    def create_order(self, user_id: str, req: OrderCreateRequest) -> Order:
        """Insert a new order under a unique order number, retrying collisions."""

        document_number, document_type = document_type_for(req.document_number)
        for attempt in range(1, self.max_number_attempts + 1):
            order_number = self.number_factory()
            with self.session_factory() as db:
                if order_number_taken(db, order_number):
                    logger.info("order_number_collision number=%s attempt=%s", order_number, attempt)
                    continue
                order = Order(
                    order_number=order_number,
                    user_id=user_id,
                    service_type=str(req.service_type),
                    document_number=document_number,
                    document_type=str(document_type),
                    amount=req.amount,
                    payment_method=str(req.payment_method),
                    provider_payment_id=None,
                    status=str(OrderStatus.AWAITING_PAYMENT),
                    payment_status=str(PaymentStatus.PENDING),
                    paid_at=None,
                    state_version=0,
                    meta={},
                    created_at=datetime.now(timezone.utc),
                )
                db.add(order)
                try:
                    db.flush()
                    add_history(
                        db,
                        order.id,
                        None,
                        OrderStatus.AWAITING_PAYMENT,
                        notes="order created",
                        meta={"source": "order-create"},
                        changed_by_id=user_id,
                    )
                    db.commit()
                except IntegrityError:
                    # Lost a race on the unique order number; pick another one.
                    db.rollback()
                    logger.info("order_number_collision number=%s attempt=%s", order_number, attempt)
                    continue
                with log_context(order_id=order.id):
                    logger.info("order_created order=%s user=%s amount=%s", order.order_number, user_id, order.amount)
                return order
        raise OrderNumberExhausted(f"no free order number after {self.max_number_attempts} attempts")

    async def attach_payment(
        self,
        order_id: str,
        customer_id: str,
        due_date: date | None = None,
        description: str | None = None,
        user_id: str | None = None,
    ) -> Order:
        """Create the provider payment for an order and store its id once.

        Calling this again for an order that already has a payment returns it
        unchanged without contacting the provider. When `user_id` is given,
        orders owned by someone else are reported as not found.
        """

        with self.session_factory() as db:
            order = find_by_id(db, order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise OrderNotFound(f"order_id={order_id}")
        if order.provider_payment_id:
            return order
        if order.status != OrderStatus.AWAITING_PAYMENT:
            raise InvalidStatus(f"order {order.order_number} is not awaiting payment (status={order.status})")

        payment = await self.gateway.create_payment(
            CreatePaymentRequest(
                customer=customer_id,
                billing_type=order.payment_method,
                value=order.amount,
                due_date=due_date or (datetime.now(timezone.utc).date() + timedelta(days=DEFAULT_DUE_DAYS)),
                description=description,
                external_reference=order.order_number,
            )
        )

        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(Order.id == order.id, Order.provider_payment_id.is_(None))
                .values({Order.provider_payment_id: payment.id, Order.updated_at: datetime.now(timezone.utc)})
            )
            if result.rowcount != 1:
                logger.warning(
                    "payment_already_attached order=%s orphan_provider_payment_id=%s", order.order_number, payment.id
                )
                db.rollback()
                return find_by_id(db, order.id)
            add_audit(
                db,
                "PAYMENT_CREATED",
                "PAYMENT",
                resource_id=order.id,
                user_id=order.user_id,
                meta={
                    "order_number": order.order_number,
                    "provider_payment_id": payment.id,
                    "provider_status": payment.status,
                    "billing_type": order.payment_method,
                },
            )
            db.commit()
            attached = find_by_id(db, order.id)
        logger.info("payment_attached order=%s provider_payment_id=%s", order.order_number, payment.id)
        return attached

    def list_orders(self, user_id: str, limit: int = 50) -> list[Order]:
        with self.session_factory() as db:
            return list_for_user(db, user_id, limit=limit)
