# tradinta/services/checkout_service.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tradinta.models import (
    ForgingEvent,
    ForgingEventStatus,
    Order,
    OrderStatus,
    Product,
    utcnow,
)
from tradinta.observability import increment_counter, record_event
from tradinta.services.errors import (
    EventNotActiveError,
    EventNotFinishedError,
    ExternalServiceError,
    NotAuthorizedError,
    NotFoundError,
)
from tradinta.services.forging_event_service import ForgingEventService
from tradinta.services.pledge_service import PledgeService
from tradinta.services.tier_resolver import unlocked_discount

logger = logging.getLogger(__name__)


def pledge_order_key(event_id: int, buyer_id: int) -> str:
    return f"forge:{event_id}:{buyer_id}"


class CheckoutService:
    """Turns a finished Forging Event and a buyer's pledge into an order."""

    def __init__(
        self,
        db_session: Session,
        event_service: Optional[ForgingEventService] = None,
        pledge_service: Optional[PledgeService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db_session
        self.clock = clock
        self.event_service = event_service or ForgingEventService(db_session, clock=clock)
        self.pledge_service = pledge_service or PledgeService(
            db_session,
            event_service=self.event_service,
            clock=clock,
        )

    def complete_pledge_purchase(self, buyer_id: int, event_id: int) -> Order:
        """
        Create the buyer's order at the event's final discount.

        The base price is read from the product at checkout time. Calling
        this twice for the same pledge returns the order created the first
        time.
        """
        event = self.event_service.get_event(event_id)
        if ForgingEventStatus(event.status) != ForgingEventStatus.FINISHED:
            raise EventNotFinishedError("This Forging Event has not finished yet")
        if not self.pledge_service.has_pledged(buyer_id, event_id):
            raise NotFoundError("You have not pledged to this Forging Event")

        key = pledge_order_key(event_id, buyer_id)
        existing = self.db.query(Order).filter_by(idempotency_key=key).first()
        if existing:
            logger.info("Returning existing order %s for pledge checkout", existing.orderID)
            return existing

        discount = float(event.final_discount_tier or 0)
        try:
            order = self._create_order(event, buyer_id, discount, idempotency_key=key)
        except IntegrityError:
            # A concurrent checkout for the same pledge won the insert
            existing = self.db.query(Order).filter_by(idempotency_key=key).first()
            if existing is None:
                raise ExternalServiceError("Could not create your order. Please try again.")
            return existing

        increment_counter("forging_orders_created_total", labels={"source": "pledge"})
        return order

    def forge_now(self, buyer_id: int, event_id: int) -> Order:
        """Buy one unit right away at the discount unlocked so far."""
        event = self.event_service.get_event(event_id)
        if not event.is_open_for_pledges(self.clock()):
            raise EventNotActiveError("This Forging Event is not active")
        if event.sellerID == buyer_id:
            raise NotAuthorizedError("Sellers cannot buy from their own Forging Event")

        discount = unlocked_discount(event.tier_pairs(), event.current_buyer_count)
        order = self._create_order(event, buyer_id, discount, idempotency_key=None)
        increment_counter("forging_orders_created_total", labels={"source": "forge_now"})
        return order

    def _create_order(
        self,
        event: ForgingEvent,
        buyer_id: int,
        discount: float,
        idempotency_key: Optional[str],
    ) -> Order:
        product = self.db.query(Product).filter_by(productID=event.productID).first()
        if not product:
            raise NotFoundError("Original product not found")

        base_price = float(product.price or 0)
        total = product.get_discounted_unit_price(discount)
        commission = 0.0
        if event.partnerID is not None:
            commission = round(total * float(event.commission_rate or 0) / 100, 2)

        order = Order(
            buyerID=buyer_id,
            sellerID=event.sellerID,
            productID=event.productID,
            forgingEventID=event.forgingEventID,
            product_name=event.product_name,
            seller_name=event.seller_name,
            quantity=1,
            unit_price=base_price,
            discount_percentage=discount,
            total_amount=total,
            partnerID=event.partnerID,
            partner_commission=commission,
            status=OrderStatus.PENDING_PAYMENT,
            idempotency_key=idempotency_key,
            order_date=self.clock(),
        )
        try:
            self.db.add(order)
            self.db.commit()
            self.db.refresh(order)
        except SQLAlchemyError as exc:
            self.db.rollback()
            if isinstance(exc, IntegrityError) and idempotency_key:
                raise
            logger.exception("Error creating order for forging event %s", event.forgingEventID)
            raise ExternalServiceError("Could not create your order. Please try again.") from exc

        record_event(
            "forging_order_created",
            {
                "order_id": order.orderID,
                "forging_event_id": event.forgingEventID,
                "buyer_id": buyer_id,
                "total_amount": total,
            },
        )
        logger.info(
            "Order %s created from forging event %s",
            order.orderID,
            event.forgingEventID,
            extra={"buyer_id": buyer_id, "discount": discount, "total_amount": total},
        )
        return order
