# tradinta/services/forging_event_service.py
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tradinta.config import Config
from tradinta.models import (
    ForgingEvent,
    ForgingEventStatus,
    ForgingEventTier,
    Pledge,
    Product,
    User,
    as_utc,
    utcnow,
)
from tradinta.observability import increment_counter, record_event, timed
from tradinta.services.errors import (
    EventNotActiveError,
    EventNotProposedError,
    ExternalServiceError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from tradinta.services.notification_service import (
    publish_event_finished,
    publish_proposal_received,
    publish_proposal_response,
)
from tradinta.services.tier_resolver import Tier, sort_tiers, unlocked_discount

logger = logging.getLogger(__name__)


class ForgingEventService:
    """Proposal, acceptance and time-based resolution of Forging Events."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db_session
        self.config = config
        self.clock = clock

    # ------------------------------------------------------------------
    # Seller flows
    # ------------------------------------------------------------------
    def propose_event(
        self,
        seller_id: int,
        product_id: int,
        tiers: Iterable[Any],
        duration_hours: Optional[float] = None,
        partner_id: Optional[int] = None,
        commission_rate: Optional[float] = None,
    ) -> ForgingEvent:
        """
        Create a Forging Event for one of the seller's published products.

        Without a partner the event goes live immediately. With a partner it
        waits in ``proposed`` until the partner answers.
        """
        if not self.config.FEATURE_FOUNDRY_ENABLED:
            raise ValidationError("The Foundry is currently disabled")

        seller = self.db.query(User).filter_by(userID=seller_id).first()
        if not seller:
            raise NotFoundError("Seller not found")

        product = self.db.query(Product).filter_by(productID=product_id).first()
        if not product:
            raise NotFoundError("Product not found")
        if product.sellerID != seller_id:
            raise ValidationError("You can only forge deals on your own products")
        if not product.is_published:
            raise ValidationError("Only published products can be used in a Forging Event")

        parsed_tiers = self._validate_tiers(tiers)
        duration = self._validate_duration(duration_hours)

        partner = None
        if partner_id is not None:
            partner = self.db.query(User).filter_by(userID=partner_id).first()
            if not partner or not partner.is_partner:
                raise NotFoundError("Growth partner not found")
            if partner.userID == seller_id:
                raise ValidationError("You cannot partner with yourself")
            commission = self._validate_commission(commission_rate)
        else:
            commission = 0.0

        now = self.clock()
        event = ForgingEvent(
            productID=product.productID,
            product_name=product.name,
            product_image_url=product.image_url or '',
            sellerID=seller.userID,
            seller_name=seller.name,
            partnerID=partner.userID if partner else None,
            partner_name=partner.name if partner else None,
            partner_avatar_url=(partner.photo_url or '') if partner else '',
            commission_rate=commission,
            current_buyer_count=0,
            status=ForgingEventStatus.PROPOSED if partner else ForgingEventStatus.ACTIVE,
            start_time=None if partner else now,
            end_time=now + timedelta(hours=duration),
            created_at=now,
        )
        event.tiers = [
            ForgingEventTier(buyer_count=tier.buyer_count, discount_percentage=tier.discount_percentage)
            for tier in parsed_tiers
        ]

        try:
            self.db.add(event)
            self.db.commit()
            self.db.refresh(event)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Error creating forging event for product %s", product_id)
            raise ExternalServiceError("Could not create the Forging Event. Please try again.") from exc

        increment_counter(
            "forging_events_proposed_total",
            labels={"with_partner": str(partner is not None).lower()},
        )
        record_event(
            "forging_event_created",
            {"forging_event_id": event.forgingEventID, "seller_id": seller_id, "status": event.status.value},
        )
        logger.info(
            "Forging event %s created",
            event.forgingEventID,
            extra={"seller_id": seller_id, "product_id": product_id, "status": event.status.value},
        )

        if partner:
            publish_proposal_received(
                forging_event_id=event.forgingEventID,
                partner_id=partner.userID,
                seller_name=event.seller_name,
                product_name=event.product_name,
                commission_rate=float(event.commission_rate),
            )
        return event

    def list_seller_events(self, seller_id: int) -> List[ForgingEvent]:
        events = (
            self.db.query(ForgingEvent)
            .filter(ForgingEvent.sellerID == seller_id)
            .order_by(ForgingEvent.created_at.desc())
            .all()
        )
        return self._resolve_stale(events)

    # ------------------------------------------------------------------
    # Partner flows
    # ------------------------------------------------------------------
    def respond_to_proposal(self, partner_id: int, event_id: int, accept: bool) -> ForgingEvent:
        event = self._get_event_or_raise(event_id)
        if event.partnerID is None or event.partnerID != partner_id:
            raise NotAuthorizedError("Only the assigned growth partner can respond to this proposal")
        if ForgingEventStatus(event.status) != ForgingEventStatus.PROPOSED:
            raise EventNotProposedError(f"This proposal has already been answered (status: {event.status.value})")

        now = self.clock()
        if accept:
            event.transition_to(ForgingEventStatus.ACTIVE)
            event.start_time = now
        else:
            event.transition_to(ForgingEventStatus.DECLINED)
        event.responded_at = now

        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Error recording proposal response for event %s", event_id)
            raise ExternalServiceError("Could not record your response. Please try again.") from exc

        logger.info(
            "Forging event %s %s by partner %s",
            event_id,
            "accepted" if accept else "declined",
            partner_id,
        )
        publish_proposal_response(
            forging_event_id=event.forgingEventID,
            seller_id=event.sellerID,
            partner_name=event.partner_name,
            product_name=event.product_name,
            accepted=accept,
        )
        return event

    def list_partner_events(self, partner_id: int) -> List[ForgingEvent]:
        events = (
            self.db.query(ForgingEvent)
            .filter(ForgingEvent.partnerID == partner_id)
            .order_by(ForgingEvent.status, ForgingEvent.created_at.desc())
            .all()
        )
        return self._resolve_stale(events)

    # ------------------------------------------------------------------
    # Buyer-facing reads
    # ------------------------------------------------------------------
    def get_event(self, event_id: int) -> ForgingEvent:
        """Fetch an event, finishing it first if its window has closed."""
        event = self._get_event_or_raise(event_id)
        self._resolve_if_expired(event)
        return event

    def list_active_events(self) -> List[ForgingEvent]:
        now = self.clock()
        return (
            self.db.query(ForgingEvent)
            .filter(ForgingEvent.status == ForgingEventStatus.ACTIVE)
            .filter(ForgingEvent.end_time > now)
            .order_by(ForgingEvent.created_at.desc())
            .all()
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def force_end_event(self, admin_id: int, event_id: int) -> ForgingEvent:
        admin = self.db.query(User).filter_by(userID=admin_id).first()
        if not admin or not admin.is_admin:
            raise NotAuthorizedError("Only administrators can end a Forging Event early")
        event = self._get_event_or_raise(event_id)
        if ForgingEventStatus(event.status) != ForgingEventStatus.ACTIVE:
            raise EventNotActiveError("Only active Forging Events can be ended")
        self.resolve_event(event)
        logger.info("Forging event %s force-ended by admin %s", event_id, admin_id)
        return event

    def resolve_expired_events(self) -> int:
        """Finish every active event whose window has closed. Returns how many this call finished."""
        now = self.clock()
        expired = (
            self.db.query(ForgingEvent)
            .filter(ForgingEvent.status == ForgingEventStatus.ACTIVE)
            .filter(ForgingEvent.end_time <= now)
            .all()
        )
        resolved = 0
        for event in expired:
            if self.resolve_event(event):
                resolved += 1
        if expired:
            logger.info("Resolved %d of %d expired forging events", resolved, len(expired))
        return resolved

    def resolve_event(self, event: ForgingEvent) -> bool:
        """
        Freeze the final discount and move the event to ``finished``.

        The pledge count is recomputed from the Pledge table and the status
        change is a compare-and-swap on ``status = 'active'``, so concurrent
        resolvers finish an event exactly once. Returns False when another
        resolver got there first.
        """
        if ForgingEventStatus(event.status) != ForgingEventStatus.ACTIVE:
            return False

        now = self.clock()
        with timed("forging_event_resolution_ms"):
            buyer_count = (
                self.db.query(func.count(Pledge.pledgeID))
                .filter(Pledge.forgingEventID == event.forgingEventID)
                .scalar()
                or 0
            )
            final_discount = unlocked_discount(event.tier_pairs(), buyer_count)
            try:
                result = self.db.execute(
                    update(ForgingEvent)
                    .where(
                        ForgingEvent.forgingEventID == event.forgingEventID,
                        ForgingEvent.status == ForgingEventStatus.ACTIVE,
                    )
                    .values(
                        status=ForgingEventStatus.FINISHED,
                        final_discount_tier=final_discount,
                        current_buyer_count=buyer_count,
                        finished_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Error resolving forging event %s", event.forgingEventID)
                raise ExternalServiceError("Could not finish the Forging Event. Please try again.") from exc

        self.db.refresh(event)
        if result.rowcount != 1:
            logger.debug("Forging event %s already resolved elsewhere", event.forgingEventID)
            return False

        increment_counter("forging_events_finished_total")
        logger.info(
            "Forging event %s finished at %s%% with %d pledges",
            event.forgingEventID,
            final_discount,
            buyer_count,
        )
        buyer_ids = [
            row[0]
            for row in self.db.query(Pledge.buyerID).filter(Pledge.forgingEventID == event.forgingEventID)
        ]
        publish_event_finished(
            forging_event_id=event.forgingEventID,
            seller_id=event.sellerID,
            buyer_ids=buyer_ids,
            product_name=event.product_name,
            final_discount=final_discount,
            buyer_count=buyer_count,
        )
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_event_or_raise(self, event_id: int) -> ForgingEvent:
        event = self.db.query(ForgingEvent).filter_by(forgingEventID=event_id).first()
        if not event:
            raise NotFoundError("Forging Event not found")
        return event

    def _resolve_if_expired(self, event: ForgingEvent) -> None:
        if ForgingEventStatus(event.status) == ForgingEventStatus.ACTIVE and event.has_ended(self.clock()):
            self.resolve_event(event)

    def _resolve_stale(self, events: List[ForgingEvent]) -> List[ForgingEvent]:
        for event in events:
            self._resolve_if_expired(event)
        return events

    def _validate_tiers(self, tiers: Optional[Iterable[Any]]) -> List[Tier]:
        try:
            raw = list(tiers or [])
        except TypeError as exc:
            raise ValidationError("Tiers must be a list of buyer count and discount pairs") from exc
        if not raw:
            raise ValidationError("At least one discount tier is required")
        if len(raw) > self.config.FOUNDRY_MAX_TIERS:
            raise ValidationError(f"A Forging Event can have at most {self.config.FOUNDRY_MAX_TIERS} tiers")
        try:
            parsed = sort_tiers(raw)
        except (TypeError, ValueError, AttributeError) as exc:
            raise ValidationError("Each tier needs a buyer count and a discount percentage") from exc

        seen_counts = set()
        previous_discount = 0.0
        for tier in parsed:
            if tier.buyer_count < 1:
                raise ValidationError("Tier buyer counts must be at least 1")
            if not (0 < tier.discount_percentage <= 100):
                raise ValidationError("Tier discounts must be greater than 0 and at most 100 percent")
            if tier.buyer_count in seen_counts:
                raise ValidationError(f"Duplicate tier for {tier.buyer_count} buyers")
            if tier.discount_percentage < previous_discount:
                raise ValidationError("Discounts must not decrease as the buyer count rises")
            seen_counts.add(tier.buyer_count)
            previous_discount = tier.discount_percentage
        return parsed

    def _validate_duration(self, duration_hours: Optional[float]) -> float:
        if duration_hours is None:
            return float(self.config.FOUNDRY_DEFAULT_DURATION_HOURS)
        try:
            duration = float(duration_hours)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Duration must be a number of hours") from exc
        if not math.isfinite(duration):
            raise ValidationError("Duration must be a number of hours")
        if duration <= 0:
            raise ValidationError("Duration must be positive")
        if duration > self.config.FOUNDRY_MAX_DURATION_HOURS:
            raise ValidationError(
                f"Duration cannot exceed {self.config.FOUNDRY_MAX_DURATION_HOURS} hours"
            )
        return duration

    def _validate_commission(self, commission_rate: Optional[float]) -> float:
        if commission_rate is None:
            return float(self.config.FOUNDRY_DEFAULT_COMMISSION_RATE)
        try:
            commission = float(commission_rate)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Commission rate must be a number") from exc
        if not (0 <= commission <= 100):
            raise ValidationError("Commission rate must be between 0 and 100 percent")
        return commission


def seconds_remaining(event: ForgingEvent, now: datetime) -> int:
    return max(0, int((as_utc(event.end_time) - as_utc(now)).total_seconds()))
