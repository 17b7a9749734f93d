# tradinta/services/pledge_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tradinta.models import ForgingEvent, ForgingEventStatus, Pledge, User, utcnow
from tradinta.observability import increment_counter, record_event
from tradinta.services.errors import (
    AlreadyPledgedError,
    EventNotActiveError,
    ExternalServiceError,
    NotAuthorizedError,
    NotFoundError,
)
from tradinta.services.forging_event_service import ForgingEventService
from tradinta.services.tier_resolver import TierProgress, describe_progress

logger = logging.getLogger(__name__)


@dataclass
class PledgeSummary:
    """A buyer's pledge together with the state of its event."""
    pledge: Pledge
    event: ForgingEvent
    progress: Optional[TierProgress] = None

    @property
    def can_complete_purchase(self) -> bool:
        return ForgingEventStatus(self.event.status) == ForgingEventStatus.FINISHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pledge_id": self.pledge.pledgeID,
            "forging_event_id": self.event.forgingEventID,
            "product_name": self.event.product_name,
            "product_image_url": self.event.product_image_url,
            "seller_name": self.event.seller_name,
            "status": self.event.status.value,
            "current_buyer_count": self.event.current_buyer_count,
            "final_discount_tier": (
                float(self.event.final_discount_tier) if self.event.final_discount_tier is not None else None
            ),
            "progress": self.progress.to_dict() if self.progress else None,
            "can_complete_purchase": self.can_complete_purchase,
            "pledged_at": self.pledge.pledged_at.isoformat() if self.pledge.pledged_at else None,
        }


class PledgeService:
    """Collects buyer pledges against active Forging Events."""

    def __init__(
        self,
        db_session: Session,
        event_service: Optional[ForgingEventService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db_session
        self.clock = clock
        self.event_service = event_service or ForgingEventService(db_session, clock=clock)

    def pledge(self, buyer_id: int, event_id: int) -> Pledge:
        """
        Register a buyer's pledge and bump the event's buyer count.

        The counter is incremented in SQL, guarded on the event still being
        active, in the same transaction as the pledge insert.
        """
        event = self.db.query(ForgingEvent).filter_by(forgingEventID=event_id).first()
        if not event:
            raise NotFoundError("Forging Event not found")

        now = self.clock()
        if not event.is_open_for_pledges(now):
            increment_counter("forging_pledges_rejected_total", labels={"reason": "not_active"})
            raise EventNotActiveError("This Forging Event is not accepting pledges")
        if event.sellerID == buyer_id:
            raise NotAuthorizedError("Sellers cannot pledge to their own Forging Event")

        buyer = self.db.query(User).filter_by(userID=buyer_id).first()
        if not buyer:
            raise NotFoundError("Buyer not found")

        pledge = Pledge(forgingEventID=event.forgingEventID, buyerID=buyer_id, pledged_at=now)
        try:
            self.db.add(pledge)
            self.db.flush()
            result = self.db.execute(
                update(ForgingEvent)
                .where(
                    ForgingEvent.forgingEventID == event.forgingEventID,
                    ForgingEvent.status == ForgingEventStatus.ACTIVE,
                )
                .values(current_buyer_count=ForgingEvent.current_buyer_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                raise EventNotActiveError("This Forging Event is not accepting pledges")
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            increment_counter("forging_pledges_rejected_total", labels={"reason": "duplicate"})
            raise AlreadyPledgedError("You have already pledged to this Forging Event") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Error recording pledge for event %s", event_id)
            raise ExternalServiceError("Could not record your pledge. Please try again.") from exc

        self.db.refresh(event)
        increment_counter("forging_pledges_total")
        record_event(
            "forging_pledge_created",
            {"forging_event_id": event_id, "buyer_id": buyer_id, "buyer_count": event.current_buyer_count},
        )
        logger.info(
            "Buyer %s pledged to forging event %s",
            buyer_id,
            event_id,
            extra={"buyer_count": event.current_buyer_count},
        )
        return pledge

    def has_pledged(self, buyer_id: int, event_id: int) -> bool:
        return (
            self.db.query(Pledge.pledgeID)
            .filter(Pledge.buyerID == buyer_id, Pledge.forgingEventID == event_id)
            .first()
            is not None
        )

    def list_buyer_pledges(self, buyer_id: int) -> List[PledgeSummary]:
        pledges = (
            self.db.query(Pledge)
            .filter(Pledge.buyerID == buyer_id)
            .order_by(Pledge.pledged_at.desc())
            .all()
        )
        summaries: List[PledgeSummary] = []
        for pledge in pledges:
            event = self.event_service.get_event(pledge.forgingEventID)
            progress = None
            if ForgingEventStatus(event.status) == ForgingEventStatus.ACTIVE:
                progress = describe_progress(event.tier_pairs(), event.current_buyer_count)
            summaries.append(PledgeSummary(pledge=pledge, event=event, progress=progress))
        return summaries
