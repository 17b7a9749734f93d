from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from tradinta.models import ForgingEvent, ForgingEventStatus, Order, Pledge, as_utc


def compute_foundry_summary(
    session: Session,
    window_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Aggregate Forging Event activity for the admin dashboard.

    When ``window_days`` is given only events created inside the trailing
    window are counted.
    """
    now = now or datetime.now(timezone.utc)
    event_query = session.query(ForgingEvent.status, func.count(ForgingEvent.forgingEventID))
    if window_days:
        event_query = event_query.filter(ForgingEvent.created_at >= now - timedelta(days=window_days))
    status_counts = {status.value: 0 for status in ForgingEventStatus}
    for status, count in event_query.group_by(ForgingEvent.status).all():
        status_counts[ForgingEventStatus(status).value] = count

    total_pledges = session.query(func.count(Pledge.pledgeID)).scalar() or 0
    pledge_orders = (
        session.query(func.count(Order.orderID))
        .filter(Order.idempotency_key.isnot(None))
        .scalar()
        or 0
    )
    instant_orders = (
        session.query(func.count(Order.orderID))
        .filter(Order.forgingEventID.isnot(None))
        .filter(Order.idempotency_key.is_(None))
        .scalar()
        or 0
    )

    finished = session.query(ForgingEvent).filter(ForgingEvent.status == ForgingEventStatus.FINISHED).all()
    discounts = [float(event.final_discount_tier or 0) for event in finished]
    overdue = sum(
        1
        for event in session.query(ForgingEvent).filter(ForgingEvent.status == ForgingEventStatus.ACTIVE)
        if as_utc(event.end_time) <= now
    )

    return {
        "events_by_status": status_counts,
        "total_pledges": total_pledges,
        "pledge_orders": pledge_orders,
        "forge_now_orders": instant_orders,
        "pledge_conversion_rate": (pledge_orders / total_pledges) if total_pledges else 0.0,
        "avg_final_discount": (sum(discounts) / len(discounts)) if discounts else 0.0,
        "overdue_active_events": overdue,
    }


__all__ = ["compute_foundry_summary"]
