"""
Notification Service

Publish-Subscribe notifications for Forging Event lifecycle changes.
Keeps a lightweight in-memory inbox per user for the dashboards.
Publishing is fire-and-forget: a failure here never aborts the caller.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Any
from threading import Lock

from tradinta.config import Config
from tradinta.observability import increment_counter, record_event

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """Represents a single notification."""
    id: str
    user_id: int
    notification_type: str
    title: str
    message: str
    reference_id: Optional[int] = None
    reference_type: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }


class NotificationService:
    """
    In-memory notification inbox.

    Subscribes to Forging Event lifecycle events (proposal received,
    proposal answered, deal ended) and stores notifications per user.
    """

    _instance: Optional["NotificationService"] = None
    _lock: Lock = Lock()

    def __new__(cls) -> "NotificationService":
        """Singleton so every request sees the same inbox."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._notifications: Dict[int, List[Notification]] = defaultdict(list)
        self._notification_counter: int = 0
        self._max_notifications_per_user: int = Config.NOTIFICATIONS_MAX_PER_USER
        self.logger = logging.getLogger(__name__)
        self._initialized = True

    def add_notification(
        self,
        user_id: int,
        notification_type: str,
        title: str,
        message: str,
        reference_id: Optional[int] = None,
        reference_type: Optional[str] = None,
    ) -> Notification:
        with self._lock:
            self._notification_counter += 1
            notification_id = f"notif_{self._notification_counter}_{int(datetime.now().timestamp())}"

            notification = Notification(
                id=notification_id,
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                reference_id=reference_id,
                reference_type=reference_type,
            )

            # Most recent first
            self._notifications[user_id].insert(0, notification)
            if len(self._notifications[user_id]) > self._max_notifications_per_user:
                self._notifications[user_id] = self._notifications[user_id][:self._max_notifications_per_user]

            increment_counter(
                "notifications_created_total",
                labels={"type": notification_type},
            )
            self.logger.info("Notification created for user %d: %s", user_id, title)
            return notification

    def get_notifications(
        self,
        user_id: int,
        unread_only: bool = False,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        notifications = self._notifications.get(user_id, [])
        if unread_only:
            notifications = [n for n in notifications if not n.read]
        return [n.to_dict() for n in notifications[:limit]]

    def get_unread_count(self, user_id: int) -> int:
        notifications = self._notifications.get(user_id, [])
        return sum(1 for n in notifications if not n.read)

    def mark_as_read(self, user_id: int, notification_id: str) -> bool:
        for notification in self._notifications.get(user_id, []):
            if notification.id == notification_id:
                notification.read = True
                notification.read_at = datetime.now(timezone.utc)
                return True
        return False

    def mark_all_as_read(self, user_id: int) -> int:
        count = 0
        now = datetime.now(timezone.utc)
        for notification in self._notifications.get(user_id, []):
            if not notification.read:
                notification.read = True
                notification.read_at = now
                count += 1
        return count

    def clear_notifications(self, user_id: Optional[int] = None) -> None:
        """Clear one user's inbox, or every inbox when no user is given."""
        with self._lock:
            if user_id is None:
                self._notifications.clear()
            else:
                self._notifications[user_id] = []


# -----------------------------------------------------------------------------
# Forging Event publishers
# -----------------------------------------------------------------------------


def _safe_notify(user_id: Optional[int], **kwargs: Any) -> None:
    if user_id is None:
        return
    try:
        NotificationService().add_notification(user_id=user_id, **kwargs)
    except Exception:
        logger.warning(
            "Notification delivery failed",
            exc_info=True,
            extra={"user_id": user_id, "notification_type": kwargs.get("notification_type")},
        )


def publish_proposal_received(
    forging_event_id: int,
    partner_id: int,
    seller_name: str,
    product_name: str,
    commission_rate: float,
) -> None:
    record_event(
        "forging_event_proposed",
        {"forging_event_id": forging_event_id, "partner_id": partner_id},
    )
    _safe_notify(
        partner_id,
        notification_type="forging_proposal",
        title="New Forging Event Proposal",
        message=f"{seller_name} invited you to promote {product_name} for a {commission_rate:g}% commission.",
        reference_id=forging_event_id,
        reference_type="forging_event",
    )


def publish_proposal_response(
    forging_event_id: int,
    seller_id: int,
    partner_name: Optional[str],
    product_name: str,
    accepted: bool,
) -> None:
    outcome = "accepted" if accepted else "declined"
    record_event(
        "forging_event_proposal_answered",
        {"forging_event_id": forging_event_id, "seller_id": seller_id, "outcome": outcome},
    )
    increment_counter("forging_proposal_responses_total", labels={"outcome": outcome})
    _safe_notify(
        seller_id,
        notification_type="forging_proposal_response",
        title=f"Proposal {outcome.capitalize()}",
        message=f"{partner_name or 'Your partner'} {outcome} the Forging Event for {product_name}.",
        reference_id=forging_event_id,
        reference_type="forging_event",
    )


def publish_event_finished(
    forging_event_id: int,
    seller_id: int,
    buyer_ids: Iterable[int],
    product_name: str,
    final_discount: float,
    buyer_count: int,
) -> None:
    record_event(
        "forging_event_finished",
        {
            "forging_event_id": forging_event_id,
            "final_discount": final_discount,
            "buyer_count": buyer_count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    _safe_notify(
        seller_id,
        notification_type="forging_deal_ended",
        title="Forging Event Ended",
        message=f"Your deal on {product_name} closed with {buyer_count} pledges at {final_discount:g}% off.",
        reference_id=forging_event_id,
        reference_type="forging_event",
    )
    for buyer_id in buyer_ids:
        _safe_notify(
            buyer_id,
            notification_type="forging_deal_ended",
            title="Your Deal Is Ready",
            message=f"The deal on {product_name} closed at {final_discount:g}% off. Complete your purchase now.",
            reference_id=forging_event_id,
            reference_type="forging_event",
        )
