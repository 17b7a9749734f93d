from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, current_app, jsonify, request, session

from tradinta.database import get_db
from tradinta.models import ForgingEvent, ForgingEventStatus, Order, User, as_utc, utcnow
from tradinta.services.checkout_service import CheckoutService
from tradinta.services.errors import ForgingEventError, NotFoundError, ValidationError
from tradinta.services.forging_event_service import ForgingEventService, seconds_remaining
from tradinta.services.margin_helper import (
    MarginHelperService,
    all_tiers_profitable,
    calculate_tier_margins,
)
from tradinta.services.notification_service import NotificationService
from tradinta.services.pledge_service import PledgeService
from tradinta.services.tier_resolver import describe_progress

foundry_bp = Blueprint("foundry", __name__)

logger = logging.getLogger(__name__)


def _clock() -> datetime:
    # Tests swap the clock through app.config
    return current_app.config.get("FOUNDRY_CLOCK", utcnow)()


def _event_service() -> ForgingEventService:
    return ForgingEventService(get_db(), clock=_clock)


def _pledge_service() -> PledgeService:
    return PledgeService(get_db(), event_service=_event_service(), clock=_clock)


def _checkout_service() -> CheckoutService:
    event_service = _event_service()
    return CheckoutService(
        get_db(),
        event_service=event_service,
        pledge_service=PledgeService(get_db(), event_service=event_service, clock=_clock),
        clock=_clock,
    )


def login_required(view: Callable) -> Callable:
    @wraps(view)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"success": False, "message": "Not authenticated"}), 401
        return view(*args, **kwargs)

    return wrapper


@foundry_bp.errorhandler(ForgingEventError)
def handle_forging_error(exc: ForgingEventError):
    if exc.status_code >= 500:
        logger.error("Foundry request failed: %s", exc.message)
    else:
        logger.info("Foundry request rejected: %s", exc.message, extra={"error": type(exc).__name__})
    return jsonify({"success": False, "message": exc.message, "error": type(exc).__name__}), exc.status_code


# ---------------------------
# Public / buyer APIs
# ---------------------------


@foundry_bp.route("/api/foundry/events", methods=["GET"])
def api_list_active_events():
    events = _event_service().list_active_events()
    return jsonify({"success": True, "events": [_serialize_event(e) for e in events]})


@foundry_bp.route("/api/foundry/events/<int:event_id>", methods=["GET"])
def api_get_event(event_id: int):
    event = _event_service().get_event(event_id)
    body: Dict[str, Any] = {"success": True, "event": _serialize_event(event)}
    if "user_id" in session:
        body["has_pledged"] = _pledge_service().has_pledged(session["user_id"], event_id)
    return jsonify(body)


@foundry_bp.route("/api/foundry/events/<int:event_id>/pledge", methods=["POST"])
@login_required
def api_pledge(event_id: int):
    service = _pledge_service()
    pledge = service.pledge(session["user_id"], event_id)
    event = service.event_service.get_event(event_id)
    return jsonify(
        {
            "success": True,
            "message": "Pledge recorded",
            "pledge_id": pledge.pledgeID,
            "event": _serialize_event(event),
        }
    ), 201


@foundry_bp.route("/api/foundry/events/<int:event_id>/purchase", methods=["POST"])
@login_required
def api_complete_purchase(event_id: int):
    order = _checkout_service().complete_pledge_purchase(session["user_id"], event_id)
    return jsonify(
        {
            "success": True,
            "message": "Your discounted order has been created. Proceed to payment.",
            "order": _serialize_order(order),
        }
    )


@foundry_bp.route("/api/foundry/events/<int:event_id>/forge-now", methods=["POST"])
@login_required
def api_forge_now(event_id: int):
    order = _checkout_service().forge_now(session["user_id"], event_id)
    return jsonify({"success": True, "message": "Order created", "order": _serialize_order(order)}), 201


@foundry_bp.route("/api/foundry/pledges", methods=["GET"])
@login_required
def api_my_pledges():
    summaries = _pledge_service().list_buyer_pledges(session["user_id"])
    return jsonify({"success": True, "pledges": [s.to_dict() for s in summaries]})


# ---------------------------
# Seller APIs
# ---------------------------


@foundry_bp.route("/api/foundry/events", methods=["POST"])
@login_required
def api_propose_event():
    payload = request.get_json(silent=True) or {}
    product_id = payload.get("product_id")
    if product_id is None:
        raise ValidationError("Please select a product for this event.")

    event = _event_service().propose_event(
        seller_id=session["user_id"],
        product_id=product_id,
        tiers=payload.get("tiers") or [],
        duration_hours=payload.get("duration_hours"),
        partner_id=payload.get("partner_id"),
        commission_rate=payload.get("commission_rate"),
    )
    if event.partnerID:
        message = f"Your proposal has been sent to {event.partner_name}."
    else:
        message = "Your partner-less Forging Event has been created and is now active."
    return jsonify({"success": True, "message": message, "event": _serialize_event(event)}), 201


@foundry_bp.route("/api/foundry/seller/events", methods=["GET"])
@login_required
def api_seller_events():
    events = _event_service().list_seller_events(session["user_id"])
    db = get_db()
    serialized = []
    for event in events:
        data = _serialize_event(event)
        data["attributed_sales"] = db.query(Order).filter_by(forgingEventID=event.forgingEventID).count()
        serialized.append(data)
    return jsonify({"success": True, "events": serialized})


@foundry_bp.route("/api/foundry/margins", methods=["POST"])
@login_required
def api_margin_preview():
    payload = request.get_json(silent=True) or {}
    try:
        margins = calculate_tier_margins(
            payload.get("unit_cost", 0),
            payload.get("b2b_price", 0),
            payload.get("tiers") or [],
        )
    except (TypeError, ValueError, AttributeError):
        raise ValidationError("Unit cost, B2B price and tiers must be numeric")
    return jsonify(
        {
            "success": True,
            "tiers": [m.to_dict() for m in margins],
            "can_apply_price": bool(margins) and all_tiers_profitable(margins),
        }
    )


@foundry_bp.route("/api/foundry/products/<int:product_id>/price", methods=["POST"])
@login_required
def api_apply_price(product_id: int):
    payload = request.get_json(silent=True) or {}
    product = MarginHelperService(get_db()).apply_b2b_price(
        seller_id=session["user_id"],
        product_id=product_id,
        unit_cost=payload.get("unit_cost", 0),
        b2b_price=payload.get("b2b_price", 0),
        tiers=payload.get("tiers") or [],
    )
    currency = current_app.config.get("FOUNDRY_CURRENCY", "KES")
    return jsonify(
        {
            "success": True,
            "message": f"The base B2B price has been set to {currency} {float(product.price):,.2f}.",
            "product_id": product.productID,
            "price": float(product.price),
        }
    )


# ---------------------------
# Growth partner APIs
# ---------------------------


@foundry_bp.route("/api/foundry/partner/events", methods=["GET"])
@login_required
def api_partner_events():
    events = _event_service().list_partner_events(session["user_id"])
    return jsonify({"success": True, "events": [_serialize_event(e) for e in events]})


@foundry_bp.route("/api/foundry/events/<int:event_id>/respond", methods=["POST"])
@login_required
def api_respond(event_id: int):
    payload = request.get_json(silent=True) or {}
    accept = payload.get("accept")
    if not isinstance(accept, bool):
        raise ValidationError("accept must be true or false")
    event = _event_service().respond_to_proposal(session["user_id"], event_id, accept)
    return jsonify(
        {
            "success": True,
            "message": f"Proposal {'Accepted' if accept else 'Declined'}! The seller has been notified.",
            "event": _serialize_event(event),
        }
    )


# ---------------------------
# Admin APIs
# ---------------------------


@foundry_bp.route("/api/admin/foundry/events/<int:event_id>/end", methods=["POST"])
@login_required
def api_admin_end_event(event_id: int):
    event = _event_service().force_end_event(session["user_id"], event_id)
    return jsonify({"success": True, "message": "Forging Event ended", "event": _serialize_event(event)})


@foundry_bp.route("/api/admin/foundry/resolve", methods=["POST"])
@login_required
def api_admin_resolve():
    user = get_db().query(User).filter_by(userID=session["user_id"]).first()
    if not user or not user.is_admin:
        return jsonify({"success": False, "message": "Forbidden"}), 403
    resolved = _event_service().resolve_expired_events()
    return jsonify({"success": True, "resolved": resolved})


# ---------------------------
# Notifications
# ---------------------------


@foundry_bp.route("/api/notifications", methods=["GET"])
@login_required
def api_notifications():
    service = NotificationService()
    unread_only = request.args.get("unread") in {"1", "true", "yes"}
    user_id = session["user_id"]
    return jsonify(
        {
            "success": True,
            "notifications": service.get_notifications(user_id, unread_only=unread_only),
            "unread_count": service.get_unread_count(user_id),
        }
    )


@foundry_bp.route("/api/notifications/mark-all-read", methods=["POST"])
@login_required
def api_mark_all_read():
    count = NotificationService().mark_all_as_read(session["user_id"])
    return jsonify({"success": True, "marked": count})


@foundry_bp.route("/api/notifications/<notification_id>/read", methods=["POST"])
@login_required
def api_mark_read(notification_id: str):
    if not NotificationService().mark_as_read(session["user_id"], notification_id):
        raise NotFoundError("Notification not found")
    return jsonify({"success": True})


# ---------------------------
# Helpers
# ---------------------------


def _serialize_event(event: ForgingEvent) -> Dict[str, Any]:
    status = ForgingEventStatus(event.status)
    tiers = event.tier_pairs()
    body: Dict[str, Any] = {
        "id": event.forgingEventID,
        "product_id": event.productID,
        "product_name": event.product_name,
        "product_image_url": event.product_image_url,
        "seller_id": event.sellerID,
        "seller_name": event.seller_name,
        "partner_id": event.partnerID,
        "partner_name": event.partner_name,
        "partner_avatar_url": event.partner_avatar_url,
        "commission_rate": float(event.commission_rate or 0),
        "tiers": [{"buyer_count": b, "discount_percentage": d} for b, d in tiers],
        "current_buyer_count": event.current_buyer_count,
        "status": status.value,
        "start_time": _serialize_dt(event.start_time),
        "end_time": _serialize_dt(event.end_time),
        "final_discount_tier": (
            float(event.final_discount_tier) if event.final_discount_tier is not None else None
        ),
        "created_at": _serialize_dt(event.created_at),
        "responded_at": _serialize_dt(event.responded_at),
        "finished_at": _serialize_dt(event.finished_at),
    }
    if status == ForgingEventStatus.ACTIVE:
        body["progress"] = describe_progress(tiers, event.current_buyer_count).to_dict()
        body["seconds_remaining"] = seconds_remaining(event, _clock())
    return body


def _serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "id": order.orderID,
        "buyer_id": order.buyerID,
        "seller_id": order.sellerID,
        "seller_name": order.seller_name,
        "product_id": order.productID,
        "product_name": order.product_name,
        "quantity": order.quantity,
        "unit_price": float(order.unit_price),
        "discount_percentage": float(order.discount_percentage),
        "total_amount": float(order.total_amount),
        "status": _enum_value(order.status),
        "related_forging_event_id": order.forgingEventID,
        "order_date": _serialize_dt(order.order_date),
    }


def _serialize_dt(value: Optional[datetime]) -> Optional[str]:
    if not value:
        return None
    return as_utc(value).isoformat()


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value
