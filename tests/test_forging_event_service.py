from datetime import timedelta

import pytest

from tradinta.models import ForgingEvent, ForgingEventStatus, Pledge, as_utc
from tradinta.observability import get_counter_value
from tradinta.services.errors import (
    EventNotActiveError,
    EventNotProposedError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from tradinta.services.forging_event_service import ForgingEventService, seconds_remaining
from tradinta.services.notification_service import NotificationService

TIERS = [
    {"buyer_count": 10, "discount_percentage": 5},
    {"buyer_count": 20, "discount_percentage": 10},
    {"buyer_count": 25, "discount_percentage": 20},
]


def _add_pledges(session, event, buyers):
    for buyer in buyers:
        session.add(Pledge(forgingEventID=event.forgingEventID, buyerID=buyer.userID))
    session.commit()


def test_partnerless_event_is_active_immediately(db_session, clock, seller, product):
    service = ForgingEventService(db_session, clock=clock)

    event = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=48)

    assert event.status == ForgingEventStatus.ACTIVE
    assert event.partnerID is None
    assert float(event.commission_rate) == 0.0
    assert event.current_buyer_count == 0
    assert as_utc(event.start_time) == clock.now
    assert as_utc(event.end_time) == clock.now + timedelta(hours=48)
    assert event.product_name == product.name
    assert event.seller_name == seller.name
    assert event.tier_pairs() == [(10, 5.0), (20, 10.0), (25, 20.0)]
    assert get_counter_value("forging_events_proposed_total", {"with_partner": "false"}) == 1


def test_partner_event_waits_for_response_and_notifies_partner(db_session, clock, seller, partner, product):
    service = ForgingEventService(db_session, clock=clock)

    event = service.propose_event(seller.userID, product.productID, TIERS, partner_id=partner.userID)

    assert event.status == ForgingEventStatus.PROPOSED
    assert event.start_time is None
    assert event.partner_name == partner.name
    assert float(event.commission_rate) == 5.0
    assert as_utc(event.end_time) == clock.now + timedelta(hours=72)

    inbox = NotificationService().get_notifications(partner.userID)
    assert len(inbox) == 1
    assert inbox[0]["type"] == "forging_proposal"
    assert inbox[0]["reference_id"] == event.forgingEventID


def test_propose_uses_custom_commission(db_session, clock, seller, partner, product):
    event = ForgingEventService(db_session, clock=clock).propose_event(
        seller.userID, product.productID, TIERS, partner_id=partner.userID, commission_rate=7.5
    )
    assert float(event.commission_rate) == 7.5


@pytest.mark.parametrize(
    "tiers",
    [
        [],
        [{"buyer_count": 0, "discount_percentage": 5}],
        [{"buyer_count": 10, "discount_percentage": 0}],
        [{"buyer_count": 10, "discount_percentage": 120}],
        [{"buyer_count": 10, "discount_percentage": 5}, {"buyer_count": 10, "discount_percentage": 8}],
        [{"buyer_count": 10, "discount_percentage": 15}, {"buyer_count": 20, "discount_percentage": 10}],
        [{"buyer_count": 10}],
        [{"buyer_count": 2.9, "discount_percentage": 10}],
        5,
    ],
)
def test_propose_rejects_invalid_tiers(db_session, clock, seller, product, tiers):
    service = ForgingEventService(db_session, clock=clock)
    with pytest.raises(ValidationError):
        service.propose_event(seller.userID, product.productID, tiers)
    assert db_session.query(ForgingEvent).count() == 0


@pytest.mark.parametrize("duration", [0, -4, 721, "soon", "nan", float("inf")])
def test_propose_rejects_invalid_duration(db_session, clock, seller, product, duration):
    with pytest.raises(ValidationError):
        ForgingEventService(db_session, clock=clock).propose_event(
            seller.userID, product.productID, TIERS, duration_hours=duration
        )


def test_propose_requires_published_product_owned_by_seller(db_session, clock, seller, buyer, product, draft_product):
    service = ForgingEventService(db_session, clock=clock)

    with pytest.raises(ValidationError):
        service.propose_event(seller.userID, draft_product.productID, TIERS)
    with pytest.raises(ValidationError):
        service.propose_event(buyer.userID, product.productID, TIERS)
    with pytest.raises(NotFoundError):
        service.propose_event(seller.userID, 999999, TIERS)


def test_propose_rejects_unknown_or_non_partner(db_session, clock, seller, buyer, product):
    service = ForgingEventService(db_session, clock=clock)
    with pytest.raises(NotFoundError):
        service.propose_event(seller.userID, product.productID, TIERS, partner_id=buyer.userID)
    with pytest.raises(NotFoundError):
        service.propose_event(seller.userID, product.productID, TIERS, partner_id=424242)


def test_propose_rejects_out_of_range_commission(db_session, clock, seller, partner, product):
    with pytest.raises(ValidationError):
        ForgingEventService(db_session, clock=clock).propose_event(
            seller.userID, product.productID, TIERS, partner_id=partner.userID, commission_rate=150
        )


def test_feature_flag_disables_proposals(db_session, clock, seller, product):
    class DisabledConfig:
        FEATURE_FOUNDRY_ENABLED = False

    service = ForgingEventService(db_session, config=DisabledConfig, clock=clock)
    with pytest.raises(ValidationError):
        service.propose_event(seller.userID, product.productID, TIERS)


def test_partner_accepts_proposal(db_session, clock, seller, partner, product):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS, partner_id=partner.userID)
    clock.advance(hours=2)

    accepted = service.respond_to_proposal(partner.userID, event.forgingEventID, accept=True)

    assert accepted.status == ForgingEventStatus.ACTIVE
    assert as_utc(accepted.start_time) == clock.now
    assert as_utc(accepted.responded_at) == clock.now
    inbox = NotificationService().get_notifications(seller.userID)
    assert inbox[0]["type"] == "forging_proposal_response"
    assert "accepted" in inbox[0]["message"]


def test_partner_declines_proposal(db_session, clock, seller, partner, product):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS, partner_id=partner.userID)

    declined = service.respond_to_proposal(partner.userID, event.forgingEventID, accept=False)

    assert declined.status == ForgingEventStatus.DECLINED
    assert declined.start_time is None
    assert service.list_active_events() == []


def test_only_assigned_partner_can_respond(db_session, clock, seller, partner, buyer, product):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS, partner_id=partner.userID)

    with pytest.raises(NotAuthorizedError):
        service.respond_to_proposal(buyer.userID, event.forgingEventID, accept=True)
    with pytest.raises(NotAuthorizedError):
        service.respond_to_proposal(seller.userID, event.forgingEventID, accept=True)


def test_second_response_is_rejected(db_session, clock, seller, partner, product):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS, partner_id=partner.userID)
    service.respond_to_proposal(partner.userID, event.forgingEventID, accept=True)

    with pytest.raises(EventNotProposedError):
        service.respond_to_proposal(partner.userID, event.forgingEventID, accept=False)


def test_list_active_events_excludes_expired_and_proposed(db_session, clock, seller, partner, product):
    service = ForgingEventService(db_session, clock=clock)
    short = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=1)
    long = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=10)
    service.propose_event(seller.userID, product.productID, TIERS, partner_id=partner.userID)

    clock.advance(hours=2)
    active_ids = [e.forgingEventID for e in service.list_active_events()]

    assert active_ids == [long.forgingEventID]
    assert short.forgingEventID not in active_ids


def test_get_event_resolves_expired_event(db_session, clock, seller, product, buyer_factory):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=24)
    buyers = buyer_factory(24)
    _add_pledges(db_session, event, buyers)

    clock.advance(hours=24)
    resolved = service.get_event(event.forgingEventID)

    assert resolved.status == ForgingEventStatus.FINISHED
    assert float(resolved.final_discount_tier) == 10.0
    assert resolved.current_buyer_count == 24
    assert as_utc(resolved.finished_at) == clock.now
    assert get_counter_value("forging_events_finished_total") == 1

    buyer_inbox = NotificationService().get_notifications(buyers[0].userID)
    assert buyer_inbox[0]["type"] == "forging_deal_ended"
    assert NotificationService().get_notifications(seller.userID)[0]["type"] == "forging_deal_ended"


def test_get_event_leaves_running_event_alone(db_session, clock, seller, product):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=24)
    clock.advance(hours=23, minutes=59)

    assert service.get_event(event.forgingEventID).status == ForgingEventStatus.ACTIVE
    assert seconds_remaining(event, clock.now) == 60


def test_event_with_no_unlocked_tier_finishes_at_zero(db_session, clock, seller, product, buyer_factory):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=1)
    _add_pledges(db_session, event, buyer_factory(5))
    clock.advance(hours=1)

    resolved = service.get_event(event.forgingEventID)
    assert resolved.status == ForgingEventStatus.FINISHED
    assert float(resolved.final_discount_tier) == 0.0


def test_resolution_happens_exactly_once(db_session, clock, seller, product, buyer_factory):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=1)
    _add_pledges(db_session, event, buyer_factory(25))
    clock.advance(hours=2)

    assert service.resolve_event(event) is True
    assert service.resolve_event(event) is False
    assert service.resolve_expired_events() == 0
    assert float(service.get_event(event.forgingEventID).final_discount_tier) == 20.0
    assert get_counter_value("forging_events_finished_total") == 1


def test_stale_copy_cannot_resolve_twice(test_db, db_session, clock, seller, product, buyer_factory):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=1)
    _add_pledges(db_session, event, buyer_factory(10))
    clock.advance(hours=2)

    other_session = test_db()
    try:
        stale = other_session.get(ForgingEvent, event.forgingEventID)
        assert stale.status == ForgingEventStatus.ACTIVE

        assert service.resolve_event(event) is True
        assert ForgingEventService(other_session, clock=clock).resolve_event(stale) is False
    finally:
        other_session.close()

    assert get_counter_value("forging_events_finished_total") == 1


def test_resolve_expired_events_sweeps_only_closed_windows(db_session, clock, seller, product):
    service = ForgingEventService(db_session, clock=clock)
    service.propose_event(seller.userID, product.productID, TIERS, duration_hours=1)
    service.propose_event(seller.userID, product.productID, TIERS, duration_hours=2)
    open_event = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=8)

    clock.advance(hours=3)
    assert service.resolve_expired_events() == 2
    assert service.resolve_expired_events() == 0

    db_session.expire_all()
    statuses = {e.forgingEventID: e.status for e in db_session.query(ForgingEvent).all()}
    assert statuses[open_event.forgingEventID] == ForgingEventStatus.ACTIVE
    assert sorted(s.value for s in statuses.values()) == ["active", "finished", "finished"]


def test_admin_can_force_end_active_event(db_session, clock, seller, admin, product, buyer_factory):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=48)
    _add_pledges(db_session, event, buyer_factory(20))

    ended = service.force_end_event(admin.userID, event.forgingEventID)

    assert ended.status == ForgingEventStatus.FINISHED
    assert float(ended.final_discount_tier) == 10.0
    with pytest.raises(EventNotActiveError):
        service.force_end_event(admin.userID, event.forgingEventID)


def test_force_end_requires_admin(db_session, clock, seller, product):
    service = ForgingEventService(db_session, clock=clock)
    event = service.propose_event(seller.userID, product.productID, TIERS)
    with pytest.raises(NotAuthorizedError):
        service.force_end_event(seller.userID, event.forgingEventID)


def test_seller_and_partner_listings(db_session, clock, seller, partner, product):
    service = ForgingEventService(db_session, clock=clock)
    solo = service.propose_event(seller.userID, product.productID, TIERS, duration_hours=1)
    clock.advance(minutes=5)
    shared = service.propose_event(seller.userID, product.productID, TIERS, partner_id=partner.userID)
    clock.advance(hours=2)

    seller_events = service.list_seller_events(seller.userID)
    assert [e.forgingEventID for e in seller_events] == [shared.forgingEventID, solo.forgingEventID]
    # the expired solo event is finished lazily by the listing
    assert seller_events[1].status == ForgingEventStatus.FINISHED

    partner_events = service.list_partner_events(partner.userID)
    assert [e.forgingEventID for e in partner_events] == [shared.forgingEventID]


def test_get_event_unknown_id(db_session, clock):
    with pytest.raises(NotFoundError):
        ForgingEventService(db_session, clock=clock).get_event(123456)
