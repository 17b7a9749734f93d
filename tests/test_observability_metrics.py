import json
import logging

from tradinta.models import Order, OrderStatus
from tradinta.observability.foundry_metrics import compute_foundry_summary
from tradinta.observability.logging_config import JsonFormatter
from tradinta.observability.metrics import (
    get_counter_value,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    reset_metrics,
    set_gauge,
    timed,
)
from tradinta.services.checkout_service import CheckoutService
from tradinta.services.forging_event_service import ForgingEventService
from tradinta.services.pledge_service import PledgeService


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("test_counter")
    increment_counter("test_counter", amount=2, labels={"route": "/example"})
    set_gauge("test_gauge", 5)
    observe_latency("test_latency", 100, labels={"route": "/example"})
    observe_latency("test_latency", 50, labels={"route": "/example"})

    snapshot = get_metrics_snapshot()
    counters = snapshot["counters"]["test_counter"]
    assert len(counters) == 2

    gauges = snapshot["gauges"]["test_gauge"]
    assert gauges[0]["value"] == 5

    hist = snapshot["histograms"]["test_latency"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100


def test_counter_value_sums_label_sets():
    reset_metrics()
    increment_counter("orders", labels={"source": "pledge"})
    increment_counter("orders", amount=2, labels={"source": "forge_now"})

    assert get_counter_value("orders") == 3
    assert get_counter_value("orders", {"source": "pledge"}) == 1
    assert get_counter_value("missing") == 0


def test_timed_observes_block():
    reset_metrics()
    with timed("block_ms"):
        pass

    stats = get_metrics_snapshot()["histograms"]["block_ms"][0]["stats"]
    assert stats["count"] == 1
    assert stats["min"] >= 0


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("tradinta.test", logging.INFO, __file__, 10, "pledge %s", (7,), None)
    record.buyer_count = 12

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "pledge 7"
    assert payload["level"] == "INFO"
    assert payload["extra"] == {"buyer_count": 12}


def test_foundry_summary(db_session, clock, seller, product, buyer_factory):
    events = ForgingEventService(db_session, clock=clock)
    finished = events.propose_event(seller.userID, product.productID, [(2, 10)], duration_hours=1)
    running = events.propose_event(seller.userID, product.productID, [(2, 10)], duration_hours=48)
    buyers = buyer_factory(4)
    pledges = PledgeService(db_session, event_service=events, clock=clock)
    for buyer in buyers:
        pledges.pledge(buyer.userID, finished.forgingEventID)
    clock.advance(hours=2)
    events.resolve_expired_events()

    checkout = CheckoutService(db_session, event_service=events, clock=clock)
    checkout.complete_pledge_purchase(buyers[0].userID, finished.forgingEventID)
    checkout.forge_now(buyers[1].userID, running.forgingEventID)

    summary = compute_foundry_summary(db_session, now=clock.now)

    assert summary["events_by_status"]["finished"] == 1
    assert summary["events_by_status"]["active"] == 1
    assert summary["total_pledges"] == 4
    assert summary["pledge_orders"] == 1
    assert summary["forge_now_orders"] == 1
    assert summary["pledge_conversion_rate"] == 0.25
    assert summary["avg_final_discount"] == 10.0
    assert summary["overdue_active_events"] == 0
    assert db_session.query(Order).filter_by(status=OrderStatus.PENDING_PAYMENT).count() == 2
