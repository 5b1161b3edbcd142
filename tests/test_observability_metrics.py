import json
import logging

from flask import Flask, g
from sqlalchemy import create_engine

from retail_ops.observability.health import check_database_health
from retail_ops.observability.logging_config import JsonFormatter, RequestContextFilter
from retail_ops.observability.metrics import (
    MAX_EVENTS,
    counter_value,
    events_named,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
)
from retail_ops.policy import Role
from retail_ops.services.authorizer import PersonContext


def test_metrics_snapshot_groups_series_by_name():
    increment_counter("order_transitions_total", labels={"from": "pending", "to": "cancelled"})
    increment_counter("order_transitions_total", amount=2, labels={"from": "assigned", "to": "cancelled"})
    observe_latency("http_request_latency_ms", 100, labels={"endpoint": "orders.list_orders"})
    observe_latency("http_request_latency_ms", 50, labels={"endpoint": "orders.list_orders"})

    snapshot = get_metrics_snapshot()
    assert len(snapshot["counters"]["order_transitions_total"]) == 2

    stats = snapshot["latencies"]["http_request_latency_ms"][0]["stats"]
    assert stats == {"count": 2, "avg_ms": 75.0, "max_ms": 100.0}


def test_events_named_filters_the_trail():
    record_event("order_assigned", {"order_id": 1})
    record_event("password_changed", {"person_id": "p"})
    record_event("order_assigned", {"order_id": 2})

    assert [e["payload"]["order_id"] for e in events_named("order_assigned")] == [1, 2]
    assert events_named("missing") == []


def test_counter_value_sums_label_sets():
    increment_counter("logins_total", labels={"result": "ok"})
    increment_counter("logins_total", labels={"result": "ok"})
    increment_counter("logins_total", labels={"result": "bad_password"})

    assert counter_value("logins_total") == 3
    assert counter_value("logins_total", {"result": "ok"}) == 2
    assert counter_value("missing_total") == 0


def test_event_buffer_is_bounded():
    for index in range(MAX_EVENTS + 5):
        record_event("tick", {"index": index})
    events = get_metrics_snapshot()["events"]
    assert len(events) == MAX_EVENTS
    assert events[0]["payload"]["index"] == 5


def test_json_log_lines_carry_person_context():
    app = Flask(__name__)
    record = logging.LogRecord("retail_ops.test", logging.INFO, __file__, 1, "Order %s moved", (7,), None)

    with app.test_request_context("/api/orders/7/transition", method="POST"):
        g.request_id = "req-1"
        g.person_context = PersonContext(person_id="p-9", role=Role.LOGISTICA)
        RequestContextFilter().filter(record)

    line = json.loads(JsonFormatter().format(record))
    assert line["message"] == "Order 7 moved"
    assert line["request_id"] == "req-1"
    assert line["path"] == "/api/orders/7/transition"
    assert line["person_id"] == "p-9"
    assert line["role"] == "logistica"


def test_log_records_outside_requests_have_empty_context():
    record = logging.LogRecord("retail_ops.test", logging.INFO, __file__, 1, "boot", (), None)
    RequestContextFilter().filter(record)
    assert record.request_id is None
    assert record.person_id is None


def test_database_health_reports_down_when_unreachable(tmp_path):
    broken = create_engine(f"sqlite:///{tmp_path}/missing/dir/db.sqlite")
    status = check_database_health(broken)
    assert status["status"] == "DOWN"
    assert status["detail"] == "OperationalError"
