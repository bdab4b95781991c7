import pytest
from fastapi.testclient import TestClient
from prometheus_client.parser import text_string_to_metric_families

from fping_exporter.config import Settings
from fping_exporter.errors import RenderError
from fping_exporter.main import create_app
from fping_exporter.models.registry import ProberState
from fping_exporter.services import exposition
from fping_exporter.services.parser import parse_line
from fping_exporter.services.registry import Registry


def make_client(registry: Registry, **settings) -> TestClient:
    return TestClient(create_app(registry, Settings(**settings)))


def samples_by_name(text: str) -> dict:
    result = {}
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            result.setdefault(sample.name, []).append(sample)
    return result


def test_metrics_endpoint_without_samples_serves_counters():
    registry = Registry()
    client = make_client(registry)

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")

    metrics = samples_by_name(response.text)
    assert metrics["fping_exporter_samples_ingested_total"][0].value == 0
    assert metrics["fping_exporter_parse_errors_total"][0].value == 0
    assert metrics["fping_exporter_prober_restarts_total"][0].value == 0
    assert "fping_target_loss_ratio" not in metrics
    assert "fping_target_rtt_seconds" not in metrics


def test_metrics_endpoint_renders_targets():
    registry = Registry()
    registry.record_start()
    registry.record_version("5.0.0")
    registry.record_state(ProberState.RUNNING)
    registry.ingest(parse_line("targetA : xmt/rcv/%loss = 5/5/0%, min/avg/max = 10.0/12.5/15.0"))
    registry.ingest(parse_line("targetB (10.0.0.2) : xmt/rcv/%loss = 5/0/100%"))
    registry.record_parse_error()
    client = make_client(registry)

    response = client.get("/metrics")
    assert response.status_code == 200
    metrics = samples_by_name(response.text)

    loss = {s.labels["target"]: s.value for s in metrics["fping_target_loss_ratio"]}
    assert loss == {"targetA": 0.0, "targetB": 1.0}

    rtt = {(s.labels["target"], s.labels["stat"]): s.value for s in metrics["fping_target_rtt_seconds"]}
    assert rtt == {
        ("targetA", "min"): 0.010,
        ("targetA", "avg"): 0.0125,
        ("targetA", "max"): 0.015,
    }

    requests = {s.labels["target"]: s.value for s in metrics["fping_icmp_request_total"]}
    replies = {s.labels["target"]: s.value for s in metrics["fping_icmp_reply_total"]}
    assert requests == {"targetA": 5, "targetB": 5}
    assert replies == {"targetA": 5, "targetB": 0}

    addr = {s.labels["target"]: s.labels["addr"] for s in metrics["fping_target_transmitted"]}
    assert addr == {"targetA": "", "targetB": "10.0.0.2"}

    assert metrics["fping_exporter_samples_ingested_total"][0].value == 2
    assert metrics["fping_exporter_parse_errors_total"][0].value == 1
    assert metrics["fping_exporter_prober_start_time_seconds"][0].value > 0
    assert metrics["fping_exporter_prober_info"][0].labels == {"version": "5.0.0"}

    state = {s.labels["state"]: s.value for s in metrics["fping_exporter_prober_state"]}
    assert state["running"] == 1.0
    assert sum(state.values()) == 1.0


def test_every_scrape_sees_fresh_state():
    registry = Registry()
    client = make_client(registry)

    first = samples_by_name(client.get("/metrics").text)
    registry.ingest(parse_line("targetA : xmt/rcv/%loss = 1/1/0%, min/avg/max = 1.0/1.0/1.0"))
    second = samples_by_name(client.get("/metrics").text)

    assert first["fping_exporter_samples_ingested_total"][0].value == 0
    assert second["fping_exporter_samples_ingested_total"][0].value == 1


def test_metrics_path_is_configurable():
    client = make_client(Registry(), metrics_path="probe/metrics")

    assert client.get("/probe/metrics").status_code == 200
    assert client.get("/metrics").status_code == 404


def test_render_failure_maps_to_500(monkeypatch):
    """
    If rendering fails, only this request fails with HTTP 500 and the
    error message is returned in the JSON body (detail).
    """

    def fake_render(snapshot):
        raise RenderError("failed to render metrics: boom")

    monkeypatch.setattr(exposition, "render", fake_render)
    registry = Registry()
    client = make_client(registry)

    response = client.get("/metrics")

    assert response.status_code == 500
    assert "boom" in response.json()["detail"]
    # ingestion is unaffected
    registry.ingest(parse_line("targetA : xmt/rcv/%loss = 1/1/0%, min/avg/max = 1.0/1.0/1.0"))
    assert registry.snapshot().samples_ingested == 1


def test_separate_apps_do_not_share_state():
    first, second = Registry(), Registry()
    first.ingest(parse_line("targetA : xmt/rcv/%loss = 1/1/0%, min/avg/max = 1.0/1.0/1.0"))

    text = make_client(second).get("/metrics").text

    assert "targetA" not in text


def test_health_reports_ok_while_restarting():
    registry = Registry()
    registry.record_state(ProberState.BACKING_OFF)
    registry.record_restart()
    client = make_client(registry)

    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["prober_state"] == "backing_off"
    assert data["restarts"] == 1
    assert data["targets"] == 0


def test_health_returns_503_when_fatal():
    registry = Registry()
    registry.record_state(ProberState.FATAL)
    client = make_client(registry)

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "failed"
    assert response.json()["prober_state"] == "fatal"


def test_single_ping_lines_do_not_replace_interval_summary_gauges():
    """
    Per-probe results (1/1 or 1/0) arrive between summaries; the loss and
    RTT gauges must keep showing the interval summary, not the last probe.
    """
    registry = Registry()
    registry.ingest(parse_line("flaky : xmt/rcv/%loss = 10/7/30%, min/avg/max = 1.0/2.0/4.0"))
    registry.ingest(parse_line("[1.0] flaky : [11], 64 bytes, 2.0 ms (2.0 avg, 0% loss)"))
    registry.ingest(parse_line("[2.0] flaky : [12], timed out (2.0 avg, 8% loss)"))
    client = make_client(registry)

    metrics = samples_by_name(client.get("/metrics").text)

    assert metrics["fping_target_loss_ratio"][0].value == 0.3
    assert metrics["fping_target_transmitted"][0].value == 10
    assert metrics["fping_target_received"][0].value == 7
    rtt = {s.labels["stat"]: s.value for s in metrics["fping_target_rtt_seconds"]}
    assert rtt == {"min": 0.001, "avg": 0.002, "max": 0.004}
    assert metrics["fping_last_observed_sequence"][0].value == 12


def test_single_ping_result_is_shown_until_the_first_summary():
    registry = Registry()
    registry.ingest(parse_line("[1.0] fresh : [0], timed out (NaN avg, 100% loss)"))
    client = make_client(registry)

    metrics = samples_by_name(client.get("/metrics").text)

    assert metrics["fping_target_loss_ratio"][0].value == 1.0
    assert "fping_target_rtt_seconds" not in metrics


def test_errors_are_counted_per_target_and_type():
    registry = Registry()
    registry.ingest(parse_line("ICMP Host Unreachable from 10.0.0.1 for ICMP Echo sent to 10.0.0.5"))
    registry.ingest(parse_line("ICMP Host Unreachable from 10.0.0.1 for ICMP Echo sent to 10.0.0.5"))
    registry.record_error("dns.invalid", "fping")
    client = make_client(registry)

    metrics = samples_by_name(client.get("/metrics").text)

    errors = {(s.labels["target"], s.labels["type"]): s.value for s in metrics["fping_errors_total"]}
    assert errors == {("10.0.0.5", "icmp"): 2, ("dns.invalid", "fping"): 1}
    # a target known only from an error has no measurement series
    loss_targets = {s.labels["target"] for s in metrics["fping_target_loss_ratio"]}
    assert loss_targets == {"10.0.0.5"}


def test_round_trip_and_delay_variation_histograms():
    registry = Registry()
    registry.ingest(parse_line("[1.0] targetA (10.0.0.1) : [0], 64 bytes, 2.0 ms (2.0 avg, 0% loss)"))
    registry.ingest(parse_line("[2.0] targetA (10.0.0.1) : [1], timed out (2.0 avg, 50% loss)"))
    registry.ingest(parse_line("[3.0] targetA (10.0.0.1) : [2], 64 bytes, 5.0 ms (3.5 avg, 33% loss)"))
    client = make_client(registry)

    metrics = samples_by_name(client.get("/metrics").text)

    assert metrics["fping_icmp_round_trip_time_seconds_count"][0].value == 2
    assert metrics["fping_icmp_round_trip_time_seconds_sum"][0].value == pytest.approx(0.007)
    assert metrics["fping_instantaneous_packet_delay_variation_seconds_count"][0].value == 1
    assert metrics["fping_instantaneous_packet_delay_variation_seconds_sum"][0].value == pytest.approx(0.003)
    assert metrics["fping_icmp_round_trip_time_seconds_count"][0].labels == {
        "target": "targetA",
        "addr": "10.0.0.1",
    }
