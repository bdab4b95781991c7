from typing import Iterator, List

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    HistogramMetricFamily,
    InfoMetricFamily,
    Metric,
)

from fping_exporter.errors import RenderError
from fping_exporter.models.registry import ProberState, RegistrySnapshot

_TARGET_LABELS = ["target", "addr"]


class SnapshotCollector:
    """prometheus_client collector that reads from one fixed RegistrySnapshot."""

    def __init__(self, snapshot: RegistrySnapshot):
        self.snapshot = snapshot

    def collect(self) -> Iterator[Metric]:
        yield from self._target_metrics()
        yield from self._process_metrics()

    def _target_metrics(self) -> List[Metric]:
        transmitted = GaugeMetricFamily(
            "fping_target_transmitted",
            "ICMP echo requests in the latest interval summary for this target",
            labels=_TARGET_LABELS,
        )
        received = GaugeMetricFamily(
            "fping_target_received",
            "ICMP echo replies in the latest interval summary for this target",
            labels=_TARGET_LABELS,
        )
        loss = GaugeMetricFamily(
            "fping_target_loss_ratio",
            "Packet loss ratio (0-1) of the latest interval summary for this target",
            labels=_TARGET_LABELS,
        )
        rtt = GaugeMetricFamily(
            "fping_target_rtt_seconds",
            "Round-trip time of the latest interval summary, absent when nothing was received",
            labels=_TARGET_LABELS + ["stat"],
        )
        requests = CounterMetricFamily(
            "fping_icmp_request",
            "ICMP ECHO REQUEST sent, summed over fping interval summaries",
            labels=_TARGET_LABELS,
        )
        replies = CounterMetricFamily(
            "fping_icmp_reply",
            "ICMP ECHO REPLY received, summed over fping interval summaries",
            labels=_TARGET_LABELS,
        )
        last_seq = GaugeMetricFamily(
            "fping_last_observed_sequence",
            "Last ICMP sequence number returned by fping",
            labels=_TARGET_LABELS,
        )
        round_trip = HistogramMetricFamily(
            "fping_icmp_round_trip_time_seconds",
            "ICMP echo round-trip time of single probe replies",
            labels=_TARGET_LABELS,
        )
        delay_variation = HistogramMetricFamily(
            "fping_instantaneous_packet_delay_variation_seconds",
            "Packet delay variation between two successive probe replies",
            labels=_TARGET_LABELS,
        )
        errors = CounterMetricFamily(
            "fping_errors",
            "Errors reported by fping, by type (fping or icmp)",
            labels=["target", "type"],
        )

        for name in sorted(self.snapshot.targets):
            state = self.snapshot.targets[name]
            labels = [state.target, state.addr or ""]

            for error_type in sorted(state.errors):
                errors.add_metric([state.target, error_type], state.errors[error_type])

            sample = state.current
            if sample is None:
                continue

            transmitted.add_metric(labels, sample.transmitted)
            received.add_metric(labels, sample.received)
            loss.add_metric(labels, sample.loss)
            if sample.has_rtt:
                rtt.add_metric(labels + ["min"], sample.rtt_min_ms / 1000.0)
                rtt.add_metric(labels + ["avg"], sample.rtt_avg_ms / 1000.0)
                rtt.add_metric(labels + ["max"], sample.rtt_max_ms / 1000.0)
            requests.add_metric(labels, state.transmitted_total)
            replies.add_metric(labels, state.received_total)
            if state.last_seq is not None:
                last_seq.add_metric(labels, state.last_seq)
            if state.rtt_count:
                round_trip.add_metric(labels, [("+Inf", state.rtt_count)], state.rtt_sum_seconds)
            if state.ipdv_count:
                delay_variation.add_metric(labels, [("+Inf", state.ipdv_count)], state.ipdv_sum_seconds)

        return [
            transmitted,
            received,
            loss,
            rtt,
            requests,
            replies,
            last_seq,
            round_trip,
            delay_variation,
            errors,
        ]

    def _process_metrics(self) -> Iterator[Metric]:
        snapshot = self.snapshot

        yield CounterMetricFamily(
            "fping_exporter_samples_ingested",
            "Samples parsed from fping output and applied to the registry",
            value=snapshot.samples_ingested,
        )
        yield CounterMetricFamily(
            "fping_exporter_parse_errors",
            "fping output lines that could not be parsed",
            value=snapshot.parse_errors,
        )
        yield CounterMetricFamily(
            "fping_exporter_prober_restarts",
            "Times the fping process was restarted after exiting",
            value=snapshot.restarts,
        )
        yield GaugeMetricFamily(
            "fping_exporter_prober_start_time_seconds",
            "Unix time the current fping process was started",
            value=snapshot.prober_started_at or 0.0,
        )
        yield GaugeMetricFamily(
            "fping_exporter_prober_uptime_seconds",
            "Seconds the current fping process has been running",
            value=snapshot.prober_uptime_seconds,
        )

        state = GaugeMetricFamily(
            "fping_exporter_prober_state",
            "Lifecycle state of the fping process (1 for the current state)",
            labels=["state"],
        )
        for candidate in ProberState:
            state.add_metric([candidate.value], 1.0 if candidate is snapshot.prober_state else 0.0)
        yield state

        if snapshot.prober_version is not None:
            yield InfoMetricFamily(
                "fping_exporter_prober",
                "Version of the fping binary in use",
                value={"version": snapshot.prober_version},
            )


def render(snapshot: RegistrySnapshot) -> bytes:
    """Render a snapshot in the Prometheus text exposition format."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(SnapshotCollector(snapshot))
    try:
        return generate_latest(registry)
    except (ValueError, TypeError) as exc:
        raise RenderError(f"failed to render metrics: {exc}") from exc
