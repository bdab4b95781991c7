import threading
import time
from typing import Callable, Dict, Optional

from fping_exporter.models.registry import ProberState, RegistrySnapshot, TargetState
from fping_exporter.models.sample import Sample


class Registry:
    """
    Thread-safe store of the latest per-target measurements and the
    exporter-wide counters.

    Only the supervisor writes; everyone else reads through snapshot(). All
    TargetState values are immutable and replaced on write, so both the write
    path and snapshot() hold the lock only for a dict assignment or a shallow
    dict copy.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._targets: Dict[str, TargetState] = {}
        self._samples_ingested = 0
        self._parse_errors = 0
        self._restarts = 0
        self._prober_started_at: Optional[float] = None
        self._prober_state = ProberState.STARTING
        self._prober_version: Optional[str] = None

    def ingest(self, sample: Sample) -> None:
        with self._lock:
            previous = self._targets.get(sample.target)
            self._targets[sample.target] = _merge(previous, sample)
            self._samples_ingested += 1

    def record_parse_error(self) -> None:
        with self._lock:
            self._parse_errors += 1

    def record_error(self, target: str, error_type: str) -> None:
        """Count an error fping reported for `target` without a sample to go with it."""
        with self._lock:
            previous = self._targets.get(target) or TargetState(target=target)
            self._targets[target] = previous.model_copy(
                update={"errors": _count_error(previous.errors, error_type)}
            )

    def record_start(self) -> None:
        """Mark the launch of the first prober process (not a restart)."""
        now = self._clock()
        with self._lock:
            self._prober_started_at = now

    def record_restart(self) -> None:
        now = self._clock()
        with self._lock:
            self._restarts += 1
            self._prober_started_at = now

    def record_state(self, state: ProberState) -> None:
        with self._lock:
            self._prober_state = state

    def record_version(self, version: str) -> None:
        with self._lock:
            self._prober_version = version

    def snapshot(self) -> RegistrySnapshot:
        with self._lock:
            targets = dict(self._targets)
            samples_ingested = self._samples_ingested
            parse_errors = self._parse_errors
            restarts = self._restarts
            started_at = self._prober_started_at
            state = self._prober_state
            version = self._prober_version

        # Built outside the lock; every value copied above is immutable.
        return RegistrySnapshot(
            targets=targets,
            samples_ingested=samples_ingested,
            parse_errors=parse_errors,
            restarts=restarts,
            prober_started_at=started_at,
            prober_state=state,
            prober_version=version,
            taken_at=self._clock(),
        )


def _merge(previous: Optional[TargetState], sample: Sample) -> TargetState:
    if previous is None:
        previous = TargetState(target=sample.target)

    update = {
        "latest": sample,
        "addr": sample.addr or previous.addr,
    }
    if sample.source == "summary":
        update["last_summary"] = sample
        update["transmitted_total"] = previous.transmitted_total + sample.transmitted
        update["received_total"] = previous.received_total + sample.received
    else:
        if sample.seq is not None:
            update["last_seq"] = sample.seq
        if sample.has_rtt:
            rtt = sample.rtt_avg_ms
            update["rtt_count"] = previous.rtt_count + 1
            update["rtt_sum_seconds"] = previous.rtt_sum_seconds + rtt / 1000.0
            # Delay variation between this reply and the previous one.
            if previous.last_reply_rtt_ms is not None:
                update["ipdv_count"] = previous.ipdv_count + 1
                update["ipdv_sum_seconds"] = (
                    previous.ipdv_sum_seconds + abs(rtt - previous.last_reply_rtt_ms) / 1000.0
                )
            update["last_reply_rtt_ms"] = rtt
        if sample.error is not None:
            update["errors"] = _count_error(previous.errors, "icmp")

    return previous.model_copy(update=update)


def _count_error(errors: Dict[str, int], error_type: str) -> Dict[str, int]:
    counts = dict(errors)
    counts[error_type] = counts.get(error_type, 0) + 1
    return counts
