from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from fping_exporter.models.sample import Sample


class ProberState(str, Enum):
    """Lifecycle states of the supervised fping process."""

    STARTING = "starting"
    RUNNING = "running"
    BACKING_OFF = "backing_off"
    FATAL = "fatal"
    SHUTTING_DOWN = "shutting_down"


class TargetState(BaseModel):
    """Everything the registry knows about one target."""

    model_config = ConfigDict(frozen=True)

    target: str
    addr: Optional[str] = None
    latest: Optional[Sample] = Field(
        None,
        description="Most recent sample of any kind; unset while only errors were seen.",
    )
    last_summary: Optional[Sample] = Field(
        None,
        description="Most recent interval summary, if one was seen yet.",
    )
    transmitted_total: int = Field(
        0,
        ge=0,
        description="Echo requests sent, summed over all interval summaries.",
    )
    received_total: int = Field(
        0,
        ge=0,
        description="Echo replies received, summed over all interval summaries.",
    )
    last_seq: Optional[int] = Field(
        None,
        description="Last ICMP sequence number reported by a probe line.",
    )
    errors: Dict[str, int] = Field(
        default_factory=dict,
        description="Error counts by type: 'fping' for fping messages, 'icmp' for ICMP errors.",
    )

    # Probe replies, kept as histogram sum/count pairs
    rtt_count: int = Field(0, ge=0)
    rtt_sum_seconds: float = Field(0.0, ge=0.0)
    ipdv_count: int = Field(0, ge=0)
    ipdv_sum_seconds: float = Field(0.0, ge=0.0)
    last_reply_rtt_ms: Optional[float] = Field(
        None,
        description="RTT of the previous probe reply, the base for the next delay variation.",
    )

    @property
    def current(self) -> Optional[Sample]:
        """The latest interval summary, or the latest probe result before the first summary."""
        return self.last_summary or self.latest


class RegistrySnapshot(BaseModel):
    """Immutable point-in-time copy of the registry."""

    model_config = ConfigDict(frozen=True)

    targets: Dict[str, TargetState] = Field(default_factory=dict)
    samples_ingested: int = Field(0, ge=0)
    parse_errors: int = Field(0, ge=0)
    restarts: int = Field(0, ge=0)
    prober_started_at: Optional[float] = Field(
        None,
        description="Unix time the current fping process was launched.",
    )
    prober_state: ProberState = ProberState.STARTING
    prober_version: Optional[str] = None
    taken_at: float = Field(..., description="Unix time the snapshot was taken.")

    @property
    def prober_uptime_seconds(self) -> float:
        if self.prober_started_at is None:
            return 0.0
        return max(0.0, self.taken_at - self.prober_started_at)
