from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

SampleKind = Literal["probe", "summary"]


class Sample(BaseModel):
    """One observation for a single target, as reported by fping."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["sample"] = "sample"
    target: str = Field(
        ...,
        min_length=1,
        description="Target exactly as fping prints it, e.g. dns.google or 8.8.8.8",
    )
    addr: Optional[str] = Field(
        None,
        description="Resolved address fping prints in parentheses, if any.",
    )
    source: SampleKind = Field(
        ...,
        description="'probe' for a single echo result, 'summary' for an interval summary.",
    )
    transmitted: int = Field(..., ge=0, description="Echo requests sent.")
    received: int = Field(..., ge=0, description="Echo replies received.")
    loss: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Loss ratio between 0.0 (no loss) and 1.0 (everything lost).",
    )
    rtt_min_ms: Optional[float] = Field(None, ge=0.0)
    rtt_avg_ms: Optional[float] = Field(None, ge=0.0)
    rtt_max_ms: Optional[float] = Field(None, ge=0.0)
    seq: Optional[int] = Field(
        None,
        ge=0,
        description="ICMP sequence number, only set for probe results.",
    )
    error: Optional[str] = Field(
        None,
        description="ICMP error reported instead of a reply (e.g. 'ICMP Host Unreachable').",
    )
    observed_at: float = Field(
        ...,
        description="Monotonic clock reading taken when the line was parsed.",
    )

    @model_validator(mode="after")
    def _check_consistency(self) -> "Sample":
        if self.received > self.transmitted:
            raise ValueError("received must not exceed transmitted")

        rtts = (self.rtt_min_ms, self.rtt_avg_ms, self.rtt_max_ms)
        present = [value is not None for value in rtts]
        if any(present) and not all(present):
            raise ValueError("rtt min/avg/max must be given together")
        if all(present) and not (rtts[0] <= rtts[1] <= rtts[2]):
            raise ValueError("rtt values must satisfy min <= avg <= max")
        return self

    @property
    def has_rtt(self) -> bool:
        return self.rtt_avg_ms is not None


class Ignored(BaseModel):
    """A line fping is known to print that carries no measurement."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["ignored"] = "ignored"
    reason: str = Field(..., description="Why the line was skipped, e.g. 'duplicate'.")
    raw: str
    target: Optional[str] = None


class ParseError(BaseModel):
    """A line that matched no known shape or carried malformed fields."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["error"] = "error"
    reason: str = Field(..., description="Short tag, e.g. 'unrecognized' or 'invalid_number'.")
    raw: str


ParseOutcome = Union[Sample, Ignored, ParseError]
