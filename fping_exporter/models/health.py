from typing import Literal, Optional

from pydantic import BaseModel, Field

from fping_exporter.models.registry import ProberState


class HealthStatus(BaseModel):
    """Summary of the exporter's own state, served on /health."""

    status: Literal["ok", "failed"] = Field(
        ...,
        description="'failed' once fping could not be kept running.",
    )
    prober_state: ProberState
    prober_version: Optional[str] = None
    prober_uptime_seconds: float = Field(..., ge=0)
    restarts: int = Field(..., ge=0)
    samples_ingested: int = Field(..., ge=0)
    parse_errors: int = Field(..., ge=0)
    targets: int = Field(
        ...,
        ge=0,
        description="Number of targets with at least one sample.",
    )
