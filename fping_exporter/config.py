import argparse
import os
from functools import lru_cache
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from fping_exporter.errors import ConfigurationError


def _split_list(raw: Optional[str]) -> List[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


class Settings(BaseModel):
    # fping
    fping_bin: str = Field(
        default="fping",
        description="Path or name of the fping executable (env FPING_BIN).",
    )
    targets: List[str] = Field(
        default_factory=list,
        description="Hostnames or IPs to ping, passed to fping as trailing arguments.",
    )
    period_ms: int = Field(
        default=1000,
        ge=1,
        description="Interval between pings to one target in milliseconds (fping -p).",
    )
    summary_interval_s: int = Field(
        default=10,
        ge=1,
        description="Seconds between interval summaries (fping -Q).",
    )
    version_timeout_s: float = Field(
        default=2.0,
        gt=0,
        description="How long `fping --version` may take before the binary is rejected.",
    )

    # Scrape endpoint
    metrics_host: str = Field(default="0.0.0.0")
    metrics_port: int = Field(default=9775, ge=1, le=65535)
    metrics_path: str = Field(default="/metrics")

    # Restart policy
    backoff_base_s: float = Field(default=1.0, gt=0)
    backoff_cap_s: float = Field(default=30.0, gt=0)
    max_restarts: int = Field(
        default=5,
        ge=0,
        description="Consecutive unstable restarts allowed before giving up.",
    )
    stability_threshold_s: Optional[float] = Field(
        default=None,
        gt=0,
        description="Uptime after which a prober counts as stable; defaults to the backoff cap.",
    )

    # Shutdown
    shutdown_grace_s: float = Field(
        default=5.0,
        ge=0,
        description="Time fping gets to exit after SIGTERM before it is killed.",
    )
    shutdown_timeout_s: float = Field(
        default=10.0,
        ge=0,
        description="Upper bound for draining in-flight scrape requests.",
    )
    runtime_limit_s: Optional[float] = Field(
        default=None,
        gt=0,
        description="Stop the exporter gracefully after this many seconds.",
    )

    log_level: str = Field(default="INFO")

    @field_validator("targets")
    @classmethod
    def _check_targets(cls, targets: List[str]) -> List[str]:
        for target in targets:
            if not target or any(ch.isspace() for ch in target):
                raise ValueError(f"invalid target {target!r}")
            if target.startswith("-"):
                raise ValueError(f"target {target!r} would be read as an fping flag")
        return targets

    @field_validator("metrics_path")
    @classmethod
    def _check_path(cls, path: str) -> str:
        path = path.strip().strip("/")
        if not path:
            raise ValueError("metrics_path must not be empty or '/'")
        return "/" + path

    @model_validator(mode="after")
    def _check_backoff(self) -> "Settings":
        if self.backoff_cap_s < self.backoff_base_s:
            raise ValueError("backoff_cap_s must not be smaller than backoff_base_s")
        return self

    @property
    def stability_threshold(self) -> float:
        if self.stability_threshold_s is not None:
            return self.stability_threshold_s
        return self.backoff_cap_s

    @classmethod
    def from_env(cls) -> "Settings":
        # Only variables that are actually set override the defaults.
        env_map = {
            "FPING_BIN": "fping_bin",
            "FPING_PERIOD_MS": "period_ms",
            "FPING_SUMMARY_INTERVAL_S": "summary_interval_s",
            "VERSION_TIMEOUT_S": "version_timeout_s",
            "METRICS_HOST": "metrics_host",
            "METRICS_PORT": "metrics_port",
            "METRICS_PATH": "metrics_path",
            "BACKOFF_BASE_S": "backoff_base_s",
            "BACKOFF_CAP_S": "backoff_cap_s",
            "MAX_RESTARTS": "max_restarts",
            "STABILITY_THRESHOLD_S": "stability_threshold_s",
            "SHUTDOWN_GRACE_S": "shutdown_grace_s",
            "SHUTDOWN_TIMEOUT_S": "shutdown_timeout_s",
            "RUNTIME_LIMIT_S": "runtime_limit_s",
            "LOG_LEVEL": "log_level",
        }
        values = {
            field: os.environ[var]
            for var, field in env_map.items()
            if os.environ.get(var)
        }
        values["targets"] = _split_list(os.getenv("FPING_TARGETS"))
        return cls(**values)


def load_settings(argv: Optional[Sequence[str]] = None) -> Settings:
    """
    Build Settings from the environment, with positional command line
    targets taking precedence over FPING_TARGETS.

    Raises ConfigurationError for any invalid value or an empty target list.
    """
    parser = argparse.ArgumentParser(
        prog="fping-exporter",
        description="Export fping loop-mode measurements as Prometheus metrics.",
    )
    parser.add_argument("targets", nargs="*", metavar="TARGET", help="hostname or ip address to ping")
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env()
        if args.targets:
            settings = Settings(**{**settings.model_dump(), "targets": args.targets})
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration: {exc}") from exc

    if not settings.targets:
        raise ConfigurationError("no targets configured; pass them as arguments or via FPING_TARGETS")
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
