"""
Translate single lines of `fping -l -D -Q` output into ParseOutcome values.

Every function here is pure: one line in, one outcome out, no I/O and no
state kept between calls. Unknown or malformed input is reported as a
ParseError value and never raised, because fping's output differs slightly
between versions and flags.
"""

import math
import re
import time
from typing import Optional, Union

from pydantic import ValidationError

from fping_exporter.models.sample import Ignored, ParseError, ParseOutcome, Sample

# Shared prefix: optional "-D" timestamp, the target and an optional "(addr)".
_HOST = r"""
    ^(?:\[[^\]]*\]\s+)?               # [1611765997.71135]
    (?P<target>\S+)                   # dns.google
    (?:\s+\((?P<addr>[^)\s]+)\))?     # (8.8.8.8)
    \s+:\s+
"""

# "[ts] localhost (127.0.0.1) : [9], 64 bytes, 0.029 ms (0.040 avg, 0% loss)"
# "[ts] localhost (127.0.0.1) : [3], timed out (NaN avg, 100% loss)"
_PROBE_PATTERN = re.compile(
    _HOST
    + r"""
    \[(?P<seq>[^\]]*)\],\s+
    (?:
        (?P<timeout>timed\ out)
      | \S+\ bytes,\s+(?P<rtt>\S+)\ ms
    )
    (?:\s.*)?$
    """,
    re.VERBOSE,
)

# "[ts] localhost (127.0.0.1) : duplicate for [3], 64 bytes, 0.1 ms"
_DUPLICATE_PATTERN = re.compile(_HOST + r"duplicate\ for\ \[", re.VERBOSE)

# "dns.google (8.8.4.4) : xmt/rcv/%loss = 104/104/0%, min/avg/max = 10.5/18.6/77.9"
_SUMMARY_PATTERN = re.compile(
    _HOST
    + r"""
    xmt/rcv/%loss\s*=\s*
    (?P<xmt>[^/\s]+)/(?P<rcv>[^/\s]+)/(?P<pct>[^%\s]+)%
    (?:,\s*min/avg/max\s*=\s*(?P<min>[^/\s]+)/(?P<avg>[^/\s]+)/(?P<max>[^/\s]+))?
    \s*$
    """,
    re.VERBOSE,
)

# "ICMP Host Unreachable from 10.0.0.1 for ICMP Echo sent to 10.0.0.5"
_ICMP_ERROR_PATTERN = re.compile(
    r"""
    ^(?:\[[^\]]*\]\s+)?
    (?P<error>.+?)
    \ from\ (?P<source>\S+)
    \ for\ ICMP\ Echo\ sent\ to
    \ (?P<target>\S+)
    (?:\s+\((?P<addr>[^)\s]+)\))?
    \s*$
    """,
    re.VERBOSE,
)

# "10.0.0.5 is unreachable"
_UNREACHABLE_PATTERN = re.compile(
    r"^(?P<target>\S+)(?:\s+\((?P<addr>[^)\s]+)\))?\s+is\s+unreachable\s*$"
)

# Summary header printed before each -Q batch: "[16:55:13]"
_LOCAL_TIME_PATTERN = re.compile(r"^\[[^\]]*\]$")

# "dns.invalid: Name or service not known"
_PROBER_ERROR_PATTERN = re.compile(r"^(?P<target>\S+):\s(?P<message>.+)$")


# int()/float() also take "1_0", "1e3", "inf" and non-ASCII digits.
_INT_TEXT = re.compile(r"[0-9]+")
_FLOAT_TEXT = re.compile(r"[0-9]+(?:\.[0-9]+)?")


def _to_int(text: str) -> int:
    if not _INT_TEXT.fullmatch(text):
        raise ValueError(f"not a count {text!r}")
    return int(text)


def _to_float(text: str) -> float:
    if not _FLOAT_TEXT.fullmatch(text):
        raise ValueError(f"not a usable number {text!r}")
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"not a usable number {text!r}")
    return value


def _parse_probe(match: "re.Match[str]", line: str, observed_at: float) -> ParseOutcome:
    try:
        seq = _to_int(match.group("seq"))
        rtt = None if match.group("timeout") else _to_float(match.group("rtt"))
    except ValueError:
        return ParseError(reason="invalid_number", raw=line)

    return Sample(
        target=match.group("target"),
        addr=match.group("addr"),
        source="probe",
        transmitted=1,
        received=0 if rtt is None else 1,
        loss=1.0 if rtt is None else 0.0,
        rtt_min_ms=rtt,
        rtt_avg_ms=rtt,
        rtt_max_ms=rtt,
        seq=seq,
        observed_at=observed_at,
    )


def _parse_summary(match: "re.Match[str]", line: str, observed_at: float) -> ParseOutcome:
    try:
        transmitted = _to_int(match.group("xmt"))
        received = _to_int(match.group("rcv"))
        loss_percent = _to_float(match.group("pct"))
        if match.group("min") is not None:
            rtt_min = _to_float(match.group("min"))
            rtt_avg = _to_float(match.group("avg"))
            rtt_max = _to_float(match.group("max"))
        else:
            rtt_min = rtt_avg = rtt_max = None
    except ValueError:
        return ParseError(reason="invalid_number", raw=line)

    if received > transmitted or loss_percent > 100.0:
        return ParseError(reason="inconsistent_counts", raw=line)
    if rtt_avg is not None and not (rtt_min <= rtt_avg <= rtt_max):
        return ParseError(reason="rtt_order", raw=line)

    return Sample(
        target=match.group("target"),
        addr=match.group("addr"),
        source="summary",
        transmitted=transmitted,
        received=received,
        loss=loss_percent / 100.0,
        rtt_min_ms=rtt_min,
        rtt_avg_ms=rtt_avg,
        rtt_max_ms=rtt_max,
        observed_at=observed_at,
    )


def _unreachable(target: str, addr: Optional[str], observed_at: float, error: Optional[str] = None) -> Sample:
    return Sample(
        target=target,
        addr=addr,
        source="probe",
        transmitted=1,
        received=0,
        loss=1.0,
        error=error,
        observed_at=observed_at,
    )


def parse_line(raw: Union[str, bytes], observed_at: Optional[float] = None) -> ParseOutcome:
    """
    Parse one line of fping output.

    `observed_at` defaults to time.monotonic(); pass a fixed value to get a
    fully deterministic result.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if observed_at is None:
        observed_at = time.monotonic()

    line = raw.strip()
    if not line:
        return ParseError(reason="empty", raw=raw)

    try:
        if _LOCAL_TIME_PATTERN.match(line):
            return Ignored(reason="local_time", raw=line)

        match = _PROBE_PATTERN.match(line)
        if match:
            return _parse_probe(match, line, observed_at)

        match = _DUPLICATE_PATTERN.match(line)
        if match:
            return Ignored(reason="duplicate", raw=line, target=match.group("target"))

        match = _SUMMARY_PATTERN.match(line)
        if match:
            return _parse_summary(match, line, observed_at)

        match = _ICMP_ERROR_PATTERN.match(line)
        if match:
            return _unreachable(
                match.group("target"),
                match.group("addr"),
                observed_at,
                error=f"{match.group('error')} from {match.group('source')}",
            )

        match = _UNREACHABLE_PATTERN.match(line)
        if match:
            return _unreachable(match.group("target"), match.group("addr"), observed_at)

        match = _PROBER_ERROR_PATTERN.match(line)
        if match:
            return Ignored(reason="prober_error", raw=line, target=match.group("target"))
    except ValidationError:
        # The shape matched but the fields break a Sample invariant.
        return ParseError(reason="invalid_sample", raw=line)

    return ParseError(reason="unrecognized", raw=line)
