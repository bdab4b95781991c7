import logging
import os
import re
import shutil
import subprocess
from typing import List, Optional, Sequence

import psutil

from fping_exporter.config import Settings
from fping_exporter.errors import SpawnFailure

logger = logging.getLogger(__name__)

# "fping: Version 5.0" / "/usr/sbin/fping: Version 4.2.1"
_VERSION_PATTERN = re.compile(r"^.+: Version (\d+)\.(\d+)(?:\.(\d+))?", re.MULTILINE)

# fping exits with 4 when it cannot run at all (e.g. missing /etc/protocols)
_EXIT_DEPENDENCIES_MISSING = 4


def resolve_binary(program: str) -> str:
    """
    Resolve FPING_BIN to an absolute, executable path.

    Raises SpawnFailure if the program cannot be found or is not executable.
    """
    resolved = shutil.which(program)
    if resolved is None:
        if os.path.exists(program):
            raise SpawnFailure(f"{program} exists but is not executable")
        raise SpawnFailure(
            f"fping binary {program!r} not found; install fping or point FPING_BIN at it"
        )
    return resolved


def read_version(binary: str, timeout: float) -> str:
    """
    Run `fping --version` and return the version as "major.minor.patch".

    Anything that does not answer like fping within `timeout` seconds is
    rejected with SpawnFailure.
    """
    try:
        result = subprocess.run(
            [binary, "--version"],
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except OSError as exc:
        raise SpawnFailure(f"cannot execute {binary}: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise SpawnFailure(
            f"{binary} --version did not exit within {timeout}s; "
            "make sure FPING_BIN points to fping"
        ) from exc
    except subprocess.CalledProcessError as exc:
        if exc.returncode == _EXIT_DEPENDENCIES_MISSING:
            raise SpawnFailure(f"{binary} reports missing runtime dependencies: {exc.stderr}") from exc
        raise SpawnFailure(f"{binary} --version failed with return code {exc.returncode}") from exc

    match = _VERSION_PATTERN.search(result.stdout) or _VERSION_PATTERN.search(result.stderr)
    if not match:
        raise SpawnFailure(f"could not parse fping version from {result.stdout.strip()!r}")

    major, minor, patch = match.groups()
    return f"{int(major)}.{int(minor)}.{int(patch or 0)}"


def build_command(binary: str, settings: Settings) -> List[str]:
    """Loop mode with -D timestamps, -Q interval summaries and the targets last."""
    return [
        binary,
        "-l",
        "-D",
        "-p",
        str(settings.period_ms),
        "-Q",
        str(settings.summary_interval_s),
        *settings.targets,
    ]


def spawn(argv: Sequence[str]) -> subprocess.Popen:
    """
    Start fping with line-buffered text pipes for stdout and stderr.

    The child gets its own session so a terminal Ctrl-C reaches only the
    exporter, which then stops fping itself.
    """
    try:
        return subprocess.Popen(
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
            start_new_session=True,
        )
    except OSError as exc:
        raise SpawnFailure(f"cannot start {argv[0]}: {exc}") from exc


def terminate(process: subprocess.Popen, grace_seconds: float) -> Optional[int]:
    """
    Ask the process to stop with SIGTERM and kill it (and anything it
    spawned) if it is still alive after `grace_seconds`.
    """
    if process.poll() is not None:
        return process.returncode

    process.terminate()
    try:
        return process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning(
            "fping (pid %s) ignored SIGTERM for %.1fs, killing it", process.pid, grace_seconds
        )

    _kill_children(process.pid)
    process.kill()
    return process.wait()


def _kill_children(pid: int) -> None:
    try:
        children = psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return

    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            continue
