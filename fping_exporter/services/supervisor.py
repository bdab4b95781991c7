"""
Owns the fping child process: launch, line ingestion, restart with
exponential backoff, and shutdown.

Lifecycle (published to the registry as ProberState):

    starting -> running -> (exit) -> backing_off -> starting -> ...
    backing_off -> fatal            once the restart budget is used up
    any state   -> shutting_down    once shutdown() is called

Each prober instance gets fresh reader threads for stdout and stderr and a
waiter thread blocked on process exit. All three feed one queue that the
supervisor thread drains, so lines are parsed and applied to the registry
strictly in arrival order and one at a time.
"""

import logging
import queue
import subprocess
import threading
import time
from typing import IO, Callable, List, Optional, Sequence, Tuple

from fping_exporter.config import Settings
from fping_exporter.errors import RestartBudgetExhausted, SpawnFailure
from fping_exporter.models.registry import ProberState
from fping_exporter.models.sample import ParseError, Sample
from fping_exporter.services import prober
from fping_exporter.services.parser import parse_line
from fping_exporter.services.registry import Registry

logger = logging.getLogger(__name__)
prober_logger = logging.getLogger("fping_exporter.prober")

# How long to keep draining output once fping itself has exited.
_DRAIN_TIMEOUT_S = 1.0

# Lines read ahead of ingestion before the reader threads block.
_QUEUE_SIZE = 1024

_Event = Tuple[str, Optional[object]]


class Backoff:
    """
    Exponential restart delay: base, 2*base, 4*base, ... capped at `cap`.

    Every call to next_delay() uses one retry; once `max_retries` are used
    it raises RestartBudgetExhausted. reset() restores both the delay and
    the budget.
    """

    def __init__(self, base: float, cap: float, max_retries: int):
        self.base = base
        self.cap = cap
        self.max_retries = max_retries
        self.attempts = 0

    def next_delay(self) -> float:
        if self.attempts >= self.max_retries:
            raise RestartBudgetExhausted(
                f"fping exited {self.attempts + 1} times in a row without becoming stable"
            )
        delay = min(self.cap, self.base * (2 ** self.attempts))
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


class Supervisor:
    def __init__(
        self,
        settings: Settings,
        registry: Registry,
        binary: Optional[str] = None,
        spawn: Callable[[Sequence[str]], subprocess.Popen] = prober.spawn,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], bool]] = None,
    ):
        self._settings = settings
        self._registry = registry
        self._command = prober.build_command(binary or settings.fping_bin, settings)
        self._spawn = spawn
        self._clock = clock
        self._stop = threading.Event()
        # Returns True when shutdown was requested during the wait.
        self._sleep = sleep or self._stop.wait

        self._backoff = Backoff(
            settings.backoff_base_s,
            settings.backoff_cap_s,
            settings.max_restarts,
        )
        self._lifecycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = ProberState.STARTING
        self._process: Optional[subprocess.Popen] = None
        self._launches = 0

    @property
    def state(self) -> ProberState:
        return self._state

    @property
    def command(self) -> List[str]:
        return list(self._command)

    @property
    def launches(self) -> int:
        """How many fping processes were started so far."""
        return self._launches

    def run(self) -> None:
        """
        Supervise fping until shutdown() is called.

        Raises SpawnFailure if fping cannot be started and
        RestartBudgetExhausted if it keeps dying; the state is `fatal` in
        both cases.
        """
        try:
            self._loop()
        except (SpawnFailure, RestartBudgetExhausted) as exc:
            logger.error("giving up on fping: %s", exc)
            self._set_state(ProberState.FATAL)
            raise
        self._set_state(ProberState.SHUTTING_DOWN)

    def shutdown(self) -> None:
        """Stop restarting and terminate the running fping, if any."""
        self._stop.set()
        self._set_state(ProberState.SHUTTING_DOWN)
        with self._lifecycle_lock:
            process = self._process
            if process is not None:
                code = prober.terminate(process, self._settings.shutdown_grace_s)
                logger.info("fping stopped with code %s", code)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._set_state(ProberState.STARTING)
            process = self._launch()
            if process is None:
                return

            self._set_state(ProberState.RUNNING)
            started = self._clock()
            code = self._consume(process)
            lifetime = self._clock() - started
            if self._stop.is_set():
                return

            logger.warning("fping exited with code %s after %.1fs", code, lifetime)
            if lifetime >= self._settings.stability_threshold:
                self._backoff.reset()

            delay = self._backoff.next_delay()
            self._set_state(ProberState.BACKING_OFF)
            logger.info(
                "restarting fping in %.1fs (attempt %d of %d)",
                delay,
                self._backoff.attempts,
                self._backoff.max_retries,
            )
            if self._sleep(delay):
                return

    def _launch(self) -> Optional[subprocess.Popen]:
        with self._lifecycle_lock:
            if self._stop.is_set():
                return None

            process = self._spawn(self._command)
            self._process = process
            if self._launches == 0:
                self._registry.record_start()
            else:
                self._registry.record_restart()
            self._launches += 1

        logger.info("started fping (pid %s): %s", process.pid, " ".join(self._command))
        return process

    def _consume(self, process: subprocess.Popen) -> Optional[int]:
        events: "queue.Queue[_Event]" = queue.Queue(maxsize=_QUEUE_SIZE)
        abandoned = threading.Event()
        readers = {}

        for name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            if stream is None:
                continue
            readers[name] = threading.Thread(
                target=_pump,
                args=(stream, name, events, abandoned),
                name=f"fping-{name}-{process.pid}",
                daemon=True,
            )
            readers[name].start()

        threading.Thread(
            target=lambda: events.put(("exit", process.wait())),
            name=f"fping-wait-{process.pid}",
            daemon=True,
        ).start()

        open_streams = set(readers)
        exited = False
        code = None
        while open_streams or not exited:
            try:
                # Once fping is gone, only wait briefly for its last lines.
                kind, payload = events.get(timeout=_DRAIN_TIMEOUT_S if exited else None)
            except queue.Empty:
                # Something fping started still holds the pipe open.
                abandoned.set()
                logger.warning(
                    "fping output still open %.1fs after exit, abandoning %s",
                    _DRAIN_TIMEOUT_S,
                    ", ".join(readers[name].name for name in sorted(open_streams)),
                )
                break

            if kind == "exit":
                exited = True
                code = payload
            elif payload is None:
                open_streams.discard(kind)
            else:
                self._ingest(kind, payload)

        return code

    def _ingest(self, stream: str, line: str) -> None:
        if stream == "stderr":
            prober_logger.debug("%s", line.rstrip())

        outcome = parse_line(line)
        if isinstance(outcome, Sample):
            self._registry.ingest(outcome)
        elif isinstance(outcome, ParseError):
            self._registry.record_parse_error()
            logger.debug("unparsable fping line (%s): %r", outcome.reason, outcome.raw)
            if stream == "stderr":
                prober_logger.warning("%s", outcome.raw.rstrip())
        elif outcome.reason == "prober_error":
            prober_logger.warning("%s", outcome.raw)
            self._registry.record_error(outcome.target, "fping")
        else:
            logger.debug("ignored fping line (%s): %r", outcome.reason, outcome.raw)

    def _set_state(self, state: ProberState) -> None:
        with self._state_lock:
            if self._stop.is_set() and state is not ProberState.FATAL:
                state = ProberState.SHUTTING_DOWN
            if state is self._state:
                return
            self._state = state
            self._registry.record_state(state)
        logger.debug("fping state: %s", state.value)


def _pump(stream: IO[str], name: str, events: "queue.Queue[_Event]", abandoned: threading.Event) -> None:
    try:
        for line in stream:
            if not _post(events, (name, line), abandoned):
                return
    finally:
        stream.close()
        _post(events, (name, None), abandoned)


def _post(events: "queue.Queue[_Event]", event: _Event, abandoned: threading.Event) -> bool:
    """Block while the queue is full; give up once the consumer has moved on."""
    while not abandoned.is_set():
        try:
            events.put(event, timeout=_DRAIN_TIMEOUT_S)
            return True
        except queue.Full:
            continue
    return False
