"""
probe_simulator.py

Small HTTP service that mimics orchestrator health-check semantics so that
liveness, readiness and startup probes (and the tooling that reacts to them)
can be exercised on demand.

Features:
- Simulates a slow startup on a background thread (CPU-bound prime counting
  capped at 60s, or a plain sleep), then writes a completion marker file.
- /liveness-health and /readiness-health answer according to startup progress
  and two failure toggles that can be flipped at runtime.
- Records the first time startup completed and the first healthy liveness
  check, served as JSON from /timestamps.
- Serves a small HTML dashboard on / with toggles and live indicators.

Env vars:
- PRIME_NUMBER_COUNT or PS_STARTUP_UNITS  (required, primes to find / seconds to sleep)
- PS_STARTUP_MODE                        (default: primes)
- PS_HOST                                (default: all interfaces)
- PS_PORT                                (default: 8080)
- PS_MARKER_PATH                         (default: /tmp/startup-file)
- PS_JSON_LOGS                           (default: false)
- PS_LOG_LEVEL                           (default: INFO)
"""

import json
import logging
import sys
import threading
import time
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from string import Template
from typing import Any, Callable, Dict, NamedTuple, Optional
from urllib.parse import urlsplit

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


# =========================
# Settings
# =========================

class ProbeSettings(BaseSettings):
    startup_units: int = Field(
        validation_alias=AliasChoices("PS_STARTUP_UNITS", "PRIME_NUMBER_COUNT"),
        ge=0,
    )
    startup_mode: str = "primes"
    host: str = ""
    port: int = Field(default=8080, ge=0, le=65535)
    marker_path: str = "/tmp/startup-file"
    json_logs: bool = False
    log_level: str = "INFO"

    class Config:
        env_prefix = "PS_"

    @field_validator("startup_mode")
    @classmethod
    def known_startup_mode(cls, v: str) -> str:
        mode = v.strip().lower()
        if mode not in STARTUP_MODES:
            raise ValueError(f"startup_mode must be one of {sorted(STARTUP_MODES)}, got {v!r}")
        return mode

    @field_validator("marker_path")
    @classmethod
    def must_not_be_empty(cls, v: str, info):
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} must not be empty")
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {v!r}")
        return level


# =========================
# Constants
# =========================

STARTUP_MODE_PRIMES = "primes"
STARTUP_MODE_SLEEP = "sleep"
STARTUP_MODES = {STARTUP_MODE_PRIMES, STARTUP_MODE_SLEEP}

STARTUP_TIME_LIMIT_SECONDS = 60
LIVENESS_FAILURE_DELAY_SECONDS = 2.0

PROBE_STARTUP = "startupProbe"
PROBE_LIVENESS = "livenessProbe"

TOGGLE_LIVENESS = "liveness"
TOGGLE_READINESS = "readiness"

STATUS_STARTING = "starting"
STATUS_UP = "up"
STATUS_DOWN = "down"
STATUS_NOT_READY = "not ready"
STATUS_READY = "ready"

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


# =========================
# Logging
# =========================

_RECORD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).strftime(TIMESTAMP_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(json_logs: bool = False, level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    handler = logging.StreamHandler(sys.stderr)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)


# =========================
# Probe state
# =========================

class ProbeClock:
    """First-seen timestamps per probe name. A key, once written, never changes."""

    def __init__(self, now: Callable[[], datetime] = datetime.now):
        self._now = now
        self._lock = threading.Lock()
        self._timestamps: Dict[str, datetime] = {}

    def record_first_occurrence(self, name: str) -> bool:
        """Store the current time for ``name`` unless already present. Returns True if stored."""
        with self._lock:
            if name in self._timestamps:
                return False
            self._timestamps[name] = self._now()
            return True

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return {name: ts.strftime(TIMESTAMP_FORMAT) for name, ts in self._timestamps.items()}


class AtomicFlag:
    """Boolean with atomic read-modify-write."""

    def __init__(self, initial: bool = False):
        self._lock = threading.Lock()
        self._value = initial

    def is_set(self) -> bool:
        with self._lock:
            return self._value

    def flip(self) -> bool:
        """Invert the flag and return the new value."""
        with self._lock:
            self._value = not self._value
            return self._value


class ProbeState:
    """
    Everything the probes answer from, shared by request threads and the
    startup task.

    The two failure flags and the startup event are independent: a reader may
    see a toggle flipped while startup is still running.
    """

    def __init__(self, clock: Optional[ProbeClock] = None):
        self.clock = clock or ProbeClock()
        self.startup_complete = threading.Event()
        self._startup_lock = threading.Lock()
        self._toggles: Dict[str, AtomicFlag] = {
            TOGGLE_LIVENESS: AtomicFlag(),
            TOGGLE_READINESS: AtomicFlag(),
        }

    def _flag(self, which: str) -> AtomicFlag:
        try:
            return self._toggles[which]
        except KeyError:
            raise ValueError(f"unknown failure toggle {which!r}") from None

    def toggle(self, which: str) -> str:
        """Flip a failure toggle and return "activated" or "deactivated"."""
        active = self._flag(which).flip()
        state = "activated" if active else "deactivated"
        logger.info(f"Simulated {which} failure {state}.")
        return state

    def is_active(self, which: str) -> bool:
        return self._flag(which).is_set()

    def is_started(self) -> bool:
        return self.startup_complete.is_set()

    def mark_startup_complete(self) -> bool:
        """Set the startup flag. Returns False if it was already set."""
        with self._startup_lock:
            if self.startup_complete.is_set():
                return False
            self.startup_complete.set()
        self.clock.record_first_occurrence(PROBE_STARTUP)
        return True


# =========================
# Startup simulation
# =========================

def is_prime(n: int) -> bool:
    """Trial division; intentionally naive to burn CPU."""
    if n < 2:
        return False
    i = 2
    while i * i <= n:
        if n % i == 0:
            return False
        i += 1
    return True


def count_primes(
    limit: int,
    time_limit: float = STARTUP_TIME_LIMIT_SECONDS,
    monotonic: Callable[[], float] = time.monotonic,
) -> int:
    """Find up to ``limit`` primes, giving up once ``time_limit`` seconds have passed."""
    start = monotonic()
    count = 0
    num = 2
    while count < limit:
        if is_prime(num):
            count += 1
            logger.debug(f"Count: {count}")
        if monotonic() - start > time_limit:
            logger.warning(
                f"Startup computation hit the {time_limit}s limit after {count}/{limit} primes."
            )
            break
        num += 1
    return count


def write_marker(path: str, completed_at: datetime) -> None:
    Path(path).write_text(f"Startup complete at {completed_at.strftime(TIMESTAMP_FORMAT)}")


class StartupTask:
    """
    One-shot background startup simulation.

    Phases: not started -> running -> complete. On completion the task marks
    the probe state as started, records the startupProbe timestamp and writes
    the marker file. A marker that cannot be written is fatal and is handed to
    ``on_fatal``; there are no retries.
    """

    NOT_STARTED = "not started"
    RUNNING = "running"
    COMPLETE = "complete"

    def __init__(
        self,
        state: ProbeState,
        units: int,
        marker_path: str,
        on_fatal: Callable[[BaseException], None],
        mode: str = STARTUP_MODE_PRIMES,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if mode not in STARTUP_MODES:
            raise ValueError(f"unknown startup mode {mode!r}")
        self.state = state
        self.units = units
        self.marker_path = marker_path
        self.mode = mode
        self.phase = self.NOT_STARTED
        self._on_fatal = on_fatal
        self._sleep = sleep
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> threading.Thread:
        """Launch the task on a daemon thread and return without waiting."""
        with self._lock:
            if self.phase != self.NOT_STARTED:
                raise RuntimeError("startup task can only be started once")
            self.phase = self.RUNNING
            self._thread = threading.Thread(target=self._run, name="startup-task", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _simulate(self) -> None:
        if self.mode == STARTUP_MODE_SLEEP:
            logger.info(f"Simulating startup: sleeping {self.units}s.")
            self._sleep(self.units)
        else:
            logger.info(f"Simulating startup: counting {self.units} primes.")
            found = count_primes(self.units)
            logger.info(f"Found {found} primes.")

    def _run(self) -> None:
        started = time.monotonic()
        self._simulate()

        self.state.mark_startup_complete()
        try:
            write_marker(self.marker_path, datetime.now())
        except OSError as exc:
            logger.critical(f"Failed to create startup complete file {self.marker_path}: {exc}")
            self._on_fatal(exc)
            return
        finally:
            self.phase = self.COMPLETE

        logger.info(
            f"Startup complete after {time.monotonic() - started:.1f}s; marker written to {self.marker_path}."
        )


# =========================
# Probe evaluation
# =========================

class ProbeResult(NamedTuple):
    status: str
    http_status: int
    delay: float = 0.0


def _liveness_status(state: ProbeState, failure_delay: float = LIVENESS_FAILURE_DELAY_SECONDS) -> ProbeResult:
    """Liveness decision without side effects."""
    if state.is_active(TOGGLE_LIVENESS):
        return ProbeResult(STATUS_DOWN, 500, failure_delay)
    if not state.is_started():
        return ProbeResult(STATUS_STARTING, 503)
    return ProbeResult(STATUS_UP, 200)


def evaluate_liveness(state: ProbeState, failure_delay: float = LIVENESS_FAILURE_DELAY_SECONDS) -> ProbeResult:
    """
    Decide the liveness answer.

    A simulated failure wins over everything and asks the caller to wait
    ``failure_delay`` seconds before answering. The first healthy answer is
    time-stamped.
    """
    result = _liveness_status(state, failure_delay)
    if result.status == STATUS_UP:
        state.clock.record_first_occurrence(PROBE_LIVENESS)
    return result


def evaluate_readiness(state: ProbeState) -> ProbeResult:
    """Decide the readiness answer. Readiness is never time-stamped."""
    if state.is_active(TOGGLE_READINESS):
        return ProbeResult(STATUS_NOT_READY, 503)
    if not state.is_started():
        return ProbeResult(STATUS_NOT_READY, 503)
    return ProbeResult(STATUS_READY, 200)


def status_indicators(state: ProbeState) -> Dict[str, str]:
    """Current liveness/readiness wording without recording anything."""
    return {
        "liveness": _liveness_status(state).status,
        "readiness": evaluate_readiness(state).status,
    }


# =========================
# Dashboard
# =========================

_INDICATOR_CLASSES = {
    STATUS_UP: "status-up",
    STATUS_READY: "status-up",
    STATUS_DOWN: "status-down",
    STATUS_NOT_READY: "status-down",
    STATUS_STARTING: "status-starting",
}

DASHBOARD_TEMPLATE = Template("""<!DOCTYPE html>
<html>
<head>
<title>Probe Simulator</title>
<style>
.status-up { color: green; font-weight: bold; }
.status-down { color: red; font-weight: bold; }
.status-starting { color: orange; font-weight: bold; }
</style>
</head>
<body>
<h1>Probe Simulator</h1>
<p>Triggers liveness, readiness and startup probe outcomes on demand.</p>
<a href='/liveness-health'>Liveness Health</a><br>
<a href='/readiness-health'>Readiness Health</a><br>
<a href='/timestamps'>Timestamps</a><br><br>
<label for='liveness-failure-toggle'>Simulate Liveness Failure:</label>
<input type='checkbox' id='liveness-failure-toggle' onclick='toggleFailure("liveness")' $liveness_checked><br>
<label for='readiness-failure-toggle'>Simulate Readiness Failure:</label>
<input type='checkbox' id='readiness-failure-toggle' onclick='toggleFailure("readiness")' $readiness_checked><br><br>
<strong>Liveness Status: </strong><span id='liveness-indicator' class='$liveness_class'>$liveness</span><br>
<strong>Readiness Status: </strong><span id='readiness-indicator' class='$readiness_class'>$readiness</span>
<script>
function toggleFailure(which) {
  fetch('/toggle-' + which + '-failure').then(r => r.text()).then(data => { console.log(data); updateStatus(); });
}
function showStatus(id, text, cls) {
  var el = document.getElementById(id);
  el.innerText = text;
  el.classList.remove('status-up', 'status-down', 'status-starting');
  el.classList.add(cls);
}
function poll(path, id, okText) {
  fetch(path).then(response => response.text().then(text => {
    if (response.ok) { showStatus(id, text, text === okText ? 'status-up' : 'status-starting'); }
    else if (response.status === 503 && text === 'starting') { showStatus(id, text, 'status-starting'); }
    else { showStatus(id, text, 'status-down'); }
  }));
}
function updateStatus() {
  poll('/liveness-health', 'liveness-indicator', 'up');
  poll('/readiness-health', 'readiness-indicator', 'ready');
}
setInterval(updateStatus, 2000);
</script>
</body>
</html>
""")


def render_dashboard(state: ProbeState) -> str:
    indicators = status_indicators(state)
    return DASHBOARD_TEMPLATE.substitute(
        liveness_checked="checked" if state.is_active(TOGGLE_LIVENESS) else "",
        readiness_checked="checked" if state.is_active(TOGGLE_READINESS) else "",
        liveness=indicators["liveness"],
        liveness_class=_INDICATOR_CLASSES[indicators["liveness"]],
        readiness=indicators["readiness"],
        readiness_class=_INDICATOR_CLASSES[indicators["readiness"]],
    )


# =========================
# HTTP surface
# =========================

class ProbeHandler(BaseHTTPRequestHandler):
    server: "ProbeServer"

    ROUTES = {
        "/": "handle_home",
        "/liveness-health": "handle_liveness",
        "/readiness-health": "handle_readiness",
        "/toggle-liveness-failure": "handle_toggle_liveness",
        "/toggle-readiness-failure": "handle_toggle_readiness",
        "/timestamps": "handle_timestamps",
    }

    def _write(self, code: int, body: str, content_type: str = "text/plain; charset=utf-8"):
        data = body.encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _write_result(self, result: ProbeResult):
        if result.delay > 0:
            time.sleep(result.delay)
        self._write(result.http_status, result.status)

    def do_GET(self):
        path = urlsplit(self.path).path
        handler = self.ROUTES.get(path)
        if handler is None:
            self._write(404, "not found")
            return
        getattr(self, handler)()

    def handle_home(self):
        self._write(200, render_dashboard(self.server.state), "text/html; charset=utf-8")

    def handle_liveness(self):
        self._write_result(evaluate_liveness(self.server.state, self.server.liveness_failure_delay))

    def handle_readiness(self):
        self._write_result(evaluate_readiness(self.server.state))

    def handle_toggle_liveness(self):
        self._write(200, f"Simulated failure mode {self.server.state.toggle(TOGGLE_LIVENESS)}.")

    def handle_toggle_readiness(self):
        self._write(200, f"Simulated failure mode {self.server.state.toggle(TOGGLE_READINESS)}.")

    def handle_timestamps(self):
        try:
            body = json.dumps(self.server.state.clock.snapshot())
        except (TypeError, ValueError) as exc:
            logger.error(f"Failed to serialize timestamps: {exc}")
            self._write(500, str(exc))
            return
        self._write(200, body, "application/json")

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} {format % args}")


class ProbeServer(ThreadingHTTPServer):
    """Thread-per-request server bound to one ProbeState."""

    daemon_threads = True

    def __init__(
        self,
        address,
        state: ProbeState,
        liveness_failure_delay: float = LIVENESS_FAILURE_DELAY_SECONDS,
    ):
        super().__init__(address, ProbeHandler)
        self.state = state
        self.liveness_failure_delay = liveness_failure_delay
        self.fatal_error: Optional[BaseException] = None

    def abort(self, exc: BaseException) -> None:
        """Stop serving because of a fatal error. Must not run on the serving thread."""
        self.fatal_error = exc
        self.shutdown()


# =========================
# Entry point
# =========================

def main() -> int:
    """Load settings, launch the startup task and serve until stopped."""
    try:
        settings = ProbeSettings()
    except ValidationError as exc:
        configure_logging()
        logger.critical(f"Invalid configuration: {exc}")
        return 1

    configure_logging(settings.json_logs, settings.log_level)
    logger.info(
        f"Starting probe simulator: mode={settings.startup_mode}, units={settings.startup_units}, "
        f"marker={settings.marker_path}."
    )

    state = ProbeState()
    try:
        server = ProbeServer((settings.host, settings.port), state)
    except OSError as exc:
        logger.critical(f"Failed to start server on port {settings.port}: {exc}")
        return 1

    task = StartupTask(
        state,
        units=settings.startup_units,
        marker_path=settings.marker_path,
        on_fatal=server.abort,
        mode=settings.startup_mode,
    )
    task.start()

    logger.info(f"Starting server at port {settings.port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down.")
    finally:
        server.server_close()

    return 1 if server.fatal_error is not None else 0


if __name__ == "__main__":
    sys.exit(main())
