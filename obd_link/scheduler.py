"""
Prioritized sensor polling.

The scheduler builds a weighted polling sequence from High/Medium/Low sensor
sets and walks it in batches. Batch size adapts to the observed adapter
latency so a cycle fits in the polling period:

    batch = clamp(period / (avg_latency * 1.5), 1, min(5, len(sequence)))

Each read in a batch goes through the CommunicationGate on its own, so the
adapter still sees one command at a time.

States:
    IDLE -> PRIMING -> DETECTING -> POLLING <-> NOT_CONNECTED -> STOPPED
"""

import asyncio
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from .codec import ResponseStatus, classify_response, is_adapter_initializing
from .commands import SENSOR_COMMANDS, CommandRegistry, CommandSpec
from .config import Timings
from .detector import PIDSupportDetector
from .errors import ErrorKind, OBDLinkError
from .gate import CommunicationGate
from .models import SensorReading

logger = logging.getLogger(__name__)


class SensorPriority(Enum):
    """Weight class of a polled sensor."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PollingState(Enum):
    IDLE = "idle"
    PRIMING = "priming"
    DETECTING = "detecting"
    POLLING = "polling"
    NOT_CONNECTED = "not_connected"
    STOPPED = "stopped"


# Occurrences per polling cycle
PRIORITY_WEIGHTS = {
    SensorPriority.HIGH: 5,
    SensorPriority.MEDIUM: 2,
    SensorPriority.LOW: 1,
}
CYCLE_SLOTS = 5
MAX_BATCH_SIZE = 5
LATENCY_HEADROOM = 1.5
PRIMING_PID = "0C"


# -----------------------------------------------------------------------------
# Sequence and batch sizing
# -----------------------------------------------------------------------------

def build_polling_sequence(
    high: Iterable[str],
    medium: Iterable[str] = (),
    low: Iterable[str] = (),
) -> List[str]:
    """
    Build the weighted round-robin sequence for one polling cycle.

    The cycle is split into CYCLE_SLOTS slots. Occurrence k of the j-th pid
    with weight w goes to slot (k * CYCLE_SLOTS // w + j) % CYCLE_SLOTS, so a
    High pid shows up in every slot instead of in one burst. Within a slot
    High pids come first, then Medium, then Low.

    A pid listed in more than one set keeps its highest priority.
    """
    slots: List[List[str]] = [[] for _ in range(CYCLE_SLOTS)]
    seen = set()

    for priority, pids in (
        (SensorPriority.HIGH, high),
        (SensorPriority.MEDIUM, medium),
        (SensorPriority.LOW, low),
    ):
        weight = PRIORITY_WEIGHTS[priority]
        unique = []
        for pid in pids:
            if pid not in seen:
                seen.add(pid)
                unique.append(pid)
        for j, pid in enumerate(unique):
            for k in range(weight):
                slots[(k * CYCLE_SLOTS // weight + j) % CYCLE_SLOTS].append(pid)

    return [pid for slot in slots for pid in slot]


def compute_batch_size(period_ms: float, average_latency_ms: float, length: int) -> int:
    """How many reads fit in one period, bounded to [1, min(5, length)]."""
    if length <= 0:
        return 0
    upper = min(MAX_BATCH_SIZE, length)
    fit = int(period_ms // (average_latency_ms * LATENCY_HEADROOM))
    return max(1, min(fit, upper))


class LatencyTracker:
    """Moving average of per-read latency over the last few samples."""

    INITIAL_MS = 120.0
    MIN_MS = 50.0
    MAX_MS = 250.0
    OUTLIER_MS = 1000.0
    WINDOW = 10

    def __init__(self):
        self._samples: Deque[float] = deque(maxlen=self.WINDOW)

    def record(self, sample_ms: float) -> bool:
        """Add a sample; returns False if it was discarded as an outlier."""
        if sample_ms <= 0 or sample_ms > self.OUTLIER_MS:
            logger.debug(f"Discarding latency sample {sample_ms:.0f}ms")
            return False
        self._samples.append(sample_ms)
        return True

    @property
    def average(self) -> float:
        if not self._samples:
            return self.INITIAL_MS
        mean = sum(self._samples) / len(self._samples)
        return min(max(mean, self.MIN_MS), self.MAX_MS)

    def reset(self) -> None:
        self._samples.clear()


@dataclass
class PollingCycleState:
    """Cursor over the weighted sequence."""
    sequence: List[str] = field(default_factory=list)
    cursor: int = 0
    batch_size: int = 1
    average_latency_ms: float = LatencyTracker.INITIAL_MS

    def next_batch(self) -> List[str]:
        """Take the next batch_size pids, wrapping around the sequence."""
        if not self.sequence:
            return []
        batch = []
        for _ in range(self.batch_size):
            batch.append(self.sequence[self.cursor])
            self.cursor = (self.cursor + 1) % len(self.sequence)
        return batch


# -----------------------------------------------------------------------------
# Scheduler
# -----------------------------------------------------------------------------

class PollingScheduler:
    """
    Continuous multi-sensor polling over a single-flight gate.

    Owns the latest-reading cache and the subscriber queues. Readers get
    snapshot copies; only the scheduler writes.
    """

    def __init__(
        self,
        gate: CommunicationGate,
        detector: Optional[PIDSupportDetector] = None,
        timings: Optional[Timings] = None,
    ):
        self.gate = gate
        self.detector = detector or PIDSupportDetector(gate)
        self.timings = timings or gate.timings
        self.state = PollingState.IDLE
        self.cycle = PollingCycleState()
        self.latency = LatencyTracker()
        self.poll_counts: Counter = Counter()
        self.cycles_completed = 0
        self.period_ms = 500.0
        self._latest: Dict[str, SensorReading] = {}
        self._subscribers: List[asyncio.Queue] = []
        self._task: Optional[asyncio.Task] = None
        self._startup: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def latest(self) -> Dict[str, SensorReading]:
        """Snapshot of the latest reading per pid."""
        return dict(self._latest)

    def get_latest(self, pid: str) -> Optional[SensorReading]:
        return self._latest.get(pid.upper())

    # -------------------------------------------------------------------------
    # Broadcast
    # -------------------------------------------------------------------------

    def subscribe(self, maxsize: int = 100) -> asyncio.Queue:
        """Get a queue that receives every new reading."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, reading: SensorReading) -> None:
        self._latest[reading.pid] = reading
        for queue in self._subscribers:
            if queue.full():
                # Slow consumer: drop its oldest reading
                queue.get_nowait()
            queue.put_nowait(reading)

    # -------------------------------------------------------------------------
    # Single reads
    # -------------------------------------------------------------------------

    async def request_reading(self, pid: str) -> SensorReading:
        """
        Read one sensor now, competing with the polling loop for the gate.

        Args:
            pid: PID string ("0C") or name ("RPM")

        Returns:
            SensorReading, tagged with an ErrorKind on failure

        Raises:
            ValueError: Unknown PID
        """
        spec = CommandRegistry.get(pid)
        if spec is None:
            raise ValueError(f"Unknown PID: {pid}")
        reading, _ = await self._read(spec)
        self._publish(reading)
        return reading

    async def _read(self, spec: CommandSpec) -> Tuple[SensorReading, Optional[float]]:
        """Read and decode one sensor; returns the reading and the round trip in ms."""
        try:
            response = await self.gate.request_with_retry(
                spec.command,
                timeout=self.timings.read_timeout,
            )
            if classify_response(response.text) == ResponseStatus.SEARCHING:
                # Adapter still settling on a protocol, ask once more
                logger.debug(f"{spec.name}: adapter initializing ({response.text!r}), resending")
                await asyncio.sleep(self.timings.read_retry_delay)
                response = await self.gate.request_with_retry(
                    spec.command,
                    timeout=self.timings.read_timeout,
                )
        except OBDLinkError as e:
            logger.debug(f"{spec.name} read failed: {e}")
            return self._error_reading(spec, e.kind, str(e), e.raw or ""), None

        if response.is_error:
            return self._error_reading(spec, ErrorKind.ADAPTER, response.text, response.text), response.round_trip_ms

        try:
            value = spec.parse(response.text)
        except OBDLinkError as e:
            logger.warning(f"Could not decode {spec.name} from {response.text!r}: {e}")
            return self._error_reading(spec, e.kind, str(e), response.text), response.round_trip_ms

        reading = SensorReading(
            name=spec.display_name,
            pid=spec.pid,
            mode=spec.mode,
            value=value,
            unit=spec.unit,
            raw_value=response.text,
            timestamp=response.timestamp,
        )
        return reading, response.round_trip_ms

    @staticmethod
    def _error_reading(spec: CommandSpec, kind: ErrorKind, message: str, raw: str) -> SensorReading:
        return SensorReading(
            name=spec.display_name,
            pid=spec.pid,
            mode=spec.mode,
            value=message,
            unit="",
            is_error=True,
            raw_value=raw,
            error=kind,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def prime_adapter(self) -> bool:
        """
        Send RPM requests until the adapter stops answering SEARCHING...

        Returns:
            True if the adapter answered normally
        """
        if not self.gate.connected:
            logger.info("Skipping adapter priming, channel not connected")
            return False

        command = SENSOR_COMMANDS[PRIMING_PID].command
        attempts = self.timings.priming_attempts

        for attempt in range(1, attempts + 1):
            logger.debug(f"Adapter priming attempt {attempt}/{attempts}")
            try:
                response = await self.gate.request(command, timeout=self.timings.priming_timeout)
                if not is_adapter_initializing(response.text):
                    logger.info(f"Adapter primed on attempt {attempt}: {response.text!r}")
                    return True
                logger.debug(f"Adapter still initializing: {response.text!r}")
            except OBDLinkError as e:
                logger.debug(f"Priming attempt {attempt} failed: {e}")

            await asyncio.sleep(self.timings.priming_backoff * attempt)

        logger.warning("Adapter priming failed, continuing anyway")
        return False

    async def start(
        self,
        high: Iterable[str],
        medium: Iterable[str] = (),
        low: Iterable[str] = (),
        period_ms: float = 500.0,
    ) -> None:
        """
        Prime the adapter, detect PID support and start the polling loop.

        Args:
            high: PIDs polled five times per cycle
            medium: PIDs polled twice per cycle
            low: PIDs polled once per cycle
            period_ms: Target duration of one batch

        Priming and detection run in a task of their own, so stop() can
        abort them; start() then returns without launching the loop.
        """
        if self.running or self._startup is not None:
            logger.info("Monitoring already active, restarting")
            await self.stop()

        generation = self._generation
        startup = asyncio.create_task(self._prepare(list(high), list(medium), list(low)))
        self._startup = startup
        try:
            sequence = await startup
        except asyncio.CancelledError:
            if generation == self._generation:
                raise
            logger.info("Monitoring stopped before polling began")
            return
        finally:
            if self._startup is startup:
                self._startup = None

        if generation != self._generation:
            logger.info("Monitoring stopped before polling began")
            return

        if not sequence:
            logger.error("No supported sensors to poll")
            self.state = PollingState.STOPPED
            return

        self.latency.reset()
        self.poll_counts.clear()
        self.cycles_completed = 0
        self.period_ms = period_ms
        self.cycle = PollingCycleState(sequence=sequence, average_latency_ms=self.latency.average)

        logger.info(f"Starting polling every {period_ms:.0f}ms over {len(sequence)} slots: {sequence}")
        self._task = asyncio.create_task(self._run())

    async def _prepare(self, high: List[str], medium: List[str], low: List[str]) -> List[str]:
        """Prime, detect PID support and build the polling sequence."""
        self.state = PollingState.PRIMING
        await self.prime_adapter()

        self.state = PollingState.DETECTING
        if self.gate.connected:
            supported = await self.detector.detect()
        else:
            supported = self.detector.supported

        def usable(pids: Iterable[str]) -> List[str]:
            result = []
            for pid in pids:
                spec = CommandRegistry.get(pid)
                if spec is None:
                    logger.warning(f"Unknown PID {pid}, not polling it")
                elif spec.pid not in supported:
                    logger.warning(f"PID {spec.pid} ({spec.name}) not supported by vehicle")
                else:
                    result.append(spec.pid)
            return result

        return build_polling_sequence(usable(high), usable(medium), usable(low))

    async def stop(self) -> None:
        """
        Stop the polling loop and its in-flight batch, or abort a start() that
        is still priming. start() may be called again afterwards.
        """
        self._generation += 1
        pending = [t for t in (self._startup, self._task) if t is not None and not t.done()]
        self._startup = None
        self._task = None
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

        self.cycle = PollingCycleState()
        self.latency.reset()
        self.state = PollingState.STOPPED
        logger.info("Sensor polling stopped")

    async def _run(self) -> None:
        period = self.period_ms / 1000
        try:
            while True:
                if not self.gate.connected:
                    if self.state != PollingState.NOT_CONNECTED:
                        logger.warning("Adapter not connected, pausing polling")
                        self.state = PollingState.NOT_CONNECTED
                    await asyncio.sleep(self.timings.not_connected_delay)
                    continue

                if self.state != PollingState.POLLING:
                    logger.info("Polling active")
                    self.state = PollingState.POLLING

                started = time.monotonic()
                try:
                    await self._run_cycle()
                except OBDLinkError as e:
                    logger.error(f"Error in polling cycle: {e}")

                elapsed = time.monotonic() - started
                if elapsed > period:
                    logger.warning(
                        f"Polling cycle took longer than period: {(elapsed - period) * 1000:.0f}ms over budget"
                    )
                await asyncio.sleep(max(period - elapsed, self.timings.min_cycle_sleep))
        except asyncio.CancelledError:
            logger.debug("Polling loop cancelled")
            raise

    async def _run_cycle(self) -> None:
        cycle = self.cycle
        cycle.batch_size = compute_batch_size(self.period_ms, self.latency.average, len(cycle.sequence))
        batch = cycle.next_batch()

        results = await asyncio.gather(
            *(self._read(SENSOR_COMMANDS[pid]) for pid in batch),
            return_exceptions=True,
        )

        for pid, result in zip(batch, results):
            if isinstance(result, BaseException):
                logger.error(f"Unexpected error reading {pid}: {result!r}")
                continue
            reading, latency_ms = result
            if latency_ms is not None:
                self.latency.record(latency_ms)
            self.poll_counts[pid] += 1
            self._publish(reading)

        cycle.average_latency_ms = self.latency.average
        self.cycles_completed += 1
