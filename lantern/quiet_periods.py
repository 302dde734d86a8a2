from __future__ import annotations

# Joint CPU/network quiet-window search used by interactivity metrics.
#
# All times are ms relative to the navigation-start time origin.

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Iterable, Sequence

from lantern.errors import NoQuietPeriodError, QuietPeriodErrorKind
from lantern.types import IGNORED_QUIET_SCHEMES, CpuTask, NetworkRecord, QuietPeriod

logger = logging.getLogger(__name__)

REQUIRED_QUIET_WINDOW_MS = 5000.0
LONG_TASK_THRESHOLD_MS = 50.0
ALLOWED_CONCURRENT_REQUESTS = 2


class ScanState(str, Enum):
    SCANNING = "scanning"
    FOUND_CANDIDATE = "found_candidate"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class QuietPeriodResult:
    cpu_quiet_period: QuietPeriod
    network_quiet_period: QuietPeriod
    cpu_quiet_periods: tuple[QuietPeriod, ...]
    network_quiet_periods: tuple[QuietPeriod, ...]


def long_task_periods(tasks: Iterable[CpuTask]) -> list[QuietPeriod]:
    """Busy intervals of top-level tasks lasting at least 50 ms."""
    return [
        QuietPeriod(start=t.start_time, end=t.end_time)
        for t in tasks
        if t.parent is None and t.duration >= LONG_TASK_THRESHOLD_MS
    ]


def _counts_toward_network_busy(record: NetworkRecord) -> bool:
    return (
        record.finished
        and record.end_time is not None
        and record.method == "GET"
        and not record.failed
        and record.status_code < 400
    )


def find_network_quiet_periods(
    records: Iterable[NetworkRecord],
    trace_end: float,
    *,
    allowed_concurrent_requests: int = ALLOWED_CONCURRENT_REQUESTS,
) -> list[QuietPeriod]:
    """Windows where at most `allowed_concurrent_requests` requests are in flight."""
    boundaries: list[tuple[float, bool]] = []
    for record in records:
        if not _counts_toward_network_busy(record):
            continue
        if record.scheme in IGNORED_QUIET_SCHEMES:
            continue
        assert record.end_time is not None
        boundaries.append((record.start_time, True))
        boundaries.append((record.end_time, False))
    # Stable on time: ties keep the order the records were observed in.
    boundaries = sorted((b for b in boundaries if b[0] <= trace_end), key=lambda b: b[0])

    in_flight = 0
    quiet_start = 0.0
    periods: list[QuietPeriod] = []
    for time, is_start in boundaries:
        if is_start:
            if in_flight == allowed_concurrent_requests:
                periods.append(QuietPeriod(start=quiet_start, end=time))
            in_flight += 1
        else:
            in_flight -= 1
            if in_flight == allowed_concurrent_requests:
                quiet_start = time
    if in_flight <= allowed_concurrent_requests:
        periods.append(QuietPeriod(start=quiet_start, end=trace_end))
    return [p for p in periods if p.start != p.end]


def find_cpu_quiet_periods(
    long_tasks: Sequence[QuietPeriod], trace_end: float
) -> list[QuietPeriod]:
    """Gaps between long tasks, from time 0 to the end of the trace."""
    ordered = sorted(long_tasks, key=lambda t: t.start)
    if not ordered:
        return [QuietPeriod(start=0.0, end=trace_end)]
    periods = [QuietPeriod(start=0.0, end=ordered[0].start)]
    for task, following in zip(ordered, ordered[1:]):
        periods.append(QuietPeriod(start=task.end, end=following.start))
    periods.append(QuietPeriod(start=ordered[-1].end, end=trace_end))
    return periods


class QuietPeriodScanner:
    """Walks both quiet-period lists in start order looking for a joint window.

    SCANNING advances whichever candidate starts first; a pair whose later start
    leaves the other period open for the required window is FOUND_CANDIDATE and
    becomes CONFIRMED once recorded.
    """

    def __init__(
        self,
        cpu_periods: Sequence[QuietPeriod],
        network_periods: Sequence[QuietPeriod],
        *,
        window_ms: float = REQUIRED_QUIET_WINDOW_MS,
    ) -> None:
        self.cpu_periods = tuple(cpu_periods)
        self.network_periods = tuple(network_periods)
        self.window_ms = window_ms
        self.state = ScanState.SCANNING
        self.cpu_candidate: QuietPeriod | None = None
        self.network_candidate: QuietPeriod | None = None

    def scan(self) -> tuple[QuietPeriod, QuietPeriod] | None:
        cpu_queue = list(self.cpu_periods)
        network_queue = list(self.network_periods)
        self.state = ScanState.SCANNING
        self.cpu_candidate = cpu_queue.pop(0) if cpu_queue else None
        self.network_candidate = network_queue.pop(0) if network_queue else None

        while self.cpu_candidate is not None and self.network_candidate is not None:
            cpu, network = self.cpu_candidate, self.network_candidate
            if cpu.start >= network.start:
                # The window starts with the CPU period and must fit in the network one.
                if network.end >= cpu.start + self.window_ms:
                    self.state = ScanState.FOUND_CANDIDATE
                    break
                self.network_candidate = network_queue.pop(0) if network_queue else None
            else:
                if cpu.end >= network.start + self.window_ms:
                    self.state = ScanState.FOUND_CANDIDATE
                    break
                self.cpu_candidate = cpu_queue.pop(0) if cpu_queue else None

        if self.state is not ScanState.FOUND_CANDIDATE:
            return None
        assert self.cpu_candidate is not None and self.network_candidate is not None
        self.state = ScanState.CONFIRMED
        return self.cpu_candidate, self.network_candidate


def find_overlapping_quiet_periods(
    long_tasks: Sequence[QuietPeriod],
    records: Iterable[NetworkRecord],
    *,
    reference_ms: float,
    trace_end: float,
) -> QuietPeriodResult:
    """First CPU and network quiet periods that overlap for 5 s after `reference_ms`.

    Raises `NoQuietPeriodError`: NO_IDLE_PERIOD when the trace ends within the
    window after the reference paint, NO_CPU_IDLE_PERIOD when the CPU never
    quiets, NO_NETWORK_IDLE_PERIOD otherwise.
    """
    if trace_end <= reference_ms + REQUIRED_QUIET_WINDOW_MS:
        raise NoQuietPeriodError(
            QuietPeriodErrorKind.NO_IDLE_PERIOD, reference_ms=reference_ms, trace_end_ms=trace_end
        )

    def long_enough(period: QuietPeriod) -> bool:
        return (
            period.end > reference_ms + REQUIRED_QUIET_WINDOW_MS
            and period.duration >= REQUIRED_QUIET_WINDOW_MS
        )

    network_periods = [p for p in find_network_quiet_periods(records, trace_end) if long_enough(p)]
    cpu_periods = [p for p in find_cpu_quiet_periods(long_tasks, trace_end) if long_enough(p)]
    logger.debug(
        "quiet periods after %.1fms: %d cpu, %d network",
        reference_ms,
        len(cpu_periods),
        len(network_periods),
    )

    scanner = QuietPeriodScanner(cpu_periods, network_periods)
    found = scanner.scan()
    if found is None:
        kind = (
            QuietPeriodErrorKind.NO_NETWORK_IDLE_PERIOD
            if scanner.cpu_candidate is not None
            else QuietPeriodErrorKind.NO_CPU_IDLE_PERIOD
        )
        raise NoQuietPeriodError(kind, reference_ms=reference_ms, trace_end_ms=trace_end)

    cpu_period, network_period = found
    return QuietPeriodResult(
        cpu_quiet_period=cpu_period,
        network_quiet_period=network_period,
        cpu_quiet_periods=tuple(cpu_periods),
        network_quiet_periods=tuple(network_periods),
    )
