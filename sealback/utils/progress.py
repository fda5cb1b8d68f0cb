"""
Progress reporting side-channel.

Producers (compression, uploads) push raw (bytes processed, total) samples;
ProgressReporter turns them into smoothed percent/throughput readings at a
bounded rate and renders them. It never raises into the producer.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TaskProgressColumn, TextColumn

from sealback.utils.formatting import format_size

DEFAULT_INTERVAL = 0.5
DEFAULT_WINDOW = 5


def aggregate_percent(index: int, total_volumes: int, volume_percent: float) -> float:
    """Overall progress of a split pass given progress within volume `index` (1-based)."""
    return ((index - 1) * 100 + volume_percent) / total_volumes


class ThroughputTracker:
    """
    Bytes/second over a sliding window of instantaneous measurements.

    `sample()` returns a reading only when at least `interval` seconds have
    elapsed since the previous one, so callers can invoke it per chunk.
    """

    def __init__(self, total_bytes: int, interval: float = DEFAULT_INTERVAL,
                 window: int = DEFAULT_WINDOW, clock: Callable[[], float] = time.monotonic):
        self.total_bytes = total_bytes
        self.interval = interval
        self.clock = clock
        self.speeds: Deque[float] = deque(maxlen=window)
        self._last_time = clock()
        self._last_bytes = 0

    def sample(self, processed_bytes: int) -> Optional[Tuple[float, float]]:
        """
        Args:
            processed_bytes: Cumulative bytes processed so far

        Returns:
            (percent, smoothed bytes per second) or None if rate limited
        """
        now = self.clock()
        elapsed = now - self._last_time
        if elapsed < self.interval:
            return None

        self.speeds.append((processed_bytes - self._last_bytes) / elapsed)
        self._last_time = now
        self._last_bytes = processed_bytes

        speed = sum(self.speeds) / len(self.speeds)
        return self.percent(processed_bytes), speed

    def percent(self, processed_bytes: int) -> float:
        if self.total_bytes <= 0:
            return 100.0
        return min(processed_bytes / self.total_bytes * 100, 100.0)


class ProgressReporter:
    """
    Renders progress samples as rich progress bars and debug log lines.

    One bar is kept per operation label. Rendering is disabled automatically
    when stdout is not a terminal.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, console: Optional[Console] = None,
                 enabled: Optional[bool] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.console = console or Console(stderr=True)
        self.enabled = self.console.is_terminal if enabled is None else enabled
        self._progress: Optional[Progress] = None
        self._tasks: Dict[str, TaskID] = {}
        self._lock = threading.Lock()

    def _ensure_started(self) -> Progress:
        if self._progress is None:
            self._progress = Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TextColumn("{task.fields[speed]}"),
                console=self.console,
                transient=True,
            )
            self._progress.start()
        return self._progress

    def report(self, operation: str, percent: float, bytes_per_second: float = 0) -> None:
        """Record one (percent, throughput) sample for an operation."""
        speed = f"{format_size(bytes_per_second)}/s" if bytes_per_second else 'N/A'
        self.logger.debug(f"{operation}: {percent:5.1f}% speed={speed}")

        if not self.enabled:
            return

        with self._lock:
            try:
                progress = self._ensure_started()
                if operation not in self._tasks:
                    self._tasks[operation] = progress.add_task(operation, total=100, speed=speed)
                progress.update(self._tasks[operation], completed=min(percent, 100), speed=speed)
            except Exception as e:
                self.logger.debug(f"Progress rendering failed: {e}")

    def finish(self, operation: str) -> None:
        """Mark an operation complete and drop its bar."""
        self.report(operation, 100)
        with self._lock:
            task_id = self._tasks.pop(operation, None)
            if self._progress is not None and task_id is not None:
                self._progress.remove_task(task_id)

    def close(self) -> None:
        with self._lock:
            if self._progress is not None:
                self._progress.stop()
                self._progress = None
            self._tasks.clear()
