"""Resource monitoring and throttling for the daemon process."""

from __future__ import annotations

import gc
import os
import sys
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable


@dataclass(frozen=True)
class ResourceLimits:
    """Resource ceilings; zero values fall back to the defaults."""

    max_memory_mb: int = 500
    max_cpu_percent: float = 25.0
    check_interval: float = 5.0
    throttle_delay: float = 0.1


@dataclass(frozen=True)
class ResourceStatus:
    """Current resource usage."""

    memory_usage_mb: float
    cpu_percent: float
    is_throttling: bool
    last_checked: datetime


def _process_memory_mb() -> float:
    try:
        with open("/proc/self/statm") as handle:
            resident_pages = int(handle.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE") / 1024 / 1024
    except (OSError, ValueError, IndexError, AttributeError):
        pass
    try:
        import resource
    except ImportError:
        return 0.0
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    scale = 1 if sys.platform == "darwin" else 1024
    return peak * scale / 1024 / 1024


def _estimated_cpu_percent() -> float:
    """Rough load estimate from the thread count per CPU."""
    threads = threading.active_count()
    cpus = os.cpu_count() or 1
    return min(threads / cpus * 10.0, 100.0)


class ResourceMonitor:
    """Periodically samples memory and CPU and flags when to throttle."""

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        *,
        memory_probe: Callable[[], float] | None = None,
        cpu_probe: Callable[[], float] | None = None,
    ) -> None:
        limits = limits or ResourceLimits()
        defaults = ResourceLimits()
        self.limits = replace(
            limits,
            max_memory_mb=limits.max_memory_mb or defaults.max_memory_mb,
            max_cpu_percent=limits.max_cpu_percent or defaults.max_cpu_percent,
            check_interval=limits.check_interval or defaults.check_interval,
            throttle_delay=limits.throttle_delay or defaults.throttle_delay,
        )
        self._memory_probe = memory_probe or _process_memory_mb
        self._cpu_probe = cpu_probe or _estimated_cpu_percent
        self._lock = threading.RLock()
        self._throttling = False
        self._last_checked = datetime.now().astimezone()
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start sampling in a background thread, replacing any earlier one."""
        self.stop()
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._run, args=(stop_event,), name="fman-resource-monitor", daemon=True
        )
        with self._lock:
            self._stop_event, self._thread = stop_event, thread
        thread.start()

    def stop(self) -> None:
        """Stop background sampling."""
        with self._lock:
            stop_event, thread = self._stop_event, self._thread
            self._stop_event = self._thread = None
        if stop_event is not None:
            stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def status(self) -> ResourceStatus:
        """Current usage together with the last throttling decision."""
        with self._lock:
            return ResourceStatus(
                memory_usage_mb=self._memory_probe(),
                cpu_percent=self._cpu_probe(),
                is_throttling=self._throttling,
                last_checked=self._last_checked,
            )

    def should_throttle(self) -> bool:
        with self._lock:
            return self._throttling

    def wait_if_throttling(self, cancel: threading.Event | None = None) -> bool:
        """Sleep for the throttle delay when throttling; return whether it waited.

        Raises InterruptedError if ``cancel`` is set during the wait.
        """
        if not self.should_throttle():
            return False
        cancel = cancel or threading.Event()
        if cancel.wait(self.limits.throttle_delay):
            raise InterruptedError("wait cancelled")
        return True

    def force_gc(self) -> None:
        """Run a full garbage collection twice."""
        gc.collect()
        gc.collect()

    def check(self) -> ResourceStatus:
        """Sample usage now and update the throttling decision."""
        with self._lock:
            memory_mb = self._memory_probe()
            cpu_percent = self._cpu_probe()
            memory_exceeded = memory_mb > self.limits.max_memory_mb
            cpu_exceeded = cpu_percent > self.limits.max_cpu_percent
            self._throttling = memory_exceeded or cpu_exceeded
            self._last_checked = datetime.now().astimezone()
            if memory_exceeded:
                gc.collect()
            return ResourceStatus(
                memory_usage_mb=memory_mb,
                cpu_percent=cpu_percent,
                is_throttling=self._throttling,
                last_checked=self._last_checked,
            )

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.limits.check_interval):
            self.check()