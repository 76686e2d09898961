"""Process reclaimer: free a camera held by stale driver processes.

Consumer camera stacks leave helpers behind that keep an exclusive USB
claim on the body: the GVFS gphoto2 volume monitor grabs every camera
that appears on Linux desktops, a crashed ``gphoto2`` child may still
own the port, and vendor utilities auto-launch on connect. Until those
die, every open fails with "Could not claim the USB device".

``ProcessReclaimer.reclaim`` sweeps the process table with psutil,
terminates whatever matches the configured patterns, force-kills
survivors, then waits a settle period so the OS can release the
device handle. The sweep is best effort: a process that cannot be
killed is recorded in the returned ``ReclaimReport`` and the sweep
carries on.

Example:
    reclaimer = ProcessReclaimer(settle_seconds=1.0)
    report = reclaimer.reclaim()
    if report.partial_failure:
        logger.warning("Camera may still be held", failures=report.failures)
"""

from __future__ import annotations

import os
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import psutil

from dslr_photobooth.observability import get_logger

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_PATTERNS",
    "NullReclaimer",
    "ProcessReclaimer",
    "ReclaimReport",
    "Reclaimer",
]

# Matched against the process name and the joined command line.
DEFAULT_PATTERNS: tuple[str, ...] = (
    r"gvfs-gphoto2-volume-monitor",
    r"gvfsd-gphoto2",
    r"(^|/)gphoto2(\s|$)",
    r"EOS ?Utility",
)

DEFAULT_SETTLE_SECONDS = 1.0
DEFAULT_TERMINATE_TIMEOUT = 3.0


@dataclass
class ReclaimReport:
    """Outcome of one sweep.

    Attributes:
        matched: PIDs whose name or command line matched a pattern.
        terminated: PIDs that exited after terminate() or kill().
        failures: One line per process that could not be stopped.
    """

    matched: list[int] = field(default_factory=list)
    terminated: list[int] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def partial_failure(self) -> bool:
        return bool(self.failures)

    def to_dict(self) -> dict[str, object]:
        return {
            "matched": list(self.matched),
            "terminated": list(self.terminated),
            "failures": list(self.failures),
        }


@runtime_checkable
class Reclaimer(Protocol):  # pragma: no cover
    """Releases OS-level resources held by orphaned driver instances."""

    def reclaim(self) -> ReclaimReport:
        """Sweep, then block for the settle period. Never raises for
        individual process failures; those are listed in the report."""
        ...


class NullReclaimer:
    """Reclaimer that does nothing; used with the digital twin."""

    def __init__(self, settle_seconds: float = 0.0) -> None:
        self.settle_seconds = settle_seconds
        self.calls = 0

    def reclaim(self) -> ReclaimReport:
        self.calls += 1
        if self.settle_seconds > 0:
            time.sleep(self.settle_seconds)
        return ReclaimReport()


class ProcessReclaimer:
    """psutil-based sweep of processes that hold the camera."""

    def __init__(
        self,
        patterns: Sequence[str] = DEFAULT_PATTERNS,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
    ) -> None:
        """Configure the sweep.

        Args:
            patterns: Regular expressions matched against the process name
                and the space-joined command line.
            settle_seconds: Wait after the sweep for the OS to release
                device handles. About one second is enough for libusb.
            terminate_timeout: Grace period between terminate() and kill().
        """
        self._patterns = [re.compile(p) for p in patterns]
        self.settle_seconds = settle_seconds
        self.terminate_timeout = terminate_timeout

    def __repr__(self) -> str:
        return (
            f"ProcessReclaimer(patterns={len(self._patterns)}, "
            f"settle_seconds={self.settle_seconds})"
        )

    def _matches(self, name: str, cmdline: str) -> bool:
        return any(p.search(name) or p.search(cmdline) for p in self._patterns)

    def find_processes(self) -> list[psutil.Process]:
        """Return live processes matching the patterns, excluding ourselves."""
        own = {os.getpid(), os.getppid()}
        found: list[psutil.Process] = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                if proc.pid in own:
                    continue
                name = proc.info.get("name") or ""
                cmdline = " ".join(proc.info.get("cmdline") or [])
                if self._matches(name, cmdline):
                    found.append(proc)
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                continue
            except psutil.AccessDenied:
                # Unreadable command line; the name alone still counts.
                if self._matches(proc.info.get("name") or "", ""):
                    found.append(proc)
        return found

    def reclaim(self) -> ReclaimReport:
        report = ReclaimReport()
        processes = self.find_processes()
        report.matched = [p.pid for p in processes]

        if processes:
            logger.warning(
                "Reclaiming camera from stale processes",
                pids=report.matched,
            )

        signalled: list[psutil.Process] = []
        for proc in processes:
            try:
                proc.terminate()
                signalled.append(proc)
            except psutil.NoSuchProcess:
                report.terminated.append(proc.pid)
            except psutil.AccessDenied as e:
                report.failures.append(f"pid {proc.pid}: terminate denied ({e})")

        if signalled:
            gone, alive = psutil.wait_procs(signalled, timeout=self.terminate_timeout)
            report.terminated.extend(p.pid for p in gone)
            for proc in alive:
                try:
                    logger.warning("Force killing unresponsive process", pid=proc.pid)
                    proc.kill()
                except psutil.NoSuchProcess:
                    report.terminated.append(proc.pid)
                    continue
                except psutil.AccessDenied as e:
                    report.failures.append(f"pid {proc.pid}: kill denied ({e})")
                    continue
                _, still_alive = psutil.wait_procs([proc], timeout=1.0)
                if still_alive:
                    report.failures.append(f"pid {proc.pid}: survived kill")
                else:
                    report.terminated.append(proc.pid)

        if report.partial_failure:
            logger.error(
                "Reclaim sweep incomplete",
                failures=report.failures,
                terminated=report.terminated,
            )
        elif processes:
            logger.info("Reclaim sweep complete", terminated=report.terminated)

        if self.settle_seconds > 0:
            time.sleep(self.settle_seconds)
        return report
