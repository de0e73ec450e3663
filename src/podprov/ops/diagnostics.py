"""Diagnostic reports and the periodic health monitor."""

import asyncio
import json
import logging
import platform
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from podprov.models.config import ProvisionConfig
from podprov.runtime.gateway import RuntimeGateway
from podprov.utils.files import write_if_changed
from podprov.utils.units import format_size


logger = logging.getLogger(__name__)

REPORT_PREFIX = "diagnostic-report-"
LOG_TAIL_LINES = 1000


class HealthStatus(BaseModel):
    """Result of one health check pass."""
    timestamp: datetime
    memory_free_percent: Optional[float] = None
    disk_free_percent: Optional[float] = None
    stopped_containers: Dict[str, str] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.warnings


def read_meminfo(path: Path) -> Dict[str, int]:
    """Parse /proc/meminfo into kB values."""
    values = {}
    if not path.exists():
        return values
    for line in path.read_text().splitlines():
        key, _, rest = line.partition(":")
        parts = rest.split()
        if parts and parts[0].isdigit():
            values[key.strip()] = int(parts[0])
    return values


class DiagnosticsCollector:
    """Writes diagnostic reports and watches host and container health.

    Only reads runtime status; it shares no state with provisioning.
    """

    def __init__(self, config: ProvisionConfig, runtime: RuntimeGateway,
                 system_root: Path = Path("/"), clock: Callable[[], datetime] = datetime.now):
        """Initialize diagnostics collector."""
        self.config = config
        self.runtime = runtime
        self.system_root = Path(system_root)
        self.clock = clock
        self.reports_dir = config.reports_dir
        self.diagnostics_dir = config.diagnostics_dir

    def _memory(self) -> Tuple[Optional[int], Optional[int]]:
        meminfo = read_meminfo(self.system_root / "proc" / "meminfo")
        total = meminfo.get("MemTotal")
        available = meminfo.get("MemAvailable", meminfo.get("MemFree"))
        if not total:
            return None, None
        return total * 1024, (available or 0) * 1024

    def _disk(self) -> Tuple[int, int]:
        usage = shutil.disk_usage(self.system_root)
        return usage.total, usage.free

    def _recent_logs(self) -> str:
        log_dir = Path(self.config.log_directory)
        if not log_dir.exists():
            return "(no logs)"
        chunks = []
        for log_file in sorted(log_dir.glob("*.log")):
            lines = log_file.read_text(errors="replace").splitlines()[-LOG_TAIL_LINES:]
            chunks.append(f"==> {log_file} <==\n" + "\n".join(lines))
        return "\n\n".join(chunks) or "(no logs)"

    async def _listing(self, kind: str) -> str:
        try:
            return await self.runtime.listing(kind)
        except Exception as e:
            logger.warning(f"Could not list {kind}: {e}")
            return f"(unavailable: {e})"

    async def collect(self) -> Path:
        """Write a diagnostic report and return its path."""
        now = self.clock()
        logger.info("Collecting system diagnostics")

        total_mem, free_mem = await asyncio.to_thread(self._memory)
        total_disk, free_disk = await asyncio.to_thread(self._disk)
        memory = f"{format_size(free_mem)} free of {format_size(total_mem)}" if total_mem else "unknown"
        system_info = "\n".join([
            f"Date: {now.isoformat(sep=' ', timespec='seconds')}",
            f"Kernel: {' '.join(platform.uname())}",
            f"Memory: {memory}",
            f"Disk Space: {format_size(free_disk)} free of {format_size(total_disk)}",
        ])

        try:
            runtime_info = json.dumps(await self.runtime.info(), indent=2, default=str)
        except Exception as e:
            logger.warning(f"Could not read runtime info: {e}")
            runtime_info = f"(unavailable: {e})"

        sections = [
            ("System Information", system_info),
            ("Podman Information", runtime_info),
            ("Container Status", await self._listing("containers")),
            ("Volume Information", await self._listing("volumes")),
            ("Network Information", await self._listing("networks")),
            ("Recent Logs", await asyncio.to_thread(self._recent_logs)),
            ("Resource Usage", await self._listing("stats")),
        ]
        content = "".join(f"=== {title} ===\n{body.rstrip()}\n\n" for title, body in sections)

        report = self.reports_dir / f"{REPORT_PREFIX}{now.strftime('%Y%m%d-%H%M%S')}.txt"
        await asyncio.to_thread(write_if_changed, report, content, 0o640)
        logger.info(f"Diagnostic report generated: {report}")
        return report

    async def health_check(self) -> HealthStatus:
        """Check free memory, free disk and container states once."""
        threshold = self.config.diagnostics.free_threshold
        status = HealthStatus(timestamp=self.clock())

        total_mem, free_mem = await asyncio.to_thread(self._memory)
        if total_mem:
            status.memory_free_percent = free_mem / total_mem * 100.0
            if status.memory_free_percent < threshold:
                status.warnings.append(f"Low memory warning: {status.memory_free_percent:.1f}% free")

        total_disk, free_disk = await asyncio.to_thread(self._disk)
        if total_disk:
            status.disk_free_percent = free_disk / total_disk * 100.0
            if status.disk_free_percent < threshold:
                status.warnings.append(f"Low disk space warning: {status.disk_free_percent:.1f}% free")

        for name, state in (await self.runtime.container_states()).items():
            if state != "running":
                status.stopped_containers[name] = state
                status.warnings.append(f"Container {name} is not running (status: {state})")

        for warning in status.warnings:
            logger.warning(warning)
        return status

    def _record(self, status: HealthStatus) -> None:
        path = self.diagnostics_dir / f"health-{status.timestamp.strftime('%Y%m%d')}.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(status.model_dump_json() + "\n")

    async def monitor(self, interval: Optional[int] = None, stop_event: Optional[asyncio.Event] = None,
                      max_checks: Optional[int] = None) -> int:
        """Run health checks until ``stop_event`` is set; returns the number of checks."""
        interval = interval or self.config.diagnostics.interval
        stop_event = stop_event or asyncio.Event()
        checks = 0
        logger.info(f"Starting health monitor, interval {interval}s")

        while not stop_event.is_set():
            try:
                status = await self.health_check()
                await asyncio.to_thread(self._record, status)
            except Exception as e:
                logger.error(f"Health check error: {e}", exc_info=True)
            checks += 1
            if max_checks is not None and checks >= max_checks:
                break

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

        logger.info(f"Health monitor stopped after {checks} check(s)")
        return checks

    async def cleanup(self, max_age_days: Optional[int] = None) -> List[Path]:
        """Delete reports and health records older than ``max_age_days``."""
        if max_age_days is None:
            max_age_days = self.config.diagnostics.max_age_days
        cutoff = (self.clock() - timedelta(days=max_age_days)).timestamp()

        def _prune():
            removed = []
            for directory in (self.reports_dir, self.diagnostics_dir):
                if not directory.exists():
                    continue
                for path in directory.iterdir():
                    if path.is_file() and path.stat().st_mtime < cutoff:
                        path.unlink()
                        removed.append(path)
            return removed

        removed = await asyncio.to_thread(_prune)
        logger.info(f"Cleaned up {len(removed)} report(s) older than {max_age_days} days")
        return removed
