"""
nvidia-smi / ps collector.

Owns host identity and the command lines for every query; parsing lives in
gpu_exporter.parsers. All calls go through an injectable runner so tests
can feed canned output.
"""
import platform
import socket
import time
from datetime import datetime
from typing import Callable, Sequence

import structlog

from gpu_exporter import parsers
from gpu_exporter.config import Settings
from gpu_exporter.shell import CommandFailed, run_command
from gpu_exporter.snapshots import GPUSnapshot, ProcessSnapshot, SystemImageInfo

log = structlog.get_logger(__name__)

Runner = Callable[[Sequence[str], float], bytes]


class CollectorUnavailable(RuntimeError):
    """nvidia-smi cannot be executed on this host."""


def resolve_hostname(override: str = "", node_name: str = "") -> str:
    if override:
        return override
    if node_name:
        return node_name
    return socket.gethostname()


class Collector:
    def __init__(
        self,
        nvidia_smi_path: str = "nvidia-smi",
        timeout: float = 10.0,
        hostname: str | None = None,
        boot_image_version: str = "unknown",
        runner: Runner = run_command,
    ):
        self.nvidia_smi_path = nvidia_smi_path
        self.timeout = timeout
        self.hostname = hostname or socket.gethostname()
        self.boot_image_version = boot_image_version
        self._run = runner

    @classmethod
    def from_settings(cls, settings: Settings, runner: Runner = run_command) -> "Collector":
        return cls(
            nvidia_smi_path=settings.nvidia_smi_path,
            timeout=settings.timeout,
            hostname=resolve_hostname(settings.hostname_override, settings.node_name),
            boot_image_version=settings.boot_image_version,
            runner=runner,
        )

    def _smi(self, *args: str, timeout: float | None = None) -> str:
        raw = self._run([self.nvidia_smi_path, *args], timeout or self.timeout)
        return raw.decode("utf-8", errors="replace")

    def check_availability(self) -> None:
        """Raise CollectorUnavailable unless ``nvidia-smi --version`` succeeds."""
        try:
            self._smi("--version")
        except CommandFailed as exc:
            raise CollectorUnavailable(f"nvidia-smi not found or cannot be executed: {exc}") from exc

    # ── GPUs ──────────────────────────────────────────────────────────────────

    def collect_gpu_metrics(self) -> list[GPUSnapshot]:
        output = self._smi(
            f"--query-gpu={','.join(parsers.GPU_QUERY_FIELDS)}",
            "--format=csv,noheader",
        )
        return parsers.parse_gpu_rows(output, self.hostname)

    def build_resolver(self, timeout: float | None = None) -> parsers.UUIDIndexResolver:
        output = self._smi("--query-gpu=index,uuid,name", "--format=csv,noheader", timeout=timeout)
        resolver = parsers.UUIDIndexResolver(parsers.parse_uuid_index(output))
        log.debug("gpu_uuid_map_built", gpus=len(resolver))
        return resolver

    # ── Processes ─────────────────────────────────────────────────────────────

    def _lookup_processes(self, pids: list[int], timeout: float) -> dict[int, list[str]]:
        if not pids:
            return {}
        args = ["ps", "--no-headers", "-o", "pid,user,%mem,%cpu,args",
                "-p", ",".join(str(pid) for pid in pids)]
        try:
            raw = self._run(args, timeout)
        except CommandFailed as exc:
            # ps exits 1 when none of the PIDs exist any more
            if exc.exit_code == 1 and not exc.stdout.strip():
                return {}
            raise
        return parsers.parse_ps_table(raw.decode("utf-8", errors="replace"))

    def collect_processes(self) -> list[ProcessSnapshot]:
        """Two-stage query: compute apps from nvidia-smi, owners from ps.

        The whole pipeline shares a budget of twice the command timeout.
        Raises CommandFailed or parsers.ProcessParseError.
        """
        deadline = time.monotonic() + self.timeout * 2

        def remaining() -> float:
            left = deadline - time.monotonic()
            if left <= 0:
                raise CommandFailed(["process pipeline"], timed_out=True)
            return min(self.timeout, left)

        output = self._smi(
            f"--query-compute-apps={','.join(parsers.PROCESS_QUERY_FIELDS)}",
            "--format=csv,noheader",
            timeout=remaining(),
        )
        apps = parsers.parse_compute_apps(output)
        if not apps:
            return []

        pids = []
        for app in apps:
            if len(app) > 2 and app[2].isdigit():
                pids.append(int(app[2]))
        ps_table = self._lookup_processes(pids, remaining())
        resolver = self.build_resolver(timeout=remaining())

        rows = parsers.join_process_rows(apps, ps_table)
        return parsers.parse_process_rows(rows, resolver, self.hostname)

    # ── System image ──────────────────────────────────────────────────────────

    def collect_system_info(self) -> SystemImageInfo:
        try:
            os_release = platform.freedesktop_os_release()
            os_version = os_release.get("PRETTY_NAME") or os_release.get("NAME", "unknown")
        except OSError:
            os_version = platform.platform()
        return SystemImageInfo(
            hostname=self.hostname,
            timestamp=datetime.now(),
            os_version=os_version,
            kernel_version=platform.release() or "unknown",
            boot_image_version=self.boot_image_version or "unknown",
        )
