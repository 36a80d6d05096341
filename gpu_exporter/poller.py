"""
Background poll loop: collect → project, once per interval.

One daemon thread, stages run sequentially (GPUs, then processes) and never
overlap. A failing stage is logged and skipped; the next tick is the retry.
"""
import threading

import structlog

from gpu_exporter.collector import Collector
from gpu_exporter.metrics import GPUMetrics
from gpu_exporter.parsers import ProcessParseError
from gpu_exporter.shell import CommandFailed

log = structlog.get_logger(__name__)


class Poller:
    def __init__(
        self,
        collector: Collector,
        metrics: GPUMetrics,
        interval: float,
        track_system_info: bool = True,
    ):
        self.collector = collector
        self.metrics = metrics
        self.interval = interval
        self.track_system_info = track_system_info
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def collect_gpus(self) -> bool:
        try:
            snapshots = self.collector.collect_gpu_metrics()
        except CommandFailed as exc:
            log.error("gpu_collection_failed", error=str(exc), timed_out=exc.timed_out)
            self.metrics.record_collection("gpu", False)
            return False
        except Exception:
            log.exception("gpu_collection_error")
            self.metrics.record_collection("gpu", False)
            return False

        self.metrics.update_gpu(snapshots)
        self.metrics.record_collection("gpu", True)
        log.info("gpu_metrics_updated", items=len(snapshots))
        return True

    def collect_processes(self) -> bool:
        try:
            processes = self.collector.collect_processes()
        except (CommandFailed, ProcessParseError) as exc:
            log.error("process_collection_failed", error=str(exc))
            self.metrics.record_collection("processes", False)
            return False
        except Exception:
            log.exception("process_collection_error")
            self.metrics.record_collection("processes", False)
            return False

        self.metrics.update_processes(processes)
        self.metrics.record_collection("processes", True)
        if processes:
            log.info("process_metrics_updated", processes=len(processes))
        else:
            log.info("process_metrics_updated", processes=0, note="no GPU processes running")
        return True

    def run_once(self) -> None:
        self.collect_gpus()
        self.collect_processes()

    def _loop(self) -> None:
        if self.track_system_info:
            try:
                self.metrics.update_system_info(self.collector.collect_system_info())
            except Exception:
                log.exception("system_info_error")

        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self._loop, name="gpu-poller", daemon=True)
        self._thread.start()
        log.info("poller_started", interval=self.interval)
        return self._thread

    def stop(self) -> None:
        # Signal only; the daemon thread is left to die with the process.
        self._stop.set()
