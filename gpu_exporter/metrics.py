"""
Prometheus projection of GPU / process snapshots.

Gauges live in a dedicated CollectorRegistry created and registered once per
GPUMetrics instance. Writes come from the poll thread only; prometheus_client
guards each sample with its own lock, so scrapes can read concurrently.

Series are only ever overwritten. A GPU or process that disappears keeps
its last value until the exporter restarts.
"""
import time
from collections import Counter
from typing import Iterable

from prometheus_client import CollectorRegistry, Gauge

from gpu_exporter.snapshots import GPUSnapshot, ProcessSnapshot, SystemImageInfo

MIB = 1024 * 1024

GPU_LABELS = ["hostname", "gpu_id", "gpu_name"]
PROCESS_LABELS = GPU_LABELS + ["pid", "user", "command"]


class GPUMetrics:
    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else CollectorRegistry(auto_describe=True)
        r = self.registry

        # ── Per GPU ───────────────────────────────────────────────────────────
        self.gpu_temperature    = Gauge("nvidia_gpu_temperature_celsius",        "GPU temperature in Celsius",                  GPU_LABELS, registry=r)
        self.gpu_memory_free    = Gauge("nvidia_gpu_memory_free_bytes",          "GPU free memory in bytes",                    GPU_LABELS, registry=r)
        self.gpu_memory_used    = Gauge("nvidia_gpu_memory_used_bytes",          "GPU used memory in bytes",                    GPU_LABELS, registry=r)
        self.gpu_memory_total   = Gauge("nvidia_gpu_memory_total_bytes",         "GPU total memory in bytes",                   GPU_LABELS, registry=r)
        self.gpu_utilization    = Gauge("nvidia_gpu_utilization_percent",        "GPU utilization percentage",                  GPU_LABELS, registry=r)
        self.memory_utilization = Gauge("nvidia_gpu_memory_utilization_percent", "GPU memory copy utilization percentage",      GPU_LABELS, registry=r)

        # ── Per process ───────────────────────────────────────────────────────
        self.process_memory     = Gauge("nvidia_gpu_process_memory_bytes",       "GPU memory used by a process in bytes",       PROCESS_LABELS, registry=r)
        self.process_cpu        = Gauge("nvidia_gpu_process_cpu_percent",        "Host CPU usage of a GPU process (ps %cpu)",   PROCESS_LABELS, registry=r)
        self.process_host_mem   = Gauge("nvidia_gpu_process_host_memory_percent","Host memory share of a GPU process (ps %mem)",PROCESS_LABELS, registry=r)
        self.process_count      = Gauge("nvidia_gpu_process_count",              "Number of compute processes on the GPU",      GPU_LABELS, registry=r)

        # ── Host / exporter ───────────────────────────────────────────────────
        self.system_image_info  = Gauge("nvidia_system_image_info",              "System image information, value is always 1",
                                        ["hostname", "boot_image_version", "os_version", "kernel_version"], registry=r)
        self.collection_success = Gauge("nvidia_gpu_exporter_last_collection_success",
                                        "1 if the last collection of this kind succeeded, 0 otherwise", ["collector"], registry=r)
        self.collection_time    = Gauge("nvidia_gpu_exporter_last_collection_timestamp_seconds",
                                        "Unix time of the last collection attempt", ["collector"], registry=r)

    def update_gpu(self, snapshots: Iterable[GPUSnapshot]) -> None:
        for s in snapshots:
            labels = [s.hostname, str(s.gpu_id), s.gpu_name]

            self.gpu_temperature.labels(*labels).set(s.temperature)
            self.gpu_memory_free.labels(*labels).set(s.memory_free * MIB)
            self.gpu_memory_used.labels(*labels).set(s.memory_used * MIB)
            self.gpu_memory_total.labels(*labels).set(s.memory_total * MIB)
            self.gpu_utilization.labels(*labels).set(s.gpu_utilization)
            self.memory_utilization.labels(*labels).set(s.memory_utilization)

    def update_processes(self, snapshots: Iterable[ProcessSnapshot]) -> None:
        per_gpu: Counter = Counter()
        for p in snapshots:
            gpu_labels = (p.hostname, str(p.gpu_id), p.gpu_name)
            per_gpu[gpu_labels] += 1
            labels = [*gpu_labels, str(p.pid), p.user, p.command]

            self.process_memory.labels(*labels).set(p.used_gpu_memory * MIB)
            self.process_cpu.labels(*labels).set(p.cpu_percent)
            self.process_host_mem.labels(*labels).set(p.memory_percent)

        for gpu_labels, count in per_gpu.items():
            self.process_count.labels(*gpu_labels).set(count)

    def update_system_info(self, info: SystemImageInfo) -> None:
        self.system_image_info.labels(
            info.hostname, info.boot_image_version, info.os_version, info.kernel_version
        ).set(1)

    def record_collection(self, collector: str, success: bool) -> None:
        self.collection_success.labels(collector).set(1 if success else 0)
        self.collection_time.labels(collector).set(time.time())
