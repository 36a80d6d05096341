"""Point-in-time records produced by one poll cycle."""
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class GPUSnapshot:
    hostname: str
    gpu_id: int
    timestamp: datetime
    gpu_name: str
    temperature: float          # °C
    memory_free: int            # MiB
    memory_used: int            # MiB
    memory_total: int           # MiB
    gpu_utilization: float      # %
    memory_utilization: float   # % (memory copy engine)


@dataclass(frozen=True)
class ProcessSnapshot:
    hostname: str
    gpu_id: int
    gpu_name: str
    timestamp: datetime
    user: str
    pid: int
    process_name: str
    used_gpu_memory: int        # MiB
    cpu_percent: float
    memory_percent: float       # host RSS share, from ps
    command: str


@dataclass(frozen=True)
class SystemImageInfo:
    hostname: str
    timestamp: datetime
    os_version: str
    kernel_version: str
    boot_image_version: str
