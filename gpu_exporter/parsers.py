"""
Text → snapshot parsing for nvidia-smi and ps output.

Policy differs per input on purpose:
  GPU rows      : strict per row: wrong column count or a malformed number
                  drops that row, siblings survive. "Not supported" sentinels
                  are zero-filled.
  process rows  : the rows are assembled by the collector itself, so a wrong
                  field count means the pipeline is broken and the whole
                  batch is rejected (ProcessParseError).
"""
import csv
import re
from datetime import datetime
from typing import Iterable, NamedTuple, Sequence

import structlog

from gpu_exporter.snapshots import GPUSnapshot, ProcessSnapshot

log = structlog.get_logger(__name__)

TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M:%S.%f"

GPU_QUERY_FIELDS = (
    "timestamp",
    "index",
    "name",
    "memory.free",
    "memory.used",
    "memory.total",
    "utilization.gpu",
    "utilization.memory",
    "temperature.gpu",
)
PROCESS_QUERY_FIELDS = (
    "timestamp",
    "gpu_uuid",
    "pid",
    "process_name",
    "used_gpu_memory",
)
# stage-1 fields + user, %mem, %cpu, command
PROCESS_ROW_FIELDS = len(PROCESS_QUERY_FIELDS) + 4

MAX_COMMAND_LENGTH = 1024
TRUNCATION_MARKER = "..."

UNKNOWN = "unknown"

SENTINELS = frozenset({"", "N/A", "[N/A]", "[Not Supported]"})

_NUMBER_RE = re.compile(
    r"^(?P<value>\d+(?:\.\d+)?)\s*(?:%|°C|℃|C|W|MiB|GiB|KiB|MB|GB|KB)?$"
)

# lines nvidia-smi prints instead of data when a PID vanished or none exist
_PROCESS_NOISE = ("Not Found", "No running processes found")


class ProcessParseError(ValueError):
    """A joined process row did not have the expected shape."""


def strip_units(value: str) -> float:
    """Return the numeric part of a unit-suffixed nvidia-smi cell.

    ``"1024 MiB"`` → 1024.0, ``"45 %"`` → 45.0, ``"N/A"`` → 0.0.
    Raises ValueError for anything that is not an unsigned number followed
    by at most one known unit.
    """
    s = value.strip()
    if s in SENTINELS:
        return 0.0
    match = _NUMBER_RE.match(s)
    if match is None:
        raise ValueError(f"not a number: {value!r}")
    return float(match.group("value"))


def strip_units_int(value: str) -> int:
    number = strip_units(value)
    if not number.is_integer():
        raise ValueError(f"not a whole number: {value!r}")
    return int(number)


def parse_timestamp(value: str) -> datetime:
    """Parse an nvidia-smi timestamp, falling back to now."""
    try:
        return datetime.strptime(value.strip(), TIMESTAMP_FORMAT)
    except ValueError:
        return datetime.now()


def _csv_rows(text: str) -> list[list[str]]:
    # One reader per line: a stray quote must not swallow the following rows.
    rows: list[list[str]] = []
    for line in text.strip().splitlines():
        if not line.strip():
            continue
        try:
            row = next(csv.reader([line], skipinitialspace=True))
        except csv.Error:
            log.debug("csv_line_skipped", line=line)
            continue
        rows.append([cell.strip() for cell in row])
    return rows


def parse_gpu_rows(text: str, hostname: str) -> list[GPUSnapshot]:
    snapshots: list[GPUSnapshot] = []
    for row in _csv_rows(text):
        if len(row) != len(GPU_QUERY_FIELDS):
            log.debug("gpu_row_skipped", reason="column_count", columns=len(row))
            continue

        (ts, index, name, mem_free, mem_used, mem_total,
         util_gpu, util_mem, temp) = row

        try:
            snapshot = GPUSnapshot(
                hostname=hostname,
                gpu_id=int(index),
                timestamp=parse_timestamp(ts),
                gpu_name=name or UNKNOWN,
                temperature=strip_units(temp),
                memory_free=strip_units_int(mem_free),
                memory_used=strip_units_int(mem_used),
                memory_total=strip_units_int(mem_total),
                gpu_utilization=strip_units(util_gpu),
                memory_utilization=strip_units(util_mem),
            )
        except ValueError as exc:
            log.debug("gpu_row_skipped", reason="malformed_value", error=str(exc))
            continue
        snapshots.append(snapshot)
    return snapshots


class GPUIdentity(NamedTuple):
    index: int
    name: str


def parse_uuid_index(text: str) -> dict[str, GPUIdentity]:
    """Parse ``index,uuid,name`` rows into a uuid → (index, name) mapping."""
    mapping: dict[str, GPUIdentity] = {}
    for row in _csv_rows(text):
        if len(row) != 3:
            continue
        index, uuid, name = row
        try:
            mapping[uuid] = GPUIdentity(int(index), name or UNKNOWN)
        except ValueError:
            continue
    return mapping


class UUIDIndexResolver:
    """Maps the long GPU UUIDs used by the compute-apps query to short indices.

    Also carries each GPU name, which labels the process series.
    """

    def __init__(self, mapping: dict[str, GPUIdentity]):
        self._mapping = dict(mapping)
        self._names = {gpu.index: gpu.name for gpu in self._mapping.values()}

    def resolve(self, uuid: str) -> int:
        # A miss falls back to GPU 0 so the process still gets accounted.
        try:
            return self._mapping[uuid].index
        except KeyError:
            log.warning("gpu_uuid_unresolved", gpu_uuid=uuid, fallback_index=0)
            return 0

    def gpu_name(self, index: int) -> str:
        return self._names.get(index, UNKNOWN)

    def __len__(self) -> int:
        return len(self._mapping)


def parse_compute_apps(text: str) -> list[list[str]]:
    """Split the compute-apps query output into raw stage-1 rows."""
    lines = [
        line for line in text.strip().splitlines()
        if line.strip() and not any(noise in line for noise in _PROCESS_NOISE)
    ]
    return _csv_rows("\n".join(lines))


def parse_ps_table(text: str) -> dict[int, list[str]]:
    """Parse ``ps -o pid,user,%mem,%cpu,args`` output keyed by PID.

    Values are ``[user, %mem, %cpu, command]``. Decimal commas from
    non-C locales are turned into dots.
    """
    table: dict[int, list[str]] = {}
    for line in text.splitlines():
        parts = line.split(None, 4)
        if len(parts) < 4:
            continue
        try:
            pid = int(parts[0])
        except ValueError:
            continue
        user, mem, cpu = parts[1], parts[2].replace(",", "."), parts[3].replace(",", ".")
        command = parts[4].strip() if len(parts) == 5 else ""
        table[pid] = [user, mem, cpu, command]
    return table


def join_process_rows(
    apps: Iterable[Sequence[str]],
    ps_table: dict[int, list[str]],
) -> list[list[str]]:
    """Attach ps columns to each compute-app row.

    A PID missing from the process table (it exited between the two
    queries) gets ``unknown, 0.0, 0.0, <process_name>`` instead of being
    dropped, keeping its GPU memory visible.
    """
    joined: list[list[str]] = []
    for app in apps:
        row = list(app)
        process_name = row[3] if len(row) > 3 else ""
        try:
            extra = ps_table.get(int(row[2])) if len(row) > 2 else None
        except ValueError:
            extra = None
        if extra is None:
            extra = [UNKNOWN, "0.0", "0.0", process_name]
        joined.append(row + list(extra))
    return joined


def truncate_command(command: str) -> str:
    if len(command) <= MAX_COMMAND_LENGTH:
        return command
    return command[: MAX_COMMAND_LENGTH - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def parse_process_rows(
    rows: Iterable[Sequence[str]],
    resolver: UUIDIndexResolver,
    hostname: str,
) -> list[ProcessSnapshot]:
    rows = list(rows)
    for n, row in enumerate(rows):
        if len(row) != PROCESS_ROW_FIELDS:
            raise ProcessParseError(
                f"row {n}: expected {PROCESS_ROW_FIELDS} fields, got {len(row)}"
            )

    snapshots: list[ProcessSnapshot] = []
    for row in rows:
        (ts, gpu_uuid, pid_s, name, gpu_mem,
         user, mem_pct, cpu_pct, command) = (field.strip() for field in row)

        try:
            pid = int(pid_s)
        except ValueError:
            log.debug("process_row_skipped", reason="pid", pid=pid_s)
            continue
        if pid <= 0:
            log.debug("process_row_skipped", reason="pid", pid=pid_s)
            continue

        try:
            used_gpu_memory = strip_units_int(gpu_mem)
            memory_percent = strip_units(mem_pct)
            cpu_percent = strip_units(cpu_pct)
        except ValueError as exc:
            log.debug("process_row_skipped", reason="malformed_value", pid=pid, error=str(exc))
            continue

        gpu_id = resolver.resolve(gpu_uuid)
        process_name = name or UNKNOWN
        snapshots.append(
            ProcessSnapshot(
                hostname=hostname,
                gpu_id=gpu_id,
                gpu_name=resolver.gpu_name(gpu_id),
                timestamp=parse_timestamp(ts),
                user=user or UNKNOWN,
                pid=pid,
                process_name=process_name,
                used_gpu_memory=used_gpu_memory,
                cpu_percent=cpu_percent,
                memory_percent=memory_percent,
                command=truncate_command(command or process_name),
            )
        )
    return snapshots
