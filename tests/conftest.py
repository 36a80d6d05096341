"""Shared fixtures: canned nvidia-smi / ps output and a fake command runner."""
from typing import Sequence

import pytest

from gpu_exporter.collector import Collector
from gpu_exporter.metrics import GPUMetrics
from gpu_exporter.shell import CommandFailed

GPU_OUTPUT = (
    "2024/01/01 12:00:00.000, 0, NVIDIA A100-SXM4-40GB, 39000 MiB, 1536 MiB, 40960 MiB, 45 %, 10 %, 65\n"
    "2024/01/01 12:00:00.000, 1, NVIDIA A100-SXM4-40GB, 40960 MiB, 0 MiB, 40960 MiB, 0 %, 0 %, 38\n"
)

UUID_OUTPUT = (
    "0, GPU-11111111-2222-3333-4444-555555555555, NVIDIA A100-SXM4-40GB\n"
    "1, GPU-66666666-7777-8888-9999-000000000000, NVIDIA A100-SXM4-40GB\n"
)

COMPUTE_APPS_OUTPUT = (
    "2024/01/01 12:00:01.000, GPU-11111111-2222-3333-4444-555555555555, 4242, python, 1024 MiB\n"
    "2024/01/01 12:00:01.000, GPU-11111111-2222-3333-4444-555555555555, 4343, /usr/bin/vllm, 512 MiB\n"
    "2024/01/01 12:00:01.000, GPU-66666666-7777-8888-9999-000000000000, 5151, python3, 2048 MiB\n"
)

# 5151 already exited by the time ps ran
PS_OUTPUT = (
    " 4242 alice     2.5 97.0 python train.py --epochs 5\n"
    " 4343 bob       0,7  3,2 /usr/bin/vllm serve --model llama\n"
)


class FakeRunner:
    """Stands in for shell.run_command; routes on the query argument."""

    def __init__(self, outputs: dict[str, bytes | Exception]):
        self.outputs = outputs
        self.calls: list[tuple[list[str], float]] = []

    def __call__(self, args: Sequence[str], timeout: float) -> bytes:
        args = list(args)
        self.calls.append((args, timeout))
        key = self._key(args)
        result = self.outputs.get(key)
        if result is None:
            raise CommandFailed(args, exit_code=127, stderr=f"no canned output for {key}")
        if isinstance(result, Exception):
            raise result
        return result

    @staticmethod
    def _key(args: list[str]) -> str:
        if args[0] == "ps":
            return "ps"
        for arg in args[1:]:
            if arg.startswith("--query-gpu=index,uuid"):
                return "uuid"
            if arg.startswith("--query-gpu="):
                return "gpu"
            if arg.startswith("--query-compute-apps="):
                return "apps"
            if arg == "--version":
                return "version"
        return " ".join(args)

    def called(self, key: str) -> bool:
        return any(self._key(args) == key for args, _ in self.calls)


@pytest.fixture
def canned_outputs():
    return {
        "version": b"NVIDIA-SMI version  : 550.54.15\n",
        "gpu": GPU_OUTPUT.encode(),
        "uuid": UUID_OUTPUT.encode(),
        "apps": COMPUTE_APPS_OUTPUT.encode(),
        "ps": PS_OUTPUT.encode(),
    }


@pytest.fixture
def fake_runner(canned_outputs):
    return FakeRunner(canned_outputs)


@pytest.fixture
def collector(fake_runner):
    return Collector(timeout=5.0, hostname="node-a", runner=fake_runner)


@pytest.fixture
def gpu_metrics():
    return GPUMetrics()
