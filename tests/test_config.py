"""Settings: defaults, environment, flags and validation."""
import pytest
from pydantic import ValidationError

from gpu_exporter.config import load_settings, parse_duration

ENV_VARS = (
    "EXPORTER_HOST", "EXPORTER_PORT", "EXPORTER_INTERVAL", "EXPORTER_TIMEOUT",
    "NVIDIA_SMI_PATH", "HOSTNAME_OVERRIDE", "NODE_NAME", "TRACK_SYSTEM_INFO",
    "BOOT_IMAGE_VERSION", "LOG_LEVEL", "LOG_FORMAT", "SHUTDOWN_GRACE_SECONDS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    # keep a stray .env in the repo root out of the picture
    monkeypatch.chdir(tmp_path)


def test_defaults():
    s = load_settings([])
    assert s.host == "0.0.0.0"
    assert s.port == 8080
    assert s.interval == 15.0
    assert s.timeout == 10.0
    assert s.nvidia_smi_path == "nvidia-smi"
    assert s.hostname_override == ""
    assert s.track_system_info is True
    assert s.log_level == "INFO"


def test_environment(monkeypatch):
    monkeypatch.setenv("EXPORTER_PORT", "9400")
    monkeypatch.setenv("EXPORTER_INTERVAL", "5")
    monkeypatch.setenv("NVIDIA_SMI_PATH", "/usr/local/bin/nvidia-smi")
    monkeypatch.setenv("NODE_NAME", "gpu-node-3")
    monkeypatch.setenv("TRACK_SYSTEM_INFO", "false")
    s = load_settings([])
    assert s.port == 9400
    assert s.interval == 5.0
    assert s.nvidia_smi_path == "/usr/local/bin/nvidia-smi"
    assert s.node_name == "gpu-node-3"
    assert s.track_system_info is False


def test_flags_override_environment(monkeypatch):
    monkeypatch.setenv("EXPORTER_PORT", "9400")
    monkeypatch.setenv("EXPORTER_TIMEOUT", "3")
    s = load_settings(["--port", "9500", "--hostname", "edge-1", "--no-system-info"])
    assert s.port == 9500
    assert s.timeout == 3.0
    assert s.hostname_override == "edge-1"
    assert s.track_system_info is False


def test_dotenv_file(tmp_path):
    (tmp_path / ".env").write_text("EXPORTER_INTERVAL=30\n")
    assert load_settings([]).interval == 30.0


@pytest.mark.parametrize("argv", [
    ["--interval", "0"],
    ["--interval", "-1"],
    ["--timeout", "0"],
    ["--port", "0"],
    ["--port", "70000"],
])
def test_invalid_flags_rejected(argv):
    with pytest.raises(ValidationError):
        load_settings(argv)


def test_invalid_environment_rejected(monkeypatch):
    monkeypatch.setenv("EXPORTER_INTERVAL", "-5")
    with pytest.raises(ValidationError):
        load_settings([])


@pytest.mark.parametrize("raw, seconds", [
    ("10", 10.0),
    ("2.5", 2.5),
    ("10s", 10.0),
    ("500ms", 0.5),
    ("1m30s", 90.0),
    ("1h", 3600.0),
])
def test_parse_duration(raw, seconds):
    assert parse_duration(raw) == seconds


@pytest.mark.parametrize("raw", ["", "ten", "10x", "s", "-5s", "10s junk"])
def test_parse_duration_rejects(raw):
    with pytest.raises(ValueError):
        parse_duration(raw)


def test_timeout_accepts_duration(monkeypatch):
    monkeypatch.setenv("EXPORTER_TIMEOUT", "15s")
    assert load_settings([]).timeout == 15.0
    assert load_settings(["--timeout", "750ms"]).timeout == 0.75


def test_shutdown_grace_whole_seconds(monkeypatch):
    monkeypatch.setenv("SHUTDOWN_GRACE_SECONDS", "45")
    assert load_settings([]).shutdown_grace_seconds == 45

    monkeypatch.setenv("SHUTDOWN_GRACE_SECONDS", "0.5")
    with pytest.raises(ValidationError):
        load_settings([])
