import argparse
import re
from typing import Literal, Sequence

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float:
    """Seconds from a plain number or a duration such as ``10s``, ``500ms``, ``1m30s``."""
    s = value.strip()
    try:
        return float(s)
    except ValueError:
        pass
    parts = list(_DURATION_RE.finditer(s))
    if not parts or "".join(m.group(0) for m in parts) != s:
        raise ValueError(f"invalid duration: {value!r}")
    return sum(float(m.group(1)) * _DURATION_UNITS[m.group(2)] for m in parts)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # HTTP listen
    host: str = Field("0.0.0.0", validation_alias="EXPORTER_HOST")
    port: int = Field(8080, ge=1, le=65535, validation_alias="EXPORTER_PORT")

    # Poll loop (seconds)
    interval: float = Field(15.0, gt=0, validation_alias="EXPORTER_INTERVAL")

    # nvidia-smi
    nvidia_smi_path: str = Field("nvidia-smi", validation_alias="NVIDIA_SMI_PATH")
    # plain seconds or a duration string ("10s", "1m30s")
    timeout: float = Field(10.0, gt=0, validation_alias="EXPORTER_TIMEOUT")

    # Host identity: override > NODE_NAME (k8s downward API) > OS hostname
    hostname_override: str = Field("", validation_alias="HOSTNAME_OVERRIDE")
    node_name: str = Field("", validation_alias="NODE_NAME")

    # System image info gauge
    track_system_info: bool = Field(True, validation_alias="TRACK_SYSTEM_INFO")
    boot_image_version: str = Field("unknown", validation_alias="BOOT_IMAGE_VERSION")

    # Logging
    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field("json", validation_alias="LOG_FORMAT")

    # Seconds to let in-flight scrapes finish after SIGINT/SIGTERM
    shutdown_grace_seconds: int = Field(30, ge=1, validation_alias="SHUTDOWN_GRACE_SECONDS")

    @field_validator("timeout", mode="before")
    @classmethod
    def _timeout_duration(cls, value):
        if isinstance(value, str):
            return parse_duration(value)
        return value


def build_parser() -> argparse.ArgumentParser:
    # Defaults are None so only flags given on the command line override env.
    parser = argparse.ArgumentParser(
        prog="gpu-exporter",
        description="Prometheus exporter for nvidia-smi GPU and process metrics",
    )
    parser.add_argument("--host", default=None, help="HTTP server host")
    parser.add_argument("--port", type=int, default=None, help="HTTP server port")
    parser.add_argument("--interval", type=float, default=None,
                        help="Metrics update interval (seconds)")
    parser.add_argument("--timeout", default=None,
                        help="nvidia-smi command timeout (seconds, or a duration like 10s)")
    parser.add_argument("--nvidia-smi-path", dest="nvidia_smi_path", default=None,
                        help="Path to nvidia-smi command")
    parser.add_argument("--hostname", dest="hostname_override", default=None,
                        help="Hostname override")
    parser.add_argument("--no-system-info", dest="track_system_info",
                        action="store_const", const=False, default=None,
                        help="Do not export the system image info gauge")
    parser.add_argument("--log-level", dest="log_level", default=None)
    parser.add_argument("--log-format", dest="log_format", choices=["json", "console"], default=None)
    return parser


def load_settings(argv: Sequence[str] | None = None) -> Settings:
    """Merge defaults, environment and command-line flags (flags win).

    Raises pydantic.ValidationError on invalid values.
    """
    args = build_parser().parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if v is not None}

    settings = Settings()
    if overrides:
        # model_validate skips env loading, so flags cannot be shadowed by env
        settings = Settings.model_validate({**settings.model_dump(), **overrides})
    return settings
