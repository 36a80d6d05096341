"""
Thin wrapper around subprocess for the external tools we scrape.

Every call is synchronous and bounded by a timeout. A hung tool is killed
by subprocess.run and reported as a CommandFailed with timed_out=True.
No retries here; the next poll tick is the retry.
"""
import subprocess
from typing import Sequence


class CommandFailed(Exception):
    """Raised when an external command exits non-zero, times out or cannot start."""

    def __init__(
        self,
        args: Sequence[str],
        exit_code: int | None = None,
        stderr: str = "",
        stdout: bytes = b"",
        timed_out: bool = False,
    ):
        self.command = list(args)
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        self.timed_out = timed_out
        super().__init__(self._describe())

    def _describe(self) -> str:
        cmd = " ".join(self.command)
        if self.timed_out:
            return f"{cmd}: timed out"
        if self.exit_code is None:
            return f"{cmd}: {self.stderr or 'could not be executed'}"
        detail = f": {self.stderr.strip()}" if self.stderr.strip() else ""
        return f"{cmd}: exit status {self.exit_code}{detail}"


def run_command(args: Sequence[str], timeout: float) -> bytes:
    """Run ``args`` and return raw stdout bytes."""
    try:
        result = subprocess.run(
            list(args),
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        stderr = (exc.stderr or b"").decode("utf-8", errors="replace")
        raise CommandFailed(args, stderr=stderr, timed_out=True) from exc
    except OSError as exc:
        # FileNotFoundError / PermissionError
        raise CommandFailed(args, stderr=str(exc)) from exc

    if result.returncode != 0:
        raise CommandFailed(
            args,
            exit_code=result.returncode,
            stderr=result.stderr.decode("utf-8", errors="replace"),
            stdout=result.stdout,
        )
    return result.stdout
