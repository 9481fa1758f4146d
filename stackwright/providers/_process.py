"""Provider layer — Subprocess helpers shared by the kubectl and helm adapters."""

from __future__ import annotations

import asyncio
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

from stackwright.exceptions import (
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from stackwright.logging import get_logger

log = get_logger(__name__)

# stderr fragments that indicate the API server or network is briefly
# unavailable rather than the request being wrong.
TRANSIENT_MARKERS = (
    "connection refused",
    "i/o timeout",
    "tls handshake timeout",
    "the server is currently unable",
    "connection reset by peer",
    "another operation (install/upgrade/rollback) is in progress",
)


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    args: Sequence[str],
    stdin: str | None = None,
    timeout: float = 300.0,
    kind: str | None = None,
    resource_id: str | None = None,
) -> CommandResult:
    """Run *args* and capture its output.

    A non-zero exit code is returned, not raised; callers decide whether it
    means "not found" or a real failure.

    Raises:
        PermanentProviderError: The executable does not exist.
        TransientProviderError: The command exceeded *timeout*.
    """
    argv = list(args)
    log.debug("command_started", command=argv[0], args=argv[1:])
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.PIPE if stdin is not None else None,
        )
    except FileNotFoundError as exc:
        raise PermanentProviderError(
            f"Executable not found: {argv[0]}",
            kind=kind,
            resource_id=resource_id,
        ) from exc

    try:
        stdin_bytes = stdin.encode() if stdin is not None else None
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(input=stdin_bytes), timeout=timeout
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.communicate()
        raise TransientProviderError(
            f"Command timed out after {timeout:g}s: {argv[0]} {' '.join(argv[1:3])}",
            kind=kind,
            resource_id=resource_id,
        )
    except asyncio.CancelledError:
        proc.kill()
        raise

    result = CommandResult(
        args=argv,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_bytes.decode(errors="replace") if stdout_bytes else "",
        stderr=stderr_bytes.decode(errors="replace") if stderr_bytes else "",
    )
    log.debug("command_finished", command=argv[0], return_code=result.returncode)
    return result


def classify_failure(
    result: CommandResult, kind: str | None = None, resource_id: str | None = None
) -> ProviderError:
    """Turn a failed command into a transient or permanent provider error."""
    stderr = result.stderr.strip()
    message = f"{Path(result.args[0]).name} exited with code {result.returncode}: {stderr}"
    lowered = stderr.lower()
    error_cls: type[ProviderError] = PermanentProviderError
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        error_cls = TransientProviderError
    return error_cls(
        message,
        kind=kind,
        resource_id=resource_id,
        context={"return_code": result.returncode},
    )


@contextmanager
def temp_file(content: str, suffix: str = "") -> Iterator[str]:
    """Write *content* to a private temporary file and yield its path."""
    fd, path = tempfile.mkstemp(prefix="stackwright-", suffix=suffix)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(path, 0o600)
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
