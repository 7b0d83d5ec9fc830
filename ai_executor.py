"""Run the external AI CLI for one iteration.

Spawns the command with the prompt on stdin, captures combined
stdout/stderr into a bounded buffer, and waits for whichever comes first:
natural exit, the per-iteration timeout, or cancellation. Never raises;
every failure mode is reported on the returned ExecutionResult.
"""

from __future__ import annotations

import enum
import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import IO, Optional

from signal_relay import CancellationSource

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.05
TERMINATE_GRACE_SECONDS = 5.0
KILL_WAIT_SECONDS = 1.0
READER_JOIN_SECONDS = 5.0
READ_CHUNK_BYTES = 65536


class ExecutionError(str, enum.Enum):
    """Why an execution did not reach a natural exit."""

    INVALID_COMMAND = "invalid_command"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    EXECUTION = "execution"


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one AI CLI invocation."""

    output: str = ""
    exit_code: int = 0
    duration: float = 0.0
    truncated: bool = False
    error: Optional[ExecutionError] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class OutputBuffer:
    """Thread-safe byte buffer that keeps only the trailing ``limit`` bytes."""

    def __init__(self, limit: int) -> None:
        self._limit = max(0, limit)
        self._data = bytearray()
        self._lock = threading.Lock()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        with self._lock:
            self._data += chunk
            overflow = len(self._data) - self._limit
            if overflow > 0:
                del self._data[:overflow]
                self.truncated = True

    def text(self) -> str:
        with self._lock:
            return self._data.decode("utf-8", errors="replace")


def _pump_output(pipe: IO[bytes], buffer: OutputBuffer, echo: Optional[IO[bytes]]) -> None:
    """Copy the child's combined output into ``buffer`` until EOF."""
    read = getattr(pipe, "read1", pipe.read)
    echo_ok = echo is not None
    try:
        while True:
            chunk = read(READ_CHUNK_BYTES)
            if not chunk:
                break
            buffer.append(chunk)
            if echo_ok:
                try:
                    echo.write(chunk)
                    echo.flush()
                except (OSError, ValueError) as e:
                    # Capture continues; only echoing stops.
                    logger.debug("Live output echo failed: %s", e)
                    echo_ok = False
    except (OSError, ValueError):
        pass  # Pipe closed by termination
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def _feed_stdin(pipe: IO[bytes], data: bytes) -> None:
    """Write the prompt to the child's stdin and close it."""
    try:
        if data:
            pipe.write(data)
    except (BrokenPipeError, OSError, ValueError):
        pass  # Child exited or closed stdin without reading
    finally:
        try:
            pipe.close()
        except (BrokenPipeError, OSError):
            pass


def _send(proc: subprocess.Popen, sig: int) -> None:
    """Signal the child's process group (POSIX) or the child itself."""
    if sys.platform != "win32":
        try:
            os.killpg(os.getpgid(proc.pid), sig)
            return
        except (ProcessLookupError, PermissionError, OSError):
            pass
    try:
        if sig == getattr(signal, "SIGKILL", None):
            proc.kill()
        else:
            proc.terminate()
    except OSError:
        pass


def terminate_process(
    proc: subprocess.Popen,
    grace_seconds: float = TERMINATE_GRACE_SECONDS,
    kill_wait_seconds: float = KILL_WAIT_SECONDS,
) -> None:
    """Stop a child: graceful request, bounded wait, forced kill, bounded wait.

    Returns even if the forced stop is never confirmed.
    """
    if proc.poll() is not None:
        return

    _send(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace_seconds)
        return
    except subprocess.TimeoutExpired:
        logger.warning(
            "Process %d did not terminate within %.1fs, sending SIGKILL",
            proc.pid, grace_seconds,
        )

    _send(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
    try:
        proc.wait(timeout=kill_wait_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Process %d still running after SIGKILL", proc.pid)


def execute(
    command: str,
    prompt: str,
    timeout_seconds: Optional[float],
    max_output_bytes: int,
    cancellation: Optional[CancellationSource] = None,
    echo_live: bool = False,
) -> ExecutionResult:
    """Run ``command`` once with ``prompt`` on stdin and report how it ended."""
    start = time.monotonic()

    def elapsed() -> float:
        return time.monotonic() - start

    try:
        args = shlex.split(command)
    except ValueError as e:
        return ExecutionResult(
            error=ExecutionError.INVALID_COMMAND,
            error_message=f"Cannot parse AI command {command!r}: {e}",
        )
    if not args:
        return ExecutionResult(
            error=ExecutionError.INVALID_COMMAND,
            error_message="AI command is empty",
        )

    if cancellation is not None and cancellation.is_cancelled():
        return ExecutionResult(
            duration=elapsed(),
            error=ExecutionError.INTERRUPTED,
            error_message="Interrupted by signal",
        )

    popen_kwargs: dict = {}
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(
            args,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            **popen_kwargs,
        )
    except (OSError, ValueError) as e:
        logger.error("Failed to start AI command %r: %s", args[0], e)
        return ExecutionResult(
            duration=elapsed(),
            error=ExecutionError.EXECUTION,
            error_message=f"Failed to start {args[0]!r}: {e}",
        )

    logger.debug("AI CLI PID: %d (%s)", proc.pid, args[0])

    buffer = OutputBuffer(max_output_bytes)
    echo = None
    if echo_live:
        echo = getattr(sys.stdout, "buffer", None)

    reader = threading.Thread(
        target=_pump_output, args=(proc.stdout, buffer, echo), daemon=True
    )
    reader.start()
    writer = threading.Thread(
        target=_feed_stdin, args=(proc.stdin, prompt.encode("utf-8")), daemon=True
    )
    writer.start()

    deadline = start + timeout_seconds if timeout_seconds is not None else None
    stop_reason: Optional[ExecutionError] = None
    try:
        while True:
            slice_seconds = POLL_INTERVAL_SECONDS
            if deadline is not None:
                slice_seconds = max(0.0, min(slice_seconds, deadline - time.monotonic()))
            try:
                proc.wait(timeout=slice_seconds)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancellation is not None and cancellation.is_cancelled():
                stop_reason = ExecutionError.INTERRUPTED
                break
            if deadline is not None and time.monotonic() >= deadline:
                stop_reason = ExecutionError.TIMEOUT
                break
    except Exception as e:
        logger.error("Failed waiting for AI CLI (PID %d): %s", proc.pid, e)
        terminate_process(proc)
        reader.join(timeout=READER_JOIN_SECONDS)
        return ExecutionResult(
            output=buffer.text(),
            duration=elapsed(),
            truncated=buffer.truncated,
            error=ExecutionError.EXECUTION,
            error_message=f"Failed waiting for AI CLI: {e}",
        )

    if stop_reason is not None:
        if stop_reason is ExecutionError.TIMEOUT:
            logger.debug("AI CLI exceeded %ss, terminating PID %d", timeout_seconds, proc.pid)
            message = f"AI CLI execution timeout after {timeout_seconds}s"
        else:
            logger.debug("Cancellation requested, terminating PID %d", proc.pid)
            message = "Interrupted by signal"
        terminate_process(proc)
        reader.join(timeout=READER_JOIN_SECONDS)
        return ExecutionResult(
            output=buffer.text(),
            duration=elapsed(),
            truncated=buffer.truncated,
            error=stop_reason,
            error_message=message,
        )

    # Descendants may keep the pipe open after the child exits.
    reader.join(timeout=READER_JOIN_SECONDS)
    if reader.is_alive():
        logger.warning(
            "Output pipe still open %.0fs after PID %d exited; returning captured output",
            READER_JOIN_SECONDS, proc.pid,
        )
    writer.join(timeout=READER_JOIN_SECONDS)

    return ExecutionResult(
        output=buffer.text(),
        exit_code=proc.returncode,
        duration=elapsed(),
        truncated=buffer.truncated,
    )
