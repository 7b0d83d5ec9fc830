"""Shared test helpers for the agent loop test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers
(result builders, scripted executor/assembler fakes) used across test files.
"""

import sys

import pytest

from ai_executor import ExecutionError, ExecutionResult
from config import Result
from signal_relay import CancellationSource

SUCCESS = "<promise>SUCCESS</promise>"
FAILURE = "<promise>FAILURE</promise>"

posix_only = pytest.mark.skipif(
    sys.platform == "win32", reason="uses POSIX shell commands"
)


# --- ExecutionResult builders ---

def ok_result(output: str = "working...", exit_code: int = 0, duration: float = 0.01) -> ExecutionResult:
    return ExecutionResult(output=output, exit_code=exit_code, duration=duration)


def timeout_result(output: str = "partial", duration: float = 1.0) -> ExecutionResult:
    return ExecutionResult(
        output=output, duration=duration,
        error=ExecutionError.TIMEOUT, error_message="AI CLI execution timeout after 1s",
    )


def interrupted_result(duration: float = 0.5) -> ExecutionResult:
    return ExecutionResult(
        duration=duration, error=ExecutionError.INTERRUPTED, error_message="Interrupted by signal",
    )


def error_result(message: str = "Failed to start 'fake-agent'") -> ExecutionResult:
    return ExecutionResult(error=ExecutionError.EXECUTION, error_message=message)


# --- Fakes for LoopDriver collaborators ---

class ScriptedExecutor:
    """Executor fake returning queued results; the last result repeats."""

    def __init__(self, *results: ExecutionResult) -> None:
        self.results = list(results)
        self.calls: list[dict] = []

    def __call__(self, command, prompt, timeout_seconds, max_output_bytes, cancellation, echo_live):
        self.calls.append({
            "command": command,
            "prompt": prompt,
            "timeout_seconds": timeout_seconds,
            "max_output_bytes": max_output_bytes,
            "cancellation": cancellation,
            "echo_live": echo_live,
        })
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class RecordingAssembler:
    """Assembler fake that records iteration contexts and returns a fixed prompt."""

    def __init__(self, prompt: str = "PROMPT", fail_on_call: int | None = None) -> None:
        self.prompt = prompt
        self.fail_on_call = fail_on_call
        self.contexts: list = []

    def __call__(self, procedure, user_context, iteration_context, config_dir=None):
        self.contexts.append(iteration_context)
        if self.fail_on_call is not None and len(self.contexts) == self.fail_on_call:
            return Result.fail("fragment missing", "FRAGMENT_ERROR")
        return Result.ok(f"{self.prompt} #{iteration_context.current_iteration}")


class CancelOnCall:
    """Executor fake that fires the cancellation source on the Nth call."""

    def __init__(self, call_number: int, before: ExecutionResult) -> None:
        self.call_number = call_number
        self.before = before
        self.calls = 0

    def __call__(self, command, prompt, timeout_seconds, max_output_bytes, cancellation, echo_live):
        self.calls += 1
        if self.calls >= self.call_number:
            cancellation.cancel(2)
            return interrupted_result()
        return self.before


def cancelled_source() -> CancellationSource:
    source = CancellationSource()
    source.cancel()
    return source
