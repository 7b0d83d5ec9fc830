"""Classify one iteration's exit code and output into an outcome."""

from __future__ import annotations

import enum

SUCCESS_SIGNAL = "<promise>SUCCESS</promise>"
FAILURE_SIGNAL = "<promise>FAILURE</promise>"


class IterationOutcome(str, enum.Enum):
    JOB_DONE = "job_done"
    FAILURE = "failure"
    SUCCESS = "success"


def scan_signals(output: str) -> tuple[bool, bool]:
    """Return (has_success_signal, has_failure_signal). Exact, case-sensitive match."""
    return SUCCESS_SIGNAL in output, FAILURE_SIGNAL in output


def classify(exit_code: int, output: str) -> IterationOutcome:
    """Map an exit code and captured output to an outcome. First match wins:

    1. SUCCESS signal present -> JOB_DONE (any exit code, beats FAILURE)
    2. FAILURE signal present -> FAILURE (any exit code)
    3. non-zero exit code     -> FAILURE
    4. otherwise              -> SUCCESS
    """
    has_success, has_failure = scan_signals(output)
    if has_success:
        return IterationOutcome.JOB_DONE
    if has_failure:
        return IterationOutcome.FAILURE
    if exit_code != 0:
        return IterationOutcome.FAILURE
    return IterationOutcome.SUCCESS
