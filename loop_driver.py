"""Iteration loop driver for an external AI coding agent.

Runs the configured AI CLI once per iteration with an assembled OODA
prompt, classifies each result, and stops on a SUCCESS signal, the
iteration bound, the consecutive-failure threshold, or an interrupt.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from ai_executor import ExecutionError, ExecutionResult, execute
from config import (
    DEFAULT_CONFIG_PATH,
    AgentLoopConfig,
    AICommand,
    LoopSettings,
    Procedure,
    Result,
    check_ai_command,
    load_config,
    resolve_ai_command,
    resolve_loop_settings,
)
from iteration_state import IterationState, LoopStatus
from log_setup import setup_logging
from outcome import IterationOutcome, classify, scan_signals
from procedures import builtin_procedures
from prompt_assembler import IterationContext, assemble_prompt
from signal_relay import CancellationSource, SignalRelay

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

# Exit codes
EXIT_OK = 0
EXIT_ABORTED = 1

Executor = Callable[..., ExecutionResult]
Assembler = Callable[..., Result[str]]


def exit_code_for(status: LoopStatus) -> int:
    """Success, max-iterations and user interrupts are not errors."""
    if status in (LoopStatus.SUCCESS, LoopStatus.MAX_ITERS, LoopStatus.INTERRUPTED):
        return EXIT_OK
    return EXIT_ABORTED


class LoopDriver:
    """Drives one procedure through sequential AI CLI iterations."""

    def __init__(
        self,
        config: AgentLoopConfig,
        procedure_name: str,
        ai_command: AICommand,
        settings: LoopSettings,
        user_context: str = "",
        show_ai_output: bool = False,
        executor: Executor = execute,
        assembler: Assembler = assemble_prompt,
        cancellation: Optional[CancellationSource] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.ai_command = ai_command
        self.user_context = user_context
        self.show_ai_output = show_ai_output
        self.executor = executor
        self.assembler = assembler
        self.cancellation = cancellation
        self.log = log or logger
        self.state = IterationState(
            max_iterations=settings.max_iterations,
            iteration_timeout=settings.iteration_timeout,
            max_output_buffer=settings.max_output_buffer,
            failure_threshold=settings.failure_threshold,
            procedure_name=procedure_name,
        )

    def run(self) -> LoopStatus:
        """Execute the loop. Returns the terminal status."""
        relay: Optional[SignalRelay] = None
        cancellation = self.cancellation
        if cancellation is None:
            relay = SignalRelay()
            cancellation = relay.setup()
        try:
            self._run(cancellation)
        finally:
            if relay is not None:
                relay.restore()
        self._log_stats()
        self.log.info(self.state.summary(), extra={"event": "loop_end", "status": self.state.status.value})
        return self.state.status

    def _abort(self, reason: str) -> None:
        self.log.error("Aborting: %s", reason, extra={"event": "loop_abort"})
        self.state.finish(LoopStatus.ABORTED)

    def _run(self, cancellation: CancellationSource) -> None:
        state = self.state
        procedure: Optional[Procedure] = self.config.procedures.get(state.procedure_name)
        if procedure is None:
            self._abort(f"procedure '{state.procedure_name}' not found")
            return

        self.log.info(
            "Starting procedure %s", state.procedure_name,
            extra={
                "event": "loop_start",
                "max_iterations": state.max_iterations if state.max_iterations is not None else "unlimited",
                "timeout": state.iteration_timeout,
                "failure_threshold": state.failure_threshold,
                "ai_cmd_source": self.ai_command.source,
            },
        )

        while True:
            if state.max_iterations_reached():
                self.log.info(
                    "Reached max iterations (%d)", state.max_iterations,
                    extra={"event": "loop_max_iterations"},
                )
                state.finish(LoopStatus.MAX_ITERS)
                return

            if state.failure_threshold_reached():
                self._abort(
                    f"{state.consecutive_failures} consecutive failures "
                    f"(threshold: {state.failure_threshold})"
                )
                return

            number = state.iteration + 1
            iteration_start = time.monotonic()
            self.log.info(
                "Starting iteration %d", number,
                extra={"event": "iteration_start", "iteration": number},
            )

            try:
                assembled = self.assembler(
                    procedure,
                    self.user_context,
                    IterationContext(state.iteration, state.max_iterations),
                    config_dir=self.config.config_dir,
                )
            except Exception as e:
                self.log.exception("Prompt assembler raised on iteration %d", number)
                self._abort(f"prompt assembly failed: {e}")
                return
            if not assembled.success:
                self._abort(f"prompt assembly failed: {assembled.error}")
                return

            result = self.executor(
                self.ai_command.command,
                assembled.data or "",
                state.iteration_timeout,
                state.max_output_buffer,
                cancellation,
                self.show_ai_output,
            )

            if result.error is ExecutionError.INTERRUPTED:
                self.log.info(
                    "Interrupted by signal during iteration %d", number,
                    extra={"event": "loop_interrupted", "iteration": number},
                )
                state.finish(LoopStatus.INTERRUPTED)
                return

            if result.error is ExecutionError.TIMEOUT:
                failures = state.record_failure()
                self.log.warning(
                    "Iteration %d: AI CLI exceeded timeout (%ss)", number, state.iteration_timeout,
                    extra={
                        "event": "iteration_timeout",
                        "iteration": number,
                        "consecutive_failures": failures,
                    },
                )
                self._end_iteration(number, iteration_start, "timeout")
                continue

            if result.error is not None:
                self._abort(f"AI CLI execution failed: {result.error_message or result.error.value}")
                return

            if result.truncated:
                self.log.debug(
                    "Iteration %d output truncated to last %d bytes", number, state.max_output_buffer,
                )

            outcome = classify(result.exit_code, result.output)
            if outcome is IterationOutcome.JOB_DONE:
                self.log.info(
                    "Iteration %d: AI signaled SUCCESS", number,
                    extra={"event": "iteration_outcome", "iteration": number, "outcome": outcome.value},
                )
                self._end_iteration(number, iteration_start, "success")
                state.finish(LoopStatus.SUCCESS)
                return

            if outcome is IterationOutcome.FAILURE:
                failures = state.record_failure()
                _, has_failure = scan_signals(result.output)
                if has_failure:
                    message = "Iteration %d: AI signaled FAILURE (consecutive: %d)"
                    args: tuple = (number, failures)
                else:
                    message = "Iteration %d failed with exit code %d (consecutive: %d)"
                    args = (number, result.exit_code, failures)
                self.log.warning(
                    message, *args,
                    extra={"event": "iteration_outcome", "iteration": number, "outcome": outcome.value},
                )
            else:
                state.reset_failures()
                self.log.info(
                    "Iteration %d succeeded", number,
                    extra={"event": "iteration_outcome", "iteration": number, "outcome": outcome.value},
                )
            self._end_iteration(number, iteration_start, outcome.value)

    def _end_iteration(self, number: int, iteration_start: float, outcome: str) -> None:
        """Record timing and advance to the next iteration."""
        elapsed = time.monotonic() - iteration_start
        self.state.stats.record(elapsed)
        self.state.advance()
        self.log.info(
            "Iteration %d completed in %.3fs", number, elapsed,
            extra={"event": "iteration_end", "iteration": number, "outcome": outcome},
        )

    def _log_stats(self) -> None:
        stats = self.state.stats
        if stats.count == 0:
            return
        fields = {
            "event": "loop_stats",
            "count": stats.count,
            "min": stats.minimum,
            "max": stats.maximum,
            "mean": stats.mean(),
        }
        if stats.count > 1:
            fields["stddev"] = stats.stddev()
        self.log.info("Iteration timing", extra=fields)


def _print_procedures(config: AgentLoopConfig) -> None:
    for name in sorted(config.procedures):
        summary = config.procedures[name].summary
        print(f"{name:<28} {summary}" if summary else name)


def _dry_run(
    config: AgentLoopConfig,
    procedure_name: str,
    ai_command: AICommand,
    settings: LoopSettings,
    user_context: str,
) -> int:
    procedure = config.procedures[procedure_name]
    assembled = assemble_prompt(procedure, user_context, None, config_dir=config.config_dir)
    if not assembled.success:
        logger.error("Prompt assembly failed: %s", assembled.error)
        return EXIT_ABORTED
    print("=== DRY RUN MODE ===")
    print(f"Procedure: {procedure_name}")
    print(f"AI command: {ai_command.command} (from {ai_command.source})")
    print(f"Max iterations: {settings.max_iterations if settings.max_iterations is not None else 'unlimited'}")
    print(f"Iteration timeout: {settings.iteration_timeout or 'none'}")
    print(f"Failure threshold: {settings.failure_threshold}")
    print(f"Prompt ({len(assembled.data or '')} characters):")
    print("--- Assembled Prompt ---")
    print(assembled.data)
    print("--- End Prompt ---")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-loop",
        description="Drive an AI coding agent through OODA loop iterations",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", default=None, help=f"Path to config.json (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", action="store_true", help="Debug logging and live AI output")
    verbosity.add_argument("--quiet", action="store_true", help="Only log errors")

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute a procedure")
    run.add_argument("procedure", help="Procedure name (see 'list')")
    limit = run.add_mutually_exclusive_group()
    limit.add_argument("--max-iterations", type=int, default=None, help="Max loop iterations")
    limit.add_argument("--unlimited", action="store_true", help="No iteration bound")
    run.add_argument("--timeout", type=int, default=None, help="Per-iteration timeout in seconds")
    run.add_argument(
        "--context", action="append", default=[],
        help="Extra context: inline text or a file path (repeatable)",
    )
    run.add_argument("--ai-cmd", default=None, help="AI command line to execute")
    run.add_argument("--ai-cmd-alias", default=None, help="Named AI command alias")
    run.add_argument("--dry-run", action="store_true", help="Print the assembled prompt and exit")
    run.add_argument("--skip-preflight", action="store_true", help="Skip AI binary preflight check")

    sub.add_parser("list", help="List available procedures")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    config_result = load_config(args.config, catalog=builtin_procedures)
    if not config_result.success:
        setup_logging()
        logger.error("Config error: %s", config_result.error)
        sys.exit(EXIT_ABORTED)
    config = config_result.data

    log_level = config.loop.log_level
    if args.verbose:
        log_level = "debug"
    elif args.quiet:
        log_level = "error"
    setup_logging(
        level=log_level,
        timestamp_format=config.loop.log_timestamp_format,
        json_log=args.json_log,
        redact_patterns=config.security.log_redact_patterns,
    )

    if args.command == "list":
        _print_procedures(config)
        sys.exit(EXIT_OK)

    if args.max_iterations is not None and args.max_iterations < 1:
        logger.error("--max-iterations must be >= 1, got %d", args.max_iterations)
        sys.exit(EXIT_ABORTED)
    if args.timeout is not None and args.timeout < 1:
        logger.error("--timeout must be >= 1 second, got %d", args.timeout)
        sys.exit(EXIT_ABORTED)

    if args.procedure not in config.procedures:
        logger.error("Unknown procedure '%s'. Run 'agent-loop list' to see available procedures", args.procedure)
        sys.exit(EXIT_ABORTED)

    command_result = resolve_ai_command(config, args.procedure, args.ai_cmd, args.ai_cmd_alias)
    if not command_result.success:
        logger.error("%s", command_result.error)
        sys.exit(EXIT_ABORTED)
    ai_command = command_result.data

    settings = resolve_loop_settings(config, args.procedure, args.max_iterations, args.unlimited)
    if args.timeout is not None:
        settings.iteration_timeout = args.timeout

    user_context = "\n\n".join(args.context)

    if args.dry_run:
        sys.exit(_dry_run(config, args.procedure, ai_command, settings, user_context))

    if not args.skip_preflight:
        preflight = check_ai_command(ai_command.command)
        if not preflight.success:
            logger.error("AI command preflight failed: %s", preflight.error)
            sys.exit(EXIT_ABORTED)
        logger.debug("AI command preflight OK: %s", preflight.data)

    driver = LoopDriver(
        config=config,
        procedure_name=args.procedure,
        ai_command=ai_command,
        settings=settings,
        user_context=user_context,
        show_ai_output=args.verbose or config.loop.show_ai_output,
    )
    status = driver.run()
    sys.exit(exit_code_for(status))


if __name__ == "__main__":
    main()
