"""Configuration models, loading and resolution for the agent loop."""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Generic, Literal, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG_PATH = Path(".agent-loop") / "config.json"
DEFAULT_MAX_ITERATIONS = 5
DEFAULT_MAX_OUTPUT_BUFFER = 10_485_760
DEFAULT_FAILURE_THRESHOLD = 3

ENV_PREFIX = "AGENT_LOOP_"

IterationMode = Literal["max-iterations", "unlimited"]
LogLevel = Literal["debug", "info", "warn", "error"]
TimestampFormat = Literal["time", "time-ms", "relative", "iso", "none"]


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class LoopConfig(BaseModel):
    """Loop-wide iteration, buffer and logging settings."""

    iteration_mode: IterationMode = Field(default="max-iterations")
    default_max_iterations: Optional[int] = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    iteration_timeout: Optional[int] = Field(
        default=None, ge=1,
        description="Per-iteration timeout in seconds (None = no timeout)",
    )
    max_output_buffer: int = Field(
        default=DEFAULT_MAX_OUTPUT_BUFFER, ge=1024,
        description="Max captured AI CLI output in bytes (oldest bytes dropped first)",
    )
    failure_threshold: int = Field(
        default=DEFAULT_FAILURE_THRESHOLD, ge=1,
        description="Consecutive failed iterations before the loop aborts",
    )
    log_level: LogLevel = Field(default="info")
    log_timestamp_format: TimestampFormat = Field(default="time")
    show_ai_output: bool = Field(default=False)
    ai_cmd: Optional[str] = None
    ai_cmd_alias: Optional[str] = None


class FragmentAction(BaseModel):
    """One prompt fragment: inline content or a file path, plus template parameters."""

    content: Optional[str] = None
    path: Optional[str] = None
    parameters: dict[str, object] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _exactly_one_source(self) -> FragmentAction:
        if bool(self.content) == bool(self.path):
            raise ValueError("fragment must specify exactly one of 'content' or 'path'")
        return self


class Procedure(BaseModel):
    """A named OODA procedure: fragment lists per phase plus loop overrides."""

    display: str = ""
    summary: str = ""
    description: str = ""
    observe: list[FragmentAction] = Field(default_factory=list)
    orient: list[FragmentAction] = Field(default_factory=list)
    decide: list[FragmentAction] = Field(default_factory=list)
    act: list[FragmentAction] = Field(default_factory=list)
    iteration_mode: Optional[IterationMode] = None
    default_max_iterations: Optional[int] = Field(default=None, ge=1)
    iteration_timeout: Optional[int] = Field(default=None, ge=1)
    max_output_buffer: Optional[int] = Field(default=None, ge=1024)
    ai_cmd: Optional[str] = None
    ai_cmd_alias: Optional[str] = None


class SecurityConfig(BaseModel):
    """Security and redaction settings."""

    log_redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"sk-ant-[\w-]+",
            r"sk-proj-[\w-]+",
            r"ghp_[A-Za-z0-9]{20,}",
        ]
    )


def _builtin_aliases() -> dict[str, str]:
    return {
        "kiro-cli": "kiro-cli chat --no-interactive --trust-all-tools",
        "claude": "claude -p --dangerously-skip-permissions",
        "copilot": "copilot --yolo",
        "cursor-agent": "cursor-wrapper.sh",
    }


class AgentLoopConfig(BaseModel):
    """Root configuration model for .agent-loop/config.json."""

    loop: LoopConfig = Field(default_factory=LoopConfig)
    ai_cmd_aliases: dict[str, str] = Field(default_factory=_builtin_aliases)
    procedures: dict[str, Procedure] = Field(default_factory=dict)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    config_dir: Path = Field(default=Path("."), exclude=True)


class AICommand(BaseModel):
    """A resolved AI CLI command line and where it came from."""

    command: str
    source: str


class LoopSettings(BaseModel):
    """Effective per-run loop settings for one procedure."""

    max_iterations: Optional[int] = None
    iteration_timeout: Optional[int] = None
    max_output_buffer: int = DEFAULT_MAX_OUTPUT_BUFFER
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD


CatalogProvider = Union[Mapping[str, Procedure], Callable[[], Mapping[str, Procedure]]]


def _merge_procedures(
    base: dict[str, Procedure], overlay: Mapping[str, dict]
) -> dict[str, Procedure]:
    """Merge raw procedure dicts over existing ones; fields present in overlay win."""
    merged = dict(base)
    for name, raw in overlay.items():
        existing = merged.get(name)
        if existing is None:
            merged[name] = Procedure.model_validate(raw)
        else:
            combined = existing.model_dump(exclude_none=True)
            combined.update(raw)
            merged[name] = Procedure.model_validate(combined)
    return merged


def _resolve_fragment_paths(procedure: Procedure, config_dir: Path) -> Procedure:
    """Make relative fragment paths absolute against the config file directory."""
    for phase in (procedure.observe, procedure.orient, procedure.decide, procedure.act):
        for fragment in phase:
            if fragment.path and not Path(fragment.path).is_absolute():
                fragment.path = str(config_dir / fragment.path)
    return procedure


def _apply_env(config: AgentLoopConfig, environ: Mapping[str, str]) -> None:
    """Apply AGENT_LOOP_* environment overrides to the loop settings."""
    loop = config.loop
    raw: dict = loop.model_dump()

    for key in ("ai_cmd", "ai_cmd_alias", "iteration_mode", "log_level", "log_timestamp_format"):
        value = environ.get(ENV_PREFIX + key.upper())
        if value:
            raw[key] = value

    for key in ("default_max_iterations", "iteration_timeout", "failure_threshold"):
        value = environ.get(ENV_PREFIX + key.upper())
        if not value:
            continue
        try:
            raw[key] = int(value)
        except ValueError:
            logger.warning("Ignoring %s%s=%r: not an integer", ENV_PREFIX, key.upper(), value)

    value = environ.get(ENV_PREFIX + "SHOW_AI_OUTPUT")
    if value:
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            raw["show_ai_output"] = True
        elif lowered in ("0", "false", "no", "off"):
            raw["show_ai_output"] = False
        else:
            logger.warning("Ignoring %sSHOW_AI_OUTPUT=%r: not a boolean", ENV_PREFIX, value)

    config.loop = LoopConfig.model_validate(raw)


def load_config(
    config_path: str | Path | None = None,
    catalog: Optional[CatalogProvider] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Result[AgentLoopConfig]:
    """Load and validate config: defaults, catalog, JSON file, then environment."""
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    environ = os.environ if environ is None else environ

    config = AgentLoopConfig(config_dir=path.parent)
    if catalog is not None:
        procedures = catalog() if callable(catalog) else catalog
        config.procedures = {
            name: proc.model_copy(deep=True) for name, proc in procedures.items()
        }

    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
        except OSError as e:
            return Result.fail(f"Cannot read {path}: {e}", "READ_ERROR")

        try:
            raw_procedures = raw.pop("procedures", {}) or {}
            aliases = {**config.ai_cmd_aliases, **(raw.pop("ai_cmd_aliases", {}) or {})}
            file_config = AgentLoopConfig.model_validate(
                {**raw, "ai_cmd_aliases": aliases}
            )
            file_config.config_dir = path.parent
            merged = _merge_procedures(config.procedures, raw_procedures)
            file_config.procedures = {
                name: _resolve_fragment_paths(proc, path.parent)
                if name in raw_procedures else proc
                for name, proc in merged.items()
            }
            config = file_config
        except Exception as e:
            return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")
    else:
        logger.info("Config not found at %s, using defaults", path)

    try:
        _apply_env(config, environ)
    except Exception as e:
        return Result.fail(f"Invalid environment override: {e}", "VALIDATION_ERROR")

    return Result.ok(config)


def resolve_ai_command(
    config: AgentLoopConfig,
    procedure_name: str,
    cli_cmd: Optional[str] = None,
    cli_alias: Optional[str] = None,
) -> Result[AICommand]:
    """Pick the AI command line: CLI, then procedure, then loop settings."""
    procedure = config.procedures.get(procedure_name)
    candidates = [
        (cli_cmd, None, "--ai-cmd"),
        (None, cli_alias, "--ai-cmd-alias"),
    ]
    if procedure is not None:
        candidates.append((procedure.ai_cmd, None, f"procedures.{procedure_name}.ai_cmd"))
        candidates.append(
            (None, procedure.ai_cmd_alias, f"procedures.{procedure_name}.ai_cmd_alias")
        )
    candidates.append((config.loop.ai_cmd, None, "loop.ai_cmd"))
    candidates.append((None, config.loop.ai_cmd_alias, "loop.ai_cmd_alias"))

    for command, alias, source in candidates:
        if command:
            return Result.ok(AICommand(command=command, source=source))
        if alias:
            resolved = config.ai_cmd_aliases.get(alias)
            if resolved is None:
                known = ", ".join(sorted(config.ai_cmd_aliases))
                return Result.fail(
                    f"Unknown AI command alias '{alias}' (from {source}). Known aliases: {known}",
                    "UNKNOWN_ALIAS",
                )
            return Result.ok(AICommand(command=resolved, source=f"{source}={alias}"))

    return Result.fail(
        "No AI command configured. Set loop.ai_cmd or loop.ai_cmd_alias in the config, "
        "or pass --ai-cmd / --ai-cmd-alias",
        "NO_AI_COMMAND",
    )


def resolve_loop_settings(
    config: AgentLoopConfig,
    procedure_name: str,
    max_iterations: Optional[int] = None,
    unlimited: bool = False,
) -> LoopSettings:
    """Compute effective loop settings; procedure overrides beat loop defaults."""
    loop = config.loop
    procedure = config.procedures.get(procedure_name) or Procedure()

    if unlimited:
        effective_max: Optional[int] = None
    elif max_iterations is not None:
        effective_max = max_iterations
    elif procedure.iteration_mode == "unlimited":
        effective_max = None
    elif procedure.default_max_iterations is not None:
        effective_max = procedure.default_max_iterations
    elif loop.iteration_mode == "unlimited":
        effective_max = None
    else:
        effective_max = loop.default_max_iterations or DEFAULT_MAX_ITERATIONS

    timeout = procedure.iteration_timeout
    if timeout is None:
        timeout = loop.iteration_timeout

    buffer_size = procedure.max_output_buffer or loop.max_output_buffer

    return LoopSettings(
        max_iterations=effective_max,
        iteration_timeout=timeout,
        max_output_buffer=buffer_size,
        failure_threshold=loop.failure_threshold,
    )


def check_ai_command(command: str) -> Result[str]:
    """Preflight: confirm the command's binary exists and is executable."""
    try:
        parts = shlex.split(command)
    except ValueError as e:
        return Result.fail(f"Cannot parse AI command {command!r}: {e}", "INVALID_COMMAND")
    if not parts:
        return Result.fail("AI command is empty", "INVALID_COMMAND")

    binary = parts[0]
    if binary.startswith("~"):
        binary = os.path.expanduser(binary)

    if os.sep in binary or binary.startswith("/"):
        path = Path(binary)
        if not path.exists():
            return Result.fail(f"Binary {binary!r} does not exist", "BINARY_NOT_FOUND")
        if not path.is_file():
            return Result.fail(f"Binary {binary!r} is not a regular file", "BINARY_NOT_FOUND")
        if not os.access(path, os.X_OK):
            return Result.fail(
                f"Binary {binary!r} is not executable. Suggestion: chmod +x {binary}",
                "BINARY_NOT_EXECUTABLE",
            )
        return Result.ok(str(path))

    found = shutil.which(binary)
    if found is None:
        return Result.fail(
            f"Command {binary!r} not found on PATH. "
            "Check: 1) the tool is installed 2) use an absolute path 3) add it to PATH",
            "BINARY_NOT_FOUND",
        )
    return Result.ok(found)
