"""Prompt assembly from procedure fragments, user context and iteration context."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Optional

from config import FragmentAction, Procedure, Result

logger = logging.getLogger(__name__)

BANNER = "=" * 63

PHASES = (
    ("OBSERVE", "Execute these observation tasks to gather information."),
    ("ORIENT", "Analyze the information you gathered and form your understanding."),
    ("DECIDE", "Make decisions about what actions to take."),
    ("ACT", "Execute the actions you decided on. Modify files, run commands, commit changes."),
)


@dataclass(frozen=True)
class IterationContext:
    """Where the loop is: 0-based iteration index and optional bound."""

    current_iteration: int
    max_iterations: Optional[int] = None


def _preamble(procedure: Procedure, iteration: Optional[IterationContext]) -> str:
    lines = [BANNER, "AGENT LOOP PROCEDURE EXECUTION", BANNER, ""]
    if procedure.display:
        lines += [f"Procedure: {procedure.display}", ""]
    if iteration is not None:
        number = iteration.current_iteration + 1
        if iteration.max_iterations is not None:
            lines += [f"Iteration: {number} of {iteration.max_iterations}", ""]
        else:
            lines += [f"Iteration: {number} (unlimited)", ""]
    lines += [
        "Your Role:",
        "You are an AI coding agent executing a structured OODA loop procedure.",
        "This is NOT a template or example - this is an EXECUTABLE PROCEDURE.",
        "You must complete all phases and produce concrete outputs.",
        "",
        "Success Signaling:",
        "- When you complete all tasks successfully, output: <promise>SUCCESS</promise>",
        "- If you cannot proceed due to blockers, output: <promise>FAILURE</promise>",
        "- Explanations should come AFTER the signal, not embedded in the tag",
        "- The loop orchestrator uses these signals to determine iteration outcome.",
    ]
    return "\n".join(lines)


def _load_context(value: str) -> Result[tuple[str, bool]]:
    """Return (content, is_file). Values naming an existing file are read."""
    try:
        candidate = Path(value.strip()).expanduser()
        is_file = candidate.is_file()
    except (OSError, ValueError, RuntimeError):
        # Too long or otherwise not a usable path: treat as inline text.
        return Result.ok((value, False))
    if not is_file:
        return Result.ok((value, False))
    try:
        return Result.ok((candidate.read_text(encoding="utf-8"), True))
    except (OSError, UnicodeDecodeError) as e:
        return Result.fail(f"Failed to read context file {candidate}: {e}", "CONTEXT_ERROR")


def _render_fragment(fragment: FragmentAction, config_dir: Optional[Path]) -> Result[str]:
    if fragment.content:
        text = fragment.content
    elif fragment.path:
        path = Path(fragment.path)
        if not path.is_absolute() and config_dir is not None:
            path = config_dir / path
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return Result.fail(f"Failed to load fragment {path}: {e}", "FRAGMENT_ERROR")
    else:
        return Result.fail("Fragment must specify either content or path", "FRAGMENT_ERROR")

    if fragment.parameters:
        params = {k: str(v) for k, v in fragment.parameters.items()}
        try:
            text = Template(text).substitute(params)
        except (KeyError, ValueError) as e:
            return Result.fail(f"Template substitution failed: {e}", "TEMPLATE_ERROR")
    return Result.ok(text.strip())


def compose_phase(
    fragments: list[FragmentAction], config_dir: Optional[Path] = None
) -> Result[str]:
    """Render and join a phase's fragments with blank lines."""
    parts: list[str] = []
    for fragment in fragments:
        rendered = _render_fragment(fragment, config_dir)
        if not rendered.success:
            return Result.fail(rendered.error or "fragment error", rendered.error_code or "FRAGMENT_ERROR")
        parts.append(rendered.data or "")
    return Result.ok("\n\n".join(parts))


def assemble_prompt(
    procedure: Procedure,
    user_context: str = "",
    iteration_context: Optional[IterationContext] = None,
    config_dir: Optional[Path] = None,
) -> Result[str]:
    """Build the full prompt text for one iteration.

    Order: preamble, optional CONTEXT block, then each non-empty OODA phase
    under its own banner. ``user_context`` may hold several values separated
    by blank lines; a value naming an existing file is replaced by its content
    with a ``Source:`` line.
    """
    sections = [_preamble(procedure, iteration_context), ""]

    values = [v for v in user_context.split("\n\n") if v.strip()] if user_context else []
    if values:
        block = ["=== CONTEXT ==="]
        rendered_values: list[str] = []
        for value in values:
            loaded = _load_context(value)
            if not loaded.success:
                return Result.fail(loaded.error or "context error", "CONTEXT_ERROR")
            content, is_file = loaded.data
            if is_file:
                rendered_values.append(f"Source: {value.strip()}\n\n{content}")
            else:
                rendered_values.append(content)
        block.append("\n\n".join(rendered_values))
        sections += ["\n".join(block), ""]

    phase_fragments = (procedure.observe, procedure.orient, procedure.decide, procedure.act)
    for number, ((name, description), fragments) in enumerate(
        zip(PHASES, phase_fragments), start=1
    ):
        composed = compose_phase(fragments, config_dir)
        if not composed.success:
            return Result.fail(
                f"Failed to compose {name} phase: {composed.error}",
                composed.error_code or "FRAGMENT_ERROR",
            )
        body = (composed.data or "").strip()
        if not body:
            continue
        sections += [
            "\n".join([BANNER, f"PHASE {number}: {name}", description, BANNER, body]),
            "",
        ]

    return Result.ok("\n".join(sections))
