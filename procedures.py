"""Built-in OODA procedure catalog.

The catalog is handed to ``config.load_config(catalog=builtin_procedures)``
explicitly; importing this module has no side effects.
"""

from __future__ import annotations

from config import FragmentAction, Procedure

_READ_AGENTS = (
    "Read AGENTS.md to learn how this repository is built, tested and committed. "
    "Follow its commands exactly."
)
_READ_PLAN = (
    "Read the implementation plan (PLAN.md or the plan section of AGENTS.md). "
    "Identify completed, in-progress and pending tasks."
)
_READ_SPECS = "Read the specifications under specs/ that relate to the current task."
_STUDY_CODE = "Study the source files relevant to the current task before changing anything."
_SIGNAL = (
    "If every task is complete and verified, emit the success signal. "
    "If you are blocked and cannot make progress, emit the failure signal and explain why."
)


def _frag(text: str) -> FragmentAction:
    return FragmentAction(content=text)


def _audit(target: str) -> Procedure:
    return Procedure(
        display=f"Audit {target.title()}",
        summary=f"Audit the {target} for gaps and inconsistencies",
        description=(
            f"Reviews the {target} against the repository's conventions and reports "
            "findings without modifying source files."
        ),
        observe=[_frag(_READ_AGENTS), _frag(_READ_SPECS), _frag(_STUDY_CODE)],
        orient=[_frag(f"List every gap, contradiction or omission you find in the {target}.")],
        decide=[_frag("Rank the findings by impact. Keep only actionable ones.")],
        act=[
            _frag(f"Write the findings to AUDIT.md, grouped by {target} area."),
            _frag(_SIGNAL),
        ],
    )


def _draft_plan(kind: str) -> Procedure:
    return Procedure(
        display=f"Draft Implementation Plan ({kind})",
        summary=f"Draft a plan for a {kind} in the implementation",
        description=(
            f"Produces a step-by-step implementation plan for a {kind}, "
            "sized so each task fits a single iteration."
        ),
        observe=[_frag(_READ_AGENTS), _frag(_READ_SPECS), _frag(_STUDY_CODE)],
        orient=[_frag(f"Work out what the {kind} requires and which files it touches.")],
        decide=[_frag("Break the work into small, independently verifiable tasks.")],
        act=[_frag("Write the tasks to PLAN.md in execution order."), _frag(_SIGNAL)],
    )


def builtin_procedures() -> dict[str, Procedure]:
    """Return a fresh copy of the built-in procedures, keyed by name."""
    return {
        "build": Procedure(
            display="Build from Plan",
            summary="Implement the next task from the plan",
            description=(
                "Picks the most important pending task, implements it, runs the tests "
                "and commits. Repeats each iteration until the plan is done."
            ),
            observe=[_frag(_READ_AGENTS), _frag(_READ_PLAN), _frag(_STUDY_CODE)],
            orient=[_frag("Pick the single most important pending task.")],
            decide=[_frag("Decide the smallest change that completes that task.")],
            act=[
                _frag("Implement the change, run the test command from AGENTS.md, "
                      "update the plan and commit."),
                _frag(_SIGNAL),
            ],
        ),
        "audit-spec": _audit("specifications"),
        "audit-impl": _audit("implementation"),
        "draft-plan-impl-feat": _draft_plan("feature"),
        "draft-plan-impl-fix": _draft_plan("fix"),
    }
