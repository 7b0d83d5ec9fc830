"""Tests for prompt_assembler module."""

from pathlib import Path

from config import FragmentAction, Procedure, load_config
from prompt_assembler import IterationContext, assemble_prompt, compose_phase


class TestComposePhase:
    def test_joins_with_blank_line(self) -> None:
        result = compose_phase([FragmentAction(content="one"), FragmentAction(content="two")])
        assert result.data == "one\n\ntwo"

    def test_empty_phase(self) -> None:
        assert compose_phase([]).data == ""

    def test_relative_path_against_config_dir(self, tmp_path: Path) -> None:
        (tmp_path / "frag.md").write_text("from file\n", encoding="utf-8")
        result = compose_phase([FragmentAction(path="frag.md")], config_dir=tmp_path)
        assert result.data == "from file"

    def test_missing_file(self, tmp_path: Path) -> None:
        result = compose_phase([FragmentAction(path="missing.md")], config_dir=tmp_path)
        assert not result.success
        assert result.error_code == "FRAGMENT_ERROR"

    def test_template_parameters(self) -> None:
        fragment = FragmentAction(content="Fix $count bugs in ${area}.", parameters={"count": 3, "area": "cli"})
        assert compose_phase([fragment]).data == "Fix 3 bugs in cli."

    def test_missing_parameter(self) -> None:
        fragment = FragmentAction(content="Fix $thing", parameters={"other": "x"})
        result = compose_phase([fragment])
        assert result.error_code == "TEMPLATE_ERROR"

    def test_no_parameters_leaves_dollars(self) -> None:
        assert compose_phase([FragmentAction(content="cost $5")]).data == "cost $5"


class TestAssemblePrompt:
    def test_contains_preamble_and_phases(self, procedure: Procedure) -> None:
        prompt = assemble_prompt(procedure).data
        assert "AGENT LOOP PROCEDURE EXECUTION" in prompt
        assert "Procedure: Test Procedure" in prompt
        assert "<promise>SUCCESS</promise>" in prompt
        assert "<promise>FAILURE</promise>" in prompt
        positions = [prompt.index(f"PHASE {n}: {name}") for n, name in
                     enumerate(("OBSERVE", "ORIENT", "DECIDE", "ACT"), start=1)]
        assert positions == sorted(positions)

    def test_no_iteration_line_without_context(self, procedure: Procedure) -> None:
        assert "Iteration:" not in assemble_prompt(procedure).data

    def test_bounded_iteration_line(self, procedure: Procedure) -> None:
        prompt = assemble_prompt(procedure, iteration_context=IterationContext(2, 5)).data
        assert "Iteration: 3 of 5" in prompt

    def test_unlimited_iteration_line(self, procedure: Procedure) -> None:
        prompt = assemble_prompt(procedure, iteration_context=IterationContext(0)).data
        assert "Iteration: 1 (unlimited)" in prompt

    def test_empty_phases_omitted(self) -> None:
        proc = Procedure(display="Small", act=[FragmentAction(content="Just act.")])
        prompt = assemble_prompt(proc).data
        assert "PHASE 1: OBSERVE" not in prompt
        assert "PHASE 4: ACT" in prompt
        assert "Just act." in prompt

    def test_inline_context(self, procedure: Procedure) -> None:
        prompt = assemble_prompt(procedure, "Focus on the parser").data
        assert "=== CONTEXT ===" in prompt
        assert "Focus on the parser" in prompt
        assert prompt.index("=== CONTEXT ===") < prompt.index("PHASE 1: OBSERVE")

    def test_no_context_block_when_empty(self, procedure: Procedure) -> None:
        assert "=== CONTEXT ===" not in assemble_prompt(procedure, "   ").data

    def test_file_context(self, procedure: Procedure, tmp_path: Path) -> None:
        notes = tmp_path / "notes.md"
        notes.write_text("Remember the migration.", encoding="utf-8")
        prompt = assemble_prompt(procedure, f"{notes}\n\ninline note").data
        assert f"Source: {notes}" in prompt
        assert "Remember the migration." in prompt
        assert "inline note" in prompt

    def test_fragment_failure_propagates(self) -> None:
        proc = Procedure(orient=[FragmentAction(path="/nonexistent/fragment.md")])
        result = assemble_prompt(proc)
        assert not result.success
        assert "ORIENT" in result.error
        assert result.error_code == "FRAGMENT_ERROR"

    def test_project_fragment_with_parameters(self, project_dir: Path) -> None:
        config = load_config(project_dir / ".agent-loop" / "config.json", environ={}).data
        prompt = assemble_prompt(config.procedures["custom"], config_dir=config.config_dir).data
        assert "Look at the repo carefully." in prompt
        assert "Do the work." in prompt

    def test_long_inline_context_is_not_a_path(self, procedure: Procedure) -> None:
        """Text longer than a file name limit is used verbatim."""
        text = "word " * 80
        result = assemble_prompt(procedure, text, IterationContext(0, 1))
        assert result.success, result.error
        assert text.strip() in result.data

    def test_undecodable_context_file(self, procedure: Procedure, tmp_path: Path) -> None:
        notes = tmp_path / "notes.bin"
        notes.write_bytes(b"\xff\xfe\x00garbage")
        result = assemble_prompt(procedure, str(notes))
        assert not result.success
        assert result.error_code == "CONTEXT_ERROR"

    def test_undecodable_fragment_file(self, tmp_path: Path) -> None:
        (tmp_path / "frag.md").write_bytes(b"\xff\xfe\x00garbage")
        proc = Procedure(observe=[FragmentAction(path="frag.md")])
        result = assemble_prompt(proc, config_dir=tmp_path)
        assert not result.success
        assert result.error_code == "FRAGMENT_ERROR"
