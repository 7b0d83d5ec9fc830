"""Shared pytest fixtures for the agent loop test suite.

Non-fixture helpers (fake cancellation, scripted executors) are in helpers.py.
"""

import json
import logging
import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from config import AgentLoopConfig, AICommand, FragmentAction, LoopSettings, Procedure  # noqa: E402


@pytest.fixture
def procedure() -> Procedure:
    return Procedure(
        display="Test Procedure",
        summary="A procedure for tests",
        observe=[FragmentAction(content="observe")],
        orient=[FragmentAction(content="orient")],
        decide=[FragmentAction(content="decide")],
        act=[FragmentAction(content="act")],
    )


@pytest.fixture
def loop_config(procedure: Procedure) -> AgentLoopConfig:
    return AgentLoopConfig(procedures={"test": procedure})


@pytest.fixture
def settings() -> LoopSettings:
    return LoopSettings(
        max_iterations=10,
        iteration_timeout=None,
        max_output_buffer=4096,
        failure_threshold=3,
    )


@pytest.fixture
def ai_command() -> AICommand:
    return AICommand(command="fake-agent --run", source="test")


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a project directory with a populated .agent-loop/config.json.

    Tests needing a bare directory should use tmp_path directly.
    """
    config_dir = tmp_path / ".agent-loop"
    config_dir.mkdir()
    (config_dir / "observe.md").write_text("Look at $target carefully.", encoding="utf-8")

    config = {
        "loop": {"default_max_iterations": 10, "failure_threshold": 5},
        "ai_cmd_aliases": {"echo-agent": "echo agent"},
        "procedures": {
            "custom": {
                "display": "Custom",
                "summary": "Custom procedure",
                "observe": [{"path": "observe.md", "parameters": {"target": "the repo"}}],
                "act": [{"content": "Do the work."}],
            }
        },
    }
    (config_dir / "config.json").write_text(json.dumps(config), encoding="utf-8")
    return tmp_path


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """main() reconfigures the root logger; put it back after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
