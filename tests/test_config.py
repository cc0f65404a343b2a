from __future__ import annotations

from pathlib import Path

import allure
import pytest

from raf.config import (
    DEFAULT_AGENT_COMMAND,
    DEFAULT_STREAM_AGENT_COMMAND,
    AgentSettings,
    ExecutionSettings,
    Settings,
)
from raf.orchestrator.disposition import PostExecutionAction

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.raf_dir == Path("RAF")
    assert settings.execution.timeout_minutes == 60
    assert settings.execution.max_retries == 3
    assert settings.execution.auto_commit
    assert settings.agent.model == "opus"
    assert settings.agent.headless_template() == DEFAULT_AGENT_COMMAND
    assert not settings.worktree.enabled
    assert settings.worktree.post_execution_action is None
    settings.validate()


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RAF_DIR", str(tmp_path))
    monkeypatch.setenv("RAF_TIMEOUT_MINUTES", "15")
    monkeypatch.setenv("RAF_MAX_RETRIES", "5")
    monkeypatch.setenv("RAF_AUTO_COMMIT", "no")
    monkeypatch.setenv("RAF_MODEL", "sonnet")
    monkeypatch.setenv("RAF_STREAM_JSON", "1")
    monkeypatch.setenv("RAF_WORKTREE", "true")
    monkeypatch.setenv("RAF_POST_EXECUTION_ACTION", "PR")

    settings = Settings.from_env()

    assert settings.raf_dir == tmp_path
    assert settings.execution.project_config().to_payload() == {
        "timeout": 15,
        "maxRetries": 5,
        "autoCommit": False,
    }
    assert settings.agent.model == "sonnet"
    assert settings.agent.headless_template() == DEFAULT_STREAM_AGENT_COMMAND
    assert settings.worktree.enabled
    assert settings.worktree.post_execution_action is PostExecutionAction.PR


def test_explicit_raf_dir_wins_over_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("RAF_DIR", "/elsewhere")

    assert Settings.from_env(raf_dir=tmp_path).raf_dir == tmp_path


def test_custom_command_template_wins_over_stream_mode() -> None:
    agent = AgentSettings(command_template="my-agent {prompt}", stream_json=True)

    assert agent.headless_template() == "my-agent {prompt}"
    assert AgentSettings().headless_template(stream_json=True) == DEFAULT_STREAM_AGENT_COMMAND


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("RAF_AUTO_COMMIT", "maybe", "Invalid boolean value for RAF_AUTO_COMMIT"),
        ("RAF_POST_EXECUTION_ACTION", "squash", "Invalid value for RAF_POST_EXECUTION_ACTION"),
    ],
)
def test_invalid_environment_values_are_rejected(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(execution=ExecutionSettings(timeout_minutes=0)), "RAF_TIMEOUT_MINUTES"),
        (Settings(execution=ExecutionSettings(max_retries=0)), "RAF_MAX_RETRIES"),
        (
            Settings(execution=ExecutionSettings(completion_grace_seconds=-1)),
            "RAF_COMPLETION_GRACE_SECONDS",
        ),
        (Settings(execution=ExecutionSettings(outcome_poll_seconds=0)), "RAF_OUTCOME_POLL_SECONDS"),
        (Settings(execution=ExecutionSettings(kill_grace_seconds=-1)), "RAF_KILL_GRACE_SECONDS"),
        (Settings(agent=AgentSettings(model="  ")), "RAF_MODEL"),
        (Settings(agent=AgentSettings(command_template="agent -p hi")), "RAF_AGENT_COMMAND"),
        (
            Settings(agent=AgentSettings(interactive_command_template="agent")),
            "RAF_AGENT_INTERACTIVE_COMMAND",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
