"""Agent command template rendering."""

from __future__ import annotations

import shlex

from raf.orchestrator.backend.base import AgentRunError

DEFAULT_USER_MESSAGE = "Execute the task as described in the system prompt."


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    user_message: str = "",
) -> tuple[list[str], str]:
    """Render ``command_template`` into argv and return it with its executable.

    Supported placeholders: ``{model}``, ``{prompt}``, ``{user_message}``.
    Values are shell-quoted before splitting, so prompts may contain any
    characters.
    """

    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise AgentRunError(
            "Agent command template must include {prompt}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            user_message=shlex.quote(user_message or DEFAULT_USER_MESSAGE),
        )
    except (KeyError, IndexError) as error:
        raise AgentRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError(
            "Agent command template rendered empty command.",
            transient=False,
        )
    return argv, argv[0]
