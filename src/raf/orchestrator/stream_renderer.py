"""Render the agent's NDJSON event stream into console lines and transcript text.

Event kinds emitted by ``claude -p --output-format stream-json --verbose``:

- ``system``: session init, not displayed.
- ``assistant``: text and ``tool_use`` content blocks.
- ``user``: tool results, not displayed (the tool_use already described it).
- ``result``: final event with token usage. Its text repeats the last
  assistant message, so only usage is taken from it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from raf.orchestrator.models import ModelTokenUsage, UsageData

STREAM_RENDERER_VERSION = 1


@dataclass(slots=True)
class RenderResult:
    """Display text, transcript text and optional usage for one event line."""

    display: str = ""
    text_content: str = ""
    usage: UsageData | None = None


def render_stream_event(line: str) -> RenderResult:
    if not line.strip():
        return RenderResult()
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return RenderResult(display=f"{line}\n", text_content=line)
    if not isinstance(event, dict):
        return RenderResult(display=f"{line}\n", text_content=line)

    event_type = event.get("type")
    if event_type == "assistant":
        return _render_assistant(event)
    if event_type == "result":
        return RenderResult(usage=extract_usage_data(event))
    return RenderResult()


def describe_tool_use(name: str, tool_input: dict[str, Any]) -> str:  # noqa: PLR0911
    """One-line human description of a tool invocation."""

    if name in {"Read", "Write", "Edit"}:
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing"}[name]
        return f"{verb} {tool_input.get('file_path') or 'file'}"
    if name == "Bash":
        return f"Running: {_truncate(str(tool_input.get('command', '')), 120)}"
    if name == "Glob":
        return f"Searching files: {tool_input.get('pattern', '')}"
    if name == "Grep":
        return f"Searching for: {_truncate(str(tool_input.get('pattern', '')), 80)}"
    if name == "WebFetch":
        return f"Fetching: {tool_input.get('url', '')}"
    if name == "WebSearch":
        return f"Searching web: {tool_input.get('query', '')}"
    if name == "TodoWrite":
        return "Updating task list"
    if name == "Task":
        subject = tool_input.get("description") or tool_input.get("prompt") or ""
        return f"Launching agent: {_truncate(str(subject), 80)}"
    if name == "NotebookEdit":
        return f"Editing notebook: {tool_input.get('notebook_path', '')}"
    return f"Using tool: {name}"


def extract_usage_data(event: dict[str, Any]) -> UsageData | None:
    """Read token counts and per-model usage from a ``result`` event."""

    usage = event.get("usage")
    model_usage = event.get("modelUsage")
    if not usage and not model_usage:
        return None

    usage = usage if isinstance(usage, dict) else {}
    per_model: dict[str, ModelTokenUsage] = {}
    if isinstance(model_usage, dict):
        for model, data in model_usage.items():
            if not isinstance(data, dict):
                continue
            per_model[str(model)] = ModelTokenUsage(
                input_tokens=_int(data.get("inputTokens")),
                output_tokens=_int(data.get("outputTokens")),
                cache_read_input_tokens=_int(data.get("cacheReadInputTokens")),
                cache_creation_input_tokens=_int(data.get("cacheCreationInputTokens")),
                cost_usd=_float(data.get("costUSD")),
            )

    return UsageData(
        input_tokens=_int(usage.get("input_tokens")),
        output_tokens=_int(usage.get("output_tokens")),
        cache_read_input_tokens=_int(usage.get("cache_read_input_tokens")),
        cache_creation_input_tokens=_int(usage.get("cache_creation_input_tokens")),
        total_cost_usd=_float(event.get("total_cost_usd")),
        model_usage=per_model,
    )


def _render_assistant(event: dict[str, Any]) -> RenderResult:
    message = event.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return RenderResult()

    display: list[str] = []
    text: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and block.get("text"):
            text.append(block["text"])
            display.append(f"{block['text']}\n")
        elif block.get("type") == "tool_use" and block.get("name"):
            tool_input = block.get("input")
            description = describe_tool_use(
                str(block["name"]),
                tool_input if isinstance(tool_input, dict) else {},
            )
            display.append(f"  → {description}\n")
    return RenderResult(display="".join(display), text_content="".join(text))


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _int(value: object) -> int:
    return int(value) if isinstance(value, int | float) else 0


def _float(value: object) -> float:
    return float(value) if isinstance(value, int | float) else 0.0
