from __future__ import annotations

import json

import allure

from raf.orchestrator.models import ModelTokenUsage, UsageData
from raf.orchestrator.stream_renderer import describe_tool_use, render_stream_event
from raf.orchestrator.usage import (
    TokenTracker,
    accumulate_usage,
    format_model_lines,
    format_usage_line,
)

pytestmark = [
    allure.epic("Agent Protocol"),
    allure.feature("Stream Rendering & Usage"),
]


def test_assistant_text_and_tool_use_render_separately() -> None:
    event = {
        "type": "assistant",
        "message": {
            "content": [
                {"type": "text", "text": "Looking around."},
                {"type": "tool_use", "name": "Read", "input": {"file_path": "src/app.py"}},
            ],
        },
    }

    rendered = render_stream_event(json.dumps(event))

    assert rendered.display == "Looking around.\n  → Reading src/app.py\n"
    assert rendered.text_content == "Looking around."
    assert rendered.usage is None


def test_result_event_carries_usage_only() -> None:
    event = {
        "type": "result",
        "result": "repeated text",
        "total_cost_usd": 0.25,
        "usage": {"input_tokens": 100, "output_tokens": 20, "cache_read_input_tokens": 5},
        "modelUsage": {
            "claude-opus": {"inputTokens": 100, "outputTokens": 20, "costUSD": 0.25},
        },
    }

    rendered = render_stream_event(json.dumps(event))

    assert rendered.display == ""
    assert rendered.text_content == ""
    assert rendered.usage is not None
    assert rendered.usage.input_tokens == 100
    assert rendered.usage.cache_read_input_tokens == 5
    assert rendered.usage.model_usage["claude-opus"].cost_usd == 0.25


def test_non_json_lines_pass_through_and_other_events_are_silent() -> None:
    assert render_stream_event("plain text").display == "plain text\n"
    assert render_stream_event("plain text").text_content == "plain text"
    assert render_stream_event("   ").display == ""
    assert render_stream_event(json.dumps({"type": "system"})).display == ""
    assert render_stream_event(json.dumps({"type": "user"})).text_content == ""


def test_describe_tool_use_truncates_long_commands() -> None:
    description = describe_tool_use("Bash", {"command": "x" * 200})

    assert description.startswith("Running: ")
    assert description.endswith("...")
    assert len(description) == len("Running: ") + 120
    assert describe_tool_use("Mystery", {}) == "Using tool: Mystery"
    assert describe_tool_use("TodoWrite", {}) == "Updating task list"


def test_accumulate_merges_model_maps() -> None:
    first = UsageData(
        input_tokens=10,
        output_tokens=2,
        total_cost_usd=0.1,
        model_usage={"opus": ModelTokenUsage(input_tokens=10, output_tokens=2, cost_usd=0.1)},
    )
    second = UsageData(
        input_tokens=5,
        output_tokens=1,
        total_cost_usd=0.05,
        model_usage={
            "opus": ModelTokenUsage(input_tokens=3, output_tokens=1, cost_usd=0.03),
            "haiku": ModelTokenUsage(input_tokens=2, cost_usd=0.02),
        },
    )

    total = accumulate_usage([first, second])

    assert (total.input_tokens, total.output_tokens, total.total_tokens) == (15, 3, 18)
    assert total.model_usage["opus"].input_tokens == 13
    assert first.model_usage["opus"].input_tokens == 10
    assert format_model_lines(total) == [
        "haiku: in=2 out=0 cost=$0.0200",
        "opus: in=13 out=3 cost=$0.1300",
    ]


def test_tracker_totals_and_usage_line() -> None:
    tracker = TokenTracker()
    tracker.add_task("01", [UsageData(input_tokens=120, output_tokens=30, total_cost_usd=0.01)])
    tracker.add_task("02", [])

    totals = tracker.totals()

    assert [entry.task_id for entry in tracker.entries] == ["01", "02"]
    assert format_usage_line(totals) == (
        "tokens: in=120 out=30 cache_read=0 cache_write=0 total=150 cost=$0.0100"
    )
    assert format_usage_line(UsageData()).endswith("total=0")
