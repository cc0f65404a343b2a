"""Token usage accumulation across attempts and tasks."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from raf.orchestrator.models import UsageData


@dataclass(slots=True)
class TaskUsageEntry:
    """Usage for one task: per-attempt records plus their sum."""

    task_id: str
    usage: UsageData
    attempts: list[UsageData] = field(default_factory=list)

    @property
    def total_cost_usd(self) -> float:
        return self.usage.total_cost_usd


def accumulate_usage(attempts: list[UsageData]) -> UsageData:
    """Sum token fields and merge per-model maps."""

    total = UsageData()
    for attempt in attempts:
        total.input_tokens += attempt.input_tokens
        total.output_tokens += attempt.output_tokens
        total.cache_read_input_tokens += attempt.cache_read_input_tokens
        total.cache_creation_input_tokens += attempt.cache_creation_input_tokens
        total.total_cost_usd += attempt.total_cost_usd
        for model, model_usage in attempt.model_usage.items():
            existing = total.model_usage.get(model)
            if existing is None:
                total.model_usage[model] = replace(model_usage)
                continue
            existing.input_tokens += model_usage.input_tokens
            existing.output_tokens += model_usage.output_tokens
            existing.cache_read_input_tokens += model_usage.cache_read_input_tokens
            existing.cache_creation_input_tokens += model_usage.cache_creation_input_tokens
            existing.cost_usd += model_usage.cost_usd
    return total


class TokenTracker:
    """Collects usage entries for a batch run."""

    def __init__(self) -> None:
        self._entries: list[TaskUsageEntry] = []

    def add_task(self, task_id: str, attempts: list[UsageData]) -> TaskUsageEntry:
        entry = TaskUsageEntry(
            task_id=task_id,
            usage=accumulate_usage(attempts),
            attempts=list(attempts),
        )
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> tuple[TaskUsageEntry, ...]:
        return tuple(self._entries)

    def totals(self) -> UsageData:
        return accumulate_usage([entry.usage for entry in self._entries])


def format_usage_line(usage: UsageData) -> str:
    line = (
        f"tokens: in={usage.input_tokens} out={usage.output_tokens} "
        f"cache_read={usage.cache_read_input_tokens} "
        f"cache_write={usage.cache_creation_input_tokens} total={usage.total_tokens}"
    )
    if usage.total_cost_usd:
        line += f" cost=${usage.total_cost_usd:.4f}"
    return line


def format_model_lines(usage: UsageData) -> list[str]:
    """One line per model, sorted by model id."""

    return [
        f"{model}: in={item.input_tokens} out={item.output_tokens} cost=${item.cost_usd:.4f}"
        for model, item in sorted(usage.model_usage.items())
    ]
