from __future__ import annotations

import allure

from raf.orchestrator.retry import with_retry

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Retries & Failures"),
]


class _Flaky:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"failure {self.calls}")
        return "ok"


def test_first_success_stops_the_loop() -> None:
    retries: list[int] = []
    flaky = _Flaky(failures=1)

    result = with_retry(flaky, max_retries=3, on_retry=lambda attempt, _: retries.append(attempt))

    assert result.success
    assert result.result == "ok"
    assert result.attempts == 2
    assert retries == [1]


def test_exhausted_retries_report_last_error_and_skip_final_hook() -> None:
    retries: list[int] = []
    flaky = _Flaky(failures=10)

    result = with_retry(flaky, max_retries=3, on_retry=lambda attempt, _: retries.append(attempt))

    assert not result.success
    assert result.attempts == 3
    assert str(result.last_error) == "failure 3"
    assert retries == [1, 2]


def test_should_retry_can_stop_early() -> None:
    flaky = _Flaky(failures=10)

    result = with_retry(flaky, max_retries=5, should_retry=lambda error: "1" not in str(error))

    assert not result.success
    assert result.attempts == 1
    assert flaky.calls == 1


def test_non_positive_max_retries_still_runs_once() -> None:
    flaky = _Flaky(failures=0)

    result = with_retry(flaky, max_retries=0)

    assert result.success
    assert flaky.calls == 1
