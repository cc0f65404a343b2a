"""Local deterministic agent for runner and worker integration tests."""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Behave like a tiny agent according to ``--mode``."""

    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--mode",
        default="complete",
        choices=("complete", "failed", "overflow", "sleep", "linger", "stream", "stubborn"),
    )
    parser.add_argument("--prompt", default="")
    parser.add_argument("--reason", default="tests are red")
    parser.add_argument(
        "--overflow-message",
        default="Error: context length exceeded for this conversation",
    )
    parser.add_argument("--seconds", type=float, default=30.0)
    parser.add_argument("--fail-times", type=int, default=0)
    parser.add_argument("--counter-file", default=None)
    parser.add_argument("--write-outcome", action="store_true")
    parser.add_argument("message", nargs="?", default="")
    args = parser.parse_args(argv)

    print(f"tty={'yes' if sys.stdout.isatty() else 'no'}", flush=True)
    if args.counter_file and _bump_counter(Path(args.counter_file)) <= args.fail_times:
        print("<promise>FAILED</promise>")
        print(f"Reason: {args.reason}", flush=True)
        return 1

    if args.mode == "failed":
        print("Working on it")
        print("<promise>FAILED</promise>")
        print(f"Reason: {args.reason}", flush=True)
        return 1
    if args.mode == "overflow":
        print(args.overflow_message, flush=True)
        time.sleep(args.seconds)
        return 1
    if args.mode == "sleep":
        time.sleep(args.seconds)
        return 0
    if args.mode == "stubborn":
        signal.signal(signal.SIGINT, signal.SIG_IGN)
        time.sleep(args.seconds)
        return 0
    if args.mode == "stream":
        _emit_stream()
        return 0

    if args.write_outcome and os.getenv("RAF_OUTCOME_FILE"):
        outcome = Path(os.environ["RAF_OUTCOME_FILE"])
        outcome.parent.mkdir(parents=True, exist_ok=True)
        outcome.write_text(
            "# Outcome\n\nDone by echo agent.\n\n<promise>COMPLETE</promise>\n",
            "utf-8",
        )
    print(f"Task received ({len(args.prompt)} chars)")
    print("<promise>COMPLETE</promise>", flush=True)
    if args.mode == "linger":
        time.sleep(args.seconds)
    return 0


def _emit_stream() -> None:
    events = [
        {"type": "system", "subtype": "init"},
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "tool_use", "name": "Read", "input": {"file_path": "plan.md"}},
                    {"type": "text", "text": "All done.\n<promise>COMPLETE</promise>"},
                ],
            },
        },
        {"type": "user", "message": {"content": [{"type": "tool_result"}]}},
        {
            "type": "result",
            "result": "All done.\n<promise>COMPLETE</promise>",
            "usage": {"input_tokens": 120, "output_tokens": 30},
            "total_cost_usd": 0.01,
        },
    ]
    for event in events:
        print(json.dumps(event), flush=True)


def _bump_counter(path: Path) -> int:
    count = int(path.read_text("utf-8")) + 1 if path.exists() else 1
    path.write_text(str(count), "utf-8")
    return count


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
