"""Deterministic stream-json agent for supervisor integration tests.

Speaks the same JSON-lines shape as the real CLI agent (``system`` init
record with a session id, ``assistant`` messages with token usage, a final
``result`` record) and plays one of a few fixed scenarios.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
import uuid
from datetime import UTC, datetime

SCENARIOS = (
    "ok",
    "usage-limit",
    "structured-limit",
    "stderr-limit",
    "fail",
    "silent",
    "slow",
)
USAGE_LIMIT_TEXT = "I've reached my usage limit. Try again at 6:00 PM PST on November 28."


def main(argv: list[str] | None = None) -> int:
    """Play the requested scenario and return the process exit code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--scenario", choices=SCENARIOS, default="ok")
    parser.add_argument("--resume-scenario", choices=SCENARIOS, default="ok")
    parser.add_argument("-p", "--prompt", default="")
    parser.add_argument("--model", default="sonnet")
    parser.add_argument("--resume", default="")
    parser.add_argument("--session-id", default="")
    parser.add_argument("--lines", type=int, default=1)
    parser.add_argument("--sleep", type=float, default=30.0)
    parser.add_argument("--reset-epoch", type=int, default=1_795_917_600)
    args, _ = parser.parse_known_args(argv)

    scenario = args.resume_scenario if args.resume else args.scenario
    session_id = args.resume or args.session_id or str(uuid.uuid4())

    if scenario == "silent":
        time.sleep(args.sleep)
        return 0
    if scenario == "stderr-limit":
        _emit_err(USAGE_LIMIT_TEXT)
        return 1
    if scenario == "fail":
        _emit({"type": "system", "subtype": "init", "session_id": session_id})
        _emit_err("fatal: agent crashed")
        return 2

    _emit(
        {
            "type": "system",
            "subtype": "init",
            "session_id": session_id,
            "model": args.model,
            "resumed": bool(args.resume),
        },
    )
    for index in range(max(0, args.lines)):
        _emit(_assistant(f"step {index + 1}: {args.prompt}", session_id=session_id))
    if scenario == "slow":
        time.sleep(args.sleep)
    if scenario == "usage-limit":
        _emit(_assistant(USAGE_LIMIT_TEXT, session_id=session_id))
        _emit(_result(session_id=session_id, success=False, text=USAGE_LIMIT_TEXT))
        return 1
    if scenario == "structured-limit":
        marker = f"Claude AI usage limit reached|{args.reset_epoch}"
        _emit(_result(session_id=session_id, success=False, text=marker))
        return 1
    _emit(_result(session_id=session_id, success=True, text="done"))
    return 0


def _assistant(text: str, *, session_id: str) -> dict[str, object]:
    return {
        "type": "assistant",
        "session_id": session_id,
        "timestamp": _now(),
        "message": {
            "content": [{"type": "text", "text": text}],
            "usage": {
                "input_tokens": 100,
                "output_tokens": 50,
                "cache_creation_input_tokens": 10,
                "cache_read_input_tokens": 20,
            },
        },
    }


def _result(*, session_id: str, success: bool, text: str) -> dict[str, object]:
    return {
        "type": "result",
        "subtype": "success" if success else "error",
        "is_error": not success,
        "session_id": session_id,
        "timestamp": _now(),
        "result": text,
    }


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()


def _emit(record: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(record) + "\n")
    sys.stdout.flush()


def _emit_err(text: str) -> None:
    sys.stderr.write(text + "\n")
    sys.stderr.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
