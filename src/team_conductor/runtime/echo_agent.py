"""Deterministic stand-in for an agent CLI, used by integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back in the requested output format."""

    parser = argparse.ArgumentParser()
    parser.add_argument("prompt", nargs="?", default=None)
    parser.add_argument("--format", choices=("stream-json", "json", "raw"), default="stream-json")
    parser.add_argument("--session-id", default="echo-session")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--no-result", action="store_true")
    parser.add_argument("--stderr", default="")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--tokens-used", type=int, default=None)
    args = parser.parse_args(argv)

    prompt = args.prompt if args.prompt is not None else sys.stdin.read()
    text = prompt.strip() or "empty prompt"
    if args.sleep:
        time.sleep(args.sleep)

    if args.format == "stream-json":
        _emit({"type": "system", "subtype": "init", "session_id": args.session_id})
        _emit({"type": "message_start", "message": {"usage": {"input_tokens": len(text)}}})
        _emit({"type": "tool_use", "name": "Bash", "input": {"command": f"echo {text}"}})
        _emit({"type": "tool_result", "output": text})
        _emit(
            {
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": text}]},
            },
        )
        if not args.no_result:
            _emit(
                {
                    "type": "result",
                    "result": text,
                    "session_id": args.session_id,
                    "usage": {"input_tokens": len(text), "output_tokens": len(text)},
                },
            )
    elif args.format == "json":
        sys.stdout.write(json.dumps({"result": text, "session_id": args.session_id}))
    else:
        sys.stdout.write(f"\x1b[32mworking\x1b[0m\n{text}\n")
        if args.tokens_used is not None:
            sys.stdout.write(f"tokens used\n{args.tokens_used:,}\n")
    sys.stdout.flush()

    if args.stderr:
        sys.stderr.write(args.stderr)
        sys.stderr.flush()
    return args.exit_code


def _emit(event: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
