"""Local stand-in agent for loop and CLI backend integration tests."""

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path

_PROMISE_RE = re.compile(r"<promise>([^<]+)</promise>")


def main(argv: list[str] | None = None) -> int:
    """Echo a summary of the prompt and, unless told otherwise, the completion marker."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--no-promise", action="store_true")
    parser.add_argument("--message", default="")
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    first_line = next((line for line in prompt.splitlines() if line.strip()), "")
    print(f"echo agent received: {first_line}")
    if args.message:
        print(args.message)
    if not args.no_promise:
        match = _PROMISE_RE.search(prompt)
        promise = match.group(1) if match else "COMPLETE"
        print(f"<promise>{promise}</promise>")
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
