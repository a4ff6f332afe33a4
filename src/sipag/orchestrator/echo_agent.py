"""Local demo agent for worker integration tests.

Writes the prompt into a file in the current directory and commits it, which
is all the worker checks for. Flags simulate the failure modes.
"""

from __future__ import annotations

import argparse
import subprocess
import sys
import time
from pathlib import Path

OUTPUT_FILE = "SIPAG_TASK.md"


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic demo change."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=True)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--no-commit", action="store_true")
    parser.add_argument("--sleep", type=float, default=0.0)
    args = parser.parse_args(argv)

    if args.sleep > 0:
        time.sleep(args.sleep)
    print("echo agent started")
    if args.exit_code != 0:
        print(f"echo agent failing with exit code {args.exit_code}")
        return args.exit_code
    if args.no_commit:
        return 0

    Path(OUTPUT_FILE).write_text(args.prompt, "utf-8")
    for command in (
        ["git", "add", OUTPUT_FILE],
        [
            "git",
            "-c",
            "user.name=sipag echo agent",
            "-c",
            "user.email=echo-agent@sipag.invalid",
            "commit",
            "-m",
            "Record task prompt",
        ],
    ):
        subprocess.run(command, check=True)  # noqa: S603
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
