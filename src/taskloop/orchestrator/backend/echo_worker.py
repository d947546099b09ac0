"""Local scripted worker for CLI and loop integration tests."""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Print scripted output and exit with a scripted code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--say", action="append", default=[], help="Line to print on stdout.")
    parser.add_argument("--stderr", action="append", default=[], help="Line to print on stderr.")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--prompt-file", default=None, help="Echo this file to stdout first.")
    parser.add_argument("--count-file", default=None, help="Append one line per invocation.")
    parser.add_argument(
        "--child-pid-file",
        default=None,
        help="Spawn a long-sleeping child process and write its pid here.",
    )
    parser.add_argument("task", nargs="*", help="Task text, ignored.")
    args = parser.parse_args(argv)

    task_id = os.getenv("TASKLOOP_TASK_ID", "")
    if args.count_file:
        with Path(args.count_file).open("a", encoding="utf-8") as handle:
            handle.write(f"{task_id}\n")

    if args.prompt_file:
        sys.stdout.write(Path(args.prompt_file).read_text("utf-8"))

    for line in args.say:
        print(line.replace("{task_id}", task_id))
    for line in args.stderr:
        print(line.replace("{task_id}", task_id), file=sys.stderr)
    sys.stdout.flush()
    sys.stderr.flush()

    if args.child_pid_file:
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", "import time; time.sleep(60)"],
        )
        Path(args.child_pid_file).write_text(str(child.pid), "utf-8")

    if args.sleep > 0:
        time.sleep(args.sleep)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
