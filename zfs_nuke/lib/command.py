from __future__ import annotations

import logging
import shlex
import subprocess
from collections import deque
from dataclasses import dataclass
from typing import Deque, Sequence

logger = logging.getLogger(__name__)

# Lines of combined output kept for error reports.
OUTPUT_TAIL_LINES = 40
SHELL_OPTIONS = ("-o", "errexit", "-o", "nounset", "-o", "pipefail")


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    output: str = ""


def fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def sh_single_quote(value: str) -> str:
    """Always single-quote ``value`` for POSIX sh (unlike shlex.quote)."""

    return "'" + value.replace("'", "'\\''") + "'"


def run_cmd(argv: Sequence[str], *, dry_run: bool = False) -> CmdResult:
    """Run a command, streaming its output into the log as it arrives.

    stderr is folded into stdout so progress from long-running tools shows
    up in order. Only the last :data:`OUTPUT_TAIL_LINES` lines are kept on
    the result. dry_run logs but does not execute.
    """

    argv_list = list(argv)
    logger.info("CMD %s", fmt_argv(argv_list))

    if dry_run:
        return CmdResult(argv=argv_list, returncode=0)

    tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
    with subprocess.Popen(
        argv_list,
        text=True,
        errors="replace",
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
    ) as proc:
        for line in proc.stdout or ():
            line = line.rstrip("\n")
            logger.info("| %s", line)
            tail.append(line)
        returncode = proc.wait()

    return CmdResult(argv=argv_list, returncode=returncode, output="\n".join(tail))


def run_shell(command: str, *, dry_run: bool = False) -> CmdResult:
    """Run one step under the same shell options as the emitted script."""

    return run_cmd(["bash", *SHELL_OPTIONS, "-c", command], dry_run=dry_run)
