"""Running external commands."""

from __future__ import annotations

import subprocess
import threading

_POLL_INTERVAL = 0.05


class CommandError(Exception):
    """A command could not be run or did not exit successfully."""

    def __init__(self, command: list[str], exit_code: int, reason: str) -> None:
        self.command = command
        self.exit_code = exit_code
        self.reason = reason
        super().__init__(
            f"command [{' '.join(command)}] failed with exit code {exit_code}: {reason}"
        )


def run_command(*args: str, cancel: threading.Event | None = None) -> None:
    """Run a command, inheriting stdout and stderr.

    Raises CommandError unless the command exits with code 0. Setting the
    optional ``cancel`` event kills the running command.
    """
    if not args:
        raise ValueError("no command given")
    command = list(args)
    if cancel is not None and cancel.is_set():
        raise CommandError(command, -1, "context canceled")
    try:
        process = subprocess.Popen(command)
    except OSError as exc:
        raise CommandError(command, -1, str(exc)) from exc

    if cancel is None:
        code = process.wait()
    else:
        while True:
            try:
                code = process.wait(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel.is_set():
                    process.kill()
                    process.wait()
                    raise CommandError(command, -1, "signal: killed") from None

    if code < 0:
        raise CommandError(command, -1, f"signal: {-code}")
    if code != 0:
        raise CommandError(command, code, f"exit status {code}")