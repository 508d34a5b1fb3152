"""Random strings and token files."""

from __future__ import annotations

import os
import re
import secrets
import time
from pathlib import Path

from clusteragent.util.files import setup_permissions

ALPHA = "abcdefghijklmnopqrstuvqxyzABCDEFGHIJKLMONPQRSTUVWXYZ1234567890"
DIGITS = "0123456789"

_INTEGER = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def new_random_string(letters: str, length: int) -> str:
    """Return a cryptographically secure random string drawn from letters."""
    return "".join(secrets.choice(letters) for _ in range(length))


def _parse_timestamp(text: str) -> int | None:
    if not _INTEGER.fullmatch(text):
        return None
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        return None
    return value


def is_valid_token(token: str, tokens_file: str | os.PathLike[str]) -> tuple[bool, bool]:
    """Check whether token is listed in tokens_file.

    Lines may carry an expiry as ``token|unix-timestamp``. Returns a pair
    ``(is_valid, has_ttl)``.
    """
    if token == "":
        return False, False
    token = token.strip()
    try:
        contents = Path(tokens_file).read_bytes().decode("utf-8", errors="replace")
    except OSError:
        return False, False
    for known in contents.split("\n"):
        parts = known.strip().split("|", 1)
        if parts[0] != token:
            continue
        if len(parts) == 1:
            return True, False
        timestamp = _parse_timestamp(parts[1])
        if timestamp is None:
            return False, True
        return time.time() < timestamp, True
    return False, False


def append_token(token: str, tokens_file: str | os.PathLike[str], chown_group: str) -> None:
    """Append a token as a new line of tokens_file, creating it if needed."""
    fd = os.open(tokens_file, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o660)
    with os.fdopen(fd, "a", encoding="utf-8") as handle:
        handle.write(f"{token}\n")
    setup_permissions(tokens_file, chown_group)


def remove_token(token: str, tokens_file: str | os.PathLike[str], chown_group: str) -> None:
    """Remove the first line of tokens_file that starts with token.

    A missing token is not an error; failing to read or write the file is.
    """
    path = Path(tokens_file)
    lines = path.read_bytes().decode("utf-8", errors="replace").split("\n")
    for index, line in enumerate(lines):
        if line.startswith(token):
            del lines[index]
            path.write_bytes("\n".join(lines).encode("utf-8"))
            setup_permissions(tokens_file, chown_group)
            return