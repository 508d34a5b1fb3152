"""Small file helpers used across the cluster agent."""

from __future__ import annotations

import os
from pathlib import Path


def file_exists(path: str | os.PathLike[str]) -> bool:
    """Return True unless the path is known not to exist."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError:
        # The path may exist but be unreadable; treat it as present.
        return True
    return True


def setup_permissions(path: str | os.PathLike[str], chown_group: str) -> None:
    """Set mode 0660 and the given group on a file, ignoring any failure."""
    try:
        os.chmod(path, 0o660)
    except OSError:
        pass
    try:
        import grp
    except ImportError:
        return
    try:
        gid = grp.getgrnam(chown_group).gr_gid
    except KeyError:
        return
    try:
        os.chown(path, -1, gid)
    except OSError:
        pass


def read_file(path: str | os.PathLike[str]) -> str:
    """Return the contents of a file as text."""
    return Path(path).read_bytes().decode("utf-8", errors="replace")


def parse_argument_line(line: str) -> tuple[str, str]:
    """Split an argument line into its key (with dashes) and value.

    Both ``--argument value`` and ``--argument=value`` forms are accepted.
    """
    line = line.strip()
    parts = line.split("=")
    if len(parts) >= 2:
        return parts[0], parts[1]
    parts = line.split(" ")
    if len(parts) >= 2:
        return parts[0], " ".join(parts[1:])
    return line, ""