"""Reading and updating the argument files of MicroK8s services."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from clusteragent.snap.snap import SnapError
from clusteragent.util.files import parse_argument_line


def get_service_argument(snap: Any, service_name: str, argument: str) -> str:
    """Return the value of one argument of a service.

    The argument name includes its dashes (e.g. ``--secure-port``). An empty
    string is returned if the argument is absent or the file cannot be read.
    """
    try:
        arguments = snap.read_service_arguments(service_name)
    except Exception:
        return ""
    for line in arguments.split("\n"):
        line = line.strip()
        if not line:
            continue
        key, value = parse_argument_line(line)
        if key == argument:
            return value
    return ""


def update_service_arguments(
    snap: Any,
    service_name: str,
    update_list: Iterable[Mapping[str, str]] | None,
    delete: Iterable[str] | None,
) -> bool:
    """Update the arguments file of a service.

    Arguments in ``update_list`` are replaced or appended; arguments in
    ``delete`` are removed. Returns whether any argument changed. Nothing is
    done when both are empty.
    """
    updates_requested = list(update_list or ())
    to_delete = set(delete or ())
    if not updates_requested and not to_delete:
        return False

    updates: dict[str, str] = {}
    for update in updates_requested:
        updates.update(update)

    try:
        arguments = snap.read_service_arguments(service_name)
    except FileNotFoundError:
        arguments = ""
    except (OSError, SnapError) as exc:
        raise SnapError(f"failed to read arguments of service {service_name}: {exc}") from exc

    changed = False
    existing: set[str] = set()
    new_arguments: list[str] = []
    for line in arguments.split("\n"):
        line = line.strip()
        if not line:
            continue
        key, old_value = parse_argument_line(line)
        existing.add(key)
        if key in updates:
            new_value = updates[key]
            new_arguments.append(f"{key}={new_value}")
            if old_value != new_value:
                changed = True
        elif key in to_delete:
            changed = True
        else:
            new_arguments.append(line)

    for key, value in updates.items():
        if key not in existing:
            changed = True
            new_arguments.append(f"{key}={value}")

    contents = "\n".join(new_arguments) + "\n"
    try:
        snap.write_service_arguments(service_name, contents.encode("utf-8"))
    except (OSError, SnapError) as exc:
        raise SnapError(f"failed to update arguments for service {service_name}: {exc}") from exc
    return changed