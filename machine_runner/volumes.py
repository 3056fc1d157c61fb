"""Host volume specifications and Windows path translation."""

from __future__ import annotations

import ntpath
import os
import re
from typing import Callable, List, NamedTuple

from machine_runner.exceptions import ManagerError
from machine_runner.utils import is_windows

_DRIVE_RE = re.compile(r"^[A-Za-z]$")


class VolumeMount(NamedTuple):
    source: str
    target: str
    read_only: bool = False


def convert_mount_path(path: str, exists: Callable[[str], bool] = os.path.exists) -> str:
    """Translate a Windows host path into where the subsystem guest sees it.

    ``C:\\Users\\me`` becomes ``/mnt/c/Users/me``; the ``/c/Users/me`` shell
    form is accepted when the drive path exists; ``\\\\.\\`` device paths map
    under ``/mnt/wsl``; other absolute unix paths pass through. UNC shares
    are not reachable from the guest.
    """
    if path.startswith("/"):
        if len(path) > 2 and path[2] == "/" and _DRIVE_RE.match(path[1]):
            drive = path[1].lower()
            win_path = f"{drive}:" + path[2:].replace("/", "\\")
            if exists(win_path):
                return f"/mnt/{drive}/{path[3:]}"
        return path

    path = ntpath.abspath(path) if is_windows() else ntpath.normpath(path)
    if path.startswith("\\\\.\\"):
        path = "/mnt/wsl/" + path[4:]
    elif len(path) > 1 and path[1] == ":":
        path = "/mnt/" + path[0].lower() + path[2:]
    else:
        raise ManagerError(f"Unsupported UNC path: {path}")
    return path.replace("\\", "/")


def parse_volume(spec: str) -> VolumeMount:
    """Parse ``source[:target[:ro|rw]]``, keeping a leading drive letter intact."""
    parts = spec.split(":")
    if len(parts) > 1 and _DRIVE_RE.match(parts[0]) and parts[1].startswith(("\\", "/")):
        parts = [parts[0] + ":" + parts[1]] + parts[2:]
    if not parts[0]:
        raise ManagerError(f"Invalid volume '{spec}': missing source")
    if len(parts) > 3:
        raise ManagerError(f"Invalid volume '{spec}': too many ':' separated fields")
    source = parts[0]
    target = parts[1] if len(parts) > 1 and parts[1] else source
    if target == source and not source.startswith("/"):
        target = convert_mount_path(source)
    read_only = False
    if len(parts) == 3:
        if parts[2] not in ("ro", "rw"):
            raise ManagerError(f"Invalid volume '{spec}': option must be 'ro' or 'rw'")
        read_only = parts[2] == "ro"
    if not target.startswith("/"):
        raise ManagerError(f"Invalid volume '{spec}': guest path must be absolute")
    return VolumeMount(source=source, target=target, read_only=read_only)


def parse_volumes(specs: List[str]) -> List[VolumeMount]:
    return [parse_volume(spec) for spec in specs]
