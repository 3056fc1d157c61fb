"""SSH identities and the engine client's connection registry."""

from __future__ import annotations

import json
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from machine_runner import config as machine_config
from machine_runner.constants import (
    CONNECTIONS_FILE_NAME,
    DEFAULT_GUEST_UID,
    ROOTFUL_SOCKET,
    ROOTLESS_SOCKET,
)
from machine_runner.exceptions import ManagerError
from machine_runner.models import MachineConfig
from machine_runner.utils import ensure_directory, log, run


def connections_path() -> Path:
    return machine_config.config_dir() / CONNECTIONS_FILE_NAME


def public_key_path(identity: Path) -> Path:
    return identity.with_name(identity.name + ".pub")


def create_ssh_keys(identity: Path) -> str:
    """Generate an ed25519 key pair at *identity* and return the public key."""
    ensure_directory(identity.parent)
    for path in (identity, public_key_path(identity)):
        path.unlink(missing_ok=True)
    try:
        run(["ssh-keygen", "-N", "", "-t", "ed25519", "-q", "-f", str(identity)], capture_output=True)
    except FileNotFoundError as exc:
        raise ManagerError("ssh-keygen not found; install an OpenSSH client") from exc
    except subprocess.CalledProcessError as exc:
        raise ManagerError(f"ssh-keygen failed: {(exc.stderr or '').strip()}") from exc
    return public_key_path(identity).read_text(encoding="utf-8").strip()


def remove_ssh_keys(identity: Path) -> None:
    for path in (identity, public_key_path(identity)):
        path.unlink(missing_ok=True)


def make_ssh_url(user: str, port: int, path: str, host: str = "localhost") -> str:
    return f"ssh://{user}@{host}:{port}{path}"


def _load() -> Dict[str, object]:
    path = connections_path()
    if not path.exists():
        return {"default": "", "connections": {}}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ManagerError(f"Could not read connections file {path}: {exc}") from exc
    data.setdefault("default", "")
    data.setdefault("connections", {})
    return data


def _store(data: Dict[str, object]) -> None:
    path = connections_path()
    ensure_directory(path.parent)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8") as tmp:
        json.dump(data, tmp, indent=2, sort_keys=True)
        tmp.write("\n")
    Path(tmp.name).replace(path)


def list_connections() -> Dict[str, Dict[str, str]]:
    return dict(_load()["connections"])  # type: ignore[arg-type]


def default_connection() -> str:
    return str(_load()["default"])


def add_connection(name: str, uri: str, identity: str, make_default: bool = False) -> None:
    data = _load()
    connections = data["connections"]
    assert isinstance(connections, dict)
    connections[name] = {"uri": uri, "identity": identity}
    if make_default or not data["default"]:
        data["default"] = name
    _store(data)


def remove_connection(name: str) -> None:
    data = _load()
    connections = data["connections"]
    assert isinstance(connections, dict)
    if name not in connections:
        raise ManagerError(f"Connection {name} does not exist")
    del connections[name]
    if data["default"] == name:
        data["default"] = next(iter(sorted(connections)), "")
    _store(data)


def machine_connection_names(mc: MachineConfig) -> List[str]:
    return [mc.name, f"{mc.name}-root"]


def add_machine_connections(mc: MachineConfig, make_default: Optional[bool] = None) -> None:
    """Register rootless and rootful connections for *mc*.

    The connection matching the machine's rootful setting becomes the
    default when no default exists yet or when *make_default* says so.
    """
    rootless_uri = make_ssh_url(
        mc.ssh.remote_username, mc.ssh.port, ROOTLESS_SOCKET.format(uid=DEFAULT_GUEST_UID)
    )
    rootful_uri = make_ssh_url("root", mc.ssh.port, ROOTFUL_SOCKET)
    rootless_name, rootful_name = machine_connection_names(mc)
    if make_default is None:
        make_default = not default_connection()
    add_connection(rootless_name, rootless_uri, mc.ssh.identity_path, make_default and not mc.rootful)
    add_connection(rootful_name, rootful_uri, mc.ssh.identity_path, make_default and mc.rootful)


def remove_machine_connections(mc: MachineConfig) -> None:
    """Remove both machine connections, logging the ones that are gone already."""
    for name in machine_connection_names(mc):
        try:
            remove_connection(name)
        except ManagerError as exc:
            log("WARN", f"Could not remove connection {name}: {exc}")


def set_default_for_rootful(mc: MachineConfig) -> None:
    rootless_name, rootful_name = machine_connection_names(mc)
    wanted = rootful_name if mc.rootful else rootless_name
    data = _load()
    if data["default"] in (rootless_name, rootful_name) and wanted in data["connections"]:  # type: ignore[operator]
        data["default"] = wanted
        _store(data)
