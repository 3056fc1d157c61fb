"""Machine registry and host defaults for machine-runner."""

from __future__ import annotations

import json
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from machine_runner.constants import (
    CONFIG_DIR,
    DATA_DIR,
    DEFAULT_CONFIG_PATH,
    DEFAULT_MACHINE_SETTINGS,
    DEFAULT_STREAM_INDEX_URL,
    MACHINE_NAME_PREFIX,
    MACHINE_NAME_RE,
    QEMU_VIRT,
    READY_TIMEOUT,
    SUPPORTED_VM_TYPES,
    WSL_VIRT,
)
from machine_runner.exceptions import ManagerError, NoSuchMachineError
from machine_runner.models import CreateVMOpts, MachineConfig, SSHConfig
from machine_runner.utils import ensure_directory, find_free_port, get_env, log, parse_int_env


def config_dir(vm_type: Optional[str] = None) -> Path:
    return CONFIG_DIR / vm_type if vm_type else CONFIG_DIR


def data_dir(vm_type: Optional[str] = None) -> Path:
    return DATA_DIR / vm_type if vm_type else DATA_DIR


def cache_dir(vm_type: str) -> Path:
    return data_dir(vm_type) / "cache"


def runtime_dir(vm_type: str) -> Path:
    return data_dir(vm_type) / "run"


def load_defaults(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read host defaults from machine.yaml, falling back to built-ins."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    settings: Dict[str, Any] = dict(DEFAULT_MACHINE_SETTINGS)
    settings["index_url"] = DEFAULT_STREAM_INDEX_URL
    if not config_path.exists():
        return settings
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ManagerError(f"Invalid defaults file {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ManagerError(f"Invalid defaults file {config_path}: expected a mapping")
    machine = data.get("machine") or {}
    for key in DEFAULT_MACHINE_SETTINGS:
        if key in machine and machine[key] is not None:
            settings[key] = machine[key]
    streams = data.get("streams") or {}
    if streams.get("index_url"):
        settings["index_url"] = streams["index_url"]
    return settings


def get_provider_type(defaults: Optional[Dict[str, Any]] = None) -> str:
    """MACHINE_PROVIDER, then the defaults file, then the host platform."""
    requested = (get_env("MACHINE_PROVIDER") or "").strip().lower()
    if not requested and defaults:
        requested = str(defaults.get("provider") or "").strip().lower()
    if not requested:
        requested = WSL_VIRT if sys.platform == "win32" else QEMU_VIRT
    if requested not in SUPPORTED_VM_TYPES:
        raise ManagerError(
            f"Unsupported machine provider '{requested}'. Choose one of: {', '.join(SUPPORTED_VM_TYPES)}"
        )
    return requested


def ready_timeout() -> int:
    """Seconds to wait for a started guest, overridable with MACHINE_READY_TIMEOUT."""
    return parse_int_env("MACHINE_READY_TIMEOUT", str(READY_TIMEOUT))


def validate_machine_name(name: str) -> str:
    if not MACHINE_NAME_RE.match(name):
        raise ManagerError(
            f"Invalid machine name '{name}': use letters, digits, '_', '.' or '-' and start with a letter or digit"
        )
    return name


def to_dist(name: str) -> str:
    """Guest distribution name for a machine; prefixed unless it already is."""
    if not name.startswith(MACHINE_NAME_PREFIX):
        name = f"{MACHINE_NAME_PREFIX}-{name}"
    return name


def machine_config_path(name: str, vm_type: str) -> Path:
    return config_dir(vm_type) / f"{name}.json"


def identity_path(name: str) -> Path:
    return config_dir() / "keys" / name


def now_stamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_machine_config(opts: CreateVMOpts, vm_type: str) -> MachineConfig:
    """Build the in-memory record for a machine about to be created."""
    validate_machine_name(opts.name)
    return MachineConfig(
        name=opts.name,
        vm_type=vm_type,
        ssh=SSHConfig(
            port=find_free_port(),
            identity_path=str(identity_path(opts.name)),
            remote_username=opts.username,
        ),
        image_stream=opts.image_path,
        cpus=opts.cpus,
        memory=opts.memory,
        disk_size=opts.disk_size,
        rootful=opts.rootful,
        volumes=list(opts.volumes),
        created=now_stamp(),
        config_path=machine_config_path(opts.name, vm_type),
    )


def save_machine(mc: MachineConfig) -> Path:
    """Atomically persist *mc* as JSON."""
    path = mc.config_path or machine_config_path(mc.name, mc.vm_type)
    ensure_directory(path.parent)
    payload = json.dumps(mc.to_dict(), indent=2, sort_keys=True) + "\n"
    with mc.lock():
        with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8") as tmp:
            tmp.write(payload)
        Path(tmp.name).replace(path)
        mc.config_path = path
    log("DEBUG", f"Saved machine configuration to {path}")
    return path


def load_machine(name: str, vm_type: str) -> MachineConfig:
    path = machine_config_path(name, vm_type)
    if not path.exists():
        raise NoSuchMachineError(f"{name}: VM does not exist")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ManagerError(f"Could not read machine configuration {path}: {exc}") from exc
    mc = MachineConfig.from_dict(data, config_path=path)
    if mc.name != name or mc.vm_type != vm_type:
        raise ManagerError(f"Machine configuration {path} describes {mc.vm_type}/{mc.name}")
    return mc


def list_machines(vm_type: str) -> List[MachineConfig]:
    directory = config_dir(vm_type)
    if not directory.is_dir():
        return []
    machines = []
    for path in sorted(directory.glob("*.json")):
        try:
            machines.append(load_machine(path.stem, vm_type))
        except ManagerError as exc:
            log("WARN", f"Skipping {path}: {exc}")
    return machines
