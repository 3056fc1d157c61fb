"""Data models for machine-runner."""

from __future__ import annotations

import enum
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional

from machine_runner.constants import QEMU_VIRT, SUPPORTED_VM_TYPES, WSL_VIRT
from machine_runner.exceptions import ManagerError


class PortMapping(NamedTuple):
    host_ip: str = ""
    host_port: int = 0
    container_port: int = 0
    protocol: str = "tcp"
    range: int = 1


class InitResult(enum.Enum):
    COMPLETE = "complete"
    # Partial completion: a reboot is pending or an elevated child did the work.
    PENDING = "pending"


@dataclass
class SSHConfig:
    port: int
    identity_path: str
    remote_username: str


@dataclass
class WSLConfig:
    user_mode_networking: bool = False


@dataclass
class QEMUConfig:
    qmp_socket: str = ""
    pid_file: str = ""
    ignition_file: str = ""


@dataclass
class DownloadDescriptor:
    url: str
    size: int
    version: str
    local_compressed_path: Path
    local_uncompressed_path: Path


@dataclass
class CreateVMOpts:
    name: str
    image_path: str = ""
    username: str = "user"
    cpus: int = 2
    memory: int = 2048
    disk_size: int = 100
    rootful: bool = False
    user_mode_networking: bool = False
    volumes: List[str] = field(default_factory=list)
    password: str = ""
    reexec: bool = False
    argv: List[str] = field(default_factory=list)


@dataclass
class SetOptions:
    cpus: Optional[int] = None
    memory: Optional[int] = None
    disk_size: Optional[int] = None
    rootful: Optional[bool] = None
    user_mode_networking: Optional[bool] = None

    def requested(self) -> List[str]:
        """Names of the attributes this request actually changes."""
        return [name for name, value in asdict(self).items() if value is not None]


@dataclass
class MachineConfig:
    name: str
    vm_type: str
    ssh: SSHConfig
    image_path: str = ""
    image_stream: str = ""
    cpus: int = 2
    memory: int = 2048
    disk_size: int = 100
    rootful: bool = False
    volumes: List[str] = field(default_factory=list)
    created: str = ""
    last_up: str = ""
    wsl: Optional[WSLConfig] = None
    qemu: Optional[QEMUConfig] = None
    config_path: Optional[Path] = field(default=None, repr=False, compare=False)
    _lock: Any = field(default_factory=threading.RLock, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.vm_type not in SUPPORTED_VM_TYPES:
            raise ManagerError(f"Unknown machine type '{self.vm_type}'")
        if self.vm_type == WSL_VIRT:
            if self.qemu is not None:
                raise ManagerError(f"Machine {self.name}: qemu settings on a {WSL_VIRT} machine")
            if self.wsl is None:
                self.wsl = WSLConfig()
        if self.vm_type == QEMU_VIRT:
            if self.wsl is not None:
                raise ManagerError(f"Machine {self.name}: wsl settings on a {QEMU_VIRT} machine")
            if self.qemu is None:
                self.qemu = QEMUConfig()

    def __setattr__(self, key: str, value: Any) -> None:
        if key == "name" and "name" in self.__dict__ and value != self.__dict__["name"]:
            raise AttributeError(f"Machine name is immutable (tried to rename {self.name} to {value})")
        super().__setattr__(key, value)

    @contextmanager
    def lock(self) -> Iterator["MachineConfig"]:
        with self._lock:
            yield self

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "vm_type": self.vm_type,
            "ssh": asdict(self.ssh),
            "image_path": self.image_path,
            "image_stream": self.image_stream,
            "cpus": self.cpus,
            "memory": self.memory,
            "disk_size": self.disk_size,
            "rootful": self.rootful,
            "volumes": list(self.volumes),
            "created": self.created,
            "last_up": self.last_up,
        }
        if self.wsl is not None:
            data["wsl"] = asdict(self.wsl)
        if self.qemu is not None:
            data["qemu"] = asdict(self.qemu)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_path: Optional[Path] = None) -> "MachineConfig":
        try:
            ssh = SSHConfig(**_known(SSHConfig, data["ssh"]))
            name = data["name"]
            vm_type = data["vm_type"]
        except (KeyError, TypeError) as exc:
            raise ManagerError(f"Malformed machine configuration {config_path or ''}: {exc}") from exc
        wsl = WSLConfig(**_known(WSLConfig, data["wsl"])) if data.get("wsl") is not None else None
        qemu = QEMUConfig(**_known(QEMUConfig, data["qemu"])) if data.get("qemu") is not None else None
        return cls(
            name=name,
            vm_type=vm_type,
            ssh=ssh,
            image_path=data.get("image_path", ""),
            image_stream=data.get("image_stream", ""),
            cpus=int(data.get("cpus", 2)),
            memory=int(data.get("memory", 2048)),
            disk_size=int(data.get("disk_size", 100)),
            rootful=bool(data.get("rootful", False)),
            volumes=list(data.get("volumes") or []),
            created=data.get("created", ""),
            last_up=data.get("last_up", ""),
            wsl=wsl,
            qemu=qemu,
            config_path=config_path,
        )


def _known(model: type, raw: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys a newer version may have written."""
    names = model.__dataclass_fields__.keys()
    return {key: value for key, value in raw.items() if key in names}
