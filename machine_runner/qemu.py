"""QEMU backend driven through its QMP monitor."""

from __future__ import annotations

import functools
import json
import os
import shutil
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from machine_runner import connections
from machine_runner import config as machine_config
from machine_runner.backend import CleanupFn, DestroyFn, MachineProvider, ReadyFn
from machine_runner.constants import QEMU_VIRT, STATE_RUNNING, STATE_STOPPED, STOP_TIMEOUT
from machine_runner.exceptions import AlreadyRunningError, GuestCommandError, ManagerError
from machine_runner.images import acquire_image, host_arch, owns_image, resolve_image_stream
from machine_runner.models import CreateVMOpts, DownloadDescriptor, MachineConfig, SetOptions
from machine_runner.provision import ProvisioningPipeline
from machine_runner.utils import (
    creation_flags,
    ensure_directory,
    find_free_port,
    hash_password,
    log,
    pid_alive,
    run,
    wait_for_ssh,
)
from machine_runner.volumes import parse_volumes

ARCH_MACHINE_ARGS = {
    "x86_64": ["-machine", "q35"],
    "aarch64": ["-machine", "virt"],
}
CONTAINERS_CONF = '[engine]\nmachine_enabled=true\n'


def accelerator() -> str:
    if sys.platform == "darwin":
        return "hvf"
    if sys.platform == "win32":
        return "whpx"
    if os.path.exists("/dev/kvm"):
        return "kvm"
    return "tcg"


def qmp_command(sock: socket.socket, command: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Send one QMP command and return the first reply carrying a result."""
    cmd: Dict[str, Any] = {"execute": command}
    if arguments:
        cmd["arguments"] = arguments
    sock.sendall((json.dumps(cmd) + "\n").encode())

    response = b""
    for chunk in iter(functools.partial(sock.recv, 4096), b""):
        response += chunk
        if b"\n" in chunk:
            break

    for line in response.decode().strip().split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        data = json.loads(stripped)
        if "return" in data or "error" in data:
            return data
    return {}


def connect_qmp(endpoint: str, timeout: float = 5.0) -> socket.socket:
    """Open the monitor at ``unix:<path>`` or ``tcp:<host>:<port>`` and negotiate."""
    kind, _, address = endpoint.partition(":")
    if kind == "unix":
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        target: Any = address
    elif kind == "tcp":
        host, _, port = address.rpartition(":")
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        target = (host, int(port))
    else:
        raise ManagerError(f"Unsupported QMP endpoint {endpoint}")
    sock.settimeout(timeout)
    try:
        sock.connect(target)
        sock.recv(4096)  # greeting
        qmp_command(sock, "qmp_capabilities")
    except (OSError, ValueError):
        sock.close()
        raise
    return sock


def ignition_config(user: str, public_key: str, password: str = "", rootful: bool = False) -> Dict[str, Any]:
    """Ignition document giving the guest our user, key and engine settings."""
    account: Dict[str, Any] = {"name": user, "sshAuthorizedKeys": [public_key], "groups": ["wheel"]}
    if password:
        account["passwordHash"] = hash_password(password)

    def _file(path: str, contents: str, mode: int = 0o644) -> Dict[str, Any]:
        return {
            "path": path,
            "mode": mode,
            "overwrite": True,
            "contents": {"source": "data:," + quote(contents)},
        }

    return {
        "ignition": {"version": "3.3.0"},
        "passwd": {"users": [account, {"name": "root", "sshAuthorizedKeys": [public_key]}]},
        "storage": {
            "files": [
                _file("/etc/containers/containers.conf", CONTAINERS_CONF),
                _file("/etc/containers/rootful", "1\n" if rootful else "0\n"),
            ],
        },
        "systemd": {
            "units": [
                {"name": "podman.socket", "enabled": True},
                {"name": "docker.service", "mask": True},
            ],
        },
    }


class QEMUStubber(MachineProvider):
    vm_type = QEMU_VIRT
    supported_attributes = frozenset({"cpus", "memory", "disk_size", "rootful"})
    require_exclusive_active = True

    def __init__(self, binary: Optional[str] = None) -> None:
        self.binary = binary or f"qemu-system-{host_arch()}"

    def exists(self, name: str) -> bool:
        return machine_config.machine_config_path(name, self.vm_type).exists()

    def vm_dir(self, name: str) -> Path:
        return machine_config.data_dir(self.vm_type) / name

    def _runtime_paths(self, mc: MachineConfig) -> None:
        assert mc.qemu is not None
        run_dir = machine_config.runtime_dir(self.vm_type)
        if not mc.qemu.qmp_socket:
            if hasattr(socket, "AF_UNIX") and sys.platform != "win32":
                mc.qemu.qmp_socket = f"unix:{run_dir / f'qmp_{mc.name}.sock'}"
            else:
                mc.qemu.qmp_socket = f"tcp:127.0.0.1:{find_free_port()}"
        if not mc.qemu.pid_file:
            mc.qemu.pid_file = str(run_dir / f"{mc.name}_vm.pid")
        if not mc.qemu.ignition_file:
            mc.qemu.ignition_file = str(machine_config.config_dir(self.vm_type) / f"{mc.name}.ign")

    def add_provision_steps(self, pipeline: ProvisioningPipeline, opts: CreateVMOpts, mc: MachineConfig) -> None:
        self._runtime_paths(mc)
        self.add_image_step(pipeline, opts, mc)
        pipeline.add_step(f"Resizing disk to {mc.disk_size}G", lambda: self._resize_disk(mc, mc.disk_size))
        identity = Path(mc.ssh.identity_path)
        public_keys: List[str] = []
        pipeline.add_step(
            "Creating SSH keys",
            lambda: public_keys.append(connections.create_ssh_keys(identity)),
            undo=lambda: connections.remove_ssh_keys(identity),
        )
        pipeline.add_step(
            "Writing Ignition config",
            lambda: self._write_ignition(mc, public_keys[0], opts.password),
            undo=lambda: self._remove_ignition(mc),
        )

    def get_disk(self, image_stream: str, mc: MachineConfig) -> DownloadDescriptor:
        defaults = machine_config.load_defaults()
        stream, descriptor = resolve_image_stream(image_stream, self.vm_type, mc.name, defaults["index_url"])
        mc.image_stream = stream
        mc.image_path = str(acquire_image(descriptor))
        return descriptor

    def _resize_disk(self, mc: MachineConfig, size_gb: int) -> None:
        cmd = ["qemu-img", "resize", mc.image_path, f"{size_gb}G"]
        try:
            run(cmd, capture_output=True)
        except FileNotFoundError as exc:
            raise ManagerError("qemu-img not found; install QEMU") from exc
        except subprocess.CalledProcessError as exc:
            raise GuestCommandError(f"Could not resize disk: {(exc.stderr or '').strip()}", cmd, exc.returncode) from exc

    def _write_ignition(self, mc: MachineConfig, public_key: str, password: str) -> None:
        assert mc.qemu is not None
        path = Path(mc.qemu.ignition_file)
        ensure_directory(path.parent)
        document = ignition_config(mc.ssh.remote_username, public_key, password, mc.rootful)
        path.write_text(json.dumps(document, indent=2), encoding="utf-8")

    def _remove_ignition(self, mc: MachineConfig) -> None:
        assert mc.qemu is not None
        Path(mc.qemu.ignition_file).unlink(missing_ok=True)

    # state

    def _qmp(self, mc: MachineConfig, command: str) -> Dict[str, Any]:
        assert mc.qemu is not None
        with connect_qmp(mc.qemu.qmp_socket) as sock:
            return qmp_command(sock, command)

    def _pid(self, mc: MachineConfig) -> int:
        assert mc.qemu is not None
        try:
            return int(Path(mc.qemu.pid_file).read_text().strip())
        except (OSError, ValueError):
            return 0

    def state(self, mc: MachineConfig) -> str:
        assert mc.qemu is not None
        if not mc.qemu.qmp_socket:
            return STATE_STOPPED
        try:
            result = self._qmp(mc, "query-status")
        except (OSError, ValueError):
            return STATE_STOPPED
        status = (result.get("return") or {}).get("status")
        if status in ("running", "paused", "inmigrate"):
            return STATE_RUNNING
        return STATE_STOPPED

    # lifecycle

    def build_command(self, mc: MachineConfig) -> List[str]:
        assert mc.qemu is not None
        accel = accelerator()
        cmd = [self.binary, "-name", mc.name]
        cmd += ARCH_MACHINE_ARGS.get(host_arch(), [])
        cmd += [
            "-accel", accel,
            "-cpu", "max" if accel == "tcg" else "host",
            "-m", str(mc.memory),
            "-smp", str(mc.cpus),
            "-fw_cfg", f"name=opt/com.coreos/config,file={mc.qemu.ignition_file}",
            "-qmp", f"{mc.qemu.qmp_socket},server=on,wait=off",
            "-netdev", f"user,id=net0,hostfwd=tcp:127.0.0.1:{mc.ssh.port}-:22",
            "-device", "virtio-net-pci,netdev=net0",
            "-device", "virtio-rng-pci",
            "-drive", f"if=virtio,file={mc.image_path}",
            "-pidfile", mc.qemu.pid_file,
            "-display", "none",
        ]
        if sys.platform != "win32":
            for index, volume in enumerate(parse_volumes(mc.volumes)):
                cmd += [
                    "-virtfs",
                    f"local,path={volume.source},mount_tag=vol{index},security_model=none"
                    + (",readonly=on" if volume.read_only else ""),
                ]
        elif mc.volumes:
            log("WARN", "QEMU on Windows cannot share host directories; volumes are ignored")
        return cmd

    def start_vm(self, mc: MachineConfig) -> Tuple[CleanupFn, ReadyFn]:
        assert mc.qemu is not None
        with mc.lock():
            if self.is_running(mc):
                raise AlreadyRunningError(f"{mc.name} is already running")
            self._runtime_paths(mc)
            run_dir = machine_config.runtime_dir(self.vm_type)
            ensure_directory(run_dir)
            if mc.qemu.qmp_socket.startswith("unix:"):
                Path(mc.qemu.qmp_socket[len("unix:"):]).unlink(missing_ok=True)
            cmd = self.build_command(mc)
            log("INFO", f"Starting {mc.name}")
            log("DEBUG", f"Running: {' '.join(cmd)}")
            console_log = (run_dir / f"{mc.name}.log").open("w", encoding="utf-8")
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=console_log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                    creationflags=creation_flags(),
                )
            except OSError as exc:
                raise ManagerError(f"Could not start {self.binary}: {exc}") from exc
            finally:
                console_log.close()

        def _cleanup() -> None:
            if proc.poll() is None:
                proc.terminate()

        timeout = machine_config.ready_timeout()

        def _ready() -> None:
            if not wait_for_ssh(mc.ssh.port, timeout=timeout):
                code = proc.poll()
                if code is not None:
                    raise ManagerError(f"{self.binary} exited with status {code}; see {run_dir / (mc.name + '.log')}")
                raise ManagerError(f"{mc.name} did not answer on SSH within {timeout}s")

        return _cleanup, _ready

    def stop_vm(self, mc: MachineConfig, hard_stop: bool = False) -> None:
        assert mc.qemu is not None
        with mc.lock():
            if not self.is_running(mc):
                log("DEBUG", f"{mc.name} is not running")
                self._clear_runtime(mc)
                return
            pid = self._pid(mc)
            result = self._qmp(mc, "quit" if hard_stop else "system_powerdown")
            if "error" in result:
                raise ManagerError(f"Could not issue stop to {mc.name}: {result['error']}")
            deadline = time.time() + STOP_TIMEOUT
            while pid_alive(pid) and time.time() < deadline:
                time.sleep(0.5)
            if pid_alive(pid):
                log("WARN", f"{mc.name} did not power off within {STOP_TIMEOUT}s; killing it")
                os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
            self._clear_runtime(mc)
        log("SUCCESS", f"{mc.name} stopped successfully")

    def _clear_runtime(self, mc: MachineConfig) -> None:
        assert mc.qemu is not None
        if mc.qemu.pid_file:
            Path(mc.qemu.pid_file).unlink(missing_ok=True)
        if mc.qemu.qmp_socket.startswith("unix:"):
            Path(mc.qemu.qmp_socket[len("unix:"):]).unlink(missing_ok=True)

    def remove(self, mc: MachineConfig, save_keys: bool = False, save_image: bool = False) -> Tuple[str, DestroyFn]:
        assert mc.qemu is not None
        if self.is_running(mc):
            raise AlreadyRunningError(f"running vm {mc.name} cannot be destroyed")

        files: List[Path] = []
        if not save_keys:
            identity = Path(mc.ssh.identity_path)
            files += [identity, connections.public_key_path(identity)]
        if not save_image and mc.image_path and owns_image(Path(mc.image_path), self.vm_type):
            files.append(Path(mc.image_path))
        if mc.qemu.ignition_file:
            files.append(Path(mc.qemu.ignition_file))
        files.append(mc.config_path or machine_config.machine_config_path(mc.name, self.vm_type))

        message = "\nThe following files will be deleted:\n\n"
        message += "".join(f"{path}\n" for path in files)
        message += "\n"

        def _destroy() -> None:
            connections.remove_machine_connections(mc)
            self._clear_runtime(mc)
            for path in files:
                try:
                    if path.is_dir():
                        shutil.rmtree(path)
                    else:
                        path.unlink(missing_ok=True)
                except OSError as exc:
                    log("ERROR", f"Could not remove {path}: {exc}")

        return message, _destroy

    def apply_attributes(self, mc: MachineConfig, opts: SetOptions) -> None:
        if any(value is not None for value in (opts.cpus, opts.memory, opts.disk_size)) and self.is_running(mc):
            raise AlreadyRunningError(f"{mc.name} must be stopped to change its resources")
        if opts.disk_size is not None and opts.disk_size < mc.disk_size:
            raise ManagerError(f"New disk size must be larger than the current {mc.disk_size}G")
        if opts.disk_size is not None and opts.disk_size != mc.disk_size:
            self._resize_disk(mc, opts.disk_size)
            mc.disk_size = opts.disk_size
        if opts.cpus is not None:
            mc.cpus = opts.cpus
        if opts.memory is not None:
            mc.memory = opts.memory
        if opts.rootful is not None and opts.rootful != mc.rootful:
            mc.rootful = opts.rootful
            connections.set_default_for_rootful(mc)

    def mount_volumes_to_vm(self, mc: MachineConfig, quiet: bool = False) -> None:
        if sys.platform == "win32":
            return
        for index, volume in enumerate(parse_volumes(mc.volumes)):
            log("DEBUG" if quiet else "INFO", f"Mounting volume... {volume.source}:{volume.target}")
            options = "trans=virtio,version=9p2000.L" + (",ro" if volume.read_only else "")
            script = f"sudo mkdir -p '{volume.target}' && sudo mount -t 9p -o {options} vol{index} '{volume.target}'"
            cmd = [
                "ssh", "-i", mc.ssh.identity_path, "-p", str(mc.ssh.port),
                "-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null",
                f"{mc.ssh.remote_username}@localhost", script,
            ]
            try:
                run(cmd, capture_output=True)
            except subprocess.CalledProcessError as exc:
                raise GuestCommandError(f"Could not mount {volume.source} in {mc.name}", cmd, exc.returncode) from exc
