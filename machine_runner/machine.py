"""Machine operations shared by every backend: init, start, stop, rm, set, ls."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from machine_runner import config as machine_config
from machine_runner.backend import MachineProvider
from machine_runner.constants import QEMU_VIRT, STATE_RUNNING, WSL_VIRT
from machine_runner.exceptions import (
    AlreadyRunningError,
    MachineExistsError,
    ManagerError,
    MultipleActiveError,
)
from machine_runner.models import CreateVMOpts, InitResult, MachineConfig, PortMapping, SetOptions
from machine_runner.ports import coalesce_ports, convert_port_mappings
from machine_runner.utils import log

_providers: Dict[str, MachineProvider] = {}


def get_provider(vm_type: Optional[str] = None) -> MachineProvider:
    """Backend for *vm_type*, defaulting to the configured provider."""
    if vm_type is None:
        vm_type = machine_config.get_provider_type(machine_config.load_defaults())
    provider = _providers.get(vm_type)
    if provider is not None:
        return provider
    if vm_type == WSL_VIRT:
        from machine_runner.wsl import WSLStubber

        provider = WSLStubber()
    elif vm_type == QEMU_VIRT:
        from machine_runner.qemu import QEMUStubber

        provider = QEMUStubber()
    else:
        raise ManagerError(f"Unsupported machine provider '{vm_type}'")
    _providers[vm_type] = provider
    return provider


def init_machine(opts: CreateVMOpts, provider: Optional[MachineProvider] = None) -> InitResult:
    provider = provider or get_provider()
    machine_config.validate_machine_name(opts.name)
    if machine_config.machine_config_path(opts.name, provider.vm_type).exists():
        raise MachineExistsError(f"{opts.name}: VM already exists")
    mc = machine_config.new_machine_config(opts, provider.vm_type)
    result = provider.create_vm(opts, mc)
    if result is InitResult.COMPLETE:
        log("SUCCESS", f"Machine init complete: {mc.name}")
        log("INFO", f"To start your machine run: python -m machine_runner start {mc.name}")
    return result


def _active(provider: MachineProvider, exclude: str) -> List[str]:
    return [
        mc.name
        for mc in machine_config.list_machines(provider.vm_type)
        if mc.name != exclude and provider.state(mc) == STATE_RUNNING
    ]


def _abort_start(provider: MachineProvider, mc: MachineConfig, cleanup, networking: bool) -> None:
    """Undo a half-finished start; failures of the undo itself are only logged."""
    if networking:
        try:
            provider.stop_host_networking(mc)
        except Exception as exc:
            log("WARN", f"Could not release host networking for {mc.name}: {exc}")
    if cleanup is not None:
        try:
            cleanup()
        except Exception as exc:
            log("WARN", f"Could not stop {mc.name} after a failed start: {exc}")


def start_machine(name: str, provider: Optional[MachineProvider] = None, quiet: bool = False) -> MachineConfig:
    provider = provider or get_provider()
    mc = machine_config.load_machine(name, provider.vm_type)
    if provider.is_running(mc):
        raise AlreadyRunningError(f"{name} is already running")
    if provider.require_exclusive_active:
        active = _active(provider, name)
        if active:
            raise MultipleActiveError(
                f"{active[0]} is already running; only one {provider.vm_type} machine can be active at a time"
            )

    cleanup, ready = provider.start_vm(mc)
    networking = False
    try:
        if ready is not None:
            ready()
        provider.start_networking(mc)
        networking = True
        provider.mount_volumes_to_vm(mc, quiet)
    except BaseException:
        _abort_start(provider, mc, cleanup, networking)
        raise
    with mc.lock():
        mc.last_up = machine_config.now_stamp()
        machine_config.save_machine(mc)
    log("SUCCESS", f"Machine {name} started successfully")
    return mc


def stop_machine(name: str, provider: Optional[MachineProvider] = None, hard_stop: bool = False) -> MachineConfig:
    provider = provider or get_provider()
    mc = machine_config.load_machine(name, provider.vm_type)
    provider.stop_vm(mc, hard_stop=hard_stop)
    provider.stop_host_networking(mc)
    with mc.lock():
        mc.last_up = machine_config.now_stamp()
        machine_config.save_machine(mc)
    return mc


def remove_machine(
    name: str,
    provider: Optional[MachineProvider] = None,
    save_keys: bool = False,
    save_image: bool = False,
    force: bool = False,
    confirm=None,
) -> bool:
    """Remove *name*; *confirm* receives the file list and may veto the removal."""
    provider = provider or get_provider()
    mc = machine_config.load_machine(name, provider.vm_type)
    if force and provider.is_running(mc):
        provider.stop_vm(mc, hard_stop=True)
        provider.stop_host_networking(mc)
    message, destroy = provider.remove(mc, save_keys=save_keys, save_image=save_image)
    if confirm is not None and not confirm(message):
        log("INFO", "Removal cancelled")
        return False
    destroy()
    log("SUCCESS", f"Machine {name} removed")
    return True


def set_machine(name: str, opts: SetOptions, provider: Optional[MachineProvider] = None) -> MachineConfig:
    provider = provider or get_provider()
    mc = machine_config.load_machine(name, provider.vm_type)
    provider.set_provider_attrs(mc, opts)
    return mc


def list_machines(provider: Optional[MachineProvider] = None) -> List[Dict[str, Any]]:
    provider = provider or get_provider()
    rows = []
    for mc in machine_config.list_machines(provider.vm_type):
        rows.append(
            {
                "name": mc.name,
                "vm_type": mc.vm_type,
                "state": provider.state(mc),
                "cpus": mc.cpus,
                "memory": mc.memory,
                "disk_size": mc.disk_size,
                "created": mc.created,
                "last_up": mc.last_up,
            }
        )
    return rows


def inspect_machine(name: str, provider: Optional[MachineProvider] = None) -> Dict[str, Any]:
    provider = provider or get_provider()
    mc = machine_config.load_machine(name, provider.vm_type)
    data = mc.to_dict()
    data["state"] = provider.state(mc)
    data["config_path"] = str(mc.config_path) if mc.config_path else ""
    data["user_mode_networking"] = provider.user_mode_network_enabled(mc)
    return data


def publish_ports(mappings: Optional[Iterable[PortMapping]], vm_type: Optional[str] = None) -> Optional[List[PortMapping]]:
    """Ports as the forwarder of *vm_type* wants them: ranges folded, host addresses adjusted."""
    coalesced = coalesce_ports(mappings)
    if coalesced is None:
        return None
    return convert_port_mappings(coalesced, vm_type)
