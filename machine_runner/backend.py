"""Backend contract every virtualization provider implements."""

from __future__ import annotations

import abc
from typing import Callable, FrozenSet, List, Optional, Tuple

from machine_runner import connections
from machine_runner.config import save_machine
from machine_runner.constants import STATE_RUNNING
from machine_runner.exceptions import MachineExistsError, UnsupportedAttributeError
from machine_runner.images import discard_image
from machine_runner.models import CreateVMOpts, DownloadDescriptor, InitResult, MachineConfig, SetOptions
from machine_runner.provision import ProvisioningPipeline

CleanupFn = Optional[Callable[[], None]]
ReadyFn = Optional[Callable[[], None]]
DestroyFn = Callable[[], None]


class MachineProvider(abc.ABC):
    """Lifecycle of one kind of machine: create, start, stop, remove, inspect."""

    vm_type: str = ""
    supported_attributes: FrozenSet[str] = frozenset()
    # Some hypervisors cannot run more than one of their machines at a time.
    require_exclusive_active: bool = False

    @abc.abstractmethod
    def exists(self, name: str) -> bool:
        """Whether the backend's own inventory knows *name*."""

    def create_vm(self, opts: CreateVMOpts, mc: MachineConfig) -> InitResult:
        """Provision a new machine, leaving nothing behind if any step fails."""
        if self.exists(mc.name):
            raise MachineExistsError(f"{mc.name}: VM already exists")
        pipeline = ProvisioningPipeline(mc.name)
        self.add_provision_steps(pipeline, opts, mc)
        pipeline.add_step(
            "Registering connections",
            lambda: connections.add_machine_connections(mc),
            undo=lambda: connections.remove_machine_connections(mc),
        )
        pipeline.add_step("Writing machine configuration", lambda: save_machine(mc))
        return pipeline.run()

    @abc.abstractmethod
    def add_provision_steps(self, pipeline: ProvisioningPipeline, opts: CreateVMOpts, mc: MachineConfig) -> None:
        """Append the backend-specific provisioning steps."""

    @abc.abstractmethod
    def start_vm(self, mc: MachineConfig) -> Tuple[CleanupFn, ReadyFn]:
        """Boot the machine; the ready function blocks until it is usable."""

    @abc.abstractmethod
    def stop_vm(self, mc: MachineConfig, hard_stop: bool = False) -> None:
        """Shut the machine down; stopping a stopped machine is not an error."""

    @abc.abstractmethod
    def remove(self, mc: MachineConfig, save_keys: bool = False, save_image: bool = False) -> Tuple[str, DestroyFn]:
        """Describe what removal deletes and return the function that does it."""

    @abc.abstractmethod
    def state(self, mc: MachineConfig) -> str:
        """Probe the live state: ``running`` or ``stopped``."""

    def is_running(self, mc: MachineConfig) -> bool:
        return self.state(mc) == STATE_RUNNING

    def set_provider_attrs(self, mc: MachineConfig, opts: SetOptions) -> None:
        """Apply *opts*; unsupported attributes are rejected before anything changes."""
        requested = opts.requested()
        unsupported = [name for name in requested if name not in self.supported_attributes]
        if unsupported:
            raise UnsupportedAttributeError(self.vm_type, unsupported)
        if not requested:
            return
        with mc.lock():
            self.apply_attributes(mc, opts)
            save_machine(mc)

    @abc.abstractmethod
    def apply_attributes(self, mc: MachineConfig, opts: SetOptions) -> None:
        """Mutate *mc* (and the guest) for already-validated attributes; lock held."""

    def mount_volumes_to_vm(self, mc: MachineConfig, quiet: bool = False) -> None:
        return None

    def start_networking(self, mc: MachineConfig) -> None:
        return None

    def stop_host_networking(self, mc: MachineConfig) -> None:
        return None

    def user_mode_network_enabled(self, mc: MachineConfig) -> bool:
        return False

    @abc.abstractmethod
    def get_disk(self, image_stream: str, mc: MachineConfig) -> DownloadDescriptor:
        """Resolve and fetch the guest image, recording its path on *mc*."""

    def add_image_step(self, pipeline: ProvisioningPipeline, opts: CreateVMOpts, mc: MachineConfig) -> None:
        acquired: List[DownloadDescriptor] = []

        def _fetch() -> None:
            acquired.append(self.get_disk(opts.image_path, mc))

        def _discard() -> None:
            for descriptor in acquired:
                discard_image(descriptor)

        pipeline.add_step("Fetching guest image", _fetch, undo=_discard)
