"""Shared test fixtures: isolated config/data directories and sample machines."""

from __future__ import annotations

import pytest

from machine_runner import config as machine_config
from machine_runner import machine, utils
from machine_runner.models import MachineConfig, SSHConfig


@pytest.fixture(autouse=True)
def machine_dirs(tmp_path, monkeypatch):
    """Point every config and data path at a per-test temporary tree."""
    config_dir = tmp_path / "config"
    data_dir = tmp_path / "data"
    monkeypatch.setattr(machine_config, "CONFIG_DIR", config_dir)
    monkeypatch.setattr(machine_config, "DATA_DIR", data_dir)
    monkeypatch.setattr(machine_config, "DEFAULT_CONFIG_PATH", config_dir / "machine.yaml")
    monkeypatch.setattr(machine, "_providers", {})
    monkeypatch.setattr(utils, "_log_tee", None)
    monkeypatch.delenv("MACHINE_PROVIDER", raising=False)
    return config_dir, data_dir


def _ssh(name: str, port: int = 40022) -> SSHConfig:
    return SSHConfig(
        port=port,
        identity_path=str(machine_config.identity_path(name)),
        remote_username="user",
    )


@pytest.fixture
def wsl_machine() -> MachineConfig:
    return MachineConfig(
        name="machine-default",
        vm_type="wsl",
        ssh=_ssh("machine-default"),
        image_path="/tmp/fedora.tar",
        config_path=machine_config.machine_config_path("machine-default", "wsl"),
    )


@pytest.fixture
def qemu_machine(tmp_path) -> MachineConfig:
    mc = MachineConfig(
        name="dev",
        vm_type="qemu",
        ssh=_ssh("dev", 40023),
        image_path=str(tmp_path / "data" / "qemu" / "dev_fedora-coreos.qcow2"),
        config_path=machine_config.machine_config_path("dev", "qemu"),
    )
    assert mc.qemu is not None
    mc.qemu.qmp_socket = f"unix:{tmp_path / 'qmp_dev.sock'}"
    mc.qemu.pid_file = str(tmp_path / "dev_vm.pid")
    mc.qemu.ignition_file = str(tmp_path / "config" / "qemu" / "dev.ign")
    return mc
