"""Tests for machine_runner.wsl module."""

from __future__ import annotations

import itertools
import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from machine_runner import config as machine_config
from machine_runner import connections, wsl
from machine_runner.exceptions import (
    AlreadyRunningError,
    GuestCommandError,
    MachineExistsError,
    ManagerError,
    PrivilegeRequiredError,
    UnsupportedAttributeError,
)
from machine_runner.models import CreateVMOpts, DownloadDescriptor, InitResult, SetOptions
from machine_runner.wsl import WSLStubber


@pytest.fixture
def provider():
    return WSLStubber(relay=MagicMock())


def _descriptor(tmp_path):
    rootfs = tmp_path / "data" / "wsl" / "machine-default_fedora.tar"
    rootfs.parent.mkdir(parents=True, exist_ok=True)
    rootfs.write_bytes(b"rootfs")
    return DownloadDescriptor(
        url="https://example.com/fedora.tar.xz",
        size=6,
        version="39",
        local_compressed_path=tmp_path / "data" / "wsl" / "cache" / "39-fedora.tar.xz",
        local_uncompressed_path=rootfs,
    )


def _fake_get_disk(descriptor):
    def get_disk(image_stream, mc):
        mc.image_path = str(descriptor.local_uncompressed_path)
        mc.image_stream = "39"
        return descriptor

    return get_disk


class TestWslCommands:
    def test_wsl_run_wraps_failure(self):
        error = subprocess.CalledProcessError(3, ["wsl"])
        with patch("machine_runner.wsl.run", side_effect=error):
            with pytest.raises(GuestCommandError, match=r"WSL import of guest OS failed \(exit status 3\)") as exc:
                wsl.wsl_run(["--import", "x"], "WSL import of guest OS failed")
        assert exc.value.command == ["wsl", "--import", "x"]

    def test_wsl_run_missing_executable(self):
        with patch("machine_runner.wsl.run", side_effect=FileNotFoundError("wsl")):
            with pytest.raises(ManagerError, match="wsl.exe not found"):
                wsl.wsl_run(["-l"], "boom")

    def test_wsl_capture_decodes_utf16(self):
        result = subprocess.CompletedProcess(["wsl"], 0, "machine-default\r\n".encode("utf-16-le"), b"")
        with patch("machine_runner.wsl.subprocess.run", return_value=result):
            assert wsl.wsl_capture(["-l", "--quiet"]) == (0, "machine-default\r\n")

    def test_wsl_capture_missing_executable(self):
        with patch("machine_runner.wsl.subprocess.run", side_effect=FileNotFoundError("wsl")):
            assert wsl.wsl_capture(["--status"]) == (-1, "")

    def test_list_distributions(self):
        with patch("machine_runner.wsl.wsl_capture", return_value=(0, "machine-default\r\nUbuntu\r\n\r\n")) as mock_capture:
            assert wsl.list_distributions(running=True) == ["machine-default", "Ubuntu"]
        mock_capture.assert_called_once_with(["-l", "--quiet", "--running"])

    def test_list_distributions_failure(self):
        with patch("machine_runner.wsl.wsl_capture", return_value=(1, "")):
            assert wsl.list_distributions() == []

    @pytest.mark.parametrize("output,code,expected", [("412\n", 0, True), ("\n", 0, False), ("412\n", 1, False)])
    def test_is_systemd_running(self, output, code, expected):
        with patch("machine_runner.wsl.wsl_capture", return_value=(code, output)):
            assert wsl.is_systemd_running("machine-default") is expected


class TestCheckAndInstallWsl:
    def test_already_installed(self):
        with patch("machine_runner.wsl.is_wsl_installed", return_value=True):
            assert wsl.check_and_install_wsl(False, ["init"]) is True

    def test_windows_too_old(self):
        with (
            patch("machine_runner.wsl.is_wsl_installed", return_value=False),
            patch("machine_runner.wsl.is_wsl_feature_enabled", return_value=False),
            patch("machine_runner.wsl.elevation.has_admin_rights", return_value=True),
            patch("machine_runner.wsl.elevation.win_version_at_least", return_value=False),
        ):
            with pytest.raises(ManagerError, match="does not support WSL"):
                wsl.check_and_install_wsl(False, ["init"])

    def test_user_declines(self):
        with (
            patch("machine_runner.wsl.is_wsl_installed", return_value=False),
            patch("machine_runner.wsl.is_wsl_feature_enabled", return_value=False),
            patch("machine_runner.wsl.elevation.has_admin_rights", return_value=False),
            patch("machine_runner.wsl.elevation.win_version_at_least", return_value=True),
            patch("machine_runner.wsl.elevation.message_box", return_value=2),
            patch("machine_runner.wsl.elevation.launch_elevate") as mock_elevate,
        ):
            with pytest.raises(PrivilegeRequiredError, match="WSL installation aborted"):
                wsl.check_and_install_wsl(False, ["init"])
        mock_elevate.assert_not_called()

    def test_non_admin_elevates_features(self):
        with (
            patch("machine_runner.wsl.is_wsl_installed", return_value=False),
            patch("machine_runner.wsl.is_wsl_feature_enabled", return_value=False),
            patch("machine_runner.wsl.elevation.has_admin_rights", return_value=False),
            patch("machine_runner.wsl.elevation.win_version_at_least", return_value=True),
            patch("machine_runner.wsl.elevation.message_box", return_value=1),
            patch("machine_runner.wsl.elevation.launch_elevate") as mock_elevate,
            patch("machine_runner.wsl.install_wsl_features") as mock_install,
        ):
            assert wsl.check_and_install_wsl(False, ["init", "dev"]) is False
        mock_elevate.assert_called_once_with(wsl.WSL_INSTALL_FEATURES, ["init", "dev"])
        mock_install.assert_not_called()

    def test_elevated_child_installs_features_without_prompt(self):
        with (
            patch("machine_runner.wsl.is_wsl_installed", return_value=False),
            patch("machine_runner.wsl.is_wsl_feature_enabled", return_value=False),
            patch("machine_runner.wsl.elevation.has_admin_rights", return_value=True),
            patch("machine_runner.wsl.elevation.win_version_at_least", return_value=True),
            patch("machine_runner.wsl.elevation.message_box") as mock_box,
            patch("machine_runner.wsl.install_wsl_features") as mock_install,
        ):
            assert wsl.check_and_install_wsl(True, ["init", "--reexec"]) is False
        mock_box.assert_not_called()
        mock_install.assert_called_once_with(["init", "--reexec"])

    def test_non_admin_elevates_kernel_and_continues(self):
        with (
            patch("machine_runner.wsl.is_wsl_installed", return_value=False),
            patch("machine_runner.wsl.is_wsl_feature_enabled", return_value=True),
            patch("machine_runner.wsl.elevation.has_admin_rights", return_value=False),
            patch("machine_runner.wsl.elevation.launch_elevate") as mock_elevate,
        ):
            assert wsl.check_and_install_wsl(False, ["init"]) is True
        mock_elevate.assert_called_once_with(wsl.WSL_INSTALL_KERNEL, ["init"])

    def test_elevated_child_installs_kernel_and_stops(self):
        with (
            patch("machine_runner.wsl.is_wsl_installed", return_value=False),
            patch("machine_runner.wsl.is_wsl_feature_enabled", return_value=True),
            patch("machine_runner.wsl.elevation.has_admin_rights", return_value=True),
            patch("machine_runner.wsl.install_wsl_kernel") as mock_kernel,
        ):
            assert wsl.check_and_install_wsl(True, ["init"]) is False
        mock_kernel.assert_called_once_with()


class TestInstallWslFeatures:
    def test_reboot_after_success_codes(self):
        with (
            patch("machine_runner.wsl.run_tee", side_effect=[3010, 0]) as mock_tee,
            patch("machine_runner.wsl.elevation.reboot") as mock_reboot,
        ):
            wsl.install_wsl_features(["init"])
        assert mock_tee.call_count == 2
        mock_reboot.assert_called_once_with(["init"])

    def test_failure_skips_reboot(self):
        with (
            patch("machine_runner.wsl.run_tee", return_value=5),
            patch("machine_runner.wsl.elevation.reboot") as mock_reboot,
        ):
            with pytest.raises(GuestCommandError, match="Could not enable WSL Feature"):
                wsl.install_wsl_features(["init"])
        mock_reboot.assert_not_called()


class TestCreateVm:
    def test_existing_distribution_refused_before_side_effects(self, provider, wsl_machine):
        with (
            patch("machine_runner.wsl.list_distributions", return_value=["machine-default"]),
            patch("machine_runner.wsl.wsl_run") as mock_run,
            patch("machine_runner.wsl.check_and_install_wsl") as mock_check,
        ):
            with pytest.raises(MachineExistsError, match="machine-default: VM already exists"):
                provider.create_vm(CreateVMOpts(name="machine-default"), wsl_machine)
        mock_run.assert_not_called()
        mock_check.assert_not_called()

    def test_pending_install_stops_init(self, provider, wsl_machine):
        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.check_and_install_wsl", return_value=False),
            patch.object(WSLStubber, "get_disk") as mock_disk,
            patch("machine_runner.wsl.wsl_run") as mock_run,
        ):
            assert provider.create_vm(CreateVMOpts(name="machine-default"), wsl_machine) is InitResult.PENDING
        mock_disk.assert_not_called()
        mock_run.assert_not_called()
        assert not wsl_machine.config_path.exists()

    def test_success_registers_and_saves(self, provider, wsl_machine, tmp_path):
        descriptor = _descriptor(tmp_path)
        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.check_and_install_wsl", return_value=True),
            patch.object(WSLStubber, "get_disk", side_effect=_fake_get_disk(descriptor)),
            patch("machine_runner.wsl.wsl_run") as mock_run,
            patch("machine_runner.connections.create_ssh_keys", return_value="ssh-ed25519 AAAA"),
        ):
            result = provider.create_vm(CreateVMOpts(name="machine-default"), wsl_machine)
        assert result is InitResult.COMPLETE
        commands = [c.args[0] for c in mock_run.call_args_list]
        assert commands[0][:2] == ["--import", "machine-default"]
        assert commands[-1] == ["--terminate", "machine-default"]
        saved = json.loads(wsl_machine.config_path.read_text())
        assert saved["image_path"] == str(descriptor.local_uncompressed_path)
        assert "machine-default" in connections.list_connections()

    def test_failure_unwinds_import_and_image(self, provider, wsl_machine, tmp_path):
        descriptor = _descriptor(tmp_path)

        def fake_run(args, error, input_text=None):
            if "dnf" in args:
                raise GuestCommandError(error, ["wsl", *args], 1)

        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.check_and_install_wsl", return_value=True),
            patch.object(WSLStubber, "get_disk", side_effect=_fake_get_disk(descriptor)),
            patch("machine_runner.wsl.wsl_run", side_effect=fake_run) as mock_run,
        ):
            with pytest.raises(GuestCommandError, match="Package upgrade on guest OS failed"):
                provider.create_vm(CreateVMOpts(name="machine-default"), wsl_machine)
        commands = [c.args[0] for c in mock_run.call_args_list]
        assert commands[-1] == ["--unregister", "machine-default"]
        assert not descriptor.local_uncompressed_path.exists()
        assert not wsl_machine.config_path.exists()
        assert connections.list_connections() == {}

    def test_failure_in_elevated_child_is_recorded(self, provider, wsl_machine):
        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.check_and_install_wsl", side_effect=ManagerError("dism exploded")),
        ):
            with pytest.raises(ManagerError, match="dism exploded"):
                provider.create_vm(CreateVMOpts(name="machine-default", reexec=True), wsl_machine)
        output = (machine_config.data_dir() / "machine-elevated-output.log").read_text()
        assert "Error: dism exploded" in output


class TestLifecycle:
    def test_stop_stopped_machine_is_silent(self, provider, wsl_machine):
        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.wsl_run") as mock_run,
        ):
            provider.stop_vm(wsl_machine)
        mock_run.assert_not_called()

    def test_hard_stop_only_terminates(self, provider, wsl_machine):
        with (
            patch("machine_runner.wsl.list_distributions", return_value=["machine-default"]),
            patch("machine_runner.wsl.is_systemd_running", return_value=True),
            patch.object(WSLStubber, "_shutdown_systemd") as mock_shutdown,
            patch("machine_runner.wsl.wsl_run") as mock_run,
        ):
            provider.stop_vm(wsl_machine, hard_stop=True)
        mock_shutdown.assert_not_called()
        mock_run.assert_called_once_with(["--terminate", "machine-default"], "Could not stop machine-default")

    def test_graceful_stop(self, provider, wsl_machine):
        with (
            patch("machine_runner.wsl.list_distributions", return_value=["machine-default"]),
            patch("machine_runner.wsl.is_systemd_running", return_value=True),
            patch.object(WSLStubber, "_shutdown_systemd") as mock_shutdown,
            patch("machine_runner.wsl.wsl_run"),
        ):
            provider.stop_vm(wsl_machine)
        mock_shutdown.assert_called_once_with("machine-default")

    def test_start_running_machine_refused(self, provider, wsl_machine):
        with (
            patch("machine_runner.wsl.list_distributions", return_value=["machine-default"]),
            patch("machine_runner.wsl.is_systemd_running", return_value=True),
            patch("machine_runner.wsl.wsl_run") as mock_run,
        ):
            with pytest.raises(AlreadyRunningError):
                provider.start_vm(wsl_machine)
        mock_run.assert_not_called()

    def test_start_runs_bootstrap_and_waits(self, provider, wsl_machine):
        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.is_systemd_running", side_effect=[False, True]),
            patch("machine_runner.wsl.time.sleep"),
            patch("machine_runner.wsl.wsl_run") as mock_run,
        ):
            cleanup, ready = provider.start_vm(wsl_machine)
            ready()
        mock_run.assert_called_once_with(["-d", "machine-default", "/root/bootstrap"], "WSL bootstrap script failed")

    def test_ready_timeout_terminates_through_cleanup(self, provider, wsl_machine, monkeypatch):
        monkeypatch.setenv("MACHINE_READY_TIMEOUT", "1")
        clock = itertools.count(step=100)
        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.is_systemd_running", return_value=False),
            patch("machine_runner.wsl.time.time", side_effect=lambda: next(clock)),
            patch("machine_runner.wsl.time.sleep"),
            patch("machine_runner.wsl.wsl_run") as mock_run,
        ):
            cleanup, ready = provider.start_vm(wsl_machine)
            with pytest.raises(ManagerError, match="systemd did not come up in machine-default"):
                ready()
            cleanup()
        mock_run.assert_called_with(["--terminate", "machine-default"], "Could not stop machine-default")

    def test_networking_uses_relay_only_when_enabled(self, provider, wsl_machine):
        provider.start_networking(wsl_machine)
        provider.relay.acquire.assert_not_called()
        wsl_machine.wsl.user_mode_networking = True
        provider.start_networking(wsl_machine)
        provider.stop_host_networking(wsl_machine)
        provider.relay.acquire.assert_called_once_with("machine-default")
        provider.relay.release.assert_called_once_with("machine-default")


class TestRemove:
    def _materialize(self, mc):
        identity = Path(mc.ssh.identity_path)
        identity.parent.mkdir(parents=True, exist_ok=True)
        identity.write_text("key")
        connections.public_key_path(identity).write_text("pub")
        image = machine_config.data_dir("wsl") / "machine-default_fedora.tar"
        image.parent.mkdir(parents=True, exist_ok=True)
        image.write_text("rootfs")
        mc.image_path = str(image)
        machine_config.save_machine(mc)
        return identity, image

    def test_running_machine_deletes_nothing(self, provider, wsl_machine):
        identity, image = self._materialize(wsl_machine)
        with (
            patch("machine_runner.wsl.list_distributions", return_value=["machine-default"]),
            patch("machine_runner.wsl.is_systemd_running", return_value=True),
            patch("machine_runner.wsl.wsl_run") as mock_run,
        ):
            with pytest.raises(AlreadyRunningError, match="running vm machine-default cannot be destroyed"):
                provider.remove(wsl_machine)
        mock_run.assert_not_called()
        assert identity.exists() and image.exists() and wsl_machine.config_path.exists()

    def test_destroy_removes_files(self, provider, wsl_machine):
        identity, image = self._materialize(wsl_machine)
        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.wsl_run") as mock_run,
        ):
            message, destroy = provider.remove(wsl_machine)
            assert str(identity) in message
            assert str(image) in message
            destroy()
        mock_run.assert_called_once_with(["--unregister", "machine-default"], "Could not unregister machine-default")
        assert not identity.exists()
        assert not image.exists()
        assert not wsl_machine.config_path.exists()

    def test_save_keys_and_image(self, provider, wsl_machine):
        identity, image = self._materialize(wsl_machine)
        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.wsl_run"),
        ):
            _, destroy = provider.remove(wsl_machine, save_keys=True, save_image=True)
            destroy()
        assert identity.exists()
        assert image.exists()

    def test_destroy_keeps_going_after_unregister_failure(self, provider, wsl_machine, capsys):
        identity, _ = self._materialize(wsl_machine)
        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.wsl_run", side_effect=GuestCommandError("Could not unregister machine-default")),
        ):
            _, destroy = provider.remove(wsl_machine)
            destroy()
        assert "Could not unregister machine-default" in capsys.readouterr().out
        assert not identity.exists()


class TestSetAttributes:
    def test_unsupported_attribute_rejected_first(self, provider, wsl_machine):
        with patch.object(WSLStubber, "apply_attributes") as mock_apply:
            with pytest.raises(UnsupportedAttributeError, match="Changing cpus, memory is not supported for wsl"):
                provider.set_provider_attrs(wsl_machine, SetOptions(cpus=4, memory=4096, rootful=True))
        mock_apply.assert_not_called()
        assert wsl_machine.rootful is False

    def test_toggle_user_mode_while_running(self, provider, wsl_machine):
        with (
            patch("machine_runner.wsl.list_distributions", return_value=["machine-default"]),
            patch("machine_runner.wsl.is_systemd_running", return_value=True),
        ):
            with pytest.raises(AlreadyRunningError, match="user-mode networking"):
                provider.set_provider_attrs(wsl_machine, SetOptions(user_mode_networking=True))
        assert wsl_machine.wsl.user_mode_networking is False

    def test_rootful_change_saved(self, provider, wsl_machine):
        provider.set_provider_attrs(wsl_machine, SetOptions(rootful=True))
        saved = machine_config.load_machine("machine-default", "wsl")
        assert saved.rootful is True

    def test_enable_user_mode(self, provider, wsl_machine):
        provider.relay.binary = "gvproxy"
        with (
            patch("machine_runner.wsl.list_distributions", return_value=[]),
            patch("machine_runner.wsl.shutil.which", return_value="/usr/bin/gvproxy"),
            patch("machine_runner.wsl.wsl_run") as mock_run,
        ):
            provider.set_provider_attrs(wsl_machine, SetOptions(user_mode_networking=True))
        commands = [c.args[0] for c in mock_run.call_args_list]
        assert commands[0][:2] == ["--import", "machine-net-usermode"]
        assert commands[-1] == ["--terminate", "machine-default"]
        assert machine_config.load_machine("machine-default", "wsl").wsl.user_mode_networking is True
