"""Windows Subsystem for Linux backend.

Each machine is a WSL distribution named ``machine-<name>``, imported from a
Fedora container rootfs. systemd cannot be PID 1 inside WSL, so a bootstrap
script starts it in a private PID namespace and login shells enter that
namespace through ``machine-enterns``.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from machine_runner import connections, elevation, guest
from machine_runner import config as machine_config
from machine_runner.backend import CleanupFn, DestroyFn, MachineProvider, ReadyFn
from machine_runner.constants import (
    MSI_SUCCESS_CODES,
    STATE_RUNNING,
    STATE_STOPPED,
    STOP_TIMEOUT,
    USER_MODE_DIST,
    WSL_MIN_BUILD,
    WSL_VIRT,
)
from machine_runner.exceptions import (
    AlreadyRunningError,
    GuestCommandError,
    ManagerError,
    PrivilegeRequiredError,
)
from machine_runner.images import acquire_image, owns_image, resolve_image_stream
from machine_runner.models import CreateVMOpts, DownloadDescriptor, InitResult, MachineConfig, SetOptions
from machine_runner.network import RelayService
from machine_runner.provision import ProvisioningPipeline
from machine_runner.utils import creation_flags, decode_wsl_output, ensure_directory, log, run
from machine_runner.volumes import convert_mount_path, parse_volumes

WSL_INSTALL_KERNEL = "install the WSL Kernel"
WSL_INSTALL_FEATURES = "install the Windows WSL Features"


def wsl_run(args: Sequence[str], error: str, input_text: Optional[str] = None) -> None:
    """Run ``wsl <args>`` with output passed through; failures carry *error*."""
    cmd = ["wsl", *args]
    try:
        run(cmd, input=input_text, creationflags=creation_flags())
    except FileNotFoundError as exc:
        raise ManagerError("wsl.exe not found; is the Windows Subsystem for Linux available?") from exc
    except subprocess.CalledProcessError as exc:
        raise GuestCommandError(error, cmd, exc.returncode) from exc


def wsl_capture(args: Sequence[str], input_text: Optional[str] = None) -> Tuple[int, str]:
    """Run ``wsl <args>`` quietly, returning the exit status and decoded stdout."""
    cmd = ["wsl", *args]
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            input=input_text.encode("utf-8") if input_text is not None else None,
            capture_output=True,
            check=False,
            creationflags=creation_flags(),
        )
    except OSError as exc:
        log("DEBUG", f"Could not run wsl: {exc}")
        return -1, ""
    return result.returncode, decode_wsl_output(result.stdout)


def wsl_in_dist(dist: str, script: str, error: str, *command: str) -> None:
    """Pipe *script* into a command run inside *dist* (``sh`` by default)."""
    wsl_run(["-d", dist, *(command or ("sh",))], error, input_text=script)


def list_distributions(running: bool = False) -> List[str]:
    args = ["-l", "--quiet"]
    if running:
        args.append("--running")
    code, output = wsl_capture(args)
    if code != 0:
        return []
    names = []
    for line in output.splitlines():
        fields = line.split()
        if fields:
            names.append(fields[0])
    return names


def is_wsl_installed() -> bool:
    code, _ = wsl_capture(["--status"])
    return code == 0


def is_wsl_feature_enabled() -> bool:
    code, _ = wsl_capture(["--set-default-version", "2"])
    return code == 0


def is_wsl_running(dist: str) -> bool:
    return dist in list_distributions(running=True)


def is_systemd_running(dist: str) -> bool:
    code, output = wsl_capture(["-d", dist, "sh"], input_text=guest.PROBE_SYSTEMD)
    if code != 0:
        return False
    first = output.strip().splitlines()[:1]
    try:
        return bool(first) and int(first[0]) > 0
    except ValueError:
        return False


def run_tee(cmd: List[str], log_path: Path) -> int:
    """Run *cmd*, copying its output to the console and to *log_path*."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    ensure_directory(log_path.parent)
    with log_path.open("a", encoding="utf-8") as sink:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            creationflags=creation_flags(),
        )
        assert proc.stdout is not None
        for raw in proc.stdout:
            line = decode_wsl_output(raw)
            sys.stdout.write(line)
            sink.write(line)
        return proc.wait()


def install_wsl_features(argv: List[str]) -> None:
    """Enable the WSL and VM platform features, then reboot to finish."""
    log_path = elevation.elevated_output_path()
    features = (
        ("Microsoft-Windows-Subsystem-Linux", "Could not enable WSL Feature"),
        ("VirtualMachinePlatform", "Could not enable Virtual Machine Feature"),
    )
    for feature, error in features:
        cmd = ["dism", "/online", "/enable-feature", f"/featurename:{feature}", "/all", "/norestart"]
        code = run_tee(cmd, log_path)
        if code not in MSI_SUCCESS_CODES:
            raise GuestCommandError(error, cmd, code)
    elevation.reboot(argv)


def install_wsl_kernel() -> None:
    message = "Installing WSL Kernel Update"
    log("INFO", message)
    log_path = elevation.elevated_output_path()
    ensure_directory(log_path.parent)
    with log_path.open("a", encoding="utf-8") as sink:
        sink.write(message + "\n")
    cmd = ["wsl", "--update"]
    code = run_tee(cmd, log_path)
    if code != 0:
        raise GuestCommandError("Could not install WSL Kernel", cmd, code)


def check_and_install_wsl(reexec: bool, argv: List[str]) -> bool:
    """Make sure WSL is usable. Returns False when init should stop here.

    A False return is not a failure: either an elevated child did the work,
    a reboot is on its way, or this process is that elevated child.
    """
    if is_wsl_installed():
        return True

    admin = elevation.has_admin_rights()
    if not is_wsl_feature_enabled():
        if not elevation.win_version_at_least(*WSL_MIN_BUILD):
            raise ManagerError("Your version of Windows does not support WSL. Update to Windows 10 Build 19041 or later")
        if not elevation.win_version_at_least(10, 0, 19041):
            raise ManagerError(
                "WSL can not be automatically installed on this version of Windows. Either update to "
                f"Build 19041 (or later), or follow the manual steps at {elevation.WSL_INSTALL_DOC_URL}"
            )

        message = "WSL is not installed on this system, installing it.\n\n"
        if not admin:
            message += (
                "Since you are not running as admin, a new window will open and "
                "require you to approve administrator privileges.\n\n"
            )
        message += (
            "NOTE: A system reboot will be required as part of this process. "
            "If you prefer, you may abort now, and perform a manual installation using the \"wsl --install\" command."
        )
        if not reexec and elevation.message_box(message, "Machine Runner", False) != elevation.IDOK:
            raise PrivilegeRequiredError("WSL installation aborted")
        if not reexec and not admin:
            elevation.launch_elevate(WSL_INSTALL_FEATURES, argv)
            return False
        install_wsl_features(argv)
        return False

    if not reexec and not admin:
        elevation.launch_elevate(WSL_INSTALL_KERNEL, argv)
        return True

    try:
        install_wsl_kernel()
    except ManagerError:
        log("ERROR", elevation.install_error_message(WSL_INSTALL_KERNEL))
        raise
    return not reexec


def append_elevated_error(exc: BaseException) -> None:
    """Leave the child's failure where the waiting parent will print it."""
    path = elevation.elevated_output_path()
    try:
        ensure_directory(path.parent)
        with path.open("a", encoding="utf-8") as sink:
            sink.write(f"Error: {exc}\n")
    except OSError:
        pass


class WSLStubber(MachineProvider):
    vm_type = WSL_VIRT
    supported_attributes = frozenset({"rootful", "user_mode_networking"})

    def __init__(self, relay: Optional[RelayService] = None) -> None:
        self.relay = relay or RelayService(restore=self.terminate_user_mode_dist)

    def exists(self, name: str) -> bool:
        return machine_config.to_dist(name) in list_distributions()

    def dist_dir(self, name: str) -> Path:
        return machine_config.data_dir(self.vm_type) / "wsldist" / name

    def add_provision_steps(self, pipeline: ProvisioningPipeline, opts: CreateVMOpts, mc: MachineConfig) -> None:
        dist = machine_config.to_dist(mc.name)
        assert mc.wsl is not None
        mc.wsl.user_mode_networking = opts.user_mode_networking

        pipeline.add_step("Checking WSL installation", lambda: self._precheck(opts))
        if opts.user_mode_networking:
            pipeline.add_step("Checking user-mode networking support", self._check_relay_binary)
        self.add_image_step(pipeline, opts, mc)
        pipeline.add_step(
            "Importing operating system into WSL (this may take 5+ minutes on a new WSL install)",
            lambda: self._import_dist(mc),
            undo=lambda: self._unprovision(mc),
        )
        pipeline.add_step("Installing packages (this will take a while)", lambda: self._install_packages(dist))
        pipeline.add_step("Configuring proxy settings", lambda: self._configure_proxy(dist))
        pipeline.add_step("Configuring system", lambda: self._configure_system(mc))
        pipeline.add_step("Installing guest scripts", lambda: self._install_scripts(dist))
        identity = Path(mc.ssh.identity_path)
        pipeline.add_step(
            "Creating SSH keys",
            lambda: self._create_keys(mc),
            undo=lambda: connections.remove_ssh_keys(identity),
        )
        if opts.user_mode_networking:
            pipeline.add_step("Setting up user-mode networking", lambda: self._enable_user_mode(mc))
        pipeline.add_step("Stopping the distribution", lambda: self._terminate(dist))

    def _precheck(self, opts: CreateVMOpts) -> Optional[InitResult]:
        try:
            proceed = check_and_install_wsl(opts.reexec, opts.argv)
        except ManagerError as exc:
            if opts.reexec:
                append_elevated_error(exc)
            raise
        return None if proceed else InitResult.PENDING

    def _check_relay_binary(self) -> None:
        if shutil.which(self.relay.binary) is None:
            raise ManagerError(
                f"User-mode networking needs the {self.relay.binary} relay; install it or set MACHINE_RELAY_BINARY"
            )

    def get_disk(self, image_stream: str, mc: MachineConfig) -> DownloadDescriptor:
        stream, descriptor = resolve_image_stream(image_stream, self.vm_type, mc.name)
        mc.image_stream = stream
        mc.image_path = str(acquire_image(descriptor))
        return descriptor

    def _import_dist(self, mc: MachineConfig) -> None:
        target = self.dist_dir(mc.name)
        ensure_directory(target.parent)
        wsl_run(
            ["--import", machine_config.to_dist(mc.name), str(target), mc.image_path],
            "WSL import of guest OS failed",
        )

    def _unprovision(self, mc: MachineConfig) -> None:
        dist = machine_config.to_dist(mc.name)
        try:
            wsl_run(["--unregister", dist], f"Could not unregister {dist}")
        finally:
            shutil.rmtree(self.dist_dir(mc.name), ignore_errors=True)

    def _install_packages(self, dist: str) -> None:
        wsl_run(["-d", dist, "dnf", "upgrade", "-y"], "Package upgrade on guest OS failed")
        wsl_run(["-d", dist, "dnf", "install", *guest.GUEST_PACKAGES, "-y"], "Package installation on guest OS failed")
        # Restores the setuid bits newuidmap needs.
        wsl_run(["-d", dist, "dnf", "reinstall", "shadow-utils", "-y"], "Package reinstallation of shadow-utils on guest OS failed")

    def _configure_proxy(self, dist: str) -> None:
        settings = guest.proxy_settings(os.environ)
        if not settings:
            log("DEBUG", "No proxy settings to pass on")
            return
        wsl_in_dist(
            dist, guest.proxy_profile(settings), "Could not write proxy profile for guest OS",
            "sh", "-c", "cat > /etc/profile.d/machine-proxy.sh",
        )
        wsl_in_dist(
            dist, guest.proxy_systemd_conf(settings), "Could not write proxy settings for systemd",
            "sh", "-c", "mkdir -p /etc/systemd/system.conf.d && cat > /etc/systemd/system.conf.d/machine-proxy.conf",
        )

    def _configure_system(self, mc: MachineConfig) -> None:
        dist = machine_config.to_dist(mc.name)
        user = mc.ssh.remote_username
        assert mc.wsl is not None
        wsl_run(["-d", dist, "sh", "-c", guest.append_port(mc.ssh.port)], "Could not configure SSH port for guest OS")
        wsl_in_dist(dist, guest.configure_services(user), "Could not configure systemd settings for guest OS")
        wsl_in_dist(dist, guest.SUDOERS, "Could not add wheel to sudoers", "sh", "-c", "cat >> /etc/sudoers")
        wsl_in_dist(
            dist, guest.OVERRIDE_SYSUSERS, "Could not generate systemd-sysusers override for guest OS",
            "sh", "-c", "cat > /etc/systemd/system/systemd-sysusers.service.d/override.conf",
        )
        wsl_in_dist(
            dist, guest.LINGER_SERVICE, "Could not generate linger service for guest OS",
            "sh", "-c", f"cat > /home/{user}/.config/systemd/user/linger-keepalive.service",
        )
        wsl_in_dist(dist, guest.linger_setup(user), "Could not configure systemd settings for guest OS")
        wsl_in_dist(
            dist, guest.CONTAINERS_CONF, "Could not create containers.conf for guest OS",
            "sh", "-c", "cat > /etc/containers/containers.conf",
        )
        wsl_in_dist(
            dist, guest.wsl_conf(user, mc.wsl.user_mode_networking), "Could not write wsl.conf for guest OS",
            "sh", "-c", "cat > /etc/wsl.conf",
        )

    def _install_scripts(self, dist: str) -> None:
        wsl_in_dist(
            dist, guest.ENTERNS, "Could not create enterns script for guest OS",
            "sh", "-c", f"cat > {guest.ENTERNS_PATH}; chmod 755 {guest.ENTERNS_PATH}",
        )
        wsl_in_dist(
            dist, guest.PROFILE, "Could not create motd profile script for guest OS",
            "sh", "-c", "cat > /etc/profile.d/enterns.sh",
        )
        wsl_in_dist(dist, guest.WSL_MOTD, "Could not create a WSL MOTD for guest OS", "sh", "-c", "cat > /etc/wslmotd")
        wsl_in_dist(
            dist, guest.BOOTSTRAP, "Could not create bootstrap script for guest OS",
            "sh", "-c", f"cat > {guest.BOOTSTRAP_PATH}; chmod 755 {guest.BOOTSTRAP_PATH}",
        )

    def _create_keys(self, mc: MachineConfig) -> None:
        dist = machine_config.to_dist(mc.name)
        user = mc.ssh.remote_username
        key = connections.create_ssh_keys(Path(mc.ssh.identity_path))
        wsl_in_dist(
            dist, key + "\n", "Could not create root authorized keys on guest OS",
            "sh", "-c", guest.authorized_keys_command("/root", "root"),
        )
        wsl_in_dist(
            dist, key + "\n", f"Could not create '{user}' authorized keys on guest OS",
            "sh", "-c", guest.authorized_keys_command(f"/home/{user}", user),
        )

    def _terminate(self, dist: str) -> None:
        wsl_run(["--terminate", dist], f"Could not stop {dist}")

    # user-mode networking

    def install_user_mode_dist(self, image_path: str) -> None:
        if USER_MODE_DIST in list_distributions():
            return
        log("INFO", "Installing user-mode networking distribution")
        target = self.dist_dir(USER_MODE_DIST)
        ensure_directory(target.parent)
        wsl_run(["--import", USER_MODE_DIST, str(target), image_path], "Could not install the user-mode networking distribution")

    def terminate_user_mode_dist(self) -> None:
        if is_wsl_running(USER_MODE_DIST):
            self._terminate(USER_MODE_DIST)

    def _enable_user_mode(self, mc: MachineConfig) -> None:
        dist = machine_config.to_dist(mc.name)
        self.install_user_mode_dist(mc.image_path)
        wsl_in_dist(
            dist, guest.user_mode_resolv_conf(), "Could not configure the resolver for user-mode networking",
            "sh", "-c", "rm -f /etc/resolv.conf; cat > /etc/resolv.conf",
        )

    def _disable_user_mode(self, mc: MachineConfig) -> None:
        dist = machine_config.to_dist(mc.name)
        wsl_run(["-d", dist, "sh", "-c", "rm -f /etc/resolv.conf"], "Could not restore the resolver configuration")

    def change_user_mode_networking(self, mc: MachineConfig, enable: bool) -> None:
        assert mc.wsl is not None
        dist = machine_config.to_dist(mc.name)
        if enable:
            self._check_relay_binary()
            self._enable_user_mode(mc)
        else:
            self._disable_user_mode(mc)
        wsl_in_dist(
            dist, guest.wsl_conf(mc.ssh.remote_username, enable), "Could not write wsl.conf for guest OS",
            "sh", "-c", "cat > /etc/wsl.conf",
        )
        self._terminate(dist)
        mc.wsl.user_mode_networking = enable

    def user_mode_network_enabled(self, mc: MachineConfig) -> bool:
        return bool(mc.wsl and mc.wsl.user_mode_networking)

    def start_networking(self, mc: MachineConfig) -> None:
        if self.user_mode_network_enabled(mc):
            self.relay.acquire(mc.name)

    def stop_host_networking(self, mc: MachineConfig) -> None:
        if self.user_mode_network_enabled(mc):
            self.relay.release(mc.name)

    # lifecycle

    def state(self, mc: MachineConfig) -> str:
        dist = machine_config.to_dist(mc.name)
        if is_wsl_running(dist) and is_systemd_running(dist):
            return STATE_RUNNING
        return STATE_STOPPED

    def start_vm(self, mc: MachineConfig) -> Tuple[CleanupFn, ReadyFn]:
        dist = machine_config.to_dist(mc.name)
        with mc.lock():
            if self.is_running(mc):
                raise AlreadyRunningError(f"{mc.name} is already running")
            log("INFO", "Starting machine...")
            wsl_run(["-d", dist, guest.BOOTSTRAP_PATH], "WSL bootstrap script failed")

        timeout = machine_config.ready_timeout()

        def _ready() -> None:
            deadline = time.time() + timeout
            while not is_systemd_running(dist):
                if time.time() >= deadline:
                    raise ManagerError(f"systemd did not come up in {dist} within {timeout}s")
                time.sleep(1)

        def _cleanup() -> None:
            self._terminate(dist)

        return _cleanup, _ready

    def stop_vm(self, mc: MachineConfig, hard_stop: bool = False) -> None:
        dist = machine_config.to_dist(mc.name)
        with mc.lock():
            if not is_wsl_running(dist):
                log("DEBUG", f"{mc.name} is not running")
                return
            if not hard_stop and is_systemd_running(dist):
                self._shutdown_systemd(dist)
            self._terminate(dist)
        log("SUCCESS", f"{mc.name} stopped successfully")

    def _shutdown_systemd(self, dist: str) -> None:
        waiter = subprocess.Popen(
            ["wsl", "-d", dist, "sh"],
            stdin=subprocess.PIPE,
            text=True,
            creationflags=creation_flags(),
        )
        assert waiter.stdin is not None
        waiter.stdin.write(guest.WAIT_TERM)
        waiter.stdin.close()
        try:
            wsl_run(["-d", dist, guest.ENTERNS_PATH, "systemctl", "exit", "0"], "Error stopping systemd")
            waiter.wait(timeout=STOP_TIMEOUT + 10)
        except subprocess.TimeoutExpired:
            log("WARN", f"Timed out waiting for systemd in {dist} to exit; terminating")
            waiter.kill()
            waiter.wait()
        except ManagerError:
            waiter.kill()
            waiter.wait()
            raise

    def remove(self, mc: MachineConfig, save_keys: bool = False, save_image: bool = False) -> Tuple[str, DestroyFn]:
        if self.is_running(mc):
            raise AlreadyRunningError(f"running vm {mc.name} cannot be destroyed")

        files: List[Path] = []
        if not save_keys:
            identity = Path(mc.ssh.identity_path)
            files += [identity, connections.public_key_path(identity)]
        if not save_image and mc.image_path and owns_image(Path(mc.image_path), self.vm_type):
            files.append(Path(mc.image_path))
        files.append(mc.config_path or machine_config.machine_config_path(mc.name, self.vm_type))
        files.append(self.dist_dir(mc.name))

        message = "\nThe following files will be deleted:\n\n"
        message += "".join(f"{path}\n" for path in files)
        message += "\n"
        dist = machine_config.to_dist(mc.name)

        def _destroy() -> None:
            connections.remove_machine_connections(mc)
            try:
                wsl_run(["--unregister", dist], f"Could not unregister {dist}")
            except ManagerError as exc:
                log("ERROR", str(exc))
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
        assert mc.wsl is not None
        toggle = opts.user_mode_networking is not None and opts.user_mode_networking != mc.wsl.user_mode_networking
        if toggle and self.is_running(mc):
            raise AlreadyRunningError("user-mode networking can only be changed when the machine is not running")
        if toggle:
            self.change_user_mode_networking(mc, bool(opts.user_mode_networking))
        if opts.rootful is not None and opts.rootful != mc.rootful:
            mc.rootful = opts.rootful
            connections.set_default_for_rootful(mc)

    def mount_volumes_to_vm(self, mc: MachineConfig, quiet: bool = False) -> None:
        # Host drives are automounted under /mnt/<drive>; anything else is a bind mount.
        dist = machine_config.to_dist(mc.name)
        for volume in parse_volumes(mc.volumes):
            source = convert_mount_path(volume.source)
            if source == volume.target:
                continue
            log("DEBUG" if quiet else "INFO", f"Mounting {volume.source} at {volume.target}")
            options = "bind,ro" if volume.read_only else "bind"
            wsl_run(
                ["-d", dist, guest.ENTERNS_PATH, "sh", "-c",
                 f"mkdir -p '{volume.target}' && mount -o {options} '{source}' '{volume.target}'"],
                f"Could not mount {volume.source} in {mc.name}",
            )
