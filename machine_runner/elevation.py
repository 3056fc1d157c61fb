"""Administrator elevation and reboot-resume support for Windows hosts.

A process that lacks the rights to install host features relaunches itself
through the ``runas`` verb with ``--reexec`` added after ``init``, waits for
the child, and picks up its log from a well-known file. When installing
requires a reboot, the command line is persisted (base64 of UTF-16LE, the
form ``powershell -EncodedCommand`` expects), a RunOnce hook is registered
to replay it at the next logon, and the machine is restarted.
"""

from __future__ import annotations

import base64
import ctypes
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

try:
    import winreg  # type: ignore
except ImportError:  # pragma: no cover - non-Windows hosts
    winreg = None

from machine_runner import config as machine_config
from machine_runner.constants import (
    ELEVATED_OUTPUT_NAME,
    ERROR_SUCCESS_REBOOT_REQUIRED,
    REEXEC_FLAG,
    RELAUNCH_FILE_NAME,
    RUN_ONCE_KEY,
    RUN_ONCE_VALUE,
    WSL_INSTALL_DOC_URL,
)
from machine_runner.exceptions import ExitCodeError, ManagerError, PrivilegeRequiredError
from machine_runner.utils import ensure_directory, is_windows, log

SEE_MASK_NOCLOSEPROCESS = 0x00000040
SW_SHOWNORMAL = 1
INFINITE = 0xFFFFFFFF
WAIT_OBJECT_0 = 0
ERROR_CANCELLED = 1223

EWX_REBOOT = 0x00000002
EWX_FORCEIFHUNG = 0x00000010
EWX_RESTARTAPPS = 0x00000040
SHTDN_REASON_MAJOR_APPLICATION = 0x00040000
SHTDN_REASON_MINOR_INSTALLATION = 0x00000002
SHTDN_REASON_FLAG_PLANNED = 0x80000000

TOKEN_ADJUST_PRIVILEGES = 0x0020
TOKEN_QUERY = 0x0008
SE_PRIVILEGE_ENABLED = 0x00000002
SE_SHUTDOWN_NAME = "SeShutdownPrivilege"

MB_OKCANCEL_INFO = 0x41
MB_ICONERROR = 0x10
IDOK = 1


class SHELLEXECUTEINFOW(ctypes.Structure):
    _fields_ = [
        ("cbSize", ctypes.c_ulong),
        ("fMask", ctypes.c_ulong),
        ("hwnd", ctypes.c_void_p),
        ("lpVerb", ctypes.c_wchar_p),
        ("lpFile", ctypes.c_wchar_p),
        ("lpParameters", ctypes.c_wchar_p),
        ("lpDirectory", ctypes.c_wchar_p),
        ("nShow", ctypes.c_int),
        ("hInstApp", ctypes.c_void_p),
        ("lpIDList", ctypes.c_void_p),
        ("lpClass", ctypes.c_wchar_p),
        ("hkeyClass", ctypes.c_void_p),
        ("dwHotKey", ctypes.c_ulong),
        ("hIconOrMonitor", ctypes.c_void_p),
        ("hProcess", ctypes.c_void_p),
    ]


class LUID(ctypes.Structure):
    _fields_ = [("LowPart", ctypes.c_ulong), ("HighPart", ctypes.c_long)]


class LUID_AND_ATTRIBUTES(ctypes.Structure):
    _fields_ = [("Luid", LUID), ("Attributes", ctypes.c_ulong)]


class TOKEN_PRIVILEGES(ctypes.Structure):
    _fields_ = [("PrivilegeCount", ctypes.c_ulong), ("Privileges", LUID_AND_ATTRIBUTES * 1)]


def _windll():
    if not is_windows():
        raise ManagerError("This operation is only supported on Windows hosts")
    return ctypes.windll  # type: ignore[attr-defined]


def has_admin_rights() -> bool:
    if is_windows():
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
        except OSError:
            return False
    return hasattr(os, "geteuid") and os.geteuid() == 0


def win_version_at_least(major: int, minor: int, build: int) -> bool:
    if not is_windows():
        return False
    version = sys.getwindowsversion()  # type: ignore[attr-defined]
    return (version.major, version.minor, version.build) >= (major, minor, build)


def self_command() -> List[str]:
    """How to start this program again from scratch."""
    return [sys.executable, "-m", "machine_runner"]


def build_command_args(argv: List[str], elevate: bool) -> str:
    """Quote *argv* for a Windows command line, marking the elevated child.

    Any previous ``--reexec`` is dropped; when *elevate* is set the marker is
    inserted right after ``init``.
    """
    args: List[str] = []
    for arg in argv:
        if arg == REEXEC_FLAG:
            continue
        args.append(arg)
        if elevate and arg == "init":
            args.append(REEXEC_FLAG)
    return subprocess.list2cmdline(args)


def encode_command(command: str) -> str:
    return base64.b64encode(command.encode("utf-16-le")).decode("ascii")


def decode_command(encoded: str) -> str:
    return base64.b64decode(encoded).decode("utf-16-le")


def relaunch_file_path() -> Path:
    return machine_config.data_dir() / RELAUNCH_FILE_NAME


def elevated_output_path() -> Path:
    return machine_config.data_dir() / ELEVATED_OUTPUT_NAME


def write_relaunch_file(argv: List[str]) -> Path:
    """Persist the resume command line for the next logon."""
    executable, *prefix = self_command()
    relaunch = " ".join(
        [f"& {subprocess.list2cmdline([executable])}", subprocess.list2cmdline(prefix), build_command_args(argv, False)]
    )
    path = relaunch_file_path()
    try:
        ensure_directory(path.parent)
        path.write_text(encode_command(relaunch), encoding="ascii")
        os.chmod(path, 0o600)
    except OSError as exc:
        raise ManagerError(f"Could not serialize command state: {exc}") from exc
    return path


def run_once_command(relaunch_file: Path) -> str:
    command = f"powershell -noexit -EncodedCommand (Get-Content '{relaunch_file}' -Raw)"
    if shutil.which("wt"):
        command = 'wt -p "Windows PowerShell" ' + command
    return command


def add_run_once_entry(command: str) -> None:
    if winreg is None:
        raise ManagerError("The RunOnce registry hook is only available on Windows hosts")
    try:
        with winreg.CreateKeyEx(winreg.HKEY_CURRENT_USER, RUN_ONCE_KEY, 0, winreg.KEY_WRITE) as key:
            winreg.SetValueEx(key, RUN_ONCE_VALUE, 0, winreg.REG_SZ, command)
    except OSError as exc:
        raise ManagerError(f"Could not write RunOnce registry entry: {exc}") from exc


def enable_shutdown_privilege() -> None:
    windll = _windll()
    token = ctypes.c_void_p()
    if not windll.advapi32.OpenProcessToken(
        windll.kernel32.GetCurrentProcess(), TOKEN_ADJUST_PRIVILEGES | TOKEN_QUERY, ctypes.byref(token)
    ):
        raise ManagerError(f"Could not open process token (error {windll.kernel32.GetLastError()})")
    try:
        privileges = TOKEN_PRIVILEGES()
        privileges.PrivilegeCount = 1
        privileges.Privileges[0].Attributes = SE_PRIVILEGE_ENABLED
        if not windll.advapi32.LookupPrivilegeValueW(None, SE_SHUTDOWN_NAME, ctypes.byref(privileges.Privileges[0].Luid)):
            raise ManagerError("Could not look up the shutdown privilege")
        if not windll.advapi32.AdjustTokenPrivileges(token, False, ctypes.byref(privileges), 0, None, None):
            raise ManagerError(f"Could not acquire the shutdown privilege (error {windll.kernel32.GetLastError()})")
    finally:
        windll.kernel32.CloseHandle(token)


def exit_windows() -> None:
    windll = _windll()
    flags = EWX_REBOOT | EWX_RESTARTAPPS | EWX_FORCEIFHUNG
    reason = SHTDN_REASON_MAJOR_APPLICATION | SHTDN_REASON_MINOR_INSTALLATION | SHTDN_REASON_FLAG_PLANNED
    if windll.user32.ExitWindowsEx(flags, reason) != 1:
        raise ManagerError(f"Reboot failed (error {windll.kernel32.GetLastError()})")


def reboot(argv: List[str]) -> None:
    """Arrange for *argv* to run again after logon, then restart the host."""
    relaunch_file = write_relaunch_file(argv)
    add_run_once_entry(run_once_command(relaunch_file))
    log("INFO", "A system reboot is required; the installation resumes after you log in again")
    enable_shutdown_privilege()
    exit_windows()


def message_box(caption: str, title: str, fail: bool = False) -> int:
    windll = _windll()
    style = MB_ICONERROR if fail else MB_OKCANCEL_INFO
    return int(windll.user32.MessageBoxW(None, caption, title, style))


def relaunch_elevated_wait(argv: List[str]) -> None:
    """Run this program again with administrator rights and wait for it."""
    windll = _windll()
    executable, *prefix = self_command()
    info = SHELLEXECUTEINFOW()
    info.cbSize = ctypes.sizeof(info)
    info.fMask = SEE_MASK_NOCLOSEPROCESS
    info.lpVerb = "runas"
    info.lpFile = executable
    info.lpParameters = " ".join([subprocess.list2cmdline(prefix), build_command_args(argv, True)])
    info.lpDirectory = os.getcwd()
    info.nShow = SW_SHOWNORMAL
    if not windll.shell32.ShellExecuteExW(ctypes.byref(info)):
        error = windll.kernel32.GetLastError()
        if error == ERROR_CANCELLED:
            raise PrivilegeRequiredError("The request for administrator privileges was declined")
        raise ManagerError(f"Could not relaunch with administrator privileges (error {error})")

    handle = info.hProcess
    try:
        if windll.kernel32.WaitForSingleObject(handle, INFINITE) != WAIT_OBJECT_0:
            raise ManagerError("Could not wait for the elevated process")
        code = ctypes.c_ulong()
        if not windll.kernel32.GetExitCodeProcess(handle, ctypes.byref(code)):
            raise ManagerError("Could not read the elevated process exit status")
    finally:
        windll.kernel32.CloseHandle(handle)
    if code.value != 0:
        raise ExitCodeError(code.value)


def truncate_elevated_output() -> None:
    path = elevated_output_path()
    ensure_directory(path.parent)
    path.write_text("", encoding="utf-8")


def dump_elevated_output() -> None:
    path = elevated_output_path()
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        log("DEBUG", "Could not find elevated child output file")
        return
    if content:
        print(content, file=sys.stderr, end="" if content.endswith("\n") else "\n")


def launch_elevate(operation: str, argv: List[str]) -> None:
    """Relaunch elevated for *operation*; a reboot-required exit is not a failure."""
    truncate_elevated_output()
    try:
        relaunch_elevated_wait(argv)
    except ExitCodeError as exc:
        if exc.code == ERROR_SUCCESS_REBOOT_REQUIRED:
            log("INFO", "Reboot is required to continue installation, please reboot at your convenience")
            return
        log("ERROR", f"Elevated process failed with error: {exc}")
        dump_elevated_output()
        log("ERROR", install_error_message(operation))
        raise
    except ManagerError as exc:
        log("ERROR", f"Elevated process failed with error: {exc}")
        dump_elevated_output()
        log("ERROR", install_error_message(operation))
        raise


def install_error_message(operation: str, doc_url: Optional[str] = None) -> str:
    return (
        f"Could not {operation}. See previous output for any potential failure details.\n"
        "If you can not resolve the issue, try rerunning the \"machine-runner init\" command. "
        f"If that fails, install WSL manually following {doc_url or WSL_INSTALL_DOC_URL} "
        "and then run init again."
    )
