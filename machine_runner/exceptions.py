"""Custom exceptions for machine-runner."""

from __future__ import annotations

from typing import List, Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class MachineExistsError(ManagerError):
    """A machine with the requested name is already known to the backend."""


class AlreadyRunningError(ManagerError):
    pass


class NotRunningError(ManagerError):
    pass


class NoSuchMachineError(ManagerError):
    pass


class MultipleActiveError(ManagerError):
    """Only one machine of this backend may be running at a time."""


class UnsupportedAttributeError(ManagerError):
    def __init__(self, vm_type: str, attributes: List[str]) -> None:
        self.vm_type = vm_type
        self.attributes = list(attributes)
        names = ", ".join(self.attributes)
        super().__init__(f"Changing {names} is not supported for {vm_type} machines")


class PrivilegeRequiredError(ManagerError):
    """Administrator rights were needed and could not be obtained."""


class DownloadError(ManagerError):
    pass


class ImageNotFoundError(DownloadError):
    pass


class GuestCommandError(ManagerError):
    """A command run inside (or against) the guest failed."""

    def __init__(self, message: str, command: Optional[List[str]] = None, returncode: Optional[int] = None) -> None:
        self.command = list(command or [])
        self.returncode = returncode
        if returncode is not None:
            message = f"{message} (exit status {returncode})"
        super().__init__(message)


class ExitCodeError(ManagerError):
    """An elevated child process exited with a non-zero status."""

    def __init__(self, code: int) -> None:
        self.code = code
        super().__init__(f"Elevated process exited with status {code}")
