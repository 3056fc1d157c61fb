"""User-mode networking relay shared by every machine that enables it."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional

from machine_runner import config as machine_config
from machine_runner.constants import RELAY_BINARY, RELAY_PID_NAME
from machine_runner.exceptions import ManagerError
from machine_runner.utils import creation_flags, ensure_directory, log, pid_alive


class RelayService:
    """Reference-counted host relay process.

    Every machine that starts with user-mode networking takes a reference
    (a marker file named after the machine) and gives it back when it stops.
    The first reference launches the relay; dropping the last one stops it
    and calls *restore* so native networking comes back. Markers live on
    disk, so the count survives across separate invocations.
    """

    def __init__(
        self,
        state_dir: Optional[Path] = None,
        binary: str = RELAY_BINARY,
        restore: Optional[Callable[[], None]] = None,
    ) -> None:
        self.state_dir = state_dir or machine_config.data_dir() / "relay"
        self.binary = binary
        self.restore = restore
        self._initialized = False

    @property
    def pid_file(self) -> Path:
        return self.state_dir / RELAY_PID_NAME

    def _marker(self, name: str) -> Path:
        return self.state_dir / f"{name}.ref"

    def holders(self) -> List[str]:
        if not self.state_dir.is_dir():
            return []
        return sorted(path.stem for path in self.state_dir.glob("*.ref"))

    def relay_pid(self) -> int:
        try:
            return int(self.pid_file.read_text().strip())
        except (OSError, ValueError):
            return 0

    def is_running(self) -> bool:
        return pid_alive(self.relay_pid())

    def init(self) -> None:
        """Prepare the state dir and forget references held by a dead relay."""
        if self._initialized:
            return
        ensure_directory(self.state_dir)
        if not self.is_running():
            stale = self.holders()
            if stale:
                log("DEBUG", f"Relay is gone; dropping stale references: {', '.join(stale)}")
            for name in stale:
                self._marker(name).unlink(missing_ok=True)
            self.pid_file.unlink(missing_ok=True)
        self._initialized = True

    def acquire(self, name: str) -> None:
        self.init()
        if not self.is_running():
            self._start_relay()
        self._marker(name).write_text(str(os.getpid()))
        log("DEBUG", f"Relay references: {', '.join(self.holders())}")

    def release(self, name: str) -> None:
        self.init()
        self._marker(name).unlink(missing_ok=True)
        if self.holders():
            return
        self._stop_relay()
        if self.restore is not None:
            try:
                self.restore()
            except ManagerError as exc:
                log("WARN", f"Could not restore native networking: {exc}")

    def _start_relay(self) -> None:
        log("INFO", "Starting user-mode networking relay")
        log_path = self.state_dir / "relay.log"
        cmd = [self.binary, "-mtu", "1500", "-log-file", str(log_path)]
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                creationflags=creation_flags(),
            )
        except OSError as exc:
            raise ManagerError(f"Could not start networking relay {self.binary}: {exc}") from exc
        self.pid_file.write_text(str(proc.pid))

    def _stop_relay(self, timeout: float = 10.0) -> None:
        pid = self.relay_pid()
        self.pid_file.unlink(missing_ok=True)
        if not pid_alive(pid):
            return
        log("INFO", "Stopping user-mode networking relay")
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as exc:
            log("WARN", f"Could not signal relay process {pid}: {exc}")
            return
        deadline = time.time() + timeout
        while time.time() < deadline and pid_alive(pid):
            time.sleep(0.2)
        if pid_alive(pid):
            log("WARN", f"Relay process {pid} ignored SIGTERM; killing it")
            os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
