"""Reverse-order undo stack shared between the error path and signal handlers."""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Tuple

from machine_runner.utils import log

_CLEANUP_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)


class CleanupStack:
    """Undo actions drained newest first, exactly once.

    Whichever path reaches ``clean`` first (an error return or a signal
    handler) runs the actions; every later call is a no-op. Failing actions
    are logged and the rest still run.
    """

    def __init__(self) -> None:
        self._actions: List[Tuple[str, Callable[[], None]]] = []
        self._guard = threading.Lock()
        self._drained = False

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def drained(self) -> bool:
        return self._drained

    def add(self, action: Callable[[], None], description: str = "") -> None:
        self._actions.append((description, action))

    def discard(self) -> None:
        """Forget every pending action; the work they would undo is committed."""
        with self._guard:
            self._actions = []
            self._drained = True

    def clean(self) -> bool:
        """Run pending actions in reverse order. Returns False if already drained."""
        if not self._guard.acquire(blocking=False):
            return False
        try:
            if self._drained:
                return False
            self._drained = True
            actions, self._actions = self._actions, []
        finally:
            self._guard.release()

        for description, action in reversed(actions):
            if description:
                log("DEBUG", f"Rolling back: {description}")
            try:
                action()
            except Exception as exc:
                log("WARN", f"Cleanup step failed ({description or action!r}): {exc}")
        return True

    @contextmanager
    def clean_on_signal(self) -> Iterator["CleanupStack"]:
        """Drain the stack and exit with status 1 on SIGINT/SIGTERM while active."""
        if threading.current_thread() is not threading.main_thread():
            yield self
            return

        def _handle(signum, frame):
            log("WARN", f"{signal.Signals(signum).name} received, rolling back")
            if self.clean():
                raise SystemExit(1)

        previous = {sig: signal.signal(sig, _handle) for sig in _CLEANUP_SIGNALS}
        try:
            yield self
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
