"""Utility functions for machine-runner."""

from __future__ import annotations

import bz2
import gzip
import lzma
import os
import shutil
import socket
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from machine_runner.constants import (
    _LOG_VERBOSE,
    COMPRESSED_EXTENSIONS,
    DOWNLOAD_TIMEOUT,
    TRUTHY,
    USER_AGENT,
)
from machine_runner.exceptions import DownloadError, ManagerError

_log_tee: Optional[Path] = None


def log(level: str, message: str) -> None:
    """Print a coloured ``[LEVEL]`` line; DEBUG only when LOG_VERBOSE is set."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)
    if _log_tee is not None:
        try:
            with _log_tee.open("a", encoding="utf-8") as handle:
                handle.write(f"[{level}] {message}\n")
        except OSError:
            pass


def tee_log_to(path: Optional[Path]) -> None:
    """Mirror every log line into *path* (used by elevated child processes)."""
    global _log_tee
    _log_tee = path


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def is_windows() -> bool:
    return sys.platform == "win32"


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def creation_flags() -> int:
    """Keep console windows from flashing up for helper processes on Windows."""
    return subprocess.CREATE_NO_WINDOW if hasattr(subprocess, "CREATE_NO_WINDOW") else 0


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run a host command, logging it at DEBUG first."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    kwargs.setdefault("text", True)
    result = subprocess.run(cmd, check=check, **kwargs)
    return result


def decode_wsl_output(raw: bytes) -> str:
    """wsl.exe answers in UTF-16LE when talking to a pipe; everything else is UTF-8."""
    if not raw:
        return ""
    if raw.startswith(b"\xff\xfe") or b"\x00" in raw[:64]:
        text = raw.decode("utf-16-le", errors="ignore")
    else:
        text = raw.decode("utf-8", errors="ignore")
    return text.replace("\ufeff", "").replace("\x00", "")


def hash_password(password: str) -> str:
    """bcrypt hash for the guest user's password."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def wait_for_ssh(port: int, host: str = "127.0.0.1", timeout: float = 60.0, interval: float = 1.0) -> bool:
    """Poll until an SSH server greets on host:port.

    A user-mode forwarder accepts connections before the guest behind it
    is up, so only the ``SSH-`` banner counts.
    """
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            with socket.create_connection((host, port), timeout=interval) as conn:
                conn.settimeout(interval)
                if conn.recv(256).startswith(b"SSH-"):
                    return True
        except OSError:
            pass
        time.sleep(interval)
    return False


def open_url(url: str, method: str = "GET", timeout: int = DOWNLOAD_TIMEOUT):
    req = Request(url, method=method, headers={"User-Agent": USER_AGENT})
    try:
        return urlopen(req, timeout=timeout)
    except HTTPError as exc:
        raise DownloadError(f"HTTP error fetching {url}: {exc.code} {exc.reason}") from exc
    except URLError as exc:
        raise DownloadError(f"Failed to fetch {url}: {exc.reason}") from exc


def download_file(url: str, destination: Path, expected_size: int = -1, label: str = "Downloading") -> None:
    """Download *url* to *destination* in a single streamed attempt.

    The body is written to a temporary file beside the destination and only
    moved into place once its length matches *expected_size* (when known).
    """
    log("INFO", f"{label}: {url}")
    response = open_url(url)
    status = getattr(response, "status", 200)
    if status != 200:
        raise DownloadError(f"Downloading {url} returned HTTP status {status}")

    ensure_directory(destination.parent)
    downloaded = 0
    start_time = time.time()
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
                if expected_size > 0 and downloaded > expected_size:
                    raise DownloadError(f"Download of {url} exceeded the advertised {expected_size} bytes")
                if expected_size > 0:
                    pct = downloaded * 100 / expected_size
                    print(f"\r  {pct:5.1f}% of {expected_size / (1024 * 1024):.1f} MiB", end="", flush=True)
            print(flush=True)
            if expected_size > 0 and downloaded != expected_size:
                raise DownloadError(
                    f"Download of {url} truncated: got {downloaded} of {expected_size} bytes"
                )
            tmp.close()
            tmp_path.replace(destination)
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
        finally:
            response.close()
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def extract_compressed(source: Path, destination: Path) -> Path:
    """Decompress a single-file .xz/.gz/.bz2 archive into *destination*."""
    openers = {".xz": lzma.open, ".gz": gzip.open, ".bz2": bz2.open}
    suffix = source.suffix.lower()
    if suffix not in COMPRESSED_EXTENSIONS:
        raise ManagerError(f"Unsupported compression format: {source.name}")
    ensure_directory(destination.parent)
    partial = destination.with_name(destination.name + ".partial")
    try:
        with openers[suffix](source, "rb") as src, partial.open("wb") as dst:
            shutil.copyfileobj(src, dst, 1024 * 1024)
    except (OSError, EOFError, lzma.LZMAError) as exc:
        partial.unlink(missing_ok=True)
        raise ManagerError(f"Failed to decompress {source}: {exc}") from exc
    partial.replace(destination)
    return destination


def pid_alive(pid: int) -> bool:
    """True when a process with *pid* exists."""
    if pid <= 0:
        return False
    if is_windows():
        import ctypes

        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        handle = kernel32.OpenProcess(0x1000, False, pid)  # PROCESS_QUERY_LIMITED_INFORMATION
        if not handle:
            return False
        try:
            code = ctypes.c_ulong()
            if not kernel32.GetExitCodeProcess(handle, ctypes.byref(code)):
                return False
            return code.value == 259  # STILL_ACTIVE
        finally:
            kernel32.CloseHandle(handle)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
