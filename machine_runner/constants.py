"""Global constants and path configuration for machine-runner."""

from __future__ import annotations

import os
import re
from pathlib import Path

# MACHINE_CONFIG_DIR / MACHINE_DATA_DIR relocate everything the tool writes.
# Machine definitions and connections live under the config dir, images,
# caches and relay state under the data dir.
_CONFIG_DIR = os.environ.get("MACHINE_CONFIG_DIR")
_DATA_DIR = os.environ.get("MACHINE_DATA_DIR")
CONFIG_DIR = Path(_CONFIG_DIR) if _CONFIG_DIR else Path.home() / ".config" / "machine-runner"
DATA_DIR = Path(_DATA_DIR) if _DATA_DIR else Path.home() / ".local" / "share" / "machine-runner"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "machine.yaml"
CONNECTIONS_FILE_NAME = "connections.json"

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

WSL_VIRT = "wsl"
QEMU_VIRT = "qemu"
SUPPORTED_VM_TYPES = (WSL_VIRT, QEMU_VIRT)
# Backends whose guest sits behind a user-space forwarder; host IPs mean nothing there.
REMOTE_VM_TYPES = {QEMU_VIRT, "applehv", "hyperv"}

STATE_RUNNING = "running"
STATE_STOPPED = "stopped"

MACHINE_NAME_PREFIX = "machine"
DEFAULT_MACHINE_NAME = "machine-default"
MACHINE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
USER_MODE_DIST = "machine-net-usermode"

DEFAULT_MACHINE_SETTINGS = {
    "provider": "",
    "cpus": 2,
    "memory": 2048,
    "disk_size": 100,
    "user": "user",
    "image": "",
}
DEFAULT_STREAM_INDEX_URL = "https://builds.coreos.fedoraproject.org/streams/{stream}.json"

FEDORA_REPO_URL = "https://github.com/fedora-cloud/docker-brew-fedora/"
FEDORA_TREE_URL = FEDORA_REPO_URL + "tree/{release}/{arch}"
FEDORA_RAW_URL = "https://raw.githubusercontent.com/fedora-cloud/docker-brew-fedora/{release}/{arch}/{name}"
FEDORA_IMAGE_RE = re.compile(r'fedora[^"]+xz')
DEFAULT_FEDORA_RELEASE = "35"
MAX_INDEX_BYTES = 10 * 1024 * 1024
QEMU_CHANNELS = ("stable", "testing", "next")
DOWNLOAD_TIMEOUT = 60
USER_AGENT = "machine-runner/1.0"

ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
}

COMPRESSED_EXTENSIONS = {".xz", ".gz", ".bz2"}

# The guest's remote socket the engine client connects through.
ROOTLESS_SOCKET = "/run/user/{uid}/podman/podman.sock"
ROOTFUL_SOCKET = "/run/podman/podman.sock"
DEFAULT_GUEST_UID = 1000

STOP_TIMEOUT = 60
READY_TIMEOUT = 90

# MSI / Windows Update codes that still mean success.
ERROR_SUCCESS_REBOOT_INITIATED = 1641
ERROR_SUCCESS_REBOOT_REQUIRED = 3010
MSI_SUCCESS_CODES = {0, ERROR_SUCCESS_REBOOT_INITIATED, ERROR_SUCCESS_REBOOT_REQUIRED}

REEXEC_FLAG = "--reexec"
RELAUNCH_FILE_NAME = "machine-relaunch-command.dat"
ELEVATED_OUTPUT_NAME = "machine-elevated-output.log"
RUN_ONCE_KEY = r"Software\Microsoft\Windows\CurrentVersion\RunOnce"
RUN_ONCE_VALUE = "machine-runner"
WSL_INSTALL_DOC_URL = "https://learn.microsoft.com/windows/wsl/install"
# WSL2 needs Windows 10 build 18362 (1903) or newer.
WSL_MIN_BUILD = (10, 0, 18362)

RELAY_BINARY = os.environ.get("MACHINE_RELAY_BINARY", "gvproxy")
RELAY_PID_NAME = "relay.pid"
