"""machine-runner package."""

__all__ = [
    "backend",
    "cleanup",
    "cli",
    "config",
    "connections",
    "constants",
    "elevation",
    "exceptions",
    "guest",
    "images",
    "machine",
    "models",
    "network",
    "ports",
    "provision",
    "qemu",
    "utils",
    "volumes",
    "wsl",
]
