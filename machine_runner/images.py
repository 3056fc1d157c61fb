"""Guest image resolution, download and cache."""

from __future__ import annotations

import json
import platform
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

from machine_runner import config as machine_config
from machine_runner.constants import (
    ARCH_ALIASES,
    COMPRESSED_EXTENSIONS,
    DEFAULT_FEDORA_RELEASE,
    DEFAULT_STREAM_INDEX_URL,
    FEDORA_IMAGE_RE,
    FEDORA_RAW_URL,
    FEDORA_TREE_URL,
    MAX_INDEX_BYTES,
    QEMU_CHANNELS,
    QEMU_VIRT,
    WSL_VIRT,
)
from machine_runner.exceptions import DownloadError, ImageNotFoundError
from machine_runner.models import DownloadDescriptor
from machine_runner.utils import download_file, ensure_directory, extract_compressed, log, open_url

CUSTOM_STREAM = "custom"


def host_arch() -> str:
    machine = platform.machine().lower()
    return ARCH_ALIASES.get(machine, machine)


def remote_size(url: str) -> int:
    """Content length reported by a HEAD request."""
    response = open_url(url, method="HEAD")
    try:
        status = getattr(response, "status", 200)
        if status != 200:
            raise DownloadError(f"HEAD request to {url} returned HTTP status {status}")
        length = response.headers.get("Content-Length")
    finally:
        response.close()
    try:
        return int(length) if length is not None else -1
    except ValueError:
        return -1


def fedora_download(release: str, arch: Optional[str] = None) -> Tuple[str, int]:
    """Locate the Fedora container rootfs for *release*; returns (url, size)."""
    arch = arch or host_arch()
    tree_url = FEDORA_TREE_URL.format(release=release, arch=arch)
    response = open_url(tree_url)
    try:
        body = response.read(MAX_INDEX_BYTES).decode("utf-8", errors="ignore")
    finally:
        response.close()
    match = FEDORA_IMAGE_RE.search(body)
    if not match:
        raise ImageNotFoundError(f"Could not locate a Fedora {release} image for {arch} at {tree_url}")
    url = FEDORA_RAW_URL.format(release=release, arch=arch, name=match.group(0))
    return url, remote_size(url)


def stream_download(channel: str, index_url: str = DEFAULT_STREAM_INDEX_URL, arch: Optional[str] = None) -> Tuple[str, str, int]:
    """Resolve a channel name to (url, version, size) using the stream index."""
    arch = arch or host_arch()
    url = index_url.format(stream=channel)
    response = open_url(url)
    try:
        raw = response.read(MAX_INDEX_BYTES)
    finally:
        response.close()
    try:
        index = json.loads(raw)
        artifact = index["architectures"][arch]["artifacts"]["qemu"]
        version = artifact["release"]
        location = artifact["formats"]["qcow2.xz"]["disk"]["location"]
    except (ValueError, KeyError, TypeError) as exc:
        raise ImageNotFoundError(f"No qemu image for {arch} in the {channel} stream index ({url})") from exc
    return location, version, remote_size(location)


def _artifact_name(url: str) -> str:
    return Path(urlparse(url).path).name


def _strip_compression(name: str) -> str:
    path = Path(name)
    if path.suffix.lower() in COMPRESSED_EXTENSIONS:
        return path.stem
    return name


def resolve_image_stream(value: str, vm_type: str, vm_name: str, index_url: str = DEFAULT_STREAM_INDEX_URL) -> Tuple[str, DownloadDescriptor]:
    """Turn a user-supplied image argument into a stream name and a descriptor.

    *value* is a local path, a numeric Fedora release (subsystem backend), or
    a channel name (hypervisor backend). An empty value picks the backend
    default.
    """
    value = (value or "").strip()
    if value:
        local = Path(value).expanduser()
        if local.is_file():
            if local.suffix.lower() in COMPRESSED_EXTENSIONS:
                target = machine_config.data_dir(vm_type) / f"{vm_name}_{_strip_compression(local.name)}"
            else:
                target = local
            descriptor = DownloadDescriptor(
                url="",
                size=-1,
                version=CUSTOM_STREAM,
                local_compressed_path=local,
                local_uncompressed_path=target,
            )
            return CUSTOM_STREAM, descriptor

    if vm_type == WSL_VIRT:
        release = DEFAULT_FEDORA_RELEASE if value in ("", "testing") else value
        if not release.isdigit():
            raise ImageNotFoundError(f"Unknown image '{value}': expected a local file or a Fedora release number")
        url, size = fedora_download(release)
        stream, version = release, release
    elif vm_type == QEMU_VIRT:
        channel = value or "testing"
        if channel not in QEMU_CHANNELS:
            raise ImageNotFoundError(
                f"Unknown image '{value}': expected a local file or one of {', '.join(QEMU_CHANNELS)}"
            )
        url, version, size = stream_download(channel, index_url)
        stream = channel
    else:
        raise ImageNotFoundError(f"No image streams known for machine type {vm_type}")

    name = _artifact_name(url)
    cached = machine_config.cache_dir(vm_type) / f"{version}-{name}"
    if cached.suffix.lower() in COMPRESSED_EXTENSIONS:
        uncompressed = machine_config.data_dir(vm_type) / f"{vm_name}_{_strip_compression(name)}"
    else:
        uncompressed = cached
    return stream, DownloadDescriptor(
        url=url,
        size=size,
        version=version,
        local_compressed_path=cached,
        local_uncompressed_path=uncompressed,
    )


def is_cached(descriptor: DownloadDescriptor) -> bool:
    """A cached artifact is trusted when its size matches the advertised one."""
    path = descriptor.local_compressed_path
    if not path.is_file():
        return False
    if descriptor.size > 0 and path.stat().st_size != descriptor.size:
        log("WARN", f"Cached image {path.name} has the wrong size; downloading it again")
        return False
    return True


def acquire_image(descriptor: DownloadDescriptor) -> Path:
    """Make sure the decompressed disk image exists and return its path."""
    source = descriptor.local_compressed_path
    if descriptor.url:
        if is_cached(descriptor):
            log("INFO", f"Using cached image: {source}")
        else:
            ensure_directory(source.parent)
            source.unlink(missing_ok=True)
            download_file(descriptor.url, source, descriptor.size, label="Downloading image")

    target = descriptor.local_uncompressed_path
    if target != source:
        log("INFO", f"Extracting {source.name}")
        extract_compressed(source, target)
        log("SUCCESS", "Image extracted")
    return target


def discard_image(descriptor: DownloadDescriptor) -> None:
    """Remove what ``acquire_image`` produced, keeping the download cache and user files."""
    target = descriptor.local_uncompressed_path
    if target != descriptor.local_compressed_path:
        target.unlink(missing_ok=True)


def owns_image(path: Path, vm_type: str) -> bool:
    """True when *path* was produced by us rather than supplied by the user."""
    try:
        path.resolve().relative_to(machine_config.data_dir(vm_type).resolve())
    except ValueError:
        return False
    return True
