"""Tests for machine_runner.images module."""

from __future__ import annotations

import json
import lzma
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from machine_runner import images
from machine_runner.exceptions import DownloadError, ImageNotFoundError
from machine_runner.models import DownloadDescriptor

STREAM_INDEX = {
    "architectures": {
        "x86_64": {
            "artifacts": {
                "qemu": {
                    "release": "40.20240416.3.1",
                    "formats": {
                        "qcow2.xz": {
                            "disk": {
                                "location": "https://builds.example.com/fedora-coreos-40.20240416.3.1-qemu.x86_64.qcow2.xz"
                            }
                        }
                    },
                }
            }
        }
    }
}


def _response(body=b"", status=200, headers=None):
    response = MagicMock()
    response.read.return_value = body
    response.status = status
    response.headers = headers or {}
    return response


class TestRemoteSize:
    def test_content_length(self):
        with patch("machine_runner.images.open_url", return_value=_response(headers={"Content-Length": "1234"})) as mock_open:
            assert images.remote_size("https://example.com/a") == 1234
        mock_open.assert_called_once_with("https://example.com/a", method="HEAD")

    def test_missing_length(self):
        with patch("machine_runner.images.open_url", return_value=_response()):
            assert images.remote_size("https://example.com/a") == -1

    def test_non_200(self):
        with patch("machine_runner.images.open_url", return_value=_response(status=302)):
            with pytest.raises(DownloadError, match="HTTP status 302"):
                images.remote_size("https://example.com/a")


class TestFedoraDownload:
    def test_finds_rootfs_in_listing(self):
        listing = b'<a href="/x">fedora-39-x86_64-20240101.tar.xz</a>"'
        with (
            patch("machine_runner.images.open_url", return_value=_response(listing)),
            patch("machine_runner.images.remote_size", return_value=999),
        ):
            url, size = images.fedora_download("39", "x86_64")
        assert url.endswith("/39/x86_64/fedora-39-x86_64-20240101.tar.xz")
        assert size == 999

    def test_listing_without_image(self):
        with patch("machine_runner.images.open_url", return_value=_response(b"<html></html>")):
            with pytest.raises(ImageNotFoundError, match="Could not locate a Fedora 39 image"):
                images.fedora_download("39", "x86_64")


class TestStreamDownload:
    def test_resolves_channel(self):
        with (
            patch("machine_runner.images.open_url", return_value=_response(json.dumps(STREAM_INDEX).encode())) as mock_open,
            patch("machine_runner.images.remote_size", return_value=4096),
        ):
            url, version, size = images.stream_download("stable", "https://idx.example.com/{stream}.json", "x86_64")
        mock_open.assert_called_once_with("https://idx.example.com/stable.json")
        assert url.endswith("qemu.x86_64.qcow2.xz")
        assert version == "40.20240416.3.1"
        assert size == 4096

    def test_missing_architecture(self):
        with patch("machine_runner.images.open_url", return_value=_response(json.dumps(STREAM_INDEX).encode())):
            with pytest.raises(ImageNotFoundError, match="No qemu image for aarch64"):
                images.stream_download("stable", arch="aarch64")


class TestResolveImageStream:
    def test_local_uncompressed_used_in_place(self, tmp_path):
        local = tmp_path / "my.qcow2"
        local.write_bytes(b"disk")
        stream, descriptor = images.resolve_image_stream(str(local), "qemu", "dev")
        assert stream == "custom"
        assert descriptor.url == ""
        assert descriptor.local_uncompressed_path == local

    def test_local_compressed_goes_to_data_dir(self, tmp_path, machine_dirs):
        _, data_dir = machine_dirs
        local = tmp_path / "rootfs.tar.xz"
        local.write_bytes(b"x")
        _, descriptor = images.resolve_image_stream(str(local), "wsl", "dev")
        assert descriptor.local_compressed_path == local
        assert descriptor.local_uncompressed_path == data_dir / "wsl" / "dev_rootfs.tar"

    @pytest.mark.parametrize("value", ["", "testing"])
    def test_wsl_default_release(self, value):
        with patch(
            "machine_runner.images.fedora_download", return_value=("https://raw.example.com/fedora-35.tar.xz", 10)
        ) as mock_dl:
            stream, descriptor = images.resolve_image_stream(value, "wsl", "dev")
        mock_dl.assert_called_once_with("35")
        assert stream == "35"
        assert descriptor.local_compressed_path.name == "35-fedora-35.tar.xz"

    def test_wsl_numeric_release(self, machine_dirs):
        _, data_dir = machine_dirs
        with patch(
            "machine_runner.images.fedora_download", return_value=("https://raw.example.com/fedora-39.tar.xz", 10)
        ):
            stream, descriptor = images.resolve_image_stream("39", "wsl", "dev")
        assert stream == "39"
        assert descriptor.local_compressed_path == data_dir / "wsl" / "cache" / "39-fedora-39.tar.xz"
        assert descriptor.local_uncompressed_path == data_dir / "wsl" / "dev_fedora-39.tar"
        assert descriptor.size == 10

    def test_wsl_rejects_channel_names(self):
        with pytest.raises(ImageNotFoundError, match="Fedora release number"):
            images.resolve_image_stream("stable", "wsl", "dev")

    def test_qemu_defaults_to_testing(self):
        with patch(
            "machine_runner.images.stream_download",
            return_value=("https://b.example.com/fcos-40-qemu.x86_64.qcow2.xz", "40.1", 77),
        ) as mock_dl:
            stream, descriptor = images.resolve_image_stream("", "qemu", "dev", "https://idx/{stream}")
        mock_dl.assert_called_once_with("testing", "https://idx/{stream}")
        assert stream == "testing"
        assert descriptor.version == "40.1"
        assert descriptor.local_compressed_path.name == "40.1-fcos-40-qemu.x86_64.qcow2.xz"
        assert descriptor.local_uncompressed_path.name == "dev_fcos-40-qemu.x86_64.qcow2"

    def test_qemu_rejects_unknown(self):
        with pytest.raises(ImageNotFoundError, match="stable, testing, next"):
            images.resolve_image_stream("rawhide", "qemu", "dev")


def _descriptor(tmp_path, size=-1, url="https://example.com/img.xz"):
    return DownloadDescriptor(
        url=url,
        size=size,
        version="1",
        local_compressed_path=tmp_path / "cache" / "1-img.xz",
        local_uncompressed_path=tmp_path / "dev_img",
    )


class TestCache:
    def test_missing_is_not_cached(self, tmp_path):
        assert not images.is_cached(_descriptor(tmp_path, size=4))

    def test_size_match_is_cached(self, tmp_path):
        descriptor = _descriptor(tmp_path, size=4)
        descriptor.local_compressed_path.parent.mkdir()
        descriptor.local_compressed_path.write_bytes(b"abcd")
        assert images.is_cached(descriptor)

    def test_size_mismatch_is_not_cached(self, tmp_path):
        descriptor = _descriptor(tmp_path, size=5)
        descriptor.local_compressed_path.parent.mkdir()
        descriptor.local_compressed_path.write_bytes(b"abcd")
        assert not images.is_cached(descriptor)

    def test_unknown_size_trusts_existence(self, tmp_path):
        descriptor = _descriptor(tmp_path)
        descriptor.local_compressed_path.parent.mkdir()
        descriptor.local_compressed_path.write_bytes(b"abcd")
        assert images.is_cached(descriptor)


class TestAcquireImage:
    def test_cached_skips_download(self, tmp_path):
        descriptor = _descriptor(tmp_path)
        descriptor.local_compressed_path.parent.mkdir()
        descriptor.local_compressed_path.write_bytes(lzma.compress(b"disk"))
        with patch("machine_runner.images.download_file") as mock_download:
            path = images.acquire_image(descriptor)
        mock_download.assert_not_called()
        assert path.read_bytes() == b"disk"

    def test_downloads_when_missing(self, tmp_path):
        descriptor = _descriptor(tmp_path, size=11)

        def fake_download(url, destination, size, label):
            destination.write_bytes(lzma.compress(b"fresh"))

        with patch("machine_runner.images.download_file", side_effect=fake_download) as mock_download:
            path = images.acquire_image(descriptor)
        mock_download.assert_called_once()
        assert path.read_bytes() == b"fresh"

    def test_local_custom_file_is_not_copied(self, tmp_path):
        local = tmp_path / "disk.qcow2"
        local.write_bytes(b"disk")
        descriptor = DownloadDescriptor("", -1, "custom", local, local)
        with patch("machine_runner.images.download_file") as mock_download:
            assert images.acquire_image(descriptor) == local
        mock_download.assert_not_called()


class TestDiscardImage:
    def test_removes_decompressed_copy_only(self, tmp_path):
        descriptor = _descriptor(tmp_path)
        descriptor.local_compressed_path.parent.mkdir()
        descriptor.local_compressed_path.write_bytes(b"c")
        descriptor.local_uncompressed_path.write_bytes(b"u")
        images.discard_image(descriptor)
        assert descriptor.local_compressed_path.exists()
        assert not descriptor.local_uncompressed_path.exists()

    def test_user_file_untouched(self, tmp_path):
        local = tmp_path / "disk.qcow2"
        local.write_bytes(b"disk")
        images.discard_image(DownloadDescriptor("", -1, "custom", local, local))
        assert local.exists()


class TestOwnsImage:
    def test_inside_data_dir(self, machine_dirs):
        _, data_dir = machine_dirs
        assert images.owns_image(data_dir / "qemu" / "dev_img.qcow2", "qemu")

    def test_outside_data_dir(self, tmp_path):
        assert not images.owns_image(tmp_path / "elsewhere" / "disk.qcow2", "qemu")
