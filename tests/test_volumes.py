"""Tests for machine_runner.volumes module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from machine_runner.exceptions import ManagerError
from machine_runner.volumes import VolumeMount, convert_mount_path, parse_volume, parse_volumes


@pytest.fixture(autouse=True)
def not_windows():
    with patch("machine_runner.volumes.is_windows", return_value=False):
        yield


class TestConvertMountPath:
    def test_drive_letter_path(self):
        assert convert_mount_path(r"C:\Users\me\src") == "/mnt/c/Users/me/src"

    def test_forward_slashes_after_drive(self):
        assert convert_mount_path("D:/data/project") == "/mnt/d/data/project"

    def test_shell_drive_form_when_drive_exists(self):
        assert convert_mount_path("/c/Users/me", exists=lambda path: True) == "/mnt/c/Users/me"

    def test_shell_drive_form_when_drive_missing(self):
        assert convert_mount_path("/c/Users/me", exists=lambda path: False) == "/c/Users/me"

    def test_unix_path_passes_through(self):
        assert convert_mount_path("/home/me/src") == "/home/me/src"

    def test_unc_path_rejected(self):
        with pytest.raises(ManagerError, match="Unsupported UNC path"):
            convert_mount_path(r"\\server\share\dir")


class TestParseVolume:
    def test_source_only_unix(self):
        assert parse_volume("/home/me/src") == VolumeMount("/home/me/src", "/home/me/src", False)

    def test_source_target_ro(self):
        assert parse_volume("/src:/workspace:ro") == VolumeMount("/src", "/workspace", True)

    def test_windows_source_keeps_drive(self):
        assert parse_volume(r"C:\src:/workspace:rw") == VolumeMount(r"C:\src", "/workspace", False)

    def test_windows_source_default_target(self):
        assert parse_volume(r"C:\src") == VolumeMount(r"C:\src", "/mnt/c/src", False)

    def test_bad_option(self):
        with pytest.raises(ManagerError, match="option must be 'ro' or 'rw'"):
            parse_volume("/src:/dst:rx")

    def test_relative_target(self):
        with pytest.raises(ManagerError, match="guest path must be absolute"):
            parse_volume("/src:dst")

    def test_missing_source(self):
        with pytest.raises(ManagerError, match="missing source"):
            parse_volume(":/dst")

    def test_too_many_fields(self):
        with pytest.raises(ManagerError, match="too many"):
            parse_volume("/a:/b:ro:extra")

    def test_parse_many(self):
        assert [v.target for v in parse_volumes(["/a", "/b:/c"])] == ["/a", "/c"]
