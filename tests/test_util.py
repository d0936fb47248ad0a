"""Tests for size, duration and installer helpers."""

import plistlib
import random
import zipfile
from unittest import mock

import pytest

from ankabuild.exceptions import ConfigurationError
from ankabuild.util import (
    AnkaUtil,
    InstallerAppVersion,
    base_vm_name,
    convert_disk_size_to_bytes,
    parse_duration,
)


@pytest.mark.parametrize(
    "size,expected",
    [
        ("80G", 80 * 1024**3),
        ("1g", 1024**3),
        ("512M", 512 * 1024**2),
        ("0m", 0),
    ],
)
def test_convert_disk_size_to_bytes(size, expected):
    assert convert_disk_size_to_bytes(size) == expected


@pytest.mark.parametrize("size", ["80", "80T", "G", "80GB", " 80G", "-1G", ""])
def test_convert_disk_size_rejects_invalid(size):
    with pytest.raises(ConfigurationError):
        convert_disk_size_to_bytes(size)


@pytest.mark.parametrize(
    "value,expected",
    [("10s", 10.0), ("1m30s", 90.0), ("500ms", 0.5), ("2h", 7200.0), ("0", 0.0), ("1.5s", 1.5)],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "10", "ten seconds", "10s junk", "s"])
def test_parse_duration_rejects_invalid(value):
    with pytest.raises(ConfigurationError):
        parse_duration(value)


class TestAnkaUtil:
    def test_rand_seq_is_deterministic_with_seeded_rng(self):
        first = AnkaUtil(random.Random(7)).rand_seq(10)
        second = AnkaUtil(random.Random(7)).rand_seq(10)

        assert first == second
        assert len(first) == 10
        assert first.isalpha()

    def test_installer_app_version(self, tmp_path):
        contents = tmp_path / "Install macOS Sonoma.app" / "Contents"
        contents.mkdir(parents=True)
        with open(contents / "Info.plist", "wb") as f:
            plistlib.dump({"DTPlatformVersion": "14.2", "CFBundleShortVersionString": "19.2.03"}, f)

        version = AnkaUtil().obtain_macos_version_from_installer_app(str(tmp_path / "Install macOS Sonoma.app"))

        assert version == InstallerAppVersion(os_version="14.2", bundle_version="19.2.03")

    def test_installer_app_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="installer app does not exist"):
            AnkaUtil().obtain_macos_version_from_installer_app(str(tmp_path / "Missing.app"))

    def test_installer_app_missing_plist(self, tmp_path):
        (tmp_path / "Empty.app").mkdir()

        with pytest.raises(FileNotFoundError, match="info plist"):
            AnkaUtil().obtain_macos_version_from_installer_app(str(tmp_path / "Empty.app"))

    def test_installer_ipsw_version(self, tmp_path):
        ipsw = tmp_path / "UniversalMac_14.2_23C64_Restore.ipsw"
        with zipfile.ZipFile(ipsw, "w") as archive:
            archive.writestr(
                "SystemVersion.plist",
                plistlib.dumps({"ProductVersion": "14.2", "ProductBuildVersion": "23C64"}),
            )

        version = AnkaUtil().obtain_macos_version_from_installer_ipsw(str(ipsw))

        assert version.product_version == "14.2"
        assert version.product_build_version == "23C64"

    def test_config_tmp_dir_honours_env(self, tmp_path, monkeypatch):
        target = tmp_path / "not-yet" / "there"
        monkeypatch.setenv("ANKABUILD_TMP_DIR", str(target))

        tmp_dir = AnkaUtil().config_tmp_dir()

        assert target.is_dir()
        assert tmp_dir.startswith(str(target))


class TestBaseVmName:
    def test_app_installer(self):
        util = mock.create_autospec(AnkaUtil, instance=True)
        util.obtain_macos_version_from_installer_app.return_value = InstallerAppVersion("11.2", "16.4.06")

        assert base_vm_name("/fake/InstallApp.app/", util) == "anka-packer-base-11.2-16.4.06"
        util.obtain_macos_version_from_installer_app.assert_called_once_with("/fake/InstallApp.app")

    def test_ipsw_installer(self, tmp_path):
        ipsw = tmp_path / "restore.ipsw"
        with zipfile.ZipFile(ipsw, "w") as archive:
            archive.writestr(
                "SystemVersion.plist",
                plistlib.dumps({"ProductVersion": "13.5", "ProductBuildVersion": "22G74"}),
            )

        assert base_vm_name(str(ipsw), AnkaUtil()) == "anka-packer-base-13.5-22G74"

    def test_other_installer(self):
        assert base_vm_name("13.5", AnkaUtil()) == "anka-packer-base-13.5"
