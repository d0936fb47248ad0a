"""Size, duration and installer metadata helpers."""

import logging
import os
import plistlib
import random
import re
import string
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

TMP_DIR_ENV = "ANKABUILD_TMP_DIR"
CONFIG_DIR = Path.home() / ".ankabuild"
BASE_VM_PREFIX = "anka-packer-base"

_DISK_SIZE_RE = re.compile(r"^([0-9]+)([gGmM])$")
_DURATION_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def convert_disk_size_to_bytes(disk_size: str) -> int:
    """
    Convert an anka size such as ``80G`` or ``512m`` to bytes.

    Raises:
        ConfigurationError: If the value is not ``<digits>`` followed by G or M
    """
    match = _DISK_SIZE_RE.match(disk_size or "")
    if not match:
        raise ConfigurationError(f"Input {disk_size} is not a valid disk size input")

    value = int(match.group(1))
    if match.group(2).upper() == "G":
        return value * 1024 * 1024 * 1024
    return value * 1024 * 1024


def parse_duration(value: str) -> float:
    """Parse durations like ``10s``, ``1m30s`` or ``500ms`` into seconds."""
    text = (value or "").strip()
    if text == "0":
        return 0.0

    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if not text or pos != len(text):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class InstallerAppVersion:
    os_version: str
    bundle_version: str


@dataclass(frozen=True)
class InstallerIPSWVersion:
    product_version: str
    product_build_version: str


class AnkaUtil:
    """Helpers that need randomness or the host filesystem."""

    LETTERS = string.ascii_letters

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def rand_seq(self, n: int) -> str:
        return "".join(self.rng.choice(self.LETTERS) for _ in range(n))

    def obtain_macos_version_from_installer_app(self, path: str) -> InstallerAppVersion:
        """Read DTPlatformVersion and CFBundleShortVersionString from an installer .app bundle."""
        app = Path(path)
        if not app.exists():
            raise FileNotFoundError(f"installer app does not exist at {path!r}")

        plist_path = app / "Contents" / "Info.plist"
        if not plist_path.exists():
            raise FileNotFoundError(f"installer app info plist did not exist at {str(plist_path)!r}")

        with open(plist_path, "rb") as f:
            info = plistlib.load(f)

        return InstallerAppVersion(
            os_version=str(info.get("DTPlatformVersion", "")),
            bundle_version=str(info.get("CFBundleShortVersionString", "")),
        )

    def obtain_macos_version_from_installer_ipsw(self, path: str) -> InstallerIPSWVersion:
        """Read ProductVersion and ProductBuildVersion from SystemVersion.plist inside an .ipsw."""
        with zipfile.ZipFile(path) as archive:
            info = plistlib.loads(archive.read("SystemVersion.plist"))

        return InstallerIPSWVersion(
            product_version=str(info.get("ProductVersion", "")),
            product_build_version=str(info.get("ProductBuildVersion", "")),
        )

    def config_tmp_dir(self) -> str:
        """Create a fresh temp dir under the config dir (or ANKABUILD_TMP_DIR)."""
        config_dir = CONFIG_DIR
        override = os.getenv(TMP_DIR_ENV)
        if override:
            config_dir = Path(override).absolute()
            logger.info(f"found {TMP_DIR_ENV} env variable; setting tmpdir to {config_dir}")

        if not config_dir.exists():
            logger.info(f"Config dir {config_dir} does not exist; creating...")
            config_dir.mkdir(parents=True, exist_ok=True)

        tmp_dir = tempfile.mkdtemp(prefix="tmp", dir=str(config_dir))
        logger.info(f"Set temp dir to {tmp_dir}")
        return tmp_dir


def base_vm_name(installer: str, util: AnkaUtil) -> str:
    """Deterministic name for a VM created from ``installer``."""
    installer = installer.rstrip("/")
    if installer.endswith(".app"):
        app = util.obtain_macos_version_from_installer_app(installer)
        return f"{BASE_VM_PREFIX}-{app.os_version}-{app.bundle_version}"

    if installer.endswith(".ipsw"):
        ipsw = util.obtain_macos_version_from_installer_ipsw(installer)
        return f"{BASE_VM_PREFIX}-{ipsw.product_version}-{ipsw.product_build_version}"

    return f"{BASE_VM_PREFIX}-{Path(installer).name}"
