"""
Build configuration for anka VM builds.

Loaded from a YAML file or from ANKABUILD_* environment variables (a ``.env``
file in the working directory is honoured).
"""

import os
import platform
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .models import RegistryParams
from .util import AnkaUtil, convert_disk_size_to_bytes, parse_duration

ENV_PREFIX = "ANKABUILD_"

BUILDER_CREATE = "vm-create"
BUILDER_CLONE = "vm-clone"
BUILDER_TYPES = (BUILDER_CREATE, BUILDER_CLONE)

DEFAULT_BOOT_DELAY = "10s"
DEFAULT_SOURCE_VM_TAG = "latest"
RULE_NAME_LENGTH = 10


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(f"{ENV_PREFIX}{name}", default).lower() in ("1", "true", "yes")


def _env(name: str) -> Optional[str]:
    return os.getenv(f"{ENV_PREFIX}{name}") or None


@dataclass
class PortForwardingRule:
    """Desired port forwarding; host port 0 lets anka pick one."""

    guest_port: int
    host_port: int = 0
    rule_name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortForwardingRule":
        return cls(
            guest_port=int(data.get("guest_port") or 0),
            host_port=int(data.get("host_port") or 0),
            rule_name=str(data.get("rule_name") or ""),
        )

    @classmethod
    def parse(cls, text: str) -> "PortForwardingRule":
        """Parse ``guest[:host[:name]]``."""
        parts = text.strip().split(":")
        try:
            guest = int(parts[0])
            host = int(parts[1]) if len(parts) > 1 and parts[1] else 0
        except ValueError as e:
            raise ConfigurationError(f"Invalid port forwarding rule {text!r}: {e}") from e
        name = parts[2] if len(parts) > 2 else ""
        return cls(guest_port=guest, host_port=host, rule_name=name)


def registry_params_from_dict(data: Optional[Dict[str, Any]]) -> RegistryParams:
    data = data or {}
    return RegistryParams(
        registry_name=data.get("remote"),
        registry_url=data.get("registry_path"),
        node_cert_path=data.get("cert"),
        node_key_path=data.get("key"),
        ca_root_path=data.get("cacert"),
        is_insecure=bool(data.get("insecure", False)),
        host_arch=data.get("host_arch") or platform.machine(),
    )


def registry_params_from_environment() -> RegistryParams:
    return RegistryParams(
        registry_name=_env("REGISTRY_REMOTE"),
        registry_url=_env("REGISTRY_PATH"),
        node_cert_path=_env("REGISTRY_CERT"),
        node_key_path=_env("REGISTRY_KEY"),
        ca_root_path=_env("REGISTRY_CACERT"),
        is_insecure=_env_bool("REGISTRY_INSECURE"),
        host_arch=platform.machine(),
    )


def _load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


@dataclass
class BuildConfig:
    """Complete configuration of one VM build."""

    builder_type: str = BUILDER_CLONE

    # Source
    installer: Optional[str] = None
    source_vm_name: Optional[str] = None
    source_vm_tag: str = DEFAULT_SOURCE_VM_TAG
    always_fetch: bool = False
    update_addons: bool = False

    # Target
    vm_name: Optional[str] = None
    disk_size: Optional[str] = None
    ram_size: Optional[str] = None
    vcpu_count: Optional[str] = None

    # Properties
    port_forwarding_rules: List[PortForwardingRule] = field(default_factory=list)
    hw_uuid: Optional[str] = None
    display_controller: Optional[str] = None
    display_resolution: Optional[str] = None

    # Lifecycle
    boot_delay: str = DEFAULT_BOOT_DELAY
    enable_htt: bool = False
    disable_htt: bool = False
    stop_vm: bool = False
    use_anka_cp: bool = False
    force: bool = False

    registry: RegistryParams = field(default_factory=RegistryParams)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildConfig":
        def opt(key: str) -> Optional[str]:
            value = data.get(key)
            return None if value is None or value == "" else str(value)

        return cls(
            builder_type=data.get("type", BUILDER_CLONE),
            installer=opt("installer"),
            source_vm_name=opt("source_vm_name"),
            source_vm_tag=opt("source_vm_tag") or DEFAULT_SOURCE_VM_TAG,
            always_fetch=bool(data.get("always_fetch", False)),
            update_addons=bool(data.get("update_addons", False)),
            vm_name=opt("vm_name"),
            disk_size=opt("disk_size"),
            ram_size=opt("ram_size"),
            vcpu_count=opt("vcpu_count"),
            port_forwarding_rules=[
                PortForwardingRule.from_dict(rule) for rule in data.get("port_forwarding_rules") or []
            ],
            hw_uuid=opt("hw_uuid"),
            display_controller=opt("display_controller"),
            display_resolution=opt("display_resolution"),
            boot_delay=opt("boot_delay") or DEFAULT_BOOT_DELAY,
            enable_htt=bool(data.get("enable_htt", False)),
            disable_htt=bool(data.get("disable_htt", False)),
            stop_vm=bool(data.get("stop_vm", False)),
            use_anka_cp=bool(data.get("use_anka_cp", False)),
            force=bool(data.get("force", False)),
            registry=registry_params_from_dict(data.get("registry")),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "BuildConfig":
        return cls.from_dict(_load_yaml(path))

    @classmethod
    def from_environment(cls) -> "BuildConfig":
        """Load configuration from ANKABUILD_* environment variables."""
        load_dotenv()

        rules = os.getenv(f"{ENV_PREFIX}PORT_FORWARDING_RULES", "")

        return cls(
            builder_type=os.getenv(f"{ENV_PREFIX}TYPE", BUILDER_CLONE),
            installer=_env("INSTALLER"),
            source_vm_name=_env("SOURCE_VM_NAME"),
            source_vm_tag=_env("SOURCE_VM_TAG") or DEFAULT_SOURCE_VM_TAG,
            always_fetch=_env_bool("ALWAYS_FETCH"),
            update_addons=_env_bool("UPDATE_ADDONS"),
            vm_name=_env("VM_NAME"),
            disk_size=_env("DISK_SIZE"),
            ram_size=_env("RAM_SIZE"),
            vcpu_count=_env("VCPU_COUNT"),
            port_forwarding_rules=[PortForwardingRule.parse(r) for r in rules.split(",") if r.strip()],
            hw_uuid=_env("HW_UUID"),
            display_controller=_env("DISPLAY_CONTROLLER"),
            display_resolution=_env("DISPLAY_RESOLUTION"),
            boot_delay=_env("BOOT_DELAY") or DEFAULT_BOOT_DELAY,
            enable_htt=_env_bool("ENABLE_HTT"),
            disable_htt=_env_bool("DISABLE_HTT"),
            stop_vm=_env_bool("STOP_VM"),
            use_anka_cp=_env_bool("USE_ANKA_CP"),
            force=_env_bool("FORCE"),
            registry=registry_params_from_environment(),
        )

    def validate(self, util: Optional[AnkaUtil] = None) -> None:
        """
        Check invariants and fill in defaults.

        Blank port-forwarding rule names are replaced with random names.

        Raises:
            ConfigurationError: On the first violated invariant
        """
        util = util or AnkaUtil()

        if self.builder_type not in BUILDER_TYPES:
            raise ConfigurationError(
                f"wrong type for builder {self.builder_type!r}. must be one of {', '.join(BUILDER_TYPES)}"
            )

        if not self.installer and not self.source_vm_name:
            raise ConfigurationError("installer or source_vm_name must be specified")

        if self.builder_type == BUILDER_CREATE and not self.installer:
            raise ConfigurationError("installer is required for the vm-create builder")

        if self.builder_type == BUILDER_CLONE:
            if not self.source_vm_name:
                raise ConfigurationError("source_vm_name is required for the vm-clone builder")
            if self.installer:
                raise ConfigurationError("installer and source_vm_name are mutually exclusive for the vm-clone builder")

        for index, rule in enumerate(self.port_forwarding_rules):
            if not rule.guest_port:
                raise ConfigurationError(f"guest port is required (port forwarding rule {index})")
            if not rule.rule_name:
                self.port_forwarding_rules[index] = replace(rule, rule_name=util.rand_seq(RULE_NAME_LENGTH))

        if self.enable_htt and self.disable_htt:
            raise ConfigurationError("Conflicting setting enable_htt and disable_htt both true")

        if self.disk_size:
            convert_disk_size_to_bytes(self.disk_size)

        if self.vcpu_count:
            try:
                int(self.vcpu_count)
            except ValueError as e:
                raise ConfigurationError(f"vcpu_count must be an integer, got {self.vcpu_count!r}") from e

        parse_duration(self.boot_delay)


@dataclass
class RegistryPushConfig:
    """Configuration of the registry push post-processor."""

    tag: str = ""
    description: Optional[str] = None
    remote_vm: Optional[str] = None
    local: bool = False
    force: bool = False
    registry: RegistryParams = field(default_factory=RegistryParams)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistryPushConfig":
        return cls(
            tag=str(data.get("tag") or ""),
            description=data.get("description"),
            remote_vm=data.get("remote_vm"),
            local=bool(data.get("local", False)),
            force=bool(data.get("force", False)),
            registry=registry_params_from_dict(data.get("registry")),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "RegistryPushConfig":
        return cls.from_dict(_load_yaml(path))

    def validate(self) -> None:
        if not self.tag:
            raise ConfigurationError("You must specify a valid tag for your Anka VM (e.g. 'latest')")
