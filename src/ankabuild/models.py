"""Data models for anka command results and build configuration pieces."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class VMStatus(Enum):
    """VM lifecycle status as reported by ``anka show``."""

    RUNNING = "running"
    STOPPED = "stopped"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "VMStatus":
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class CreateParams:
    """Arguments for ``anka create``; unset sizes are left to anka's defaults."""

    name: str
    installer: Optional[str] = None
    disk_size: Optional[str] = None
    ram_size: Optional[str] = None
    vcpu_count: Optional[str] = None


@dataclass(frozen=True)
class ShowResponse:
    """Point-in-time snapshot of a VM's identity, resources and status."""

    uuid: str
    name: str
    cpu_cores: int = 0
    ram: str = ""
    image_id: str = ""
    status: VMStatus = VMStatus.UNKNOWN
    hard_drive: int = 0

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "ShowResponse":
        return cls(
            uuid=body.get("uuid", ""),
            name=body.get("name", ""),
            cpu_cores=int(body.get("cpu_cores") or 0),
            ram=body.get("ram") or "",
            image_id=body.get("image_id") or "",
            status=VMStatus.parse(body.get("status")),
            hard_drive=int(body.get("hard_drive") or 0),
        )

    @property
    def is_running(self) -> bool:
        return self.status == VMStatus.RUNNING

    @property
    def is_stopped(self) -> bool:
        return self.status == VMStatus.STOPPED

    @property
    def is_suspended(self) -> bool:
        return self.status == VMStatus.SUSPENDED


@dataclass(frozen=True)
class ForwardedPort:
    """A port-forwarding rule already present on a network card."""

    guest_port: int
    host_port: int
    rule_name: str = ""
    protocol: str = "tcp"
    host_ip: str = ""


@dataclass(frozen=True)
class NetworkCard:
    index: int = 0
    mode: str = ""
    mac_address: str = ""
    port_forwarding_rules: List[ForwardedPort] = field(default_factory=list)


@dataclass(frozen=True)
class DescribeResponse:
    """Extended VM description (``anka describe``)."""

    uuid: str
    name: str
    cpu_cores: int = 0
    cpu_threads: int = 0
    ram: str = ""
    network_cards: List[NetworkCard] = field(default_factory=list)
    custom_variables: Dict[str, str] = field(default_factory=dict)
    display_controller: Optional[str] = None
    display_resolution: Optional[str] = None

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "DescribeResponse":
        cpu = body.get("cpu") or {}
        cards = []
        for card in body.get("network_cards") or []:
            rules = [
                ForwardedPort(
                    guest_port=int(rule.get("guest_port") or 0),
                    host_port=int(rule.get("host_port") or 0),
                    rule_name=rule.get("rule_name") or "",
                    protocol=rule.get("protocol") or "tcp",
                    host_ip=rule.get("host_ip") or "",
                )
                for rule in card.get("port_forwarding_rules") or []
            ]
            cards.append(
                NetworkCard(
                    index=int(card.get("index") or 0),
                    mode=card.get("mode") or "",
                    mac_address=card.get("mac_address") or "",
                    port_forwarding_rules=rules,
                )
            )

        display = body.get("display") or {}
        frame_buffers = display.get("frame_buffers") or [display.get("frame_buffer") or {}]
        frame_buffer = frame_buffers[0] if frame_buffers else {}
        resolution = None
        if frame_buffer.get("width") and frame_buffer.get("height"):
            resolution = f"{frame_buffer['width']}x{frame_buffer['height']}"

        return cls(
            uuid=body.get("uuid", ""),
            name=body.get("name", ""),
            cpu_cores=int(cpu.get("cores") or 0),
            cpu_threads=int(cpu.get("threads") or 0),
            ram=body.get("ram") or "",
            network_cards=cards,
            custom_variables={str(k).lower(): str(v) for k, v in (body.get("custom_variables") or {}).items()},
            display_controller=display.get("controller"),
            display_resolution=resolution,
        )

    @property
    def forwarded_host_ports(self) -> set:
        return {rule.host_port for card in self.network_cards for rule in card.port_forwarding_rules}


@dataclass(frozen=True)
class VersionResponse:
    product: str
    version: str
    build: str


@dataclass(frozen=True)
class LicenseResponse:
    license_type: str
    status: str = ""

    @property
    def is_develop(self) -> bool:
        return self.license_type == "com.veertu.anka.develop"


@dataclass(frozen=True)
class RegistryParams:
    """Connection parameters shared by every ``anka registry`` call."""

    registry_name: Optional[str] = None
    registry_url: Optional[str] = None
    node_cert_path: Optional[str] = None
    node_key_path: Optional[str] = None
    ca_root_path: Optional[str] = None
    is_insecure: bool = False
    host_arch: str = ""


@dataclass(frozen=True)
class RegistryPullParams:
    vm_id: str
    tag: Optional[str] = None
    local: bool = False
    shrink: bool = False


@dataclass(frozen=True)
class RegistryPushParams:
    vm_id: str
    tag: Optional[str] = None
    description: Optional[str] = None
    remote_vm: Optional[str] = None
    local: bool = False


@dataclass(frozen=True)
class RegistryTemplate:
    """One entry of ``anka registry list``."""

    id: str
    name: str
    latest: str = ""


@dataclass(frozen=True)
class RegistryRemote:
    host: str
    scheme: str = ""
    port: str = ""
    default: bool = False


@dataclass(frozen=True)
class RegistryRepos:
    remotes: Dict[str, RegistryRemote]
    default: Optional[str] = None
