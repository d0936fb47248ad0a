"""
Drive a VM's resources and properties to the configured values.

Every mutation is current-value aware: unset or equal values cause no anka
calls at all. Each change force-stops the VM first because anka refuses most
``modify`` operations against a running VM. A failing change raises
immediately and earlier changes are left in place.
"""

import logging
from typing import Optional, Set

from .client import AnkaClient
from .config import BuildConfig
from .exceptions import ConfigurationError, DiskShrinkError
from .models import ShowResponse
from .runner import RunParams
from .ui import Ui
from .util import convert_disk_size_to_bytes

logger = logging.getLogger(__name__)

RESIZE_CONTAINER_COMMAND = ["diskutil", "apfs", "resizeContainer", "disk1", "0"]


def _parse_vcpu_count(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"vcpu_count must be an integer, got {value!r}") from e


def converge_resources(client: AnkaClient, ui: Ui, show: ShowResponse, config: BuildConfig) -> None:
    """
    Converge disk, RAM and vCPU count independently.

    All inputs are validated before the VM is touched, so a shrink request or
    a malformed size never causes a stop or modify.

    Raises:
        DiskShrinkError: If the requested disk is smaller than the current one
        ConfigurationError: If a size or count cannot be parsed
    """
    vm_name = show.name

    disk_bytes = None
    if config.disk_size:
        disk_bytes = convert_disk_size_to_bytes(config.disk_size)
        if disk_bytes < show.hard_drive:
            raise DiskShrinkError(vm_name, show.hard_drive, disk_bytes)

    vcpu_count = _parse_vcpu_count(config.vcpu_count)

    if disk_bytes is not None and disk_bytes > show.hard_drive:
        client.stop(vm_name, force=True)
        ui.say(f"Modifying VM {vm_name} disk size to {config.disk_size}")
        client.modify(vm_name, "set", "hard-drive", "-s", config.disk_size)

        # The virtual disk grew; the guest's APFS container has to claim the space
        exit_code = client.run(RunParams(vm_name=vm_name, command=RESIZE_CONTAINER_COMMAND))
        if exit_code != 0:
            logger.warning(f"⚠️  Resizing the APFS container in {vm_name} exited with {exit_code}")
            ui.error(f"Failed to resize the disk container in {vm_name} (exit {exit_code})")

        client.stop(vm_name, force=True)
    elif disk_bytes is not None:
        logger.debug(f"{vm_name} disk already {config.disk_size}")

    if config.ram_size and config.ram_size.upper() != show.ram.upper():
        client.stop(vm_name, force=True)
        ui.say(f"Modifying VM {vm_name} RAM to {config.ram_size}")
        client.modify(vm_name, "set", "ram", config.ram_size)

    if vcpu_count is not None and vcpu_count != show.cpu_cores:
        client.stop(vm_name, force=True)
        ui.say(f"Modifying VM {vm_name} VCPU core count to {vcpu_count}")
        client.modify(vm_name, "set", "cpu", "-c", str(vcpu_count))


def _has_properties(config: BuildConfig) -> bool:
    return bool(
        config.port_forwarding_rules or config.hw_uuid or config.display_controller or config.display_resolution
    )


def converge_properties(client: AnkaClient, ui: Ui, vm_name: str, config: BuildConfig) -> None:
    """
    Apply port forwarding, hardware UUID and display settings.

    A rule whose host port is already bound on any network card is reported
    and skipped unless ``config.force`` is set. Host port 0 asks anka to pick
    a free port and never collides.
    """
    if not _has_properties(config):
        logger.debug(f"No properties configured for {vm_name}")
        return

    describe = client.describe(vm_name)
    bound_ports: Set[int] = describe.forwarded_host_ports

    for rule in config.port_forwarding_rules:
        ui.say(
            f"Ensuring {vm_name} port-forwarding (Guest Port: {rule.guest_port}, "
            f"Host Port: {rule.host_port}, Rule Name: {rule.rule_name})"
        )

        if rule.host_port and rule.host_port in bound_ports:
            if not config.force:
                ui.error(f"Found an existing host port rule ({rule.host_port})! Skipping without setting...")
                continue
            logger.warning(f"⚠️  Host port {rule.host_port} already forwarded on {vm_name}, forcing rule")

        client.stop(vm_name, force=True)
        client.modify(
            vm_name,
            "add",
            "port-forwarding",
            "--host-port",
            str(rule.host_port),
            "--guest-port",
            str(rule.guest_port),
            rule.rule_name,
        )
        if rule.host_port:
            bound_ports.add(rule.host_port)

    if config.hw_uuid and describe.custom_variables.get("hw.uuid", "").lower() != config.hw_uuid.lower():
        client.stop(vm_name, force=True)
        ui.say(f"Modifying VM custom-variable hw.UUID to {config.hw_uuid}")
        client.modify(vm_name, "set", "custom-variable", "hw.UUID", config.hw_uuid)

    if config.display_controller and describe.display_controller != config.display_controller:
        client.stop(vm_name, force=True)
        ui.say(f"Modifying VM display controller to {config.display_controller}")
        client.modify(vm_name, "set", "display", "-c", config.display_controller)

    if config.display_resolution and describe.display_resolution != config.display_resolution:
        client.stop(vm_name, force=True)
        ui.say(f"Modifying VM display resolution to {config.display_resolution}")
        client.modify(vm_name, "set", "display", "-r", config.display_resolution)
