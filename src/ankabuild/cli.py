"""
Command-line interface for anka VM builds.

    ankabuild build build.yaml            # Create or clone a VM
    ankabuild validate build.yaml         # Check a configuration
    ankabuild push my-vm --tag v1         # Push a VM to the registry
    ankabuild version                     # Show anka version and license
"""

import logging
import signal
import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ankabuild.builder import BUILDER_ID, Artifact, Builder
from ankabuild.client import AnkaClient
from ankabuild.config import BuildConfig, RegistryPushConfig, registry_params_from_dict
from ankabuild.exceptions import AnkaError
from ankabuild.post_processor import RegistryPushPostProcessor
from ankabuild.ui import ConsoleUi

# Initialize CLI app and console
app = typer.Typer(
    name="ankabuild",
    help="Build macOS VM templates with anka",
    add_completion=False
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


def _set_debug(debug: bool) -> None:
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_config(config_file: Optional[Path]) -> BuildConfig:
    if config_file is None:
        return BuildConfig.from_environment()
    if not config_file.exists():
        console.print(f"❌ Config file not found: {config_file}")
        raise typer.Exit(1)
    return BuildConfig.from_yaml(config_file)


@app.command("build")
def build(
    config_file: Optional[Path] = typer.Argument(None, help="Build configuration (YAML); ANKABUILD_* env otherwise"),
    force: bool = typer.Option(False, "--force", "-f", help="Delete existing VMs with the same name"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """Create or clone a VM and leave it stopped or suspended."""
    _set_debug(debug)
    config = _load_config(config_file)
    if force:
        config.force = True

    cancel_event = threading.Event()

    def _cancel(signum, frame) -> None:
        console.print("🛑 Interrupt received, cancelling after the current step...")
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, _cancel)
    try:
        artifact = Builder(config, ui=ConsoleUi(console)).run(cancel_event)
    except AnkaError as e:
        console.print(f"❌ Build failed: {e}")
        raise typer.Exit(1)
    finally:
        signal.signal(signal.SIGINT, previous)

    if artifact is None:
        console.print("⚠️  Build cancelled")
        raise typer.Exit(130)

    table = Table(title="Artifact")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("VM", artifact.vm_name)
    table.add_row("UUID", artifact.vm_id)
    for key, value in (artifact.state("generated_data") or {}).items():
        table.add_row(key, str(value))
    console.print(table)
    console.print("✅ Build complete")


@app.command("validate")
def validate(
    config_file: Optional[Path] = typer.Argument(None, help="Build configuration (YAML)"),
) -> None:
    """Validate a build configuration without touching any VM."""
    config = _load_config(config_file)

    try:
        config.validate()
    except AnkaError as e:
        console.print(f"❌ Configuration validation failed: {e}")
        raise typer.Exit(1)

    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Type", config.builder_type)
    table.add_row("Source", config.installer or config.source_vm_name or "")
    table.add_row("VM name", config.vm_name or "(generated)")
    table.add_row("Disk / RAM / vCPU", f"{config.disk_size or '-'} / {config.ram_size or '-'} / {config.vcpu_count or '-'}")
    table.add_row("Port forwarding rules", str(len(config.port_forwarding_rules)))
    table.add_row("Boot delay", config.boot_delay)
    console.print(table)
    console.print("✅ Configuration is valid")


@app.command("push")
def push(
    vm_name: str = typer.Argument(..., help="Local VM to push"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Push configuration (YAML)"),
    tag: Optional[str] = typer.Option(None, help="Registry tag"),
    description: Optional[str] = typer.Option(None, help="Tag description"),
    remote_vm: Optional[str] = typer.Option(None, "--remote-vm", help="Template name on the registry"),
    remote: Optional[str] = typer.Option(None, help="Registry remote name"),
    registry_path: Optional[str] = typer.Option(None, "--registry-path", help="Registry URL"),
    force: bool = typer.Option(False, "--force", "-f", help="Revert an existing template with the same name"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """Push a local VM to an Anka Registry."""
    _set_debug(debug)

    config = RegistryPushConfig.from_yaml(config_file) if config_file else RegistryPushConfig()
    config.tag = tag or config.tag
    config.description = description or config.description
    config.remote_vm = remote_vm or config.remote_vm
    config.force = force or config.force
    if remote or registry_path:
        config.registry = registry_params_from_dict({"remote": remote, "registry_path": registry_path})

    client = AnkaClient()
    try:
        processor = RegistryPushPostProcessor(config, client=client, ui=ConsoleUi(console))
        show = client.show(vm_name)
        processor.post_process(Artifact(vm_id=show.uuid, vm_name=show.name, builder_id=BUILDER_ID))
    except AnkaError as e:
        console.print(f"❌ Push failed: {e}")
        raise typer.Exit(1)

    console.print(f"✅ Pushed {vm_name} with tag {config.tag}")


@app.command("version")
def version() -> None:
    """Show the installed anka version and license."""
    client = AnkaClient()
    try:
        info = client.version()
        license_info = client.license()
    except AnkaError as e:
        console.print(f"❌ Failed to query anka: {e}")
        raise typer.Exit(1)

    console.print(f"{info.product} {info.version} ({info.build})")
    console.print(f"License: {license_info.license_type} {license_info.status}")


if __name__ == "__main__":
    app()
