"""
Typed wrapper around the anka CLI.

Every public method builds one argument list, hands it to the CommandRunner
and maps the envelope body onto a model from ``ankabuild.models``. Steps and
the communicator never compose raw command lines themselves.
"""

import logging
import platform
from typing import Any, List, Optional

import requests

from .exceptions import RegistryError, ToolError, VMNotFoundError
from .models import (
    CreateParams,
    DescribeResponse,
    LicenseResponse,
    RegistryParams,
    RegistryPullParams,
    RegistryPushParams,
    RegistryRemote,
    RegistryRepos,
    RegistryTemplate,
    ShowResponse,
    VersionResponse,
)
from .protocol import Envelope, parse_envelope
from .runner import ANKA_TOOL, CommandRunner, GuestRunner, ProgressSink, RunParams

logger = logging.getLogger(__name__)

REGISTRY_TIMEOUT = 60


def _body(envelope: Envelope, what: str) -> Any:
    if envelope.body is None:
        raise ToolError(f"anka {what} returned an empty body", exception_type="EmptyBody")
    return envelope.body


class AnkaClient:
    """One method per anka operation."""

    def __init__(self, runner: Optional[CommandRunner] = None, tool: str = ANKA_TOOL):
        self.runner = runner or CommandRunner(tool)
        self.tool = self.runner.tool

    # === VM LIFECYCLE ===

    def version(self) -> VersionResponse:
        body = _body(self.runner.run("version"), "version")
        return VersionResponse(
            product=body.get("product", ""), version=body.get("version", ""), build=body.get("build", "")
        )

    def license(self) -> LicenseResponse:
        body = _body(self.runner.run("license", "show"), "license show")
        return LicenseResponse(license_type=body.get("license_type", ""), status=body.get("status", ""))

    def create(self, params: CreateParams, progress: Optional[ProgressSink] = None) -> str:
        """
        Create a VM from an installer, streaming progress when a sink is given.

        Returns:
            UUID of the new VM
        """
        args = ["create"]
        if params.installer:
            args.extend(["--app", params.installer])
        if params.ram_size:
            args.extend(["--ram-size", params.ram_size])
        if params.vcpu_count:
            args.extend(["--cpu-count", str(params.vcpu_count)])
        if params.disk_size:
            args.extend(["--disk-size", params.disk_size])
        args.append(params.name)

        if progress is None:
            envelope = self.runner.run(*args)
        else:
            envelope = self.runner.run_streamed(*args, progress=progress)

        body = _body(envelope, "create")
        if not isinstance(body, dict) or "uuid" not in body:
            raise ToolError(f"Failed parsing create output: {body!r}", exception_type="BadBody")
        return body["uuid"]

    def clone(self, vm_name: str, source_uuid: str) -> None:
        """Raises VMAlreadyExistsError if ``vm_name`` is taken."""
        self.runner.run("clone", source_uuid, vm_name)

    def show(self, vm_name: str) -> ShowResponse:
        """Raises VMNotFoundError if the VM does not exist."""
        return ShowResponse.from_body(_body(self.runner.run("show", vm_name), "show"))

    def describe(self, vm_name: str) -> DescribeResponse:
        """Raises VMNotFoundError if the VM does not exist."""
        return DescribeResponse.from_body(_body(self.runner.run("describe", vm_name), "describe"))

    def exists(self, vm_name: str) -> bool:
        try:
            self.show(vm_name)
        except VMNotFoundError:
            return False
        return True

    def modify(self, vm_name: str, command: str, prop: str, *flags: str) -> None:
        """Generic property mutator; any non-OK result is raised with anka's message."""
        try:
            self.runner.run("modify", vm_name, command, prop, *flags)
        except ToolError as e:
            logger.error(f"Error executing modify command: {e.exception_type} {e.message}")
            raise

    def start(self, vm_name: str) -> None:
        self.runner.run("start", vm_name)

    def update_addons(self, vm_name: str) -> None:
        self.runner.run("start", "--update-addons", vm_name)

    def suspend(self, vm_name: str) -> None:
        self.runner.run("suspend", vm_name)

    def stop(self, vm_name: str, force: bool = False) -> None:
        """
        Stop a VM.

        anka cannot gracefully stop a suspended VM, so a graceful stop of a
        suspended VM first resumes it and waits for its network and clock.
        """
        if not force and self.show(vm_name).is_suspended:
            self.resume_for_stop(vm_name)

        args = ["stop"]
        if force:
            args.append("--force")
        args.append(vm_name)
        self.runner.run(*args)

    def resume_for_stop(self, vm_name: str) -> None:
        logger.info(f"⏯️  {vm_name} is suspended, resuming it before a graceful stop")
        self.start(vm_name)
        self.run(RunParams(vm_name=vm_name, command=["true"], wait_network=True, wait_time=True))

    def delete(self, vm_name: str) -> None:
        self.runner.run("delete", "--yes", vm_name)

    def copy(self, src: str, dst: str) -> None:
        """Copy files between host and guest; guest paths are ``<vm>:<path>``."""
        self.runner.run("cp", "-af", src, dst)

    def run(self, params: RunParams) -> int:
        """Execute a command inside a VM and return its exit code."""
        runner = GuestRunner(params, tool=self.tool)
        runner.start()
        logger.debug("Waiting for command to run")
        return runner.wait()

    # === REGISTRY ===

    def _registry_args(self, params: RegistryParams, *args: str) -> List[str]:
        cmd = ["registry"]
        arch = params.host_arch or platform.machine()

        if arch == "arm64":
            remote = params.registry_name or params.registry_url
            if remote:
                cmd.extend(["--remote", remote])
        else:
            if params.registry_name:
                cmd.extend(["--remote", params.registry_name])
            if params.registry_url:
                cmd.extend(["--registry-path", params.registry_url])

        if params.node_cert_path:
            cmd.extend(["--cert", params.node_cert_path])
        if params.node_key_path:
            cmd.extend(["--key", params.node_key_path])
        if params.ca_root_path:
            cmd.extend(["--cacert", params.ca_root_path])
        if params.is_insecure:
            cmd.append("--insecure")

        cmd.extend(args)
        return cmd

    def registry_list(self, params: RegistryParams) -> List[RegistryTemplate]:
        body = self.runner.run(*self._registry_args(params, "list")).body or []
        return [
            RegistryTemplate(id=item.get("id", ""), name=item.get("name", ""), latest=item.get("latest", ""))
            for item in body
        ]

    def registry_list_repos(self) -> RegistryRepos:
        body = self.runner.run(*self._registry_args(RegistryParams(), "list-repos")).body or {}
        remotes = {
            name: RegistryRemote(
                host=remote.get("host", ""),
                scheme=remote.get("scheme", ""),
                port=str(remote.get("port", "")),
                default=bool(remote.get("default")),
            )
            for name, remote in body.items()
        }
        default = next((name for name, remote in remotes.items() if remote.default), None)
        return RegistryRepos(remotes=remotes, default=default)

    def registry_pull(self, params: RegistryParams, pull: RegistryPullParams) -> None:
        args = ["pull"]
        if pull.tag:
            args.extend(["--tag", pull.tag])
        if pull.local:
            args.append("--local")
            if pull.shrink:
                args.append("--shrink")
        args.append(pull.vm_id)
        self.runner.run(*self._registry_args(params, *args))

    def registry_push(self, params: RegistryParams, push: RegistryPushParams) -> None:
        args = ["push"]
        if push.tag:
            args.extend(["--tag", push.tag])
        if push.description:
            args.extend(["--description", push.description])
        if push.remote_vm:
            args.extend(["--remote-vm", push.remote_vm])
        if push.local:
            args.append("--local")
        args.append(push.vm_id)
        self.runner.run(*self._registry_args(params, *args))

    def registry_revert(self, url: str, template_id: str) -> None:
        """Revert the latest tag of a template so the same tag can be pushed again."""
        if not url:
            raise RegistryError("registry_path is required to revert a template")

        endpoint = f"{url.rstrip('/')}/registry/revert"
        logger.info(f"Reverting template {template_id} on {url}")

        try:
            response = requests.delete(endpoint, params={"id": template_id}, timeout=REGISTRY_TIMEOUT)
        except requests.RequestException as e:
            raise RegistryError(f"failed to revert VM on registry: {e}") from e

        if response.status_code != 200:
            raise RegistryError(f"unsupported http response code: {response.status_code}")

        envelope = parse_envelope(response.content)
        if not envelope.ok:
            raise RegistryError(f"failed to revert VM on registry: {envelope.message}")
