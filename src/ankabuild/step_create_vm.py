"""Create a VM template from a macOS installer."""

import logging
from typing import Optional

from .convergence import converge_properties
from .exceptions import AnkaError
from .models import CreateParams
from .state import BuildState, Step, StepAction, delete_vm_after_failure, step_error
from .util import base_vm_name

logger = logging.getLogger(__name__)


class StepCreateVM(Step):
    """
    Build a VM from ``config.installer``.

    Without an explicit ``vm_name`` the name is derived from the installer's
    version metadata, so repeated builds of the same installer target the
    same VM. Sizes are handed to ``anka create`` directly; only properties
    are converged afterwards.
    """

    def __init__(self):
        self.vm_name: Optional[str] = None

    def run(self, state: BuildState) -> StepAction:
        config = state.config
        ui = state.ui
        client = state.client

        try:
            vm_name = config.vm_name or base_vm_name(config.installer, state.util)
        except (AnkaError, OSError, ValueError) as e:
            return step_error(state, e)

        self.vm_name = vm_name
        state.vm_name = vm_name

        try:
            if config.force and client.exists(vm_name):
                ui.say(f"Deleting existing virtual machine {vm_name}")
                client.delete(vm_name)

            ui.say(f"Creating a new VM Template ({vm_name}) from installer, this will take a while")
            uuid = client.create(
                CreateParams(
                    name=vm_name,
                    installer=config.installer,
                    disk_size=config.disk_size,
                    ram_size=config.ram_size,
                    vcpu_count=config.vcpu_count,
                ),
                progress=ui.message,
            )
            ui.say(f"VM {vm_name} was created ({uuid})")

            show = client.show(vm_name)
            converge_properties(client, ui, show.name, config)
        except AnkaError as e:
            return step_error(state, e)

        logger.info(f"✅ {vm_name} is ready")
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        logger.debug("Cleaning up create VM step")
        delete_vm_after_failure(state, self.vm_name)
