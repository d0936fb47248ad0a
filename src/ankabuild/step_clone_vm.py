"""Clone a new VM from a local or registry-hosted source VM."""

import logging
from typing import Optional

from .convergence import converge_properties, converge_resources
from .exceptions import AnkaError
from .models import RegistryPullParams
from .state import BuildState, Step, StepAction, delete_vm_after_failure, step_error

logger = logging.getLogger(__name__)

NAME_SUFFIX_LENGTH = 10


class StepCloneVM(Step):
    """Clone ``config.source_vm_name`` and converge the clone to the configuration."""

    def __init__(self):
        self.vm_name: Optional[str] = None

    def run(self, state: BuildState) -> StepAction:
        config = state.config
        ui = state.ui
        client = state.client
        source = config.source_vm_name

        self.vm_name = config.vm_name or f"{source}-{state.util.rand_seq(NAME_SUFFIX_LENGTH)}"
        state.vm_name = self.vm_name
        state.source_vm_name = source

        try:
            if config.force and client.exists(self.vm_name):
                ui.say(f"Deleting existing virtual machine {self.vm_name}")
                client.delete(self.vm_name)

            do_pull = config.always_fetch
            if not do_pull:
                logger.info(f"Searching for {source} locally...")
                if not client.exists(source):
                    logger.info(f"Could not find {source} locally, looking in anka registry...")
                    do_pull = True

            if do_pull:
                ui.say(f"Pulling source VM {source} with {config.source_vm_tag} tag from Anka Registry")
                client.registry_pull(config.registry, RegistryPullParams(vm_id=source, tag=config.source_vm_tag))

            source_show = client.show(source)
            if source_show.is_running:
                ui.say(f"Suspending VM {source}")
                client.suspend(source)

            ui.say(f"Cloning source VM {source_show.name} into a new virtual machine: {self.vm_name}")
            client.clone(self.vm_name, source_show.uuid)

            cloned_show = client.show(self.vm_name)
            converge_resources(client, ui, cloned_show, config)
            converge_properties(client, ui, cloned_show.name, config)

            if config.update_addons:
                ui.say(f"Updating guest addons for {self.vm_name}")
                client.update_addons(self.vm_name)
        except AnkaError as e:
            return step_error(state, e)

        logger.info(f"✅ Cloned {source} into {self.vm_name}")
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        logger.debug("Cleaning up clone VM step")
        delete_vm_after_failure(state, self.vm_name)
