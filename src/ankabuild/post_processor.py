"""Push a built VM to an Anka Registry."""

import logging
from typing import Optional

from .builder import BUILDER_ID, Artifact
from .client import AnkaClient
from .config import RegistryPushConfig
from .exceptions import AnkaError
from .models import RegistryPushParams
from .ui import ConsoleUi, Ui

logger = logging.getLogger(__name__)


class RegistryPushPostProcessor:
    """
    Push an artifact as a registry template.

    With ``force`` an existing template of the same name is reverted first,
    since the registry rejects a push over an existing tag.
    """

    def __init__(self, config: RegistryPushConfig, client: Optional[AnkaClient] = None, ui: Optional[Ui] = None):
        config.validate()
        self.config = config
        self.client = client or AnkaClient()
        self.ui = ui or ConsoleUi()

    def post_process(self, artifact: Artifact) -> Artifact:
        if artifact.builder_id != BUILDER_ID:
            raise AnkaError(
                f"unknown artifact type: {artifact.builder_id}\ncan only import from anka artifacts"
            )

        config = self.config
        remote_vm = config.remote_vm or artifact.vm_name

        if config.force:
            self._revert_existing(remote_vm)

        self.ui.say(f"Pushing template to Anka Registry as {remote_vm} with tag {config.tag}")
        self.client.registry_push(
            config.registry,
            RegistryPushParams(
                vm_id=artifact.vm_id,
                tag=config.tag,
                description=config.description,
                remote_vm=remote_vm,
                local=config.local,
            ),
        )
        return artifact

    def _revert_existing(self, remote_vm: str) -> None:
        templates = self.client.registry_list(self.config.registry)
        match = next((t for t in templates if t.name == remote_vm), None)
        if match is None:
            logger.info(f"No template named {remote_vm} on registry")
            return

        self.ui.say(f"Found existing template {match.id} on registry that matches name '{remote_vm}'")
        self.client.registry_revert(self.config.registry.registry_url or "", match.id)
        self.ui.say(f"Reverted latest tag for template '{match.id}' on registry")
