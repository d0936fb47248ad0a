"""
Builder: runs the provisioning steps for one VM and produces an Artifact.

Usage:
    config = BuildConfig.from_yaml("build.yaml")
    artifact = Builder(config).run()
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .client import AnkaClient
from .config import BUILDER_CLONE, BUILDER_CREATE, BuildConfig
from .exceptions import BuildError, ConfigurationError
from .state import BuildState, Step, StepRunner
from .step_clone_vm import StepCloneVM
from .step_create_vm import StepCreateVM
from .steps import StepConnect, StepSetGeneratedData, StepSetHyperThreading, StepStartVM, StepTempDir
from .ui import ConsoleUi, Ui
from .util import AnkaUtil

logger = logging.getLogger(__name__)

BUILDER_ID = "ankabuild.veertu-anka"


@dataclass
class Artifact:
    """A finished anka VM."""

    vm_id: str
    vm_name: str
    state_data: Dict[str, Any] = field(default_factory=dict)
    builder_id: str = BUILDER_ID

    def state(self, name: str) -> Any:
        return self.state_data.get(name)

    def __str__(self) -> str:
        return self.vm_name


class Builder:
    def __init__(
        self,
        config: BuildConfig,
        client: Optional[AnkaClient] = None,
        util: Optional[AnkaUtil] = None,
        ui: Optional[Ui] = None,
    ):
        self.config = config
        self.client = client or AnkaClient()
        self.util = util or AnkaUtil()
        self.ui = ui or ConsoleUi()

    def steps(self) -> List[Step]:
        if self.config.builder_type == BUILDER_CREATE:
            vm_step: Step = StepCreateVM()
        elif self.config.builder_type == BUILDER_CLONE:
            vm_step = StepCloneVM()
        else:
            raise ConfigurationError("wrong type for builder. must be of type vm-clone or vm-create")

        return [
            StepTempDir(),
            vm_step,
            StepStartVM(),
            StepSetHyperThreading(),
            StepConnect(),
            StepSetGeneratedData(),
        ]

    def run(self, cancel_event: Optional[threading.Event] = None) -> Optional[Artifact]:
        """
        Run the build.

        Returns:
            The Artifact, or None if the build was cancelled

        Raises:
            ConfigurationError: If the configuration is invalid
            BuildError: If a step halted the build
        """
        self.config.validate(self.util)

        state = BuildState(config=self.config, ui=self.ui, client=self.client, util=self.util)
        StepRunner(self.steps(), cancel_event).run(state)

        if state.error is not None:
            raise BuildError(state.failed_step or "build", state.error)

        if state.cancelled:
            logger.warning("🛑 Build cancelled")
            return None

        describe = self.client.describe(state.vm_name)
        license_info = self.client.license()

        stop_vm = self.config.stop_vm
        if license_info.is_develop:
            logger.info("developer license present, can only stop vms")
            stop_vm = True

        if stop_vm:
            self.ui.say(f"Stopping VM {describe.name}")
            self.client.stop(describe.name)
        else:
            self.ui.say(f"Suspending VM {describe.name}")
            self.client.suspend(describe.name)

        logger.info(f"🎉 Build of {describe.name} ({describe.uuid}) complete")
        return Artifact(
            vm_id=describe.uuid,
            vm_name=describe.name,
            state_data={"generated_data": dict(state.generated_data)},
        )
