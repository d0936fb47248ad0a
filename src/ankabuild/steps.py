"""Supporting build steps around the create/clone core."""

import io
import logging
import shutil
import time
from typing import Optional

from .communicator import AnkaCommunicator
from .exceptions import AnkaError, ConfigurationError, GuestCommandError
from .runner import RunParams
from .state import BuildState, Step, StepAction, step_error
from .util import parse_duration

logger = logging.getLogger(__name__)


class StepTempDir(Step):
    """Temp directory shared with the VM; always removed on cleanup."""

    def __init__(self):
        self.temp_dir: Optional[str] = None

    def run(self, state: BuildState) -> StepAction:
        state.ui.say("Creating a temporary directory for sharing data...")

        try:
            self.temp_dir = state.util.config_tmp_dir()
        except OSError as e:
            return step_error(state, AnkaError(f"Error making temp dir: {e}"))

        state.temp_dir = self.temp_dir
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if self.temp_dir:
            logger.debug(f"Removing {self.temp_dir}")
            shutil.rmtree(self.temp_dir, ignore_errors=True)


class StepStartVM(Step):
    """Start the target VM, then wait ``boot_delay`` for the guest to come up."""

    def run(self, state: BuildState) -> StepAction:
        vm_name = state.vm_name

        try:
            delay = parse_duration(state.config.boot_delay)
            state.client.start(vm_name)
        except AnkaError as e:
            return step_error(state, e)

        if delay > 0:
            state.ui.say(f"Waiting for {state.config.boot_delay} for {vm_name} to boot")
            time.sleep(delay)

        return StepAction.CONTINUE


class StepSetHyperThreading(Step):
    """Turn hyperthreading on or off; a running VM is restarted afterwards."""

    def run(self, state: BuildState) -> StepAction:
        config = state.config
        client = state.client
        vm_name = state.vm_name

        if not config.enable_htt and not config.disable_htt:
            logger.debug("enable/disable htt not specified. moving on.")
            return StepAction.CONTINUE

        if config.enable_htt and config.disable_htt:
            return step_error(state, ConfigurationError("Conflicting setting enable_htt and disable_htt both true"))

        try:
            describe = client.describe(vm_name)
            if describe.cpu_threads > 0 and config.enable_htt:
                logger.info("Htt already on")
                return StepAction.CONTINUE
            if describe.cpu_threads == 0 and config.disable_htt:
                logger.info("Htt already off")
                return StepAction.CONTINUE

            show = client.show(vm_name)
            if not show.is_stopped:
                client.stop(vm_name, force=True)

            flag = "--htt" if config.enable_htt else "--no-htt"
            state.ui.say(f"Modifying VM {vm_name} hyperthreading ({flag})")
            client.modify(vm_name, "set", "cpu", flag)

            if show.is_running:
                client.start(vm_name)
        except AnkaError as e:
            return step_error(state, e)

        return StepAction.CONTINUE


class StepConnect(Step):
    """Attach a communicator for the provisioning phase."""

    def run(self, state: BuildState) -> StepAction:
        state.communicator = AnkaCommunicator(
            state.client, state.vm_name, state.temp_dir, use_anka_cp=state.config.use_anka_cp
        )
        logger.info(f"🔌 Connected to {state.vm_name}")
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        state.communicator = None


class StepSetGeneratedData(Step):
    """Expose VMName, OSVersion and DarwinVersion read from the guest."""

    DARWIN_VERSION_COMMAND = ["/usr/bin/uname", "-r"]
    OS_VERSION_COMMAND = ["/usr/bin/sw_vers", "-productVersion"]

    def _guest_output(self, state: BuildState, command) -> str:
        output = io.BytesIO()
        exit_code = state.client.run(RunParams(vm_name=state.vm_name, command=command, stdout=output))
        if exit_code != 0:
            raise GuestCommandError(" ".join(command), exit_code)
        return output.getvalue().decode("utf-8", errors="replace").strip()

    def run(self, state: BuildState) -> StepAction:
        logger.info("Exposing build contextual variables...")

        try:
            darwin_version = self._guest_output(state, self.DARWIN_VERSION_COMMAND)
            os_version = self._guest_output(state, self.OS_VERSION_COMMAND)
        except AnkaError as e:
            return step_error(state, e)

        state.generated_data.update(
            {
                "VMName": state.vm_name,
                "OSVersion": os_version,
                "DarwinVersion": darwin_version,
            }
        )
        return StepAction.CONTINUE
