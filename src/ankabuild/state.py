"""
Build state and the sequential step runner.

Steps share one ``BuildState`` instead of a string-keyed bag: each step reads
and writes the typed fields it needs. The runner executes steps in order,
stops on the first HALT or on cancellation, and then calls ``cleanup`` on
every step that ran, newest first.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from .client import AnkaClient
from .config import BuildConfig
from .exceptions import AnkaError, VMAlreadyExistsError, VMNotFoundError
from .ui import Ui
from .util import AnkaUtil

if TYPE_CHECKING:
    from .communicator import AnkaCommunicator

logger = logging.getLogger(__name__)


class StepAction(Enum):
    CONTINUE = "continue"
    HALT = "halt"


@dataclass
class BuildState:
    """Everything the steps of one build share."""

    config: BuildConfig
    ui: Ui
    client: AnkaClient
    util: AnkaUtil

    # Recorded as soon as it is decided so cleanup can always find it
    vm_name: Optional[str] = None
    source_vm_name: Optional[str] = None
    temp_dir: Optional[str] = None
    communicator: Optional["AnkaCommunicator"] = None
    generated_data: Dict[str, Any] = field(default_factory=dict)

    error: Optional[BaseException] = None
    failed_step: Optional[str] = None
    halted: bool = False
    cancelled: bool = False

    @property
    def interrupted(self) -> bool:
        return self.halted or self.cancelled


def step_error(state: BuildState, error: BaseException) -> StepAction:
    """Record ``error`` on the state, report it and halt."""
    state.error = error
    state.ui.error(str(error))
    return StepAction.HALT


class Step:
    """One unit of a build. ``cleanup`` runs whether or not ``run`` succeeded."""

    @property
    def name(self) -> str:
        return type(self).__name__

    def run(self, state: BuildState) -> StepAction:
        raise NotImplementedError

    def cleanup(self, state: BuildState) -> None:
        pass


def delete_vm_after_failure(state: BuildState, vm_name: Optional[str]) -> None:
    """
    Delete the VM a step created once the build halted or was cancelled.

    Nothing is deleted when the recorded error says the VM already existed
    (it is not ours) or was never found. Existence is checked again because
    the VM may have changed since the step recorded it.
    """
    if not vm_name or not state.interrupted:
        return

    if isinstance(state.error, (VMAlreadyExistsError, VMNotFoundError)):
        logger.info(f"Keeping {vm_name}: {type(state.error).__name__}")
        return

    try:
        if not state.client.exists(vm_name):
            logger.info(f"{vm_name} does not exist, nothing to delete")
            return
        state.ui.say(f"Deleting VM {vm_name}")
        state.client.delete(vm_name)
    except AnkaError as e:
        logger.error(f"Failed to delete {vm_name} during cleanup: {e}")
        state.ui.error(str(e))


class StepRunner:
    """Runs steps sequentially, honouring a cancel event between steps."""

    def __init__(self, steps: Sequence[Step], cancel_event: Optional[threading.Event] = None):
        self.steps = list(steps)
        self.cancel_event = cancel_event or threading.Event()

    def run(self, state: BuildState) -> BuildState:
        executed: List[Step] = []

        try:
            for step in self.steps:
                if self.cancel_event.is_set():
                    logger.warning(f"🛑 Build cancelled before {step.name}")
                    state.cancelled = True
                    break

                executed.append(step)
                logger.info(f"▶️  Running {step.name}")

                try:
                    action = step.run(state)
                except Exception as e:
                    logger.exception(f"Unexpected failure in {step.name}")
                    action = step_error(state, e)

                if action == StepAction.HALT:
                    logger.error(f"❌ {step.name} halted the build")
                    state.halted = True
                    state.failed_step = step.name
                    break

            # An interrupt during the last step still cancels the build
            if not state.interrupted and self.cancel_event.is_set():
                logger.warning("🛑 Build cancelled after the last step")
                state.cancelled = True
        finally:
            self._cleanup(executed, state)

        return state

    def _cleanup(self, executed: List[Step], state: BuildState) -> None:
        for step in reversed(executed):
            logger.debug(f"Cleaning up {step.name}")
            try:
                step.cleanup(state)
            except Exception as e:
                logger.error(f"Cleanup of {step.name} failed: {e}")
