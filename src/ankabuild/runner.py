"""
Process layer for the anka CLI.

Two kinds of invocations go through here:

* host subcommands (``create``, ``show``, ``modify``...) that end with a machine
  readable envelope, either buffered or with progress streamed to the caller;
* ``anka run``, which executes a command inside a VM and relays the guest's own
  stdin/stdout/stderr without any envelope.
"""

import io
import logging
import os
import queue
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Sequence

from .exceptions import ProtocolError, TransportError
from .protocol import Envelope, OutputEvent, Progress, Result, parse_envelope, read_envelope, scan_output

logger = logging.getLogger(__name__)

ANKA_TOOL = "anka"

# Exit code reported when anka lost the connection to the guest instead of
# returning the guest command's own status.
DISCONNECTED_EXIT_CODE = 2300218
DISCONNECTED_MARKER = b"disconnected"

PROGRESS_QUEUE_SIZE = 256

_DONE = object()

ProgressSink = Callable[[str], None]


def tool_environment() -> Dict[str, str]:
    """Host variables forwarded to anka: everything ANKA_* plus PATH."""
    return {key: value for key, value in os.environ.items() if key.startswith("ANKA_") or key.startswith("PATH")}


def _progress_lines(stream: BinaryIO) -> Iterator[OutputEvent]:
    for line in iter(stream.readline, b""):
        yield Progress(line.rstrip(b"\r\n").decode("utf-8", errors="replace"))


def _pump(events: Iterator[OutputEvent], sink: "queue.Queue[object]") -> None:
    try:
        for event in events:
            sink.put(event)
    finally:
        sink.put(_DONE)


class CommandRunner:
    """Runs anka subcommands and returns their machine readable envelope."""

    def __init__(self, tool: str = ANKA_TOOL):
        self.tool = tool

    def _command(self, args: Sequence[str], debug: bool = False) -> List[str]:
        cmd = [self.tool, "--machine-readable"]
        if debug:
            cmd.append("--debug")
        return cmd + list(args)

    def _checked(self, envelope: Envelope) -> Envelope:
        error = envelope.get_error()
        if error is not None:
            logger.error(f"anka returned {envelope.status} (code {envelope.code}): {envelope.message}")
            raise error
        return envelope

    def run(self, *args: str) -> Envelope:
        """
        Run a subcommand to completion and parse its envelope.

        Raises:
            TransportError: If anka cannot be executed or printed no envelope
            ToolError: If the envelope status is not OK
        """
        cmd = self._command(args)
        logger.info(f"Executing {' '.join(cmd)}")

        try:
            result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, env=tool_environment())
        except OSError as e:
            raise TransportError(f"Failed to execute {self.tool}: {e}") from e

        try:
            envelope = read_envelope(scan_output(io.BytesIO(result.stdout)))
        except ProtocolError as e:
            if result.returncode != 0:
                raise TransportError(f"{self.tool} exited with {result.returncode}: {e}") from e
            raise

        return self._checked(envelope)

    def run_streamed(self, *args: str, progress: ProgressSink) -> Envelope:
        """
        Run a subcommand with --debug, forwarding every progress line to ``progress``.

        stdout and stderr are read by background threads into a bounded queue
        that this thread drains, so the sink runs on the caller's thread. The
        sink is never closed here; several invocations may share it.
        """
        cmd = self._command(args, debug=True)
        logger.info(f"Executing {' '.join(cmd)}")

        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, env=tool_environment())
        except OSError as e:
            raise TransportError(f"Failed to execute {self.tool}: {e}") from e

        events: "queue.Queue[object]" = queue.Queue(maxsize=PROGRESS_QUEUE_SIZE)
        readers = [
            threading.Thread(target=_pump, args=(scan_output(proc.stdout), events), daemon=True),
            threading.Thread(target=_pump, args=(_progress_lines(proc.stderr), events), daemon=True),
        ]
        for reader in readers:
            reader.start()

        payload = None
        finished = 0
        try:
            while finished < len(readers):
                event = events.get()
                if event is _DONE:
                    finished += 1
                elif isinstance(event, Result):
                    payload = event.payload
                elif isinstance(event, Progress):
                    logger.debug(event.text)
                    progress(event.text)
        finally:
            if finished < len(readers):
                logger.warning(f"Aborting {self.tool} (pid {proc.pid})")
                if proc.poll() is None:
                    proc.kill()
                # Readers may be blocked on the full queue; drain until both finish.
                while finished < len(readers):
                    if events.get() is _DONE:
                        finished += 1
            for reader in readers:
                reader.join()
            returncode = proc.wait()

        if payload is None:
            raise TransportError(f"{self.tool} exited with {returncode}: missing machine readable output")

        return self._checked(parse_envelope(payload))


@dataclass
class RunParams:
    """Parameters for executing a command inside a VM."""

    vm_name: str
    command: List[str]
    volume: Optional[str] = None
    user: Optional[str] = None
    wait_network: bool = False
    wait_time: bool = False
    debug: bool = False
    stdin: Optional[BinaryIO] = field(default=None, compare=False)
    stdout: Optional[BinaryIO] = field(default=None, compare=False)
    stderr: Optional[BinaryIO] = field(default=None, compare=False)


class GuestRunner:
    """Relays a guest command's streams for the lifetime of ``anka run``."""

    def __init__(self, params: RunParams, tool: str = ANKA_TOOL):
        self.params = params
        self.tool = tool
        self.disconnected = False
        self._proc: Optional[subprocess.Popen] = None
        self._threads: List[threading.Thread] = []
        self._started = 0.0

    def command(self) -> List[str]:
        params = self.params
        cmd = [self.tool]
        if params.debug:
            cmd.append("--debug")
        cmd.append("run")
        if params.volume:
            cmd.extend(["--volume", params.volume])
        if params.user:
            cmd.extend(["--user", params.user])
        if params.wait_network:
            cmd.append("--wait-network")
        if params.wait_time:
            cmd.append("--wait-time")
        cmd.append(params.vm_name)
        cmd.extend(params.command)
        return cmd

    def start(self) -> None:
        cmd = self.command()
        logger.info(f"Starting command: {' '.join(cmd)}")

        self._started = time.monotonic()
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE if self.params.stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=tool_environment(),
            )
        except OSError as e:
            raise TransportError(f"Failed to execute {self.tool}: {e}") from e

        logger.info(f"Spawned process pid {self._proc.pid}")

        self._threads = [
            threading.Thread(target=self._relay, args=(self._proc.stdout, self.params.stdout, "stdout"), daemon=True),
            threading.Thread(target=self._relay, args=(self._proc.stderr, self.params.stderr, "stderr"), daemon=True),
        ]
        if self.params.stdin is not None:
            self._threads.append(threading.Thread(target=self._feed_stdin, daemon=True))

        for thread in self._threads:
            thread.start()

    def _relay(self, source: BinaryIO, sink: Optional[BinaryIO], name: str) -> None:
        for line in iter(source.readline, b""):
            if name == "stderr" and DISCONNECTED_MARKER in line.lower():
                self.disconnected = True
            if sink is None:
                logger.info(f"[{name}] {line.rstrip().decode('utf-8', errors='replace')}")
            else:
                sink.write(line)
                sink.flush()
        source.close()
        logger.debug(f"Finished reading {name}")

    def _feed_stdin(self) -> None:
        assert self._proc is not None and self._proc.stdin is not None
        try:
            shutil.copyfileobj(self.params.stdin, self._proc.stdin)
        except BrokenPipeError:
            logger.debug("Guest command closed stdin early")
        finally:
            try:
                self._proc.stdin.close()
            except BrokenPipeError:
                pass

    def wait(self) -> int:
        """Wait for the streams and the process; return the guest exit code."""
        if self._proc is None:
            raise TransportError("Guest command was never started")

        for thread in self._threads:
            thread.join()
        returncode = self._proc.wait()

        logger.info(f"Command finished in {time.monotonic() - self._started:.1f}s")
        if returncode != 0 and self.disconnected:
            logger.warning(f"Lost connection to {self.params.vm_name} (exit {returncode})")
            return DISCONNECTED_EXIT_CODE

        if returncode != 0:
            logger.info(f"Command exited with {returncode}")
        return returncode
