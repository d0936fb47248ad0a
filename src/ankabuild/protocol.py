"""
Machine readable output of the anka CLI.

With ``--machine-readable`` anka prints free-form progress lines followed by a
single JSON object that is flushed without a trailing newline::

    Installing macOS...
    {"status": "OK", "body": {"uuid": "..."}, "message": ""}

Every newline-terminated chunk is progress text; the last unterminated chunk
at end-of-stream is the structured result.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterable, Iterator, Optional, Union

from .exceptions import ProtocolError, ToolError, classify_tool_error

logger = logging.getLogger(__name__)

STATUS_OK = "OK"


@dataclass(frozen=True)
class Progress:
    """A plain progress line."""

    text: str


@dataclass(frozen=True)
class Result:
    """The terminal chunk carrying the JSON envelope."""

    payload: bytes


OutputEvent = Union[Progress, Result]


@dataclass(frozen=True)
class Envelope:
    """Parsed result of one anka invocation."""

    status: str
    body: Any = None
    message: str = ""
    code: int = 0
    exception_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def get_error(self) -> Optional[ToolError]:
        """Return the classified error for a non-OK envelope, None otherwise."""
        if self.ok:
            return None
        return classify_tool_error(self.message or self.status, self.code, self.exception_type)


def _drop_cr(data: bytes) -> bytes:
    if data.endswith(b"\r"):
        return data[:-1]
    return data


def scan_output(stream: BinaryIO) -> Iterator[OutputEvent]:
    """Yield Progress events for terminated lines and a Result for the trailing chunk."""
    for chunk in iter(stream.readline, b""):
        if chunk.endswith(b"\n"):
            yield Progress(_drop_cr(chunk[:-1]).decode("utf-8", errors="replace"))
        else:
            yield Result(_drop_cr(chunk))


def parse_envelope(payload: bytes) -> Envelope:
    """
    Decode the terminal JSON chunk.

    Raises:
        ProtocolError: If the payload is not a JSON object
    """
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise ProtocolError(f"Failed parsing machine readable output {payload!r}: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Machine readable output is not an object: {payload!r}")

    try:
        code = int(data.get("code") or 0)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid code in machine readable output {payload!r}: {e}") from e

    return Envelope(
        status=data.get("status") or "",
        body=data.get("body"),
        message=data.get("message") or "",
        code=code,
        exception_type=data.get("exception_type"),
    )


def read_envelope(events: Iterable[OutputEvent]) -> Envelope:
    """Drain an event sequence, logging progress, and parse its Result."""
    payload = None
    for event in events:
        if isinstance(event, Result):
            payload = event.payload
        else:
            logger.debug(event.text)

    if payload is None:
        raise ProtocolError("missing machine readable output")

    logger.debug(f"Response JSON: {payload!r}")
    return parse_envelope(payload)
