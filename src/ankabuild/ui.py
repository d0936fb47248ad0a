"""User-facing output for builds."""

import logging
from typing import Optional

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger(__name__)


class Ui:
    """Where build steps report progress; subclasses decide how to render it."""

    def say(self, message: str) -> None:
        raise NotImplementedError

    def message(self, message: str) -> None:
        raise NotImplementedError

    def error(self, message: str) -> None:
        raise NotImplementedError


class ConsoleUi(Ui):
    """Ui backed by a rich Console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def say(self, message: str) -> None:
        logger.debug(message)
        self.console.print(f"==> {escape(message)}")

    def message(self, message: str) -> None:
        self.console.print(f"    {escape(message)}", highlight=False)

    def error(self, message: str) -> None:
        logger.debug(message)
        self.console.print(f"[bold red]==> {escape(message)}[/bold red]")
