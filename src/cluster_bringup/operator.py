"""Operator adapters: the sole manual-intervention point of a run."""

import asyncio
import logging
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

logger = logging.getLogger(__name__)


class ConsoleOperator:
    """Prompts a human at the terminal.

    Prompts from concurrently running stages are shown one at a time.
    """

    def __init__(self, console: Optional[Console] = None):
        self._console = console or Console()
        self._lock = asyncio.Lock()

    async def prompt_and_wait(self, instructions: str) -> None:
        async with self._lock:
            logger.info("Waiting for operator acknowledgement")
            self._console.print(Panel.fit(
                f"[bold yellow]Manual Step Required[/bold yellow]\n\n{instructions}",
                border_style="yellow",
            ))
            while not await asyncio.to_thread(
                Confirm.ask, "[bold]Done?[/bold]", console=self._console, default=False
            ):
                self._console.print("[dim]Waiting. Answer yes once the step is complete.[/dim]")
            logger.info("Operator acknowledged manual step")

    async def reveal(self, label: str, value: str) -> None:
        # Printed to the console only; never passed to logging.
        async with self._lock:
            self._console.print(Panel.fit(
                f"[bold]{label}[/bold]\n\n{value}",
                title="[bold green]Credential[/bold green]",
                border_style="green",
            ))


class AutoAcknowledgeOperator:
    """Acknowledges every prompt immediately. Used for unattended runs (--yes)."""

    def __init__(self, console: Optional[Console] = None):
        self._console = console
        self.prompts: list[str] = []
        self.revealed: list[str] = []

    async def prompt_and_wait(self, instructions: str) -> None:
        self.prompts.append(instructions)
        logger.info("Manual step auto-acknowledged")
        if self._console is not None:
            self._console.print(f"[yellow]Auto-acknowledged manual step:[/yellow] {instructions}")

    async def reveal(self, label: str, value: str) -> None:
        self.revealed.append(label)
        if self._console is not None:
            self._console.print(f"[green]{label}:[/green] {value}")
