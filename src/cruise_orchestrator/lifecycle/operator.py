"""Human decision point for the interactive recovery strategy."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from cruise_orchestrator.lifecycle.permissions import CannotFix, Widen

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cruise_orchestrator.lifecycle.permissions import PermissionDenial, PermissionFix


@dataclass(frozen=True, slots=True)
class Abort:
    reason: str = "aborted by operator"


OperatorDecision = Widen | Abort


class Operator(Protocol):
    async def decide(
        self,
        denials: Sequence[PermissionDenial],
        proposed: PermissionFix,
    ) -> OperatorDecision: ...


class ConsoleOperator:
    """Ask on the terminal whether to apply the proposed widening.

    One operator is shared by every concurrent run, so questions are asked
    one at a time with each denial table printed next to its prompt.
    """

    def __init__(self, console: Console | None = None) -> None:
        self._console = console if console is not None else Console(stderr=True)
        self._turn = asyncio.Lock()

    async def decide(
        self,
        denials: Sequence[PermissionDenial],
        proposed: PermissionFix,
    ) -> OperatorDecision:
        async with self._turn:
            return await asyncio.to_thread(self._decide_blocking, denials, proposed)

    def _decide_blocking(
        self,
        denials: Sequence[PermissionDenial],
        proposed: PermissionFix,
    ) -> OperatorDecision:
        table = Table(title="Permission denied", show_lines=False)
        table.add_column("Kind", style="bold")
        table.add_column("Detail")
        for denial in denials:
            table.add_row(denial.kind.value, denial.detail)
        self._console.print(table)

        if isinstance(proposed, CannotFix):
            self._console.print(f"[red]No automatic fix:[/red] {proposed.reason}")
            return Abort(proposed.reason)

        self._console.print(f"Proposed widening: {proposed.delta.describe()}")
        if Confirm.ask("Apply and retry?", console=self._console, default=False):
            return proposed
        return Abort()


__all__ = ["Abort", "ConsoleOperator", "Operator", "OperatorDecision"]
