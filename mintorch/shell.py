"""
Interactive shell - a menu over the Orchestrator.

    MENU --recipe--> CONFIRM --yes--> RUNNING --finished--> MENU
      |                 |
      |                 +--no--> MENU
      +--quit--> QUIT

``next_state`` is the pure transition function; ``Shell`` does the prompting
and the running. All recipe logic stays in the Orchestrator.
"""

from enum import Enum
from typing import Callable, Optional

import click
from rich.table import Table

from mintorch.errors import MintorchError
from mintorch.orchestrator import Orchestrator
from mintorch.state_store import StateStore
from mintorch.utils import console, print_error, print_info, print_report, print_warning

QUIT_CHOICES = ("quit", "q", "exit")
STATUS_CHOICE = "status"


class ShellState(str, Enum):
    MENU = "menu"
    CONFIRM = "confirm"
    RUNNING = "running"
    QUIT = "quit"


class ShellEvent(str, Enum):
    PICK_RECIPE = "pick_recipe"
    SHOW_STATUS = "show_status"
    INVALID = "invalid"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    FINISHED = "finished"
    QUIT = "quit"


def classify(choice: str, recipes: list[str]) -> ShellEvent:
    """Map raw menu input to an event. Numbers pick recipes by position."""
    choice = choice.strip()
    if choice.lower() in QUIT_CHOICES:
        return ShellEvent.QUIT
    if choice.lower() == STATUS_CHOICE:
        return ShellEvent.SHOW_STATUS
    if choice in recipes:
        return ShellEvent.PICK_RECIPE
    if choice.isdigit() and 1 <= int(choice) <= len(recipes):
        return ShellEvent.PICK_RECIPE
    return ShellEvent.INVALID


def next_state(state: ShellState, event: ShellEvent) -> ShellState:
    """Pure transition function of the shell."""
    if state == ShellState.QUIT or event == ShellEvent.QUIT:
        return ShellState.QUIT
    if state == ShellState.MENU:
        return ShellState.CONFIRM if event == ShellEvent.PICK_RECIPE else ShellState.MENU
    if state == ShellState.CONFIRM:
        return ShellState.RUNNING if event == ShellEvent.CONFIRMED else ShellState.MENU
    if state == ShellState.RUNNING and event == ShellEvent.FINISHED:
        return ShellState.MENU
    return state


class Shell:
    """
    Interactive recipe menu.

    ``prompt`` and ``confirm`` default to click's and can be replaced for
    scripted sessions.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        store: StateStore,
        prompt: Optional[Callable[[str], str]] = None,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.prompt = prompt or (lambda text: click.prompt(text, default="", show_default=False))
        self.confirm = confirm or (lambda text: click.confirm(text, default=False))
        self.recipes = orchestrator.registry.names()
        self.last_exit_code = 0

    @property
    def network(self) -> str:
        return self.orchestrator.profile.name

    def _resolve_choice(self, choice: str) -> str:
        choice = choice.strip()
        if choice.isdigit():
            return self.recipes[int(choice) - 1]
        return choice

    def render_menu(self) -> None:
        table = Table(title=f"mintorch ({self.network})", show_header=False, box=None)
        for index, name in enumerate(self.recipes, start=1):
            recipe = self.orchestrator.registry.get(name)
            table.add_row(f"[bold]{index}[/bold]", name, recipe.description)
        table.add_row("", STATUS_CHOICE, "show execution records")
        table.add_row("", "quit", "leave the shell")
        console.print(table)

    def render_status(self) -> None:
        try:
            records = {r.recipe: r for r in self.store.records(self.orchestrator.profile)}
        except MintorchError as e:
            print_error(str(e))
            return
        table = Table(title=f"Execution records ({self.network})")
        table.add_column("Recipe", no_wrap=True)
        table.add_column("Recorded at")
        table.add_column("Fingerprint")
        for name in self.recipes:
            record = records.get(name)
            if record is None:
                table.add_row(name, "-", "-")
            else:
                table.add_row(name, record.recorded_at.strftime("%Y-%m-%d %H:%M:%S"), record.fingerprint[:19])
        console.print(table)

    def run(self) -> int:
        """
        Loop until the operator quits.

        Returns:
            Exit code of the last recipe run (0 if none failed)
        """
        state = ShellState.MENU
        selected: Optional[str] = None

        while state != ShellState.QUIT:
            try:
                if state == ShellState.MENU:
                    self.render_menu()
                    choice = self.prompt("Recipe")
                    event = classify(choice, self.recipes)
                    if event == ShellEvent.PICK_RECIPE:
                        selected = self._resolve_choice(choice)
                    elif event == ShellEvent.SHOW_STATUS:
                        self.render_status()
                    elif event == ShellEvent.INVALID and choice.strip():
                        print_warning(f"Unknown choice: {choice.strip()}")

                elif state == ShellState.CONFIRM:
                    if self.network == "mainnet":
                        print_warning("This runs against mainnet")
                    confirmed = self.confirm(f"Run {selected} on {self.network}?")
                    event = ShellEvent.CONFIRMED if confirmed else ShellEvent.DECLINED

                else:
                    self._run_selected(selected)
                    event = ShellEvent.FINISHED

            except (KeyboardInterrupt, EOFError, click.Abort):
                console.print()
                event = ShellEvent.QUIT

            state = next_state(state, event)

        print_info("Bye")
        return self.last_exit_code

    def _run_selected(self, recipe: str) -> None:
        try:
            report = self.orchestrator.run(recipe)
        except MintorchError as e:
            print_error(str(e))
            self.last_exit_code = e.exit_code
            return
        print_report(report)
        self.last_exit_code = report.exit_code
