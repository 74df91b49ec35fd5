"""Tests for mintorch.shell."""

import pytest

from mintorch.errors import NonZeroExit
from mintorch.orchestrator import Orchestrator
from mintorch.shell import Shell, ShellEvent, ShellState, classify, next_state

RECIPES = ["build-contracts", "create-accounts", "deploy"]


def scripted(*answers):
    it = iter(answers)
    return lambda text: next(it)


class TestNextState:
    """Tests for the shell transition function."""

    def test_pick_then_confirm_then_run(self):
        state = next_state(ShellState.MENU, ShellEvent.PICK_RECIPE)
        assert state == ShellState.CONFIRM
        state = next_state(state, ShellEvent.CONFIRMED)
        assert state == ShellState.RUNNING
        assert next_state(state, ShellEvent.FINISHED) == ShellState.MENU

    def test_decline_returns_to_menu(self):
        assert next_state(ShellState.CONFIRM, ShellEvent.DECLINED) == ShellState.MENU

    @pytest.mark.parametrize("event", [ShellEvent.SHOW_STATUS, ShellEvent.INVALID])
    def test_menu_stays(self, event):
        assert next_state(ShellState.MENU, event) == ShellState.MENU

    @pytest.mark.parametrize("state", list(ShellState))
    def test_quit_from_anywhere(self, state):
        assert next_state(state, ShellEvent.QUIT) == ShellState.QUIT

    def test_quit_is_final(self):
        assert next_state(ShellState.QUIT, ShellEvent.PICK_RECIPE) == ShellState.QUIT


class TestClassify:
    """Tests for menu input classification."""

    @pytest.mark.parametrize("choice, event", [
        ("deploy", ShellEvent.PICK_RECIPE),
        ("2", ShellEvent.PICK_RECIPE),
        ("4", ShellEvent.INVALID),
        ("0", ShellEvent.INVALID),
        ("status", ShellEvent.SHOW_STATUS),
        ("q", ShellEvent.QUIT),
        ("QUIT", ShellEvent.QUIT),
        ("mint", ShellEvent.INVALID),
        ("", ShellEvent.INVALID),
    ])
    def test_choices(self, choice, event):
        assert classify(choice, RECIPES) == event


class TestShell:
    """Tests for scripted shell sessions."""

    def test_runs_confirmed_recipe(self, orchestrator, store, supervisor, profile):
        shell = Shell(orchestrator, store, prompt=scripted("1", "quit"), confirm=lambda text: True)

        assert shell.run() == 0
        assert supervisor.calls == ["compile"]
        assert store.get("build-contracts", profile) is not None

    def test_recipe_by_name(self, orchestrator, store, supervisor):
        shell = Shell(orchestrator, store, prompt=scripted("create-accounts", "q"), confirm=lambda text: True)

        shell.run()

        assert supervisor.calls == ["create-factory", "create-market"]

    def test_declined_recipe_does_not_run(self, orchestrator, store, supervisor):
        shell = Shell(orchestrator, store, prompt=scripted("deploy", "quit"), confirm=lambda text: False)

        assert shell.run() == 0
        assert supervisor.calls == []

    def test_status_and_invalid_choices_stay_in_menu(self, orchestrator, store, supervisor):
        shell = Shell(orchestrator, store, prompt=scripted("status", "nonsense", "quit"), confirm=lambda text: True)

        assert shell.run() == 0
        assert supervisor.calls == []

    def test_failure_exit_code_returned(self, registry, store, profile, project_root, supervisor_factory):
        supervisor = supervisor_factory({"compile": NonZeroExit(1, "link error\n", step_id="compile")})
        orchestrator = Orchestrator(registry, store, supervisor, profile, project_root)
        shell = Shell(orchestrator, store, prompt=scripted("build-contracts", "quit"), confirm=lambda text: True)

        assert shell.run() == 1

    def test_interrupt_at_prompt_quits(self, orchestrator, store):
        def interrupted(text):
            raise KeyboardInterrupt

        assert Shell(orchestrator, store, prompt=interrupted).run() == 0

    def test_end_of_input_quits(self, orchestrator, store):
        def closed(text):
            raise EOFError

        assert Shell(orchestrator, store, prompt=closed).run() == 0
