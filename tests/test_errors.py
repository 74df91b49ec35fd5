"""Tests for mintorch error classes.

Tests cover:
- Error hierarchy
- Exit codes carried by each error kind
- Structured attributes used by the CLI and orchestrator
"""

import pytest

from mintorch.errors import (
    AlreadyRunning,
    Cancelled,
    ConfigError,
    CyclicDependency,
    LaunchFailed,
    MintorchError,
    MissingField,
    NonZeroExit,
    OrchestratorError,
    RecipeFailed,
    RegistryError,
    StateError,
    StateUnavailable,
    StateWriteFailed,
    SupervisorError,
    Timeout,
    UnknownNetwork,
    UnknownRecipe,
)


class TestHierarchy:
    """Tests for the exception taxonomy."""

    @pytest.mark.parametrize("cls, parent", [
        (ConfigError, MintorchError),
        (UnknownNetwork, ConfigError),
        (MissingField, ConfigError),
        (RegistryError, MintorchError),
        (UnknownRecipe, RegistryError),
        (CyclicDependency, RegistryError),
        (SupervisorError, MintorchError),
        (NonZeroExit, SupervisorError),
        (Timeout, SupervisorError),
        (Cancelled, SupervisorError),
        (LaunchFailed, SupervisorError),
        (StateError, MintorchError),
        (StateUnavailable, StateError),
        (StateWriteFailed, StateError),
        (OrchestratorError, MintorchError),
        (AlreadyRunning, OrchestratorError),
        (RecipeFailed, OrchestratorError),
    ])
    def test_subclass(self, cls, parent):
        """Every error sits under its component's base class."""
        assert issubclass(cls, parent)

    def test_base_is_exception(self):
        """MintorchError should be an Exception."""
        assert issubclass(MintorchError, Exception)


class TestExitCodes:
    """Tests for exit codes used by the CLI."""

    def test_codes(self):
        """Each error kind maps to its documented exit code."""
        assert MintorchError("x").exit_code == 1
        assert UnknownNetwork("devnet").exit_code == 3
        assert MissingField("postgres_user").exit_code == 3
        assert StateUnavailable("x").exit_code == 4
        assert StateWriteFailed("x").exit_code == 4
        assert AlreadyRunning("testnet").exit_code == 5
        assert UnknownRecipe("x").exit_code == 6
        assert CyclicDependency(["a", "a"]).exit_code == 6
        assert Cancelled().exit_code == 130

    def test_recipe_failed_takes_cause_code(self):
        """RecipeFailed reports the exit code of what caused it."""
        assert RecipeFailed("deploy", StateWriteFailed("disk full")).exit_code == 4
        assert RecipeFailed("deploy", NonZeroExit(1)).exit_code == 1
        assert RecipeFailed("deploy", ValueError("odd")).exit_code == 1


class TestAttributes:
    """Tests for structured error attributes and messages."""

    def test_non_zero_exit(self):
        """NonZeroExit keeps the code and the captured output."""
        error = NonZeroExit(101, "error[E0425]\n", step_id="compile-wasm")

        assert error.code == 101
        assert error.output == "error[E0425]\n"
        assert error.step_id == "compile-wasm"
        assert "compile-wasm" in str(error) and "101" in str(error)

    def test_timeout(self):
        """Timeout names the limit."""
        error = Timeout(1.5, step_id="deploy-factory")

        assert error.timeout_s == 1.5
        assert "1.5s" in str(error)

    def test_missing_field_defaults_missing_list(self):
        """MissingField lists at least the named field."""
        error = MissingField("account_prefix")

        assert error.missing == ("account_prefix",)

    def test_unknown_network_lists_known(self):
        """UnknownNetwork mentions the accepted names."""
        error = UnknownNetwork("devnet", ("local", "testnet", "mainnet"))

        assert "local, testnet, mainnet" in str(error)

    def test_unknown_recipe_reference(self):
        """UnknownRecipe names the recipe that referenced it."""
        assert "Recipe 'deploy' requires unknown recipe 'build'" == str(UnknownRecipe("build", referenced_by="deploy"))

    def test_already_running_owner(self):
        """AlreadyRunning includes the owner pid when known."""
        assert "pid 1234" in str(AlreadyRunning("mainnet", 1234))

    def test_recipe_failed_message(self):
        """RecipeFailed carries recipe, step index and cause."""
        cause = NonZeroExit(1, step_id="create-market")
        error = RecipeFailed("create-accounts", cause, step_index=2)

        assert error.recipe == "create-accounts"
        assert error.step_index == 2
        assert error.cause is cause
        assert str(error).startswith("Recipe 'create-accounts' failed at step 2:")
