"""
Error classes for mintorch.

The taxonomy mirrors where a failure originates:
- ConfigError: bad or missing configuration, raised before any subprocess runs
- RegistryError: malformed recipe graph, raised when recipes are loaded
- SupervisorError: a subprocess exited badly, timed out, or was cancelled
- StateError: the idempotency store is unreachable or a write failed
- OrchestratorError: run-level failures (concurrent run guard, wrapped recipe failure)

Every class carries an ``exit_code`` the CLI uses for the process exit status.
Subprocess failures are never retried automatically.
"""

from typing import Optional, Sequence


class MintorchError(Exception):
    """Base exception for mintorch."""

    exit_code = 1


# =============================================================================
# Configuration
# =============================================================================

class ConfigError(MintorchError):
    """Configuration validation error."""

    exit_code = 3


class UnknownNetwork(ConfigError):
    """Network name is not one of the recognized networks."""

    def __init__(self, network: str, known: Sequence[str] = ()):
        self.network = network
        self.known = tuple(known)
        message = f"Unknown network: {network!r}"
        if self.known:
            message += f" (expected one of: {', '.join(self.known)})"
        super().__init__(message)


class MissingField(ConfigError):
    """A required configuration field is absent."""

    def __init__(self, field_name: str, missing: Sequence[str] = (), network: Optional[str] = None):
        self.field_name = field_name
        self.missing = tuple(missing) or (field_name,)
        self.network = network
        where = f" for network '{network}'" if network else ""
        super().__init__(
            f"Missing required field '{field_name}'{where} "
            f"(missing: {', '.join(self.missing)})"
        )


# =============================================================================
# Recipe registry
# =============================================================================

class RegistryError(MintorchError):
    """Malformed recipe definitions."""

    exit_code = 6


class UnknownRecipe(RegistryError):
    """Raised when a recipe name is not registered."""

    def __init__(self, name: str, referenced_by: Optional[str] = None):
        self.name = name
        self.referenced_by = referenced_by
        if referenced_by:
            super().__init__(f"Recipe '{referenced_by}' requires unknown recipe '{name}'")
        else:
            super().__init__(f"Unknown recipe: {name}")


class CyclicDependency(RegistryError):
    """The prerequisite graph contains a cycle."""

    def __init__(self, path: Sequence[str]):
        self.path = tuple(path)
        super().__init__(f"Cyclic recipe dependency: {' -> '.join(self.path)}")


# =============================================================================
# Process supervision
# =============================================================================

class SupervisorError(MintorchError):
    """A supervised subprocess did not conclude as expected."""

    def __init__(self, message: str, step_id: Optional[str] = None, output: str = ""):
        self.step_id = step_id
        self.output = output
        super().__init__(message)


class NonZeroExit(SupervisorError):
    """Subprocess exited with a code other than the step's expected code."""

    def __init__(self, code: int, output: str = "", step_id: Optional[str] = None, expected: int = 0):
        self.code = code
        self.expected = expected
        label = f"Step '{step_id}'" if step_id else "Command"
        super().__init__(
            f"{label} exited with code {code} (expected {expected})",
            step_id=step_id,
            output=output,
        )


class Timeout(SupervisorError):
    """Subprocess exceeded its time limit and was killed."""

    def __init__(self, timeout_s: float, step_id: Optional[str] = None, output: str = ""):
        self.timeout_s = timeout_s
        label = f"Step '{step_id}'" if step_id else "Command"
        super().__init__(f"{label} timed out after {timeout_s:g}s", step_id=step_id, output=output)


class Cancelled(SupervisorError):
    """Operator interrupted the subprocess."""

    exit_code = 130

    def __init__(self, step_id: Optional[str] = None, output: str = ""):
        label = f"Step '{step_id}'" if step_id else "Command"
        super().__init__(f"{label} cancelled by operator", step_id=step_id, output=output)


class LaunchFailed(SupervisorError):
    """Subprocess could not be started at all (e.g. executable missing)."""


# =============================================================================
# State store
# =============================================================================

class StateError(MintorchError):
    """Idempotency store failure. Always fatal for the run."""

    exit_code = 4


class StateUnavailable(StateError):
    """The state storage cannot be read."""


class StateWriteFailed(StateError):
    """An ExecutionRecord could not be persisted."""


# =============================================================================
# Orchestrator
# =============================================================================

class OrchestratorError(MintorchError):
    """Run-level orchestration failure."""


class AlreadyRunning(OrchestratorError):
    """Another invocation holds the lock for this network."""

    exit_code = 5

    def __init__(self, network: str, owner_pid: Optional[int] = None):
        self.network = network
        self.owner_pid = owner_pid
        owner = f" (pid {owner_pid})" if owner_pid else ""
        super().__init__(f"Another mintorch run is active for network '{network}'{owner}")


class RecipeFailed(OrchestratorError):
    """
    A recipe ended in the failed state.

    Wraps the underlying error with the recipe name and, when the failure came
    from a step, its 1-based index.
    """

    def __init__(self, recipe: str, cause: Exception, step_index: Optional[int] = None):
        self.recipe = recipe
        self.cause = cause
        self.step_index = step_index
        where = f" at step {step_index}" if step_index is not None else ""
        super().__init__(f"Recipe '{recipe}' failed{where}: {cause}")

    @property
    def exit_code(self) -> int:
        return getattr(self.cause, "exit_code", 1)
