"""
Result schemas - what the supervisor and orchestrator hand back.

ProcessResult describes one finished (or detached) subprocess.
StepOutcome / RecipeResult / RunReport are the structured results that the
orchestrator reports upward and the CLI and shell render.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True)
class ProcessResult:
    """
    Outcome of one subprocess invocation.

    For detached steps, ``exit_code`` is None and ``pid`` identifies the
    background process.
    """
    step_id: str
    command: tuple[str, ...]
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    duration_s: float = 0.0
    pid: Optional[int] = None
    detached: bool = False

    @property
    def output(self) -> str:
        """Combined captured output."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


class RecipeStatus(str, Enum):
    """Terminal status of one recipe within a run."""
    DONE = "done"
    SATISFIED = "satisfied"
    FAILED = "failed"
    PLANNED = "planned"


class StepStatus(str, Enum):
    """Status of a step execution."""
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepOutcome:
    """The outcome of executing a single step within a recipe."""
    step_id: str
    status: StepStatus
    exit_code: Optional[int] = None
    duration_s: float = 0.0
    output: str = ""
    pid: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "step_id": self.step_id,
            "status": self.status.value,
            "duration_s": round(self.duration_s, 3),
        }
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        if self.pid is not None:
            result["pid"] = self.pid
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class RecipeResult:
    """
    Terminal report for one recipe.

    Attributes:
        recipe: Recipe name
        network: Network name
        status: Terminal status
        steps: Per-step outcomes in execution order
        elapsed_s: Time spent in this recipe (prerequisites excluded)
        fingerprint: Fingerprint computed for the run, if it got that far
        error: Underlying exception when status is FAILED
        step_index: 1-based index of the failing step, if a step failed
        exit_code: CLI exit code for this failure (0 when not failed)
    """
    recipe: str
    network: str
    status: RecipeStatus
    steps: list[StepOutcome] = field(default_factory=list)
    elapsed_s: float = 0.0
    fingerprint: Optional[str] = None
    error: Optional[Exception] = None
    step_index: Optional[int] = None
    exit_code: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status != RecipeStatus.FAILED

    @property
    def message(self) -> str:
        """One-line human summary."""
        if self.status == RecipeStatus.SATISFIED:
            return f"{self.recipe}: already satisfied"
        if self.status == RecipeStatus.PLANNED:
            return f"{self.recipe}: would run {len(self.steps)} step(s)"
        if self.status == RecipeStatus.DONE:
            return f"{self.recipe}: done ({len(self.steps)} step(s))"
        where = f" at step {self.step_index}" if self.step_index is not None else ""
        return f"{self.recipe}: failed{where}: {self.error}"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "recipe": self.recipe,
            "network": self.network,
            "status": self.status.value,
            "elapsed_s": round(self.elapsed_s, 3),
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.fingerprint:
            result["fingerprint"] = self.fingerprint
        if self.error is not None:
            result["error"] = str(self.error)
            result["exit_code"] = self.exit_code
        if self.step_index is not None:
            result["step_index"] = self.step_index
        return result


@dataclass
class RunReport:
    """All recipe results of one orchestrator run, in execution order."""
    recipe: str
    network: str
    results: list[RecipeResult] = field(default_factory=list)
    elapsed_s: float = 0.0
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return all(r.succeeded for r in self.results)

    @property
    def failure(self) -> Optional[RecipeResult]:
        """First failed recipe, if any."""
        for result in self.results:
            if not result.succeeded:
                return result
        return None

    @property
    def exit_code(self) -> int:
        failed = self.failure
        return failed.exit_code if failed else 0

    def raise_for_status(self) -> None:
        """
        Raise RecipeFailed for the first failed recipe.

        Raises:
            RecipeFailed: If any recipe in the run failed
        """
        failed = self.failure
        if failed is not None:
            from mintorch.errors import RecipeFailed
            raise RecipeFailed(failed.recipe, failed.error, failed.step_index)

    def result_for(self, recipe: str) -> Optional[RecipeResult]:
        for result in self.results:
            if result.recipe == recipe:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipe": self.recipe,
            "network": self.network,
            "success": self.success,
            "dry_run": self.dry_run,
            "elapsed_s": round(self.elapsed_s, 3),
            "results": [r.to_dict() for r in self.results],
        }
