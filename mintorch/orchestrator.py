"""
Orchestrator - drives recipes through their state machine.

Per recipe invocation:

    PENDING -> RESOLVING_DEPENDENCIES -> CHECKING_STATE -> EXECUTING -> RECORDING -> DONE
                                               |
                                               +-> DONE (already satisfied / dry run)

and FAILED from any non-terminal state. ``transition`` is a pure function of
(state, event); the Orchestrator performs the effect that belongs to each state
and feeds the resulting event back in.

Execution flow for ``run(name)``:
1. Take the network lock (a concurrent run fails fast with AlreadyRunning)
2. Invoke the recipe; prerequisites are invoked first, in declaration order,
   each at most once per run
3. Compute the fingerprint once prerequisites are done
4. Skip if the State Store already holds that fingerprint
5. Run steps in order, stopping at the first failure
6. Write the ExecutionRecord only if every step succeeded
"""

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from mintorch.errors import (
    Cancelled,
    MintorchError,
    OrchestratorError,
    RegistryError,
    StateError,
    SupervisorError,
)
from mintorch.fingerprint import compute_fingerprint
from mintorch.registry import RecipeRegistry
from mintorch.schemas import (
    NetworkProfile,
    Recipe,
    RecipeResult,
    RecipeStatus,
    RunReport,
    StepOutcome,
    StepStatus,
)
from mintorch.state_store import StateStore
from mintorch.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class RecipeState(str, Enum):
    """States of one recipe invocation."""
    PENDING = "pending"
    RESOLVING_DEPENDENCIES = "resolving_dependencies"
    CHECKING_STATE = "checking_state"
    EXECUTING = "executing"
    RECORDING = "recording"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RecipeState.DONE, RecipeState.FAILED)


class Event(str, Enum):
    """Outcome of the effect performed in a state."""
    START = "start"
    PREREQUISITES_DONE = "prerequisites_done"
    SATISFIED = "satisfied"
    NOT_SATISFIED = "not_satisfied"
    PLANNED = "planned"
    STEPS_DONE = "steps_done"
    RECORDED = "recorded"
    ERROR = "error"


TRANSITIONS: dict[tuple[RecipeState, Event], RecipeState] = {
    (RecipeState.PENDING, Event.START): RecipeState.RESOLVING_DEPENDENCIES,
    (RecipeState.RESOLVING_DEPENDENCIES, Event.PREREQUISITES_DONE): RecipeState.CHECKING_STATE,
    (RecipeState.CHECKING_STATE, Event.SATISFIED): RecipeState.DONE,
    (RecipeState.CHECKING_STATE, Event.PLANNED): RecipeState.DONE,
    (RecipeState.CHECKING_STATE, Event.NOT_SATISFIED): RecipeState.EXECUTING,
    (RecipeState.EXECUTING, Event.STEPS_DONE): RecipeState.RECORDING,
    (RecipeState.RECORDING, Event.RECORDED): RecipeState.DONE,
}


def transition(state: RecipeState, event: Event) -> RecipeState:
    """
    Next state for (state, event).

    Raises:
        OrchestratorError: If the event is not valid in this state
    """
    if event == Event.ERROR and not state.terminal:
        return RecipeState.FAILED
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise OrchestratorError(f"Illegal transition: {state.value} --{event.value}-->") from None


TransitionListener = Callable[[str, RecipeState, RecipeState], None]


class _Invocation:
    """Mutable bookkeeping for one recipe while it moves through the machine."""

    def __init__(self, name: str, listener: Optional[TransitionListener]):
        self.name = name
        self.state = RecipeState.PENDING
        self._listener = listener

    def fire(self, event: Event) -> RecipeState:
        previous = self.state
        self.state = transition(previous, event)
        logger.debug(
            f"{self.name}: {previous.value} -> {self.state.value}",
            extra={"recipe": self.name, "event": "transition",
                   "metadata": {"from": previous.value, "to": self.state.value, "on": event.value}},
        )
        if self._listener:
            self._listener(self.name, previous, self.state)
        return self.state


class Orchestrator:
    """
    Runs recipes for one NetworkProfile.

    Single-threaded: recipes and their steps run strictly one after another.
    """

    def __init__(
        self,
        registry: RecipeRegistry,
        store: StateStore,
        supervisor: ProcessSupervisor,
        profile: NetworkProfile,
        project_root: Path | str = ".",
        listener: Optional[TransitionListener] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            registry: Recipe definitions
            store: Idempotency store
            supervisor: Runs steps
            profile: Resolved network profile, passed to every component call
            project_root: Root for fingerprint file globs
            listener: Called with (recipe, old_state, new_state) on every transition
        """
        self.registry = registry
        self.store = store
        self.supervisor = supervisor
        self.profile = profile
        self.project_root = Path(project_root)
        self.listener = listener

    def run(self, recipe_name: str, dry_run: bool = False, force: bool = False) -> RunReport:
        """
        Run a recipe and its prerequisites.

        Args:
            recipe_name: Recipe to run
            dry_run: Report what would run without executing or recording
            force: Invalidate the recipe's record first so it runs again

        Returns:
            RunReport with one RecipeResult per recipe touched, in order

        Raises:
            AlreadyRunning: If another invocation holds this network's lock
            StateUnavailable: If the lock cannot be taken
        """
        started = time.monotonic()
        report = RunReport(recipe=recipe_name, network=self.profile.name, dry_run=dry_run)

        logger.info(
            f"Run {recipe_name} on {self.profile.name}" + (" (dry run)" if dry_run else ""),
            extra={"recipe": recipe_name, "network": self.profile.name, "event": "run_started",
                   "metadata": {"dry_run": dry_run, "force": force}},
        )

        if dry_run:
            self._invoke(recipe_name, report, {}, {}, dry_run=True)
        else:
            with self.store.lock(self.profile):
                if force and recipe_name in self.registry:
                    if self.store.invalidate(recipe_name, self.profile):
                        logger.info(
                            f"Invalidated record for {recipe_name}",
                            extra={"recipe": recipe_name, "event": "record_invalidated"},
                        )
                self._invoke(recipe_name, report, {}, {}, dry_run=False)

        report.elapsed_s = time.monotonic() - started
        logger.info(
            f"Run {recipe_name} on {self.profile.name} "
            + ("succeeded" if report.success else "failed"),
            extra={"recipe": recipe_name, "network": self.profile.name, "event": "run_finished",
                   "metadata": {"success": report.success, "elapsed_s": report.elapsed_s}},
        )
        return report

    def _invoke(
        self,
        name: str,
        report: RunReport,
        fingerprints: dict[str, str],
        visited: dict[str, RecipeResult],
        dry_run: bool,
    ) -> RecipeResult:
        if name in visited:
            return visited[name]

        inv = _Invocation(name, self.listener)
        inv.fire(Event.START)

        # RESOLVING_DEPENDENCIES
        try:
            recipe = self.registry.get(name)
            order = self.registry.topological_order(name)
        except RegistryError as e:
            return self._fail(inv, None, e, report, visited)
        logger.debug(f"{name}: expands to {', '.join(r.name for r in order)}")

        for prerequisite in recipe.requires:
            upstream = self._invoke(prerequisite, report, fingerprints, visited, dry_run)
            if not upstream.succeeded:
                error = OrchestratorError(f"Prerequisite '{prerequisite}' failed")
                return self._fail(inv, recipe, error, report, visited, exit_code=upstream.exit_code)
        inv.fire(Event.PREREQUISITES_DONE)

        # CHECKING_STATE
        started = time.monotonic()
        try:
            fingerprint = compute_fingerprint(recipe, self.profile, self.project_root, fingerprints)
            satisfied = recipe.record and self.store.is_satisfied(name, self.profile, fingerprint)
        except (MintorchError, OSError) as e:
            return self._fail(inv, recipe, e, report, visited)
        fingerprints[name] = fingerprint

        if satisfied or dry_run:
            inv.fire(Event.SATISFIED if satisfied else Event.PLANNED)
            result = RecipeResult(
                recipe=name,
                network=self.profile.name,
                status=RecipeStatus.SATISFIED if satisfied else RecipeStatus.PLANNED,
                steps=[] if satisfied else [StepOutcome(s.step_id, StepStatus.SKIPPED) for s in recipe.steps],
                elapsed_s=time.monotonic() - started,
                fingerprint=fingerprint,
            )
            if satisfied:
                logger.info(
                    f"{name}: already satisfied",
                    extra={"recipe": name, "event": "recipe_satisfied",
                           "metadata": {"fingerprint": fingerprint}},
                )
            return self._finish(result, report, visited)
        inv.fire(Event.NOT_SATISFIED)

        # EXECUTING
        outcomes: list[StepOutcome] = []
        for index, step in enumerate(recipe.steps, start=1):
            try:
                process = self.supervisor.run(step, self.profile)
            except (SupervisorError, MintorchError) as e:
                outcomes.append(StepOutcome(
                    step_id=step.step_id,
                    status=StepStatus.FAILED,
                    exit_code=getattr(e, "code", None),
                    output=getattr(e, "output", ""),
                    error=str(e),
                ))
                outcomes.extend(StepOutcome(s.step_id, StepStatus.SKIPPED) for s in recipe.steps[index:])
                return self._fail(inv, recipe, e, report, visited, steps=outcomes,
                                  step_index=index, fingerprint=fingerprint, started=started)
            outcomes.append(StepOutcome(
                step_id=step.step_id,
                status=StepStatus.COMPLETED,
                exit_code=process.exit_code,
                duration_s=process.duration_s,
                output=process.output,
                pid=process.pid if process.detached else None,
            ))
        inv.fire(Event.STEPS_DONE)

        # RECORDING
        elapsed = time.monotonic() - started
        if recipe.record:
            try:
                self.store.record(
                    name,
                    self.profile,
                    fingerprint,
                    steps=tuple(s.step_id for s in recipe.steps),
                    elapsed_ms=int(elapsed * 1000),
                )
            except StateError as e:
                logger.warning(
                    f"{name} ran but its record could not be written; "
                    f"on-chain/database changes may need manual reconciliation: {e}",
                    extra={"recipe": name, "event": "reconciliation_needed",
                           "metadata": {"fingerprint": fingerprint}},
                )
                return self._fail(inv, recipe, e, report, visited, steps=outcomes,
                                  fingerprint=fingerprint, started=started)
        inv.fire(Event.RECORDED)

        logger.info(
            f"{name}: done in {elapsed:.1f}s",
            extra={"recipe": name, "event": "recipe_done",
                   "metadata": {"steps": len(outcomes), "elapsed_s": elapsed}},
        )
        result = RecipeResult(
            recipe=name,
            network=self.profile.name,
            status=RecipeStatus.DONE,
            steps=outcomes,
            elapsed_s=elapsed,
            fingerprint=fingerprint,
        )
        return self._finish(result, report, visited)

    @staticmethod
    def _finish(result: RecipeResult, report: RunReport, visited: dict[str, RecipeResult]) -> RecipeResult:
        report.results.append(result)
        visited[result.recipe] = result
        return result

    def _fail(
        self,
        inv: _Invocation,
        recipe: Optional[Recipe],
        error: Exception,
        report: RunReport,
        visited: dict[str, RecipeResult],
        steps: Optional[list[StepOutcome]] = None,
        step_index: Optional[int] = None,
        fingerprint: Optional[str] = None,
        started: Optional[float] = None,
        exit_code: Optional[int] = None,
    ) -> RecipeResult:
        inv.fire(Event.ERROR)
        logger.error(
            f"{inv.name} failed" + (f" at step {step_index}" if step_index else "") + f": {error}",
            extra={"recipe": inv.name, "network": self.profile.name, "event": "recipe_failed",
                   "metadata": {"error": str(error), "step_index": step_index}},
        )
        result = RecipeResult(
            recipe=inv.name,
            network=self.profile.name,
            status=RecipeStatus.FAILED,
            steps=steps or [],
            elapsed_s=time.monotonic() - started if started else 0.0,
            fingerprint=fingerprint,
            error=error,
            step_index=step_index,
            exit_code=exit_code if exit_code is not None else self._exit_code_for(recipe, error),
        )
        return self._finish(result, report, visited)

    @staticmethod
    def _exit_code_for(recipe: Optional[Recipe], error: Exception) -> int:
        """Subprocess failures use the recipe's code; other kinds their own."""
        if recipe is not None and isinstance(error, SupervisorError) and not isinstance(error, Cancelled):
            return recipe.failure_exit_code
        return getattr(error, "exit_code", 1)
