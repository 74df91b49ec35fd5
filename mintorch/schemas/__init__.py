"""
mintorch.schemas - Value types for the orchestration layer.

NetworkProfile -> Recipe/Step -> ProcessResult -> RecipeResult -> ExecutionRecord

Lifecycle:
1. NetworkProfile: resolved once at startup, immutable
2. Recipe / Step: static definitions loaded by the RecipeRegistry
3. ProcessResult: transient outcome of one subprocess
4. RecipeResult / RunReport: structured report of a run
5. ExecutionRecord: persisted proof of success, keyed by (network, recipe)
"""

from .network import (
    NETWORKS,
    DatabaseSettings,
    NetworkProfile,
)
from .recipe import (
    FingerprintSpec,
    ReadinessProbe,
    Recipe,
    Step,
)
from .execution_record import (
    ExecutionRecord,
)
from .result import (
    ProcessResult,
    RecipeResult,
    RecipeStatus,
    RunReport,
    StepOutcome,
    StepStatus,
)

__all__ = [
    # Network
    "NETWORKS",
    "DatabaseSettings",
    "NetworkProfile",
    # Recipe
    "FingerprintSpec",
    "ReadinessProbe",
    "Recipe",
    "Step",
    # Record
    "ExecutionRecord",
    # Results
    "ProcessResult",
    "RecipeResult",
    "RecipeStatus",
    "RunReport",
    "StepOutcome",
    "StepStatus",
]
