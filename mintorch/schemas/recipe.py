"""
Recipe schema - the declarative deployment operation.

A Recipe is a named, ordered list of Steps plus the names of the recipes it
requires. Steps are typed subprocess templates; ``${NAME}`` tokens in their
command, cwd and env are rendered from the NetworkProfile at run time.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

DEFAULT_STEP_TIMEOUT_S = 600
DEFAULT_STARTUP_TIMEOUT_S = 120


@dataclass(frozen=True)
class ReadinessProbe:
    """
    How a detached step signals that it is ready.

    Exactly one of ``tcp_port`` or ``log_pattern`` must be set.
    """
    tcp_host: str = "127.0.0.1"
    tcp_port: Optional[int] = None
    log_pattern: Optional[str] = None
    startup_timeout_s: float = DEFAULT_STARTUP_TIMEOUT_S

    def __post_init__(self):
        if (self.tcp_port is None) == (self.log_pattern is None):
            raise ValueError("ReadinessProbe needs exactly one of tcp_port or log_pattern")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"startup_timeout_s": self.startup_timeout_s}
        if self.tcp_port is not None:
            result["tcp_host"] = self.tcp_host
            result["tcp_port"] = self.tcp_port
        if self.log_pattern is not None:
            result["log_pattern"] = self.log_pattern
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReadinessProbe":
        return cls(
            tcp_host=data.get("tcp_host", "127.0.0.1"),
            tcp_port=data.get("tcp_port"),
            log_pattern=data.get("log_pattern"),
            startup_timeout_s=data.get("startup_timeout_s", DEFAULT_STARTUP_TIMEOUT_S),
        )


@dataclass(frozen=True)
class Step:
    """
    One subprocess invocation within a Recipe.

    Attributes:
        step_id: Identifier, unique within the recipe
        command: Executable followed by its arguments (templated)
        cwd: Working directory (templated), None for the current directory
        expected_exit_code: Exit code that counts as success
        timeout_s: Wall-clock limit for the subprocess
        env: Extra environment variables (values templated)
        detached: Start in the background and return once ready
        ready: Readiness probe, required for detached steps
    """
    step_id: str
    command: tuple[str, ...]
    cwd: Optional[str] = None
    expected_exit_code: int = 0
    timeout_s: float = DEFAULT_STEP_TIMEOUT_S
    env: tuple[tuple[str, str], ...] = ()
    detached: bool = False
    ready: Optional[ReadinessProbe] = None

    def __post_init__(self):
        if not self.command:
            raise ValueError(f"Step '{self.step_id}': command is empty")
        if self.detached and self.ready is None:
            raise ValueError(f"Step '{self.step_id}': detached steps need a readiness probe")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for YAML/JSON output."""
        return {
            "step_id": self.step_id,
            "command": list(self.command),
            **({"cwd": self.cwd} if self.cwd else {}),
            "expected_exit_code": self.expected_exit_code,
            "timeout_s": self.timeout_s,
            **({"env": dict(self.env)} if self.env else {}),
            **({"detached": True} if self.detached else {}),
            **({"ready": self.ready.to_dict()} if self.ready else {}),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Step":
        """Deserialize from dictionary."""
        command = data["command"]
        if isinstance(command, str):
            raise ValueError(
                f"Step '{data.get('step_id')}': command must be a list of arguments, not shell text"
            )
        ready = ReadinessProbe.from_dict(data["ready"]) if data.get("ready") else None
        return cls(
            step_id=data["step_id"],
            command=tuple(str(part) for part in command),
            cwd=data.get("cwd"),
            expected_exit_code=data.get("expected_exit_code", 0),
            timeout_s=data.get("timeout_s", DEFAULT_STEP_TIMEOUT_S),
            env=tuple(sorted((str(k), str(v)) for k, v in (data.get("env") or {}).items())),
            detached=data.get("detached", False),
            ready=ready,
        )


@dataclass(frozen=True)
class FingerprintSpec:
    """
    Declared inputs of a recipe.

    files: glob patterns relative to the project root whose contents are hashed
    values: templated strings (account ids, store name, ...)
    include_prerequisites: fold the prerequisites' fingerprints in
    """
    files: tuple[str, ...] = ()
    values: tuple[str, ...] = ()
    include_prerequisites: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": list(self.files),
            "values": list(self.values),
            "include_prerequisites": self.include_prerequisites,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "FingerprintSpec":
        data = data or {}
        return cls(
            files=tuple(data.get("files", ())),
            values=tuple(str(v) for v in data.get("values", ())),
            include_prerequisites=data.get("include_prerequisites", True),
        )


@dataclass(frozen=True)
class Recipe:
    """
    A named deployment operation.

    Attributes:
        name: Recipe name, also the CLI subcommand
        steps: Ordered steps, executed sequentially
        requires: Prerequisite recipe names, in declaration order
        description: One-line help text
        fingerprint: Inputs that decide whether a re-run is needed
        record: Write an ExecutionRecord on success (false for service starts)
        failure_exit_code: CLI exit code when this recipe fails
    """
    name: str
    steps: tuple[Step, ...] = ()
    requires: tuple[str, ...] = ()
    description: str = ""
    fingerprint: FingerprintSpec = field(default_factory=FingerprintSpec)
    record: bool = True
    failure_exit_code: int = 1

    def __post_init__(self):
        step_ids = [s.step_id for s in self.steps]
        if len(step_ids) != len(set(step_ids)):
            duplicates = {sid for sid in step_ids if step_ids.count(sid) > 1}
            raise ValueError(f"Recipe '{self.name}': duplicate step ids {sorted(duplicates)}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for YAML/JSON output."""
        return {
            "name": self.name,
            "description": self.description,
            "requires": list(self.requires),
            "record": self.record,
            "failure_exit_code": self.failure_exit_code,
            "fingerprint": self.fingerprint.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipe":
        """Deserialize from dictionary."""
        return cls(
            name=data["name"],
            steps=tuple(Step.from_dict(s) for s in data.get("steps", [])),
            requires=tuple(data.get("requires", ())),
            description=data.get("description", ""),
            fingerprint=FingerprintSpec.from_dict(data.get("fingerprint")),
            record=data.get("record", True),
            failure_exit_code=data.get("failure_exit_code", 1),
        )
