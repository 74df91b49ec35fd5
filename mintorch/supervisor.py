"""
ProcessSupervisor - launch, monitor and terminate external tools.

Every Step is rendered against the NetworkProfile and run in its own session,
so that timeouts and operator interrupts can signal the whole process group
(build tools and chain CLIs fork helpers of their own).

Foreground steps block until exit, streaming each output line to the log.
Detached steps (the indexer) write to a log file; ``run`` returns as soon as
the readiness probe passes and the process keeps running in the background.
"""

import logging
import os
import re
import signal
import socket
import subprocess
import threading
import time
from pathlib import Path
from typing import Mapping, Optional

from mintorch.errors import Cancelled, LaunchFailed, NonZeroExit, Timeout
from mintorch.schemas import NetworkProfile, ProcessResult, ReadinessProbe, Step
from mintorch.utils import substitute_placeholders

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_S = 5.0
READY_POLL_INTERVAL_S = 0.2


class ProcessSupervisor:
    """
    Runs Steps as subprocess groups.

    Holds no durable state: the only thing kept between calls is the handle
    of each detached process, so it can be attached to or stopped.
    """

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        base_env: Optional[Mapping[str, str]] = None,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
        timeout_override_s: Optional[float] = None,
        startup_timeout_override_s: Optional[float] = None,
    ):
        """
        Initialize supervisor.

        Args:
            log_dir: Where detached processes write their output
            base_env: Environment the overlay is applied to (defaults to os.environ)
            grace_period_s: Time between SIGTERM and SIGKILL
            timeout_override_s: Replaces every step's own timeout when set
            startup_timeout_override_s: Replaces readiness probe timeouts when set
        """
        self.log_dir = Path(log_dir) if log_dir else Path.cwd()
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.grace_period_s = grace_period_s
        self.timeout_override_s = timeout_override_s
        self.startup_timeout_override_s = startup_timeout_override_s
        self._detached: dict[str, subprocess.Popen] = {}

    def prepare(self, step: Step, profile: NetworkProfile) -> tuple[list[str], Optional[str], dict[str, str]]:
        """
        Render a step for the profile.

        Returns:
            (argv, cwd, env)

        Raises:
            ConfigError: If a template references an unknown placeholder
        """
        values = profile.placeholders()
        argv = [substitute_placeholders(part, values) for part in step.command]
        cwd = substitute_placeholders(step.cwd, values) if step.cwd else None

        env = dict(self.base_env)
        env.update(profile.env_overlay())
        env.update({k: substitute_placeholders(v, values) for k, v in step.env})
        return argv, cwd, env

    def run(self, step: Step, profile: NetworkProfile, timeout: Optional[float] = None) -> ProcessResult:
        """
        Run one step to completion (or to readiness, for detached steps).

        Args:
            step: The step to run
            profile: Network profile for rendering and the environment overlay
            timeout: Overrides the step's timeout_s

        Returns:
            ProcessResult

        Raises:
            NonZeroExit: Exit code differs from step.expected_exit_code
            Timeout: Time limit exceeded; the process group was killed
            Cancelled: Operator interrupt; the process group was killed
            LaunchFailed: The executable could not be started
        """
        if step.detached:
            return self._start_detached(step, profile)

        argv, cwd, env = self.prepare(step, profile)
        if timeout is not None:
            limit = timeout
        elif self.timeout_override_s is not None:
            limit = self.timeout_override_s
        else:
            limit = step.timeout_s

        logger.info(
            f"Running {step.step_id}: {' '.join(argv)}",
            extra={"network": profile.name, "event": "step_started",
                   "metadata": {"step_id": step.step_id, "cwd": cwd, "timeout_s": limit}},
        )

        started = time.monotonic()
        proc = self._spawn(step, argv, cwd, env, stdout=subprocess.PIPE, stderr=subprocess.PIPE)

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        readers = [
            threading.Thread(target=self._drain, args=(proc.stdout, stdout_lines, step.step_id), daemon=True),
            threading.Thread(target=self._drain, args=(proc.stderr, stderr_lines, step.step_id), daemon=True),
        ]
        for reader in readers:
            reader.start()

        def _captured() -> str:
            return "".join(stdout_lines) + "".join(stderr_lines)

        try:
            proc.wait(timeout=limit)
        except subprocess.TimeoutExpired:
            self._kill_group(proc)
            self._join(readers)
            logger.error(
                f"Step {step.step_id} timed out after {limit}s",
                extra={"network": profile.name, "event": "step_timeout",
                       "metadata": {"step_id": step.step_id}},
            )
            raise Timeout(limit, step_id=step.step_id, output=_captured())
        except KeyboardInterrupt:
            self._kill_group(proc)
            self._join(readers)
            logger.warning(
                f"Step {step.step_id} cancelled by operator",
                extra={"network": profile.name, "event": "step_cancelled",
                       "metadata": {"step_id": step.step_id}},
            )
            raise Cancelled(step_id=step.step_id, output=_captured())

        self._join(readers)
        result = ProcessResult(
            step_id=step.step_id,
            command=tuple(argv),
            exit_code=proc.returncode,
            stdout="".join(stdout_lines),
            stderr="".join(stderr_lines),
            duration_s=time.monotonic() - started,
            pid=proc.pid,
        )

        if result.exit_code != step.expected_exit_code:
            logger.error(
                f"Step {step.step_id} exited with {result.exit_code}",
                extra={"network": profile.name, "event": "step_failed",
                       "metadata": {"step_id": step.step_id, "exit_code": result.exit_code}},
            )
            raise NonZeroExit(result.exit_code, result.output, step_id=step.step_id,
                              expected=step.expected_exit_code)

        logger.info(
            f"Step {step.step_id} completed in {result.duration_s:.1f}s",
            extra={"network": profile.name, "event": "step_completed",
                   "metadata": {"step_id": step.step_id, "duration_s": result.duration_s}},
        )
        return result

    def _spawn(self, step: Step, argv: list[str], cwd: Optional[str], env: dict[str, str], **streams) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                argv,
                cwd=cwd,
                env=env,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
                **streams,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise LaunchFailed(f"Cannot start step '{step.step_id}': {e}", step_id=step.step_id)

    def _drain(self, stream, sink: list[str], step_id: str) -> None:
        """Copy a pipe into sink line by line, logging as it goes."""
        for line in iter(stream.readline, ""):
            sink.append(line)
            logger.debug(f"[{step_id}] {line.rstrip()}")
        stream.close()

    @staticmethod
    def _join(readers: list[threading.Thread]) -> None:
        for reader in readers:
            reader.join(timeout=5)

    def _kill_group(self, proc: subprocess.Popen) -> None:
        """
        SIGTERM the process group, then SIGKILL after the grace period.

        Also reaches children left behind when the group leader already exited.
        """
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            proc.poll()
            return
        deadline = time.monotonic() + self.grace_period_s
        while time.monotonic() < deadline:
            if not self._group_alive(proc):
                return
            time.sleep(0.05)
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()

    @staticmethod
    def _group_alive(proc: subprocess.Popen) -> bool:
        proc.poll()
        try:
            os.killpg(proc.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    # -------------------------------------------------------------------------
    # Detached processes
    # -------------------------------------------------------------------------

    def _start_detached(self, step: Step, profile: NetworkProfile) -> ProcessResult:
        argv, cwd, env = self.prepare(step, profile)
        probe = step.ready
        startup_timeout = (
            self.startup_timeout_override_s
            if self.startup_timeout_override_s is not None
            else probe.startup_timeout_s
        )

        existing = self._detached.get(step.step_id)
        if existing is not None and existing.poll() is None:
            raise LaunchFailed(
                f"Step '{step.step_id}' is already running (pid {existing.pid})",
                step_id=step.step_id,
            )

        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"{step.step_id}-{profile.name}.log"
        offset = log_path.stat().st_size if log_path.exists() else 0

        logger.info(
            f"Starting {step.step_id} in background: {' '.join(argv)}",
            extra={"network": profile.name, "event": "detached_started",
                   "metadata": {"step_id": step.step_id, "log_file": str(log_path)}},
        )

        started = time.monotonic()
        with open(log_path, "a") as log_handle:
            proc = self._spawn(step, argv, cwd, env, stdout=log_handle, stderr=subprocess.STDOUT)

        deadline = started + startup_timeout
        try:
            while True:
                if proc.poll() is not None:
                    self._kill_group(proc)
                    raise NonZeroExit(
                        proc.returncode,
                        self._read_log(log_path, offset),
                        step_id=step.step_id,
                        expected=step.expected_exit_code,
                    )
                if self._is_ready(probe, log_path, offset):
                    break
                if time.monotonic() >= deadline:
                    self._kill_group(proc)
                    raise Timeout(startup_timeout, step_id=step.step_id,
                                  output=self._read_log(log_path, offset))
                time.sleep(READY_POLL_INTERVAL_S)
        except KeyboardInterrupt:
            self._kill_group(proc)
            raise Cancelled(step_id=step.step_id, output=self._read_log(log_path, offset))

        self._detached[step.step_id] = proc
        duration = time.monotonic() - started
        logger.info(
            f"{step.step_id} ready after {duration:.1f}s (pid {proc.pid})",
            extra={"network": profile.name, "event": "detached_ready",
                   "metadata": {"step_id": step.step_id, "pid": proc.pid}},
        )
        return ProcessResult(
            step_id=step.step_id,
            command=tuple(argv),
            exit_code=None,
            stdout=self._read_log(log_path, offset),
            duration_s=duration,
            pid=proc.pid,
            detached=True,
        )

    @staticmethod
    def _read_log(log_path: Path, offset: int) -> str:
        if not log_path.exists():
            return ""
        with open(log_path, errors="replace") as f:
            f.seek(offset)
            return f.read()

    def _is_ready(self, probe: ReadinessProbe, log_path: Path, offset: int) -> bool:
        if probe.tcp_port is not None:
            try:
                with socket.create_connection((probe.tcp_host, probe.tcp_port), timeout=1):
                    return True
            except OSError:
                return False
        return re.search(probe.log_pattern, self._read_log(log_path, offset)) is not None

    @property
    def detached_processes(self) -> dict[str, int]:
        """step_id -> pid of detached processes still running."""
        return {sid: p.pid for sid, p in self._detached.items() if p.poll() is None}

    def attach(self, step_id: str) -> int:
        """
        Block on a detached process until it exits.

        Returns:
            The process exit code

        Raises:
            KeyError: If no detached process has this step id
            Cancelled: On operator interrupt (the process group is terminated)
        """
        proc = self._detached[step_id]
        try:
            return proc.wait()
        except KeyboardInterrupt:
            self._kill_group(proc)
            raise Cancelled(step_id=step_id)
        finally:
            if proc.poll() is not None:
                self._detached.pop(step_id, None)

    def terminate(self, step_id: str) -> None:
        """Stop a detached process group."""
        proc = self._detached.pop(step_id, None)
        if proc is not None:
            self._kill_group(proc)

    def terminate_all(self) -> None:
        """Stop every detached process group."""
        for step_id in list(self._detached):
            self.terminate(step_id)
