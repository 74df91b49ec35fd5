"""Tests for mintorch.supervisor.

These spawn real subprocesses using the running interpreter.
"""

import os
import socket
import subprocess
import sys
import time
from unittest.mock import patch

import pytest

from mintorch.errors import Cancelled, ConfigError, LaunchFailed, NonZeroExit, Timeout
from mintorch.schemas import ReadinessProbe, Step
from mintorch.supervisor import ProcessSupervisor


def python_step(step_id: str, code: str, **kwargs) -> Step:
    return Step(step_id=step_id, command=(sys.executable, "-c", code), **kwargs)


@pytest.fixture
def sup(tmp_path):
    supervisor = ProcessSupervisor(log_dir=tmp_path / "logs", grace_period_s=1.0)
    yield supervisor
    supervisor.terminate_all()


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


needs_proc = pytest.mark.skipif(not os.path.isdir("/proc/self"), reason="needs /proc")


def spawn_grandchild(pid_file, then: str) -> str:
    """Code that starts a long-running child, records its pid, then runs `then`."""
    return (
        "import subprocess, sys, time\n"
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        f"with open({str(pid_file)!r}, 'w') as f:\n"
        "    f.write(str(child.pid))\n"
        "print('spawned', flush=True)\n"
        + then
    )


def wait_for_file(path, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not (path.exists() and path.read_text()):
        assert time.monotonic() < deadline, f"{path} never written"
        time.sleep(0.05)


def process_gone(pid: int, timeout: float = 5.0) -> bool:
    """True once pid no longer exists or is a zombie."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with open(f"/proc/{pid}/stat") as f:
                state = f.read().rsplit(")", 1)[1].split()[0]
        except FileNotFoundError:
            return True
        if state in ("Z", "X"):
            return True
        time.sleep(0.05)
    return False


class TestForegroundRun:
    """Tests for blocking steps."""

    def test_captures_output(self, sup, profile):
        result = sup.run(python_step("hello", "print('hello'); import sys; print('warn', file=sys.stderr)"), profile)

        assert result.exit_code == 0
        assert result.stdout == "hello\n"
        assert result.stderr == "warn\n"
        assert "hello" in result.output and "warn" in result.output
        assert result.detached is False
        assert result.duration_s >= 0

    def test_renders_placeholders_in_arguments(self, sup, profile):
        step = Step(
            step_id="echo",
            command=(sys.executable, "-c", "import sys; print(sys.argv[1])", "factory.${ACCOUNT_PREFIX}"),
        )

        result = sup.run(step, profile)

        assert result.stdout.strip() == "factory.dev.testnet"
        assert result.command[-1] == "factory.dev.testnet"

    def test_applies_environment_overlay(self, sup, profile):
        code = "import os; print(os.environ['NEAR_ENV'], os.environ['POSTGRES_DB'], os.environ['EXTRA'])"
        step = python_step("env", code, env=(("EXTRA", "${NETWORK}-x"),))

        result = sup.run(step, profile)

        assert result.stdout.split() == ["testnet", "mintbase", "testnet-x"]

    def test_environment_overlay_does_not_touch_parent(self, sup, profile):
        before = dict(os.environ)
        sup.run(python_step("noop", "pass"), profile)

        assert dict(os.environ) == before

    def test_renders_cwd(self, sup, profile, project_root):
        step = python_step("cwd", "import os; print(os.getcwd())", cwd="${PROJECT_ROOT}/src")

        result = sup.run(step, profile)

        assert result.stdout.strip() == str((project_root / "src").resolve())

    def test_unknown_placeholder_is_config_error(self, sup, profile):
        step = Step(step_id="bad", command=(sys.executable, "-c", "pass", "${NOT_DEFINED}"))

        with pytest.raises(ConfigError, match="NOT_DEFINED"):
            sup.run(step, profile)

    def test_nonzero_exit_raises_with_output(self, sup, profile):
        step = python_step("fail", "import sys; print('boom', file=sys.stderr); sys.exit(3)")

        with pytest.raises(NonZeroExit) as exc_info:
            sup.run(step, profile)

        assert exc_info.value.code == 3
        assert exc_info.value.step_id == "fail"
        assert "boom" in exc_info.value.output

    def test_expected_exit_code_is_success(self, sup, profile):
        result = sup.run(python_step("three", "import sys; sys.exit(3)", expected_exit_code=3), profile)

        assert result.exit_code == 3

    def test_zero_is_failure_when_other_code_expected(self, sup, profile):
        with pytest.raises(NonZeroExit) as exc_info:
            sup.run(python_step("zero", "pass", expected_exit_code=1), profile)

        assert exc_info.value.code == 0
        assert exc_info.value.expected == 1

    def test_timeout_kills_process(self, sup, profile):
        step = python_step("sleepy", "import time; print('started', flush=True); time.sleep(30)", timeout_s=0.5)

        started = time.monotonic()
        with pytest.raises(Timeout) as exc_info:
            sup.run(step, profile)

        assert time.monotonic() - started < 10
        assert exc_info.value.step_id == "sleepy"
        assert "started" in exc_info.value.output

    def test_timeout_override(self, tmp_path, profile):
        sup = ProcessSupervisor(log_dir=tmp_path, grace_period_s=0.5, timeout_override_s=0.3)

        with pytest.raises(Timeout):
            sup.run(python_step("sleepy", "import time; time.sleep(30)"), profile)

    def test_explicit_zero_timeout_is_honoured(self, sup, profile):
        step = python_step("sleepy", "import time; time.sleep(30)", timeout_s=60)

        started = time.monotonic()
        with pytest.raises(Timeout) as exc_info:
            sup.run(step, profile, timeout=0)

        assert exc_info.value.timeout_s == 0
        assert time.monotonic() - started < 10

    def test_undecodable_output_is_replaced(self, sup, profile):
        code = "import sys; sys.stdout.buffer.write(b'\\xff\\n' + b'x' * 200000 + b'\\n')"

        result = sup.run(python_step("bytes", code, timeout_s=20), profile)

        assert result.exit_code == 0
        assert result.stdout.startswith("\ufffd\n")
        assert len(result.stdout) > 200000

    @needs_proc
    def test_timeout_kills_whole_group(self, sup, profile, tmp_path):
        pid_file = tmp_path / "grandchild.pid"
        step = python_step("spawner", spawn_grandchild(pid_file, "time.sleep(30)\n"), timeout_s=2)

        with pytest.raises(Timeout):
            sup.run(step, profile)

        wait_for_file(pid_file)
        assert process_gone(int(pid_file.read_text()))

    def test_missing_executable_is_launch_failure(self, sup, profile):
        step = Step(step_id="ghost", command=("/nonexistent/bin/near",))

        with pytest.raises(LaunchFailed, match="ghost"):
            sup.run(step, profile)

    def test_missing_cwd_is_launch_failure(self, sup, profile, tmp_path):
        step = python_step("nowhere", "pass", cwd=str(tmp_path / "missing"))

        with pytest.raises(LaunchFailed):
            sup.run(step, profile)

    def test_interrupt_terminates_and_cancels(self, sup, profile):
        real_wait = subprocess.Popen.wait
        interrupted = []

        def wait(self, timeout=None):
            if not interrupted:
                interrupted.append(True)
                raise KeyboardInterrupt
            return real_wait(self, timeout=timeout)

        step = python_step("long", "import time; time.sleep(30)")
        with patch.object(subprocess.Popen, "wait", autospec=True, side_effect=wait):
            with pytest.raises(Cancelled) as exc_info:
                sup.run(step, profile)

        assert exc_info.value.exit_code == 130

    @needs_proc
    def test_interrupt_kills_whole_group(self, sup, profile, tmp_path):
        pid_file = tmp_path / "grandchild.pid"
        real_wait = subprocess.Popen.wait
        interrupted = []

        def wait(self, timeout=None):
            if not interrupted:
                interrupted.append(True)
                wait_for_file(pid_file)
                raise KeyboardInterrupt
            return real_wait(self, timeout=timeout)

        step = python_step("spawner", spawn_grandchild(pid_file, "time.sleep(30)\n"))
        with patch.object(subprocess.Popen, "wait", autospec=True, side_effect=wait):
            with pytest.raises(Cancelled):
                sup.run(step, profile)

        assert process_gone(int(pid_file.read_text()))


class TestDetachedRun:
    """Tests for background steps with readiness probes."""

    def test_returns_when_log_pattern_seen(self, sup, profile, tmp_path):
        code = "import time; print('Starting streamer', flush=True); time.sleep(30)"
        step = python_step(
            "indexer", code, detached=True,
            ready=ReadinessProbe(log_pattern="(?i)starting streamer", startup_timeout_s=10),
        )

        result = sup.run(step, profile)

        assert result.detached is True
        assert result.exit_code is None
        assert "Starting streamer" in result.output
        assert sup.detached_processes == {"indexer": result.pid}
        assert (tmp_path / "logs" / "indexer-testnet.log").exists()

    def test_returns_when_port_accepts(self, sup, profile):
        port = free_port()
        code = (
            "import socket, time\n"
            "s = socket.socket()\n"
            "s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)\n"
            f"s.bind(('127.0.0.1', {port}))\n"
            "s.listen()\n"
            "time.sleep(30)\n"
        )
        step = python_step(
            "server", code, detached=True,
            ready=ReadinessProbe(tcp_port=port, startup_timeout_s=10),
        )

        result = sup.run(step, profile)

        assert "server" in sup.detached_processes
        assert result.pid == sup.detached_processes["server"]

    def test_early_exit_is_failure(self, sup, profile):
        code = "import sys; print('database unreachable', flush=True); sys.exit(4)"
        step = python_step(
            "indexer", code, detached=True,
            ready=ReadinessProbe(log_pattern="ready", startup_timeout_s=10),
        )

        with pytest.raises(NonZeroExit) as exc_info:
            sup.run(step, profile)

        assert exc_info.value.code == 4
        assert "database unreachable" in exc_info.value.output
        assert sup.detached_processes == {}

    def test_startup_timeout_kills_process(self, sup, profile):
        step = python_step(
            "indexer", "import time; time.sleep(30)", detached=True,
            ready=ReadinessProbe(log_pattern="never printed", startup_timeout_s=0.5),
        )

        with pytest.raises(Timeout):
            sup.run(step, profile)

        assert sup.detached_processes == {}

    @needs_proc
    def test_startup_timeout_kills_whole_group(self, sup, profile, tmp_path):
        pid_file = tmp_path / "grandchild.pid"
        step = python_step(
            "indexer", spawn_grandchild(pid_file, "time.sleep(30)\n"), detached=True,
            ready=ReadinessProbe(log_pattern="never printed", startup_timeout_s=2),
        )

        with pytest.raises(Timeout):
            sup.run(step, profile)

        wait_for_file(pid_file)
        assert process_gone(int(pid_file.read_text()))

    @needs_proc
    def test_early_exit_kills_leftover_children(self, sup, profile, tmp_path):
        pid_file = tmp_path / "grandchild.pid"
        step = python_step(
            "indexer", spawn_grandchild(pid_file, "sys.exit(4)\n"), detached=True,
            ready=ReadinessProbe(log_pattern="never printed", startup_timeout_s=10),
        )

        with pytest.raises(NonZeroExit) as exc_info:
            sup.run(step, profile)

        assert exc_info.value.code == 4
        wait_for_file(pid_file)
        assert process_gone(int(pid_file.read_text()))

    def test_terminate_all_stops_processes(self, sup, profile):
        step = python_step(
            "indexer", "import time; print('ready', flush=True); time.sleep(30)", detached=True,
            ready=ReadinessProbe(log_pattern="ready", startup_timeout_s=10),
        )
        sup.run(step, profile)

        sup.terminate_all()

        assert sup.detached_processes == {}

    def test_attach_returns_exit_code(self, sup, profile):
        code = "import time, sys; print('ready', flush=True); time.sleep(0.5); sys.exit(0)"
        step = python_step(
            "indexer", code, detached=True,
            ready=ReadinessProbe(log_pattern="ready", startup_timeout_s=10),
        )
        sup.run(step, profile)

        assert sup.attach("indexer") == 0
        assert sup.detached_processes == {}

    def test_attach_unknown_step(self, sup):
        with pytest.raises(KeyError):
            sup.attach("indexer")

    def test_second_start_while_running_fails(self, sup, profile):
        step = python_step(
            "indexer", "import time; print('ready', flush=True); time.sleep(30)", detached=True,
            ready=ReadinessProbe(log_pattern="ready", startup_timeout_s=10),
        )
        sup.run(step, profile)

        with pytest.raises(LaunchFailed, match="already running"):
            sup.run(step, profile)
