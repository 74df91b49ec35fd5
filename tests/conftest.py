import pytest

from mintorch.errors import SupervisorError
from mintorch.orchestrator import Orchestrator
from mintorch.registry import RecipeRegistry
from mintorch.schemas import (
    DatabaseSettings,
    FingerprintSpec,
    NetworkProfile,
    ProcessResult,
    Recipe,
    Step,
)
from mintorch.state_store import InMemoryStateStore


def make_profile(name: str = "testnet", project_root: str = "/tmp/project", account_prefix: str = "dev.testnet"):
    return NetworkProfile(
        name=name,
        rpc_endpoint=f"https://rpc.{name}.example",
        account_prefix=account_prefix,
        credentials_path=f"/tmp/creds/{name}",
        database=DatabaseSettings(
            user="indexer",
            password="s3cret",
            host="localhost",
            database="mintbase",
            port=5432,
        ),
        variables={
            "PROJECT_ROOT": project_root,
            "STORE_NAME": "store",
            "STORE_SYMBOL": "STORE",
            "STORE_OWNER": account_prefix,
        },
    )


def make_step(step_id: str, *command: str, **kwargs) -> Step:
    return Step(step_id=step_id, command=tuple(command) or ("true",), **kwargs)


def make_registry() -> RecipeRegistry:
    """Registry shaped like the built-in recipes, with harmless commands."""
    return RecipeRegistry([
        Recipe(
            name="build-contracts",
            steps=(make_step("compile", "cargo", "build", "--release"),),
            fingerprint=FingerprintSpec(files=("src/*.rs",)),
        ),
        Recipe(
            name="create-accounts",
            steps=(
                make_step("create-factory", "near", "create-account", "factory.${ACCOUNT_PREFIX}"),
                make_step("create-market", "near", "create-account", "market.${ACCOUNT_PREFIX}"),
            ),
            fingerprint=FingerprintSpec(values=("factory.${ACCOUNT_PREFIX}", "market.${ACCOUNT_PREFIX}")),
        ),
        Recipe(
            name="deploy",
            requires=("build-contracts", "create-accounts"),
            steps=(
                make_step("deploy-factory", "near", "deploy", "factory.${ACCOUNT_PREFIX}"),
                make_step("deploy-market", "near", "deploy", "market.${ACCOUNT_PREFIX}"),
            ),
        ),
        Recipe(
            name="create-store",
            requires=("deploy",),
            steps=(make_step("call-create-store", "near", "call", "factory.${ACCOUNT_PREFIX}", "create_store"),),
            fingerprint=FingerprintSpec(values=("${STORE_NAME}",)),
        ),
        Recipe(
            name="run-indexer",
            record=False,
            failure_exit_code=2,
            steps=(
                make_step("check-database", "pg_isready", "-h", "${POSTGRES_HOST}"),
                make_step("start-indexer", "mintbase-indexer", "run"),
            ),
        ),
    ])


class FakeSupervisor:
    """Records which steps ran instead of spawning processes."""

    def __init__(self, failures=None):
        self.calls: list[str] = []
        self.rendered: list[tuple[str, ...]] = []
        self.failures: dict[str, SupervisorError] = dict(failures or {})

    def run(self, step, profile, timeout=None):
        from mintorch.utils import substitute_placeholders

        self.calls.append(step.step_id)
        argv = tuple(substitute_placeholders(part, profile.placeholders()) for part in step.command)
        self.rendered.append(argv)
        if step.step_id in self.failures:
            raise self.failures[step.step_id]
        return ProcessResult(step_id=step.step_id, command=argv, exit_code=0, stdout="ok\n", pid=4242)

    @property
    def detached_processes(self):
        return {}

    def terminate_all(self):
        pass


@pytest.fixture
def project_root(tmp_path_factory):
    root = tmp_path_factory.mktemp("project")
    (root / "src").mkdir(parents=True)
    (root / "src" / "lib.rs").write_text("pub fn mint() {}\n")
    return root


@pytest.fixture
def profile(project_root):
    return make_profile("testnet", project_root=str(project_root))


@pytest.fixture
def local_profile(project_root):
    return make_profile("local", project_root=str(project_root), account_prefix="test.near")


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def orchestrator(registry, store, supervisor, profile, project_root):
    return Orchestrator(registry, store, supervisor, profile, project_root)


@pytest.fixture
def profile_factory():
    return make_profile


@pytest.fixture
def step_factory():
    return make_step


@pytest.fixture
def supervisor_factory():
    return FakeSupervisor
