"""
CLI interface for mintorch.

One subcommand per built-in recipe plus operational commands:

    mintorch --network testnet deploy
    mintorch --network local run-indexer --attach
    mintorch --network testnet status --history

Exit codes: a failed recipe exits with its failure code (1, or 2 for
run-indexer); configuration errors 3; state store errors 4; a concurrent run
on the same network 5; broken recipe definitions 6; operator interrupt 130.
"""

import os
from pathlib import Path

import click

from mintorch import __version__
from mintorch.errors import Cancelled, ConfigError, MintorchError
from mintorch.registry import RecipeRegistry

# Recipes that get their own subcommand
BUILTIN_REGISTRY = RecipeRegistry.builtin()


@click.group()
@click.version_option(version=__version__, prog_name="mintorch")
@click.option("--network", envvar="NETWORK", help="Target network: local, testnet or mainnet")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help="Configuration file (default: $MINTORCH_HOME/config.yaml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Stream subprocess output to the console")
@click.pass_context
def main(ctx, network, config_path, verbose):
    """
    mintorch - Deployment orchestrator for the marketplace contracts.

    Builds, deploys and configures the contracts and runs the indexer
    against a local, testnet or mainnet network.
    """
    from mintorch.config import MintorchConfig, load_config

    ctx.ensure_object(dict)
    ctx.obj["network"] = network
    ctx.obj["verbose"] = verbose
    try:
        ctx.obj["config"] = load_config(config_path)
    except FileNotFoundError:
        if config_path is not None:
            ctx.obj["config_error"] = f"Config file not found: {config_path}"
        else:
            # No config.yaml yet: everything comes from the environment
            ctx.obj["config"] = MintorchConfig()
    except ConfigError as e:
        ctx.obj["config_error"] = str(e)


def _fail(error: MintorchError) -> None:
    from mintorch.utils import print_error

    print_error(str(error))
    raise SystemExit(error.exit_code)


def _get_config(ctx):
    if "config" not in ctx.obj:
        _fail(ConfigError(ctx.obj.get("config_error", "Config not loaded")))
    return ctx.obj["config"]


def _setup(ctx):
    """Resolve config, profile and registry; set up logging."""
    from mintorch.config import resolve
    from mintorch.utils import setup_logging

    config = _get_config(ctx)
    network = ctx.obj.get("network")
    if not network:
        _fail(ConfigError("No network selected: pass --network or set NETWORK"))

    try:
        profile = resolve(network, os.environ, config)
        registry = RecipeRegistry.builtin(config.recipes_file)
    except MintorchError as e:
        _fail(e)

    setup_logging(
        config.get_log_file_path(),
        log_level="DEBUG" if ctx.obj.get("verbose") else config.log_level,
        log_format=config.log_format,
        console_output=config.console_logging,
    )
    return config, profile, registry


def _build_orchestrator(config, profile, registry):
    from mintorch.orchestrator import Orchestrator
    from mintorch.state_store import FileStateStore
    from mintorch.supervisor import ProcessSupervisor

    supervisor = ProcessSupervisor(
        log_dir=config.log_path,
        timeout_override_s=config.step_timeout_s,
        startup_timeout_override_s=config.indexer_startup_timeout_s,
    )
    store = FileStateStore(config.state_path)
    return Orchestrator(registry, store, supervisor, profile, config.project_path), store


def _run_recipe_impl(ctx, recipe: str, dry_run: bool = False, force: bool = False, attach: bool = False):
    """Run a recipe and exit with its code."""
    from mintorch.utils import print_banner, print_error, print_info, print_report, print_warning

    config, profile, registry = _setup(ctx)
    orchestrator, _ = _build_orchestrator(config, profile, registry)

    if dry_run:
        print_banner(f"DRY RUN: {recipe} on {profile.name}")

    try:
        report = orchestrator.run(recipe, dry_run=dry_run, force=force)
    except MintorchError as e:
        _fail(e)
    except KeyboardInterrupt:
        _fail(Cancelled())

    print_report(report)
    if not report.success:
        raise SystemExit(report.exit_code)

    if attach and not dry_run:
        supervisor = orchestrator.supervisor
        for step_id, pid in supervisor.detached_processes.items():
            print_info(f"Attached to {step_id} (pid {pid}), Ctrl-C to stop")
            try:
                code = supervisor.attach(step_id)
            except Cancelled as e:
                print_warning(str(e))
                raise SystemExit(e.exit_code)
            if code != 0:
                print_error(f"{step_id} exited with code {code}")
                raise SystemExit(registry.get(recipe).failure_exit_code)


def _recipe_command(name: str, description: str, with_attach: bool = False):
    """Build the subcommand for one recipe."""

    @click.option("--force", is_flag=True, help="Run even if already satisfied")
    @click.option("--dry-run", is_flag=True, help="Show what would run without executing")
    @click.pass_context
    def command(ctx, dry_run: bool, force: bool, attach: bool = False):
        _run_recipe_impl(ctx, name, dry_run=dry_run, force=force, attach=attach)

    if with_attach:
        command = click.option(
            "--attach", is_flag=True, help="Stay in the foreground until interrupted"
        )(command)
    command.__doc__ = description
    return main.command(name)(command)


for _recipe in BUILTIN_REGISTRY:
    _recipe_command(
        _recipe.name,
        _recipe.description,
        with_attach=any(step.detached for step in _recipe.steps),
    )


@main.command("run")
@click.argument("recipe")
@click.option("--dry-run", is_flag=True, help="Show what would run without executing")
@click.option("--force", is_flag=True, help="Run even if already satisfied")
@click.pass_context
def run(ctx, recipe: str, dry_run: bool, force: bool):
    """
    Run a recipe by name.

    RECIPE may be any recipe in the active definitions, including ones added
    through recipes_file.

    Examples:

        mintorch --network testnet run deploy

        mintorch --network testnet run create-store --dry-run
    """
    _run_recipe_impl(ctx, recipe, dry_run=dry_run, force=force)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize mintorch configuration."""
    from mintorch.config import get_mintorch_home
    import yaml

    home = get_mintorch_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = {
        "project_root": ".",
        "state_dir": str(home / "state"),
        "log_dir": str(home / "logs"),
        "log_level": "INFO",
        "log_format": "structured",
        "env_file": str(home / ".env"),
        "credentials_file": None,
        "store_name": "store",
        "store_symbol": "STORE",
        "networks": {
            "local": {"rpc_endpoint": "http://127.0.0.1:3030"},
        },
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text(
            "# NETWORK=testnet\n"
            "# ACCOUNT_PREFIX=example.testnet\n"
            "# POSTGRES_USER=...\n"
            "# POSTGRES_PASSWORD=...\n"
            "# POSTGRES_HOST=localhost\n"
            "# POSTGRES_DATABASE=...\n"
        )

    click.echo(f"Initialized mintorch config at {cfg_path}")


@main.command("recipes")
@click.pass_context
def list_recipes(ctx):
    """List recipes with their prerequisites."""
    config = _get_config(ctx)
    try:
        registry = RecipeRegistry.builtin(config.recipes_file)
    except MintorchError as e:
        _fail(e)

    for recipe in registry:
        requires = f" (requires: {', '.join(recipe.requires)})" if recipe.requires else ""
        click.echo(f"{recipe.name}{requires}")
        if recipe.description:
            click.echo(f"  {recipe.description}")


@main.command("status")
@click.option("--history", is_flag=True, help="Also show superseded records")
@click.pass_context
def status(ctx, history: bool):
    """Show execution records for the network."""
    from rich.table import Table

    from mintorch.utils import console

    config, profile, registry = _setup(ctx)
    _, store = _build_orchestrator(config, profile, registry)

    try:
        records = {r.recipe: r for r in store.records(profile)}
        superseded = store.history(profile) if history else []
    except MintorchError as e:
        _fail(e)

    table = Table(title=f"Execution records ({profile.name})")
    table.add_column("Recipe", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Recorded at")
    table.add_column("Fingerprint")
    for recipe in registry:
        record = records.get(recipe.name)
        if not recipe.record:
            table.add_row(recipe.name, "not recorded", "-", "-")
        elif record is None:
            table.add_row(recipe.name, "pending", "-", "-")
        else:
            table.add_row(
                recipe.name,
                "recorded",
                record.recorded_at.strftime("%Y-%m-%d %H:%M:%S"),
                record.fingerprint[:19],
            )
    console.print(table)

    if history:
        click.echo()
        if not superseded:
            click.echo("No history.")
        for record in superseded:
            click.echo(f"{record.recorded_at.isoformat(timespec='seconds')}  {record.recipe}  {record.fingerprint}")


@main.command("reset")
@click.argument("recipe")
@click.pass_context
def reset(ctx, recipe: str):
    """
    Invalidate a recipe's record so it runs again.

    Example:

        mintorch --network testnet reset create-store
    """
    from mintorch.utils import print_info, print_success

    config, profile, registry = _setup(ctx)
    _, store = _build_orchestrator(config, profile, registry)

    try:
        registry.get(recipe)
        with store.lock(profile):
            removed = store.invalidate(recipe, profile)
    except MintorchError as e:
        _fail(e)

    if removed:
        print_success(f"Reset {recipe} on {profile.name}")
    else:
        print_info(f"{recipe} has no record on {profile.name}")


@main.command("shell")
@click.pass_context
def shell(ctx):
    """Interactive recipe menu."""
    from mintorch.shell import Shell

    config, profile, registry = _setup(ctx)
    orchestrator, store = _build_orchestrator(config, profile, registry)
    try:
        code = Shell(orchestrator, store).run()
    finally:
        orchestrator.supervisor.terminate_all()
    raise SystemExit(code)


if __name__ == "__main__":
    main()
