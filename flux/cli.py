"""CLI interface for the provisioning tool."""
import json
import os
import platform
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import List, Optional, Tuple

import typer

from flux import linux, modules, utils, workflows
from flux.config import (
    ConfigResolver,
    ResolvedConfig,
    default_config_path,
    load_config_file,
    merge_settings,
    parse_set_options,
)
from flux.engine import ExecutionEngine, TyperConfirmer
from flux.errors import ConfigError, NotFound
from flux.registry import ModuleRegistry, WorkflowRegistry
from flux.report import ExecutionStep, OutcomeReport, OverallStatus, StepStatus


class ExitCode(IntEnum):
    OK = 0
    FAILURE = 1
    NOT_FOUND = 3
    CONFIG_ERROR = 4
    DECLINED = 5


STATUS_MARKS = {
    StepStatus.COMPLETED: "✓",
    StepStatus.FAILED: "✗",
    StepStatus.SKIPPED: "○",
}


@dataclass
class CliState:
    config_path: Optional[Path] = None
    set_options: List[str] = field(default_factory=list)
    assume_yes: bool = False
    dry_run: bool = False
    verbose: bool = False


app = typer.Typer(
    name="flux",
    help="A modular server provisioning tool.",
    add_completion=False,
    no_args_is_help=True,
)
list_app = typer.Typer(help="List available modules or workflows.", no_args_is_help=True)
app.add_typer(list_app, name="list")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to flux.toml"),
    set_options: List[str] = typer.Option([], "--set", help="Override a setting: module.key=value"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Run without confirmation prompts"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview changes without applying them"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    """Apply idempotent server configuration modules and workflows."""
    utils.setup_logging(verbose)
    ctx.obj = CliState(
        config_path=config,
        set_options=list(set_options),
        assume_yes=yes,
        dry_run=dry_run,
        verbose=verbose,
    )


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj if isinstance(ctx.obj, CliState) else CliState()


def _fail(message: str, code: ExitCode) -> None:
    typer.echo(f"❗ {message}", err=True)
    raise typer.Exit(int(code))


def split_module_args(args: List[str], schema) -> Tuple[dict, List[str]]:
    """Separate ``--key value`` flags for declared settings from module arguments."""
    overrides = {}
    remaining = []
    fields = schema.model_fields
    i = 0
    while i < len(args):
        arg = args[i]
        i += 1
        if not arg.startswith("--"):
            remaining.append(arg)
            continue
        key, sep, value = arg[2:].partition("=")
        key = key.replace("-", "_")
        negated = key.startswith("no_") and key[3:] in fields and fields[key[3:]].annotation is bool
        if negated and not sep:
            overrides[key[3:]] = "false"
            continue
        if key not in fields:
            remaining.append(arg)
            continue
        if sep:
            overrides[key] = value
        elif fields[key].annotation is bool and (i >= len(args) or args[i].startswith("--")):
            overrides[key] = "true"
        elif i < len(args):
            overrides[key] = args[i]
            i += 1
        else:
            remaining.append(arg)
    return overrides, remaining


def load_runtime(
    state: CliState,
    module_overrides: Optional[dict] = None,
    registry: Optional[ModuleRegistry] = None,
) -> Tuple[ModuleRegistry, WorkflowRegistry, ResolvedConfig]:
    """Build the registries and resolve configuration for this invocation."""
    if registry is None:
        registry = modules.build_registry()
    workflow_registry = workflows.build_workflow_registry()

    try:
        path = state.config_path or default_config_path()
        if state.config_path is not None and not state.config_path.is_file():
            raise ConfigError(f"Config file not found: {state.config_path}")
        cli_overrides = merge_settings(parse_set_options(state.set_options), module_overrides or {})
        cli_general = {}
        if state.dry_run:
            cli_general["mode"] = "dry-run"
        elif state.assume_yes:
            cli_general["mode"] = "auto"
        resolved = ConfigResolver(registry.schemas()).resolve(
            file_data=load_config_file(path),
            env=dict(os.environ),
            cli_overrides=cli_overrides,
            cli_general=cli_general,
            source=path,
        )
    except ConfigError as e:
        _fail(str(e), ExitCode.CONFIG_ERROR)

    general = resolved.general
    if general.log_file or general.log_level != "info":
        utils.setup_logging(state.verbose, general.log_file, general.log_level)
    return registry, workflow_registry, resolved


def print_step(step: ExecutionStep) -> None:
    """Progress line for a finished step."""
    line = f"{STATUS_MARKS[step.status]} {step.module_name}: {step.status.value}"
    if step.error is not None:
        line += f" ({step.error})"
    elif step.skip_reason is not None:
        line += f" ({step.skip_reason.value})"
    utils.log_action(line)


def exit_code_for(report: OutcomeReport) -> ExitCode:
    if isinstance(report.fatal_error, NotFound):
        return ExitCode.NOT_FOUND
    if report.fatal_error is not None:
        return ExitCode.FAILURE
    if report.declined:
        return ExitCode.DECLINED
    if report.overall_status is OverallStatus.ALL_COMPLETED:
        return ExitCode.OK
    return ExitCode.FAILURE


def finish(report: OutcomeReport, as_json: bool) -> None:
    """Print the report and exit with the matching code."""
    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        typer.echo("")
        for line in report.summary_lines():
            typer.echo(line)
    raise typer.Exit(int(exit_code_for(report)))


def _engine(registry, workflow_registry, resolved, as_json: bool = False) -> ExecutionEngine:
    return ExecutionEngine(
        registry,
        workflow_registry,
        resolved,
        confirmer=TyperConfirmer(),
        on_step=None if as_json else print_step,
        reboot_check=linux.reboot_required,
        reboot=linux.reboot,
    )


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def module(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Module name"),
    args: Optional[List[str]] = typer.Argument(None, help="Module flags and arguments"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
):
    """Run a single module."""
    state = _state(ctx)
    args = list(args or [])
    overrides = {}
    registry = modules.build_registry()
    if name in registry:
        flags, args = split_module_args(args, registry.get(name).settings_model)
        if flags:
            overrides = {name: flags}

    registry, workflow_registry, resolved = load_runtime(state, overrides, registry)
    if not as_json:
        utils.log_info(f"Running module: {name}")
    report = _engine(registry, workflow_registry, resolved, as_json).run_module(name, args)
    finish(report, as_json)


@app.command()
def workflow(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Workflow name"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
):
    """Run a predefined workflow."""
    registry, workflow_registry, resolved = load_runtime(_state(ctx))
    if not as_json:
        utils.log_info(f"Executing workflow: {name}")
    report = _engine(registry, workflow_registry, resolved, as_json).run_workflow(name)
    finish(report, as_json)


app.command("apply", help="Run a predefined workflow (alias of 'workflow').")(workflow)


@list_app.command("modules")
def list_modules():
    """List available modules."""
    registry = modules.build_registry()
    typer.echo("=== Available Flux Modules ===")
    for descriptor in registry.list():
        mark = "✓" if registry.get(descriptor.name).is_available() else "○"
        typer.echo(f"{descriptor.name:<12} {mark} {descriptor.description} (v{descriptor.version})")
    typer.echo(f"\nTotal modules: {len(registry)}")


@list_app.command("workflows")
def list_workflows():
    """List available workflows."""
    registry = workflows.build_workflow_registry()
    typer.echo("=== Available Flux Workflows ===")
    for descriptor in registry.list():
        policy = "stop on error" if descriptor.stop_on_error else "continue on error"
        typer.echo(f"{descriptor.name:<12} {descriptor.description}")
        typer.echo(f"{'':<12} modules: {', '.join(descriptor.module_sequence)} ({policy})")


@app.command()
def info(name: str = typer.Argument(..., help="Module name")):
    """Show a module's help text."""
    registry = modules.build_registry()
    try:
        target = registry.get(name)
    except NotFound as e:
        _fail(str(e), ExitCode.NOT_FOUND)
    typer.echo(f"=== {name} Module Help ===")
    typer.echo(target.help())


@app.command()
def status(ctx: typer.Context):
    """Show host and module status."""
    state = _state(ctx)
    typer.echo("=== System Status ===")
    typer.echo(f"  Hostname: {platform.node()}")
    typer.echo(f"  System: {platform.system()} {platform.release()} ({platform.machine()})")
    typer.echo(f"  Platform tags: {', '.join(sorted(utils.current_platforms()))}")
    typer.echo(f"  Running as root: {'yes' if utils.is_root() else 'no'}")
    config_path = state.config_path or default_config_path()
    typer.echo(f"  Config file: {config_path or 'none (defaults)'}")

    registry = modules.build_registry()
    available = [d.name for d in registry.list() if registry.get(d.name).is_available()]
    typer.echo("")
    typer.echo(f"Modules available: {len(available)}/{len(registry)}")
    for descriptor in registry.list():
        mark = "✓" if descriptor.name in available else "○"
        root = " [root]" if descriptor.requires_root else ""
        typer.echo(f"  {mark} {descriptor.name}{root}")


@app.command("config")
def show_config(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(None, help="Only show this module"),
):
    """Show the resolved settings."""
    registry, _, resolved = load_runtime(_state(ctx))
    names = [name] if name else registry.names()
    if name and name not in registry:
        _fail(str(NotFound("module", name)), ExitCode.NOT_FOUND)

    if not name:
        typer.echo(f"[general] mode = {resolved.general.mode}, log_level = {resolved.general.log_level}")
    for module_name in names:
        if module_name in resolved.errors:
            typer.echo(f"[{module_name}] ✗ {resolved.errors[module_name]}")
            continue
        typer.echo(f"[{module_name}]")
        for key, value in resolved[module_name].model_dump().items():
            typer.echo(f"  {key} = {json.dumps(value)}")


if __name__ == "__main__":
    app()
