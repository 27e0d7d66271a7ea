"""
Command Line Interface for StackPilot.
"""
import os
from pathlib import Path

import click
from dotenv import dotenv_values

from ..config import OrchestratorSettings
from ..CONVERTERS.plan_report import PlanReport
from ..errors import AdapterPermanent, StackPilotError
from ..MANAGERS.catalog import InMemoryStackCatalog
from ..MANAGERS.product_orchestrator import DeployProductRequest, ProductDeploymentOrchestrator
from ..MANAGERS.runtime_adapter import InMemoryRuntimeAdapter
from ..MODELS.product_deployment import ProductDeploymentStatus
from ..MODELS.variable_definition import VariableType
from ..PARSERS.manifest_parser import ManifestParser
from ..RUNNERS.plan_builder import PlanBuilder
from ..RUNNERS.plan_executor import DeploymentOrchestrator
from ..UTILS.logging_config import setup_logging


def parse_vars(ctx, param, value):
    """Turns repeated --var KEY=VALUE options into a dict."""
    values = {}
    for item in value:
        key, sep, val = item.partition('=')
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'")
        values[key.strip()] = val
    return values


@click.group()
@click.option('--file', '-f', default='stack.yml', help='Stack manifest path')
@click.option('--env-file', type=click.Path(exists=True, dir_okay=False), default=None,
              help='File with variable values (KEY=VALUE lines)')
@click.option('--verbose', '-v', is_flag=True, help='Show debug logging')
@click.pass_context
def cli(ctx, file, env_file, verbose):
    """
    StackPilot - multi-stack product deployment.

    Validates stack manifests, lists their variables and builds or
    simulates their deployment plans.
    """
    settings = OrchestratorSettings()
    setup_logging(level=None if verbose else settings.log_level, verbose=verbose)
    ctx.ensure_object(dict)
    ctx.obj['settings'] = settings
    ctx.obj['file'] = file
    ctx.obj['values'] = {}
    if env_file:
        ctx.obj['values'] = {k: v for k, v in dotenv_values(env_file).items() if v is not None}


def _read_manifest(ctx) -> str:
    path = ctx.obj['file']
    if not os.path.exists(path):
        click.echo(f"Error: {path} not found.")
        ctx.exit(1)
    with open(path, 'r') as f:
        return f.read()


def _values(ctx, variables):
    values = dict(ctx.obj['values'])
    values.update(variables)
    return values


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the manifest and report errors and warnings."""
    text = _read_manifest(ctx)
    result = ManifestParser().validate(text, ctx.obj['values'])

    for error in result.errors:
        click.echo(f"ERROR: {error}")
    for warning in result.warnings:
        click.echo(f"WARNING: {warning}")

    if not result.is_valid:
        click.echo("Manifest is invalid.")
        ctx.exit(1)
    click.echo("Manifest is valid.")


@cli.command()
@click.pass_context
def variables(ctx):
    """List the variables the manifest uses."""
    text = _read_manifest(ctx)
    try:
        detected = ManifestParser().detect_variables(text)
    except StackPilotError as e:
        click.echo(f"Error: {e}")
        ctx.exit(1)

    if not detected:
        click.echo("No variables.")
        return
    click.echo(f"{'NAME':25} {'TYPE':28} {'REQUIRED':9} DEFAULT")
    click.echo("-" * 72)
    for variable in detected:
        default = variable.default if variable.default is not None else ''
        if variable.type == VariableType.PASSWORD and default:
            default = '******'
        required = 'yes' if variable.required else 'no'
        click.echo(f"{variable.name:25} {variable.type.value:28} {required:9} {default}")


@cli.command()
@click.option('--stack-name', '-s', required=True, help='Name of the deployed stack')
@click.option('--var', 'variables', multiple=True, callback=parse_vars, help='Variable value as KEY=VALUE')
@click.option('--show-variables', is_flag=True, help='List the resolved variables')
@click.pass_context
def plan(ctx, stack_name, variables, show_variables):
    """Build and print the deployment plan."""
    text = _read_manifest(ctx)
    try:
        definition = ManifestParser().parse(text)
        deployment_plan = PlanBuilder().build(definition, _values(ctx, variables), stack_name)
    except (StackPilotError, ValueError) as e:
        click.echo(f"Error: {e}")
        ctx.exit(1)

    secrets = {v.name for v in definition.variables if v.type == VariableType.PASSWORD}
    click.echo(PlanReport().render_plan(deployment_plan, show_variables=show_variables, mask=secrets))


@cli.command()
@click.option('--stack-name', '-s', required=True, help='Name of the deployed stack')
@click.option('--var', 'variables', multiple=True, callback=parse_vars, help='Variable value as KEY=VALUE')
@click.option('--fail-on', multiple=True, help='Resource name whose creation fails')
@click.option('--best-effort', is_flag=True, help='Keep going after a failed step')
@click.pass_context
def simulate(ctx, stack_name, variables, fail_on, best_effort):
    """Apply the plan against an in-memory container runtime."""
    text = _read_manifest(ctx)
    try:
        definition = ManifestParser().parse(text)
        deployment_plan = PlanBuilder().build(definition, _values(ctx, variables), stack_name)
    except (StackPilotError, ValueError) as e:
        click.echo(f"Error: {e}")
        ctx.exit(1)

    adapter = InMemoryRuntimeAdapter()
    for name in fail_on:
        adapter.fail_on(name, AdapterPermanent("simulated failure"), operation='create_or_update')

    result = DeploymentOrchestrator(adapter).apply(deployment_plan, best_effort=best_effort)
    click.echo(PlanReport().render_result(result))
    if not result.succeeded:
        ctx.exit(1)


@cli.command('simulate-product')
@click.argument('stack_files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--product', '-p', required=True, help='Product group id')
@click.option('--version', 'product_version', default='1.0.0', show_default=True, help='Product version')
@click.option('--environment', '-e', default='local', show_default=True, help='Target environment id')
@click.option('--var', 'variables', multiple=True, callback=parse_vars, help='Shared variable value as KEY=VALUE')
@click.option('--fail-on', multiple=True, help='Resource name whose creation fails')
@click.option('--continue-on-error/--stop-on-error', default=None,
              help='Keep going after a failed stack (default from STACKPILOT_CONTINUE_ON_ERROR)')
@click.pass_context
def simulate_product(ctx, stack_files, product, product_version, environment, variables, fail_on,
                     continue_on_error):
    """
    Deploy STACK_FILES as one product against an in-memory container runtime.

    The files are deployed in the order given; each file name (without
    extension) is the stack's display name unless its metadata names it.
    """
    manifests = {}
    for path in stack_files:
        with open(path, 'r') as f:
            manifests[f"{product}:{product_version}:{Path(path).stem}"] = f.read()

    catalog = InMemoryStackCatalog()
    adapter = InMemoryRuntimeAdapter()
    for name in fail_on:
        adapter.fail_on(name, AdapterPermanent("simulated failure"), operation='create_or_update')
    orchestrator = ProductDeploymentOrchestrator(adapter, catalog, catalog, settings=ctx.obj['settings'])

    try:
        catalog.register(product, product_version, manifests)
        deployment = orchestrator.deploy(DeployProductRequest(
            environment_id=environment,
            product_group_id=product,
            product_version=product_version,
            shared_variables=_values(ctx, variables),
            continue_on_error=continue_on_error,
        ))
    except (StackPilotError, ValueError) as e:
        click.echo(f"Error: {e}")
        ctx.exit(1)

    click.echo(PlanReport().render_deployment(deployment))
    if deployment.status != ProductDeploymentStatus.RUNNING:
        ctx.exit(1)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
