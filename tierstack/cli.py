"""
tierstack command line.

    tierstack deploy  --project quarkfin --env dev --path-policy '/api/*=forward' --path-policy '/*=cache'
    tierstack plan    --project quarkfin --env dev --path-policy ...
    tierstack outputs --project quarkfin --env dev --path-policy ...
    tierstack health  --project quarkfin --env dev --path-policy ...
    tierstack destroy --project quarkfin --env dev

Exit codes: 0 success, 1 provisioning failure, 2 missing or invalid input.
"""
from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Annotated, List, Optional

import boto3
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tierstack import __version__
from tierstack.config.environments import PathPolicy, load_topology_config
from tierstack.errors import ConfigurationError, PipelineError, TopologyError
from tierstack.health import check_health
from tierstack.ledger import Ledger
from tierstack.logger import configure_logging
from tierstack.orchestrator import DeploymentReport, Orchestrator
from tierstack.providers import InMemoryProvider, Provider
from tierstack.topology import Topology, build_topology, frontend_outputs

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID = 2

app = typer.Typer(
    help="Provision a five-tier application environment as dependent stacks",
    no_args_is_help=True,
)

console = Console()


class ProviderName(str, Enum):
    aws = "aws"
    memory = "memory"


ProjectOption = Annotated[str, typer.Option("--project", "-p", help="Project name used in every resource name")]
EnvOption = Annotated[str, typer.Option("--env", "-e", help="Environment: dev, staging or prod")]
RegionOption = Annotated[
    Optional[str], typer.Option("--region", "-r", envvar="AWS_REGION", help="Target region")
]
PathPolicyOption = Annotated[
    Optional[List[str]],
    typer.Option(
        "--path-policy",
        help="Edge path behavior PATTERN=MODE (forward or cache); repeat in evaluation order",
    ),
]
PolicyVersionOption = Annotated[int, typer.Option("--policy-version", help="Path policy version")]
ProviderOption = Annotated[
    ProviderName, typer.Option("--provider", help="Provisioning backend", case_sensitive=False)
]
StateDirOption = Annotated[
    Path, typer.Option("--state-dir", envvar="TIERSTACK_STATE_DIR", help="Directory for the deployment ledger")
]
LogLevelOption = Annotated[str, typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR")]


class _Session:
    """Everything a command needs, validated before any provider call."""

    def __init__(
        self,
        project: str,
        env: str,
        region: Optional[str],
        path_policy: Optional[List[str]],
        policy_version: int,
        provider: ProviderName,
        state_dir: Path,
        require_path_policy: bool = True,
    ):
        policy = PathPolicy.parse(path_policy, version=policy_version) if path_policy else None
        self.config = load_topology_config(
            project_name=project,
            environment=env,
            path_policy=policy,
            region=region,
            require_path_policy=require_path_policy,
        )
        self.topology: Topology = build_topology(self.config)
        self.ledger = Ledger.for_project(state_dir, self.config.props, provider.value)
        self.provider_name = provider
        self.provider: Provider = _make_provider(provider, self.config.region)
        self.orchestrator = Orchestrator(self.provider, self.ledger)


def _make_provider(name: ProviderName, region: str) -> Provider:
    if name == ProviderName.memory:
        return InMemoryProvider(region=region)
    from tierstack.providers.cloudformation import CloudFormationProvider

    return CloudFormationProvider(region=region)


def _open(require_path_policy: bool = True, **options) -> _Session:
    configure_logging(options.pop("log_level"))
    try:
        return _Session(require_path_policy=require_path_policy, **options)
    except ConfigurationError as exc:
        console.print(f"[red]Invalid input:[/red] {escape(str(exc))}")
        raise typer.Exit(EXIT_INVALID) from exc


def _print_report(report: DeploymentReport) -> None:
    table = Table(title=f"{report.action.title()} report")
    table.add_column("Stack", style="cyan")
    table.add_column("Outcome")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="red")
    styles = {"deployed": "green", "destroyed": "green", "unchanged": "dim", "failed": "red", "skipped": "yellow"}
    for result in report.results.values():
        style = styles.get(result.outcome, "")
        table.add_row(
            result.stack_name,
            f"[{style}]{result.outcome}[/{style}]" if style else result.outcome,
            str(result.attempts),
            escape(result.error or ""),
        )
    console.print(table)


def _provisioning_failed(exc: Exception) -> typer.Exit:
    console.print(f"[red]Provisioning failed:[/red] {escape(str(exc))}")
    return typer.Exit(EXIT_FAILURE)


@app.command()
def deploy(
    project: ProjectOption,
    env: EnvOption,
    region: RegionOption = None,
    path_policy: PathPolicyOption = None,
    policy_version: PolicyVersionOption = 1,
    provider: ProviderOption = ProviderName.aws,
    state_dir: StateDirOption = Path(".tierstack"),
    log_level: LogLevelOption = "INFO",
) -> None:
    """Create or update every stack in dependency order."""
    session = _open(
        project=project, env=env, region=region, path_policy=path_policy, policy_version=policy_version,
        provider=provider, state_dir=state_dir, log_level=log_level,
    )
    try:
        report = session.orchestrator.deploy(session.topology)
    except PipelineError as exc:
        _print_report(exc.report)
        raise _provisioning_failed(exc.cause) from exc
    _print_report(report)
    outputs = frontend_outputs(report.handles, session.config.region)
    console.print_json(json.dumps(outputs))


@app.command()
def destroy(
    project: ProjectOption,
    env: EnvOption,
    region: RegionOption = None,
    provider: ProviderOption = ProviderName.aws,
    state_dir: StateDirOption = Path(".tierstack"),
    log_level: LogLevelOption = "INFO",
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Tear every stack down, dependents first."""
    session = _open(
        require_path_policy=False, project=project, env=env, region=region, path_policy=None,
        policy_version=1, provider=provider, state_dir=state_dir, log_level=log_level,
    )
    if not yes:
        typer.confirm(
            f"Destroy all stacks of {project} ({env}) in {session.config.region}?", abort=True
        )
    try:
        report = session.orchestrator.destroy(session.topology)
    except PipelineError as exc:
        _print_report(exc.report)
        raise _provisioning_failed(exc.cause) from exc
    _print_report(report)


@app.command()
def plan(
    project: ProjectOption,
    env: EnvOption,
    region: RegionOption = None,
    path_policy: PathPolicyOption = None,
    policy_version: PolicyVersionOption = 1,
    provider: ProviderOption = ProviderName.aws,
    state_dir: StateDirOption = Path(".tierstack"),
    log_level: LogLevelOption = "INFO",
) -> None:
    """Show which stacks a deploy would create, update or leave alone."""
    session = _open(
        project=project, env=env, region=region, path_policy=path_policy, policy_version=policy_version,
        provider=provider, state_dir=state_dir, log_level=log_level,
    )
    try:
        actions = session.orchestrator.plan(session.topology)
    except TopologyError as exc:
        raise _provisioning_failed(exc) from exc

    table = Table(title=f"Plan for {project} ({env})")
    table.add_column("Stack", style="cyan")
    table.add_column("Action")
    for node, action in actions.items():
        table.add_row(session.topology.stack_name(node), action)
    console.print(table)


@app.command()
def outputs(
    project: ProjectOption,
    env: EnvOption,
    region: RegionOption = None,
    path_policy: PathPolicyOption = None,
    policy_version: PolicyVersionOption = 1,
    provider: ProviderOption = ProviderName.aws,
    state_dir: StateDirOption = Path(".tierstack"),
    log_level: LogLevelOption = "WARNING",
) -> None:
    """Print the values the web front-end needs, as JSON."""
    session = _open(
        project=project, env=env, region=region, path_policy=path_policy, policy_version=policy_version,
        provider=provider, state_dir=state_dir, log_level=log_level,
    )
    try:
        handles = session.orchestrator.recorded_handles(session.topology)
    except TopologyError as exc:
        raise _provisioning_failed(exc) from exc
    typer.echo(json.dumps(frontend_outputs(handles, session.config.region), indent=2))


@app.command()
def health(
    project: ProjectOption,
    env: EnvOption,
    region: RegionOption = None,
    path_policy: PathPolicyOption = None,
    policy_version: PolicyVersionOption = 1,
    provider: ProviderOption = ProviderName.aws,
    state_dir: StateDirOption = Path(".tierstack"),
    log_level: LogLevelOption = "WARNING",
    timeout: Annotated[int, typer.Option("--timeout", help="Seconds per HTTP check")] = 10,
) -> None:
    """Check /health on the load balancer and the distribution."""
    session = _open(
        project=project, env=env, region=region, path_policy=path_policy, policy_version=policy_version,
        provider=provider, state_dir=state_dir, log_level=log_level,
    )
    try:
        handles = session.orchestrator.recorded_handles(session.topology)
    except TopologyError as exc:
        raise _provisioning_failed(exc) from exc

    rds_client = None
    if session.provider_name == ProviderName.aws:
        rds_client = boto3.client("rds", region_name=session.config.region)
    result = check_health(handles, rds_client=rds_client, timeout=timeout)
    typer.echo(json.dumps(result, indent=2))
    if not result["overall_healthy"]:
        raise typer.Exit(EXIT_FAILURE)


@app.command()
def version() -> None:
    """Show the tierstack version."""
    typer.echo(__version__)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
