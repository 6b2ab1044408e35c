import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional, Tuple

import click

from dungeondeploy import __version__
from dungeondeploy.artifacts import ArtifactStore
from dungeondeploy.client import ChainClient, TxOptions
from dungeondeploy.constants import DEFAULT_ARTIFACTS_DIR, SOURCE_FAILED, SUPPORTED_NETWORKS
from dungeondeploy.errors import DeploymentError, NotFound, VerificationMismatch
from dungeondeploy.explorer import ExplorerApi, SourcePublisher
from dungeondeploy.log import Logger, get_logger
from dungeondeploy.networks import (
    ExplorerConfig,
    get_chain_id,
    get_network_name,
    get_registry_dir,
    load_environment,
    load_explorer_config,
    load_network_config,
    registry_filepath_from_network,
)
from dungeondeploy.options import (
    autosign_option,
    compromised_option,
    confirmations_option,
    contract_filter_option,
    env_file_option,
    gas_price_option,
    link_retries_option,
    network_option,
    owner_option,
    plan_option,
    publish_option,
    quiet_option,
    registry_option,
    retry_reverted_option,
    timeout_option,
    verbose_option,
)
from dungeondeploy.orchestrator import Orchestrator
from dungeondeploy.params import DeploymentPlan
from dungeondeploy.registry import (
    Registry,
    RegistryLock,
    merge_registries,
    normalize_registry,
    registry_entries_by_chain,
)
from dungeondeploy.sync import FAILED, Propagator, load_targets
from dungeondeploy.verify import Report, Verifier


@contextmanager
def _handle_errors(logger: Logger):
    """Turns tool errors into a readable message and exit code 1."""
    try:
        yield
    except DeploymentError as e:
        logger.error(str(e))
        raise click.exceptions.Exit(1)


@contextmanager
def _abort_on_signal(orchestrator: Orchestrator):
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    handler = lambda signum, frame: orchestrator.abort()  # noqa: E731
    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, previous_handler in previous.items():
            signal.signal(sig, previous_handler)


def _resolve_registry_filepath(
    network: str, registry_filepath: Optional[Path], plan: Optional[DeploymentPlan] = None
) -> Path:
    if registry_filepath:
        return registry_filepath
    if plan is not None and plan.registry_filename:
        return get_registry_dir() / plan.registry_filename
    return registry_filepath_from_network(network)


def _print_report(report: Report, logger: Logger) -> None:
    logger.section("Verification")
    for finding in report.passed:
        logger.debug(str(finding))
    for finding in report.failed:
        click.secho(f"  ✗ {finding}", fg="red")
    summary = f"{len(report.passed)} passed, {len(report.failed)} failed"
    if report.ok:
        logger.success(summary)
    else:
        logger.error(summary)


def _artifact_names(
    registry: Registry, plan: Optional[DeploymentPlan], contract_names: Tuple[str, ...] = ()
) -> Dict[str, str]:
    """Recorded contracts to publish, mapped to the artifact each was compiled from."""
    if plan is not None:
        names = {
            name: spec.artifact
            for name, spec in plan.contracts.items()
            if not spec.is_external and name in registry
        }
    else:
        names = {record.name: record.name for record in registry.records}
    unknown = [name for name in contract_names if name not in names]
    if unknown:
        raise NotFound(f"No deployed contract named {', '.join(unknown)} in {registry.filepath}")
    if contract_names:
        names = {name: names[name] for name in contract_names}
    return names


def _publish_sources(
    config: ExplorerConfig,
    client: ChainClient,
    registry: Registry,
    artifacts: ArtifactStore,
    artifact_names: Dict[str, str],
    logger: Logger,
) -> bool:
    publisher = SourcePublisher(
        api=ExplorerApi(config),
        client=client,
        registry=registry,
        artifacts=artifacts,
        logger=logger.child("publish"),
    )
    results = publisher.publish(artifact_names)

    logger.section("Sources")
    for result in results:
        message = f"{result.contract}: {result.status}"
        if result.message:
            message = f"{message} ({result.message})"
        if result.status == SOURCE_FAILED:
            logger.error(message)
        else:
            logger.info(message)
    return all(result.status != SOURCE_FAILED for result in results)


@click.group()
@click.version_option(__version__, prog_name="dungeon-deploy")
def cli():
    """Deploy, wire, verify and sync the dungeon contracts."""


@cli.command()
@click.argument("plan_filepath", type=click.Path(dir_okay=False, exists=True, path_type=Path))
@network_option
@registry_option
@env_file_option
@autosign_option
@retry_reverted_option
@confirmations_option
@timeout_option
@link_retries_option
@gas_price_option
@publish_option
@verbose_option
@quiet_option
def deploy(
    plan_filepath,
    network,
    registry_filepath,
    env_file,
    autosign,
    retry_reverted,
    confirmations,
    timeout,
    link_retries,
    gas_price,
    publish,
    verbose,
    quiet,
):
    """Deploy, wire and configure every contract of a plan."""
    logger = get_logger(verbose=verbose, quiet=quiet)
    with _handle_errors(logger):
        config = load_network_config(network, require_signer=True, dotenv_path=env_file)
        explorer_config = load_explorer_config(network, dotenv_path=env_file) if publish else None
        plan = DeploymentPlan.from_yaml(plan_filepath)
        filepath = _resolve_registry_filepath(network, registry_filepath, plan)
        client = ChainClient.from_config(config, logger=logger.child("client"))

        logger.info(
            f"Deploying {plan.name}",
            network=config.name,
            chain_id=config.chain_id,
            account=client.address,
            registry=filepath,
        )
        with RegistryLock(filepath):
            registry = Registry.load_or_create(filepath, network=config.name, chain_id=config.chain_id)
            orchestrator = Orchestrator(
                client=client,
                registry=registry,
                artifacts=ArtifactStore(plan.artifacts_dir),
                logger=logger.child("deploy"),
                autosign=autosign,
                confirmations=confirmations,
                timeout=timeout,
                link_retries=link_retries,
                retry_reverted=retry_reverted,
                tx_options=TxOptions(gas_price=gas_price),
            )
            with _abort_on_signal(orchestrator):
                result = orchestrator.deploy_all(plan)
            published = True
            if explorer_config is not None and result.ok:
                published = _publish_sources(
                    explorer_config,
                    client,
                    registry,
                    ArtifactStore(plan.artifacts_dir),
                    _artifact_names(registry, plan),
                    logger,
                )

        if not result.ok:
            raise VerificationMismatch(len(result.unverified))
        if not published:
            raise click.exceptions.Exit(1)


@cli.command()
@network_option
@plan_option
@registry_option
@env_file_option
@owner_option
@compromised_option
@verbose_option
@quiet_option
def verify(network, plan_filepath, registry_filepath, env_file, owner, compromised, verbose, quiet):
    """Check wiring, settings, code and ownership on chain. Sends nothing."""
    logger = get_logger(verbose=verbose, quiet=quiet)
    with _handle_errors(logger):
        config = load_network_config(network, require_signer=False, dotenv_path=env_file)
        plan = DeploymentPlan.from_yaml(plan_filepath) if plan_filepath else None
        filepath = _resolve_registry_filepath(network, registry_filepath, plan)
        registry = Registry.load(filepath, network=config.name, chain_id=config.chain_id)
        verifier = Verifier(ChainClient.from_config(config, logger=logger.child("client")), logger.child("verify"))

        if plan is not None:
            report = verifier.verify_plan(registry, plan, expected_owner=owner, compromised=compromised)
        else:
            report = verifier.verify_code(registry)
            report.extend(verifier.verify(registry, registry.link_specs()))
            if owner:
                report.extend(verifier.verify_ownership(registry, owner, compromised))

        _print_report(report, logger)
        if not report.ok:
            raise VerificationMismatch(len(report.failed))


@cli.command(name="verify-source")
@network_option
@plan_option
@registry_option
@env_file_option
@contract_filter_option
@verbose_option
@quiet_option
def verify_source(network, plan_filepath, registry_filepath, env_file, contract_names, verbose, quiet):
    """Publish the source of deployed contracts to the block explorer."""
    logger = get_logger(verbose=verbose, quiet=quiet)
    with _handle_errors(logger):
        explorer_config = load_explorer_config(network, dotenv_path=env_file)
        config = load_network_config(network, require_signer=False, dotenv_path=env_file)
        plan = DeploymentPlan.from_yaml(plan_filepath) if plan_filepath else None
        filepath = _resolve_registry_filepath(network, registry_filepath, plan)
        client = ChainClient.from_config(config, logger=logger.child("client"))

        with RegistryLock(filepath):
            registry = Registry.load(filepath, network=config.name, chain_id=config.chain_id)
            published = _publish_sources(
                explorer_config,
                client,
                registry,
                ArtifactStore(plan.artifacts_dir if plan else DEFAULT_ARTIFACTS_DIR),
                _artifact_names(registry, plan, contract_names),
                logger,
            )
        if not published:
            raise click.exceptions.Exit(1)


@cli.command()
@click.argument("targets_filepath", type=click.Path(dir_okay=False, exists=True, path_type=Path))
@network_option
@registry_option
@env_file_option
@verbose_option
@quiet_option
def sync(targets_filepath, network, registry_filepath, env_file, verbose, quiet):
    """Propagate registry addresses and ABIs to frontend, backend and subgraph."""
    logger = get_logger(verbose=verbose, quiet=quiet)
    with _handle_errors(logger):
        load_environment(env_file)
        targets = load_targets(targets_filepath)
        filepath = _resolve_registry_filepath(network, registry_filepath)
        registry = Registry.load(filepath, network=network, chain_id=get_chain_id(network))

        report = Propagator(logger=logger.child("sync")).propagate(registry, targets)

        logger.section("Sync")
        for result in report.results:
            message = f"{result.target}: {result.status}"
            if result.message:
                message = f"{message} ({result.message})"
            if result.status == FAILED:
                logger.error(message)
            else:
                logger.info(message, files=len(result.files) or None)
        if not report.ok:
            raise click.exceptions.Exit(1)


@cli.command(name="list")
@click.option("--network", "-n", help="Only this network", type=click.Choice(SUPPORTED_NETWORKS))
@env_file_option
def list_contracts(network, env_file):
    """List all contracts in the registries, grouped by chain."""
    load_environment(env_file)
    for name in SUPPORTED_NETWORKS:
        if network and network != name:
            continue
        filepath = registry_filepath_from_network(name)
        if not filepath.exists():
            continue
        click.secho(f"\n{name} ({filepath})", fg="green")
        for chain_id, entries in registry_entries_by_chain(filepath).items():
            try:
                chain_name = get_network_name(chain_id)
            except ValueError:
                chain_name = str(chain_id)
            click.secho(f"    {chain_name} ({chain_id})", fg="yellow")
            for index, entry in enumerate(entries, start=1):
                click.secho(f"        {index}. {entry.name} {entry.address}", fg="cyan")


@cli.command()
@network_option
@plan_option
@registry_option
@env_file_option
def status(network, plan_filepath, registry_filepath, env_file):
    """Show what the registry holds and, given a plan, what is still to do. Offline."""
    load_environment(env_file)
    logger = get_logger()
    with _handle_errors(logger):
        plan = DeploymentPlan.from_yaml(plan_filepath) if plan_filepath else None
        filepath = _resolve_registry_filepath(network, registry_filepath, plan)
        registry = Registry.load(filepath, network=network, chain_id=get_chain_id(network))

        click.secho(f"{registry.network} (chain {registry.chain_id}) version {registry.version}", fg="green")
        for record in registry.records:
            click.secho(f"    {record.name} {record.address}", fg="cyan")
        for key, link in sorted(registry.links.items()):
            click.secho(f"    link {key} -> {link.to_contract}", fg="cyan")
        for tx in registry.pending.values():
            click.secho(
                f"    pending {tx.contract}.{tx.operation} {tx.tx_hash} (nonce {tx.nonce})", fg="yellow"
            )
        for name, verification in sorted(registry.sources.items()):
            color = "cyan" if registry.is_source_verified(name) else "yellow"
            click.secho(f"    source {name} {verification.status}", fg=color)

        if plan is not None:
            undeployed = [name for name in plan.contract_names if name not in registry]
            unlinked = [link.key for link in plan.links if not registry.is_link_applied(link)]
            unset = [setting.key for setting in plan.settings if setting.key not in registry.settings]
            for label, items in (("to deploy", undeployed), ("to wire", unlinked), ("to configure", unset)):
                if items:
                    click.secho(f"  {label}: {', '.join(items)}", fg="yellow")
            if not (undeployed or unlinked or unset):
                click.secho("  plan fully applied", fg="green")


@cli.command()
@click.option(
    "--registry-1",
    help="Filepath to registry file 1",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)
@click.option(
    "--registry-2",
    help="Filepath to registry file 2",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)
@click.option(
    "--output-registry",
    "-o",
    help="Filepath of output registry file",
    type=click.Path(dir_okay=False, exists=False, path_type=Path),
    required=True,
)
@click.option(
    "--deprecated-contract",
    "-d",
    "deprecated_contracts",
    help="Names of any deprecated contracts to exclude from the merge",
    required=False,
    multiple=True,
)
def merge(registry_1, registry_2, output_registry, deprecated_contracts):
    """Merge two registry files into one."""
    merge_registries(
        registry_1_filepath=registry_1,
        registry_2_filepath=registry_2,
        output_filepath=output_registry,
        deprecated_contracts=list(deprecated_contracts),
    )


@cli.command()
@click.argument("registry_filepath", type=click.Path(dir_okay=False, exists=True, path_type=Path))
def normalize(registry_filepath):
    """Rewrite a registry in the standard format."""
    normalize_registry(filepath=registry_filepath)


if __name__ == "__main__":
    cli()
