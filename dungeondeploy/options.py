from pathlib import Path

import click

from dungeondeploy.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_CONFIRMATIONS,
    LINK_RETRY_ATTEMPTS,
    SUPPORTED_NETWORKS,
)
from dungeondeploy.types import ChecksumAddress, MinInt

network_option = click.option(
    "--network",
    "-n",
    help="Network to operate on",
    type=click.Choice(SUPPORTED_NETWORKS),
    required=True,
)

plan_option = click.option(
    "--plan",
    "-p",
    "plan_filepath",
    help="Deployment plan YAML",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=False,
)

registry_option = click.option(
    "--registry",
    "-r",
    "registry_filepath",
    help="Registry file; defaults to <registry dir>/<network>.json",
    type=click.Path(dir_okay=False, path_type=Path),
    required=False,
)

env_file_option = click.option(
    "--env-file",
    help="Environment file to load instead of .env",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=False,
)

autosign_option = click.option(
    "--autosign",
    "--yes",
    "-y",
    help="Sign and send every transaction without asking",
    is_flag=True,
    default=False,
)

retry_reverted_option = click.option(
    "--retry-reverted",
    help="Also retry wiring calls that reverted",
    is_flag=True,
    default=False,
)

confirmations_option = click.option(
    "--confirmations",
    "-c",
    help="Blocks a transaction must be buried under before it counts",
    type=MinInt(1),
    default=DEFAULT_CONFIRMATIONS,
    show_default=True,
)

timeout_option = click.option(
    "--timeout",
    "-t",
    help="Seconds to wait for each transaction",
    type=MinInt(1),
    default=DEFAULT_CONFIRMATION_TIMEOUT,
    show_default=True,
)

link_retries_option = click.option(
    "--link-retries",
    help="Attempts per wiring call",
    type=MinInt(1),
    default=LINK_RETRY_ATTEMPTS,
    show_default=True,
)

gas_price_option = click.option(
    "--gas-price",
    help="Legacy gas price in wei",
    type=MinInt(1),
    required=False,
)

publish_option = click.option(
    "--publish",
    help="Publish contract sources to the block explorer afterwards",
    is_flag=True,
    default=False,
)

contract_filter_option = click.option(
    "--contract",
    "contract_names",
    help="Only this contract (repeatable)",
    multiple=True,
)

owner_option = click.option(
    "--owner",
    "-o",
    help="Expected owner of every ownable contract",
    type=ChecksumAddress(),
    required=False,
)

compromised_option = click.option(
    "--compromised",
    help="Address that must not own any contract (repeatable)",
    type=ChecksumAddress(),
    multiple=True,
)

verbose_option = click.option(
    "--verbose", "-v", help="Show debug output", is_flag=True, default=False
)

quiet_option = click.option(
    "--quiet", "-q", help="Only show warnings and errors", is_flag=True, default=False
)
