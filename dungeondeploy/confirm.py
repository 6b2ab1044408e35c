from collections import OrderedDict
from typing import Any, Dict

from dungeondeploy.constants import ZERO_ADDRESS
from dungeondeploy.errors import DeploymentAborted
from dungeondeploy.utils import addresses_equal


def _ask(question: str) -> None:
    answer = input(f"{question} Y/N? ")
    if answer.lower().strip() == "n":
        print("Aborting deployment!")
        raise DeploymentAborted("Deployment aborted by operator")


def _confirm_deployment(contract_name: str) -> None:
    """Asks the user to confirm the deployment of a single contract."""
    _ask(f"Deploy {contract_name}")


def _continue() -> None:
    """Asks the user to continue."""
    _ask("Continue")


def _confirm_zero_address() -> None:
    _ask("Zero Address detected for deployment parameter; Continue?")


def _confirm_resolution(resolved_params: OrderedDict, contract_name: str) -> None:
    """Asks the user to confirm the resolved constructor parameters for a single contract."""
    if len(resolved_params) == 0:
        print(f"\n(i) No constructor parameters for {contract_name}")
        _confirm_deployment(contract_name)
        return

    print(f"\nConstructor parameters for {contract_name}")
    contains_zero_address = False
    for name, resolved_value in resolved_params.items():
        print(f"\t{name}={resolved_value}")
        if not contains_zero_address:
            contains_zero_address = addresses_equal(resolved_value, ZERO_ADDRESS)
    _confirm_deployment(contract_name)
    if contains_zero_address:
        _confirm_zero_address()


def _confirm_transaction(description: str, named_args: Dict[str, Any]) -> None:
    """Shows a state-changing call and asks the user to confirm it."""
    if named_args:
        pretty_args = "\n\t".join(f"{k}={v}" for k, v in named_args.items())
        print(f"\nTransacting {description} with arguments:\n\t{pretty_args}")
    else:
        print(f"\nTransacting {description} with no arguments")
    _continue()
