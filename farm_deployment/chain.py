import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Dict, Optional, Union

import click
import requests
from ape import chain, networks
from ape.api import AccountAPI
from ape.cli.choices import select_account
from ape.contracts.base import ContractInstance
from ape.exceptions import (
    AccountsError,
    ApeException,
    ContractLogicError,
    ProviderNotConnectedError,
    TransactionError,
    TransactionNotFoundError,
    VirtualMachineError,
)
from ape.utils import ZERO_ADDRESS
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address, to_hex
from ethpm_types.abi import ConstructorABI, MethodABI
from web3.auto import w3
from web3.exceptions import TimeExhausted

from farm_deployment.networks import is_local_network
from farm_deployment.utils import get_contract_container


class DeployedContract(typing.NamedTuple):
    """A contract instance accepted by the chain."""

    name: str
    address: ChecksumAddress
    # unknown when a deployment was recovered from its creation address
    tx_hash: Optional[str]
    block_number: Optional[int]
    deployer: ChecksumAddress
    abi: typing.Sequence[Dict[str, Any]] = ()


class TransactionResult(typing.NamedTuple):
    tx_hash: str
    block_number: int


# Errors


class ChainError(Exception):
    """Base class for failures reported by the chain client."""


class ConnectivityError(ChainError):
    """The chain could not be reached; nothing was submitted."""


class FundingError(ChainError):
    """The deploying account cannot pay for or sign the transaction."""


class TransactionReverted(ChainError):
    """The chain rejected the transaction."""


class ConfirmationTimeout(ChainError):
    """
    Waiting for confirmation was abandoned locally.

    The transaction may still be included later, so this is not an on-chain failure.
    """


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    return str(value)


_FUNDING_ERROR_MARKERS = ("insufficient funds", "balance", "not enough funds")


def _is_funding_message(message: str) -> bool:
    message = message.lower()
    return any(marker in message for marker in _FUNDING_ERROR_MARKERS)


@contextmanager
def translate_errors(action: str):
    """Maps ape, web3 and transport exceptions onto the ChainError taxonomy."""
    try:
        yield
    except ChainError:
        raise
    except (ProviderNotConnectedError, requests.exceptions.ConnectionError) as e:
        raise ConnectivityError(f"Chain unreachable while trying to {action}: {e}") from e
    except (TransactionNotFoundError, TimeExhausted) as e:
        raise ConfirmationTimeout(
            f"Gave up waiting for confirmation while trying to {action}; "
            f"the transaction may still be included: {e}"
        ) from e
    except (ContractLogicError, VirtualMachineError) as e:
        raise TransactionReverted(f"Transaction reverted while trying to {action}: {e}") from e
    except AccountsError as e:
        raise FundingError(f"Deployer account cannot {action}: {e}") from e
    except TransactionError as e:
        if _is_funding_message(str(e)):
            raise FundingError(f"Deployer account cannot {action}: {e}") from e
        raise TransactionReverted(f"Transaction failed while trying to {action}: {e}") from e
    except ApeException as e:
        if _is_funding_message(str(e)):
            raise FundingError(f"Deployer account cannot {action}: {e}") from e
        raise ChainError(f"Failed to {action}: {e}") from e


class ChainClient(ABC):
    """The operations the deployment needs from a connected chain and a funded signer."""

    @property
    @abstractmethod
    def chain_id(self) -> int:
        raise NotImplementedError

    @property
    @abstractmethod
    def is_local(self) -> bool:
        raise NotImplementedError

    @property
    @abstractmethod
    def account_address(self) -> ChecksumAddress:
        raise NotImplementedError

    @abstractmethod
    def get_block_height(self) -> int:
        """Returns the latest block number, read fresh from the chain."""
        raise NotImplementedError

    @abstractmethod
    def get_nonce(self, pending: bool = False) -> int:
        """Returns the deployer's mined transaction count; with pending=True, queued ones too."""
        raise NotImplementedError

    @abstractmethod
    def deployment_address(self, nonce: int) -> ChecksumAddress:
        """Returns the address a deployment sent by the deployer with this nonce creates."""
        raise NotImplementedError

    @abstractmethod
    def deploy(self, contract_name: str, *args) -> DeployedContract:
        """Submits a deployment transaction and waits for its confirmation."""
        raise NotImplementedError

    @abstractmethod
    def transact(self, contract: DeployedContract, method_name: str, *args) -> TransactionResult:
        """Submits a contract call transaction and waits for its confirmation."""
        raise NotImplementedError

    @abstractmethod
    def call(self, contract: DeployedContract, method_name: str, *args) -> Any:
        """Read-only contract call."""
        raise NotImplementedError

    @abstractmethod
    def has_code(self, address: str) -> bool:
        raise NotImplementedError


def _named_args(
    abis: typing.Sequence[Union[ConstructorABI, MethodABI]],
    args: typing.Sequence[Any],
    label: str,
) -> Dict[str, Any]:
    """Names the arguments after the first ABI whose input types accept them."""
    for abi in abis:
        if len(abi.inputs) != len(args):
            continue
        if all(w3.is_encodable(abi_input.type, arg) for abi_input, arg in zip(abi.inputs, args)):
            return OrderedDict(
                (abi_input.name or f"arg{position}", arg)
                for position, (abi_input, arg) in enumerate(zip(abi.inputs, args))
            )
    raise ValueError(f"No ABI for {label} accepts {len(args)} argument(s) of the given type(s)")


class ApeChainClient(ChainClient):
    """
    Chain client backed by the connected ape provider and a selected ape account.

    Unless autosign is enabled, every deployment and transaction is printed with its
    named arguments and needs an interactive confirmation before it is signed.
    """

    def __init__(self, account: Optional[AccountAPI] = None, autosign: bool = False):
        if account is None:
            account = select_account()
        if autosign:
            print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        self._account = account
        self._autosign = autosign
        self._account.set_autosign(autosign)
        self._instances: Dict[str, ContractInstance] = dict()

    @property
    def chain_id(self) -> int:
        with translate_errors("read the chain id"):
            return networks.provider.network.chain_id

    @property
    def is_local(self) -> bool:
        return is_local_network()

    @property
    def account_address(self) -> ChecksumAddress:
        return to_checksum_address(self._account.address)

    def get_block_height(self) -> int:
        with translate_errors("read the current block height"):
            return int(chain.blocks.head.number)

    def get_nonce(self, pending: bool = False) -> int:
        block_id = "pending" if pending else "latest"
        with translate_errors("read the deployer nonce"):
            return int(chain.provider.get_nonce(self._account.address, block_id=block_id))

    def deployment_address(self, nonce: int) -> ChecksumAddress:
        return to_checksum_address(self._account.get_deployment_address(nonce=nonce))

    def _confirm(self, description: str, named_args: Dict[str, Any]) -> None:
        if named_args:
            pretty_args = "\n\t".join(f"{k}={v}" for k, v in named_args.items())
            print(f"\n{description} with arguments:\n\t{pretty_args}")
        else:
            print(f"\n{description} with no arguments")
        if self._autosign:
            return
        click.confirm("Continue?", abort=True)
        if any(value == ZERO_ADDRESS for value in named_args.values()):
            click.confirm("Zero address detected in the arguments; continue?", abort=True)

    def _instance(self, contract: DeployedContract) -> ContractInstance:
        instance = self._instances.get(contract.address)
        if instance is None:
            container = get_contract_container(contract.name)
            instance = container.at(contract.address)
            self._instances[contract.address] = instance
        return instance

    def deploy(self, contract_name: str, *args) -> DeployedContract:
        container = get_contract_container(contract_name)
        named_args = _named_args([container.constructor.abi], args, f"{contract_name} constructor")
        self._confirm(f"Deploying {contract_name}", named_args)

        with translate_errors(f"deploy {contract_name}"):
            instance = self._account.deploy(container, *args)
            receipt = instance.receipt

        address = to_checksum_address(instance.address)
        self._instances[address] = instance
        return DeployedContract(
            name=contract_name,
            address=address,
            tx_hash=_hex(receipt.txn_hash),
            block_number=int(receipt.block_number),
            deployer=to_checksum_address(receipt.transaction.sender),
            abi=[
                entry.model_dump(mode="json", by_alias=True)
                for entry in instance.contract_type.abi
            ],
        )

    def transact(self, contract: DeployedContract, method_name: str, *args) -> TransactionResult:
        method = getattr(self._instance(contract), method_name)
        named_args = _named_args(method.abis, args, f"{contract.name}.{method_name}")
        self._confirm(
            f"Transacting {contract.name}[{contract.address[:10]}].{method_name}", named_args
        )
        with translate_errors(f"call {contract.name}.{method_name}"):
            receipt = method(*args, sender=self._account)
        return TransactionResult(
            tx_hash=_hex(receipt.txn_hash), block_number=int(receipt.block_number)
        )

    def call(self, contract: DeployedContract, method_name: str, *args) -> Any:
        instance = self._instance(contract)
        with translate_errors(f"read {contract.name}.{method_name}"):
            return getattr(instance, method_name)(*args)

    def has_code(self, address: str) -> bool:
        with translate_errors(f"read the code at {address}"):
            code = chain.provider.get_code(address)
        return bool(code) and len(code) > 0
