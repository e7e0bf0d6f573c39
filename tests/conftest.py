import os
from typing import Any, Dict, List, Optional, Tuple

import pytest
from ape.utils import ZERO_ADDRESS
from eth_utils import to_checksum_address, to_hex

from farm_deployment.chain import (
    ChainClient,
    DeployedContract,
    TransactionResult,
    TransactionReverted,
)
from farm_deployment.constants import FARM_CONTRACT, TOKEN_CONTRACTS, TTNDEX
from farm_deployment.params import FarmDeploymentConfig, RewardPolicy

# Common constants
DEPLOYER = to_checksum_address("0x" + "d0" * 20)
OTHER_ACCOUNT = to_checksum_address("0x" + "0e" * 20)
INITIAL_HEIGHT = 100
LOCAL_CHAIN_ID = 1337
TOKEN_CONTRACT = TOKEN_CONTRACTS[TTNDEX]


class InMemoryChain(ChainClient):
    """
    Chain client double that keeps contract state in memory.

    Every transaction mines one block and uses the next account nonce; a deployment is
    created at an address derived from that nonce. Token contracts are Ownable (owned by
    the sender on deployment); the farm contract rejects a token address without code and
    a start block that is not in the future, as the real constructor does.
    """

    def __init__(
        self,
        account: str = DEPLOYER,
        chain_id: int = LOCAL_CHAIN_ID,
        local: bool = True,
        height: int = INITIAL_HEIGHT,
        farm_contract: str = FARM_CONTRACT,
    ):
        self.account = account
        self._chain_id = chain_id
        self._local = local
        self.height = height
        self.farm_contract = farm_contract
        self.contracts: Dict[str, Dict[str, Any]] = dict()
        self.history: List[Tuple] = list()
        # (operation, name) -> (exception, apply_effect)
        self.failures: Dict[Tuple[str, str], Tuple[Exception, bool]] = dict()
        # blocks mined by others while a deployment of `name` is pending
        self.pending_blocks: Dict[str, int] = dict()
        self.nonce = 0
        # transactions sent by the account that sit in the mempool
        self.queued = 0

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def is_local(self) -> bool:
        return self._local

    @property
    def account_address(self) -> str:
        return self.account

    def fail(self, operation: str, name: str, error: Exception, apply_effect: bool = False):
        self.failures[(operation, name)] = (error, apply_effect)

    def _failure(self, operation: str, name: str) -> Optional[Tuple[Exception, bool]]:
        return self.failures.get((operation, name))

    def _mine(self) -> TransactionResult:
        self.height += 1
        self.nonce += 1
        return TransactionResult(tx_hash=to_hex(os.urandom(32)), block_number=self.height)

    def get_nonce(self, pending: bool = False) -> int:
        return self.nonce + (self.queued if pending else 0)

    def deployment_address(self, nonce: int) -> str:
        return to_checksum_address(f"0x{0x1000 + nonce:040x}")

    def get_block_height(self) -> int:
        failure = self._failure("height", "")
        if failure:
            raise failure[0]
        self.history.append(("height", self.height))
        return self.height

    def deploy(self, contract_name: str, *args) -> DeployedContract:
        failure = self._failure("deploy", contract_name)
        if failure and not failure[1]:
            raise failure[0]

        self.height += self.pending_blocks.get(contract_name, 0)
        if contract_name == self.farm_contract:
            token, start_block, reward_per_block = args
            if not self.has_code(token):
                raise TransactionReverted("Transaction reverted: token is not a contract")
            if start_block <= self.height + 1:
                raise TransactionReverted("Transaction reverted: start block is in the past")
            state = {"token": token, "startBlock": start_block, "rewardPerBlock": reward_per_block}
        else:
            assert not args
            state = {"owner": self.account, "decimals": 18}

        address = self.deployment_address(self.nonce)
        receipt = self._mine()
        self.contracts[address] = state
        self.history.append(("deploy", contract_name, args))
        if failure:
            raise failure[0]
        return DeployedContract(
            name=contract_name,
            address=address,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            deployer=self.account,
            abi=[{"type": "constructor", "inputs": []}],
        )

    def transact(self, contract: DeployedContract, method_name: str, *args) -> TransactionResult:
        failure = self._failure("transact", method_name)
        if failure and not failure[1]:
            raise failure[0]

        assert method_name == "transferOwnership"
        state = self.contracts[contract.address]
        (new_owner,) = args
        if state["owner"] != self.account:
            raise TransactionReverted("Transaction reverted: Ownable: caller is not the owner")
        if new_owner == ZERO_ADDRESS:
            raise TransactionReverted("Transaction reverted: Ownable: new owner is zero")
        state["owner"] = new_owner

        receipt = self._mine()
        self.history.append(("transact", method_name, args))
        if failure:
            raise failure[0]
        return receipt

    def call(self, contract: DeployedContract, method_name: str, *args) -> Any:
        return self.contracts[contract.address][method_name]

    def has_code(self, address: str) -> bool:
        return address in self.contracts

    def deployments(self) -> List[Tuple]:
        return [event for event in self.history if event[0] == "deploy"]

    def transactions(self) -> List[Tuple]:
        return [event for event in self.history if event[0] == "transact"]


# Fixtures
@pytest.fixture
def chain_client():
    return InMemoryChain()


@pytest.fixture
def run_logs_dir(tmp_path):
    return tmp_path / "runs"


@pytest.fixture
def reward_policy():
    return RewardPolicy(start_block_offset=10, reward_per_block=1_000_000)


@pytest.fixture
def config(tmp_path, reward_policy):
    return FarmDeploymentConfig(
        name="ttndex-test",
        chain_id=LOCAL_CHAIN_ID,
        token_contract=TOKEN_CONTRACT,
        farm_contract=FARM_CONTRACT,
        reward_policy=reward_policy,
        artifacts_dir=tmp_path / "artifacts",
        artifacts_filename="ttndex-test.json",
    )
