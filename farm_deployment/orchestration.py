import typing
from typing import Optional

from eth_utils import to_checksum_address

from farm_deployment.chain import (
    ChainClient,
    ConfirmationTimeout,
    DeployedContract,
    TransactionReverted,
    TransactionResult,
)
from farm_deployment.params import FarmDeploymentConfig, RewardScheduleParameters
from farm_deployment.runlog import (
    STEP_DEPLOY_FARM,
    STEP_DEPLOY_TOKEN,
    STEP_READ_CHAIN_HEIGHT,
    STEP_TRANSFER_OWNERSHIP,
    STEP_VERIFY,
    RunLog,
)


class FarmDeploymentResult(typing.NamedTuple):
    token: DeployedContract
    farm: DeployedContract
    schedule: RewardScheduleParameters
    run_log: RunLog


def _same_address(a: str, b: str) -> bool:
    return to_checksum_address(a) == to_checksum_address(b)


class FarmDeployment:
    """
    Deploys a token and its farm, then hands the token over to the farm.

    The four steps run strictly in sequence; each one consumes what the previous
    one produced and is written to the run log as soon as it completes:

        1. deploy the token (no constructor arguments)
        2. read the current chain height
        3. deploy the farm with (token, height + offset, reward per block)
        4. transfer token ownership to the farm

    The first failure stops the run. Nothing is rolled back: the run log names the
    step that failed and the addresses already obtained, and can be resumed.
    Deployments are recorded as pending, with the deployer nonce, before they are sent,
    so a resume reuses a contract whose confirmation the previous run stopped waiting for.
    """

    class StepFailed(Exception):
        """Raised when a deployment step fails; no later step has been attempted"""

        def __init__(self, step: str, run_log: RunLog, cause: Exception):
            self.step = step
            self.run_log = run_log
            self.cause = cause
            addresses = run_log.addresses()
            obtained = ", ".join(f"{k}={v}" for k, v in addresses.items()) or "none"
            hint = ""
            if isinstance(cause, ConfirmationTimeout):
                hint = " The transaction may still confirm; resuming picks it up once it does."
            elif "farm" in addresses and step != STEP_VERIFY:
                hint = " Contracts are deployed but NOT linked; resume rather than re-run."
            super().__init__(
                f"Step '{step}' failed: {cause}. Addresses obtained: {obtained}. "
                f"Run log: {run_log.filepath}.{hint}"
            )

    class OwnershipTransferFailed(Exception):
        """Raised when the token cannot be handed over to the farm"""

    class PostconditionFailed(Exception):
        """Raised when the deployed contracts are not linked as expected"""

    def __init__(
        self,
        client: ChainClient,
        config: FarmDeploymentConfig,
        run_log: RunLog,
        resume: bool = False,
    ):
        self.client = client
        self.config = config
        self.policy = config.reward_policy
        self.run_log = run_log
        self.resume = resume

    @classmethod
    def start(
        cls,
        client: ChainClient,
        config: FarmDeploymentConfig,
        run_log: Optional[RunLog] = None,
        **run_log_kwargs,
    ) -> "FarmDeployment":
        """Prepares a new run, or resumes the given run log."""
        config.check_chain_id(client.chain_id, local=client.is_local)
        resume = run_log is not None
        if resume:
            run_log.check_matches(
                deployment=config.name,
                chain_id=client.chain_id,
                deployer=client.account_address,
                token_contract=config.token_contract,
                farm_contract=config.farm_contract,
            )
            run_log.resume()
        else:
            run_log = RunLog.create(
                deployment=config.name,
                chain_id=client.chain_id,
                deployer=client.account_address,
                token_contract=config.token_contract,
                farm_contract=config.farm_contract,
                **run_log_kwargs,
            )
        return cls(client=client, config=config, run_log=run_log, resume=resume)

    #
    # Steps
    #

    def deploy_token(self) -> DeployedContract:
        print(f"\n(i) Deploying {self.config.token_contract}...")
        token = self._submit_deployment(STEP_DEPLOY_TOKEN, self.config.token_contract)
        self.run_log.record(
            STEP_DEPLOY_TOKEN,
            address=token.address,
            tx_hash=token.tx_hash,
            block_number=token.block_number,
        )
        print(f"(i) {token.name} deployed to {token.address}")
        return token

    def read_chain_height(self) -> int:
        height = self.client.get_block_height()
        if isinstance(height, bool) or not isinstance(height, int) or height < 0:
            raise ValueError(f"Chain client returned an invalid block height: {height!r}")
        self.run_log.record(STEP_READ_CHAIN_HEIGHT, height=height)
        print(f"(i) Current block height is {height}")
        return height

    def deploy_farm(self, token: DeployedContract, height: int) -> DeployedContract:
        if not self.client.has_code(token.address):
            raise TransactionReverted(
                f"No contract code at token address {token.address}; "
                f"refusing to deploy {self.config.farm_contract}."
            )
        if self.policy.token_decimals is not None:
            self.policy.check_token_decimals(self.client.call(token, "decimals"))

        schedule = self.policy.schedule(height)
        print(
            f"\n(i) Deploying {self.config.farm_contract} for {token.address}: "
            f"startBlock={schedule.start_block}, rewardPerBlock={schedule.reward_per_block}"
        )
        farm = self._submit_deployment(
            STEP_DEPLOY_FARM,
            self.config.farm_contract,
            token.address,
            schedule.start_block,
            schedule.reward_per_block,
            start_block=schedule.start_block,
            reward_per_block=schedule.reward_per_block,
        )
        self.run_log.record(
            STEP_DEPLOY_FARM,
            address=farm.address,
            tx_hash=farm.tx_hash,
            block_number=farm.block_number,
            start_block=schedule.start_block,
            reward_per_block=schedule.reward_per_block,
        )
        print(f"(i) {farm.name} deployed to {farm.address}")
        return farm

    def transfer_ownership(
        self, token: DeployedContract, farm: DeployedContract
    ) -> Optional[TransactionResult]:
        current_owner = self.client.call(token, "owner")
        if _same_address(current_owner, farm.address):
            if not self.resume:
                raise self.OwnershipTransferFailed(
                    f"{token.name} at {token.address} is already owned by {farm.address}."
                )
            # an earlier transfer confirmed after the previous run stopped waiting
            print(f"(i) {token.name} is already owned by {farm.address}")
            self.run_log.record(
                STEP_TRANSFER_OWNERSHIP, new_owner=farm.address, tx_hash=None, block_number=None
            )
            return None

        deployer = self.client.account_address
        if not _same_address(current_owner, deployer):
            raise self.OwnershipTransferFailed(
                f"{token.name} at {token.address} is owned by {current_owner}, "
                f"not by the deploying account {deployer}."
            )

        print(f"\n(i) Transferring ownership of {token.name} to {farm.name} at {farm.address}")
        result = self.client.transact(token, "transferOwnership", farm.address)
        self.run_log.record(
            STEP_TRANSFER_OWNERSHIP,
            new_owner=farm.address,
            tx_hash=result.tx_hash,
            block_number=result.block_number,
        )
        return result

    #
    # Pending deployments
    #

    def _submit_deployment(self, step: str, contract_name: str, *args, **details):
        """Deploys a contract after recording the nonce and address it will be created with."""
        nonce = self.client.get_nonce()
        self.run_log.set_pending(
            step,
            contract=contract_name,
            nonce=nonce,
            address=self.client.deployment_address(nonce),
            **details,
        )
        return self.client.deploy(contract_name, *args)

    def _recover_deployment(self, step: str, contract_name: str) -> Optional[DeployedContract]:
        """
        Settles a deployment whose confirmation the previous run stopped waiting for.

        Returns the contract when it was mined after all, and None when it must be
        deployed again. Raises ConfirmationTimeout while it is still queued, since a
        second deployment would leave one of the two contracts orphaned.
        """
        pending = self.run_log.get_pending(step)
        if pending is None:
            return None

        nonce, address = pending["nonce"], to_checksum_address(pending["address"])
        if self.client.has_code(address):
            print(f"(i) {contract_name} deployment with nonce {nonce} was mined at {address}")
            outputs = {
                k: v for k, v in pending.items() if k not in ("contract", "address", "submitted_at")
            }
            self.run_log.record(step, address=address, tx_hash=None, block_number=None, **outputs)
            return DeployedContract(
                name=contract_name,
                address=address,
                tx_hash=None,
                block_number=None,
                deployer=self.client.account_address,
            )

        if self.client.get_nonce() <= nonce < self.client.get_nonce(pending=True):
            raise ConfirmationTimeout(
                f"{contract_name} deployment with nonce {nonce} is still pending; "
                f"wait for it to be mined, or replace it, before resuming."
            )

        print(f"(i) {contract_name} deployment with nonce {nonce} created no contract; redeploying")
        self.run_log.discard_pending(step)
        return None

    #
    # Sequence
    #

    def _recorded_contract(self, step: str, name: str) -> DeployedContract:
        entry = self.run_log.get(step)
        return DeployedContract(
            name=name,
            address=to_checksum_address(entry["address"]),
            tx_hash=entry["tx_hash"],
            block_number=entry["block_number"],
            deployer=to_checksum_address(self.run_log.data["deployer"]),
        )

    def _step(self, step: str, func, *args):
        try:
            return func(*args)
        except Exception as e:
            if not isinstance(e, ConfirmationTimeout):
                self.run_log.discard_pending(step)
            self.run_log.fail(step, e)
            raise self.StepFailed(step=step, run_log=self.run_log, cause=e) from e

    def run(self) -> FarmDeploymentResult:
        if self.run_log.is_done(STEP_DEPLOY_TOKEN):
            token = self._recorded_contract(STEP_DEPLOY_TOKEN, self.config.token_contract)
            print(f"(i) Reusing {token.name} at {token.address} from run {self.run_log.run_id}")
        else:
            token = self._step(
                STEP_DEPLOY_TOKEN,
                self._recover_deployment,
                STEP_DEPLOY_TOKEN,
                self.config.token_contract,
            )
            if token is None:
                token = self._step(STEP_DEPLOY_TOKEN, self.deploy_token)

        if self.run_log.is_done(STEP_DEPLOY_FARM):
            farm = self._recorded_contract(STEP_DEPLOY_FARM, self.config.farm_contract)
            print(f"(i) Reusing {farm.name} at {farm.address} from run {self.run_log.run_id}")
        else:
            farm = self._step(
                STEP_DEPLOY_FARM,
                self._recover_deployment,
                STEP_DEPLOY_FARM,
                self.config.farm_contract,
            )
            if farm is None:
                # the start block always derives from a height read in this run
                height = self._step(STEP_READ_CHAIN_HEIGHT, self.read_chain_height)
                farm = self._step(STEP_DEPLOY_FARM, self.deploy_farm, token, height)

        entry = self.run_log.get(STEP_DEPLOY_FARM)
        schedule = RewardScheduleParameters(
            start_block=entry["start_block"], reward_per_block=entry["reward_per_block"]
        )

        if not self.run_log.is_done(STEP_TRANSFER_OWNERSHIP):
            self._step(STEP_TRANSFER_OWNERSHIP, self.transfer_ownership, token, farm)

        self._step(STEP_VERIFY, self.verify, token, farm, schedule)
        self.run_log.complete()
        return FarmDeploymentResult(token=token, farm=farm, schedule=schedule, run_log=self.run_log)

    def verify(
        self, token: DeployedContract, farm: DeployedContract, schedule: RewardScheduleParameters
    ) -> None:
        """Checks that the token and farm are linked as deployed."""
        checks = [
            ("farm.token()", self.client.call(farm, "token"), token.address),
            ("token.owner()", self.client.call(token, "owner"), farm.address),
        ]
        for label, actual, expected in checks:
            if not _same_address(actual, expected):
                raise self.PostconditionFailed(f"{label} is {actual}, expected {expected}")

        values = [
            ("farm.startBlock()", self.client.call(farm, "startBlock"), schedule.start_block),
            (
                "farm.rewardPerBlock()",
                self.client.call(farm, "rewardPerBlock"),
                schedule.reward_per_block,
            ),
        ]
        for label, actual, expected in values:
            if int(actual) != expected:
                raise self.PostconditionFailed(f"{label} is {actual}, expected {expected}")
        print(f"(i) {token.name} is owned by {farm.name}; deployment verified")
