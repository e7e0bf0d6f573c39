import typing
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

from farm_deployment.constants import (
    ARTIFACTS_DIR,
    CONSTRUCTOR_PARAMS_DIR,
    DEFAULT_REWARD_PER_BLOCK,
    DEFAULT_START_BLOCK_OFFSET,
    MAX_TOKEN_DECIMALS,
    REWARD_UNIT_BASE,
    REWARD_UNIT_TOKEN,
    REWARD_UNITS,
    TOKEN_CONTRACTS,
)
from farm_deployment.utils import _load_yaml

REWARD_SCHEDULE_KEY = "reward_schedule"


class DeploymentConfigError(ValueError):
    pass


class RewardScheduleParameters(typing.NamedTuple):
    """Farm reward schedule derived from a single chain height reading."""

    start_block: int
    reward_per_block: int


def _require(section: Dict, key: str, section_name: str) -> Any:
    value = section.get(key)
    if value is None or value == "":
        raise DeploymentConfigError(f"{section_name}.{key} is not set in params file.")
    return value


def _as_int(value: Any, name: str) -> int:
    # bool is an int subclass; a float would be truncated
    if isinstance(value, (bool, float)):
        raise DeploymentConfigError(f"{name} must be an integer, got {value!r}.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise DeploymentConfigError(f"{name} must be an integer, got {value!r}.")


def _as_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, (bool, float)):
        # floats silently lose precision for token amounts
        raise DeploymentConfigError(
            f"{name} must be an integer or a quoted decimal string, got {value!r}."
        )
    try:
        amount = Decimal(str(value).replace("_", ""))
    except InvalidOperation:
        raise DeploymentConfigError(f"{name} is not a valid amount: {value!r}.")
    if not amount.is_finite():
        raise DeploymentConfigError(f"{name} is not a valid amount: {value!r}.")
    return amount


class RewardPolicy:
    """
    Reward schedule policy for the farm contract.

    start_block_offset: number of blocks added to the chain height read right
        before farm deployment; must be at least 1 so the reward start is in the future.
    reward_per_block: amount emitted per block, expressed in `reward_unit`.
    reward_unit: "base" for the token's smallest unit (passed verbatim), or
        "token" for whole tokens scaled by 10**token_decimals.
    token_decimals: the token's decimals. Required for the "token" unit; when set,
        it is also checked against the deployed token's decimals().
    """

    def __init__(
        self,
        start_block_offset: int = DEFAULT_START_BLOCK_OFFSET,
        reward_per_block: Any = DEFAULT_REWARD_PER_BLOCK,
        reward_unit: str = REWARD_UNIT_BASE,
        token_decimals: Optional[int] = None,
    ):
        self.start_block_offset = _as_int(start_block_offset, "start_block_offset")
        if self.start_block_offset < 1:
            raise DeploymentConfigError(
                f"start_block_offset must be at least 1 block, got {self.start_block_offset}."
            )

        if reward_unit not in REWARD_UNITS:
            raise DeploymentConfigError(
                f"reward_unit must be one of {REWARD_UNITS}, got {reward_unit!r}."
            )
        self.reward_unit = reward_unit

        if token_decimals is not None:
            token_decimals = _as_int(token_decimals, "token_decimals")
            if not 0 <= token_decimals <= MAX_TOKEN_DECIMALS:
                raise DeploymentConfigError(
                    f"token_decimals must be between 0 and {MAX_TOKEN_DECIMALS}, "
                    f"got {token_decimals}."
                )
        elif reward_unit == REWARD_UNIT_TOKEN:
            raise DeploymentConfigError(
                f"token_decimals is required when reward_unit is '{REWARD_UNIT_TOKEN}'."
            )
        self.token_decimals = token_decimals

        self.reward_amount = _as_decimal(reward_per_block, "reward_per_block")
        self.reward_per_block = self._to_base_units(self.reward_amount)

    def _to_base_units(self, amount: Decimal) -> int:
        if amount < 0:
            raise DeploymentConfigError(f"reward_per_block cannot be negative, got {amount}.")

        if self.reward_unit == REWARD_UNIT_TOKEN:
            amount = amount.scaleb(self.token_decimals)

        if amount != amount.to_integral_value():
            raise DeploymentConfigError(
                f"reward_per_block {self.reward_amount} {self.reward_unit} "
                f"is not a whole number of base units."
            )
        return int(amount)

    def schedule(self, height: int) -> RewardScheduleParameters:
        """Derives the farm reward schedule from a freshly read chain height."""
        if isinstance(height, bool) or not isinstance(height, int) or height < 0:
            raise ValueError(f"Chain height must be a non-negative integer, got {height!r}.")
        return RewardScheduleParameters(
            start_block=height + self.start_block_offset,
            reward_per_block=self.reward_per_block,
        )

    def check_token_decimals(self, onchain_decimals: int) -> None:
        """Rejects a deployed token whose decimals differ from the configured ones."""
        if self.token_decimals is None:
            return
        if int(onchain_decimals) != self.token_decimals:
            raise DeploymentConfigError(
                f"Token reports {onchain_decimals} decimals but the reward schedule "
                f"assumes {self.token_decimals}; refusing to deploy a mis-scaled reward rate."
            )

    def describe(self) -> str:
        if self.reward_unit == REWARD_UNIT_TOKEN:
            amount = f"{self.reward_amount} tokens ({self.reward_per_block} base units)"
        else:
            amount = f"{self.reward_per_block} base units"
        return f"start at height + {self.start_block_offset} blocks, {amount} per block"

    @classmethod
    def from_config(cls, config: Optional[Dict]) -> "RewardPolicy":
        config = config or dict()
        if not isinstance(config, dict):
            raise DeploymentConfigError(f"Malformed {REWARD_SCHEDULE_KEY} section.")
        return cls(
            start_block_offset=config.get("start_block_offset", DEFAULT_START_BLOCK_OFFSET),
            reward_per_block=config.get("reward_per_block", DEFAULT_REWARD_PER_BLOCK),
            reward_unit=config.get("reward_unit", REWARD_UNIT_BASE),
            token_decimals=config.get("token_decimals"),
        )


class FarmDeploymentConfig:
    """Validated deployment parameters for a single token/farm pair."""

    def __init__(
        self,
        name: str,
        chain_id: int,
        token_contract: str,
        farm_contract: str,
        reward_policy: RewardPolicy,
        artifacts_dir: Path = ARTIFACTS_DIR,
        artifacts_filename: Optional[str] = None,
        path: Optional[Path] = None,
    ):
        self.name = name
        self.chain_id = chain_id
        self.token_contract = token_contract
        self.farm_contract = farm_contract
        self.reward_policy = reward_policy
        self.artifacts_dir = Path(artifacts_dir)
        self.artifacts_filename = artifacts_filename or f"{name}.json"
        self.path = path

    @property
    def registry_filepath(self) -> Path:
        return self.artifacts_dir / self.artifacts_filename

    @classmethod
    def from_config(cls, config: Dict, path: Optional[Path] = None) -> "FarmDeploymentConfig":
        print("Validating parameters YAML...")
        if not isinstance(config, dict):
            raise DeploymentConfigError("Malformed params file.")

        deployment = config.get("deployment")
        if not deployment:
            raise DeploymentConfigError("deployment is not set in params file.")
        name = str(_require(deployment, "name", "deployment"))
        chain_id = _as_int(_require(deployment, "chain_id", "deployment"), "deployment.chain_id")

        artifacts = config.get("artifacts") or dict()
        filename = artifacts.get("filename")
        if not filename:
            raise DeploymentConfigError("artifact filename is not set in params file.")
        artifacts_dir = Path(artifacts.get("dir", ARTIFACTS_DIR))

        contracts = config.get("contracts")
        if not contracts:
            raise DeploymentConfigError("Params file missing 'contracts' field.")
        if not isinstance(contracts, dict):
            raise DeploymentConfigError("Malformed 'contracts' field in params file.")
        token_contract = str(_require(contracts, "token", "contracts"))
        farm_contract = str(_require(contracts, "farm", "contracts"))
        if token_contract == farm_contract:
            raise DeploymentConfigError("Token and farm contracts must be different contracts.")

        reward_policy = RewardPolicy.from_config(config.get(REWARD_SCHEDULE_KEY))

        return cls(
            name=name,
            chain_id=chain_id,
            token_contract=token_contract,
            farm_contract=farm_contract,
            reward_policy=reward_policy,
            artifacts_dir=artifacts_dir,
            artifacts_filename=filename,
            path=path,
        )

    @classmethod
    def from_yaml(cls, filepath: Path) -> "FarmDeploymentConfig":
        config = _load_yaml(filepath)
        return cls.from_config(config=config, path=filepath)

    def check_chain_id(self, connected_chain_id: int, local: bool) -> None:
        """The params file must target the connected chain, except on local networks."""
        if local:
            return
        if self.chain_id != connected_chain_id:
            raise DeploymentConfigError(
                f"chain_id in params file ({self.chain_id}) does not match "
                f"chain_id of current network ({connected_chain_id})."
            )


def default_params_filepath(token_variant: str, ecosystem: str, network: str) -> Path:
    """Bundled params file for a token variant on a network, e.g. bsc-testnet/ttndex.yml."""
    if token_variant not in TOKEN_CONTRACTS:
        raise DeploymentConfigError(f"Unknown token variant '{token_variant}'.")
    filepath = CONSTRUCTOR_PARAMS_DIR / f"{ecosystem}-{network}" / f"{token_variant}.yml"
    if not filepath.exists():
        raise DeploymentConfigError(
            f"No bundled params for '{token_variant}' on {ecosystem}:{network} ({filepath})."
        )
    return filepath
