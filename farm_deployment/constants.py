from pathlib import Path

import farm_deployment

#
# Filesystem
#

DEPLOYMENT_DIR = Path(farm_deployment.__file__).parent
CONSTRUCTOR_PARAMS_DIR = DEPLOYMENT_DIR / "constructor_params"
ARTIFACTS_DIR = DEPLOYMENT_DIR / "artifacts"
RUN_LOGS_DIR = ARTIFACTS_DIR / "runs"

#
# Networks
#

LOCAL_NETWORKS = ["local"]
FORK_NETWORK_SUFFIX = "-fork"

#
# Token variants
#

BRIDGESWAP = "bridgeswap"
TTNDEX = "ttndex"

TOKEN_CONTRACTS = {
    BRIDGESWAP: "BridgeSwapToken",
    TTNDEX: "TTNDEXToken",
}

SUPPORTED_TOKEN_VARIANTS = list(TOKEN_CONTRACTS)

FARM_CONTRACT = "MasterChef"

#
# Reward schedule
#

# Blocks between the height read after token deployment and the first reward block.
DEFAULT_START_BLOCK_OFFSET = 10

# Reward per block, in the token's smallest (base) unit unless configured otherwise.
DEFAULT_REWARD_PER_BLOCK = 1_000_000

REWARD_UNIT_BASE = "base"
REWARD_UNIT_TOKEN = "token"
REWARD_UNITS = [REWARD_UNIT_BASE, REWARD_UNIT_TOKEN]

# uint256 cannot hold 10**78
MAX_TOKEN_DECIMALS = 77
