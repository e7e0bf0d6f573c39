from ape import networks

from farm_deployment.constants import FORK_NETWORK_SUFFIX, LOCAL_NETWORKS


def is_local_network() -> bool:
    """Returns True if the connected network is a local (or forked) development chain."""
    network_name = networks.provider.network.name
    return network_name in LOCAL_NETWORKS or network_name.endswith(FORK_NETWORK_SUFFIX)
