import json
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from eth_typing import ABI, ChecksumAddress
from eth_utils import to_checksum_address

from farm_deployment.chain import DeployedContract
from farm_deployment.utils import _load_json

ChainId = int
ContractName = str


STANDARD_REGISTRY_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


class RegistryEntry(NamedTuple):
    """Represents a single entry in a contract registry."""

    chain_id: ChainId
    name: ContractName
    address: ChecksumAddress
    abi: ABI
    tx_hash: Optional[str]
    block_number: Optional[int]
    deployer: str


def _get_entry(
    chain_id: ChainId,
    contract: DeployedContract,
    registry_names: Dict[ContractName, ContractName],
) -> RegistryEntry:
    # optionally remapped registry name, defaults to the real contract name
    contract_name = registry_names.get(contract.name, contract.name)
    entry = RegistryEntry(
        name=contract_name,
        address=to_checksum_address(contract.address),
        abi=list(contract.abi),
        chain_id=chain_id,
        tx_hash=contract.tx_hash,
        block_number=contract.block_number,
        deployer=contract.deployer,
    )
    return entry


def read_registry(filepath: Path) -> List[RegistryEntry]:
    data = _load_json(filepath)
    registry_entries = list()
    for chain_id, entries in data.items():
        for contract_name, artifacts in entries.items():
            registry_entry = RegistryEntry(
                chain_id=int(chain_id),
                name=contract_name,
                address=artifacts["address"],
                abi=artifacts["abi"],
                tx_hash=artifacts["tx_hash"],
                block_number=artifacts["block_number"],
                deployer=artifacts["deployer"],
            )
            registry_entries.append(registry_entry)
    return registry_entries


def write_registry(
    entries: List[RegistryEntry],
    filepath: Path,
    silent: bool = False,
    run_id: Optional[str] = None,
) -> Path:
    """
    Writes a contract registry to a file.

    An existing registry is extended when it has no entries for the same chain;
    otherwise the entries go to a sibling `.<run_id>.unmerged.json` file and nothing
    is overwritten.
    """

    if not entries:
        print("No entries provided.")
        return filepath

    # Sort registry entries to enforce common order
    entries.sort(key=lambda entry: (str(entry.chain_id), entry.name))

    data = defaultdict(dict)
    for entry in entries:
        entry_abi = list(entry.abi)
        entry_abi.sort(key=lambda d: (d["type"], d.get("name", "")))

        data[str(entry.chain_id)][entry.name] = {
            "address": entry.address,
            "abi": entry_abi,
            "tx_hash": entry.tx_hash,
            "block_number": entry.block_number,
            "deployer": entry.deployer,
        }

    filepath.parent.mkdir(parents=True, exist_ok=True)

    if filepath.exists():
        if not silent:
            print(f"Updating existing registry at {filepath}.")
        existing_data = _load_json(filepath)

        if any(chain_id in existing_data for chain_id in data):
            suffix = f".{run_id}.unmerged.json" if run_id else ".unmerged.json"
            filepath = filepath.with_suffix(suffix)
            if not silent:
                print(
                    "Cannot merge registries with overlapping chain IDs.\n"
                    f"Writing to {filepath} to avoid overwriting existing data."
                )
        else:
            existing_data.update(data)
            data = existing_data
    elif not silent:
        print(f"Creating new registry at {filepath}.")

    with open(filepath, "w") as file:
        json.dump(data, file, **STANDARD_REGISTRY_JSON_FORMAT)

    return filepath


def registry_from_deployments(
    deployments: List[DeployedContract],
    chain_id: ChainId,
    output_filepath: Path,
    registry_names: Optional[Dict[ContractName, ContractName]] = None,
    run_id: Optional[str] = None,
) -> Path:
    """Creates a contract registry from the contracts deployed during a run."""
    registry_names = registry_names or dict()
    entries = [
        _get_entry(chain_id=chain_id, contract=contract, registry_names=registry_names)
        for contract in deployments
    ]
    output_filepath = write_registry(entries=entries, filepath=output_filepath, run_id=run_id)
    print(f"(i) Registry written to {output_filepath}!")
    return output_filepath
