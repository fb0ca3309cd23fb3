"""Static metadata for the rollups whose L1 checkpoints we index.

A network is named ``<chain>_<network type>`` (``base_mainnet``,
``arbitrum_sepolia``). The chain name decides the rollup family, and the
family decides which L1 event carries the checkpoint and how it is decoded.
"""
import json
import os
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache

from web3 import Web3

from errors import ConfigurationError

ABI_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'abi')


class ChainFamily(str, Enum):
    OPSTACK = 'opstack'
    ARBITRUM = 'arbitrum'


CHAIN_FAMILIES = {
    'optimism': ChainFamily.OPSTACK,
    'base': ChainFamily.OPSTACK,
    'zora': ChainFamily.OPSTACK,
    'arbitrum': ChainFamily.ARBITRUM,
}

NETWORK_TYPES = ('mainnet', 'sepolia', 'goerli')

# (event name, abi file, confirmation depth)
FAMILY_EVENTS = {
    ChainFamily.OPSTACK: ('OutputProposed', 'L2OutputOracle.json', 12),
    ChainFamily.ARBITRUM: ('SendRootUpdated', 'Outbox.json', 20),
}

# L1 checkpoint contract (L2OutputOracle or Outbox) and the block it was deployed at
KNOWN_NETWORKS = {
    'optimism_mainnet': ('0xdfe97868233d1aa22e815a266982f2cf17685a27', 17365802),
    'base_mainnet': ('0x56315b90c40730925ec5485cf004d835058518a0', 17482143),
    'zora_mainnet': ('0x9e6204f750cd866b299594e2ac9ea824e2e5f95c', 17473938),
    'arbitrum_mainnet': ('0x0b9857ae2d4a3dbe74ffe1d7df045bb7f96e4840', 15411056),
    'optimism_sepolia': ('0x90e9c4f8a994a250f6aefd61cafb4f2e895d458f', 4071248),
    'base_sepolia': ('0x84457ca9d0163fbc4bbfe4dfbb20ba46e48df254', 4370901),
    'arbitrum_sepolia': ('0x65f07c7d521164a4d5dac6eb8fac8da067a3b78f', 4139226),
}


@dataclass(frozen=True)
class ChainDescriptor:
    family: ChainFamily
    network: str
    contract_address: str
    deployment_block: int
    confirmation_depth: int
    event_name: str
    event_abi: dict = field(repr=False, hash=False, compare=False)

    @property
    def event_signature(self):
        types = ','.join(arg['type'] for arg in self.event_abi['inputs'])
        return f"{self.event_name}({types})"

    @property
    def topic0(self):
        return Web3.to_hex(Web3.keccak(text=self.event_signature))

    @property
    def needs_l2_rpc(self):
        # SendRootUpdated only carries the L2 block hash
        return self.family is ChainFamily.ARBITRUM


def network_name(chain_name, network_type):
    chain_name = chain_name.strip().lower()
    network_type = network_type.strip().lower()
    if chain_name not in CHAIN_FAMILIES:
        raise ConfigurationError(f"Unknown chain name: {chain_name!r}")
    if network_type not in NETWORK_TYPES:
        raise ConfigurationError(f"Unknown network type: {network_type!r}")
    return f"{chain_name}_{network_type}"


def family_for(network):
    chain_name = network.split('_', 1)[0]
    return CHAIN_FAMILIES.get(chain_name)


@lru_cache(maxsize=None)
def load_event_abi(abi_file, event_name):
    path = os.path.join(ABI_DIR, abi_file)
    try:
        with open(path, 'r') as file:
            abi = json.load(file)
    except FileNotFoundError:
        raise ConfigurationError(f"ABI file not found: {path}")

    for entry in abi:
        if entry.get('type') == 'event' and entry.get('name') == event_name:
            return entry
    raise ConfigurationError(f"Event {event_name} missing from {abi_file}")


def get_descriptor(network, family=None, contract_address=None, deployment_block=None,
                   confirmation_depth=None):
    """Build the descriptor for a network.

    Known networks need nothing but their name. Anything else must say which
    family it belongs to and where its checkpoint contract lives.
    """
    if family is None:
        family = family_for(network)
    if family is None:
        raise ConfigurationError(f"{network}: cannot infer the chain family, set 'family'")
    try:
        family = ChainFamily(family)
    except ValueError:
        raise ConfigurationError(f"{network}: unknown chain family {family!r}")

    known_address, known_block = KNOWN_NETWORKS.get(network, (None, None))
    contract_address = contract_address or known_address
    if not contract_address:
        raise ConfigurationError(f"{network}: no checkpoint contract address configured")
    if not Web3.is_address(contract_address):
        raise ConfigurationError(f"{network}: invalid contract address {contract_address!r}")

    if deployment_block is None:
        deployment_block = known_block if known_block is not None else 0

    event_name, abi_file, default_depth = FAMILY_EVENTS[family]
    if confirmation_depth is None:
        confirmation_depth = default_depth
    if int(confirmation_depth) < 0:
        raise ConfigurationError(f"{network}: confirmation depth must not be negative")

    return ChainDescriptor(
        family=family,
        network=network,
        contract_address=Web3.to_checksum_address(contract_address),
        deployment_block=int(deployment_block),
        confirmation_depth=int(confirmation_depth),
        event_name=event_name,
        event_abi=load_event_abi(abi_file, event_name),
    )
