from hexbytes import HexBytes
from web3 import Web3

from config import build_instance
from errors import TransientUnavailable
from rpc import RawLogEvent

TEST_DEFAULTS = {
    'poll_interval': 0,
    'max_backoff': 0,
    'rpc_backoff_base': 0,
    'rpc_backoff_max': 0,
}


def make_instance(network='optimism_mainnet', **overrides):
    entry = {'network': network, 'rpc_urls': ['http://l1.test'], 'start_block': 0}
    if network.startswith('arbitrum'):
        entry['l2_rpc_urls'] = ['http://l2.test']
    entry.update(overrides)
    return build_instance(entry, TEST_DEFAULTS, environ={})


def block_hash(number, fork=''):
    return Web3.to_hex(Web3.keccak(text=f"block-{number}{fork}"))


def root(label):
    return Web3.to_hex(Web3.keccak(text=f"root-{label}"))


def word(value):
    return HexBytes(int(value).to_bytes(32, 'big'))


def make_opstack_log(descriptor, block, l2_block, output_root=None, output_index=None,
                     l1_timestamp=1700000000, log_index=0, fork=''):
    return RawLogEvent(
        block_number=block,
        log_index=log_index,
        block_hash=block_hash(block, fork),
        transaction_hash=Web3.to_hex(Web3.keccak(text=f"tx-{block}-{log_index}{fork}")),
        transaction_index=0,
        address=descriptor.contract_address,
        topics=(
            HexBytes(descriptor.topic0),
            HexBytes(output_root or root(l2_block)),
            word(output_index if output_index is not None else l2_block),
            word(l2_block),
        ),
        data=word(l1_timestamp),
    )


def make_arbitrum_log(descriptor, block, l2_hash, output_root=None, log_index=0, fork=''):
    return RawLogEvent(
        block_number=block,
        log_index=log_index,
        block_hash=block_hash(block, fork),
        transaction_hash=Web3.to_hex(Web3.keccak(text=f"tx-{block}-{log_index}{fork}")),
        transaction_index=3,
        address=descriptor.contract_address,
        topics=(
            HexBytes(descriptor.topic0),
            HexBytes(output_root or root(l2_hash)),
            HexBytes(l2_hash),
        ),
        data=HexBytes(b''),
    )


class FakeRpc:
    """In-memory chain: a head, some logs and canonical block hashes."""

    def __init__(self, head, logs=(), max_range=2000):
        self.head = head
        self.logs = list(logs)
        self.max_range = max_range
        self.hashes = {}
        self.l2_blocks = {}
        self.fetches = []
        self.head_failures = 0
        self.malformed = {}

    async def get_head_block(self):
        if self.head_failures:
            self.head_failures -= 1
            raise TransientUnavailable("all endpoints down")
        return self.head

    async def fetch_logs(self, contract_address, topics, from_block, to_block):
        assert from_block <= to_block
        assert to_block - from_block + 1 <= self.max_range
        self.fetches.append((from_block, to_block))
        logs = [log for log in self.logs if from_block <= log.block_number <= to_block]
        malformed = [error for block, error in sorted(self.malformed.items()) if from_block <= block <= to_block]
        return logs, malformed

    async def get_block_hash(self, block_number):
        return self.hashes.get(block_number, block_hash(block_number))

    async def get_block_number(self, l2_hash):
        return self.l2_blocks.get(l2_hash)
