"""Turn raw checkpoint logs into one normalized record shape.

Each rollup family publishes its checkpoints differently:

* OP Stack ``L2OutputOracle`` emits ``OutputProposed(outputRoot, l2OutputIndex,
  l2BlockNumber, l1Timestamp)`` with the first three indexed.
* Arbitrum ``Outbox`` emits ``SendRootUpdated(outputRoot, l2BlockHash)``. The
  L2 block number is not in the log; records come out with
  ``l2_block_number=None`` and the scanner resolves it against an L2 node.

Decoding is a pure function of the log and the chain descriptor. Anything
wrong with a log raises ``DecodeError`` and never touches the network or the
store.
"""
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3Exception

from chains import ChainFamily
from errors import DecodeError

MAX_STORED_INT = 2 ** 63 - 1

# Only used for its ABI codec, never connected
codec_w3 = Web3()


@dataclass(frozen=True)
class CheckpointRecord:
    family: ChainFamily
    network: str
    l2_block_number: Optional[int]
    output_root: str
    l1_block_number: int
    l1_block_hash: str
    l1_transaction_hash: str
    l1_transaction_index: Optional[int]
    log_index: int
    l2_output_index: Optional[int] = None
    l2_block_hash: Optional[str] = None
    l1_timestamp: Optional[int] = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)

    @property
    def resolved(self):
        return self.l2_block_number is not None

    def with_l2_block_number(self, l2_block_number):
        return dataclasses.replace(self, l2_block_number=l2_block_number)


@lru_cache(maxsize=None)
def _event_for(descriptor):
    contract = codec_w3.eth.contract(abi=[descriptor.event_abi])
    return getattr(contract.events, descriptor.event_name)()


def _check_shape(log, descriptor):
    if log.removed:
        raise DecodeError(f"log {log.position} was removed from the canonical chain", log)
    if log.block_hash is None or log.transaction_hash is None:
        raise DecodeError(f"log {log.position} is missing its block or transaction hash", log)
    if log.address and log.address.lower() != descriptor.contract_address.lower():
        raise DecodeError(f"log {log.position} was emitted by {log.address}, not {descriptor.contract_address}", log)

    indexed = sum(1 for arg in descriptor.event_abi['inputs'] if arg['indexed'])
    if len(log.topics) != indexed + 1:
        raise DecodeError(f"log {log.position} has {len(log.topics)} topics, expected {indexed + 1}", log)
    if Web3.to_hex(log.topics[0]) != descriptor.topic0:
        raise DecodeError(f"log {log.position} is not a {descriptor.event_name} event", log)


def _decode_args(log, descriptor):
    entry = {
        'address': descriptor.contract_address,
        'topics': list(log.topics),
        'data': log.data,
        'blockNumber': log.block_number,
        'blockHash': HexBytes(log.block_hash),
        'transactionHash': HexBytes(log.transaction_hash),
        'transactionIndex': log.transaction_index,
        'logIndex': log.log_index,
    }
    try:
        return _event_for(descriptor).process_log(entry)['args']
    except (Web3Exception, DecodingError, ValueError, KeyError, TypeError) as exc:
        raise DecodeError(f"log {log.position} could not be decoded as {descriptor.event_name}: {exc}", log)


def _uint(log, args, name):
    value = args[name]
    if not isinstance(value, int) or value < 0 or value > MAX_STORED_INT:
        raise DecodeError(f"log {log.position} field {name}={value!r} is out of range", log)
    return value


def _base_fields(log, descriptor, args):
    return dict(
        family=descriptor.family,
        network=descriptor.network,
        output_root=Web3.to_hex(args['outputRoot']),
        l1_block_number=log.block_number,
        l1_block_hash=log.block_hash,
        l1_transaction_hash=log.transaction_hash,
        l1_transaction_index=log.transaction_index,
        log_index=log.log_index,
    )


def decode_opstack(log, descriptor, args):
    return CheckpointRecord(
        l2_block_number=_uint(log, args, 'l2BlockNumber'),
        l2_output_index=_uint(log, args, 'l2OutputIndex'),
        l1_timestamp=_uint(log, args, 'l1Timestamp'),
        **_base_fields(log, descriptor, args),
    )


def decode_arbitrum(log, descriptor, args):
    return CheckpointRecord(
        l2_block_number=None,
        l2_block_hash=Web3.to_hex(args['l2BlockHash']),
        **_base_fields(log, descriptor, args),
    )


DECODERS = {
    ChainFamily.OPSTACK: decode_opstack,
    ChainFamily.ARBITRUM: decode_arbitrum,
}


def decode(log, descriptor):
    _check_shape(log, descriptor)
    args = _decode_args(log, descriptor)
    return DECODERS[descriptor.family](log, descriptor, args)
