import asyncio
import logging
import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlsplit

import requests
from hexbytes import HexBytes
from web3 import Web3, HTTPProvider
from web3.exceptions import BlockNotFound, Web3Exception

from errors import DecodeError, TransientUnavailable

logger = logging.getLogger(__name__)

w3executor = ThreadPoolExecutor(max_workers=10)

# Errors that mean "this endpoint failed", as opposed to bugs in our own code
ENDPOINT_ERRORS = (requests.RequestException, Web3Exception, ValueError, KeyError, TypeError)


@dataclass(frozen=True)
class RawLogEvent:
    block_number: int
    log_index: int
    block_hash: Optional[str]
    transaction_hash: Optional[str]
    transaction_index: Optional[int]
    address: Optional[str]
    topics: Tuple[HexBytes, ...]
    data: HexBytes
    removed: bool = False

    @classmethod
    def from_receipt(cls, log):
        # blockNumber and logIndex order the batch, everything else is checked by the decoder
        transaction_index = log.get('transactionIndex')
        return cls(
            block_number=int(log['blockNumber']),
            log_index=int(log['logIndex']),
            block_hash=_hex_or_none(log.get('blockHash')),
            transaction_hash=_hex_or_none(log.get('transactionHash')),
            transaction_index=int(transaction_index) if transaction_index is not None else None,
            address=log.get('address'),
            topics=tuple(HexBytes(topic) for topic in log.get('topics') or ()),
            data=HexBytes(log.get('data') or b''),
            removed=bool(log.get('removed', False)),
        )

    @property
    def position(self):
        return self.block_number, self.log_index


def _hex_or_none(value):
    if value is None:
        return None
    return Web3.to_hex(value)


def parse_logs(entries):
    """Split a getLogs answer into ``RawLogEvent``s and ``DecodeError``s for unusable entries."""
    logs, malformed = [], []
    for entry in entries:
        try:
            logs.append(RawLogEvent.from_receipt(entry))
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            error = DecodeError(f"malformed log entry from provider ({exc!r}): {entry!r}")
            logger.warning(str(error))
            malformed.append(error)
    return logs, malformed


def redact(url):
    # Provider URLs often embed API keys in the path
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.hostname or ''}"


def is_retryable(exc):
    """Timeouts, dropped connections, rate limits and 5xx are worth another try."""
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        if response is None:
            return True
        return response.status_code == 429 or response.status_code >= 500
    return False


def setup_web3(url, timeout):
    # Retries are ours to make, so web3's own retry loop stays off
    return Web3(HTTPProvider(url, request_kwargs={'timeout': timeout}, exception_retry_configuration=None))


class RpcClient:
    """JSON-RPC access to one chain through one or more interchangeable endpoints.

    Each call is retried on the current endpoint with exponential backoff and
    jitter while the failure looks transient, then moves on to the next
    endpoint. The endpoint that last answered is tried first next time. When
    every endpoint has failed the call raises ``TransientUnavailable``.
    """

    def __init__(self, urls, name='rpc', timeout=20, max_attempts=3, backoff_base=0.5,
                 backoff_max=8.0, max_range=2000, executor=None):
        if not urls:
            raise ValueError(f"{name}: at least one RPC endpoint is required")
        self.name = name
        self.urls = list(urls)
        self.endpoints = [setup_web3(url, timeout) for url in self.urls]
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_range = max_range
        self.executor = executor or w3executor
        self.active = 0

    def backoff_delay(self, attempt):
        delay = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
        return delay + random.uniform(0, delay / 2)

    async def _call(self, description, fn):
        loop = asyncio.get_running_loop()
        count = len(self.endpoints)
        last_error = None

        for offset in range(count):
            index = (self.active + offset) % count
            url = redact(self.urls[index])

            for attempt in range(1, self.max_attempts + 1):
                try:
                    result = await loop.run_in_executor(self.executor, fn, self.endpoints[index])
                except ENDPOINT_ERRORS as exc:
                    last_error = exc
                    if not is_retryable(exc):
                        logger.warning(f"{self.name}: {description} rejected by {url}: {exc}")
                        break
                    if attempt == self.max_attempts:
                        logger.warning(f"{self.name}: {description} failed {attempt} times on {url}: {exc}")
                        break
                    delay = self.backoff_delay(attempt)
                    logger.info(f"{self.name}: {description} failed on {url} ({exc}), retry {attempt} in {delay:.2f}s")
                    await asyncio.sleep(delay)
                    continue

                if index != self.active:
                    logger.warning(f"{self.name}: failed over to {url}")
                    self.active = index
                return result

        raise TransientUnavailable(
            f"{self.name}: {description} failed on all {count} endpoint(s): {last_error}"
        ) from last_error

    async def get_head_block(self):
        return await self._call('eth_blockNumber', lambda w3: int(w3.eth.block_number))

    async def fetch_logs(self, contract_address, topics, from_block, to_block):
        """Returns ``(logs, malformed)``; one bad entry never fails the whole range."""
        if from_block > to_block:
            raise ValueError(f"from_block {from_block} is after to_block {to_block}")
        if to_block - from_block + 1 > self.max_range:
            raise ValueError(f"block range {from_block}-{to_block} exceeds {self.max_range} blocks")

        filter_params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": contract_address,
            "topics": topics,
        }

        entries = await self._call(
            f"eth_getLogs {from_block}-{to_block}", lambda w3: w3.eth.get_logs(filter_params)
        )
        return parse_logs(entries)

    async def get_block_hash(self, block_number):
        return await self._call(
            f"eth_getBlockByNumber {block_number}",
            lambda w3: Web3.to_hex(w3.eth.get_block(block_number)['hash']),
        )

    async def get_block_number(self, block_hash):
        """Number of the block with this hash, or None if the node does not know it."""
        def lookup(w3):
            try:
                return int(w3.eth.get_block(block_hash)['number'])
            except BlockNotFound:
                return None

        return await self._call(f"eth_getBlockByHash {block_hash}", lookup)
