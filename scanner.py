import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from decoder import decode
from errors import DecodeError

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    from_block: int
    to_block: int
    safe_head: int
    records: List = field(default_factory=list)
    skipped: List[DecodeError] = field(default_factory=list)
    to_block_hash: Optional[str] = None


class EventScanner:
    """Finds and decodes checkpoint logs for one chain instance.

    Ranges only ever cover blocks at least ``confirmation_depth`` behind the
    head, and never more than ``max_chunk_blocks`` at a time. Wider ranges are
    split into provider-sized sub-ranges that are fetched concurrently and put
    back in block order.
    """

    def __init__(self, instance, rpc, l2_rpc=None):
        self.instance = instance
        self.descriptor = instance.descriptor
        self.rpc = rpc
        self.l2_rpc = l2_rpc

    async def get_safe_head(self):
        head = await self.rpc.get_head_block()
        return head - self.descriptor.confirmation_depth

    def plan_range(self, cursor, safe_head):
        if safe_head <= cursor:
            return None
        return cursor + 1, min(safe_head, cursor + self.instance.max_chunk_blocks)

    def sub_ranges(self, from_block, to_block):
        step = self.rpc.max_range
        return [(start, min(start + step - 1, to_block)) for start in range(from_block, to_block + 1, step)]

    async def fetch(self, from_block, to_block):
        """Logs of the range in block order, plus the entries the provider sent malformed."""
        semaphore = asyncio.Semaphore(self.instance.fetch_concurrency)
        topics = [self.descriptor.topic0]

        async def fetch_one(start, end):
            async with semaphore:
                return await self.rpc.fetch_logs(self.descriptor.contract_address, topics, start, end)

        chunks = await asyncio.gather(*(fetch_one(start, end) for start, end in self.sub_ranges(from_block, to_block)))
        logs = [log for chunk, _ in chunks for log in chunk]
        malformed = [error for _, errors in chunks for error in errors]
        logger.debug(f"{self.descriptor.network}: {len(logs)} log(s) in blocks {from_block}-{to_block}")
        return sorted(logs, key=lambda log: log.position), malformed

    def decode_logs(self, logs):
        records, skipped = [], []
        for log in logs:
            try:
                records.append(decode(log, self.descriptor))
            except DecodeError as exc:
                logger.warning(f"{self.descriptor.network}: skipping log: {exc}")
                skipped.append(exc)
        return records, skipped

    async def resolve(self, records):
        """Fill in L2 block numbers the L1 event did not carry."""
        if all(record.resolved for record in records):
            return records, []

        resolved, skipped = [], []
        for record in records:
            if record.resolved:
                resolved.append(record)
                continue
            number = await self.l2_rpc.get_block_number(record.l2_block_hash)
            if number is None:
                exc = DecodeError(
                    f"L2 block {record.l2_block_hash} from L1 block {record.l1_block_number} "
                    f"is unknown to the L2 node"
                )
                logger.warning(f"{self.descriptor.network}: skipping log: {exc}")
                skipped.append(exc)
                continue
            resolved.append(record.with_l2_block_number(number))
        return resolved, skipped

    async def block_hash(self, block_number):
        return await self.rpc.get_block_hash(block_number)

    async def scan(self, cursor, safe_head=None, on_decoding=None):
        """Fetch and decode the next range after ``cursor``; None when caught up.

        ``on_decoding`` is called once the logs are in and decoding starts.
        """
        if safe_head is None:
            safe_head = await self.get_safe_head()
        planned = self.plan_range(cursor, safe_head)
        if planned is None:
            return None

        from_block, to_block = planned
        logs, malformed = await self.fetch(from_block, to_block)
        if on_decoding is not None:
            on_decoding()
        records, skipped = self.decode_logs(logs)
        records, unresolved = await self.resolve(records)
        return ScanResult(
            from_block=from_block,
            to_block=to_block,
            safe_head=safe_head,
            records=records,
            skipped=malformed + skipped + unresolved,
            to_block_hash=await self.block_hash(to_block),
        )

    async def last_canonical_block(self, recorded):
        """Highest L1 block whose recorded hash is still canonical, or None."""
        for block_number, recorded_hash in sorted(recorded, reverse=True):
            canonical = await self.block_hash(block_number)
            if canonical.lower() == recorded_hash.lower():
                return block_number
        return None

    async def find_fork_point(self, recorded):
        """Lowest L1 block whose recorded hash is no longer canonical, or None."""
        for block_number, recorded_hash in sorted(recorded):
            canonical = await self.block_hash(block_number)
            if canonical.lower() != recorded_hash.lower():
                logger.warning(
                    f"{self.descriptor.network}: block {block_number} was {recorded_hash}, "
                    f"canonical is now {canonical}"
                )
                return block_number
        return None
