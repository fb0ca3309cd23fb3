import argparse
import asyncio
import logging
import signal
import sys
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from tqdm import tqdm

import queries
from config import load_config
from database import init_db
from errors import (
    ConfigurationError, Conflict, ReorgDetected, StorageUnavailable, TransientUnavailable,
)
from rpc import RpcClient
from scanner import EventScanner
from store import CheckpointStore, CursorStore

logger = logging.getLogger(__name__)


class MonitorState(str, Enum):
    IDLE = 'idle'
    SCANNING = 'scanning'
    DECODING = 'decoding'
    PERSISTING = 'persisting'
    BACKOFF = 'backoff'


@dataclass
class MonitorStatus:
    network: str
    state: MonitorState = MonitorState.IDLE
    cursor: Optional[int] = None
    safe_head: Optional[int] = None
    records_stored: int = 0
    duplicates: int = 0
    skipped_logs: int = 0
    backoffs: int = 0
    reorgs: int = 0
    last_error: Optional[str] = None
    alarm: Optional[str] = None


class ChainMonitor:
    """Scan → decode → persist loop for one chain instance.

    The cursor only moves forward through ``CheckpointStore.apply_batch``,
    which commits it together with the records of the range it covers. Any
    transient RPC or storage failure sends the monitor into backoff and the
    same range is tried again afterwards.
    """

    def __init__(self, instance, scanner, checkpoints, cursors, clock=time.monotonic):
        self.instance = instance
        self.network = instance.network
        self.scanner = scanner
        self.checkpoints = checkpoints
        self.cursors = cursors
        self.clock = clock
        self.status = MonitorStatus(network=instance.network)
        self.cursor = None
        self.progress = None
        self._backoff = instance.poll_interval
        self._last_reorg_check = None

    def transition(self, state):
        if self.status.state != state:
            logger.debug(f"{self.network}: {self.status.state.value} -> {state.value}")
        self.status.state = state

    def raise_alarm(self, exc):
        self.status.alarm = str(exc)
        logger.critical(f"{self.network}: operator attention required: {exc}")

    def reorg_check_due(self):
        if self._last_reorg_check is None:
            return True
        return self.clock() - self._last_reorg_check >= self.instance.reorg_check_interval

    async def rewind_to_fork(self, fork_block, rewind_to):
        """Delete what was observed after ``rewind_to`` and move the cursor back to it."""
        depth = self.cursor - rewind_to
        if depth > self.instance.max_rewind_blocks:
            raise ReorgDetected(self.network, fork_block, depth)
        cursor_hash = await self.scanner.block_hash(rewind_to) if rewind_to >= 0 else None
        self.checkpoints.rewind(self.instance, rewind_to, cursor_hash)
        self.cursor = rewind_to
        self.status.cursor = rewind_to
        self.status.reorgs += 1

    def rewind_floor(self, base, fork_block):
        return min(fork_block - 1, max(base, self.instance.start_block - 1))

    async def check_reorg(self):
        """Re-check recorded L1 hashes of the last ``reorg_check_depth`` blocks.

        Returns the first block to be rescanned if a rewind happened, otherwise
        None. The rewind goes back to the highest recorded block that is still
        canonical below the mismatch, or to the bottom of the window.
        """
        base = self.cursor - self.instance.reorg_check_depth
        checkpoint_hashes = self.checkpoints.recorded_hashes(self.instance, base)
        recorded = list(checkpoint_hashes)
        state = self.cursors.load(self.instance)
        if (state is not None and state.block_hash and state.block > base
                and state.block not in {block for block, _ in checkpoint_hashes}):
            recorded.append((state.block, state.block_hash))

        fork = await self.scanner.find_fork_point(recorded)
        self._last_reorg_check = self.clock()
        if fork is None:
            return None

        verified = [block for block, _ in recorded if block < fork]
        rewind_to = max(verified) if verified else self.rewind_floor(base, fork)
        logger.warning(f"{self.network}: reorg detected at L1 block {fork}, rescanning from {rewind_to + 1}")
        await self.rewind_to_fork(fork, rewind_to)
        return rewind_to + 1

    async def handle_conflict(self, exc):
        stored, observed = exc.stored, exc.observed
        logger.warning(f"{self.network}: {exc}")
        fork = stored.l1_block_number
        canonical = await self.scanner.block_hash(fork)
        if canonical.lower() == stored.l1_block_hash.lower():
            self.checkpoints.supersede(self.instance, observed)
            return

        logger.warning(f"{self.network}: stored checkpoint came from orphaned block {fork}")
        floor = self.rewind_floor(fork - 1 - self.instance.reorg_check_depth, fork)
        earlier = [(block, block_hash) for block, block_hash in self.checkpoints.recorded_hashes(self.instance, floor)
                   if block < fork]
        verified = await self.scanner.last_canonical_block(earlier)
        await self.rewind_to_fork(fork, verified if verified is not None else floor)

    async def step(self):
        """Process one range. Returns True if a range was handled."""
        self.transition(MonitorState.SCANNING)
        safe_head = await self.scanner.get_safe_head()
        self.status.safe_head = safe_head
        scan = await self.scanner.scan(
            self.cursor, safe_head, on_decoding=lambda: self.transition(MonitorState.DECODING)
        )
        if scan is None:
            self.transition(MonitorState.IDLE)
            return False

        self.transition(MonitorState.PERSISTING)
        try:
            result = self.checkpoints.apply_batch(self.instance, scan.records, scan.to_block, scan.to_block_hash)
        except Conflict as exc:
            await self.handle_conflict(exc)
            self.transition(MonitorState.IDLE)
            return True

        previous = self.cursor
        self.cursor = scan.to_block
        self.status.cursor = scan.to_block
        self.status.records_stored += result.inserted
        self.status.duplicates += result.duplicates
        self.status.skipped_logs += len(scan.skipped)
        logger.info(
            f"{self.network}: blocks {scan.from_block}-{scan.to_block}: {result.inserted} new, "
            f"{result.duplicates} known, {len(scan.skipped)} skipped"
        )
        if self.progress is not None:
            self.progress.total = max(self.progress.total or 0, safe_head - self.instance.start_block + 1)
            self.progress.update(scan.to_block - previous)
        self.transition(MonitorState.IDLE)
        return True

    async def cycle(self):
        """One pass of the loop. Returns (progressed, seconds to wait)."""
        try:
            if self.cursor is None:
                self.cursor = self.cursors.initialize(self.instance).block
                self.status.cursor = self.cursor
            if self.reorg_check_due():
                try:
                    await self.check_reorg()
                except ReorgDetected as exc:
                    self.raise_alarm(exc)
            progressed = await self.step()
        except (TransientUnavailable, StorageUnavailable) as exc:
            self.status.backoffs += 1
            self.status.last_error = str(exc)
            self.transition(MonitorState.BACKOFF)
            delay = self._backoff
            self._backoff = min(self._backoff * 2, self.instance.max_backoff)
            logger.warning(f"{self.network}: {exc}; backing off {delay:.1f}s")
            return False, delay
        except ReorgDetected as exc:
            self.raise_alarm(exc)
            self.transition(MonitorState.BACKOFF)
            return False, self.instance.max_backoff

        self._backoff = self.instance.poll_interval
        return progressed, 0 if progressed else self.instance.poll_interval

    async def run(self, stop_when_idle=False):
        logger.info(
            f"{self.network}: monitoring {self.instance.contract_address} "
            f"({self.instance.family.value}, {self.instance.confirmation_depth} confirmations)"
        )
        while True:
            progressed, delay = await self.cycle()
            if stop_when_idle and not progressed and self.status.state == MonitorState.IDLE:
                return self.status
            if delay:
                await asyncio.sleep(delay)
            if self.status.state == MonitorState.BACKOFF:
                self.transition(MonitorState.IDLE)


def build_monitor(instance, Session):
    rpc_options = dict(
        timeout=instance.rpc_timeout,
        max_attempts=instance.rpc_max_attempts,
        backoff_base=instance.rpc_backoff_base,
        backoff_max=instance.rpc_backoff_max,
        max_range=instance.max_range,
    )
    rpc = RpcClient(instance.rpc_urls, name=f"{instance.network} L1", **rpc_options)
    l2_rpc = None
    if instance.l2_rpc_urls:
        l2_rpc = RpcClient(instance.l2_rpc_urls, name=f"{instance.network} L2", **rpc_options)
    scanner = EventScanner(instance, rpc, l2_rpc)
    return ChainMonitor(instance, scanner, CheckpointStore(Session), CursorStore(Session))


async def index(settings, Session, stop_when_idle=False, show_progress=False):
    monitors = [build_monitor(instance, Session) for instance in settings.monitors]
    if show_progress:
        for position, monitor in enumerate(monitors):
            monitor.progress = tqdm(desc=monitor.network, unit='block', position=position)
    try:
        return await asyncio.gather(*(monitor.run(stop_when_idle) for monitor in monitors))
    finally:
        for monitor in monitors:
            if monitor.progress is not None:
                monitor.progress.close()


async def serve(settings, Session, stop_when_idle=False, show_progress=False):
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except NotImplementedError:
            pass
    try:
        return await index(settings, Session, stop_when_idle, show_progress)
    except asyncio.CancelledError:
        logger.info("Shutdown requested, exiting gracefully")
        return None


async def run_reorg_check(instance, Session):
    monitor = build_monitor(instance, Session)
    monitor.cursor = monitor.cursors.initialize(instance).block
    return await monitor.check_reorg()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='l2-indexer', description='Index L2 checkpoints published on L1.')
    parser.add_argument('--config', help='path to config.yml')
    commands = parser.add_subparsers(dest='command', required=True)

    commands.add_parser('run', help='monitor every configured network until stopped')
    commands.add_parser('sync', help='catch up to the current safe head, then exit')

    backfill = commands.add_parser('backfill', help='rescan a network from an earlier L1 block')
    backfill.add_argument('--network', required=True)
    backfill.add_argument('--from-block', type=int, required=True)

    reorg = commands.add_parser('reorg-check', help='verify recent recorded L1 hashes now')
    reorg.add_argument('--network', required=True)

    latest = commands.add_parser('latest', help='show the latest stored checkpoint')
    latest.add_argument('--network', required=True)

    lookup = commands.add_parser('lookup', help='first checkpoint covering an L2 block')
    lookup.add_argument('--network', required=True)
    lookup.add_argument('--l2-block', type=int, required=True)

    export = commands.add_parser('export', help='write stored checkpoints to CSV')
    export.add_argument('--network', required=True)
    export.add_argument('--out', required=True)

    return parser.parse_args(argv)


def print_record(record):
    if record is None:
        print("No checkpoint found.")
        return
    for key, value in queries.record_to_dict(record).items():
        print(f"{key}: {value}")


def main(argv=None):
    args = parse_args(argv)
    try:
        settings = load_config(args.config)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    try:
        Session = init_db(settings.database_url)
    except SQLAlchemyError as exc:
        logger.error(f"Checkpoint store unreachable: {exc}")
        return 1

    try:
        if args.command == 'run':
            asyncio.run(serve(settings, Session))
        elif args.command == 'sync':
            statuses = asyncio.run(serve(settings, Session, stop_when_idle=True, show_progress=True))
            for status in statuses or []:
                print(asdict(status))
        elif args.command == 'backfill':
            instance = settings.get_monitor(args.network)
            CursorStore(Session).backfill(instance, args.from_block)
        elif args.command == 'reorg-check':
            instance = settings.get_monitor(args.network)
            fork = asyncio.run(run_reorg_check(instance, Session))
            print(f"Reorg found, rescanning from L1 block {fork}" if fork is not None else "No reorg detected.")
        elif args.command == 'latest':
            print_record(queries.latest_checkpoint(Session, args.network))
            print(f"cursor: {queries.cursor_for(Session, args.network)}")
        elif args.command == 'lookup':
            print_record(queries.checkpoint_for_l2_block(Session, args.network, args.l2_block))
        elif args.command == 'export':
            count = queries.write_to_csv(queries.list_checkpoints(Session, args.network), args.out)
            print(f"{count} checkpoint(s) written to {args.out}")
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1
    except ReorgDetected as exc:
        logger.critical(str(exc))
        return 2
    except (StorageUnavailable, TransientUnavailable) as exc:
        logger.error(str(exc))
        return 1
    except KeyboardInterrupt:
        print("\nExiting gracefully...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
