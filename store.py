"""Durable side of the monitor: checkpoint rows and scan cursors.

Every write happens in a single transaction. A batch of checkpoints and the
cursor advance that covers it are committed together, so after a crash the
cursor can never be ahead of the rows it vouches for.
"""
import logging
from collections import namedtuple
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from chains import ChainFamily
from database import Checkpoint, Cursor
from decoder import CheckpointRecord
from errors import Conflict, StorageUnavailable

logger = logging.getLogger(__name__)

CursorState = namedtuple('CursorState', ['block', 'block_hash'])
BatchResult = namedtuple('BatchResult', ['inserted', 'duplicates'])


@contextmanager
def transaction(Session, description):
    try:
        with Session() as session, session.begin():
            yield session
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        raise StorageUnavailable(f"{description}: {exc}") from exc


def to_row(record):
    return Checkpoint(
        family=record.family.value,
        network=record.network,
        l2_block_number=record.l2_block_number,
        l2_output_index=record.l2_output_index,
        l2_block_hash=record.l2_block_hash,
        output_root=record.output_root,
        l1_block_number=record.l1_block_number,
        l1_block_hash=record.l1_block_hash,
        l1_transaction_hash=record.l1_transaction_hash,
        l1_transaction_index=record.l1_transaction_index,
        log_index=record.log_index,
        l1_timestamp=record.l1_timestamp,
        observed_at=record.observed_at,
    )


def to_record(row):
    return CheckpointRecord(
        family=ChainFamily(row.family),
        network=row.network,
        l2_block_number=row.l2_block_number,
        l2_output_index=row.l2_output_index,
        l2_block_hash=row.l2_block_hash,
        output_root=row.output_root,
        l1_block_number=row.l1_block_number,
        l1_block_hash=row.l1_block_hash,
        l1_transaction_hash=row.l1_transaction_hash,
        l1_transaction_index=row.l1_transaction_index,
        log_index=row.log_index,
        l1_timestamp=row.l1_timestamp,
        observed_at=row.observed_at,
    )


def _now():
    return datetime.now(timezone.utc)


def _get_cursor(session, instance):
    return session.get(Cursor, (instance.family.value, instance.network))


class CursorStore:
    def __init__(self, Session):
        self.Session = Session

    def load(self, instance):
        with transaction(self.Session, f"{instance.network}: load cursor") as session:
            cursor = _get_cursor(session, instance)
            if cursor is None:
                return None
            return CursorState(cursor.last_scanned_block, cursor.last_scanned_hash)

    def initialize(self, instance):
        """Load the cursor, creating it just before the start block on first run."""
        with transaction(self.Session, f"{instance.network}: initialize cursor") as session:
            cursor = _get_cursor(session, instance)
            if cursor is None:
                cursor = Cursor(
                    family=instance.family.value,
                    network=instance.network,
                    last_scanned_block=instance.start_block - 1,
                    updated_at=_now(),
                )
                session.add(cursor)
                logger.info(f"{instance.network}: new cursor, scanning from block {instance.start_block}")
            return CursorState(cursor.last_scanned_block, cursor.last_scanned_hash)

    def backfill(self, instance, from_block):
        """Operator rewind: rescan from ``from_block`` without deleting anything."""
        with transaction(self.Session, f"{instance.network}: backfill") as session:
            cursor = _get_cursor(session, instance)
            if cursor is None:
                cursor = Cursor(family=instance.family.value, network=instance.network)
                session.add(cursor)
            previous = cursor.last_scanned_block
            cursor.last_scanned_block = from_block - 1
            cursor.last_scanned_hash = None
            cursor.updated_at = _now()
        logger.warning(f"{instance.network}: cursor moved from {previous} to {from_block - 1} for backfill")
        return from_block - 1


class CheckpointStore:
    def __init__(self, Session):
        self.Session = Session

    def apply_batch(self, instance, records, new_cursor, cursor_hash=None):
        """Insert ``records`` and advance the cursor to ``new_cursor`` atomically.

        Records already stored with the same output root are skipped, and so
        are records older than a stored proposal for the same L2 block. A stored
        record with a different root that is older than the observed one raises
        ``Conflict`` and nothing is written.
        """
        batch = self._dedupe(records)
        description = f"{instance.network}: store batch ending at {new_cursor}"

        for attempt in (1, 2):
            try:
                with transaction(self.Session, description) as session:
                    return self._apply(session, instance, batch, new_cursor, cursor_hash)
            except IntegrityError as exc:
                # another writer inserted one of our rows between our check and insert
                if attempt == 2:
                    raise StorageUnavailable(f"{description}: {exc}") from exc
                logger.warning(f"{description}: uniqueness race, retrying")

    def _dedupe(self, records):
        latest = {}
        for record in sorted(records, key=lambda r: (r.l1_block_number, r.log_index)):
            if not record.resolved:
                raise ValueError(f"{record.network}: unresolved L2 block for log at L1 block {record.l1_block_number}")
            previous = latest.get(record.l2_block_number)
            if previous is not None and previous.output_root != record.output_root:
                logger.warning(
                    f"{record.network}: L2 block {record.l2_block_number} re-proposed at L1 block "
                    f"{record.l1_block_number}, keeping {record.output_root}"
                )
            latest[record.l2_block_number] = record
        return sorted(latest.values(), key=lambda r: (r.l1_block_number, r.log_index))

    def _apply(self, session, instance, batch, new_cursor, cursor_hash):
        inserted = duplicates = 0
        for record in batch:
            existing = session.query(Checkpoint).filter_by(
                network=record.network, l2_block_number=record.l2_block_number
            ).first()
            if existing is None:
                session.add(to_row(record))
                inserted += 1
            elif existing.output_root == record.output_root:
                duplicates += 1
            elif (existing.l1_block_number, existing.log_index) > (record.l1_block_number, record.log_index):
                # superseded by a later proposal we already hold
                duplicates += 1
            else:
                raise Conflict(to_record(existing), record)

        cursor = _get_cursor(session, instance)
        if cursor is None:
            cursor = Cursor(family=instance.family.value, network=instance.network,
                            last_scanned_block=new_cursor)
            session.add(cursor)
        if new_cursor >= cursor.last_scanned_block:
            cursor.last_scanned_block = new_cursor
            cursor.last_scanned_hash = cursor_hash
        cursor.updated_at = _now()
        session.flush()
        return BatchResult(inserted, duplicates)

    def supersede(self, instance, record):
        """Replace the stored checkpoint for ``record``'s L2 block with ``record``."""
        with transaction(self.Session, f"{instance.network}: supersede L2 block {record.l2_block_number}") as session:
            session.query(Checkpoint).filter_by(
                network=record.network, l2_block_number=record.l2_block_number
            ).delete(synchronize_session=False)
            session.add(to_row(record))
        logger.warning(
            f"{instance.network}: L2 block {record.l2_block_number} superseded by proposal at "
            f"L1 block {record.l1_block_number} ({record.output_root})"
        )

    def rewind(self, instance, to_block, cursor_hash=None):
        """Drop every checkpoint observed after ``to_block`` and move the cursor there."""
        with transaction(self.Session, f"{instance.network}: rewind to {to_block}") as session:
            deleted = session.query(Checkpoint).filter(
                Checkpoint.network == instance.network,
                Checkpoint.l1_block_number > to_block,
            ).delete(synchronize_session=False)
            cursor = _get_cursor(session, instance)
            if cursor is None:
                cursor = Cursor(family=instance.family.value, network=instance.network)
                session.add(cursor)
            cursor.last_scanned_block = to_block
            cursor.last_scanned_hash = cursor_hash
            cursor.updated_at = _now()
        logger.warning(f"{instance.network}: rewound to L1 block {to_block}, deleted {deleted} checkpoint(s)")
        return deleted

    def recorded_hashes(self, instance, above_block):
        """(L1 block, hash) pairs of stored checkpoints observed after ``above_block``."""
        with transaction(self.Session, f"{instance.network}: load recorded hashes") as session:
            rows = session.query(Checkpoint.l1_block_number, Checkpoint.l1_block_hash).filter(
                Checkpoint.network == instance.network,
                Checkpoint.l1_block_number > above_block,
            ).distinct().order_by(Checkpoint.l1_block_number).all()
            return [(block, block_hash) for block, block_hash in rows]

    def get(self, network, l2_block_number):
        with transaction(self.Session, f"{network}: load L2 block {l2_block_number}") as session:
            row = session.query(Checkpoint).filter_by(network=network, l2_block_number=l2_block_number).first()
            return to_record(row) if row is not None else None

    def count(self, network):
        with transaction(self.Session, f"{network}: count checkpoints") as session:
            return session.query(Checkpoint).filter_by(network=network).count()
