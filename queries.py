"""Read-only views over the checkpoint store.

These are the lookups the downstream query service answers: the latest
checkpoint of a network, and the first checkpoint covering a given L2 block.
"""
import csv
import os

from database import Checkpoint, Cursor
from store import to_record, transaction

CSV_COLUMNS = [
    'network', 'family', 'l2_block_number', 'l2_output_index', 'l2_block_hash', 'output_root',
    'l1_block_number', 'l1_block_hash', 'l1_transaction_hash', 'l1_transaction_index',
    'log_index', 'l1_timestamp', 'observed_at',
]


def record_to_dict(record):
    row = {column: getattr(record, column) for column in CSV_COLUMNS}
    row['family'] = record.family.value
    row['observed_at'] = record.observed_at.isoformat() if record.observed_at else None
    return row


def latest_checkpoint(Session, network):
    with transaction(Session, f"{network}: latest checkpoint") as session:
        row = session.query(Checkpoint).filter(
            Checkpoint.network == network
        ).order_by(Checkpoint.l2_block_number.desc()).first()
        return to_record(row) if row is not None else None


def checkpoint_for_l2_block(Session, network, l2_block):
    """First checkpoint at or after ``l2_block``: the one that commits to it."""
    with transaction(Session, f"{network}: checkpoint for L2 block {l2_block}") as session:
        row = session.query(Checkpoint).filter(
            Checkpoint.network == network,
            Checkpoint.l2_block_number >= l2_block,
        ).order_by(Checkpoint.l2_block_number).first()
        return to_record(row) if row is not None else None


def list_checkpoints(Session, network, from_l2_block=None, limit=None):
    with transaction(Session, f"{network}: list checkpoints") as session:
        query = session.query(Checkpoint).filter(Checkpoint.network == network)
        if from_l2_block is not None:
            query = query.filter(Checkpoint.l2_block_number >= from_l2_block)
        query = query.order_by(Checkpoint.l2_block_number)
        if limit is not None:
            query = query.limit(limit)
        return [to_record(row) for row in query.all()]


def cursor_for(Session, network):
    with transaction(Session, f"{network}: load cursor") as session:
        cursor = session.query(Cursor).filter_by(network=network).first()
        return cursor.last_scanned_block if cursor is not None else None


def write_to_csv(records, filename):
    directory = os.path.dirname(filename)
    if directory:
        os.makedirs(directory, exist_ok=True)

    count = 0
    with open(filename, mode='w', newline='') as file:
        writer = csv.DictWriter(file, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for record in records:
            writer.writerow(record_to_dict(record))
            count += 1
    return count
