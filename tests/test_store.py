import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from decoder import decode
from errors import Conflict, StorageUnavailable
from fakes import make_arbitrum_log, make_instance, make_opstack_log, root
from store import CheckpointStore, CursorStore


@pytest.fixture
def instance():
    return make_instance('optimism_mainnet', start_block=100)


@pytest.fixture
def stores(Session):
    return CheckpointStore(Session), CursorStore(Session)


def records_for(instance, *blocks_and_l2):
    descriptor = instance.descriptor
    return [decode(make_opstack_log(descriptor, block, l2), descriptor) for block, l2 in blocks_and_l2]


def test_initialize_starts_before_start_block(instance, stores):
    _, cursors = stores
    assert cursors.load(instance) is None
    assert cursors.initialize(instance).block == 99
    assert cursors.load(instance).block == 99


def test_apply_batch_stores_records_and_cursor(instance, stores):
    checkpoints, cursors = stores
    cursors.initialize(instance)

    result = checkpoints.apply_batch(instance, records_for(instance, (120, 1), (150, 2)), 200, '0xabc')

    assert result.inserted == 2
    assert checkpoints.count(instance.network) == 2
    assert cursors.load(instance) == (200, '0xabc')
    assert checkpoints.get(instance.network, 2).l1_block_number == 150


def test_reapplying_a_range_is_a_no_op(instance, stores):
    checkpoints, cursors = stores
    records = records_for(instance, (120, 1), (150, 2))
    checkpoints.apply_batch(instance, records, 200, '0xabc')

    result = checkpoints.apply_batch(instance, records_for(instance, (120, 1), (150, 2)), 200, '0xabc')

    assert result.inserted == 0
    assert result.duplicates == 2
    assert checkpoints.count(instance.network) == 2
    assert cursors.load(instance).block == 200


def test_two_writers_on_the_same_range(instance, Session):
    first, second = CheckpointStore(Session), CheckpointStore(Session)
    first.apply_batch(instance, records_for(instance, (120, 1)), 200)
    second.apply_batch(instance, records_for(instance, (120, 1)), 200)
    assert first.count(instance.network) == 1


def test_cursor_never_moves_back_through_apply_batch(instance, stores):
    checkpoints, cursors = stores
    checkpoints.apply_batch(instance, [], 300, '0x300')
    checkpoints.apply_batch(instance, [], 250, '0x250')
    assert cursors.load(instance) == (300, '0x300')


def test_different_root_from_later_block_conflicts(instance, stores):
    checkpoints, cursors = stores
    checkpoints.apply_batch(instance, records_for(instance, (120, 1)), 200)

    descriptor = instance.descriptor
    observed = decode(make_opstack_log(descriptor, 220, 1, output_root=root('other')), descriptor)
    with pytest.raises(Conflict) as excinfo:
        checkpoints.apply_batch(instance, records_for(instance, (210, 2)) + [observed], 250)

    assert excinfo.value.stored.l1_block_number == 120
    assert excinfo.value.observed.output_root == root('other')
    # nothing from the failed batch landed
    assert checkpoints.count(instance.network) == 1
    assert cursors.load(instance).block == 200


def test_older_proposal_than_stored_is_ignored(instance, stores):
    checkpoints, _ = stores
    descriptor = instance.descriptor
    newer = decode(make_opstack_log(descriptor, 180, 1, output_root=root('newer')), descriptor)
    checkpoints.apply_batch(instance, [newer], 200)

    result = checkpoints.apply_batch(instance, records_for(instance, (120, 1)), 200)

    assert result.duplicates == 1
    assert checkpoints.get(instance.network, 1).output_root == root('newer')


def test_reproposal_inside_one_batch_keeps_the_later_one(instance, stores):
    checkpoints, _ = stores
    descriptor = instance.descriptor
    first = decode(make_opstack_log(descriptor, 120, 1, output_root=root('a')), descriptor)
    second = decode(make_opstack_log(descriptor, 130, 1, output_root=root('b')), descriptor)

    result = checkpoints.apply_batch(instance, [second, first], 200)

    assert result.inserted == 1
    assert checkpoints.get(instance.network, 1).output_root == root('b')


def test_failed_commit_leaves_nothing_behind(instance, stores, monkeypatch):
    checkpoints, cursors = stores
    cursors.initialize(instance)
    original = CheckpointStore._apply

    def crash_before_commit(self, session, *args):
        original(self, session, *args)
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(CheckpointStore, '_apply', crash_before_commit)
    with pytest.raises(StorageUnavailable):
        checkpoints.apply_batch(instance, records_for(instance, (120, 1), (150, 2)), 200)

    assert checkpoints.count(instance.network) == 0
    assert cursors.load(instance).block == 99


def test_uniqueness_race_is_retried(instance, stores, monkeypatch):
    checkpoints, _ = stores
    original = CheckpointStore._apply
    calls = []

    def racing(self, session, *args):
        calls.append(1)
        if len(calls) == 1:
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        return original(self, session, *args)

    monkeypatch.setattr(CheckpointStore, '_apply', racing)
    result = checkpoints.apply_batch(instance, records_for(instance, (120, 1)), 200)

    assert len(calls) == 2
    assert result.inserted == 1


def test_unresolved_records_are_rejected(stores):
    checkpoints, _ = stores
    arbitrum = make_instance('arbitrum_mainnet')
    record = decode(make_arbitrum_log(arbitrum.descriptor, 10, '0x' + '22' * 32), arbitrum.descriptor)
    with pytest.raises(ValueError):
        checkpoints.apply_batch(arbitrum, [record], 20)


def test_rewind_deletes_later_records(instance, stores):
    checkpoints, cursors = stores
    checkpoints.apply_batch(instance, records_for(instance, (120, 1), (150, 2), (190, 3)), 200, '0x200')

    deleted = checkpoints.rewind(instance, 149, '0x149')

    assert deleted == 2
    assert checkpoints.count(instance.network) == 1
    assert cursors.load(instance) == (149, '0x149')


def test_backfill_keeps_records(instance, stores):
    checkpoints, cursors = stores
    checkpoints.apply_batch(instance, records_for(instance, (120, 1)), 200, '0x200')

    cursors.backfill(instance, 110)

    assert cursors.load(instance) == (109, None)
    assert checkpoints.count(instance.network) == 1


def test_recorded_hashes_are_sorted_and_bounded(instance, stores):
    checkpoints, _ = stores
    records = records_for(instance, (150, 2), (120, 1), (190, 3))
    checkpoints.apply_batch(instance, records, 200)

    recorded = checkpoints.recorded_hashes(instance, 120)

    assert [block for block, _ in recorded] == [150, 190]


def test_supersede_replaces_the_row(instance, stores):
    checkpoints, _ = stores
    checkpoints.apply_batch(instance, records_for(instance, (120, 1)), 200)
    descriptor = instance.descriptor
    newer = decode(make_opstack_log(descriptor, 220, 1, output_root=root('newer')), descriptor)

    checkpoints.supersede(instance, newer)

    stored = checkpoints.get(instance.network, 1)
    assert stored.output_root == root('newer')
    assert stored.l1_block_number == 220
    assert checkpoints.count(instance.network) == 1


def test_networks_are_partitioned(Session):
    checkpoints = CheckpointStore(Session)
    optimism = make_instance('optimism_mainnet')
    base = make_instance('base_mainnet')
    checkpoints.apply_batch(optimism, records_for(optimism, (120, 1)), 200)
    checkpoints.apply_batch(base, records_for(base, (120, 1)), 200)
    assert checkpoints.count('optimism_mainnet') == 1
    assert checkpoints.count('base_mainnet') == 1
