import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import LineageCycleError
from cellar.db.models import BatchTransfer
from cellar.schemas import RackRequest
from cellar.services.lineage import (
    Ancestor, resolve_ancestors, activity_cutoffs, find_parent_transfer, find_children,
)
from cellar.services.racking import rack_batch

from tests.conftest import at

pytestmark = pytest.mark.integration


def split(vessel, volume, when):
    return RackRequest(destination_vessel_id=vessel.id, volume_to_rack=volume, racked_at=when)


async def manual_transfer(session, source, destination, when, is_merge=False):
    transfer = BatchTransfer(
        source_batch_id=source.id,
        destination_batch_id=destination.id,
        volume_transferred=10,
        loss=0,
        total_volume_processed=10,
        is_merge=is_merge,
        transferred_at=when,
    )
    session.add(transfer)
    await session.commit()
    return transfer


@pytest.mark.anyio
async def test_successive_splits(test_session: AsyncSession, make_vessel, make_batch):
    t1, t2, t3 = await make_vessel("T1"), await make_vessel("T2"), await make_vessel("T3")
    root = await make_batch(t1, volume=100, name="ROOT")

    first = await rack_batch(test_session, root.id, split(t2, 40, at(5)))
    second = await rack_batch(test_session, first.child_batch_id, split(t3, 20, at(10)))

    ancestors = await resolve_ancestors(test_session, second.child_batch_id)

    assert [a.batch_id for a in ancestors] == [first.child_batch_id, root.id]
    assert [a.split_at for a in ancestors] == [at(10), at(5)]
    assert [a.depth for a in ancestors] == [1, 2]
    assert await resolve_ancestors(test_session, root.id) == []


@pytest.mark.anyio
async def test_max_depth_truncates(test_session: AsyncSession, make_vessel, make_batch):
    t1, t2, t3 = await make_vessel("T1"), await make_vessel("T2"), await make_vessel("T3")
    root = await make_batch(t1, volume=100, name="ROOT")
    first = await rack_batch(test_session, root.id, split(t2, 40, at(5)))
    second = await rack_batch(test_session, first.child_batch_id, split(t3, 20, at(10)))

    ancestors = await resolve_ancestors(test_session, second.child_batch_id, max_depth=1)

    assert [a.batch_id for a in ancestors] == [first.child_batch_id]


def test_cutoffs_take_running_minimum():
    ancestors = [
        Ancestor(batch_id=2, split_at=at(3), transfer_id=20, depth=1),
        Ancestor(batch_id=1, split_at=at(8), transfer_id=10, depth=2),
    ]

    assert activity_cutoffs(ancestors) == [(2, at(3)), (1, at(3))]


def test_cutoffs_follow_split_order():
    ancestors = [
        Ancestor(batch_id=2, split_at=at(10), transfer_id=20, depth=1),
        Ancestor(batch_id=1, split_at=at(5), transfer_id=10, depth=2),
    ]

    assert activity_cutoffs(ancestors) == [(2, at(10)), (1, at(5))]


@pytest.mark.anyio
async def test_cycle_raises(test_session: AsyncSession, make_batch):
    a = await make_batch(None, name="A")
    b = await make_batch(None, name="B")
    await manual_transfer(test_session, a, b, at(1))
    await manual_transfer(test_session, b, a, at(2))

    with pytest.raises(LineageCycleError) as exc:
        await resolve_ancestors(test_session, a.id)

    assert exc.value.details["path"] == [a.id, b.id, a.id]


@pytest.mark.anyio
async def test_merges_are_not_parent_edges(test_session: AsyncSession, make_vessel, make_batch):
    t1, t2 = await make_vessel("T1"), await make_vessel("T2")
    source = await make_batch(t1, volume=80, name="SRC")
    target = await make_batch(t2, volume=20, name="DST")

    await rack_batch(test_session, source.id, split(t2, 80, at(4)))

    assert await find_parent_transfer(test_session, target.id) is None
    assert await resolve_ancestors(test_session, target.id) == []
    assert await find_children(test_session, source.id) == []


@pytest.mark.anyio
async def test_children_include_splits_and_remainders(test_session: AsyncSession, make_vessel, make_batch):
    t1, t2 = await make_vessel("T1"), await make_vessel("T2")
    root = await make_batch(t1, volume=100, name="ROOT")
    racked = await rack_batch(test_session, root.id, split(t2, 40, at(5)))
    remainder = await make_batch(None, name="ROOT - Remaining")
    leftover = BatchTransfer(
        source_batch_id=root.id,
        destination_batch_id=root.id,
        remaining_batch_id=remainder.id,
        remaining_volume=10,
        volume_transferred=48,
        loss=0,
        total_volume_processed=58,
        transferred_at=at(9),
    )
    test_session.add(leftover)
    await test_session.commit()

    children = await find_children(test_session, root.id)

    assert children == [
        (racked.child_batch_id, at(5), racked.transfer_id),
        (remainder.id, at(9), leftover.id),
    ]
    parent = await find_parent_transfer(test_session, remainder.id)
    assert parent.id == leftover.id
