import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import NotFoundError
from cellar.db.enums import FilterType, PackagingKind
from cellar.db.models import Batch
from cellar.schemas import BatchTransferRequest, FilterRequest, JuiceTransferRequest, PackagingRequest, RackRequest
from cellar.services.batches import package_batch, transfer_batch
from cellar.services.intake import transfer_juice_to_tank
from cellar.services.racking import rack_batch, filter_batch
from cellar.services.reconciliation import get_volume_trace, get_batch_trace_report

from tests.conftest import at

pytestmark = pytest.mark.integration


@pytest.fixture
def cellar_year(test_session, make_vessel, make_batch):
    """
    ROOT (100L) splits 40L into T2 with 2L racking loss, is filtered
    58 -> 56L; the split child bottles 30L (1L loss) and then receives all
    20L of OTHER by racking.
    """
    async def _build():
        t1, t2, t3 = await make_vessel("T1"), await make_vessel("T2"), await make_vessel("T3")
        root = await make_batch(t1, volume=100, name="ROOT")
        other = await make_batch(t3, volume=20, name="OTHER")

        racked = await rack_batch(test_session, root.id, RackRequest(
            destination_vessel_id=t2.id, volume_to_rack=40, loss=2, racked_at=at(5),
        ))
        await filter_batch(test_session, root.id, FilterRequest(
            vessel_id=t1.id, filter_type=FilterType.fine, volume_before=58, volume_after=56, filtered_at=at(6),
        ))
        await package_batch(test_session, racked.child_batch_id, PackagingRequest(
            kind=PackagingKind.bottling, volume_taken=30, loss=1, packaged_at=at(7),
        ))
        await rack_batch(test_session, other.id, RackRequest(
            destination_vessel_id=t2.id, volume_to_rack=20, racked_at=at(8),
        ))
        return root, racked.child_batch_id, other
    return _build


@pytest.mark.anyio
async def test_ledgers_balance(test_session: AsyncSession, cellar_year):
    root, child_id, other = await cellar_year()

    for batch_id in (root.id, child_id, other.id):
        trace = await get_volume_trace(test_session, batch_id)
        assert trace.discrepancy == pytest.approx(0, abs=1e-4)
        assert trace.has_discrepancy is False

    root_trace = await get_volume_trace(test_session, root.id)
    assert root_trace.total_outflow == pytest.approx(40)
    assert root_trace.total_loss == pytest.approx(4)
    assert root_trace.events[0].event_type == "created"
    assert root_trace.events[-1].event_type == "filter"
    assert root_trace.events[-1].running_balance == pytest.approx(56)

    child_trace = await get_volume_trace(test_session, child_id)
    assert child_trace.initial_volume == pytest.approx(40)
    assert child_trace.total_inflow == pytest.approx(20)
    assert child_trace.current_volume == pytest.approx(29)
    assert [e.event_type for e in child_trace.events] == ["created", "bottling", "merge_in"]


@pytest.mark.anyio
async def test_tampered_volume_is_flagged(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel(), volume=100)
    batch.current_volume = 90
    await test_session.commit()

    trace = await get_volume_trace(test_session, batch.id)

    assert trace.accounted_volume == pytest.approx(100)
    assert trace.discrepancy == pytest.approx(-10)
    assert trace.has_discrepancy is True
    # read-only
    await test_session.refresh(batch)
    assert batch.current_volume == pytest.approx(90)


@pytest.mark.anyio
async def test_missing_batch(test_session: AsyncSession):
    with pytest.raises(NotFoundError):
        await get_volume_trace(test_session, 31337)


@pytest.mark.anyio
async def test_trace_report_groups_families(test_session: AsyncSession, cellar_year):
    root, child_id, other = await cellar_year()

    report = await get_batch_trace_report(test_session, at(-1), at(1))

    assert [f.batch_id for f in report.families] == [root.id, other.id]
    root_node = report.families[0]
    assert [c.batch_id for c in root_node.children] == [child_id]
    assert root_node.children[0].split_at == at(5)
    assert root_node.children[0].parent_batch_id == root.id

    totals = report.totals
    assert totals.initial_volume == pytest.approx(120)
    assert totals.external_inflow == pytest.approx(0)
    assert totals.current_volume == pytest.approx(85)
    assert totals.total_loss == pytest.approx(5)
    assert totals.packaged_volume == pytest.approx(30)
    assert totals.discrepancy == pytest.approx(0, abs=1e-4)
    assert totals.initial_volume + totals.external_inflow == pytest.approx(
        totals.current_volume + totals.total_loss + totals.packaged_volume
    )
    assert report.batches_with_discrepancy == []


@pytest.mark.anyio
async def test_trace_report_lists_discrepancies(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel(), volume=100)
    batch.current_volume = 104
    await test_session.commit()
    outside = await make_batch(None, volume=10, name="LATER", start=at(30))

    report = await get_batch_trace_report(test_session, at(-1), at(1))

    assert [f.batch_id for f in report.families] == [batch.id]
    assert outside.id not in [f.batch_id for f in report.families]
    assert report.batches_with_discrepancy == [batch.id]


@pytest.mark.anyio
async def test_trace_report_conserves_volume(test_session: AsyncSession, make_vessel, make_batch, make_juice_item):
    t1, t2, t3 = await make_vessel("T1"), await make_vessel("T2"), await make_vessel("T3")
    root = await make_batch(t1, volume=100, name="ROOT")
    dst = await make_batch(t3, volume=50, name="DST")
    item = await make_juice_item(volume=500)

    racked = await rack_batch(test_session, root.id, RackRequest(
        destination_vessel_id=t2.id, volume_to_rack=40, loss=2, racked_at=at(1),
    ))
    await filter_batch(test_session, root.id, FilterRequest(
        vessel_id=t1.id, filter_type=FilterType.fine, volume_before=58, volume_after=56, filtered_at=at(2),
    ))
    await package_batch(test_session, racked.child_batch_id, PackagingRequest(
        kind=PackagingKind.bottling, volume_taken=10, loss=1, packaged_at=at(3),
    ))
    blended = await transfer_batch(test_session, root.id, BatchTransferRequest(
        destination_vessel_id=t3.id, volume_transferred=30, loss=1, transferred_at=at(4),
    ))
    await transfer_juice_to_tank(test_session, JuiceTransferRequest(
        juice_purchase_item_id=item.id, vessel_id=t3.id, volume=50, transferred_at=at(5),
    ))

    report = await get_batch_trace_report(test_session, at(-1), at(1))

    assert [f.batch_id for f in report.families] == [root.id, dst.id]
    assert [c.batch_id for c in report.families[0].children] == [racked.child_batch_id, blended.remaining_batch_id]
    totals = report.totals
    assert totals.initial_volume == pytest.approx(150)
    assert totals.external_inflow == pytest.approx(50)
    assert totals.current_volume == pytest.approx(184)
    assert totals.total_loss == pytest.approx(6)
    assert totals.packaged_volume == pytest.approx(10)
    assert totals.initial_volume + totals.external_inflow == pytest.approx(
        totals.current_volume + totals.total_loss + totals.packaged_volume
    )
    assert report.batches_with_discrepancy == []
