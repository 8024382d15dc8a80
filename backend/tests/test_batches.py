import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import BadRequestError, ConflictError
from cellar.db.enums import (
    BatchStatus, CompositionSourceType, FermentationStage, PackagingKind, ProductType, VesselStatus,
)
from cellar.db.models import AuditLog, Batch, BatchTransfer
from cellar.schemas import (
    LegacyBatchCreate, BatchUpdate, BatchTransferRequest, PackagingRequest,
)
from cellar.services import composition
from cellar.services.audit import AuditActions, parse_meta
from cellar.services.batches import (
    create_legacy_batch, update_batch, delete_batch, transfer_batch, package_batch,
)
from cellar.services.composition import CompositionSource
from cellar.services.lineage import find_children, resolve_ancestors

from tests.conftest import at

pytestmark = pytest.mark.integration


async def seed_composition(session, batch, volume, cost):
    await composition.record_contribution(
        session, batch.id,
        CompositionSource(source_type=CompositionSourceType.juice_purchase, variety_name="Dabinett"),
        volume=volume, cost=cost, fraction=1.0,
    )
    await session.commit()


class TestLegacyBatch:
    @pytest.mark.anyio
    async def test_stage_is_unknown(self, test_session: AsyncSession, make_vessel):
        vessel = await make_vessel("T1")

        result = await create_legacy_batch(test_session, LegacyBatchCreate(
            name="Old Stock 22", vessel_id=vessel.id, volume=200, start_date=at(-400),
        ))

        batch = await test_session.get(Batch, result.batch_id)
        assert batch.is_legacy is True
        assert batch.status == BatchStatus.aging.value
        assert batch.fermentation_stage == FermentationStage.unknown.value
        assert batch.current_volume == pytest.approx(200)

    @pytest.mark.anyio
    @pytest.mark.parametrize("product_type", [ProductType.brandy, ProductType.pommeau])
    async def test_non_fermenting_product(self, test_session: AsyncSession, product_type):
        result = await create_legacy_batch(test_session, LegacyBatchCreate(
            name="Spirit", volume=50, product_type=product_type,
        ))

        batch = await test_session.get(Batch, result.batch_id)
        assert batch.fermentation_stage == FermentationStage.not_applicable.value
        assert batch.vessel_id is None

    @pytest.mark.anyio
    async def test_occupied_vessel_conflicts(self, test_session: AsyncSession, make_vessel, make_batch):
        vessel = await make_vessel("T1")
        await make_batch(vessel)

        with pytest.raises(ConflictError):
            await create_legacy_batch(test_session, LegacyBatchCreate(
                name="Old", vessel_id=vessel.id, volume=100,
            ))


class TestUpdateBatch:
    @pytest.mark.anyio
    async def test_status_change_is_audited_with_reason(self, test_session: AsyncSession, make_vessel, make_batch):
        batch = await make_batch(await make_vessel())

        result = await update_batch(test_session, batch.id, BatchUpdate(
            status=BatchStatus.completed, reason="Sold as bulk",
        ))

        assert result.changes["status"] == {"old": "fermentation", "new": "completed"}
        assert batch.end_date is not None
        audit = (await test_session.execute(
            select(AuditLog).where(AuditLog.action == AuditActions.BATCH_STATUS_CHANGE)
        )).scalar_one()
        assert parse_meta(audit)["reason"] == "Sold as bulk"

    @pytest.mark.anyio
    async def test_product_type_switch_flips_stage(self, test_session: AsyncSession, make_vessel, make_batch):
        batch = await make_batch(await make_vessel())

        await update_batch(test_session, batch.id, BatchUpdate(product_type=ProductType.brandy))
        assert batch.fermentation_stage == FermentationStage.not_applicable.value

        await update_batch(test_session, batch.id, BatchUpdate(product_type=ProductType.perry))
        assert batch.fermentation_stage == FermentationStage.not_started.value
        assert batch.fermentation_stage_updated_at is not None

    @pytest.mark.anyio
    async def test_no_changes(self, test_session: AsyncSession, make_vessel, make_batch):
        batch = await make_batch(await make_vessel())

        result = await update_batch(test_session, batch.id, BatchUpdate(status=BatchStatus.fermentation))

        assert result.changes == {}
        assert result.message == "No changes to apply"

    @pytest.mark.anyio
    async def test_moving_into_occupied_vessel_conflicts(self, test_session: AsyncSession, make_vessel, make_batch):
        batch = await make_batch(await make_vessel("T1"), name="A")
        other_vessel = await make_vessel("T2")
        await make_batch(other_vessel, name="B")

        with pytest.raises(ConflictError):
            await update_batch(test_session, batch.id, BatchUpdate(vessel_id=other_vessel.id))


class TestDeleteBatch:
    @pytest.mark.anyio
    async def test_active_batch_cannot_be_deleted(self, test_session: AsyncSession, make_vessel, make_batch):
        batch = await make_batch(await make_vessel())

        with pytest.raises(BadRequestError):
            await delete_batch(test_session, batch.id)

    @pytest.mark.anyio
    async def test_soft_delete_frees_vessel_for_cleaning(self, test_session: AsyncSession, make_vessel, make_batch):
        vessel = await make_vessel(status=VesselStatus.fermenting)
        batch = await make_batch(vessel, status=BatchStatus.completed)

        result = await delete_batch(test_session, batch.id)

        assert result.purged is False
        assert batch.deleted_at is not None
        assert vessel.status == VesselStatus.cleaning.value

    @pytest.mark.anyio
    async def test_purge_legacy_batch(self, test_session: AsyncSession, make_vessel):
        vessel = await make_vessel()
        created = await create_legacy_batch(test_session, LegacyBatchCreate(
            name="Typo", vessel_id=vessel.id, volume=100,
        ))

        result = await delete_batch(test_session, created.batch_id, purge=True)

        assert result.purged is True
        assert await test_session.get(Batch, created.batch_id) is None
        audit = (await test_session.execute(
            select(AuditLog).where(AuditLog.action == AuditActions.BATCH_PURGE)
        )).scalar_one()
        assert audit.target_id == created.batch_id

    @pytest.mark.anyio
    async def test_purge_refused_with_history(self, test_session: AsyncSession, make_vessel):
        vessel = await make_vessel()
        created = await create_legacy_batch(test_session, LegacyBatchCreate(
            name="Old", vessel_id=vessel.id, volume=100,
        ))
        await package_batch(test_session, created.batch_id, PackagingRequest(
            kind=PackagingKind.bottling, volume_taken=10,
        ))

        with pytest.raises(BadRequestError):
            await delete_batch(test_session, created.batch_id, purge=True)

    @pytest.mark.anyio
    async def test_purge_refused_for_tracked_batch(self, test_session: AsyncSession, make_vessel, make_batch):
        batch = await make_batch(await make_vessel())

        with pytest.raises(BadRequestError):
            await delete_batch(test_session, batch.id, purge=True)


class TestTransferBatch:
    @pytest.mark.anyio
    async def test_partial_move_leaves_remaining_batch(self, test_session: AsyncSession, make_vessel, make_batch):
        t1 = await make_vessel("T1", status=VesselStatus.fermenting)
        t2 = await make_vessel("T2")
        batch = await make_batch(t1, volume=100, name="CID-7")
        await seed_composition(test_session, batch, 100, 200)

        result = await transfer_batch(test_session, batch.id, BatchTransferRequest(
            destination_vessel_id=t2.id, volume_transferred=60, loss=2, transferred_at=at(10),
        ))

        assert result.is_merge is False
        assert batch.vessel_id == t2.id
        assert batch.current_volume == pytest.approx(60)
        assert batch.status == BatchStatus.aging.value
        assert t2.status == VesselStatus.fermenting.value

        remaining = await test_session.get(Batch, result.remaining_batch_id)
        assert remaining.name == "CID-7 - Remaining"
        assert remaining.batch_number == "CID-7-R"
        assert remaining.vessel_id == t1.id
        assert remaining.current_volume == pytest.approx(38)
        assert remaining.status == BatchStatus.fermentation.value
        assert remaining.parent_batch_id == batch.id

        moved = await composition.active_entries(test_session, batch.id)
        left = await composition.active_entries(test_session, remaining.id)
        assert moved[0].juice_volume == pytest.approx(60)
        assert moved[0].material_cost == pytest.approx(120)
        assert left[0].juice_volume == pytest.approx(38)
        assert left[0].material_cost == pytest.approx(76)

        transfer = await test_session.get(BatchTransfer, result.transfer_id)
        assert transfer.remaining_volume == pytest.approx(38)
        assert transfer.total_volume_processed == pytest.approx(62)

    @pytest.mark.anyio
    async def test_full_move_sends_source_vessel_to_cleaning(self, test_session: AsyncSession, make_vessel, make_batch):
        t1 = await make_vessel("T1", status=VesselStatus.fermenting)
        t2 = await make_vessel("T2")
        batch = await make_batch(t1, volume=100)

        result = await transfer_batch(test_session, batch.id, BatchTransferRequest(
            destination_vessel_id=t2.id, volume_transferred=99, loss=1,
        ))

        assert result.remaining_batch_id is None
        assert t1.status == VesselStatus.cleaning.value
        assert batch.vessel_id == t2.id

    @pytest.mark.anyio
    async def test_blend_retires_source(self, test_session: AsyncSession, make_vessel, make_batch, make_measurement):
        t1 = await make_vessel("T1")
        t2 = await make_vessel("T2")
        source = await make_batch(t1, volume=50, name="SRC")
        target = await make_batch(t2, volume=50, name="DST")
        await make_measurement(source, at(1), specific_gravity=1.000)
        await make_measurement(target, at(1), specific_gravity=1.010)

        result = await transfer_batch(test_session, source.id, BatchTransferRequest(
            destination_vessel_id=t2.id, volume_transferred=50, transferred_at=at(2),
        ))

        assert result.is_merge is True
        assert result.destination_batch_id == target.id
        assert target.current_volume == pytest.approx(100)
        assert source.is_archived is True
        assert source.status == BatchStatus.completed.value
        assert source.vessel_id is None
        assert t1.status == VesselStatus.cleaning.value
        audit = (await test_session.execute(
            select(AuditLog).where(AuditLog.action == AuditActions.BATCH_MERGE)
        )).scalar_one()
        assert parse_meta(audit)["transfer_id"] == result.transfer_id

    @pytest.mark.anyio
    async def test_blend_remainder_stays_in_source_lineage(self, test_session: AsyncSession, make_vessel, make_batch):
        t1, t2 = await make_vessel("T1"), await make_vessel("T2")
        source = await make_batch(t1, volume=100, name="SRC")
        target = await make_batch(t2, volume=50, name="DST")

        result = await transfer_batch(test_session, source.id, BatchTransferRequest(
            destination_vessel_id=t2.id, volume_transferred=60, loss=2, transferred_at=at(10),
        ))

        assert result.is_merge is True
        remaining = await test_session.get(Batch, result.remaining_batch_id)
        assert remaining.current_volume == pytest.approx(38)
        assert remaining.vessel_id == t1.id
        ancestors = await resolve_ancestors(test_session, remaining.id)
        assert [a.batch_id for a in ancestors] == [source.id]
        assert ancestors[0].split_at == at(10)
        assert await find_children(test_session, source.id) == [(remaining.id, at(10), result.transfer_id)]
        assert await resolve_ancestors(test_session, target.id) == []

    @pytest.mark.anyio
    async def test_blend_stamps_stage_change_at_transfer_time(self, test_session: AsyncSession, make_vessel, make_batch):
        t1, t2 = await make_vessel("T1"), await make_vessel("T2")
        source = await make_batch(t1, volume=40, name="SRC", stage=FermentationStage.mid)
        target = await make_batch(t2, volume=60, name="DST")

        await transfer_batch(test_session, source.id, BatchTransferRequest(
            destination_vessel_id=t2.id, volume_transferred=40, transferred_at=at(3),
        ))

        assert target.fermentation_stage == FermentationStage.mid.value
        assert target.fermentation_stage_updated_at == at(3)

    @pytest.mark.anyio
    async def test_same_vessel_rejected(self, test_session: AsyncSession, make_vessel, make_batch):
        t1 = await make_vessel("T1")
        batch = await make_batch(t1)

        with pytest.raises(BadRequestError):
            await transfer_batch(test_session, batch.id, BatchTransferRequest(
                destination_vessel_id=t1.id, volume_transferred=10,
            ))

    @pytest.mark.anyio
    @pytest.mark.parametrize("status", [VesselStatus.cleaning, VesselStatus.maintenance])
    async def test_unavailable_destination_rejected(self, test_session: AsyncSession, make_vessel, make_batch, status):
        batch = await make_batch(await make_vessel("T1"))
        t2 = await make_vessel("T2", status=status)

        with pytest.raises(BadRequestError):
            await transfer_batch(test_session, batch.id, BatchTransferRequest(
                destination_vessel_id=t2.id, volume_transferred=10,
            ))

    @pytest.mark.anyio
    async def test_over_volume_rejected(self, test_session: AsyncSession, make_vessel, make_batch):
        batch = await make_batch(await make_vessel("T1"), volume=100)
        t2 = await make_vessel("T2")

        with pytest.raises(BadRequestError):
            await transfer_batch(test_session, batch.id, BatchTransferRequest(
                destination_vessel_id=t2.id, volume_transferred=99, loss=2,
            ))


class TestPackaging:
    @pytest.mark.anyio
    async def test_partial_then_final_draw(self, test_session: AsyncSession, make_vessel, make_batch):
        vessel = await make_vessel(status=VesselStatus.fermenting)
        batch = await make_batch(vessel, volume=100, status=BatchStatus.aging)

        first = await package_batch(test_session, batch.id, PackagingRequest(
            kind=PackagingKind.bottling, volume_taken=40, loss=1, units_produced=53, packaged_at=at(30),
        ))
        assert first.batch_completed is False
        assert first.current_volume == pytest.approx(59)

        last = await package_batch(test_session, batch.id, PackagingRequest(
            kind=PackagingKind.kegging, volume_taken=59, packaged_at=at(31),
        ))
        assert last.batch_completed is True
        assert batch.current_volume == 0
        assert batch.status == BatchStatus.completed.value
        assert batch.end_date == at(31)
        assert batch.vessel_id is None
        assert vessel.status == VesselStatus.cleaning.value

    @pytest.mark.anyio
    async def test_overdraw_rejected(self, test_session: AsyncSession, make_vessel, make_batch):
        batch = await make_batch(await make_vessel(), volume=10)

        with pytest.raises(BadRequestError):
            await package_batch(test_session, batch.id, PackagingRequest(
                kind=PackagingKind.bottling, volume_taken=10, loss=0.5,
            ))
