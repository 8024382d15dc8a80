import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import ConflictError, NotFoundError, BadRequestError
from cellar.db.enums import FermentationStage, ProductType
from cellar.db.models import AuditLog, BatchMeasurement
from cellar.schemas import MeasurementCreate, MeasurementUpdate
from cellar.services.audit import AuditActions
from cellar.services.measurements import (
    add_measurement, update_measurement, delete_measurement, get_fermentation_progress,
    list_measurements, add_estimated_measurement,
)
from cellar.services.org_settings import OrganizationSettings, load_organization_settings
from cellar.db.models import OrganizationSettingsRecord

from tests.conftest import at

pytestmark = pytest.mark.integration

NO_CORRECTION = OrganizationSettings(temperature_correction_enabled=False)


@pytest.mark.anyio
async def test_first_gravity_latches_original_gravity(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel())

    first = await add_measurement(
        test_session, batch.id, MeasurementCreate(measurement_date=at(0), specific_gravity=1.050)
    )
    second = await add_measurement(
        test_session, batch.id, MeasurementCreate(measurement_date=at(2), specific_gravity=1.048)
    )

    assert first.original_gravity == pytest.approx(1.050)
    assert second.original_gravity == pytest.approx(1.050)
    assert batch.original_gravity == pytest.approx(1.050)


@pytest.mark.anyio
async def test_gravity_drop_starts_fermentation(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel(), original_gravity=1.050)

    result = await add_measurement(
        test_session, batch.id, MeasurementCreate(measurement_date=at(3), specific_gravity=1.000)
    )

    assert result.stage_changed is True
    assert result.fermentation_stage == FermentationStage.early.value
    assert batch.fermentation_stage == FermentationStage.early.value
    assert batch.fermentation_stage_updated_at == at(3)


@pytest.mark.anyio
async def test_small_drop_does_not_start_fermentation(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel(), original_gravity=1.050)

    result = await add_measurement(
        test_session, batch.id, MeasurementCreate(measurement_date=at(1), specific_gravity=1.048)
    )

    assert result.stage_changed is False
    assert batch.fermentation_stage == FermentationStage.not_started.value


@pytest.mark.anyio
async def test_non_fermenting_product_stays_put(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(
        await make_vessel(), product_type=ProductType.pommeau, original_gravity=1.080,
    )

    result = await add_measurement(
        test_session, batch.id, MeasurementCreate(measurement_date=at(1), specific_gravity=1.010)
    )

    assert result.stage_changed is False
    assert batch.fermentation_stage == FermentationStage.not_started.value


@pytest.mark.anyio
async def test_duplicate_reading_conflicts(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel())
    batch_id = batch.id
    reading = MeasurementCreate(measurement_date=at(1), specific_gravity=1.040, ph=3.5)
    await add_measurement(test_session, batch_id, reading)

    with pytest.raises(ConflictError) as exc:
        await add_measurement(test_session, batch_id, reading)

    assert exc.value.code == "CONFLICT"
    rows = (await test_session.execute(
        select(BatchMeasurement).where(BatchMeasurement.batch_id == batch_id)
    )).scalars().all()
    assert len(rows) == 1


@pytest.mark.anyio
async def test_estimates_do_not_block_real_readings(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel())
    await add_estimated_measurement(test_session, batch.id, at(1), "blend:batch:1", specific_gravity=1.040)
    await test_session.commit()

    result = await add_measurement(
        test_session, batch.id, MeasurementCreate(measurement_date=at(1), specific_gravity=1.040)
    )

    assert result.measurement_id is not None


@pytest.mark.anyio
async def test_temperature_correction_applied(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel())

    result = await add_measurement(
        test_session, batch.id,
        MeasurementCreate(measurement_date=at(1), specific_gravity=1.050, temperature=25.0),
    )

    assert result.raw_specific_gravity == pytest.approx(1.050)
    assert result.specific_gravity == pytest.approx(1.052, abs=5e-4)
    assert "corrected" in result.message


@pytest.mark.anyio
async def test_temperature_correction_disabled(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel())

    result = await add_measurement(
        test_session, batch.id,
        MeasurementCreate(measurement_date=at(1), specific_gravity=1.050, temperature=25.0),
        org=NO_CORRECTION,
    )

    assert result.specific_gravity == pytest.approx(1.050)
    assert result.raw_specific_gravity is None


@pytest.mark.anyio
async def test_unknown_volume_unit_rejected(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel())
    with pytest.raises(BadRequestError):
        await add_measurement(
            test_session, batch.id,
            MeasurementCreate(measurement_date=at(1), specific_gravity=1.040, volume=10, volume_unit="kg"),
        )


@pytest.mark.anyio
async def test_missing_batch(test_session: AsyncSession):
    with pytest.raises(NotFoundError):
        await add_measurement(test_session, 4242, MeasurementCreate(specific_gravity=1.040))


@pytest.mark.anyio
async def test_update_measurement_is_audited(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel())
    created = await add_measurement(
        test_session, batch.id, MeasurementCreate(measurement_date=at(1), specific_gravity=1.040), org=NO_CORRECTION,
    )

    result = await update_measurement(
        test_session, created.measurement_id, MeasurementUpdate(specific_gravity=1.038), org=NO_CORRECTION,
    )

    assert result.specific_gravity == pytest.approx(1.038)
    audit = (await test_session.execute(
        select(AuditLog).where(AuditLog.action == AuditActions.MEASUREMENT_UPDATE)
    )).scalar_one()
    assert audit.target_id == created.measurement_id


@pytest.mark.anyio
async def test_update_into_duplicate_conflicts(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel())
    await add_measurement(test_session, batch.id, MeasurementCreate(measurement_date=at(1), specific_gravity=1.040))
    other = await add_measurement(
        test_session, batch.id, MeasurementCreate(measurement_date=at(1), specific_gravity=1.030)
    )

    with pytest.raises(ConflictError):
        await update_measurement(test_session, other.measurement_id, MeasurementUpdate(specific_gravity=1.040))


@pytest.mark.anyio
async def test_delete_measurement_hides_it(test_session: AsyncSession, make_vessel, make_batch):
    batch = await make_batch(await make_vessel())
    created = await add_measurement(
        test_session, batch.id, MeasurementCreate(measurement_date=at(1), specific_gravity=1.040)
    )

    await delete_measurement(test_session, created.measurement_id)

    assert await list_measurements(test_session, batch.id) == []
    with pytest.raises(NotFoundError):
        await delete_measurement(test_session, created.measurement_id)


class TestFermentationProgress:
    @pytest.mark.anyio
    async def test_stage_is_persisted_when_it_moves(self, test_session: AsyncSession, make_vessel, make_batch, make_measurement):
        batch = await make_batch(
            await make_vessel(), original_gravity=1.050, stage=FermentationStage.early,
        )
        await make_measurement(batch, at(0), specific_gravity=1.050)
        await make_measurement(batch, at(6), specific_gravity=1.010)

        progress = await get_fermentation_progress(test_session, batch.id, now=at(7))

        assert progress.percent_fermented == pytest.approx(76.9, abs=0.1)
        assert progress.stage == FermentationStage.mid
        assert progress.stage_persisted is True
        assert batch.fermentation_stage == FermentationStage.mid.value
        audit = (await test_session.execute(
            select(AuditLog).where(AuditLog.action == AuditActions.BATCH_STAGE_CHANGE)
        )).scalar_one()
        assert audit.target_id == batch.id

    @pytest.mark.anyio
    async def test_reading_at_original_gravity_keeps_not_started(self, test_session: AsyncSession, make_vessel, make_batch, make_measurement):
        batch = await make_batch(await make_vessel(), original_gravity=1.050)
        await make_measurement(batch, at(0), specific_gravity=1.050)

        progress = await get_fermentation_progress(test_session, batch.id, now=at(1))

        assert progress.stage_persisted is False
        assert batch.fermentation_stage == FermentationStage.not_started.value

    @pytest.mark.anyio
    async def test_non_fermenting_product(self, test_session: AsyncSession, make_vessel, make_batch):
        batch = await make_batch(
            await make_vessel(), product_type=ProductType.brandy, stage=FermentationStage.not_applicable,
        )

        progress = await get_fermentation_progress(test_session, batch.id)

        assert progress.stage == FermentationStage.not_applicable
        assert progress.stage_persisted is False

    @pytest.mark.anyio
    async def test_sweetness_style_sets_target(self, test_session: AsyncSession, make_vessel, make_batch, make_measurement):
        batch = await make_batch(
            await make_vessel(), original_gravity=1.050, stage=FermentationStage.early, sweetness_style="sweet",
        )
        await make_measurement(batch, at(4), specific_gravity=1.030)

        progress = await get_fermentation_progress(test_session, batch.id, now=at(5))

        assert progress.target_final_gravity == pytest.approx(1.020)
        assert progress.percent_fermented == pytest.approx(66.7, abs=0.1)


@pytest.mark.anyio
async def test_organization_overrides_are_merged(test_session: AsyncSession):
    test_session.add(OrganizationSettingsRecord(
        organization_id=7, temperature_correction_enabled=False, stage_early_max_percent=50,
    ))
    await test_session.commit()

    org = await load_organization_settings(test_session, 7)
    fallback = await load_organization_settings(test_session, 8)

    assert org.organization_id == 7
    assert org.temperature_correction_enabled is False
    assert org.stage_thresholds.early_max == 50
    assert org.stage_thresholds.mid_max == 90
    assert fallback.organization_id == 8
    assert fallback.temperature_correction_enabled is True
