import os
from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Default DATABASE_URL (not used by tests that use the per-fixture engine)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from cellar.db.database import Base
from cellar.db.enums import BatchStatus, FermentationStage, ProductType, VesselStatus
from cellar.db.models import (
    Vessel, Batch, BatchMeasurement, JuicePurchaseItem, BaseFruitPurchaseItem, AdditivePurchaseItem,
    PressRun, PressRunLoad,
)


T0 = datetime(2024, 9, 1, 9, 0, 0)


def at(days: float = 0, hours: float = 0) -> datetime:
    """Fixed timeline so ordering assertions do not depend on the wall clock."""
    return T0 + timedelta(days=days, hours=hours)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
async def test_engine(tmp_path_factory):
    # On-disk SQLite file so every connection sees the same database
    db_file = tmp_path_factory.mktemp("db") / "cellar_test.db"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_file}",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def clean_tables(test_engine):
    """Ensure DB is empty before each test by deleting from all tables (keep schema intact)."""
    async with test_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    yield


@pytest.fixture
async def test_session(test_engine, clean_tables):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_vessel(test_session):
    async def _make(name="T1", capacity=1000.0, status=VesselStatus.available, **kwargs):
        vessel = Vessel(name=name, capacity=capacity, status=status.value, **kwargs)
        test_session.add(vessel)
        await test_session.commit()
        return vessel
    return _make


@pytest.fixture
def make_batch(test_session):
    async def _make(
        vessel=None,
        volume=100.0,
        name="B-1",
        status=BatchStatus.fermentation,
        product_type=ProductType.cider,
        stage=FermentationStage.not_started,
        start=None,
        **kwargs,
    ):
        batch = Batch(
            name=name,
            batch_number=name,
            vessel_id=vessel.id if vessel is not None else None,
            initial_volume=volume,
            current_volume=volume,
            status=status.value,
            product_type=product_type.value,
            fermentation_stage=stage.value,
            start_date=start or T0,
            **kwargs,
        )
        test_session.add(batch)
        await test_session.commit()
        return batch
    return _make


@pytest.fixture
def make_measurement(test_session):
    async def _make(batch, when=None, **values):
        measurement = BatchMeasurement(
            batch_id=batch.id,
            measurement_date=when or T0,
            is_estimated=values.pop("is_estimated", False),
            **values,
        )
        test_session.add(measurement)
        await test_session.commit()
        return measurement
    return _make


@pytest.fixture
def make_juice_item(test_session):
    async def _make(volume=500.0, allocated=0.0, **kwargs):
        kwargs.setdefault("vendor_name", "Orchard Co")
        kwargs.setdefault("variety_name", "Kingston Black")
        kwargs.setdefault("volume_unit", "L")
        item = JuicePurchaseItem(volume=volume, volume_allocated=allocated, **kwargs)
        test_session.add(item)
        await test_session.commit()
        return item
    return _make


@pytest.fixture
def make_fruit_item(test_session):
    async def _make(quantity_kg=1000.0, used_kg=0.0, **kwargs):
        item = BaseFruitPurchaseItem(quantity_kg=quantity_kg, quantity_used_kg=used_kg, **kwargs)
        test_session.add(item)
        await test_session.commit()
        return item
    return _make


@pytest.fixture
def make_additive_item(test_session):
    async def _make(name="EC-1118", quantity=500.0, unit="g", total_cost=50.0, **kwargs):
        item = AdditivePurchaseItem(
            name=name, quantity=quantity, unit=unit, quantity_used=0, total_cost=total_cost, **kwargs
        )
        test_session.add(item)
        await test_session.commit()
        return item
    return _make


@pytest.fixture
def make_press_run(test_session):
    async def _make(juice_volume=300.0, loads=(), **kwargs):
        press_run = PressRun(
            juice_volume=juice_volume,
            juice_volume_allocated=0,
            loads=[PressRunLoad(**load) for load in loads],
            **kwargs,
        )
        test_session.add(press_run)
        await test_session.commit()
        return press_run
    return _make
