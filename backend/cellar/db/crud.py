from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, false

from cellar.core.exceptions import NotFoundError
from cellar.db.models import (
    Batch, Vessel, JuicePurchaseItem, BaseFruitPurchaseItem, AdditivePurchaseItem, PressRun,
)


async def get_batch(db: AsyncSession, batch_id: int, lock: bool = False) -> Batch:
    """Active (non-deleted) batch or NotFoundError. lock=True takes a row lock."""
    query = select(Batch).where(Batch.id == batch_id, Batch.deleted_at.is_(None))
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    batch = result.scalar_one_or_none()
    if batch is None:
        raise NotFoundError("Batch not found", details={"batch_id": batch_id})
    return batch


async def get_vessel(db: AsyncSession, vessel_id: int, lock: bool = False) -> Vessel:
    query = select(Vessel).where(Vessel.id == vessel_id, Vessel.deleted_at.is_(None))
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    vessel = result.scalar_one_or_none()
    if vessel is None:
        raise NotFoundError("Vessel not found", details={"vessel_id": vessel_id})
    return vessel


async def get_batch_in_vessel(
    db: AsyncSession,
    vessel_id: int,
    lock: bool = False,
    exclude_batch_id: Optional[int] = None,
) -> Optional[Batch]:
    """The active (non-deleted, non-archived) batch occupying a vessel, if any."""
    query = select(Batch).where(
        Batch.vessel_id == vessel_id,
        Batch.deleted_at.is_(None),
        Batch.is_archived == false(),
    )
    if exclude_batch_id is not None:
        query = query.where(Batch.id != exclude_batch_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query.order_by(Batch.id).limit(1))
    return result.scalar_one_or_none()


async def get_juice_purchase_item(db: AsyncSession, item_id: int, lock: bool = False) -> JuicePurchaseItem:
    query = select(JuicePurchaseItem).where(
        JuicePurchaseItem.id == item_id, JuicePurchaseItem.deleted_at.is_(None)
    )
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    item = result.scalar_one_or_none()
    if item is None:
        raise NotFoundError("Juice purchase item not found", details={"juice_purchase_item_id": item_id})
    return item


async def get_base_fruit_item(db: AsyncSession, item_id: int, lock: bool = False) -> BaseFruitPurchaseItem:
    query = select(BaseFruitPurchaseItem).where(
        BaseFruitPurchaseItem.id == item_id, BaseFruitPurchaseItem.deleted_at.is_(None)
    )
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    item = result.scalar_one_or_none()
    if item is None:
        raise NotFoundError("Base fruit purchase item not found", details={"base_fruit_item_id": item_id})
    return item


async def get_additive_item(db: AsyncSession, item_id: int, lock: bool = False) -> AdditivePurchaseItem:
    query = select(AdditivePurchaseItem).where(
        AdditivePurchaseItem.id == item_id, AdditivePurchaseItem.deleted_at.is_(None)
    )
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    item = result.scalar_one_or_none()
    if item is None:
        raise NotFoundError("Additive purchase item not found", details={"additive_purchase_item_id": item_id})
    return item


async def get_press_run(db: AsyncSession, press_run_id: int, lock: bool = False) -> PressRun:
    query = select(PressRun).where(PressRun.id == press_run_id, PressRun.deleted_at.is_(None))
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    press_run = result.scalar_one_or_none()
    if press_run is None:
        raise NotFoundError("Press run not found", details={"press_run_id": press_run_id})
    return press_run
