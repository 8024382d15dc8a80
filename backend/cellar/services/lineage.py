"""
Lineage Resolver

A batch's ancestors are found by walking the transfer ledger backwards. A
transfer is a parent edge when it created the current batch, either as a
non-merge split destination or as the batch left behind in the source
vessel. A merge destination keeps its own identity, but a remainder left
by a blend is still a child of the source.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, and_, or_, false
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.config import settings
from cellar.core.exceptions import LineageCycleError
from cellar.core.logging import lineage_logger
from cellar.db.models import BatchTransfer


@dataclass(frozen=True)
class Ancestor:
    batch_id: int
    split_at: datetime
    transfer_id: int
    depth: int


async def find_parent_transfer(db: AsyncSession, batch_id: int) -> Optional[BatchTransfer]:
    """The transfer that created ``batch_id``, if it was carved out of another batch."""
    result = await db.execute(
        select(BatchTransfer)
        .where(
            BatchTransfer.deleted_at.is_(None),
            or_(
                and_(
                    BatchTransfer.is_merge == false(),
                    BatchTransfer.destination_batch_id == batch_id,
                    BatchTransfer.source_batch_id != batch_id,
                ),
                BatchTransfer.remaining_batch_id == batch_id,
            ),
        )
        .order_by(BatchTransfer.transferred_at, BatchTransfer.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def resolve_ancestors(
    db: AsyncSession,
    batch_id: int,
    max_depth: Optional[int] = None,
) -> List[Ancestor]:
    """
    Ancestor chain nearest first. Stops when no transfer created the
    frontier batch or when ``max_depth`` hops have been taken. Revisiting a
    batch raises LineageCycleError.
    """
    max_depth = max_depth if max_depth is not None else settings.LINEAGE_MAX_DEPTH
    chain: List[Ancestor] = []
    path = [batch_id]
    visited = {batch_id}
    frontier = batch_id

    while len(chain) < max_depth:
        transfer = await find_parent_transfer(db, frontier)
        if transfer is None:
            return chain
        parent = transfer.source_batch_id
        if parent in visited:
            raise LineageCycleError(batch_id, path + [parent])
        chain.append(Ancestor(
            batch_id=parent,
            split_at=transfer.transferred_at,
            transfer_id=transfer.id,
            depth=len(chain) + 1,
        ))
        path.append(parent)
        visited.add(parent)
        frontier = parent

    if await find_parent_transfer(db, frontier) is not None:
        lineage_logger.warning(
            "lineage_depth_reached",
            batch_id=batch_id,
            max_depth=max_depth,
            oldest_ancestor_id=frontier,
        )
    return chain


def activity_cutoffs(ancestors: List[Ancestor]) -> List[Tuple[int, datetime]]:
    """
    (ancestor batch id, cutoff) pairs. Ancestor activity at or before the
    cutoff belongs to the descendant's history; anything later happened to a
    sibling line. A grandparent's cutoff can never be later than a parent's.
    """
    cutoffs = []
    cutoff = None
    for ancestor in ancestors:
        cutoff = ancestor.split_at if cutoff is None else min(cutoff, ancestor.split_at)
        cutoffs.append((ancestor.batch_id, cutoff))
    return cutoffs


async def find_children(db: AsyncSession, batch_id: int) -> List[Tuple[int, datetime, int]]:
    """(child batch id, split time, transfer id) for batches carved out of ``batch_id``."""
    result = await db.execute(
        select(BatchTransfer)
        .where(
            BatchTransfer.deleted_at.is_(None),
            BatchTransfer.source_batch_id == batch_id,
        )
        .order_by(BatchTransfer.transferred_at, BatchTransfer.id)
    )
    children = []
    for transfer in result.scalars().all():
        if (
            not transfer.is_merge
            and transfer.destination_batch_id is not None
            and transfer.destination_batch_id != batch_id
        ):
            children.append((transfer.destination_batch_id, transfer.transferred_at, transfer.id))
        if transfer.remaining_batch_id is not None:
            children.append((transfer.remaining_batch_id, transfer.transferred_at, transfer.id))
    return children
