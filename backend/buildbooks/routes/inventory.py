"""Inventory catalog routes.

Quantities and average cost change only through goods receipts on purchase
order completion; these endpoints maintain the catalog itself.
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from buildbooks.config import settings
from buildbooks.database import get_db, unit_of_work
from buildbooks.errors import NotFoundError, ValidationError
from buildbooks.middleware.auth import require_permission
from buildbooks.models.inventory import InventoryItem
from buildbooks.rbac import Actor
from buildbooks.services.inventory_adjuster import InventoryAdjuster

router = APIRouter(prefix="/api/inventory", tags=["inventory"])


class InventoryItemCreate(BaseModel):
    name: str
    warehouse: str | None = None
    category: str | None = None
    unit: str | None = None


class InventoryItemUpdate(BaseModel):
    category: str | None = None
    unit: str | None = None


def _item_dict(item: InventoryItem) -> dict:
    return {
        "id": str(item.id),
        "name": item.name,
        "warehouse": item.warehouse,
        "category": item.category,
        "unit": item.unit,
        "quantity": float(item.quantity),
        "average_cost": float(item.average_cost),
    }


async def _get_item(db: AsyncSession, item_id: uuid.UUID) -> InventoryItem:
    result = await db.execute(select(InventoryItem).where(InventoryItem.id == item_id))
    item = result.scalar_one_or_none()
    if not item:
        raise NotFoundError("Inventory item not found", item_id=str(item_id))
    return item


@router.get("")
async def list_items(
    warehouse: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("inventory.view")),
):
    items = [_item_dict(i) for i in await InventoryAdjuster(db).list_items(warehouse)]
    return {"items": items, "total": len(items)}


@router.get("/{item_id}")
async def get_item(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("inventory.view")),
):
    return _item_dict(await _get_item(db, item_id))


@router.post("", status_code=201)
async def create_item(
    body: InventoryItemCreate,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("inventory.create")),
):
    name = body.name.strip()
    if not name:
        raise ValidationError("Item name is required")

    item = InventoryItem(
        name=name,
        warehouse=body.warehouse or settings.DEFAULT_WAREHOUSE,
        category=body.category,
        unit=body.unit,
    )
    async with unit_of_work(db):
        db.add(item)
    return _item_dict(item)


@router.put("/{item_id}")
async def update_item(
    item_id: uuid.UUID,
    body: InventoryItemUpdate,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("inventory.edit")),
):
    item = await _get_item(db, item_id)
    async with unit_of_work(db):
        for field, value in body.model_dump(exclude_unset=True).items():
            setattr(item, field, value)
    return _item_dict(item)
