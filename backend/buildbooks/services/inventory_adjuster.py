"""Inventory adjuster — receives goods into on-hand stock.

Receipts only ever increase quantities.  A call is all-or-nothing: every
line is matched against the catalog before any quantity changes.  Matched
rows are locked (`FOR UPDATE`) and re-read, and each item carries a version
counter, so two receipts of the same item never overwrite each other.
"""
from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from buildbooks.errors import UnknownItemError, ValidationError
from buildbooks.models.inventory import InventoryItem, InventoryReceipt

logger = logging.getLogger(__name__)

COST_PLACES = Decimal("0.0001")


@dataclasses.dataclass(frozen=True)
class ReceiptLine:
    item_name: str
    quantity: Decimal
    unit_price: Decimal = Decimal("0")


class InventoryAdjuster:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_items(self, warehouse: str | None = None) -> list[InventoryItem]:
        stmt = select(InventoryItem)
        if warehouse:
            stmt = stmt.where(InventoryItem.warehouse == warehouse)
        result = await self.db.execute(stmt.order_by(InventoryItem.warehouse, InventoryItem.name))
        return list(result.scalars().all())

    async def find_receipt(
        self, source_type: str, source_document_id: uuid.UUID
    ) -> InventoryReceipt | None:
        result = await self.db.execute(
            select(InventoryReceipt).where(
                InventoryReceipt.source_type == source_type,
                InventoryReceipt.source_document_id == source_document_id,
            )
        )
        return result.scalar_one_or_none()

    async def receive(
        self,
        lines: Sequence[ReceiptLine],
        *,
        warehouse: str,
        source_type: str | None = None,
        source_document_id: uuid.UUID | None = None,
    ) -> list[InventoryItem]:
        """Add each line's quantity to its catalog item and return the items
        touched, in first-seen order.  Flushes but does not commit.

        With a source key an ``InventoryReceipt`` is written in the same
        flush; its unique key rejects a second receipt of that document.

        The weighted average cost is carried forward:
        ``(on_hand * avg + qty * price) / (on_hand + qty)``.
        """
        if not lines:
            return []

        for number, line in enumerate(lines, start=1):
            if Decimal(line.quantity) <= 0:
                raise ValidationError(
                    f"Line {number}: received quantity must be positive", line=number
                )

        names = {line.item_name.strip() for line in lines}
        result = await self.db.execute(
            select(InventoryItem)
            .where(
                InventoryItem.warehouse == warehouse,
                InventoryItem.name.in_(sorted(names)),
            )
            .order_by(InventoryItem.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        catalog = {item.name: item for item in result.scalars().all()}

        missing = sorted(names - catalog.keys())
        if missing:
            raise UnknownItemError(
                f"Unknown inventory item(s) in warehouse {warehouse!r}: {', '.join(missing)}",
                warehouse=warehouse,
                items=missing,
            )

        touched: dict[str, InventoryItem] = {}
        for line in lines:
            item = catalog[line.item_name.strip()]
            quantity = Decimal(line.quantity)
            on_hand = Decimal(item.quantity)
            new_quantity = on_hand + quantity
            value = on_hand * Decimal(item.average_cost) + quantity * Decimal(line.unit_price)
            if new_quantity > 0:
                item.average_cost = (value / new_quantity).quantize(COST_PLACES, rounding=ROUND_HALF_UP)
            else:
                item.average_cost = Decimal("0")
            item.quantity = new_quantity
            touched[item.name] = item

        if source_type is not None and source_document_id is not None:
            self.db.add(InventoryReceipt(
                source_type=source_type,
                source_document_id=source_document_id,
                warehouse=warehouse,
                line_count=len(lines),
            ))
        await self.db.flush()
        logger.info(
            "Received %d line(s) into %d item(s) at warehouse %s",
            len(lines), len(touched), warehouse,
        )
        return list(touched.values())
