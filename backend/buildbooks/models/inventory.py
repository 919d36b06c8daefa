"""Inventory models: on-hand stock per item and warehouse, and goods receipts."""
from __future__ import annotations

import datetime
import decimal
import uuid

from sqlalchemy import Integer, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from buildbooks.database import Base
from buildbooks.models.base import TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class InventoryItem(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A stocked material, identified by ``(name, warehouse)``.

    ``version`` guards the read-modify-write of quantity and average cost:
    a receipt computed from a stale row fails instead of overwriting a
    concurrent receipt.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("name", "warehouse", name="uq_inventory_items_name_warehouse"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    warehouse: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100))
    unit: Mapped[str | None] = mapped_column(String(20))
    quantity: Mapped[decimal.Decimal] = mapped_column(
        Numeric(14, 3), nullable=False, default=decimal.Decimal("0")
    )
    average_cost: Mapped[decimal.Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, default=decimal.Decimal("0")
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<InventoryItem {self.name!r} @{self.warehouse} qty={self.quantity}>"


class InventoryReceipt(UUIDPrimaryKeyMixin, Base):
    """Marks that the goods of a source document were taken into stock.

    Keyed like journal vouchers, so a document is received at most once.
    """
    __tablename__ = "inventory_receipts"
    __table_args__ = (
        UniqueConstraint("source_type", "source_document_id",
                         name="uq_inventory_receipts_source"),
    )

    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    warehouse: Mapped[str] = mapped_column(String(50), nullable=False)
    line_count: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<InventoryReceipt {self.source_type} {self.source_document_id}>"
