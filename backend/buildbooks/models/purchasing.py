"""Purchasing models: purchase orders and their ordered line items."""
from __future__ import annotations

import datetime
import decimal
import uuid

from sqlalchemy import Date, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from buildbooks.database import Base
from buildbooks.models.base import TimestampMixin, UUIDPrimaryKeyMixin

TWOPLACES = decimal.Decimal("0.01")


class PurchaseOrder(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A purchasing document driven through the procurement workflow.

    ``version`` is an optimistic-lock counter: SQLAlchemy adds it to the
    ``WHERE`` clause of every UPDATE and bumps it, so a stale writer fails
    instead of silently overwriting a concurrent transition.
    """
    __tablename__ = "purchase_orders"

    number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    counterparty_name: Mapped[str] = mapped_column(String(200), nullable=False)
    project_name: Mapped[str | None] = mapped_column(String(200))
    order_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    warehouse: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    ledger_reference: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("journal_vouchers.id"),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # ------ relationships ------
    lines: Mapped[list[PurchaseOrderLine]] = relationship(
        "PurchaseOrderLine",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PurchaseOrderLine.line_number",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def total(self) -> decimal.Decimal:
        """Sum of line totals; derived on every access, never stored."""
        return sum((line.line_total for line in self.lines), decimal.Decimal("0.00"))

    def __repr__(self) -> str:
        return f"<PurchaseOrder {self.number!r} status={self.status!r}>"


class PurchaseOrderLine(UUIDPrimaryKeyMixin, Base):
    """One ordered line of a purchase order.

    ``description`` names the inventory item being bought.  ``account_code``
    optionally redirects the debit side of the posting (defaults to the
    inventory account).
    """
    __tablename__ = "purchase_order_lines"

    purchase_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("purchase_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    quantity: Mapped[decimal.Decimal] = mapped_column(
        Numeric(14, 3), nullable=False, default=decimal.Decimal("0")
    )
    unit_price: Mapped[decimal.Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=decimal.Decimal("0.00")
    )
    account_code: Mapped[str | None] = mapped_column(String(20))

    # ------ relationships ------
    purchase_order: Mapped[PurchaseOrder] = relationship(
        "PurchaseOrder",
        back_populates="lines",
    )

    @property
    def line_total(self) -> decimal.Decimal:
        return (decimal.Decimal(self.quantity) * decimal.Decimal(self.unit_price)).quantize(
            TWOPLACES, rounding=decimal.ROUND_HALF_UP
        )

    def __repr__(self) -> str:
        return (
            f"<PurchaseOrderLine #{self.line_number} "
            f"qty={self.quantity} price={self.unit_price}>"
        )
