"""General Ledger models: chart of accounts, journal vouchers, and voucher lines."""
from __future__ import annotations

import datetime
import decimal
import uuid

from sqlalchemy import (
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from buildbooks.database import Base
from buildbooks.models.base import TimestampMixin, UUIDPrimaryKeyMixin, utcnow

ACCOUNT_TYPES = ("asset", "liability", "equity", "revenue", "expense")


class Account(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Chart of Accounts entry.

    The hierarchy is held only as ``parent_id``; trees are assembled by the
    account registry rather than through ORM relationships.
    """
    __tablename__ = "accounts"

    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_type: Mapped[str] = mapped_column(String(20), nullable=False)
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("accounts.id"),
    )

    def __repr__(self) -> str:
        return f"<Account {self.code!r} {self.name!r}>"


class JournalVoucher(UUIDPrimaryKeyMixin, Base):
    """A posted, balanced double-entry record.  Never edited after creation."""
    __tablename__ = "journal_vouchers"
    __table_args__ = (
        # One voucher per source document: the idempotency key for postings.
        UniqueConstraint("source_type", "source_document_id",
                         name="uq_journal_vouchers_source"),
    )

    number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    voucher_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="posted")
    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime.datetime] = mapped_column(
        nullable=False,
        default=utcnow,
    )

    # ------ relationships ------
    lines: Mapped[list[JournalVoucherLine]] = relationship(
        "JournalVoucherLine",
        back_populates="voucher",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="JournalVoucherLine.line_number",
    )

    @property
    def total_debits(self) -> decimal.Decimal:
        return sum((l.debit_amount for l in self.lines), decimal.Decimal("0.00"))

    @property
    def total_credits(self) -> decimal.Decimal:
        return sum((l.credit_amount for l in self.lines), decimal.Decimal("0.00"))

    def __repr__(self) -> str:
        return f"<JournalVoucher {self.number!r} source={self.source_document_id}>"


class JournalVoucherLine(UUIDPrimaryKeyMixin, Base):
    """Individual debit or credit line within a journal voucher."""
    __tablename__ = "journal_voucher_lines"

    voucher_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("journal_vouchers.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id"),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(Text)
    debit_amount: Mapped[decimal.Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=decimal.Decimal("0.00")
    )
    credit_amount: Mapped[decimal.Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=decimal.Decimal("0.00")
    )

    # ------ relationships ------
    voucher: Mapped[JournalVoucher] = relationship(
        "JournalVoucher",
        back_populates="lines",
    )
    account: Mapped[Account] = relationship(
        "Account",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<JournalVoucherLine #{self.line_number} "
            f"debit={self.debit_amount} credit={self.credit_amount}>"
        )
