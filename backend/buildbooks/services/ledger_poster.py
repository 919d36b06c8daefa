"""Ledger poster — maps business events to balanced journal vouchers.

The poster never commits: it adds and flushes the voucher inside the caller's
session so the posting lands in the same unit of work as whatever triggered
it.  All amounts are ``Decimal`` quantized to cents before any comparison.
"""
from __future__ import annotations

import dataclasses
import datetime
import logging
import uuid
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from buildbooks.errors import UnbalancedPostingError, UnknownAccountError
from buildbooks.models.gl import JournalVoucher, JournalVoucherLine
from buildbooks.models.purchasing import PurchaseOrder
from buildbooks.services.account_registry import AccountRegistry
from buildbooks.services.numbering import next_document_number

logger = logging.getLogger(__name__)

TWOPLACES = Decimal("0.01")
ZERO = Decimal("0.00")

PURCHASE_ORDER_SOURCE = "purchase_order"


def money(value) -> Decimal:
    if value is None or value == "":
        return ZERO
    return Decimal(str(value)).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


@dataclasses.dataclass(frozen=True)
class PostingLine:
    account_code: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    description: str | None = None


@dataclasses.dataclass(frozen=True)
class PostingEvent:
    source_type: str
    source_document_id: uuid.UUID
    voucher_date: datetime.date
    description: str
    lines: tuple[PostingLine, ...]


def validate_balance(lines: Iterable[PostingLine]) -> Decimal:
    """Check a set of posting lines and return the balanced total.

    Each line must carry exactly one non-zero, non-negative side, there must
    be at least two lines, and debits must equal credits to the cent.
    """
    lines = list(lines)
    if len(lines) < 2:
        raise UnbalancedPostingError("A journal voucher needs at least two lines")

    total_debits = ZERO
    total_credits = ZERO
    for number, line in enumerate(lines, start=1):
        debit, credit = money(line.debit), money(line.credit)
        if debit < 0 or credit < 0:
            raise UnbalancedPostingError(
                f"Line {number}: amounts cannot be negative", line=number
            )
        if (debit > 0) == (credit > 0):
            raise UnbalancedPostingError(
                f"Line {number}: exactly one of debit or credit must be non-zero",
                line=number,
            )
        total_debits += debit
        total_credits += credit

    if total_debits != total_credits:
        raise UnbalancedPostingError(
            f"Debits ({total_debits}) must equal credits ({total_credits})",
            total_debits=str(total_debits),
            total_credits=str(total_credits),
        )
    return total_debits


def build_purchase_posting(
    order: PurchaseOrder,
    *,
    inventory_account_code: str,
    payable_account_code: str,
    voucher_date: datetime.date | None = None,
) -> PostingEvent:
    """Standard posting for goods received against a purchase order.

    Debit: one line per distinct debit account (inventory unless a line
    names its own account), in first-seen order.
    Credit: a single payables line for the document total.
    """
    debits: dict[str, Decimal] = {}
    for line in order.lines:
        code = line.account_code or inventory_account_code
        debits[code] = debits.get(code, ZERO) + line.line_total

    total = sum(debits.values(), ZERO)
    lines = [
        PostingLine(
            account_code=code,
            debit=amount,
            description=f"Goods received from {order.counterparty_name}",
        )
        for code, amount in debits.items()
    ]
    lines.append(PostingLine(
        account_code=payable_account_code,
        credit=total,
        description=f"Payable to {order.counterparty_name}",
    ))

    return PostingEvent(
        source_type=PURCHASE_ORDER_SOURCE,
        source_document_id=order.id,
        voucher_date=voucher_date or datetime.date.today(),
        description=f"Goods received against purchase order {order.number}",
        lines=tuple(lines),
    )


class LedgerPoster:
    def __init__(self, db: AsyncSession, registry: AccountRegistry | None = None):
        self.db = db
        self.registry = registry or AccountRegistry(db)

    async def find_by_source(
        self, source_type: str, source_document_id: uuid.UUID
    ) -> JournalVoucher | None:
        result = await self.db.execute(
            select(JournalVoucher).where(
                JournalVoucher.source_type == source_type,
                JournalVoucher.source_document_id == source_document_id,
            )
        )
        return result.scalar_one_or_none()

    async def post(self, event: PostingEvent, *, created_by: str | None = None) -> JournalVoucher:
        """Persist *event* as a voucher in the current session (no commit)."""
        total = validate_balance(event.lines)
        if total == ZERO:
            raise UnbalancedPostingError("A journal voucher cannot have a zero total")

        codes = [line.account_code for line in event.lines]
        accounts = await self.registry.get_many_by_code(codes)
        missing = sorted(set(codes) - accounts.keys())
        if missing:
            raise UnknownAccountError(
                f"Unknown account code(s): {', '.join(missing)}",
                account_codes=missing,
            )

        number = await next_document_number(
            self.db, JournalVoucher, "JV", event.voucher_date.year
        )
        voucher = JournalVoucher(
            number=number,
            voucher_date=event.voucher_date,
            description=event.description,
            status="posted",
            source_type=event.source_type,
            source_document_id=event.source_document_id,
            created_by=created_by,
            lines=[
                JournalVoucherLine(
                    line_number=i,
                    account_id=accounts[line.account_code].id,
                    account=accounts[line.account_code],
                    description=line.description,
                    debit_amount=money(line.debit),
                    credit_amount=money(line.credit),
                )
                for i, line in enumerate(event.lines, start=1)
            ],
        )
        self.db.add(voucher)
        await self.db.flush()

        logger.info(
            "Posted %s for %s %s: %d lines balanced at %s",
            number, event.source_type, event.source_document_id, len(event.lines), total,
        )
        return voucher
