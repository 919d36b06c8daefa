"""Purchase order workflow — status state machine and goods-receipt posting.

    draft ──► submitted ──► approved ──► completed
      │           │             │
      └───────────┴─────────────┴──────► cancelled

Every edge is listed in ``TRANSITIONS`` together with the permissions it
needs; nothing else is legal.  ``approved → completed`` receives the goods
into inventory and posts the journal voucher in the same database
transaction as the status change, so either all three land or none do.
"""
from __future__ import annotations

import datetime
import enum
import logging
import uuid
from collections.abc import Iterable
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from buildbooks.config import Settings, settings as default_settings
from buildbooks.database import unit_of_work
from buildbooks.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    UnbalancedPostingError,
    UnknownAccountError,
    UnknownItemError,
    ValidationError,
)
from buildbooks.models.base import utcnow
from buildbooks.models.purchasing import PurchaseOrder, PurchaseOrderLine
from buildbooks.rbac import Actor, PermissionGate, check_permissions, missing_permissions
from buildbooks.services.inventory_adjuster import InventoryAdjuster, ReceiptLine
from buildbooks.services.ledger_poster import (
    PURCHASE_ORDER_SOURCE,
    LedgerPoster,
    build_purchase_posting,
)
from buildbooks.services.numbering import next_document_number

logger = logging.getLogger(__name__)


class PurchaseStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


EDIT = "purchase_orders.edit"
COMPLETE_PERMISSIONS = (EDIT, "inventory.edit", "journal_vouchers.create")

# (from, to) → permissions required
TRANSITIONS: dict[tuple[str, str], tuple[str, ...]] = {
    ("draft", "submitted"): (EDIT,),
    ("submitted", "approved"): (EDIT,),
    ("approved", "completed"): COMPLETE_PERMISSIONS,
    ("draft", "cancelled"): (EDIT,),
    ("submitted", "cancelled"): (EDIT,),
    ("approved", "cancelled"): (EDIT,),
}

_HEADER_FIELDS = {"counterparty_name", "project_name", "order_date", "warehouse"}


def available_transitions(order: PurchaseOrder, actor: PermissionGate) -> set[str]:
    """Next states *actor* may move *order* to, straight from ``TRANSITIONS``."""
    return {
        target
        for (source, target), permissions in TRANSITIONS.items()
        if source == order.status and not missing_permissions(actor, *permissions)
    }


def document_total(order: PurchaseOrder) -> Decimal:
    """Document total, derived from the lines on every call and never stored."""
    return order.total


def validate_for_submission(order: PurchaseOrder) -> None:
    """Drafts may be incomplete; a submitted order must be receivable."""
    if not order.lines:
        raise ValidationError("A purchase order needs at least one line before submission")
    for line in order.lines:
        if not (line.description or "").strip():
            raise ValidationError(
                f"Line {line.line_number}: description is required", line=line.line_number
            )
        if line.quantity is None or line.quantity <= 0:
            raise ValidationError(
                f"Line {line.line_number}: quantity must be positive", line=line.line_number
            )
        if line.unit_price is None or line.unit_price < 0:
            raise ValidationError(
                f"Line {line.line_number}: unit price cannot be negative", line=line.line_number
            )


def _build_lines(lines: Iterable[dict[str, Any]]) -> list[PurchaseOrderLine]:
    return [
        PurchaseOrderLine(
            line_number=i,
            description=(line.get("description") or "").strip(),
            quantity=line.get("quantity") or 0,
            unit_price=line.get("unit_price") or 0,
            account_code=line.get("account_code") or None,
        )
        for i, line in enumerate(lines, start=1)
    ]


class PurchaseWorkflow:
    def __init__(self, db: AsyncSession, config: Settings | None = None):
        self.db = db
        self.config = config or default_settings
        self.poster = LedgerPoster(db)
        self.adjuster = InventoryAdjuster(db)

    # ---- queries ----

    async def get(self, order_id: uuid.UUID) -> PurchaseOrder:
        result = await self.db.execute(
            select(PurchaseOrder).where(PurchaseOrder.id == order_id)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Purchase order not found", order_id=str(order_id))
        return order

    async def list_orders(self, status: str | None = None) -> list[PurchaseOrder]:
        stmt = select(PurchaseOrder)
        if status:
            stmt = stmt.where(PurchaseOrder.status == status)
        result = await self.db.execute(stmt.order_by(PurchaseOrder.number.desc()))
        return list(result.scalars().all())

    # ---- document CRUD ----

    async def create_document(
        self,
        actor: Actor,
        *,
        counterparty_name: str,
        project_name: str | None = None,
        order_date: datetime.date | None = None,
        warehouse: str | None = None,
        lines: Iterable[dict[str, Any]] = (),
    ) -> PurchaseOrder:
        check_permissions(actor, "purchase_orders.create")
        if not (counterparty_name or "").strip():
            raise ValidationError("Supplier name is required")

        order_date = order_date or datetime.date.today()
        async with unit_of_work(self.db):
            order = PurchaseOrder(
                number=await next_document_number(
                    self.db, PurchaseOrder, "PO", order_date.year
                ),
                counterparty_name=counterparty_name.strip(),
                project_name=project_name,
                order_date=order_date,
                warehouse=warehouse or self.config.DEFAULT_WAREHOUSE,
                status=PurchaseStatus.DRAFT.value,
                lines=_build_lines(lines),
            )
            self.db.add(order)

        logger.info("Purchase order %s created by %s", order.number, actor.username)
        return order

    async def update_document(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> PurchaseOrder:
        """Edit header fields and/or replace the lines of a draft order."""
        check_permissions(actor, EDIT)
        order = await self.get(order_id)
        _check_version(order, expected_version)
        if order.status != PurchaseStatus.DRAFT.value:
            raise InvalidTransitionError(
                f"Only draft purchase orders can be edited (status is {order.status!r})",
                status=order.status,
            )
        if "counterparty_name" in changes and not (changes["counterparty_name"] or "").strip():
            raise ValidationError("Supplier name is required")

        async with unit_of_work(self.db):
            for field in _HEADER_FIELDS & changes.keys():
                setattr(order, field, changes[field])
            if changes.get("lines") is not None:
                order.lines = _build_lines(changes["lines"])
            # Touch the row so the version bumps even for line-only edits.
            order.updated_at = utcnow()

        logger.info("Purchase order %s updated by %s", order.number, actor.username)
        return order

    async def delete_document(self, actor: Actor, order_id: uuid.UUID) -> None:
        """Remove a draft order.  Any other status is kept for the record."""
        check_permissions(actor, "purchase_orders.delete")
        order = await self.get(order_id)
        if order.status != PurchaseStatus.DRAFT.value:
            raise InvalidTransitionError(
                f"Only draft purchase orders can be deleted (status is {order.status!r})",
                status=order.status,
            )
        number = order.number
        async with unit_of_work(self.db):
            await self.db.delete(order)
        logger.info("Purchase order %s deleted by %s", number, actor.username)

    # ---- state machine ----

    async def transition(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        target: str,
        expected_version: int | None = None,
    ) -> PurchaseOrder:
        order = await self.get(order_id)
        _check_version(order, expected_version)

        source = order.status
        permissions = TRANSITIONS.get((source, target))
        if permissions is None:
            raise InvalidTransitionError(
                f"Cannot move a purchase order from {source!r} to {target!r}",
                status=source,
                target=target,
            )
        check_permissions(actor, *permissions)

        try:
            async with unit_of_work(self.db):
                if target == PurchaseStatus.SUBMITTED.value:
                    validate_for_submission(order)
                if target == PurchaseStatus.COMPLETED.value:
                    await self._complete(actor, order)
                else:
                    order.status = target
        except (UnbalancedPostingError, UnknownAccountError, UnknownItemError) as e:
            logger.error(
                "Completion of purchase order %s aborted, nothing applied: %s",
                order_id, e.message,
            )
            raise

        logger.info(
            "Purchase order %s moved %s -> %s by %s",
            order.number, source, target, actor.username,
        )
        return order

    async def _complete(self, actor: Actor, order: PurchaseOrder) -> None:
        """Receive the goods, post the voucher, then mark the order completed.

        Each side effect is keyed by the order id.  A step already on record
        is skipped with a warning, so a completion interrupted after a partial
        write finishes the missing steps without repeating the others.
        """
        receipt = await self.adjuster.find_receipt(PURCHASE_ORDER_SOURCE, order.id)
        if receipt is None:
            await self.adjuster.receive(
                [
                    ReceiptLine(
                        item_name=line.description,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                    )
                    for line in order.lines
                ],
                warehouse=order.warehouse,
                source_type=PURCHASE_ORDER_SOURCE,
                source_document_id=order.id,
            )
        else:
            logger.warning(
                "Purchase order %s was already received into %s; not receiving again",
                order.number, receipt.warehouse,
            )

        voucher = await self.poster.find_by_source(PURCHASE_ORDER_SOURCE, order.id)
        if voucher is None:
            voucher = await self.poster.post(
                build_purchase_posting(
                    order,
                    inventory_account_code=self.config.INVENTORY_ACCOUNT_CODE,
                    payable_account_code=self.config.PAYABLE_ACCOUNT_CODE,
                ),
                created_by=actor.username,
            )
        else:
            logger.warning(
                "Purchase order %s already has voucher %s; linking instead of re-posting",
                order.number, voucher.number,
            )

        order.ledger_reference = voucher.id
        order.status = PurchaseStatus.COMPLETED.value


def _check_version(order: PurchaseOrder, expected_version: int | None) -> None:
    if expected_version is not None and expected_version != order.version:
        raise ConflictError(
            "Purchase order was modified by someone else; reload and retry",
            expected_version=expected_version,
            current_version=order.version,
        )
