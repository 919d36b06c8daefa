"""Purchase order routes — documents, lines, and workflow transitions."""
from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from buildbooks.database import get_db
from buildbooks.middleware.auth import get_current_actor, require_permission
from buildbooks.models.purchasing import PurchaseOrder
from buildbooks.rbac import Actor
from buildbooks.services.purchase_workflow import (
    PurchaseStatus,
    PurchaseWorkflow,
    available_transitions,
    document_total,
)

router = APIRouter(prefix="/api/purchase-orders", tags=["purchase-orders"])


# ---------------------------------------------------------------------------
# Pydantic Schemas
# ---------------------------------------------------------------------------

class PurchaseOrderLineIn(BaseModel):
    description: str = ""
    quantity: Decimal = Decimal("0")
    unit_price: Decimal = Decimal("0")
    account_code: str | None = None


class PurchaseOrderCreate(BaseModel):
    counterparty_name: str
    project_name: str | None = None
    order_date: date | None = None
    warehouse: str | None = None
    lines: list[PurchaseOrderLineIn] = []


class PurchaseOrderUpdate(BaseModel):
    counterparty_name: str | None = None
    project_name: str | None = None
    order_date: date | None = None
    warehouse: str | None = None
    lines: list[PurchaseOrderLineIn] | None = None
    expected_version: int | None = None


class TransitionRequest(BaseModel):
    to: PurchaseStatus
    expected_version: int | None = None


def _order_dict(order: PurchaseOrder, actor: Actor) -> dict:
    return {
        "id": str(order.id),
        "number": order.number,
        "counterparty_name": order.counterparty_name,
        "project_name": order.project_name,
        "order_date": str(order.order_date),
        "warehouse": order.warehouse,
        "status": order.status,
        "ledger_reference": str(order.ledger_reference) if order.ledger_reference else None,
        "version": order.version,
        "total": float(document_total(order)),
        "available_transitions": sorted(available_transitions(order, actor)),
        "lines": [
            {
                "id": str(l.id),
                "line_number": l.line_number,
                "description": l.description,
                "quantity": float(l.quantity),
                "unit_price": float(l.unit_price),
                "account_code": l.account_code,
                "line_total": float(l.line_total),
            }
            for l in order.lines
        ],
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("")
async def list_purchase_orders(
    po_status: str | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("purchase_orders.view")),
):
    orders = await PurchaseWorkflow(db).list_orders(po_status)
    items = [_order_dict(o, actor) for o in orders]
    return {"items": items, "total": len(items)}


@router.get("/{order_id}")
async def get_purchase_order(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("purchase_orders.view")),
):
    return _order_dict(await PurchaseWorkflow(db).get(order_id), actor)


@router.post("", status_code=201)
async def create_purchase_order(
    body: PurchaseOrderCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    order = await PurchaseWorkflow(db).create_document(
        actor,
        counterparty_name=body.counterparty_name,
        project_name=body.project_name,
        order_date=body.order_date,
        warehouse=body.warehouse,
        lines=[line.model_dump() for line in body.lines],
    )
    return _order_dict(order, actor)


@router.put("/{order_id}")
async def update_purchase_order(
    order_id: uuid.UUID,
    body: PurchaseOrderUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    changes = body.model_dump(exclude_unset=True, exclude={"expected_version"})
    order = await PurchaseWorkflow(db).update_document(
        actor, order_id, changes, expected_version=body.expected_version
    )
    return _order_dict(order, actor)


@router.delete("/{order_id}")
async def delete_purchase_order(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    await PurchaseWorkflow(db).delete_document(actor, order_id)
    return {"status": "deleted"}


@router.post("/{order_id}/transitions")
async def transition_purchase_order(
    order_id: uuid.UUID,
    body: TransitionRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Move the order along its workflow.  ``to=completed`` receives the goods
    and posts the journal voucher in the same transaction."""
    order = await PurchaseWorkflow(db).transition(
        actor, order_id, body.to.value, expected_version=body.expected_version
    )
    return _order_dict(order, actor)
