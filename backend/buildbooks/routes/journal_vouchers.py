"""Journal voucher routes — read-only; vouchers are created only by posting."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from buildbooks.database import get_db
from buildbooks.errors import NotFoundError
from buildbooks.middleware.auth import require_permission
from buildbooks.models.gl import JournalVoucher
from buildbooks.rbac import Actor

router = APIRouter(prefix="/api/journal-vouchers", tags=["journal-vouchers"])


def _voucher_summary(jv: JournalVoucher) -> dict:
    return {
        "id": str(jv.id),
        "number": jv.number,
        "voucher_date": str(jv.voucher_date),
        "description": jv.description,
        "status": jv.status,
        "source_type": jv.source_type,
        "source_document_id": str(jv.source_document_id),
        "created_by": jv.created_by,
        "created_at": jv.created_at.isoformat() if jv.created_at else None,
        "total_debits": float(jv.total_debits),
        "total_credits": float(jv.total_credits),
        "line_count": len(jv.lines),
    }


@router.get("")
async def list_journal_vouchers(
    source_document_id: uuid.UUID | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("journal_vouchers.view")),
):
    count_stmt = select(func.count(JournalVoucher.id))
    data_stmt = select(JournalVoucher)
    if source_document_id:
        count_stmt = count_stmt.where(JournalVoucher.source_document_id == source_document_id)
        data_stmt = data_stmt.where(JournalVoucher.source_document_id == source_document_id)

    total = (await db.execute(count_stmt)).scalar_one()

    data_stmt = (
        data_stmt
        .order_by(JournalVoucher.number.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    result = await db.execute(data_stmt)
    items = [_voucher_summary(jv) for jv in result.scalars().all()]

    return {"items": items, "total": total, "page": page, "page_size": page_size}


@router.get("/{voucher_id}")
async def get_journal_voucher(
    voucher_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("journal_vouchers.view")),
):
    result = await db.execute(select(JournalVoucher).where(JournalVoucher.id == voucher_id))
    jv = result.scalar_one_or_none()
    if not jv:
        raise NotFoundError("Journal voucher not found", voucher_id=str(voucher_id))

    lines = [
        {
            "id": str(l.id),
            "line_number": l.line_number,
            "account_id": str(l.account_id),
            "account_code": l.account.code if l.account else None,
            "account_name": l.account.name if l.account else None,
            "description": l.description,
            "debit_amount": float(l.debit_amount or 0),
            "credit_amount": float(l.credit_amount or 0),
        }
        for l in jv.lines
    ]
    return {**_voucher_summary(jv), "lines": lines}
