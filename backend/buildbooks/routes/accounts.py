"""Chart of Accounts routes — list, tree, picker options, CRUD."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from buildbooks.database import get_db
from buildbooks.middleware.auth import get_current_actor, require_permission
from buildbooks.models.gl import ACCOUNT_TYPES, Account
from buildbooks.rbac import Actor
from buildbooks.services.account_registry import AccountNode, AccountRegistry

router = APIRouter(prefix="/api/accounts", tags=["chart-of-accounts"])


# ---------------------------------------------------------------------------
# Pydantic Schemas
# ---------------------------------------------------------------------------

class AccountCreate(BaseModel):
    code: str
    name: str
    account_type: str
    parent_id: uuid.UUID | None = None

    @field_validator("account_type")
    @classmethod
    def validate_account_type(cls, v):
        if v not in ACCOUNT_TYPES:
            raise ValueError("Must be asset, liability, equity, revenue, or expense")
        return v


class AccountUpdate(BaseModel):
    # Accepted only so a code change is refused instead of silently dropped.
    code: str | None = None
    name: str | None = None
    account_type: str | None = None
    parent_id: uuid.UUID | None = None


def _account_dict(a: Account) -> dict:
    return {
        "id": str(a.id),
        "code": a.code,
        "name": a.name,
        "account_type": a.account_type,
        "parent_id": str(a.parent_id) if a.parent_id else None,
    }


def _node_dict(node: AccountNode) -> dict:
    return {**_account_dict(node.account), "children": [_node_dict(c) for c in node.children]}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("")
async def list_accounts(
    account_type: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("chart_of_accounts.view")),
):
    accounts = await AccountRegistry(db).list_accounts(account_type)
    items = [_account_dict(a) for a in accounts]
    return {"items": items, "total": len(items)}


@router.get("/tree")
async def get_accounts_tree(
    q: str = Query(""),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("chart_of_accounts.view")),
):
    """Return the chart of accounts as a nested tree, optionally filtered."""
    forest = await AccountRegistry(db).tree(q)
    return {"items": [_node_dict(n) for n in forest]}


@router.get("/options")
async def get_account_options(
    q: str = Query(""),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("chart_of_accounts.view")),
):
    """Flattened pre-order list for account pickers."""
    options = await AccountRegistry(db).select_options(q)
    return {
        "items": [
            {
                "id": str(a.id),
                "code": a.code,
                "name": a.name,
                "depth": depth,
                "label": f"{'  ' * depth}{a.code} {a.name}",
            }
            for a, depth in options
        ]
    }


@router.get("/{account_id}")
async def get_account(
    account_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("chart_of_accounts.view")),
):
    return _account_dict(await AccountRegistry(db).get(account_id))


@router.post("", status_code=201)
async def create_account(
    body: AccountCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    account = await AccountRegistry(db).create(
        actor,
        code=body.code,
        name=body.name,
        account_type=body.account_type,
        parent_id=body.parent_id,
    )
    return _account_dict(account)


@router.put("/{account_id}")
async def update_account(
    account_id: uuid.UUID,
    body: AccountUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    account = await AccountRegistry(db).update(
        actor, account_id, body.model_dump(exclude_unset=True)
    )
    return _account_dict(account)


@router.delete("/{account_id}")
async def delete_account(
    account_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    deleted = await AccountRegistry(db).delete(actor, account_id)
    return {"status": "deleted", "deleted": deleted}
