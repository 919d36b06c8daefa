"""Account registry — the hierarchical chart of accounts.

Trees are assembled from the flat ``accounts`` table through an id-indexed
map and walked iteratively with visited sets, so a parent cycle that somehow
reached storage can neither recurse forever nor hide accounts.
"""
from __future__ import annotations

import dataclasses
import logging
import uuid
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from buildbooks.database import unit_of_work
from buildbooks.errors import NotFoundError, ValidationError
from buildbooks.models.gl import ACCOUNT_TYPES, Account, JournalVoucherLine
from buildbooks.rbac import Actor, check_permissions

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = {"name", "account_type", "parent_id"}


@dataclasses.dataclass
class AccountNode:
    account: Account
    children: list[AccountNode] = dataclasses.field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure tree helpers
# ---------------------------------------------------------------------------


def build_tree(accounts: Iterable[Account]) -> list[AccountNode]:
    """Group a flat account list into a forest ordered by code.

    Accounts whose parent is missing from the input become roots.  Accounts
    caught in a parent cycle are re-rooted at the lowest code of the cycle so
    that every input account appears in the forest exactly once.
    """
    ordered = sorted(accounts, key=lambda a: a.code)
    nodes = {a.id: AccountNode(a) for a in ordered}
    parent_of: dict[uuid.UUID, AccountNode] = {}
    roots: list[AccountNode] = []

    for a in ordered:
        node = nodes[a.id]
        parent = nodes.get(a.parent_id) if a.parent_id is not None else None
        if parent is None or parent is node:
            roots.append(node)
        else:
            parent.children.append(node)
            parent_of[a.id] = parent

    reached = {n.account.id for n, _ in _walk(roots)}
    for a in ordered:
        if a.id in reached:
            continue
        # Unreached nodes hang below a cycle; find it and cut at its lowest code.
        trail: set[uuid.UUID] = set()
        cursor = a.id
        while cursor not in trail:
            trail.add(cursor)
            cursor = parent_of[cursor].account.id
        cycle = [cursor]
        step = parent_of[cursor].account.id
        while step != cursor:
            cycle.append(step)
            step = parent_of[step].account.id
        cut = nodes[min(cycle, key=lambda i: nodes[i].account.code)]
        parent_of.pop(cut.account.id).children.remove(cut)
        roots.append(cut)
        reached.update(n.account.id for n, _ in _walk([cut]))
        logger.warning("Account %s is part of a parent cycle; shown as a root", cut.account.code)

    roots.sort(key=lambda n: n.account.code)
    return roots


def _walk(forest: list[AccountNode]) -> Iterable[tuple[AccountNode, int]]:
    """Pre-order traversal yielding ``(node, depth)``."""
    seen: set[uuid.UUID] = set()
    stack = [(node, 0) for node in reversed(forest)]
    while stack:
        node, depth = stack.pop()
        if node.account.id in seen:
            continue
        seen.add(node.account.id)
        yield node, depth
        stack.extend((child, depth + 1) for child in reversed(node.children))


def filter_tree(forest: list[AccountNode], query: str) -> list[AccountNode]:
    """Keep nodes whose code or name contains *query* (case-insensitive),
    together with every ancestor of such a node.  An empty query keeps all.
    """
    needle = (query or "").strip().lower()
    if not needle:
        return forest

    def matches(node: AccountNode) -> bool:
        return needle in (node.account.code or "").lower() or needle in (node.account.name or "").lower()

    kept: dict[uuid.UUID, AccountNode] = {}
    seen: set[uuid.UUID] = set()
    stack: list[tuple[AccountNode, bool]] = [(node, False) for node in reversed(forest)]
    while stack:
        node, children_done = stack.pop()
        key = node.account.id
        if children_done:
            children = [kept[c.account.id] for c in node.children if c.account.id in kept]
            if children or matches(node):
                kept[key] = AccountNode(node.account, children)
            continue
        if key in seen:
            continue
        seen.add(key)
        stack.append((node, True))
        stack.extend((child, False) for child in reversed(node.children))

    return [kept[n.account.id] for n in forest if n.account.id in kept]


def flatten_for_select(forest: list[AccountNode]) -> list[tuple[Account, int]]:
    """Pre-order ``(account, depth)`` pairs for indented pickers."""
    return [(node.account, depth) for node, depth in _walk(forest)]


def collect_subtree_ids(accounts: Iterable[Account], root_id: uuid.UUID) -> set[uuid.UUID]:
    """Return *root_id* plus the ids of all its descendants."""
    children_of: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
    known: set[uuid.UUID] = set()
    for a in accounts:
        known.add(a.id)
        if a.parent_id is not None:
            children_of[a.parent_id].append(a.id)

    if root_id not in known:
        return set()

    subtree: set[uuid.UUID] = set()
    pending = [root_id]
    while pending:
        current = pending.pop()
        if current in subtree:
            continue
        subtree.add(current)
        pending.extend(children_of.get(current, ()))
    return subtree


def assert_valid_parent(
    account_id: uuid.UUID | None,
    parent_id: uuid.UUID | None,
    parents: dict[uuid.UUID, uuid.UUID | None],
) -> None:
    """Reject a parent that is missing, the account itself, or a descendant.

    *parents* maps every stored account id to its current parent id.
    """
    if parent_id is None:
        return
    if parent_id not in parents:
        raise ValidationError("Parent account does not exist", parent_id=str(parent_id))
    if account_id is not None and parent_id == account_id:
        raise ValidationError("An account cannot be its own parent")

    visited: set[uuid.UUID] = set()
    cursor: uuid.UUID | None = parent_id
    while cursor is not None and cursor not in visited:
        if cursor == account_id:
            raise ValidationError(
                "Parent assignment would create a cycle in the chart of accounts",
                parent_id=str(parent_id),
            )
        visited.add(cursor)
        cursor = parents.get(cursor)


# ---------------------------------------------------------------------------
# Registry service
# ---------------------------------------------------------------------------


class AccountRegistry:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ---- queries ----

    async def list_accounts(self, account_type: str | None = None) -> list[Account]:
        stmt = select(Account)
        if account_type:
            stmt = stmt.where(Account.account_type == account_type)
        result = await self.db.execute(stmt.order_by(Account.code))
        return list(result.scalars().all())

    async def get(self, account_id: uuid.UUID) -> Account:
        result = await self.db.execute(select(Account).where(Account.id == account_id))
        account = result.scalar_one_or_none()
        if account is None:
            raise NotFoundError("Account not found", account_id=str(account_id))
        return account

    async def get_by_code(self, code: str) -> Account | None:
        result = await self.db.execute(select(Account).where(Account.code == code))
        return result.scalar_one_or_none()

    async def get_many_by_code(self, codes: Iterable[str]) -> dict[str, Account]:
        wanted = set(codes)
        if not wanted:
            return {}
        result = await self.db.execute(select(Account).where(Account.code.in_(sorted(wanted))))
        return {a.code: a for a in result.scalars().all()}

    async def tree(self, query: str = "") -> list[AccountNode]:
        return filter_tree(build_tree(await self.list_accounts()), query)

    async def select_options(self, query: str = "") -> list[tuple[Account, int]]:
        return flatten_for_select(await self.tree(query))

    async def _parent_map(self) -> dict[uuid.UUID, uuid.UUID | None]:
        result = await self.db.execute(select(Account.id, Account.parent_id))
        return {row.id: row.parent_id for row in result.all()}

    # ---- mutations ----

    async def create(
        self,
        actor: Actor,
        *,
        code: str,
        name: str,
        account_type: str,
        parent_id: uuid.UUID | None = None,
    ) -> Account:
        check_permissions(actor, "chart_of_accounts.create")

        code = (code or "").strip()
        if not code:
            raise ValidationError("Account code is required")
        _validate_name(name)
        _validate_type(account_type)
        if await self.get_by_code(code) is not None:
            raise ValidationError(f"Account code {code!r} already exists", code=code)
        assert_valid_parent(None, parent_id, await self._parent_map())

        account = Account(
            code=code,
            name=name.strip(),
            account_type=account_type,
            parent_id=parent_id,
        )
        async with unit_of_work(self.db):
            self.db.add(account)

        logger.info("Account %s created by %s", code, actor.username)
        return account

    async def update(
        self,
        actor: Actor,
        account_id: uuid.UUID,
        changes: dict[str, Any],
    ) -> Account:
        """Apply *changes* (name / account_type / parent_id) to an account.

        The code is immutable once created.
        """
        check_permissions(actor, "chart_of_accounts.edit")

        if "code" in changes:
            raise ValidationError("Account code cannot be changed after creation")
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown account fields: {', '.join(sorted(unknown))}")

        account = await self.get(account_id)
        if "name" in changes:
            _validate_name(changes["name"])
        if "account_type" in changes:
            _validate_type(changes["account_type"])
        if "parent_id" in changes:
            assert_valid_parent(account.id, changes["parent_id"], await self._parent_map())

        async with unit_of_work(self.db):
            if "name" in changes:
                account.name = changes["name"].strip()
            if "account_type" in changes:
                account.account_type = changes["account_type"]
            if "parent_id" in changes:
                account.parent_id = changes["parent_id"]

        logger.info("Account %s updated by %s", account.code, actor.username)
        return account

    async def delete(self, actor: Actor, account_id: uuid.UUID) -> int:
        """Delete an account and its whole subtree; return how many rows went.

        Deleting an unknown id is a no-op.  A subtree that already carries
        ledger postings is refused so no voucher line loses its account.
        """
        check_permissions(actor, "chart_of_accounts.delete")

        subtree = collect_subtree_ids(await self.list_accounts(), account_id)
        if not subtree:
            return 0

        posted = await self.db.execute(
            select(JournalVoucherLine.id)
            .where(JournalVoucherLine.account_id.in_(list(subtree)))
            .limit(1)
        )
        if posted.first() is not None:
            raise ValidationError(
                "Account or one of its sub-accounts has ledger postings and cannot be deleted",
                account_id=str(account_id),
            )

        async with unit_of_work(self.db):
            await self.db.execute(
                delete(Account)
                .where(Account.id.in_(list(subtree)))
            )

        logger.info(
            "Account %s and %d descendant(s) deleted by %s",
            account_id, len(subtree) - 1, actor.username,
        )
        return len(subtree)


def _validate_name(name: str | None) -> None:
    if not (name or "").strip():
        raise ValidationError("Account name is required")


def _validate_type(account_type: str) -> None:
    if account_type not in ACCOUNT_TYPES:
        raise ValidationError(
            f"Account type must be one of: {', '.join(ACCOUNT_TYPES)}",
            account_type=account_type,
        )
