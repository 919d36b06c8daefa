"""
Purchase order workflow — transition table, permissions, completion as a
single unit of work, idempotency and optimistic locking.

Tests 401-460.
"""
import asyncio
import datetime
import logging
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from buildbooks.config import settings
from buildbooks.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    UnknownAccountError,
    UnknownItemError,
    ValidationError,
)
from buildbooks.models.gl import JournalVoucher
from buildbooks.models.inventory import InventoryItem
from buildbooks.models.purchasing import PurchaseOrder
from buildbooks.services.account_registry import AccountRegistry
from buildbooks.services.inventory_adjuster import InventoryAdjuster, ReceiptLine
from buildbooks.services.ledger_poster import (
    PURCHASE_ORDER_SOURCE,
    LedgerPoster,
    build_purchase_posting,
)
from buildbooks.services.purchase_workflow import (
    TRANSITIONS,
    PurchaseWorkflow,
    available_transitions,
    document_total,
)

DAY = datetime.date(2026, 5, 4)

SCENARIO_LINES = [
    {"description": "Rebar 16mm", "quantity": Decimal("2"), "unit_price": Decimal("100")},
    {"description": "Cement", "quantity": Decimal("1"), "unit_price": Decimal("50")},
]


async def make_draft(db, actor, lines=SCENARIO_LINES, **kwargs):
    return await PurchaseWorkflow(db).create_document(
        actor,
        counterparty_name="Steelworks Ltd",
        project_name="Tower B",
        order_date=DAY,
        lines=lines,
        **kwargs,
    )


async def advance(db, order, actor, *targets):
    workflow = PurchaseWorkflow(db)
    for target in targets:
        order = await workflow.transition(actor, order.id, target)
    return order


async def voucher_count(session_factory):
    async with session_factory() as s:
        return (await s.execute(select(func.count(JournalVoucher.id)))).scalar_one()


async def stock(session_factory, name, warehouse="main"):
    async with session_factory() as s:
        result = await s.execute(
            select(InventoryItem.quantity).where(
                InventoryItem.name == name, InventoryItem.warehouse == warehouse
            )
        )
        return result.scalar_one()


async def reload_order(session_factory, order_id):
    async with session_factory() as s:
        return await PurchaseWorkflow(s).get(order_id)


class TestDocumentLifecycle:

    async def test_401_create_draft(self, db, project_manager):
        order = await make_draft(db, project_manager)
        assert order.status == "draft"
        assert order.number == "PO-2026-001"
        assert order.warehouse == settings.DEFAULT_WAREHOUSE
        assert order.version == 1
        assert [l.line_number for l in order.lines] == [1, 2]
        assert document_total(order) == Decimal("250.00")

    async def test_402_numbers_increment(self, db, project_manager):
        await make_draft(db, project_manager)
        second = await make_draft(db, project_manager)
        assert second.number == "PO-2026-002"

    async def test_403_viewer_cannot_create(self, db, viewer):
        with pytest.raises(PermissionDeniedError):
            await make_draft(db, viewer)

    async def test_404_draft_may_be_incomplete(self, db, project_manager):
        order = await make_draft(db, project_manager, lines=[{"description": "Cement"}])
        assert order.lines[0].quantity == 0
        assert document_total(order) == Decimal("0.00")

    async def test_405_update_replaces_and_renumbers_lines(self, db, project_manager):
        order = await make_draft(db, project_manager)
        updated = await PurchaseWorkflow(db).update_document(
            project_manager,
            order.id,
            {
                "project_name": "Tower C",
                "lines": [{"description": "Cement", "quantity": Decimal("4"), "unit_price": Decimal("12.5")}],
            },
            expected_version=1,
        )
        assert updated.project_name == "Tower C"
        assert [(l.line_number, l.description) for l in updated.lines] == [(1, "Cement")]
        assert updated.total == Decimal("50.00")
        assert updated.version == 2

    async def test_406_update_with_stale_version_conflicts(self, db, project_manager):
        order = await make_draft(db, project_manager)
        with pytest.raises(ConflictError):
            await PurchaseWorkflow(db).update_document(
                project_manager, order.id, {"project_name": "X"}, expected_version=7
            )

    async def test_407_only_drafts_are_editable(self, db, chart, inventory, accountant):
        order = await advance(db, await make_draft(db, accountant), accountant, "submitted")
        with pytest.raises(InvalidTransitionError):
            await PurchaseWorkflow(db).update_document(accountant, order.id, {"project_name": "X"})

    async def test_408_delete_draft(self, db, admin):
        order = await make_draft(db, admin)
        order_id = order.id
        await PurchaseWorkflow(db).delete_document(admin, order_id)
        with pytest.raises(NotFoundError):
            await PurchaseWorkflow(db).get(order_id)

    async def test_409_only_drafts_are_deletable(self, db, admin):
        order = await advance(db, await make_draft(db, admin), admin, "submitted")
        with pytest.raises(InvalidTransitionError):
            await PurchaseWorkflow(db).delete_document(admin, order.id)

    async def test_410_accountant_cannot_delete(self, db, accountant):
        order = await make_draft(db, accountant)
        with pytest.raises(PermissionDeniedError):
            await PurchaseWorkflow(db).delete_document(accountant, order.id)

    async def test_411_list_orders_by_status(self, db, admin):
        first = await make_draft(db, admin)
        await make_draft(db, admin)
        await advance(db, first, admin, "submitted")
        workflow = PurchaseWorkflow(db)
        assert len(await workflow.list_orders()) == 2
        assert [o.number for o in await workflow.list_orders("submitted")] == ["PO-2026-001"]


class TestSubmissionValidation:

    @pytest.mark.parametrize("lines", [
        [],
        [{"description": "Cement", "quantity": Decimal("0"), "unit_price": Decimal("10")}],
        [{"description": "Cement", "quantity": Decimal("1"), "unit_price": Decimal("-1")}],
        [{"description": "  ", "quantity": Decimal("1"), "unit_price": Decimal("1")}],
    ])
    async def test_415_incomplete_draft_cannot_be_submitted(
        self, db, session_factory, project_manager, lines
    ):
        order = await make_draft(db, project_manager, lines=lines)
        order_id = order.id
        with pytest.raises(ValidationError):
            await PurchaseWorkflow(db).transition(project_manager, order_id, "submitted")
        assert (await reload_order(session_factory, order_id)).status == "draft"

    async def test_416_free_price_line_may_be_submitted(self, db, project_manager):
        order = await make_draft(db, project_manager, lines=[
            {"description": "Cement", "quantity": Decimal("1"), "unit_price": Decimal("0")},
        ])
        order = await advance(db, order, project_manager, "submitted")
        assert order.status == "submitted"


class TestTransitionTable:

    def test_420_available_transitions_follow_the_table(self, admin, accountant, project_manager, viewer):
        for status in ("draft", "submitted", "approved", "completed", "cancelled"):
            order = PurchaseOrder(status=status)
            for actor in (admin, accountant, project_manager, viewer):
                for target in available_transitions(order, actor):
                    assert (status, target) in TRANSITIONS

    def test_421_completed_needs_all_three_permissions(self, accountant, project_manager):
        order = PurchaseOrder(status="approved")
        assert available_transitions(order, accountant) == {"completed", "cancelled"}
        assert available_transitions(order, project_manager) == {"cancelled"}

    def test_422_terminal_states_have_no_exits(self, admin):
        assert available_transitions(PurchaseOrder(status="completed"), admin) == set()
        assert available_transitions(PurchaseOrder(status="cancelled"), admin) == set()

    def test_423_viewer_sees_no_transitions(self, viewer):
        assert available_transitions(PurchaseOrder(status="draft"), viewer) == set()

    async def test_424_skipping_a_state_is_rejected(self, db, admin):
        order = await make_draft(db, admin)
        with pytest.raises(InvalidTransitionError):
            await PurchaseWorkflow(db).transition(admin, order.id, "approved")
        assert order.status == "draft"

    async def test_425_cancel_from_each_open_state(self, db, admin):
        for path in ([], ["submitted"], ["submitted", "approved"]):
            order = await advance(db, await make_draft(db, admin), admin, *path, "cancelled")
            assert order.status == "cancelled"
            assert order.ledger_reference is None

    async def test_426_cancelled_is_terminal(self, db, admin):
        order = await advance(db, await make_draft(db, admin), admin, "cancelled")
        with pytest.raises(InvalidTransitionError):
            await PurchaseWorkflow(db).transition(admin, order.id, "draft")

    async def test_427_project_manager_cannot_complete(self, db, chart, inventory, project_manager):
        order = await advance(db, await make_draft(db, project_manager), project_manager, "submitted", "approved")
        with pytest.raises(PermissionDeniedError) as exc:
            await PurchaseWorkflow(db).transition(project_manager, order.id, "completed")
        assert exc.value.details["missing"] == ["inventory.edit", "journal_vouchers.create"]
        assert order.status == "approved"


class TestCompletion:

    async def test_430_scenario_receive_and_post(self, db, session_factory, chart, inventory, accountant):
        order = await advance(
            db, await make_draft(db, accountant), accountant, "submitted", "approved", "completed"
        )
        assert order.status == "completed"
        assert order.ledger_reference is not None

        assert await stock(session_factory, "Rebar 16mm") == Decimal("12")
        assert await stock(session_factory, "Cement") == Decimal("1")

        async with session_factory() as s:
            voucher = (await s.execute(
                select(JournalVoucher).where(JournalVoucher.id == order.ledger_reference)
            )).scalar_one()
            assert voucher.source_document_id == order.id
            assert voucher.created_by == accountant.username
            assert voucher.total_debits == voucher.total_credits == Decimal("250.00")
            debits = [(l.account.code, l.debit_amount) for l in voucher.lines if l.debit_amount]
            credits = [(l.account.code, l.credit_amount) for l in voucher.lines if l.credit_amount]
            assert debits == [("112", Decimal("250.00"))]
            assert credits == [("211", Decimal("250.00"))]

    async def test_431_completed_order_records_average_cost(self, db, session_factory, chart, inventory, admin):
        await advance(db, await make_draft(db, admin), admin, "submitted", "approved", "completed")
        async with session_factory() as s:
            rebar = (await s.execute(
                select(InventoryItem).where(InventoryItem.name == "Rebar 16mm")
            )).scalar_one()
            # (10 * 80 + 2 * 100) / 12
            assert rebar.average_cost == Decimal("83.3333")

    async def test_432_completing_twice_posts_once(self, db, session_factory, chart, inventory, accountant):
        order = await advance(
            db, await make_draft(db, accountant), accountant, "submitted", "approved", "completed"
        )
        with pytest.raises(InvalidTransitionError):
            await PurchaseWorkflow(db).transition(accountant, order.id, "completed")

        assert await voucher_count(session_factory) == 1
        assert await stock(session_factory, "Rebar 16mm") == Decimal("12")

    async def test_433_completed_cannot_go_back(self, db, session_factory, chart, inventory, accountant):
        order = await advance(
            db, await make_draft(db, accountant), accountant, "submitted", "approved", "completed"
        )
        reference, version = order.ledger_reference, order.version
        with pytest.raises(InvalidTransitionError):
            await PurchaseWorkflow(db).transition(accountant, order.id, "submitted")

        reloaded = await reload_order(session_factory, order.id)
        assert reloaded.status == "completed"
        assert reloaded.ledger_reference == reference
        assert reloaded.version == version
        assert await voucher_count(session_factory) == 1

    async def test_434_unknown_item_rolls_back_everything(
        self, db, session_factory, chart, inventory, accountant, caplog
    ):
        lines = SCENARIO_LINES + [
            {"description": "Sand", "quantity": Decimal("3"), "unit_price": Decimal("5")},
        ]
        order = await advance(db, await make_draft(db, accountant, lines=lines), accountant, "submitted", "approved")
        order_id = order.id

        caplog.set_level(logging.ERROR, logger="buildbooks.services.purchase_workflow")
        with pytest.raises(UnknownItemError):
            await PurchaseWorkflow(db).transition(accountant, order_id, "completed")

        reloaded = await reload_order(session_factory, order_id)
        assert reloaded.status == "approved"
        assert reloaded.ledger_reference is None
        assert await voucher_count(session_factory) == 0
        assert await stock(session_factory, "Rebar 16mm") == Decimal("10")
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    async def test_435_missing_payable_account_undoes_receipt(
        self, db, session_factory, chart, inventory, admin
    ):
        order = await advance(db, await make_draft(db, admin), admin, "submitted", "approved")
        order_id = order.id
        await AccountRegistry(db).delete(admin, chart["2"].id)

        with pytest.raises(UnknownAccountError):
            await PurchaseWorkflow(db).transition(admin, order_id, "completed")

        assert (await reload_order(session_factory, order_id)).status == "approved"
        assert await stock(session_factory, "Rebar 16mm") == Decimal("10")
        assert await stock(session_factory, "Cement") == Decimal("0")
        assert await voucher_count(session_factory) == 0

    async def test_436_existing_voucher_is_linked_and_goods_received(
        self, db, session_factory, chart, inventory, accountant, caplog
    ):
        order = await advance(db, await make_draft(db, accountant), accountant, "submitted", "approved")
        # A voucher that landed without its receipt or status change.
        voucher = await LedgerPoster(db).post(build_purchase_posting(
            order,
            inventory_account_code=settings.INVENTORY_ACCOUNT_CODE,
            payable_account_code=settings.PAYABLE_ACCOUNT_CODE,
        ))
        await db.commit()

        caplog.set_level(logging.WARNING, logger="buildbooks.services.purchase_workflow")
        order = await PurchaseWorkflow(db).transition(accountant, order.id, "completed")

        assert order.status == "completed"
        assert order.ledger_reference == voucher.id
        assert await voucher_count(session_factory) == 1
        assert await stock(session_factory, "Rebar 16mm") == Decimal("12")
        assert await stock(session_factory, "Cement") == Decimal("1")
        assert any("already has voucher" in r.getMessage() for r in caplog.records)
        async with session_factory() as s:
            assert await InventoryAdjuster(s).find_receipt(PURCHASE_ORDER_SOURCE, order.id) is not None

    async def test_437_order_in_other_warehouse_needs_catalog_there(self, db, chart, inventory, admin):
        order = await advance(
            db, await make_draft(db, admin, warehouse="yard-2"), admin, "submitted", "approved"
        )
        with pytest.raises(UnknownItemError):
            await PurchaseWorkflow(db).transition(admin, order.id, "completed")

    async def test_438_line_account_overrides_inventory_debit(
        self, db, session_factory, chart, inventory, admin
    ):
        lines = [
            {"description": "Cement", "quantity": Decimal("2"), "unit_price": Decimal("10"), "account_code": "51"},
        ]
        order = await advance(
            db, await make_draft(db, admin, lines=lines), admin, "submitted", "approved", "completed"
        )
        async with session_factory() as s:
            voucher = (await s.execute(
                select(JournalVoucher).where(JournalVoucher.id == order.ledger_reference)
            )).scalar_one()
            assert [(l.account.code, l.debit_amount, l.credit_amount) for l in voucher.lines] == [
                ("51", Decimal("20.00"), Decimal("0.00")),
                ("211", Decimal("0.00"), Decimal("20.00")),
            ]


    async def test_439_recorded_receipt_is_not_received_again(
        self, db, session_factory, chart, inventory, accountant, caplog
    ):
        order = await advance(db, await make_draft(db, accountant), accountant, "submitted", "approved")
        # Goods taken into stock under the order's key, voucher still missing.
        await InventoryAdjuster(db).receive(
            [ReceiptLine(l.description, l.quantity, l.unit_price) for l in order.lines],
            warehouse=order.warehouse,
            source_type=PURCHASE_ORDER_SOURCE,
            source_document_id=order.id,
        )
        await db.commit()
        assert await stock(session_factory, "Rebar 16mm") == Decimal("12")

        caplog.set_level(logging.WARNING, logger="buildbooks.services.purchase_workflow")
        order = await PurchaseWorkflow(db).transition(accountant, order.id, "completed")

        assert order.status == "completed"
        assert order.ledger_reference is not None
        assert await voucher_count(session_factory) == 1
        assert await stock(session_factory, "Rebar 16mm") == Decimal("12")
        assert await stock(session_factory, "Cement") == Decimal("1")
        assert any("already received" in r.getMessage() for r in caplog.records)

    async def test_440_receipt_and_voucher_both_present(
        self, db, session_factory, chart, inventory, accountant
    ):
        order = await advance(db, await make_draft(db, accountant), accountant, "submitted", "approved")
        await InventoryAdjuster(db).receive(
            [ReceiptLine(l.description, l.quantity, l.unit_price) for l in order.lines],
            warehouse=order.warehouse,
            source_type=PURCHASE_ORDER_SOURCE,
            source_document_id=order.id,
        )
        voucher = await LedgerPoster(db).post(build_purchase_posting(
            order,
            inventory_account_code=settings.INVENTORY_ACCOUNT_CODE,
            payable_account_code=settings.PAYABLE_ACCOUNT_CODE,
        ))
        await db.commit()

        order = await PurchaseWorkflow(db).transition(accountant, order.id, "completed")

        assert order.status == "completed"
        assert order.ledger_reference == voucher.id
        assert await voucher_count(session_factory) == 1
        assert await stock(session_factory, "Rebar 16mm") == Decimal("12")


class TestConcurrency:

    async def test_450_expected_version_mismatch(self, db, admin):
        order = await make_draft(db, admin)
        with pytest.raises(ConflictError):
            await PurchaseWorkflow(db).transition(admin, order.id, "submitted", expected_version=99)
        assert order.status == "draft"

    async def test_451_matching_expected_version_bumps(self, db, admin):
        order = await make_draft(db, admin)
        order = await PurchaseWorkflow(db).transition(admin, order.id, "submitted", expected_version=1)
        assert order.version == 2

    async def test_452_stale_writer_gets_conflict(self, db, session_factory, admin):
        order_id = (await make_draft(db, admin)).id

        async with session_factory() as first, session_factory() as second:
            await PurchaseWorkflow(first).get(order_id)
            await PurchaseWorkflow(second).get(order_id)

            await PurchaseWorkflow(first).transition(admin, order_id, "submitted")
            with pytest.raises(ConflictError):
                await PurchaseWorkflow(second).transition(admin, order_id, "cancelled")

        assert (await reload_order(session_factory, order_id)).status == "submitted"

    async def test_453_unknown_order(self, db, admin):
        with pytest.raises(NotFoundError):
            await PurchaseWorkflow(db).transition(admin, uuid.uuid4(), "submitted")

    async def test_454_racing_completions_of_one_order(
        self, db, session_factory, chart, inventory, accountant
    ):
        order_id = (await advance(
            db, await make_draft(db, accountant), accountant, "submitted", "approved"
        )).id

        async with session_factory() as first, session_factory() as second:
            await PurchaseWorkflow(first).get(order_id)
            await PurchaseWorkflow(second).get(order_id)
            outcomes = await asyncio.gather(
                PurchaseWorkflow(first).transition(accountant, order_id, "completed"),
                PurchaseWorkflow(second).transition(accountant, order_id, "completed"),
                return_exceptions=True,
            )

        completed = [o for o in outcomes if isinstance(o, PurchaseOrder)]
        conflicts = [o for o in outcomes if isinstance(o, ConflictError)]
        assert len(completed) == 1 and len(conflicts) == 1, outcomes
        assert await voucher_count(session_factory) == 1
        assert await stock(session_factory, "Rebar 16mm") == Decimal("12")
        assert await stock(session_factory, "Cement") == Decimal("1")
        reloaded = await reload_order(session_factory, order_id)
        assert reloaded.status == "completed"
        assert reloaded.ledger_reference == completed[0].ledger_reference

    async def test_455_concurrent_orders_for_one_item_both_land(
        self, db, session_factory, chart, inventory, accountant
    ):
        rebar_only = [{"description": "Rebar 16mm", "quantity": Decimal("2"), "unit_price": Decimal("100")}]
        order_ids = [
            (await advance(
                db, await make_draft(db, accountant, lines=rebar_only), accountant, "submitted", "approved"
            )).id
            for _ in range(2)
        ]

        async def complete(order_id):
            async with session_factory() as s:
                return await PurchaseWorkflow(s).transition(accountant, order_id, "completed")

        outcomes = await asyncio.gather(*(complete(i) for i in order_ids), return_exceptions=True)
        for order_id, outcome in zip(order_ids, outcomes):
            if isinstance(outcome, ConflictError):
                # The later writer saw a stale stock row; a retry reads it fresh.
                outcome = await complete(order_id)
            assert isinstance(outcome, PurchaseOrder), outcome
            assert outcome.status == "completed"

        assert await stock(session_factory, "Rebar 16mm") == Decimal("14")
        async with session_factory() as s:
            vouchers = (await s.execute(select(JournalVoucher))).scalars().all()
            rebar = (await s.execute(
                select(InventoryItem).where(InventoryItem.name == "Rebar 16mm")
            )).scalar_one()
        assert sorted(v.source_document_id for v in vouchers) == sorted(order_ids)
        assert len({v.number for v in vouchers}) == 2
        # (10 * 80 + 2 * 100 + 2 * 100) / 14
        assert rebar.average_cost == Decimal("85.7143")

    async def test_456_concurrent_completions_get_distinct_voucher_numbers(
        self, db, session_factory, chart, inventory, accountant
    ):
        order_ids = []
        for description in ("Rebar 16mm", "Cement"):
            lines = [{"description": description, "quantity": Decimal("1"), "unit_price": Decimal("10")}]
            order = await advance(db, await make_draft(db, accountant, lines=lines), accountant, "submitted", "approved")
            order_ids.append(order.id)

        async def complete(order_id):
            async with session_factory() as s:
                return await PurchaseWorkflow(s).transition(accountant, order_id, "completed")

        outcomes = await asyncio.gather(*(complete(i) for i in order_ids))
        assert [o.status for o in outcomes] == ["completed", "completed"]

        year = datetime.date.today().year
        async with session_factory() as s:
            numbers = (await s.execute(select(JournalVoucher.number))).scalars().all()
        assert sorted(numbers) == [f"JV-{year}-001", f"JV-{year}-002"]
