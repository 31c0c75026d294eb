"""
注文作成 Saga のテスト(実ステップ + 偽の外部サービス)
"""

import asyncio
import re
from decimal import Decimal
from uuid import UUID

import pytest

from order_service import commands, queries
from order_service.errors import (
    OrderCreationPendingError,
    SagaCompensationFailure,
    SagaFailureError,
)
from order_service.models import SagaStatus, StepStatus
from order_service.statuses import FinancialStatus, FulfillmentStatus


async def load(runtime, order_id):
    async with runtime.session_factory() as session:
        return await queries.get_order(session, order_id)


async def history(runtime, order_id):
    async with runtime.session_factory() as session:
        return await queries.get_history(session, order_id)


def step_statuses(execution):
    return {record.step_name: record.status for record in execution.steps}


@pytest.mark.asyncio
async def test_successful_saga_authorizes_order(runtime, commerce, publisher, make_order_request):
    order = await commands.create_order(runtime, make_order_request())

    assert re.fullmatch(r"ORD-\d{8}-[A-Z0-9]{6}", order.order_number)
    assert order.financial_status == FinancialStatus.AUTHORIZED
    assert order.fulfillment_status == FulfillmentStatus.UNFULFILLED
    assert order.subtotal == Decimal("60.00")
    assert order.shipping_total == Decimal("10.00")
    assert order.tax_total == Decimal("4.80")
    assert order.total_price == Decimal("74.80")
    assert order.payment_intent_id in commerce.intents
    assert commerce.intents[order.payment_intent_id]["amount"] == "74.80"
    assert order.version == 1
    assert len(order.line_items) == 2

    entries = await history(runtime, order.id)
    assert [(e.previous_financial_status, e.new_financial_status) for e in entries] == [
        (FinancialStatus.PENDING, FinancialStatus.AUTHORIZED)
    ]

    execution = await runtime.saga_log.load(order.id)
    assert execution.status == SagaStatus.COMPLETED
    assert set(step_statuses(execution).values()) == {StepStatus.SUCCEEDED}
    assert publisher.types == ["saga.completed", "order.created"]


@pytest.mark.asyncio
async def test_unauthorized_intent_leaves_order_pending(runtime, commerce, make_order_request):
    commerce.intent_status = "requires_payment_method"

    order = await commands.create_order(runtime, make_order_request())

    assert order.financial_status == FinancialStatus.PENDING
    assert order.total_price == Decimal("74.80")
    assert order.payment_intent_id is not None
    assert await history(runtime, order.id) == []


@pytest.mark.asyncio
async def test_discount_reduces_payment_amount(runtime, commerce, make_order_request):
    order = await commands.create_order(
        runtime, make_order_request(discount_amount=Decimal("4.80"))
    )

    assert order.discount_total == Decimal("4.80")
    assert order.total_price == Decimal("70.00")
    assert commerce.intents[order.payment_intent_id]["amount"] == "70.00"


@pytest.mark.asyncio
async def test_tax_timeout_releases_inventory_once_and_voids_order(
    runtime, commerce, publisher, make_order_request
):
    commerce.inject("POST", "/calculations", "timeout", "timeout", "timeout")

    with pytest.raises(SagaFailureError) as exc_info:
        await commands.create_order(runtime, make_order_request())

    err = exc_info.value
    assert err.failed_step == "calculate_tax"
    assert err.reason_code == "SERVICE_UNAVAILABLE"
    assert commerce.count_calls("POST", "/calculations") == 3
    assert len(commerce.released) == 1
    assert commerce.count_calls("POST", "/payment-intents") == 0

    order = await load(runtime, err.order_id)
    assert order.financial_status == FinancialStatus.VOIDED
    assert order.cancelled_at is not None
    assert order.is_cancelled

    execution = await runtime.saga_log.load(err.order_id)
    assert execution.status == SagaStatus.FAILED
    assert step_statuses(execution) == {
        "create_order_record": StepStatus.COMPENSATED,
        "reserve_inventory": StepStatus.COMPENSATED,
        "calculate_shipping": StepStatus.COMPENSATED,
        "calculate_tax": StepStatus.FAILED,
        "create_payment_intent": StepStatus.PENDING,
        "confirm_order": StepStatus.PENDING,
    }
    assert execution.step("calculate_tax").attempt_count == 3
    assert "order.created" not in publisher.types
    assert "saga.compensated" in publisher.types


@pytest.mark.asyncio
async def test_insufficient_stock_fails_without_release(runtime, commerce, make_order_request):
    commerce.out_of_stock = True

    with pytest.raises(SagaFailureError) as exc_info:
        await commands.create_order(runtime, make_order_request())

    assert exc_info.value.failed_step == "reserve_inventory"
    assert exc_info.value.reason_code == "INSUFFICIENT_STOCK"
    assert commerce.count_calls("POST", "/reservations") == 1
    assert commerce.released == []
    order = await load(runtime, exc_info.value.order_id)
    assert order.financial_status == FinancialStatus.VOIDED


@pytest.mark.asyncio
async def test_declined_payment_releases_inventory(runtime, commerce, make_order_request):
    commerce.decline = True

    with pytest.raises(SagaFailureError) as exc_info:
        await commands.create_order(runtime, make_order_request())

    assert exc_info.value.failed_step == "create_payment_intent"
    assert exc_info.value.reason_code == "PAYMENT_DECLINED"
    assert len(commerce.released) == 1
    assert commerce.cancelled_intents == []


@pytest.mark.asyncio
async def test_no_shipping_rate_is_permanent(runtime, commerce, make_order_request):
    commerce.no_rate = True

    with pytest.raises(SagaFailureError) as exc_info:
        await commands.create_order(runtime, make_order_request())

    assert exc_info.value.reason_code == "NO_SHIPPING_RATE"
    assert commerce.count_calls("POST", "/quotes") == 1
    assert len(commerce.released) == 1


@pytest.mark.asyncio
async def test_lost_response_is_deduplicated_by_idempotency_key(
    runtime, commerce, make_order_request
):
    # 1回目は処理されたが応答が失われた。再送は同じ引き当てを返す。
    commerce.inject("POST", "/reservations", "lost_response")

    order = await commands.create_order(runtime, make_order_request())

    assert commerce.count_calls("POST", "/reservations") == 2
    assert len(commerce.reservations) == 1
    execution = await runtime.saga_log.load(order.id)
    assert execution.step("reserve_inventory").attempt_count == 2
    assert execution.step("reserve_inventory").idempotency_key == f"{order.id}:reserve_inventory"


@pytest.mark.asyncio
async def test_ambiguous_payment_failure_cancels_intent_found_by_key(
    runtime, commerce, make_order_request
):
    commerce.inject(
        "POST", "/payment-intents", "lost_response", "lost_response", "lost_response"
    )

    with pytest.raises(SagaFailureError) as exc_info:
        await commands.create_order(runtime, make_order_request())

    assert exc_info.value.failed_step == "create_payment_intent"
    assert len(commerce.intents) == 1
    assert commerce.cancelled_intents == list(commerce.intents)
    assert len(commerce.released) == 1


@pytest.mark.asyncio
async def test_empty_order_is_rejected_before_any_remote_call(
    runtime, commerce, make_order_request
):
    with pytest.raises(SagaFailureError) as exc_info:
        await commands.create_order(runtime, make_order_request(line_items=[]))

    assert exc_info.value.failed_step == "create_order_record"
    assert exc_info.value.reason_code == "EMPTY_ORDER"
    assert commerce.calls == []
    assert await load(runtime, exc_info.value.order_id) is None


@pytest.mark.asyncio
async def test_failed_release_flags_order_for_reconciliation(
    runtime, commerce, publisher, make_order_request
):
    commerce.no_rate = True
    commerce.inject("POST", "/reservations/res_1/release", 500, 500, 500)

    with pytest.raises(SagaCompensationFailure) as exc_info:
        await commands.create_order(runtime, make_order_request())

    assert "reserve_inventory" in exc_info.value.compensation_errors
    order = await load(runtime, exc_info.value.order_id)
    assert order.needs_reconciliation is True
    # 他の補償は続行される
    assert order.financial_status == FinancialStatus.VOIDED

    execution = await runtime.saga_log.load(order.id)
    assert execution.status == SagaStatus.COMPENSATION_FAILED
    assert execution.step("reserve_inventory").status == StepStatus.FAILED
    assert "saga.compensation_failed" in publisher.types


@pytest.mark.asyncio
async def test_order_is_hidden_and_read_only_while_saga_runs(
    runtime, monkeypatch, make_order_request
):
    seen = {}
    calculate = runtime.services.tax.calculate

    async def calculate_and_interfere(address, subtotal, idempotency_key):
        order_id = UUID(idempotency_key.split(":")[0])
        async with runtime.session_factory() as session:
            seen["by_id"] = await queries.get_order(session, order_id)
            seen["listed"] = (await queries.list_orders(session))["total"]
            seen["transitions"] = await queries.get_valid_transitions(
                session, runtime.state_machine, order_id
            )
        for command in (
            commands.update_order_status(runtime, order_id, financial_status=FinancialStatus.PAID),
            commands.cancel_order(runtime, order_id),
            commands.create_refund(runtime, order_id, Decimal("1.00")),
        ):
            with pytest.raises(OrderCreationPendingError):
                await command
        return await calculate(address, subtotal, idempotency_key)

    monkeypatch.setattr(runtime.services.tax, "calculate", calculate_and_interfere)

    order = await commands.create_order(runtime, make_order_request())

    assert seen == {"by_id": None, "listed": 0, "transitions": None}
    assert order.financial_status == FinancialStatus.AUTHORIZED
    assert order.saga_pending is False
    assert len(await history(runtime, order.id)) == 1
    async with runtime.session_factory() as session:
        assert (await queries.list_orders(session))["total"] == 1


@pytest.mark.asyncio
async def test_failed_saga_leaves_a_visible_voided_order(runtime, commerce, make_order_request):
    commerce.decline = True

    with pytest.raises(SagaFailureError) as exc_info:
        await commands.create_order(runtime, make_order_request())

    order = await load(runtime, exc_info.value.order_id)
    assert order.financial_status == FinancialStatus.VOIDED
    assert order.saga_pending is False


@pytest.mark.asyncio
async def test_cancelled_task_compensates_before_propagating(
    runtime, commerce, monkeypatch, make_order_request
):
    quoting = asyncio.Event()

    async def slow_quote(*args):
        quoting.set()
        await asyncio.sleep(30)

    monkeypatch.setattr(runtime.services.shipping, "quote", slow_quote)

    task = asyncio.create_task(commands.create_order(runtime, make_order_request()))
    await quoting.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert commerce.released == ["res_1"]
    (reservation_key,) = commerce.reservation_keys
    order_id = UUID(reservation_key.split(":")[0])
    execution = await runtime.saga_log.load(order_id)
    assert execution.status == SagaStatus.FAILED
    assert execution.step("calculate_shipping").status == StepStatus.FAILED
    assert execution.step("calculate_shipping").last_error == "cancelled"
    assert execution.step("reserve_inventory").status == StepStatus.COMPENSATED

    order = await load(runtime, order_id)
    assert order.financial_status == FinancialStatus.VOIDED
