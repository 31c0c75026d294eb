"""
クラッシュ復旧のテスト

Saga の途中でプロセスが停止した状態を実行ログに直接作り、
recover_sagas() が正しく再開・補償することを確認する。
"""

from decimal import Decimal

import pytest

from order_service import commands, queries
from order_service.models import SagaStatus, StepStatus
from order_service.recovery import recover_sagas
from order_service.statuses import FinancialStatus


async def start_interrupted(runtime, request, completed: int, attempted: str | None = None):
    """先頭から completed 個のステップを成功させ、attempted を試行中のまま止める。"""
    draft = commands.build_draft_order(request)
    steps = runtime.orchestrator.steps
    await runtime.saga_log.start(
        draft.id,
        "order_creation",
        [(step.name, step.key_for(draft)) for step in steps],
        {"order": draft.model_dump(mode="json")},
    )
    results = {}
    for step in steps[:completed]:
        await runtime.saga_log.record_attempt(draft.id, step.name)
        results[step.name] = await step.execute(draft, results)
        await runtime.saga_log.mark_succeeded(draft.id, step.name, results[step.name])
    if attempted is not None:
        await runtime.saga_log.record_attempt(draft.id, attempted)
    return draft, results


async def load(runtime, order_id):
    async with runtime.session_factory() as session:
        return await queries.get_order(session, order_id)


@pytest.mark.asyncio
async def test_resumes_after_last_succeeded_step(runtime, commerce, make_order_request):
    draft, _ = await start_interrupted(
        runtime, make_order_request(), completed=2, attempted="calculate_shipping"
    )

    recovered = await recover_sagas(runtime)

    assert [e.order_id for e in recovered] == [draft.id]
    assert recovered[0].status == SagaStatus.COMPLETED
    # 成功済みの引き当ては再実行しない
    assert commerce.count_calls("POST", "/reservations") == 1
    assert commerce.count_calls("POST", "/quotes") == 1
    assert recovered[0].step("calculate_shipping").attempt_count == 2

    order = await load(runtime, draft.id)
    assert order.financial_status == FinancialStatus.AUTHORIZED
    assert order.shipping_total == Decimal("10.00")


@pytest.mark.asyncio
async def test_confirm_is_not_applied_twice(runtime, make_order_request):
    # confirm_order の書き込みは commit 済みだが、成功の記録前に停止した
    draft, results = await start_interrupted(runtime, make_order_request(), completed=5)
    confirm = runtime.orchestrator.steps[-1]
    await runtime.saga_log.record_attempt(draft.id, confirm.name)
    await confirm.execute(draft, results)

    recovered = await recover_sagas(runtime)

    assert recovered[0].status == SagaStatus.COMPLETED
    async with runtime.session_factory() as session:
        entries = await queries.get_history(session, draft.id)
    assert len(entries) == 1
    order = await load(runtime, draft.id)
    assert order.financial_status == FinancialStatus.AUTHORIZED
    assert order.version == 1


@pytest.mark.asyncio
async def test_finishes_interrupted_compensation(runtime, commerce, make_order_request):
    draft, _ = await start_interrupted(runtime, make_order_request(), completed=3)
    await runtime.saga_log.mark_failed(draft.id, "calculate_tax", "TransientServiceError: tax: timeout")
    await runtime.saga_log.set_status(draft.id, SagaStatus.COMPENSATING, error="tax timeout")

    recovered = await recover_sagas(runtime)

    assert recovered[0].status == SagaStatus.FAILED
    assert len(commerce.released) == 1
    assert recovered[0].step("reserve_inventory").status == StepStatus.COMPENSATED
    assert recovered[0].step("calculate_tax").status == StepStatus.FAILED
    order = await load(runtime, draft.id)
    assert order.financial_status == FinancialStatus.VOIDED


@pytest.mark.asyncio
async def test_ambiguous_reservation_is_released_by_key(runtime, commerce, make_order_request):
    # 引き当ては処理されたが結果を記録する前に停止し、補償中に再起動した
    draft, _ = await start_interrupted(
        runtime, make_order_request(), completed=1, attempted="reserve_inventory"
    )
    await runtime.services.inventory.reserve(draft.line_items, f"{draft.id}:reserve_inventory")
    await runtime.saga_log.mark_failed(draft.id, "reserve_inventory", "cancelled")

    recovered = await recover_sagas(runtime)

    assert recovered[0].status == SagaStatus.FAILED
    assert commerce.count_calls("GET", "/reservations/by-key/") == 1
    assert commerce.released == list(commerce.reservations)


@pytest.mark.asyncio
async def test_finished_sagas_are_ignored(runtime, make_order_request):
    await commands.create_order(runtime, make_order_request())

    assert await recover_sagas(runtime) == []
