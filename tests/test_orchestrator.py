"""
Saga オーケストレーターのテスト(汎用ステップ)

実行順・逆順の補償・リトライ・恒久エラー・補償失敗・再開を検証する。
"""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from order_service.errors import (
    PermanentServiceError,
    SagaCompensationFailure,
    SagaFailureError,
    TransientServiceError,
)
from order_service.models import Address, Order, SagaStatus, StepStatus
from order_service.orchestrator import RetryPolicy, SagaOrchestrator, SagaStep
from order_service.saga_log import SagaExecutionLog

from .fakes import FAST_RETRY, RecordingPublisher


def make_order() -> Order:
    now = datetime.now(timezone.utc)
    return Order(
        id=uuid4(),
        order_number="ORD-20240101-SAGA01",
        store_id="store-1",
        shipping_address=Address(address1="1 Main St", city="Springfield", country="US", zip="62701"),
        created_at=now,
        updated_at=now,
    )


def make_step(name, calls, failures=(), compensation_error=None, with_compensation=True, delay=0):
    remaining = list(failures)

    async def execute(order, results):
        calls.append(("execute", name))
        if delay:
            await asyncio.sleep(delay)
        if remaining:
            raise remaining.pop(0)
        return {"step": name, "seen": sorted(results)}

    async def compensate(order, results):
        calls.append(("compensate", name))
        if compensation_error is not None:
            raise compensation_error

    return SagaStep(name, execute, compensate if with_compensation else None)


@pytest.fixture
def log(session_factory):
    return SagaExecutionLog(session_factory)


def build(steps, log, retry=FAST_RETRY, **kwargs):
    publisher = RecordingPublisher()
    return SagaOrchestrator(steps, log, publisher, retry=retry, **kwargs), publisher


def statuses(execution):
    return {record.step_name: record.status for record in execution.steps}


@pytest.mark.asyncio
async def test_all_steps_succeed(log):
    calls = []
    steps = [make_step(name, calls) for name in ("a", "b", "c")]
    orchestrator, publisher = build(steps, log)
    order = make_order()

    execution = await orchestrator.execute(order)

    assert execution.status == SagaStatus.COMPLETED
    assert execution.completed_at is not None
    assert calls == [("execute", "a"), ("execute", "b"), ("execute", "c")]
    assert set(statuses(execution).values()) == {StepStatus.SUCCEEDED}
    assert [r.attempt_count for r in execution.steps] == [1, 1, 1]
    # 後のステップは前のステップの結果を受け取る
    assert execution.step("c").result == {"step": "c", "seen": ["a", "b"]}
    assert execution.step("b").idempotency_key == f"{order.id}:b"
    assert publisher.types == ["saga.completed"]


@pytest.mark.asyncio
async def test_permanent_failure_compensates_in_reverse_order(log):
    calls = []
    steps = [
        make_step("a", calls),
        make_step("b", calls),
        make_step("c", calls, failures=[PermanentServiceError("shipping", "rejected", 422)]),
        make_step("d", calls),
    ]
    orchestrator, publisher = build(steps, log)
    order = make_order()

    with pytest.raises(SagaFailureError) as exc_info:
        await orchestrator.execute(order)

    assert exc_info.value.failed_step == "c"
    assert exc_info.value.reason_code == "SERVICE_REJECTED"
    assert calls == [
        ("execute", "a"),
        ("execute", "b"),
        ("execute", "c"),
        ("compensate", "b"),
        ("compensate", "a"),
    ]
    execution = await log.load(order.id)
    assert execution.status == SagaStatus.FAILED
    assert statuses(execution) == {
        "a": StepStatus.COMPENSATED,
        "b": StepStatus.COMPENSATED,
        "c": StepStatus.FAILED,
        "d": StepStatus.PENDING,
    }
    assert execution.step("c").attempt_count == 1
    assert publisher.types == ["saga.compensated"]


@pytest.mark.asyncio
async def test_transient_failure_is_retried(log):
    calls = []
    flaky = [TransientServiceError("tax", "503", 503), TransientServiceError("tax", "503", 503)]
    steps = [make_step("a", calls), make_step("b", calls, failures=flaky)]
    orchestrator, _ = build(steps, log)

    execution = await orchestrator.execute(make_order())

    assert execution.status == SagaStatus.COMPLETED
    assert execution.step("b").attempt_count == 3
    assert calls.count(("execute", "b")) == 3
    assert ("compensate", "a") not in calls


@pytest.mark.asyncio
async def test_exhausted_retries_also_compensate_the_failed_step(log):
    calls = []
    always_down = [TransientServiceError("tax", "503", 503)] * 5
    steps = [
        make_step("a", calls),
        make_step("b", calls, with_compensation=False),
        make_step("c", calls, failures=always_down),
    ]
    orchestrator, _ = build(steps, log)
    order = make_order()

    with pytest.raises(SagaFailureError) as exc_info:
        await orchestrator.execute(order)

    assert exc_info.value.reason_code == "SERVICE_UNAVAILABLE"
    assert calls.count(("execute", "c")) == FAST_RETRY.max_attempts
    # 結果不明のステップ自身を先に補償し、その後逆順
    compensations = [name for kind, name in calls if kind == "compensate"]
    assert compensations == ["c", "a"]
    execution = await log.load(order.id)
    assert statuses(execution) == {
        "a": StepStatus.COMPENSATED,
        "b": StepStatus.COMPENSATED,
        "c": StepStatus.FAILED,
    }


@pytest.mark.asyncio
async def test_step_timeout_counts_as_transient(log):
    calls = []
    steps = [make_step("a", calls), make_step("slow", calls, delay=1)]
    retry = RetryPolicy(max_attempts=2, base_delay=0, max_delay=0, timeout=0.05)
    orchestrator, _ = build(steps, log, retry=retry)

    with pytest.raises(SagaFailureError) as exc_info:
        await orchestrator.execute(make_order())

    assert exc_info.value.reason_code == "SERVICE_TIMEOUT"
    assert calls.count(("execute", "slow")) == 2


@pytest.mark.asyncio
async def test_compensation_failure_is_critical_and_flags_order(log, caplog):
    calls = []
    flagged = []

    async def flag(order):
        flagged.append(order.id)

    steps = [
        make_step("a", calls),
        make_step("b", calls, compensation_error=RuntimeError("release failed")),
        make_step("c", calls, failures=[PermanentServiceError("payment", "declined", 402)]),
    ]
    orchestrator, publisher = build(steps, log, on_compensation_failure=flag)
    order = make_order()

    with caplog.at_level(logging.CRITICAL, logger="order_service.orchestrator"):
        with pytest.raises(SagaCompensationFailure) as exc_info:
            await orchestrator.execute(order)

    assert exc_info.value.reason_code == "COMPENSATION_FAILED"
    assert "b" in exc_info.value.compensation_errors
    # 1つの補償が失敗しても残りの補償は続ける
    assert ("compensate", "a") in calls
    assert flagged == [order.id]
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    execution = await log.load(order.id)
    assert execution.status == SagaStatus.COMPENSATION_FAILED
    assert statuses(execution)["b"] == StepStatus.FAILED
    assert statuses(execution)["a"] == StepStatus.COMPENSATED
    assert publisher.types == ["saga.compensation_failed"]


@pytest.mark.asyncio
async def test_resume_reuses_succeeded_results(log):
    calls = []
    steps = [make_step(name, calls) for name in ("a", "b", "c")]
    orchestrator, _ = build(steps, log)
    order = make_order()

    # a は成功、b は試行したが結果不明のままプロセスが停止した
    await log.start(order.id, "order_creation", [(s.name, s.key_for(order)) for s in steps], {})
    await log.record_attempt(order.id, "a")
    await log.mark_succeeded(order.id, "a", {"step": "a", "seen": []})
    await log.record_attempt(order.id, "b")

    execution = await orchestrator.resume(order)

    assert execution.status == SagaStatus.COMPLETED
    assert ("execute", "a") not in calls
    assert calls == [("execute", "b"), ("execute", "c")]
    assert execution.step("b").attempt_count == 2
    assert execution.step("b").result == {"step": "b", "seen": ["a"]}


@pytest.mark.asyncio
async def test_resume_finishes_interrupted_compensation(log):
    calls = []
    steps = [make_step(name, calls) for name in ("a", "b", "c")]
    orchestrator, _ = build(steps, log)
    order = make_order()

    await log.start(order.id, "order_creation", [(s.name, s.key_for(order)) for s in steps], {})
    await log.mark_succeeded(order.id, "a", {"step": "a"})
    await log.mark_failed(order.id, "b", "TransientServiceError: tax: timeout")
    await log.set_status(order.id, SagaStatus.COMPENSATING, error="tax timeout")

    with pytest.raises(SagaFailureError) as exc_info:
        await orchestrator.resume(order)

    assert exc_info.value.failed_step == "b"
    assert calls == [("compensate", "b"), ("compensate", "a")]
    execution = await log.load(order.id)
    assert execution.status == SagaStatus.FAILED
    assert statuses(execution)["c"] == StepStatus.PENDING


@pytest.mark.asyncio
async def test_resume_of_finished_saga_is_a_no_op(log):
    calls = []
    steps = [make_step("a", calls)]
    orchestrator, _ = build(steps, log)
    order = make_order()
    await orchestrator.execute(order)
    calls.clear()

    execution = await orchestrator.resume(order)

    assert execution.status == SagaStatus.COMPLETED
    assert calls == []


def test_duplicate_step_names_are_rejected(log):
    calls = []
    with pytest.raises(ValueError):
        build([make_step("a", calls), make_step("a", calls)], log)


def test_backoff_grows_and_is_capped():
    policy = RetryPolicy(base_delay=0.5, multiplier=2.0, max_delay=1.5)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 1.5, 1.5]
