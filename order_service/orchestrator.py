"""
Saga Orchestrator — 注文作成 Saga

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターがステップの列を順番に実行する。
  どこかのステップが失敗したら、それまでに成功したステップの
  補償トランザクション(Compensating Transaction)を逆順に実行して
  整合性を保つ。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  SagaExecution を作成 (全ステップ PENDING)                     │
  │  for step in steps:                                           │
  │     試行を記録 → execute (一時エラーは指数バックオフでリトライ)   │
  │     ├─ 成功 → SUCCEEDED + 結果ハンドルを保存                    │
  │     └─ 失敗 → FAILED → 成功済みステップを逆順に補償             │
  │                        (各ステップ COMPENSATED)                │
  │  全成功 → COMPLETED                                            │
  └──────────────────────────────────────────────────────────────┘

「失敗したら何をするか」は制御フローではなくデータ
(実行済みステップのリスト)で決まる。
"""

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from . import config
from .errors import ExternalServiceError, OrderServiceError, SagaCompensationFailure, SagaFailureError
from .events import SAGA_COMPENSATED, SAGA_COMPENSATION_FAILED, SAGA_COMPLETED, SagaFinished
from .models import Order, SagaExecution, SagaStatus, StepStatus
from .publisher import EventPublisher
from .saga_log import SagaExecutionLog

module_logger = logging.getLogger(__name__)

StepResults = dict[str, dict[str, Any]]
ExecuteAction = Callable[[Order, StepResults], Awaitable[dict[str, Any]]]
CompensateAction = Callable[[Order, StepResults], Awaitable[None]]


def default_idempotency_key(order: Order, step_name: str) -> str:
    return f"{order.id}:{step_name}"


@dataclass(frozen=True)
class SagaStep:
    """
    Saga の1ステップ。

    execute は同じ冪等キーで何度呼ばれても外部の副作用が1回になること。
    compensate は execute が完了していなくても安全に呼べること
    (成功を仮定せず、リモートの実際の状態を確認する)。
    """

    name: str
    execute: ExecuteAction
    compensate: CompensateAction | None = None
    idempotency_key: Callable[[Order], str] | None = None

    def key_for(self, order: Order) -> str:
        if self.idempotency_key is not None:
            return self.idempotency_key(order)
        return default_idempotency_key(order, self.name)


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, ExternalServiceError):
        return exc.transient
    return isinstance(exc, (asyncio.TimeoutError, TimeoutError))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 5.0
    timeout: float | None = 15.0
    is_transient: Callable[[BaseException], bool] = is_transient_error

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_attempts=config.SAGA_MAX_ATTEMPTS,
            base_delay=config.SAGA_BASE_DELAY_SECONDS,
            max_delay=config.SAGA_MAX_DELAY_SECONDS,
            timeout=config.SAGA_STEP_TIMEOUT_SECONDS,
        )


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def _reason_code(exc: BaseException) -> str:
    if isinstance(exc, OrderServiceError):
        return exc.reason_code
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "SERVICE_TIMEOUT"
    return "STEP_FAILED"


class SagaOrchestrator:
    """固定のステップ列を逐次実行し、失敗時に補償するオーケストレーター"""

    def __init__(
        self,
        steps: list[SagaStep],
        log: SagaExecutionLog,
        publisher: EventPublisher,
        retry: RetryPolicy | None = None,
        saga_type: str = "order_creation",
        on_compensation_failure: Callable[[Order], Awaitable[None]] | None = None,
        logger: logging.Logger | None = None,
    ):
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate saga step names: {names}")
        self.steps = steps
        self.log = log
        self.publisher = publisher
        self.retry = retry or RetryPolicy()
        self.saga_type = saga_type
        self.on_compensation_failure = on_compensation_failure
        self.logger = logger or module_logger
        # 注文ごとの書き込みロック(SagaExecution の単一ライター)
        self._locks = weakref.WeakValueDictionary()

    def lock_for(self, order_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    def is_running(self, order_id: UUID) -> bool:
        lock = self._locks.get(order_id)
        return lock is not None and lock.locked()

    # ── エントリーポイント ───────────────────────

    async def execute(self, order: Order, context: dict[str, Any] | None = None) -> SagaExecution:
        """
        Saga を新規に実行する。

        成功すれば COMPLETED の SagaExecution を返す。失敗時は補償を終えてから
        SagaFailureError (補償も失敗した場合は SagaCompensationFailure) を送出する。
        """
        lock = self.lock_for(order.id)
        async with lock:
            execution = await self.log.start(
                order.id,
                self.saga_type,
                [(step.name, step.key_for(order)) for step in self.steps],
                context or {},
            )
            self.logger.info("Saga %s started for order %s", self.saga_type, order.id)
            return await self._drive(order, execution)

    async def resume(self, order: Order) -> SagaExecution:
        """
        中断された Saga を再開する(クラッシュ復旧)。

        SUCCEEDED のステップは再実行せず、保存済みの結果を使う。
        補償中だった Saga は補償を最後まで進める。
        """
        lock = self.lock_for(order.id)
        async with lock:
            execution = await self.log.load(order.id)
            if execution is None:
                raise ValueError(f"No saga execution for order {order.id}")
            if execution.status.is_terminal:
                return execution
            self.logger.warning(
                "Resuming saga %s for order %s from status %s",
                self.saga_type,
                order.id,
                execution.status.value,
            )
            return await self._drive(order, execution)

    # ── 実行本体 ─────────────────────────────────

    async def _drive(self, order: Order, execution: SagaExecution) -> SagaExecution:
        results: StepResults = {
            record.step_name: record.result or {}
            for record in execution.steps
            if record.status == StepStatus.SUCCEEDED
        }

        failed_record = next(
            (r for r in execution.steps if r.status == StepStatus.FAILED), None
        )
        if execution.status == SagaStatus.COMPENSATING or failed_record is not None:
            # 補償の途中で止まっていた。失敗ステップの結果は不明なので補償対象に含める。
            failed_step = failed_record.step_name if failed_record else None
            error = execution.error or (failed_record.last_error if failed_record else None)
            failures = await self._compensate(order, failed_step, error, results, ambiguous=True)
            self._raise_failure(order, failed_step, "SAGA_FAILED", error, failures)

        for step in self.steps:
            if execution.step(step.name).status == StepStatus.SUCCEEDED:
                continue
            try:
                result = await self._call(order, step.name, lambda s=step: s.execute(order, results), record=True)
            except asyncio.CancelledError:
                # 実行途中でキャンセルされた: リモートの副作用が残っている可能性がある
                self.logger.error("Saga for order %s cancelled during step %s", order.id, step.name)
                await self.log.mark_failed(order.id, step.name, "cancelled")
                await self._compensate(order, step.name, "cancelled", results, ambiguous=True)
                raise
            except Exception as exc:
                error = _describe(exc)
                self.logger.error(
                    "Saga step %s failed for order %s: %s", step.name, order.id, error
                )
                await self.log.mark_failed(order.id, step.name, error)
                failures = await self._compensate(
                    order, step.name, error, results, ambiguous=self.retry.is_transient(exc)
                )
                self._raise_failure(order, step.name, _reason_code(exc), error, failures, cause=exc)

            results[step.name] = result
            await self.log.mark_succeeded(order.id, step.name, result)
            self.logger.info("Saga step %s succeeded for order %s", step.name, order.id)

        await self.log.set_status(order.id, SagaStatus.COMPLETED)
        await self._publish(order, SAGA_COMPLETED, SagaStatus.COMPLETED)
        self.logger.info("Saga %s completed for order %s", self.saga_type, order.id)
        return await self.log.load(order.id)

    async def _call(
        self,
        order: Order,
        step_name: str,
        action: Callable[[], Awaitable[Any]],
        record: bool,
    ) -> Any:
        """タイムアウト付きで呼び出し、一時エラーは指数バックオフでリトライする。"""
        attempt = 0
        while True:
            attempt += 1
            if record:
                await self.log.record_attempt(order.id, step_name)
            try:
                if self.retry.timeout:
                    return await asyncio.wait_for(action(), timeout=self.retry.timeout)
                return await action()
            except Exception as exc:
                if attempt >= self.retry.max_attempts or not self.retry.is_transient(exc):
                    raise
                delay = self.retry.delay_for(attempt)
                self.logger.warning(
                    "Step %s attempt %d/%d failed for order %s: %s; retrying in %.2fs",
                    step_name,
                    attempt,
                    self.retry.max_attempts,
                    order.id,
                    _describe(exc),
                    delay,
                )
                await asyncio.sleep(delay)

    async def _compensate(
        self,
        order: Order,
        failed_step: str | None,
        error: str | None,
        results: StepResults,
        ambiguous: bool,
    ) -> dict[str, str]:
        """
        成功済みステップを逆順に補償する。補償に失敗したステップ名 → エラーを返す。

        ambiguous=True のとき(タイムアウト・キャンセル)は、失敗したステップ自身の
        副作用が残っている可能性があるので、そのステップも最初に補償する。
        失敗したステップのステータスは FAILED のまま。
        """
        await self.log.set_status(order.id, SagaStatus.COMPENSATING, error=error)
        execution = await self.log.load(order.id)

        names = [step.name for step in self.steps]
        boundary = names.index(failed_step) if failed_step in names else len(names)
        targets = [
            step
            for step in reversed(self.steps[:boundary])
            if execution.step(step.name).status == StepStatus.SUCCEEDED
        ]
        if ambiguous and failed_step in names:
            targets.insert(0, self.steps[boundary])

        failures: dict[str, str] = {}
        for step in targets:
            if step.compensate is not None:
                self.logger.info("Compensating step %s for order %s", step.name, order.id)
                try:
                    await self._call(
                        order,
                        step.name,
                        lambda s=step: s.compensate(order, results),
                        record=False,
                    )
                except Exception as exc:
                    failures[step.name] = _describe(exc)
                    self.logger.critical(
                        "SagaCompensationFailure: step %s for order %s could not be compensated: %s",
                        step.name,
                        order.id,
                        _describe(exc),
                    )
                    await self.log.mark_failed(
                        order.id, step.name, f"compensation failed: {_describe(exc)}"
                    )
                    continue
            if step.name != failed_step:
                await self.log.mark_compensated(order.id, step.name)

        if failures:
            await self.log.set_status(
                order.id,
                SagaStatus.COMPENSATION_FAILED,
                error="; ".join(f"{name}: {err}" for name, err in failures.items()),
            )
            if self.on_compensation_failure is not None:
                await self.on_compensation_failure(order)
            await self._publish(
                order, SAGA_COMPENSATION_FAILED, SagaStatus.COMPENSATION_FAILED, failed_step, error
            )
        else:
            await self.log.set_status(order.id, SagaStatus.FAILED)
            await self._publish(order, SAGA_COMPENSATED, SagaStatus.FAILED, failed_step, error)
        return failures

    def _raise_failure(
        self,
        order: Order,
        failed_step: str | None,
        reason_code: str,
        error: str | None,
        failures: dict[str, str],
        cause: BaseException | None = None,
    ) -> None:
        if failures:
            raise SagaCompensationFailure(order.id, failed_step or "unknown", failures) from cause
        raise SagaFailureError(
            order.id, failed_step or "unknown", reason_code, error or "saga failed"
        ) from cause

    async def _publish(
        self,
        order: Order,
        event_type: str,
        status: SagaStatus,
        failed_step: str | None = None,
        error: str | None = None,
    ) -> None:
        await self.publisher.publish(
            event_type,
            SagaFinished(
                order_id=order.id,
                saga_type=self.saga_type,
                status=status.value,
                failed_step=failed_step,
                error=error,
                timestamp=datetime.now(timezone.utc),
            ),
        )
