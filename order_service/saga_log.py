"""
Order Service — Saga 実行ログ (Saga Execution Log)

Saga の各ステップの試行回数・状態・結果を永続化する。
書き込みはすべて先行書き込み(write-ahead)で、1回ごとに commit する:

    record_attempt()  → execute 呼び出し前 (attempt_count + 1)
    mark_succeeded()  → execute 成功後 (結果ハンドルも保存)
    mark_failed()     → リトライを使い切った / 恒久エラー
    mark_compensated()→ 補償完了

プロセス再起動時、各ステップは次のように分類できる:
    PENDING かつ attempt_count = 0  → 確実に未実行
    SUCCEEDED                       → 確実に成功 (結果を再利用)
    PENDING かつ attempt_count > 0  → 不明 (同じ冪等キーで再実行して確認)
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from .models import SagaExecution, SagaStatus, SagaStepRecord, StepStatus


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SagaExecutionLog:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def start(
        self,
        order_id: UUID,
        saga_type: str,
        steps: list[tuple[str, str]],
        context: dict[str, Any],
    ) -> SagaExecution:
        """全ステップを PENDING で登録する。steps は (ステップ名, 冪等キー) のリスト。"""
        now = _now()
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO saga_executions
                        (order_id, saga_type, status, context, created_at, updated_at)
                    VALUES
                        (:order_id, :saga_type, :status, :context, :now, :now)
                """),
                {
                    "order_id": str(order_id),
                    "saga_type": saga_type,
                    "status": SagaStatus.RUNNING.value,
                    "context": json.dumps(context, default=str),
                    "now": now,
                },
            )
            for position, (name, key) in enumerate(steps):
                await session.execute(
                    text("""
                        INSERT INTO saga_steps
                            (order_id, step_name, position, status, attempt_count,
                             idempotency_key, updated_at)
                        VALUES
                            (:order_id, :step_name, :position, :status, 0, :key, :now)
                    """),
                    {
                        "order_id": str(order_id),
                        "step_name": name,
                        "position": position,
                        "status": StepStatus.PENDING.value,
                        "key": key,
                        "now": now,
                    },
                )
            await session.commit()
        return await self.load(order_id)

    async def record_attempt(self, order_id: UUID, step_name: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    UPDATE saga_steps
                    SET attempt_count = attempt_count + 1, updated_at = :now
                    WHERE order_id = :order_id AND step_name = :step_name
                """),
                {"order_id": str(order_id), "step_name": step_name, "now": _now()},
            )
            await session.commit()

    async def mark_succeeded(
        self, order_id: UUID, step_name: str, result: dict[str, Any]
    ) -> None:
        await self._set_step(
            order_id,
            step_name,
            StepStatus.SUCCEEDED,
            result=json.dumps(result, default=str),
            last_error=None,
        )

    async def mark_failed(self, order_id: UUID, step_name: str, error: str) -> None:
        await self._set_step(order_id, step_name, StepStatus.FAILED, last_error=error)

    async def mark_compensated(self, order_id: UUID, step_name: str) -> None:
        await self._set_step(order_id, step_name, StepStatus.COMPENSATED)

    async def set_status(
        self,
        order_id: UUID,
        status: SagaStatus,
        error: str | None = None,
    ) -> None:
        now = _now()
        params = {
            "order_id": str(order_id),
            "status": status.value,
            "now": now,
            "completed_at": now if status.is_terminal else None,
        }
        error_clause = ""
        if error is not None:
            error_clause = ", error = :error"
            params["error"] = error
        async with self.session_factory() as session:
            await session.execute(
                text(f"""
                    UPDATE saga_executions
                    SET status = :status,
                        updated_at = :now,
                        completed_at = :completed_at{error_clause}
                    WHERE order_id = :order_id
                """),
                params,
            )
            await session.commit()

    async def load(self, order_id: UUID) -> SagaExecution | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM saga_executions WHERE order_id = :order_id"),
                {"order_id": str(order_id)},
            )
            row = result.fetchone()
            if not row:
                return None
            steps = await session.execute(
                text("""
                    SELECT * FROM saga_steps
                    WHERE order_id = :order_id
                    ORDER BY position ASC
                """),
                {"order_id": str(order_id)},
            )
            return SagaExecution(
                order_id=UUID(str(row.order_id)),
                saga_type=row.saga_type,
                status=SagaStatus(row.status),
                context=json.loads(row.context) if isinstance(row.context, str) else row.context,
                error=row.error,
                created_at=datetime.fromisoformat(row.created_at),
                updated_at=datetime.fromisoformat(row.updated_at),
                completed_at=datetime.fromisoformat(row.completed_at) if row.completed_at else None,
                steps=[
                    SagaStepRecord(
                        step_name=s.step_name,
                        position=s.position,
                        status=StepStatus(s.status),
                        attempt_count=s.attempt_count,
                        idempotency_key=s.idempotency_key,
                        result=json.loads(s.result) if s.result else None,
                        last_error=s.last_error,
                        updated_at=datetime.fromisoformat(s.updated_at),
                    )
                    for s in steps.fetchall()
                ],
            )

    async def list_unfinished(self) -> list[UUID]:
        """終端状態に達していない Saga の注文 ID を古い順に返す。"""
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT order_id FROM saga_executions
                    WHERE status IN (:running, :compensating)
                    ORDER BY created_at ASC
                """),
                {
                    "running": SagaStatus.RUNNING.value,
                    "compensating": SagaStatus.COMPENSATING.value,
                },
            )
            return [UUID(str(row.order_id)) for row in result.fetchall()]

    async def _set_step(
        self,
        order_id: UUID,
        step_name: str,
        status: StepStatus,
        **fields: Any,
    ) -> None:
        assignments = ", ".join(f"{column} = :{column}" for column in fields)
        if assignments:
            assignments = ", " + assignments
        async with self.session_factory() as session:
            await session.execute(
                text(f"""
                    UPDATE saga_steps
                    SET status = :status, updated_at = :now{assignments}
                    WHERE order_id = :order_id AND step_name = :step_name
                """),
                {
                    "order_id": str(order_id),
                    "step_name": step_name,
                    "status": status.value,
                    "now": _now(),
                    **fields,
                },
            )
            await session.commit()
