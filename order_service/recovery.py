"""
Order Service — Saga のクラッシュ復旧

起動時(と POST /sagas/recover)に、終端状態に達していない Saga を探して再開する。
SUCCEEDED のステップは保存済みの結果を使い、試行済みで結果不明のステップは
同じ冪等キーで再実行する。補償中だった Saga は補償を最後まで進める。
"""

import logging

from .errors import SagaFailureError
from .models import Order, SagaExecution
from .runtime import OrderRuntime

logger = logging.getLogger(__name__)


async def recover_sagas(rt: OrderRuntime) -> list[SagaExecution]:
    recovered: list[SagaExecution] = []
    for order_id in await rt.saga_log.list_unfinished():
        if rt.orchestrator.is_running(order_id):
            continue
        execution = await rt.saga_log.load(order_id)
        if execution is None or "order" not in execution.context:
            logger.error("Saga for order %s has no order context; skipping", order_id)
            continue

        order = Order.model_validate(execution.context["order"])
        try:
            recovered.append(await rt.orchestrator.resume(order))
        except SagaFailureError as e:
            # 補償は resume の中で完了している(失敗していれば CRITICAL ログ済み)
            logger.warning("Recovered saga for order %s ended in failure: %s", order_id, e)
            recovered.append(await rt.saga_log.load(order_id))

    if recovered:
        logger.info("Recovered %d unfinished saga(s)", len(recovered))
    return recovered
