"""
Order Service — クエリハンドラ (Read 側)

状態を変更しない読み取り操作。
作成 Saga の途中(saga_pending)の注文は存在しないものとして扱う。
"""

from uuid import UUID

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from . import order_store
from .models import Fulfillment, Order, Refund, StatusHistoryEntry, TransitionSet
from .state_machine import OrderStateMachine
from .statuses import FinancialStatus, FulfillmentStatus

MAX_PAGE_SIZE = 100


def _visible(order: Order | None) -> Order | None:
    if order is None or order.saga_pending:
        return None
    return order


async def get_order(session: AsyncSession, order_id: UUID) -> Order | None:
    return _visible(await order_store.load_order(session, order_id))


async def get_order_by_number(session: AsyncSession, order_number: str) -> Order | None:
    return _visible(await order_store.load_order_by_number(session, order_number))


async def get_valid_transitions(
    session: AsyncSession,
    state_machine: OrderStateMachine,
    order_id: UUID,
) -> TransitionSet | None:
    """現在の状態から各軸で遷移できるステータス。終端状態なら空リスト。"""
    order = await get_order(session, order_id)
    if order is None:
        return None
    return state_machine.get_valid_transitions(order)


async def get_history(session: AsyncSession, order_id: UUID) -> list[StatusHistoryEntry]:
    return await order_store.load_history(session, order_id)


async def get_refunds(session: AsyncSession, order_id: UUID) -> list[Refund]:
    return await order_store.load_refunds(session, order_id)


async def get_fulfillments(session: AsyncSession, order_id: UUID) -> list[Fulfillment]:
    return await order_store.load_fulfillments(session, order_id)


async def list_orders(
    session: AsyncSession,
    store_id: str | None = None,
    customer_id: str | None = None,
    financial_status: list[FinancialStatus] | None = None,
    fulfillment_status: list[FulfillmentStatus] | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """
    注文一覧(新しい順)。ステータスは複数指定でき、いずれかに一致すれば返す。
    """
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)

    conditions = ["saga_pending = :saga_pending"]
    params: dict = {"saga_pending": False}
    binds = []
    if store_id is not None:
        conditions.append("store_id = :store_id")
        params["store_id"] = store_id
    if customer_id is not None:
        conditions.append("customer_id = :customer_id")
        params["customer_id"] = customer_id
    if financial_status:
        conditions.append("financial_status IN :financial_status")
        params["financial_status"] = [s.value for s in financial_status]
        binds.append(bindparam("financial_status", expanding=True))
    if fulfillment_status:
        conditions.append("fulfillment_status IN :fulfillment_status")
        params["fulfillment_status"] = [s.value for s in fulfillment_status]
        binds.append(bindparam("fulfillment_status", expanding=True))
    where = f"WHERE {' AND '.join(conditions)}"

    count = await session.execute(
        text(f"SELECT COUNT(*) FROM orders {where}").bindparams(*binds),
        params,
    )
    total = count.scalar_one()

    result = await session.execute(
        text(f"""
            SELECT * FROM orders {where}
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
        """).bindparams(*binds),
        {**params, "limit": limit, "offset": (page - 1) * limit},
    )
    orders = [await order_store.hydrate_order(session, row) for row in result.fetchall()]
    return {
        "orders": orders,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }
