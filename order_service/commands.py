"""
Order Service — コマンドハンドラ (Write 側)

状態を変更する操作。どのコマンドも同じ手順を踏む:

    1. 注文を読み込む
    2. 状態機械で遷移を検証する
    3. 楽観ロック(version)付きで注文を更新し、履歴を同じトランザクションで追記
    4. commit 後に Redis Pub/Sub でイベントを発行(他サービスへ通知)

注文作成だけは Saga(saga_steps.py)を通して行う。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from . import order_store
from .errors import (
    CancellationNotAllowedError,
    FulfillmentNotAllowedError,
    InvalidFulfillmentItemsError,
    OrderCreationPendingError,
    OrderNotFoundError,
    RefundAmountExceededError,
    RefundNotAllowedError,
)
from .events import (
    ORDER_CANCELLED,
    ORDER_CREATED,
    ORDER_FULFILLED,
    ORDER_REFUNDED,
    ORDER_STATUS_CHANGED,
    OrderCancelled,
    OrderCreated,
    OrderFulfilled,
    OrderRefunded,
    OrderStatusChanged,
)
from .models import (
    CreateOrderRequest,
    Fulfillment,
    FulfillmentLineItem,
    Order,
    Refund,
    StatusHistoryEntry,
    money,
)
from .order_number import generate_order_number
from .state_machine import OrderStateMachine
from .statuses import FinancialStatus, FulfillmentStatus

if TYPE_CHECKING:
    from .runtime import OrderRuntime

logger = logging.getLogger(__name__)


def compute_total(
    subtotal: Decimal, shipping: Decimal, tax: Decimal, discount: Decimal
) -> Decimal:
    return max(money(subtotal + shipping + tax - discount), Decimal("0.00"))


async def apply_transition(
    session: AsyncSession,
    state_machine: OrderStateMachine,
    order: Order,
    next_financial: FinancialStatus | None = None,
    next_fulfillment: FulfillmentStatus | None = None,
    actor: str = "system",
    comment: str | None = None,
    changes: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> tuple[Order, StatusHistoryEntry | None]:
    """
    同じトランザクションで読み込んだ order に遷移を適用して書き込む。commit はしない。

    どちらの軸も指定しない場合は履歴を書かず、changes と version だけを更新する。
    """
    now = now or datetime.now(timezone.utc)
    if next_financial is None and next_fulfillment is None:
        updated = order.model_copy(update={"version": order.version + 1, "updated_at": now})
        entry = None
    else:
        updated, entry = state_machine.apply(
            order, next_financial, next_fulfillment, actor=actor, comment=comment, now=now
        )
    if changes:
        updated = updated.model_copy(update=changes)
    await order_store.save_transition(session, updated, entry, order.version)
    return updated, entry


async def _load(session: AsyncSession, order_id: UUID) -> Order:
    order = await order_store.load_order(session, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    if order.saga_pending:
        # 作成 Saga の途中。Saga 以外からの書き込みは受け付けない
        raise OrderCreationPendingError(order_id)
    return order


def _status_changed(order: Order, entry: StatusHistoryEntry) -> OrderStatusChanged:
    return OrderStatusChanged(
        order_id=order.id,
        order_number=order.order_number,
        previous_financial_status=entry.previous_financial_status,
        new_financial_status=entry.new_financial_status,
        previous_fulfillment_status=entry.previous_fulfillment_status,
        new_fulfillment_status=entry.new_fulfillment_status,
        actor=entry.actor,
        timestamp=entry.created_at,
    )


# ── 注文作成 ─────────────────────────────────────


def build_draft_order(request: CreateOrderRequest, now: datetime | None = None) -> Order:
    """リクエストから Saga に渡す初期状態の注文を組み立てる(未保存)。"""
    now = now or datetime.now(timezone.utc)
    subtotal = money(sum((item.line_total for item in request.line_items), Decimal("0")))
    discount = money(request.discount_amount)
    return Order(
        id=uuid4(),
        order_number=generate_order_number(now),
        store_id=request.store_id,
        customer_id=request.customer_id,
        email=request.email,
        currency=request.currency,
        financial_status=FinancialStatus.PENDING,
        fulfillment_status=FulfillmentStatus.UNFULFILLED,
        line_items=[item.model_copy(update={"id": uuid4()}) for item in request.line_items],
        shipping_address=request.shipping_address,
        subtotal=subtotal,
        discount_total=discount,
        total_price=compute_total(subtotal, Decimal("0"), Decimal("0"), discount),
        note=request.note,
        saga_pending=True,
        version=0,
        created_at=now,
        updated_at=now,
    )


async def create_order(rt: "OrderRuntime", request: CreateOrderRequest) -> Order:
    """
    注文作成コマンド

    1. 初期状態(PENDING / UNFULFILLED)の注文を組み立てる
    2. 注文作成 Saga を実行(失敗時は補償済みの SagaFailureError が送出される)
    3. 確定した注文を読み直して order.created を発行
    """
    draft = build_draft_order(request)
    rt.state_machine.validate_new_order(draft)

    # 復旧時に注文を組み立て直せるよう、下書きを Saga のコンテキストに残す
    await rt.orchestrator.execute(draft, context={"order": draft.model_dump(mode="json")})

    async with rt.session_factory() as session:
        order = await _load(session, draft.id)

    await rt.publisher.publish(
        ORDER_CREATED,
        OrderCreated(
            order_id=order.id,
            order_number=order.order_number,
            store_id=order.store_id,
            customer_id=order.customer_id,
            total_price=order.total_price,
            currency=order.currency,
            financial_status=order.financial_status,
            timestamp=order.updated_at,
        ),
    )
    logger.info("Order %s (%s) created", order.order_number, order.id)
    return order


# ── ステータス更新 ───────────────────────────────


async def update_order_status(
    rt: "OrderRuntime",
    order_id: UUID,
    financial_status: FinancialStatus | None = None,
    fulfillment_status: FulfillmentStatus | None = None,
    actor: str = "system",
    comment: str | None = None,
) -> Order:
    """
    ステータス更新コマンド

    片方・両方・どちらも指定しない、のいずれも可。どちらか一方でも不正なら
    何も書き込まずに InvalidTransitionError を送出する。
    """
    async with rt.session_factory() as session:
        order = await _load(session, order_id)
        if financial_status is None and fulfillment_status is None:
            return order
        updated, entry = await apply_transition(
            session,
            rt.state_machine,
            order,
            next_financial=financial_status,
            next_fulfillment=fulfillment_status,
            actor=actor,
            comment=comment,
        )
        await session.commit()

    await rt.publisher.publish(ORDER_STATUS_CHANGED, _status_changed(updated, entry))
    return updated


# ── キャンセル ───────────────────────────────────


async def cancel_order(
    rt: "OrderRuntime",
    order_id: UUID,
    reason: str | None = None,
    actor: str = "system",
) -> Order:
    """
    注文キャンセルコマンド

        PENDING / AUTHORIZED          → VOIDED   (決済インテントを取消)
        PAID / PARTIALLY_REFUNDED     → REFUNDED (残額の返金を記録)

    未出荷なら在庫の引き当ても解放する。外部サービスの取消は
    ステータスを書き込む前に行い、失敗したら注文は変更しない。
    """
    async with rt.session_factory() as session:
        order = await _load(session, order_id)
        if not rt.state_machine.can_cancel_order(order):
            raise CancellationNotAllowedError(order.id, order.financial_status.value)

        paid = order.financial_status in (
            FinancialStatus.PAID,
            FinancialStatus.PARTIALLY_REFUNDED,
        )
        target = FinancialStatus.REFUNDED if paid else FinancialStatus.VOIDED
        # 外部呼び出しの前に遷移を検証しておく
        rt.state_machine.validate_transition(order, next_financial=target)

        await _release_external(rt, order, cancel_payment=not paid)

        now = datetime.now(timezone.utc)
        refund = None
        if paid:
            balance = order.total_price - await order_store.refunded_total(session, order.id)
            if balance > 0:
                refund = Refund(
                    id=uuid4(),
                    order_id=order.id,
                    amount=money(balance),
                    reason=reason or "order cancelled",
                    restock_items=False,
                    created_at=now,
                )
                await order_store.insert_refund(session, refund)

        updated, entry = await apply_transition(
            session,
            rt.state_machine,
            order,
            next_financial=target,
            actor=actor,
            comment=reason or "order cancelled",
            changes={"cancelled_at": now, "cancel_reason": reason},
            now=now,
        )
        await session.commit()

    await rt.publisher.publish(ORDER_STATUS_CHANGED, _status_changed(updated, entry))
    await rt.publisher.publish(
        ORDER_CANCELLED,
        OrderCancelled(
            order_id=updated.id,
            order_number=updated.order_number,
            reason=reason,
            financial_status=updated.financial_status,
            timestamp=now,
        ),
    )
    if refund is not None:
        await rt.publisher.publish(ORDER_REFUNDED, _refunded(refund))
    logger.info("Order %s cancelled (%s)", updated.id, updated.financial_status.value)
    return updated


async def _release_external(rt: "OrderRuntime", order: Order, cancel_payment: bool) -> None:
    if order.fulfillment_status == FulfillmentStatus.UNFULFILLED:
        execution = await rt.saga_log.load(order.id)
        if execution is not None:
            reservation = execution.step("reserve_inventory").result or {}
            if reservation.get("reservation_id"):
                await rt.services.inventory.release(reservation["reservation_id"])
    if cancel_payment and order.payment_intent_id:
        await rt.services.payment.cancel_intent(order.payment_intent_id)


# ── 返金 ────────────────────────────────────────


def _refunded(refund: Refund) -> OrderRefunded:
    return OrderRefunded(
        order_id=refund.order_id,
        refund_id=refund.id,
        amount=refund.amount,
        restock_items=refund.restock_items,
        timestamp=refund.created_at,
    )


async def create_refund(
    rt: "OrderRuntime",
    order_id: UUID,
    amount: Decimal,
    reason: str | None = None,
    restock_items: bool = False,
    actor: str = "system",
) -> Refund:
    """
    返金コマンド

    返金額は残額(合計 − 返金済み)を超えられない。
    残額ちょうどなら REFUNDED、それ未満なら PARTIALLY_REFUNDED へ遷移する。
    restock_items が指定されたらフルフィルメントを RESTOCKED にする。
    """
    amount = money(amount)
    async with rt.session_factory() as session:
        order = await _load(session, order_id)
        partially_refunded = order.financial_status == FinancialStatus.PARTIALLY_REFUNDED
        if not (rt.state_machine.can_refund_order(order) or partially_refunded):
            raise RefundNotAllowedError(order.id, order.financial_status.value)

        refundable = money(order.total_price - await order_store.refunded_total(session, order.id))
        if amount > refundable:
            raise RefundAmountExceededError(order.id, amount, refundable)

        if amount == refundable:
            next_financial = FinancialStatus.REFUNDED
        elif partially_refunded:
            next_financial = None
        else:
            next_financial = FinancialStatus.PARTIALLY_REFUNDED
        next_fulfillment = FulfillmentStatus.RESTOCKED if restock_items else None

        now = datetime.now(timezone.utc)
        refund = Refund(
            id=uuid4(),
            order_id=order.id,
            amount=amount,
            reason=reason,
            restock_items=restock_items,
            created_at=now,
        )
        updated, entry = await apply_transition(
            session,
            rt.state_machine,
            order,
            next_financial=next_financial,
            next_fulfillment=next_fulfillment,
            actor=actor,
            comment=reason or f"refund {amount}",
            now=now,
        )
        await order_store.insert_refund(session, refund)
        await session.commit()

    if entry is not None:
        await rt.publisher.publish(ORDER_STATUS_CHANGED, _status_changed(updated, entry))
    await rt.publisher.publish(ORDER_REFUNDED, _refunded(refund))
    logger.info("Refund %s of %s recorded for order %s", refund.id, amount, order.id)
    return refund


# ── 出荷 ────────────────────────────────────────


async def create_fulfillment(
    rt: "OrderRuntime",
    order_id: UUID,
    line_items: list[FulfillmentLineItem],
    tracking_number: str | None = None,
    tracking_url: str | None = None,
    carrier: str | None = None,
    actor: str = "system",
) -> Fulfillment:
    """
    出荷コマンド

    AUTHORIZED / PAID の注文だけが出荷できる。明細ごとの出荷済み数量を積み上げ、
    全明細が数量分出荷されたら FULFILLED、そうでなければ PARTIALLY_FULFILLED へ遷移する。
    """
    async with rt.session_factory() as session:
        order = await _load(session, order_id)
        if not rt.state_machine.can_fulfill_order(order):
            raise FulfillmentNotAllowedError(order.id, order.financial_status.value)

        shipped = await order_store.fulfilled_quantities(session, order.id)
        ordered_qty = {item.id: item.quantity for item in order.line_items}
        for item in line_items:
            if item.line_item_id not in ordered_qty:
                raise InvalidFulfillmentItemsError(
                    order.id, f"unknown line item {item.line_item_id}"
                )
            shipped[item.line_item_id] = shipped.get(item.line_item_id, 0) + item.quantity
            if shipped[item.line_item_id] > ordered_qty[item.line_item_id]:
                raise InvalidFulfillmentItemsError(
                    order.id,
                    f"line item {item.line_item_id} would ship "
                    f"{shipped[item.line_item_id]} of {ordered_qty[item.line_item_id]}",
                )

        complete = all(shipped.get(item_id, 0) >= qty for item_id, qty in ordered_qty.items())
        target = FulfillmentStatus.FULFILLED if complete else FulfillmentStatus.PARTIALLY_FULFILLED
        # 一部出荷済みへの追加の一部出荷はステータスを変えない
        next_fulfillment = None if target == order.fulfillment_status else target

        now = datetime.now(timezone.utc)
        fulfillment = Fulfillment(
            id=uuid4(),
            order_id=order.id,
            line_items=line_items,
            tracking_number=tracking_number,
            tracking_url=tracking_url,
            carrier=carrier,
            created_at=now,
        )
        updated, entry = await apply_transition(
            session,
            rt.state_machine,
            order,
            next_fulfillment=next_fulfillment,
            actor=actor,
            comment=f"fulfillment {tracking_number}" if tracking_number else "fulfillment",
            now=now,
        )
        await order_store.insert_fulfillment(session, fulfillment)
        await session.commit()

    if entry is not None:
        await rt.publisher.publish(ORDER_STATUS_CHANGED, _status_changed(updated, entry))
    await rt.publisher.publish(
        ORDER_FULFILLED,
        OrderFulfilled(
            order_id=order.id,
            fulfillment_id=fulfillment.id,
            tracking_number=tracking_number,
            fulfillment_status=updated.fulfillment_status,
            timestamp=now,
        ),
    )
    logger.info("Fulfillment %s recorded for order %s", fulfillment.id, order.id)
    return fulfillment
