"""
Order Service — 注文ストア

注文・明細・ステータス履歴・返金・出荷の読み書き。

ステータスの書き込みは version 列による楽観ロック(compare-and-swap)で行う:
UPDATE ... WHERE id = :id AND version = :expected_version が 0 行なら、
読み込み後に別の書き込みが先行したので ConcurrentModificationError を送出する。
履歴テーブルにも (order_id, version) の UNIQUE 制約があり、二重の防御になる。

ここの関数は commit しない。呼び出し側(commands / saga_steps)が
ステータス更新と履歴追記を同じトランザクションで commit する。
"""

import json
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConcurrentModificationError
from .models import (
    Address,
    Fulfillment,
    FulfillmentLineItem,
    LineItem,
    Order,
    Refund,
    StatusHistoryEntry,
    money,
)
from .statuses import FinancialStatus, FulfillmentStatus


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ── 注文 ────────────────────────────────────────


async def insert_order(session: AsyncSession, order: Order) -> None:
    await session.execute(
        text("""
            INSERT INTO orders
                (id, order_number, store_id, customer_id, email, currency,
                 financial_status, fulfillment_status, shipping_address,
                 subtotal, shipping_total, tax_total, discount_total, total_price,
                 payment_intent_id, note, cancelled_at, cancel_reason,
                 needs_reconciliation, saga_pending, version, created_at, updated_at)
            VALUES
                (:id, :order_number, :store_id, :customer_id, :email, :currency,
                 :financial_status, :fulfillment_status, :shipping_address,
                 :subtotal, :shipping_total, :tax_total, :discount_total, :total_price,
                 :payment_intent_id, :note, :cancelled_at, :cancel_reason,
                 :needs_reconciliation, :saga_pending, :version, :created_at, :updated_at)
        """),
        {
            "id": str(order.id),
            "order_number": order.order_number,
            "store_id": order.store_id,
            "customer_id": order.customer_id,
            "email": order.email,
            "currency": order.currency,
            "financial_status": order.financial_status.value,
            "fulfillment_status": order.fulfillment_status.value,
            "shipping_address": order.shipping_address.model_dump_json(),
            "subtotal": str(order.subtotal),
            "shipping_total": str(order.shipping_total),
            "tax_total": str(order.tax_total),
            "discount_total": str(order.discount_total),
            "total_price": str(order.total_price),
            "payment_intent_id": order.payment_intent_id,
            "note": order.note,
            "cancelled_at": _ts(order.cancelled_at),
            "cancel_reason": order.cancel_reason,
            "needs_reconciliation": order.needs_reconciliation,
            "saga_pending": order.saga_pending,
            "version": order.version,
            "created_at": _ts(order.created_at),
            "updated_at": _ts(order.updated_at),
        },
    )
    for position, item in enumerate(order.line_items):
        await session.execute(
            text("""
                INSERT INTO order_line_items
                    (id, order_id, position, variant_id, product_id, title, sku, quantity, price)
                VALUES
                    (:id, :order_id, :position, :variant_id, :product_id, :title, :sku, :quantity, :price)
            """),
            {
                "id": str(item.id),
                "order_id": str(order.id),
                "position": position,
                "variant_id": item.variant_id,
                "product_id": item.product_id,
                "title": item.title,
                "sku": item.sku,
                "quantity": item.quantity,
                "price": str(item.price),
            },
        )


async def load_order(session: AsyncSession, order_id: UUID) -> Order | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return await hydrate_order(session, row)


async def load_order_by_number(session: AsyncSession, order_number: str) -> Order | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE order_number = :number"),
        {"number": order_number},
    )
    row = result.fetchone()
    if not row:
        return None
    return await hydrate_order(session, row)


async def hydrate_order(session: AsyncSession, row) -> Order:
    items = await session.execute(
        text("""
            SELECT * FROM order_line_items
            WHERE order_id = :order_id
            ORDER BY position ASC
        """),
        {"order_id": row.id},
    )
    return Order(
        id=UUID(str(row.id)),
        order_number=row.order_number,
        store_id=row.store_id,
        customer_id=row.customer_id,
        email=row.email,
        currency=row.currency,
        financial_status=FinancialStatus(row.financial_status),
        fulfillment_status=FulfillmentStatus(row.fulfillment_status),
        line_items=[
            LineItem(
                id=UUID(str(item.id)),
                variant_id=item.variant_id,
                product_id=item.product_id,
                title=item.title,
                sku=item.sku,
                quantity=item.quantity,
                price=money(item.price),
            )
            for item in items.fetchall()
        ],
        shipping_address=Address.model_validate(json.loads(row.shipping_address)),
        subtotal=money(row.subtotal),
        shipping_total=money(row.shipping_total),
        tax_total=money(row.tax_total),
        discount_total=money(row.discount_total),
        total_price=money(row.total_price),
        payment_intent_id=row.payment_intent_id,
        note=row.note,
        cancelled_at=_parse_ts(row.cancelled_at),
        cancel_reason=row.cancel_reason,
        needs_reconciliation=bool(row.needs_reconciliation),
        saga_pending=bool(row.saga_pending),
        version=row.version,
        created_at=_parse_ts(row.created_at),
        updated_at=_parse_ts(row.updated_at),
    )


async def update_order(
    session: AsyncSession,
    updated: Order,
    expected_version: int,
) -> None:
    """
    可変列をまとめて書き込む。version が expected_version のときだけ成功する。
    """
    result = await session.execute(
        text("""
            UPDATE orders
            SET financial_status = :financial_status,
                fulfillment_status = :fulfillment_status,
                shipping_total = :shipping_total,
                tax_total = :tax_total,
                total_price = :total_price,
                payment_intent_id = :payment_intent_id,
                cancelled_at = :cancelled_at,
                cancel_reason = :cancel_reason,
                needs_reconciliation = :needs_reconciliation,
                saga_pending = :saga_pending,
                version = :new_version,
                updated_at = :updated_at
            WHERE id = :id AND version = :expected_version
        """),
        {
            "id": str(updated.id),
            "financial_status": updated.financial_status.value,
            "fulfillment_status": updated.fulfillment_status.value,
            "shipping_total": str(updated.shipping_total),
            "tax_total": str(updated.tax_total),
            "total_price": str(updated.total_price),
            "payment_intent_id": updated.payment_intent_id,
            "cancelled_at": _ts(updated.cancelled_at),
            "cancel_reason": updated.cancel_reason,
            "needs_reconciliation": updated.needs_reconciliation,
            "saga_pending": updated.saga_pending,
            "new_version": updated.version,
            "updated_at": _ts(updated.updated_at),
            "expected_version": expected_version,
        },
    )
    if result.rowcount != 1:
        raise ConcurrentModificationError(updated.id, expected_version)


async def save_transition(
    session: AsyncSession,
    updated: Order,
    entry: StatusHistoryEntry | None,
    expected_version: int,
) -> None:
    """ステータス更新と履歴追記。呼び出し側が1回の commit で確定させる。"""
    await update_order(session, updated, expected_version)
    if entry is not None:
        await append_history(session, entry)


async def flag_for_reconciliation(session: AsyncSession, order_id: UUID, now: datetime) -> None:
    """補償失敗時の手動照合フラグ。ステータスには触れない。"""
    await session.execute(
        text("""
            UPDATE orders
            SET needs_reconciliation = :flag,
                version = version + 1,
                updated_at = :now
            WHERE id = :id
        """),
        {"id": str(order_id), "flag": True, "now": _ts(now)},
    )


# ── ステータス履歴 ───────────────────────────────


async def append_history(session: AsyncSession, entry: StatusHistoryEntry) -> None:
    await session.execute(
        text("""
            INSERT INTO order_status_history
                (id, order_id, previous_financial_status, new_financial_status,
                 previous_fulfillment_status, new_fulfillment_status,
                 actor, comment, version, created_at)
            VALUES
                (:id, :order_id, :prev_fin, :new_fin, :prev_ful, :new_ful,
                 :actor, :comment, :version, :created_at)
        """),
        {
            "id": str(entry.id),
            "order_id": str(entry.order_id),
            "prev_fin": entry.previous_financial_status.value,
            "new_fin": entry.new_financial_status.value,
            "prev_ful": entry.previous_fulfillment_status.value,
            "new_ful": entry.new_fulfillment_status.value,
            "actor": entry.actor,
            "comment": entry.comment,
            "version": entry.version,
            "created_at": _ts(entry.created_at),
        },
    )


async def load_history(session: AsyncSession, order_id: UUID) -> list[StatusHistoryEntry]:
    result = await session.execute(
        text("""
            SELECT * FROM order_status_history
            WHERE order_id = :order_id
            ORDER BY version ASC
        """),
        {"order_id": str(order_id)},
    )
    return [
        StatusHistoryEntry(
            id=UUID(str(row.id)),
            order_id=UUID(str(row.order_id)),
            previous_financial_status=row.previous_financial_status,
            new_financial_status=row.new_financial_status,
            previous_fulfillment_status=row.previous_fulfillment_status,
            new_fulfillment_status=row.new_fulfillment_status,
            actor=row.actor,
            comment=row.comment,
            version=row.version,
            created_at=_parse_ts(row.created_at),
        )
        for row in result.fetchall()
    ]


# ── 返金 ────────────────────────────────────────


async def insert_refund(session: AsyncSession, refund: Refund) -> None:
    await session.execute(
        text("""
            INSERT INTO refunds (id, order_id, amount, reason, restock_items, created_at)
            VALUES (:id, :order_id, :amount, :reason, :restock_items, :created_at)
        """),
        {
            "id": str(refund.id),
            "order_id": str(refund.order_id),
            "amount": str(refund.amount),
            "reason": refund.reason,
            "restock_items": refund.restock_items,
            "created_at": _ts(refund.created_at),
        },
    )


async def load_refunds(session: AsyncSession, order_id: UUID) -> list[Refund]:
    result = await session.execute(
        text("""
            SELECT * FROM refunds
            WHERE order_id = :order_id
            ORDER BY created_at ASC
        """),
        {"order_id": str(order_id)},
    )
    return [
        Refund(
            id=UUID(str(row.id)),
            order_id=UUID(str(row.order_id)),
            amount=money(row.amount),
            reason=row.reason,
            restock_items=bool(row.restock_items),
            created_at=_parse_ts(row.created_at),
        )
        for row in result.fetchall()
    ]


async def refunded_total(session: AsyncSession, order_id: UUID) -> Decimal:
    refunds = await load_refunds(session, order_id)
    return money(sum((r.amount for r in refunds), Decimal("0")))


# ── 出荷 ────────────────────────────────────────


async def insert_fulfillment(session: AsyncSession, fulfillment: Fulfillment) -> None:
    await session.execute(
        text("""
            INSERT INTO fulfillments
                (id, order_id, line_items, tracking_number, tracking_url, carrier, created_at)
            VALUES
                (:id, :order_id, :line_items, :tracking_number, :tracking_url, :carrier, :created_at)
        """),
        {
            "id": str(fulfillment.id),
            "order_id": str(fulfillment.order_id),
            "line_items": json.dumps(
                [item.model_dump(mode="json") for item in fulfillment.line_items]
            ),
            "tracking_number": fulfillment.tracking_number,
            "tracking_url": fulfillment.tracking_url,
            "carrier": fulfillment.carrier,
            "created_at": _ts(fulfillment.created_at),
        },
    )


async def load_fulfillments(session: AsyncSession, order_id: UUID) -> list[Fulfillment]:
    result = await session.execute(
        text("""
            SELECT * FROM fulfillments
            WHERE order_id = :order_id
            ORDER BY created_at ASC
        """),
        {"order_id": str(order_id)},
    )
    return [
        Fulfillment(
            id=UUID(str(row.id)),
            order_id=UUID(str(row.order_id)),
            line_items=[FulfillmentLineItem.model_validate(i) for i in json.loads(row.line_items)],
            tracking_number=row.tracking_number,
            tracking_url=row.tracking_url,
            carrier=row.carrier,
            created_at=_parse_ts(row.created_at),
        )
        for row in result.fetchall()
    ]


async def fulfilled_quantities(session: AsyncSession, order_id: UUID) -> dict[UUID, int]:
    """明細 ID → 出荷済み数量"""
    quantities: dict[UUID, int] = {}
    for fulfillment in await load_fulfillments(session, order_id):
        for item in fulfillment.line_items:
            quantities[item.line_item_id] = quantities.get(item.line_item_id, 0) + item.quantity
    return quantities
