"""
Order Service — 注文作成 Saga のステップ定義

    create_order_record → reserve_inventory → calculate_shipping
        → calculate_tax → create_payment_intent → confirm_order

各ステップの execute は前のステップの結果(results)を受け取り、
自分の結果ハンドル(引き当て ID・見積り・決済インテント ID)を返す。
ハンドルは Saga 実行ログに保存され、補償とクラッシュ復旧に使われる。

create_order_record が書く注文は saga_pending=True で、confirm_order または
取消の補償が False にするまで読み取り・コマンドからは見えない。

補償:
    create_order_record   → 注文を VOIDED にする(状態機械経由)
    reserve_inventory     → 引き当てを解放
    calculate_shipping    → なし(計算のみ)
    calculate_tax         → なし(計算のみ)
    create_payment_intent → 決済インテントをキャンセル
    confirm_order         → なし(最終ステップ。失敗時は書き込みがロールバックされる)
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import sessionmaker

from . import config, order_store
from .clients import ExternalServices
from .commands import apply_transition, compute_total
from .errors import EmptyOrderError, OrderNotFoundError
from .models import Order, PaymentIntent, money
from .orchestrator import SagaStep, StepResults, default_idempotency_key
from .state_machine import OrderStateMachine
from .statuses import FinancialStatus

logger = logging.getLogger(__name__)

CREATE_ORDER_RECORD = "create_order_record"
RESERVE_INVENTORY = "reserve_inventory"
CALCULATE_SHIPPING = "calculate_shipping"
CALCULATE_TAX = "calculate_tax"
CREATE_PAYMENT_INTENT = "create_payment_intent"
CONFIRM_ORDER = "confirm_order"

SAGA_ACTOR = "order-creation-saga"


class OrderCreationSteps:
    def __init__(
        self,
        session_factory: sessionmaker,
        services: ExternalServices,
        state_machine: OrderStateMachine,
    ):
        self.session_factory = session_factory
        self.services = services
        self.state_machine = state_machine

    def build(self) -> list[SagaStep]:
        return [
            SagaStep(CREATE_ORDER_RECORD, self.create_order_record, self.void_order_record),
            SagaStep(RESERVE_INVENTORY, self.reserve_inventory, self.release_inventory),
            SagaStep(CALCULATE_SHIPPING, self.calculate_shipping),
            SagaStep(CALCULATE_TAX, self.calculate_tax),
            SagaStep(CREATE_PAYMENT_INTENT, self.create_payment_intent, self.cancel_payment_intent),
            SagaStep(CONFIRM_ORDER, self.confirm_order),
        ]

    # ── create_order_record ──────────────────────

    async def create_order_record(self, order: Order, results: StepResults) -> dict[str, Any]:
        if not order.line_items:
            raise EmptyOrderError(order.id)
        self.state_machine.validate_new_order(order)

        async with self.session_factory() as session:
            # 再実行時は挿入済みの行をそのまま使う
            if await order_store.load_order(session, order.id) is None:
                await order_store.insert_order(session, order)
                await session.commit()
        return {"order_id": str(order.id), "order_number": order.order_number}

    async def void_order_record(self, order: Order, results: StepResults) -> None:
        async with self.session_factory() as session:
            current = await order_store.load_order(session, order.id)
            if current is None or current.is_cancelled:
                return
            now = datetime.now(timezone.utc)
            await apply_transition(
                session,
                self.state_machine,
                current,
                next_financial=FinancialStatus.VOIDED,
                actor=SAGA_ACTOR,
                comment="order creation failed",
                changes={
                    "cancelled_at": now,
                    "cancel_reason": "order creation failed",
                    "saga_pending": False,
                },
                now=now,
            )
            await session.commit()
        logger.info("Voided order %s after saga failure", order.id)

    # ── reserve_inventory ────────────────────────

    async def reserve_inventory(self, order: Order, results: StepResults) -> dict[str, Any]:
        reservation = await self.services.inventory.reserve(
            order.line_items, default_idempotency_key(order, RESERVE_INVENTORY)
        )
        return reservation.model_dump(mode="json")

    async def release_inventory(self, order: Order, results: StepResults) -> None:
        reservation_id = results.get(RESERVE_INVENTORY, {}).get("reservation_id")
        if reservation_id is None:
            # 結果が記録されていない(タイムアウト等): 冪等キーで実際の状態を確認する
            found = await self.services.inventory.find_reservation(
                default_idempotency_key(order, RESERVE_INVENTORY)
            )
            if found is None:
                return
            reservation_id = found.reservation_id
        await self.services.inventory.release(reservation_id)

    # ── calculate_shipping / calculate_tax ───────

    async def calculate_shipping(self, order: Order, results: StepResults) -> dict[str, Any]:
        reservation = results.get(RESERVE_INVENTORY, {})
        origin = {
            "country": reservation.get("origin_country") or config.DEFAULT_ORIGIN_COUNTRY,
            "zip": reservation.get("origin_zip") or config.DEFAULT_ORIGIN_ZIP,
        }
        quote = await self.services.shipping.quote(
            origin,
            order.shipping_address,
            order.line_items,
            default_idempotency_key(order, CALCULATE_SHIPPING),
        )
        return quote.model_dump(mode="json")

    async def calculate_tax(self, order: Order, results: StepResults) -> dict[str, Any]:
        quote = await self.services.tax.calculate(
            order.shipping_address,
            order.subtotal,
            default_idempotency_key(order, CALCULATE_TAX),
        )
        return quote.model_dump(mode="json")

    # ── create_payment_intent ────────────────────

    async def create_payment_intent(self, order: Order, results: StepResults) -> dict[str, Any]:
        amount = compute_total(
            order.subtotal,
            _amount(results, CALCULATE_SHIPPING),
            _amount(results, CALCULATE_TAX),
            order.discount_total,
        )
        intent = await self.services.payment.create_intent(
            amount,
            order.currency,
            {"order_id": str(order.id), "order_number": order.order_number},
            default_idempotency_key(order, CREATE_PAYMENT_INTENT),
        )
        return intent.model_dump(mode="json")

    async def cancel_payment_intent(self, order: Order, results: StepResults) -> None:
        intent_id = results.get(CREATE_PAYMENT_INTENT, {}).get("payment_intent_id")
        if intent_id is None:
            found = await self.services.payment.find_intent(
                default_idempotency_key(order, CREATE_PAYMENT_INTENT)
            )
            if found is None:
                return
            intent_id = found.payment_intent_id
        await self.services.payment.cancel_intent(intent_id)

    # ── confirm_order ────────────────────────────

    async def confirm_order(self, order: Order, results: StepResults) -> dict[str, Any]:
        """
        送料・税・合計・決済インテント ID を注文に書き込み、
        決済がオーソリ済みなら PENDING → AUTHORIZED に遷移する。
        """
        intent = PaymentIntent.model_validate(results[CREATE_PAYMENT_INTENT])
        shipping_total = _amount(results, CALCULATE_SHIPPING)
        tax_total = _amount(results, CALCULATE_TAX)

        async with self.session_factory() as session:
            current = await order_store.load_order(session, order.id)
            if current is None:
                raise OrderNotFoundError(order.id)
            if current.payment_intent_id == intent.payment_intent_id:
                # 確定済み(再実行)
                return _confirmation(current)

            next_financial = FinancialStatus.AUTHORIZED if intent.is_authorized else None
            updated, _ = await apply_transition(
                session,
                self.state_machine,
                current,
                next_financial=next_financial,
                actor=SAGA_ACTOR,
                comment="payment authorized" if next_financial else None,
                changes={
                    "shipping_total": shipping_total,
                    "tax_total": tax_total,
                    "total_price": compute_total(
                        current.subtotal, shipping_total, tax_total, current.discount_total
                    ),
                    "payment_intent_id": intent.payment_intent_id,
                    "saga_pending": False,
                },
            )
            await session.commit()
        return _confirmation(updated)

    # ── 補償失敗時 ───────────────────────────────

    async def flag_for_reconciliation(self, order: Order) -> None:
        async with self.session_factory() as session:
            await order_store.flag_for_reconciliation(
                session, order.id, datetime.now(timezone.utc)
            )
            await session.commit()
        logger.critical("Order %s flagged for manual reconciliation", order.id)


def _amount(results: StepResults, step_name: str) -> Decimal:
    return money(results[step_name]["amount"])


def _confirmation(order: Order) -> dict[str, Any]:
    return {
        "financial_status": order.financial_status.value,
        "total_price": str(order.total_price),
        "payment_intent_id": order.payment_intent_id,
    }
