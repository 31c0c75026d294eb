"""
Order Service — FastAPI エントリーポイント

Command (POST / PATCH) と Query (GET) のエンドポイント。
注文作成は Saga を通して行い、ステータス変更はすべて状態機械で検証する。
"""

import logging
from contextlib import asynccontextmanager
from uuid import UUID

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, config, queries
from .clients import build_services
from .errors import (
    CancellationNotAllowedError,
    ConcurrentModificationError,
    ExternalServiceError,
    FulfillmentNotAllowedError,
    InvalidFulfillmentItemsError,
    InvalidTransitionError,
    OrderCreationPendingError,
    OrderNotFoundError,
    OrderServiceError,
    RefundAmountExceededError,
    RefundNotAllowedError,
    SagaCompensationFailure,
    SagaFailureError,
)
from .models import (
    CancelOrderRequest,
    CreateFulfillmentRequest,
    CreateOrderRequest,
    CreateRefundRequest,
    UpdateStatusRequest,
)
from .publisher import RedisEventPublisher
from .recovery import recover_sagas
from .runtime import OrderRuntime, build_runtime
from .schema import init_schema
from .statuses import FinancialStatus, FulfillmentStatus

logger = logging.getLogger(__name__)

runtime: OrderRuntime | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global runtime
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = create_async_engine(config.DATABASE_URL, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await init_schema(engine)

    redis_pool = aioredis.from_url(
        config.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=config.EVENT_PUBLISH_TIMEOUT_SECONDS,
        socket_timeout=config.EVENT_PUBLISH_TIMEOUT_SECONDS,
    )
    http_client = httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS)
    services = build_services(
        http_client,
        {
            "inventory": config.INVENTORY_SERVICE_URL,
            "shipping": config.SHIPPING_SERVICE_URL,
            "tax": config.TAX_SERVICE_URL,
            "payment": config.PAYMENT_SERVICE_URL,
        },
    )
    runtime = build_runtime(async_session, RedisEventPublisher(redis_pool), services)

    # 前回のプロセスで中断された Saga を再開
    await recover_sagas(runtime)
    yield

    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


def _runtime() -> OrderRuntime:
    if runtime is None:
        raise HTTPException(503, "Service is starting")
    return runtime


def _to_http(exc: OrderServiceError) -> HTTPException:
    """ドメイン例外を HTTP ステータスに対応付ける。"""
    if isinstance(exc, OrderNotFoundError):
        return HTTPException(404, str(exc))
    if isinstance(exc, SagaCompensationFailure):
        return HTTPException(500, _saga_detail(exc))
    if isinstance(exc, SagaFailureError):
        return HTTPException(422, _saga_detail(exc))
    if isinstance(exc, ConcurrentModificationError):
        return HTTPException(409, str(exc))
    if isinstance(exc, OrderCreationPendingError):
        return HTTPException(409, {"reason_code": exc.reason_code, "message": str(exc)})
    if isinstance(
        exc,
        (
            InvalidTransitionError,
            CancellationNotAllowedError,
            RefundNotAllowedError,
            RefundAmountExceededError,
            FulfillmentNotAllowedError,
            InvalidFulfillmentItemsError,
        ),
    ):
        return HTTPException(400, {"reason_code": exc.reason_code, "message": str(exc)})
    if isinstance(exc, ExternalServiceError):
        return HTTPException(503 if exc.transient else 502, str(exc))
    return HTTPException(500, str(exc))


def _saga_detail(exc: SagaFailureError) -> dict:
    return {
        "reason_code": exc.reason_code,
        "failed_step": exc.failed_step,
        "order_id": str(exc.order_id),
        "message": str(exc),
    }


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/orders", status_code=201)
async def create_order(req: CreateOrderRequest):
    """注文作成(Saga を実行)"""
    try:
        return await commands.create_order(_runtime(), req)
    except OrderServiceError as e:
        raise _to_http(e) from e


@app.patch("/orders/{order_id}/status")
async def update_order_status(order_id: UUID, req: UpdateStatusRequest):
    try:
        return await commands.update_order_status(
            _runtime(),
            order_id,
            financial_status=req.financial_status,
            fulfillment_status=req.fulfillment_status,
            actor=req.actor,
            comment=req.comment,
        )
    except OrderServiceError as e:
        raise _to_http(e) from e


@app.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: UUID, req: CancelOrderRequest):
    try:
        return await commands.cancel_order(_runtime(), order_id, req.reason, req.actor)
    except OrderServiceError as e:
        raise _to_http(e) from e


@app.post("/orders/{order_id}/refunds", status_code=201)
async def create_refund(order_id: UUID, req: CreateRefundRequest):
    try:
        return await commands.create_refund(
            _runtime(),
            order_id,
            req.amount,
            reason=req.reason,
            restock_items=req.restock_items,
            actor=req.actor,
        )
    except OrderServiceError as e:
        raise _to_http(e) from e


@app.post("/orders/{order_id}/fulfillments", status_code=201)
async def create_fulfillment(order_id: UUID, req: CreateFulfillmentRequest):
    """出荷を記録する(AUTHORIZED / PAID の注文のみ)"""
    try:
        return await commands.create_fulfillment(
            _runtime(),
            order_id,
            req.line_items,
            tracking_number=req.tracking_number,
            tracking_url=req.tracking_url,
            carrier=req.carrier,
            actor=req.actor,
        )
    except OrderServiceError as e:
        raise _to_http(e) from e


@app.post("/sagas/recover")
async def recover():
    """終端に達していない Saga を再開する(運用向け)"""
    executions = await recover_sagas(_runtime())
    return {"recovered": [e.model_dump(mode="json") for e in executions if e is not None]}


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/orders")
async def list_orders(
    store_id: str | None = None,
    customer_id: str | None = None,
    financial_status: list[FinancialStatus] | None = Query(None),
    fulfillment_status: list[FulfillmentStatus] | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=queries.MAX_PAGE_SIZE),
):
    async with _runtime().session_factory() as session:
        return await queries.list_orders(
            session,
            store_id=store_id,
            customer_id=customer_id,
            financial_status=financial_status,
            fulfillment_status=fulfillment_status,
            page=page,
            limit=limit,
        )


@app.get("/orders/by-number/{order_number}")
async def get_order_by_number(order_number: str):
    async with _runtime().session_factory() as session:
        order = await queries.get_order_by_number(session, order_number)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@app.get("/orders/{order_id}")
async def get_order(order_id: UUID):
    async with _runtime().session_factory() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@app.get("/orders/{order_id}/transitions")
async def get_valid_transitions(order_id: UUID):
    """現在の状態から遷移可能なステータス"""
    rt = _runtime()
    async with rt.session_factory() as session:
        transitions = await queries.get_valid_transitions(session, rt.state_machine, order_id)
        if transitions is None:
            raise HTTPException(404, "Order not found")
        return transitions


@app.get("/orders/{order_id}/history")
async def get_history(order_id: UUID):
    async with _runtime().session_factory() as session:
        return await queries.get_history(session, order_id)


@app.get("/orders/{order_id}/refunds")
async def get_refunds(order_id: UUID):
    async with _runtime().session_factory() as session:
        return await queries.get_refunds(session, order_id)


@app.get("/orders/{order_id}/fulfillments")
async def get_fulfillments(order_id: UUID):
    async with _runtime().session_factory() as session:
        return await queries.get_fulfillments(session, order_id)


@app.get("/sagas/{order_id}")
async def get_saga(order_id: UUID):
    """Saga 実行ログ(ステップごとの状態・試行回数)"""
    execution = await _runtime().saga_log.load(order_id)
    if execution is None:
        raise HTTPException(404, "Saga execution not found")
    return execution


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
