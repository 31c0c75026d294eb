"""
Order Service — テーブル定義

ID・金額・日時・JSON は TEXT で保存する。同じ SQL を PostgreSQL と
SQLite の両方でそのまま実行できるようにするため。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        order_number TEXT NOT NULL UNIQUE,
        store_id TEXT NOT NULL,
        customer_id TEXT,
        email TEXT,
        currency TEXT NOT NULL,
        financial_status TEXT NOT NULL,
        fulfillment_status TEXT NOT NULL,
        shipping_address TEXT NOT NULL,
        subtotal TEXT NOT NULL,
        shipping_total TEXT NOT NULL,
        tax_total TEXT NOT NULL,
        discount_total TEXT NOT NULL,
        total_price TEXT NOT NULL,
        payment_intent_id TEXT,
        note TEXT,
        cancelled_at TEXT,
        cancel_reason TEXT,
        needs_reconciliation BOOLEAN NOT NULL DEFAULT FALSE,
        saga_pending BOOLEAN NOT NULL DEFAULT FALSE,
        version INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_line_items (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders (id),
        position INTEGER NOT NULL,
        variant_id TEXT NOT NULL,
        product_id TEXT,
        title TEXT NOT NULL,
        sku TEXT,
        quantity INTEGER NOT NULL,
        price TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_status_history (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders (id),
        previous_financial_status TEXT NOT NULL,
        new_financial_status TEXT NOT NULL,
        previous_fulfillment_status TEXT NOT NULL,
        new_fulfillment_status TEXT NOT NULL,
        actor TEXT NOT NULL,
        comment TEXT,
        version INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (order_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refunds (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders (id),
        amount TEXT NOT NULL,
        reason TEXT,
        restock_items BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fulfillments (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders (id),
        line_items TEXT NOT NULL,
        tracking_number TEXT,
        tracking_url TEXT,
        carrier TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS saga_executions (
        order_id TEXT PRIMARY KEY,
        saga_type TEXT NOT NULL,
        status TEXT NOT NULL,
        context TEXT NOT NULL,
        error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS saga_steps (
        order_id TEXT NOT NULL REFERENCES saga_executions (order_id),
        step_name TEXT NOT NULL,
        position INTEGER NOT NULL,
        status TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        idempotency_key TEXT NOT NULL,
        result TEXT,
        last_error TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (order_id, step_name)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_store ON orders (store_id, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_line_items_order ON order_line_items (order_id)",
    "CREATE INDEX IF NOT EXISTS ix_refunds_order ON refunds (order_id)",
    "CREATE INDEX IF NOT EXISTS ix_fulfillments_order ON fulfillments (order_id)",
    "CREATE INDEX IF NOT EXISTS ix_saga_status ON saga_executions (status)",
]


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in STATEMENTS:
            await conn.execute(text(statement))
