"""
Order Service — ステータスと遷移表

財務ステータス(支払いのライフサイクル)とフルフィルメントステータス
(出荷のライフサイクル)は互いに独立した2つの軸。

財務:
    PENDING            → AUTHORIZED, PAID, VOIDED
    AUTHORIZED         → PAID, VOIDED
    PAID               → PARTIALLY_REFUNDED, REFUNDED
    PARTIALLY_REFUNDED → REFUNDED
    REFUNDED, VOIDED   (終端)

フルフィルメント:
    UNFULFILLED         → PARTIALLY_FULFILLED, FULFILLED
    PARTIALLY_FULFILLED → FULFILLED, RESTOCKED
    FULFILLED           → RESTOCKED
    RESTOCKED           (終端)

遷移表にない遷移(同じステータスへの自己遷移を含む)はすべて不正。
"""

from enum import Enum


class FinancialStatus(str, Enum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    PAID = "PAID"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"
    VOIDED = "VOIDED"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "UNFULFILLED"
    PARTIALLY_FULFILLED = "PARTIALLY_FULFILLED"
    FULFILLED = "FULFILLED"
    RESTOCKED = "RESTOCKED"


FINANCIAL_TRANSITIONS: dict[FinancialStatus, frozenset[FinancialStatus]] = {
    FinancialStatus.PENDING: frozenset(
        {FinancialStatus.AUTHORIZED, FinancialStatus.PAID, FinancialStatus.VOIDED}
    ),
    FinancialStatus.AUTHORIZED: frozenset({FinancialStatus.PAID, FinancialStatus.VOIDED}),
    FinancialStatus.PAID: frozenset(
        {FinancialStatus.PARTIALLY_REFUNDED, FinancialStatus.REFUNDED}
    ),
    FinancialStatus.PARTIALLY_REFUNDED: frozenset({FinancialStatus.REFUNDED}),
    FinancialStatus.REFUNDED: frozenset(),
    FinancialStatus.VOIDED: frozenset(),
}

FULFILLMENT_TRANSITIONS: dict[FulfillmentStatus, frozenset[FulfillmentStatus]] = {
    FulfillmentStatus.UNFULFILLED: frozenset(
        {FulfillmentStatus.PARTIALLY_FULFILLED, FulfillmentStatus.FULFILLED}
    ),
    FulfillmentStatus.PARTIALLY_FULFILLED: frozenset(
        {FulfillmentStatus.FULFILLED, FulfillmentStatus.RESTOCKED}
    ),
    FulfillmentStatus.FULFILLED: frozenset({FulfillmentStatus.RESTOCKED}),
    FulfillmentStatus.RESTOCKED: frozenset(),
}

# 遷移表がすべてのステータスを網羅していることをインポート時に保証する
for _enum, _table in (
    (FinancialStatus, FINANCIAL_TRANSITIONS),
    (FulfillmentStatus, FULFILLMENT_TRANSITIONS),
):
    _missing = set(_enum) - set(_table)
    if _missing:
        raise RuntimeError(f"{_enum.__name__} transition table is missing {sorted(_missing)}")
    for _source, _targets in _table.items():
        if _source in _targets:
            raise RuntimeError(f"{_enum.__name__} transition table has a self-loop on {_source}")


def is_terminal(status: FinancialStatus | FulfillmentStatus) -> bool:
    """遷移先が1つもないステータスか"""
    if isinstance(status, FinancialStatus):
        return not FINANCIAL_TRANSITIONS[status]
    return not FULFILLMENT_TRANSITIONS[status]


def ordered(statuses) -> list:
    """列挙型の定義順に並べる(レスポンスを決定的にするため)"""
    statuses = set(statuses)
    if not statuses:
        return []
    enum_cls = type(next(iter(statuses)))
    return [s for s in enum_cls if s in statuses]
