"""
Order Service — 外部サービスクライアント

在庫・送料・税・決済サービスを HTTP で呼び出す。
すべての作成系リクエストは Idempotency-Key ヘッダを付け、
同じキーでの再送をサービス側で重複排除できるようにする。

エラーの分類:
    タイムアウト / 通信エラー / 5xx  → TransientServiceError (Saga 内でリトライ)
    4xx                              → PermanentServiceError (即座に補償)
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx

from .errors import (
    InsufficientStockError,
    NoRateAvailableError,
    PaymentDeclinedError,
    PermanentServiceError,
    TransientServiceError,
)
from .models import Address, LineItem, PaymentIntent, Reservation, ShippingQuote, TaxQuote


class ServiceClient:
    service_name = "service"
    # このステータスコードは業務上の拒否として専用の例外にする
    rejection_status: int | None = None
    rejection_error: type[PermanentServiceError] = PermanentServiceError

    def __init__(self, base_url: str, client: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        try:
            resp = await self.client.request(
                method, f"{self.base_url}{path}", json=json, headers=headers
            )
        except httpx.TimeoutException as e:
            raise TransientServiceError(self.service_name, f"timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransientServiceError(self.service_name, f"transport error: {e}") from e

        if allow_not_found and resp.status_code == 404:
            return None
        if resp.status_code >= 500:
            raise TransientServiceError(
                self.service_name, resp.text or resp.reason_phrase, resp.status_code
            )
        if resp.status_code == 429:
            raise TransientServiceError(self.service_name, "rate limited", resp.status_code)
        if resp.status_code == self.rejection_status:
            raise self.rejection_error(self.service_name, _detail(resp), resp.status_code)
        if resp.status_code >= 400:
            raise PermanentServiceError(self.service_name, _detail(resp), resp.status_code)
        if not resp.content:
            return {}
        return resp.json()


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return resp.text


def _items(items: list[LineItem]) -> list[dict[str, Any]]:
    return [
        {"variant_id": item.variant_id, "sku": item.sku, "quantity": item.quantity}
        for item in items
    ]


class InventoryClient(ServiceClient):
    service_name = "inventory"
    rejection_status = 409
    rejection_error = InsufficientStockError

    async def reserve(self, items: list[LineItem], idempotency_key: str) -> Reservation:
        data = await self._request(
            "POST",
            "/reservations",
            json={"items": _items(items)},
            idempotency_key=idempotency_key,
        )
        return Reservation.model_validate(data)

    async def release(self, reservation_id: str) -> None:
        # 解放済み(404)は成功扱い: 補償は何度呼ばれてもよい
        await self._request(
            "POST", f"/reservations/{reservation_id}/release", allow_not_found=True
        )

    async def find_reservation(self, idempotency_key: str) -> Reservation | None:
        data = await self._request(
            "GET", f"/reservations/by-key/{idempotency_key}", allow_not_found=True
        )
        return Reservation.model_validate(data) if data is not None else None


class ShippingClient(ServiceClient):
    service_name = "shipping"
    rejection_status = 422
    rejection_error = NoRateAvailableError

    async def quote(
        self,
        origin: dict[str, str | None],
        destination: Address,
        items: list[LineItem],
        idempotency_key: str,
    ) -> ShippingQuote:
        data = await self._request(
            "POST",
            "/quotes",
            json={
                "origin": origin,
                "destination": destination.model_dump(mode="json"),
                "items": _items(items),
            },
            idempotency_key=idempotency_key,
        )
        return ShippingQuote.model_validate(data)


class TaxClient(ServiceClient):
    service_name = "tax"

    async def calculate(
        self, destination: Address, subtotal: Decimal, idempotency_key: str
    ) -> TaxQuote:
        data = await self._request(
            "POST",
            "/calculations",
            json={
                "destination": destination.model_dump(mode="json"),
                "subtotal": str(subtotal),
            },
            idempotency_key=idempotency_key,
        )
        return TaxQuote.model_validate(data)


class PaymentClient(ServiceClient):
    service_name = "payment"
    rejection_status = 402
    rejection_error = PaymentDeclinedError

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntent:
        data = await self._request(
            "POST",
            "/payment-intents",
            json={"amount": str(amount), "currency": currency, "metadata": metadata},
            idempotency_key=idempotency_key,
        )
        return PaymentIntent.model_validate(data)

    async def cancel_intent(self, payment_intent_id: str) -> None:
        await self._request(
            "POST", f"/payment-intents/{payment_intent_id}/cancel", allow_not_found=True
        )

    async def find_intent(self, idempotency_key: str) -> PaymentIntent | None:
        data = await self._request(
            "GET", f"/payment-intents/by-key/{idempotency_key}", allow_not_found=True
        )
        return PaymentIntent.model_validate(data) if data is not None else None


@dataclass
class ExternalServices:
    inventory: InventoryClient
    shipping: ShippingClient
    tax: TaxClient
    payment: PaymentClient


def build_services(client: httpx.AsyncClient, urls: dict[str, str]) -> ExternalServices:
    return ExternalServices(
        inventory=InventoryClient(urls["inventory"], client),
        shipping=ShippingClient(urls["shipping"], client),
        tax=TaxClient(urls["tax"], client),
        payment=PaymentClient(urls["payment"], client),
    )
