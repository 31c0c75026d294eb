from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from order_service.clients import build_services
from order_service.models import Address, CreateOrderRequest, LineItem
from order_service.runtime import build_runtime
from order_service.schema import init_schema

from .fakes import FAST_RETRY, SERVICE_URLS, FakeCommerce, RecordingPublisher


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def commerce():
    return FakeCommerce()


@pytest_asyncio.fixture
async def services(commerce):
    async with httpx.AsyncClient(transport=httpx.MockTransport(commerce.handler)) as client:
        yield build_services(client, SERVICE_URLS)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def runtime(session_factory, publisher, services):
    return build_runtime(session_factory, publisher, services, retry=FAST_RETRY)


@pytest.fixture
def make_order_request():
    def _make(**overrides) -> CreateOrderRequest:
        data = {
            "store_id": "store-1",
            "customer_id": "cust-1",
            "email": "buyer@example.com",
            "currency": "USD",
            "line_items": [
                LineItem(variant_id="v-1", title="T-Shirt", sku="TS-1", quantity=2, price=Decimal("25.00")),
                LineItem(variant_id="v-2", title="Mug", sku="MG-1", quantity=1, price=Decimal("10.00")),
            ],
            "shipping_address": Address(
                first_name="Ada",
                last_name="Lovelace",
                address1="1 Main St",
                city="Springfield",
                province="IL",
                country="US",
                zip="62701",
            ),
        }
        data.update(overrides)
        return CreateOrderRequest(**data)

    return _make
