import asyncio
import os
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from dependency_injector import providers
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from checkout.application.container import ApplicationContainer
from checkout.application.place_order import LineItemRequest, PlaceOrderDTO
from checkout.core.collaborators import ChargeResult, ChargeStatusEnum, ProductQuote
from checkout.core.exceptions import CatalogUnavailable, ProductNotFound
from checkout.infrastructure.db_schema import metadata
from checkout.infrastructure.repositories import OutboxRepository
from checkout.infrastructure.unit_of_work import UnitOfWork
from checkout.presentation import api


class FakePaymentGateway:
    """Answers charges from a script, then authorizes everything."""

    def __init__(self):
        self.supports_verify = True
        self.charge_results: list[ChargeResult] = []
        self.verify_result = ChargeResult(status=ChargeStatusEnum.NOT_FOUND)
        self.charge_delay = 0.0
        self.charge_error: Exception | None = None
        self.charges: list[dict] = []
        self.verifications: list[str] = []

    def fail_with(self, *statuses: ChargeStatusEnum, reason: str | None = None):
        self.charge_results = [ChargeResult(status=s, reason=reason) for s in statuses]

    async def charge(
        self, amount: Decimal, payment_method: str, idempotency_key: str
    ) -> ChargeResult:
        self.charges.append(
            {
                "amount": amount,
                "payment_method": payment_method,
                "idempotency_key": idempotency_key,
            }
        )
        if self.charge_delay:
            await asyncio.sleep(self.charge_delay)
        if self.charge_error is not None:
            raise self.charge_error
        if self.charge_results:
            return self.charge_results.pop(0)
        return ChargeResult(
            status=ChargeStatusEnum.AUTHORIZED, reference=f"ch_{idempotency_key}"
        )

    async def verify(self, reference: str) -> ChargeResult:
        self.verifications.append(reference)
        return self.verify_result


class FakeCatalogClient:
    def __init__(self):
        self.products: dict[str, ProductQuote] = {}
        self.unavailable = False

    def add(self, product_id: str, price: str = "10.00", stock: int | None = None):
        self.products[product_id] = ProductQuote(
            product_id=product_id, unit_price=Decimal(price), stock_on_hand=stock
        )

    async def get_quotes(self, product_ids: list[str]) -> dict[str, ProductQuote]:
        if self.unavailable:
            raise CatalogUnavailable("Catalog is down")
        for product_id in product_ids:
            if product_id not in self.products:
                raise ProductNotFound(product_id)
        return {product_id: self.products[product_id] for product_id in product_ids}


@pytest.fixture()
def payment_gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture()
def catalog() -> FakeCatalogClient:
    return FakeCatalogClient()


@pytest.fixture()
def db_dsn(tmp_path) -> str:
    return os.getenv("TEST_DB_DSN", f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")


@pytest.fixture()
async def container(
    db_dsn: str, payment_gateway: FakePaymentGateway, catalog: FakeCatalogClient
) -> ApplicationContainer:
    container = ApplicationContainer()
    container.config.from_yaml("checkout/config.yaml", required=True)
    container.config.from_dict(
        {
            "idempotency": {"pending_wait_seconds": 5.0, "poll_interval": 0.01},
            "payment": {
                "base_delay": 0.001,
                "max_delay": 0.01,
                "deadline_seconds": 5.0,
                "call_timeout_seconds": 1.0,
            },
        }
    )
    infrastructure = container.infrastructure_container
    infrastructure.async_engine.override(
        providers.Singleton(create_async_engine, db_dsn)
    )
    infrastructure.payment_gateway.override(providers.Object(payment_gateway))
    infrastructure.catalog_client.override(providers.Object(catalog))
    return container


@pytest.fixture()
async def session_factory(
    container: ApplicationContainer,
) -> async_sessionmaker[AsyncSession]:
    return container.infrastructure_container.session_factory()


@pytest.fixture()
async def unit_of_work(container: ApplicationContainer) -> UnitOfWork:
    return container.infrastructure_container.unit_of_work()


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def fast_api_app(container: ApplicationContainer):
    app = FastAPI()
    app.include_router(api.router)
    container.wire(modules=[api])
    app.container = container
    return app


@pytest_asyncio.fixture(autouse=True)
async def setup_database(container: ApplicationContainer):
    engine = container.infrastructure_container.async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def test_async_client(fast_api_app) -> AsyncClient:
    async with AsyncClient(
        transport=ASGITransport(app=fast_api_app),
        base_url="http://test.com",
    ) as client:
        client.app = fast_api_app
        yield client


@pytest.fixture
def order_request_factory():
    def _create_request(items: dict[str, int] | None = None, **kwargs) -> PlaceOrderDTO:
        items = items or {"P": 1}
        defaults = {
            "user_id": str(uuid.uuid4()),
            "line_items": [
                LineItemRequest(product_id=product_id, quantity=quantity)
                for product_id, quantity in items.items()
            ],
            "idempotency_key": str(uuid.uuid4()),
        }
        defaults.update(kwargs)
        return PlaceOrderDTO(**defaults)

    return _create_request


@pytest.fixture
def stock_factory(unit_of_work: UnitOfWork):
    async def _set_stock(product_id: str, on_hand: int):
        async with unit_of_work() as uow:
            level = await uow.inventory.set_stock(product_id, on_hand)
            await uow.commit()
            return level

    return _set_stock


@pytest.fixture
async def outbox_repo(session: AsyncSession) -> OutboxRepository:
    return OutboxRepository(session)
