from decimal import Decimal

import httpx
import pytest

from checkout.core.exceptions import CatalogUnavailable, ProductNotFound
from checkout.infrastructure.catalog_client import HttpCatalogClient

PRODUCTS = {
    "P1": {"id": "P1", "price": 10.0, "discountedPrice": None, "stock": 4},
    "P2": {"id": "P2", "price": 20.0, "discountedPrice": 15.5, "stock": 0},
}


def catalog_handler(request: httpx.Request) -> httpx.Response:
    product_id = request.url.path.rsplit("/", 1)[-1]
    if product_id not in PRODUCTS:
        return httpx.Response(404, json={"detail": "Not found"})
    return httpx.Response(200, json=PRODUCTS[product_id])


@pytest.fixture
def catalog_client() -> HttpCatalogClient:
    return HttpCatalogClient(
        base_url="http://catalog.test", transport=httpx.MockTransport(catalog_handler)
    )


class TestHttpCatalogClient:
    @pytest.mark.asyncio
    async def test_get_quotes(self, catalog_client: HttpCatalogClient):
        # When
        quotes = await catalog_client.get_quotes(["P1", "P2"])

        # Then
        assert quotes["P1"].unit_price == Decimal("10.0")
        assert quotes["P1"].stock_on_hand == 4
        assert quotes["P2"].unit_price == Decimal("15.5")

    @pytest.mark.asyncio
    async def test_unknown_product(self, catalog_client: HttpCatalogClient):
        with pytest.raises(ProductNotFound) as exc_info:
            await catalog_client.get_quotes(["P1", "nope"])

        assert exc_info.value.product_id == "nope"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 503])
    async def test_catalog_error_is_unavailable(self, status_code: int):
        client = HttpCatalogClient(
            base_url="http://catalog.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(status_code)),
        )

        with pytest.raises(CatalogUnavailable):
            await client.get_quote("P1")

    @pytest.mark.asyncio
    async def test_unreachable_catalog(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = HttpCatalogClient(
            base_url="http://catalog.test", transport=httpx.MockTransport(handler)
        )

        with pytest.raises(CatalogUnavailable):
            await client.get_quote("P1")
