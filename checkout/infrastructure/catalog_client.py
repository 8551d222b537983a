import asyncio
from decimal import Decimal
from http import HTTPStatus

import httpx

from checkout.core.collaborators import ProductQuote
from checkout.core.exceptions import CatalogUnavailable, ProductNotFound


class HttpCatalogClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def get_quote(self, product_id: str) -> ProductQuote:
        try:
            response = await self._client.get(f"/api/products/{product_id}")
        except httpx.TransportError as e:
            raise CatalogUnavailable(f"Catalog is unreachable: {e!r}") from e

        if response.status_code == HTTPStatus.NOT_FOUND:
            raise ProductNotFound(product_id)
        if response.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
            raise CatalogUnavailable(f"Catalog answered {response.status_code}")
        response.raise_for_status()

        body = response.json()
        # Orders are priced at the discounted price when a discount is active.
        price = body.get("discountedPrice") or body["price"]
        return ProductQuote(
            product_id=product_id,
            unit_price=Decimal(str(price)),
            stock_on_hand=body.get("stock"),
        )

    async def get_quotes(self, product_ids: list[str]) -> dict[str, ProductQuote]:
        quotes = await asyncio.gather(*(self.get_quote(pid) for pid in product_ids))
        return {quote.product_id: quote for quote in quotes}

    async def aclose(self) -> None:
        await self._client.aclose()
