import uuid
from http import HTTPStatus

import pytest
from httpx import AsyncClient

from checkout.core.collaborators import ChargeStatusEnum
from checkout.core.models import OrderStatusEnum, PaymentOutcomeEnum
from checkout.presentation.api import OrderCreateRequest


@pytest.fixture
def order_json_factory(order_request_factory):
    def _create(items: dict[str, int] | None = None, **kwargs) -> dict:
        req = OrderCreateRequest(**order_request_factory(items, **kwargs).model_dump())
        return req.model_dump(mode="json")

    return _create


@pytest.mark.asyncio
async def test_place_order(
    test_async_client: AsyncClient, catalog, order_json_factory
):
    # Given
    catalog.add("P1", price="10.50", stock=5)
    body = order_json_factory({"P1": 3})

    # When
    response = await test_async_client.post("/orders", json=body)

    # Then
    assert response.status_code == HTTPStatus.CREATED
    data = response.json()
    assert data["order_id"] is not None
    assert data["status"] == OrderStatusEnum.FULFILLED
    assert data["replayed"] is False

    response = await test_async_client.get(f"/orders/{data['order_id']}")
    assert response.status_code == HTTPStatus.OK
    order = response.json()
    assert order["user_id"] == body["user_id"]
    assert order["total_amount"] == "31.50"
    assert [h["status"] for h in order["status_history"]] == [
        OrderStatusEnum.CREATED,
        OrderStatusEnum.AWAITING_PAYMENT,
        OrderStatusEnum.PAYMENT_CONFIRMED,
        OrderStatusEnum.FULFILLED,
    ]


@pytest.mark.asyncio
async def test_place_order_replay_returns_same_order(
    test_async_client: AsyncClient, catalog, payment_gateway, order_json_factory
):
    # Given
    catalog.add("P1", stock=5)
    body = order_json_factory({"P1": 1})
    first = (await test_async_client.post("/orders", json=body)).json()

    # When
    response = await test_async_client.post("/orders", json=body)

    # Then
    assert response.status_code == HTTPStatus.CREATED
    assert response.json()["order_id"] == first["order_id"]
    assert response.json()["replayed"] is True
    assert len(payment_gateway.charges) == 1


@pytest.mark.asyncio
async def test_place_order_out_of_stock(
    test_async_client: AsyncClient, catalog, order_json_factory
):
    # Given
    catalog.add("P1", stock=1)

    # When
    response = await test_async_client.post("/orders", json=order_json_factory({"P1": 2}))

    # Then
    assert response.status_code == HTTPStatus.OK
    data = response.json()
    assert data["order_id"] is None
    assert data["rejection_reason"] == "INSUFFICIENT_STOCK"
    assert data["unavailable_product_id"] == "P1"


@pytest.mark.asyncio
async def test_place_order_key_reuse_with_other_payload(
    test_async_client: AsyncClient, catalog, order_json_factory
):
    # Given
    catalog.add("P1", stock=5)
    key = str(uuid.uuid4())
    await test_async_client.post("/orders", json=order_json_factory({"P1": 1}, idempotency_key=key))

    # When
    response = await test_async_client.post(
        "/orders", json=order_json_factory({"P1": 2}, idempotency_key=key)
    )

    # Then
    assert response.status_code == HTTPStatus.UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_place_order_invalid_body(test_async_client: AsyncClient, order_json_factory):
    # Given
    body = order_json_factory({"P1": 1})
    body["line_items"][0]["quantity"] = 0

    # When
    response = await test_async_client.post("/orders", json=body)

    # Then
    assert response.status_code == HTTPStatus.UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_place_order_catalog_down(
    test_async_client: AsyncClient, catalog, order_json_factory
):
    # Given
    catalog.unavailable = True

    # When
    response = await test_async_client.post("/orders", json=order_json_factory())

    # Then
    assert response.status_code == HTTPStatus.SERVICE_UNAVAILABLE


@pytest.mark.asyncio
async def test_get_missing_order(test_async_client: AsyncClient):
    response = await test_async_client.get(f"/orders/{uuid.uuid4()}")

    assert response.status_code == HTTPStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_list_user_orders(
    test_async_client: AsyncClient, catalog, order_json_factory
):
    # Given
    catalog.add("P1", stock=5)
    user_id = str(uuid.uuid4())
    for _ in range(2):
        await test_async_client.post(
            "/orders", json=order_json_factory({"P1": 1}, user_id=user_id)
        )

    # When
    response = await test_async_client.get(f"/users/{user_id}/orders", params={"limit": 10})

    # Then
    assert response.status_code == HTTPStatus.OK
    assert len(response.json()) == 2
    assert {o["user_id"] for o in response.json()} == {user_id}


@pytest.mark.asyncio
async def test_cancel_failed_order_is_conflict(
    test_async_client: AsyncClient, catalog, payment_gateway, order_json_factory
):
    # Given
    catalog.add("P1", stock=5)
    payment_gateway.fail_with(ChargeStatusEnum.DECLINED, reason="INSUFFICIENT_FUNDS")
    placed = (
        await test_async_client.post("/orders", json=order_json_factory({"P1": 1}))
    ).json()
    assert placed["status"] == OrderStatusEnum.PAYMENT_FAILED

    # When
    response = await test_async_client.post(f"/orders/{placed['order_id']}/cancel")

    # Then
    assert response.status_code == HTTPStatus.CONFLICT


@pytest.mark.asyncio
async def test_list_order_payments(
    test_async_client: AsyncClient, catalog, order_json_factory
):
    # Given
    catalog.add("P1", stock=5)
    placed = (
        await test_async_client.post("/orders", json=order_json_factory({"P1": 1}))
    ).json()

    # When
    response = await test_async_client.get(f"/orders/{placed['order_id']}/payments")

    # Then
    assert response.status_code == HTTPStatus.OK
    attempts = response.json()
    assert [a["outcome"] for a in attempts] == [PaymentOutcomeEnum.CAPTURED]

    response = await test_async_client.get(f"/orders/{uuid.uuid4()}/payments")
    assert response.status_code == HTTPStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_reconcile_timed_out_payment(
    test_async_client: AsyncClient, catalog, payment_gateway, order_json_factory
):
    # Given
    catalog.add("P1", stock=5)
    payment_gateway.supports_verify = False
    payment_gateway.fail_with(*[ChargeStatusEnum.TIMEOUT] * 3)
    placed = (
        await test_async_client.post("/orders", json=order_json_factory({"P1": 1}))
    ).json()
    assert placed["status"] == OrderStatusEnum.AWAITING_PAYMENT
    attempts = (
        await test_async_client.get(f"/orders/{placed['order_id']}/payments")
    ).json()
    assert attempts[0]["outcome"] == PaymentOutcomeEnum.TIMED_OUT

    # When
    response = await test_async_client.post(
        f"/payments/{attempts[0]['id']}/reconcile",
        json={"captured": True, "gateway_reference": "ch_manual"},
    )

    # Then
    assert response.status_code == HTTPStatus.OK
    assert response.json()["outcome"] == PaymentOutcomeEnum.CAPTURED
    order = (await test_async_client.get(f"/orders/{placed['order_id']}")).json()
    assert order["status"] == OrderStatusEnum.FULFILLED

    # When - the same attempt is reconciled again
    response = await test_async_client.post(
        f"/payments/{attempts[0]['id']}/reconcile", json={"captured": False}
    )

    # Then
    assert response.status_code == HTTPStatus.CONFLICT


@pytest.mark.asyncio
async def test_set_and_get_stock(test_async_client: AsyncClient):
    # When
    response = await test_async_client.put("/inventory/P1", json={"on_hand": 12})

    # Then
    assert response.status_code == HTTPStatus.OK
    assert response.json() == {
        "product_id": "P1",
        "on_hand": 12,
        "reserved": 0,
        "available": 12,
    }

    response = await test_async_client.get("/inventory/P1")
    assert response.status_code == HTTPStatus.OK
    assert response.json()["on_hand"] == 12


@pytest.mark.asyncio
async def test_negative_stock_is_rejected(test_async_client: AsyncClient):
    response = await test_async_client.put("/inventory/P1", json={"on_hand": -1})

    assert response.status_code == HTTPStatus.UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_unknown_stock(test_async_client: AsyncClient):
    response = await test_async_client.get("/inventory/nothing")

    assert response.status_code == HTTPStatus.NOT_FOUND
