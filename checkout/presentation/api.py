import logging
from http import HTTPStatus

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from checkout.application.cancel_order import CancelOrderUseCase
from checkout.application.container import ApplicationContainer
from checkout.application.place_order import OrderPlacement, PlaceOrderDTO, PlaceOrderUseCase
from checkout.application.reconcile_payment import (
    ReconcilePaymentUseCase,
    ReconciliationDTO,
)
from checkout.core.exceptions import (
    CancellationNotAllowed,
    CatalogUnavailable,
    CheckoutError,
    ConcurrencyConflict,
    InvariantViolation,
    OrderNotPayable,
    PaymentInProgress,
    PaymentNotReconcilable,
    RequestInProgress,
    ValidationError,
)
from checkout.core.models import Order, PaymentAttempt, StockLevel
from checkout.infrastructure.repositories import DoesNotExist
from checkout.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

router = APIRouter()

RETRY_AFTER_SECONDS = 1


class OrderCreateRequest(PlaceOrderDTO):
    pass


class OrderPlacementResponseModel(OrderPlacement):
    pass


class OrderResponseModel(Order):
    pass


class PaymentAttemptResponseModel(PaymentAttempt):
    pass


class StockResponseModel(StockLevel):
    pass


class StockUpdateRequest(BaseModel):
    on_hand: int = Field(ge=0)


class ReconcileRequest(ReconciliationDTO):
    pass


def _error_response(e: Exception) -> JSONResponse:
    if isinstance(e, DoesNotExist):
        return JSONResponse(
            content={"message": str(e) or "Not found"},
            status_code=HTTPStatus.NOT_FOUND,
        )
    if isinstance(e, ValidationError):
        return JSONResponse(
            content={"message": str(e)},
            status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
        )
    if isinstance(e, RequestInProgress):
        return JSONResponse(
            content={"message": str(e)},
            status_code=HTTPStatus.CONFLICT,
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )
    if isinstance(
        e,
        (
            ConcurrencyConflict,
            CancellationNotAllowed,
            PaymentInProgress,
            PaymentNotReconcilable,
            OrderNotPayable,
        ),
    ):
        return JSONResponse(
            content={"message": str(e)},
            status_code=HTTPStatus.CONFLICT,
        )
    if isinstance(e, CatalogUnavailable):
        return JSONResponse(
            content={"message": str(e)},
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
        )
    if isinstance(e, InvariantViolation):
        logger.exception(f"Invariant violated: {e}")
    elif isinstance(e, CheckoutError):
        logger.error(f"Unhandled checkout error: {e}", exc_info=True)
    else:
        logger.exception("Unexpected error")

    return JSONResponse(
        content={"message": "Internal server error"},
        status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
    )


@router.post(
    "/orders",
    status_code=HTTPStatus.CREATED,
    response_model=OrderPlacementResponseModel,
)
@inject
async def place_order(
    order: OrderCreateRequest,
    place_order_use_case: PlaceOrderUseCase = Depends(
        Provide[ApplicationContainer.place_order_use_case]
    ),
):
    try:
        placement = await place_order_use_case(order)
    except Exception as e:
        return _error_response(e)

    if placement.order_id is None:
        # Out of stock is an answer, not an error.
        return JSONResponse(
            content=placement.model_dump(mode="json"),
            status_code=HTTPStatus.OK,
        )
    return placement


@router.get(
    "/orders/{order_id}",
    status_code=HTTPStatus.OK,
    response_model=OrderResponseModel,
)
@inject
async def get_order(
    order_id: str,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    try:
        async with unit_of_work() as uow:
            return await uow.orders.get_by_id(order_id)
    except Exception as e:
        return _error_response(e)


@router.get(
    "/users/{user_id}/orders",
    status_code=HTTPStatus.OK,
    response_model=list[OrderResponseModel],
)
@inject
async def list_user_orders(
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    try:
        async with unit_of_work() as uow:
            return await uow.orders.list_by_user(user_id, limit=limit, offset=offset)
    except Exception as e:
        return _error_response(e)


@router.post(
    "/orders/{order_id}/cancel",
    status_code=HTTPStatus.OK,
    response_model=OrderResponseModel,
)
@inject
async def cancel_order(
    order_id: str,
    cancel_order_use_case: CancelOrderUseCase = Depends(
        Provide[ApplicationContainer.cancel_order_use_case]
    ),
):
    try:
        return await cancel_order_use_case(order_id)
    except Exception as e:
        return _error_response(e)


@router.get(
    "/orders/{order_id}/payments",
    status_code=HTTPStatus.OK,
    response_model=list[PaymentAttemptResponseModel],
)
@inject
async def list_order_payments(
    order_id: str,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    try:
        async with unit_of_work() as uow:
            await uow.orders.get_by_id(order_id)
            return await uow.payments.list_by_order(order_id)
    except Exception as e:
        return _error_response(e)


@router.post(
    "/payments/{attempt_id}/reconcile",
    status_code=HTTPStatus.OK,
    response_model=PaymentAttemptResponseModel,
)
@inject
async def reconcile_payment(
    attempt_id: str,
    reconciliation: ReconcileRequest,
    reconcile_payment_use_case: ReconcilePaymentUseCase = Depends(
        Provide[ApplicationContainer.reconcile_payment_use_case]
    ),
):
    try:
        return await reconcile_payment_use_case(attempt_id, reconciliation)
    except Exception as e:
        return _error_response(e)


@router.get(
    "/inventory/{product_id}",
    status_code=HTTPStatus.OK,
    response_model=StockResponseModel,
)
@inject
async def get_stock(
    product_id: str,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    try:
        async with unit_of_work() as uow:
            return await uow.inventory.get_stock(product_id)
    except Exception as e:
        return _error_response(e)


@router.put(
    "/inventory/{product_id}",
    status_code=HTTPStatus.OK,
    response_model=StockResponseModel,
)
@inject
async def set_stock(
    product_id: str,
    stock: StockUpdateRequest,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    try:
        async with unit_of_work() as uow:
            level = await uow.inventory.set_stock(product_id, stock.on_hand)
            await uow.commit()
            return level
    except Exception as e:
        return _error_response(e)
