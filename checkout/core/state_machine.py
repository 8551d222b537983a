from enum import StrEnum

from checkout.core.exceptions import InvalidTransition
from checkout.core.models import OrderStatusEnum, PaymentOutcomeEnum


class OrderTrigger(StrEnum):
    REQUEST_PAYMENT = "REQUEST_PAYMENT"
    CONFIRM_PAYMENT = "CONFIRM_PAYMENT"
    FAIL_PAYMENT = "FAIL_PAYMENT"
    FULFILL = "FULFILL"
    CANCEL = "CANCEL"
    EXPIRE = "EXPIRE"
    CLOSE = "CLOSE"


ORDER_TRANSITIONS: dict[tuple[OrderStatusEnum, OrderTrigger], OrderStatusEnum] = {
    (OrderStatusEnum.CREATED, OrderTrigger.REQUEST_PAYMENT): OrderStatusEnum.AWAITING_PAYMENT,
    (OrderStatusEnum.CREATED, OrderTrigger.CANCEL): OrderStatusEnum.CANCELLED,
    (OrderStatusEnum.AWAITING_PAYMENT, OrderTrigger.CONFIRM_PAYMENT): OrderStatusEnum.PAYMENT_CONFIRMED,
    (OrderStatusEnum.AWAITING_PAYMENT, OrderTrigger.FAIL_PAYMENT): OrderStatusEnum.PAYMENT_FAILED,
    (OrderStatusEnum.AWAITING_PAYMENT, OrderTrigger.EXPIRE): OrderStatusEnum.CANCELLED,
    (OrderStatusEnum.AWAITING_PAYMENT, OrderTrigger.CANCEL): OrderStatusEnum.CANCELLED,
    (OrderStatusEnum.PAYMENT_CONFIRMED, OrderTrigger.FULFILL): OrderStatusEnum.FULFILLED,
    (OrderStatusEnum.PAYMENT_FAILED, OrderTrigger.CLOSE): OrderStatusEnum.CANCELLED,
}

TERMINAL_STATUSES = frozenset({OrderStatusEnum.FULFILLED, OrderStatusEnum.CANCELLED})

CANCELLABLE_STATUSES = frozenset(
    {OrderStatusEnum.CREATED, OrderStatusEnum.AWAITING_PAYMENT}
)

REFUNDABLE_STATUSES = frozenset(
    {OrderStatusEnum.PAYMENT_CONFIRMED, OrderStatusEnum.FULFILLED}
)


def next_status(status: OrderStatusEnum, trigger: OrderTrigger) -> OrderStatusEnum:
    try:
        return ORDER_TRANSITIONS[(status, trigger)]
    except KeyError:
        raise InvalidTransition(status, trigger) from None


# Payment attempts: PENDING and TIMED_OUT may still turn out either way,
# AUTHORIZED is waiting for the confirmation step.
PAYMENT_TRANSITIONS: dict[PaymentOutcomeEnum, frozenset[PaymentOutcomeEnum]] = {
    PaymentOutcomeEnum.PENDING: frozenset(
        {
            PaymentOutcomeEnum.AUTHORIZED,
            PaymentOutcomeEnum.FAILED,
            PaymentOutcomeEnum.TIMED_OUT,
        }
    ),
    PaymentOutcomeEnum.TIMED_OUT: frozenset(
        {
            PaymentOutcomeEnum.AUTHORIZED,
            PaymentOutcomeEnum.CAPTURED,
            PaymentOutcomeEnum.FAILED,
        }
    ),
    PaymentOutcomeEnum.AUTHORIZED: frozenset(
        {PaymentOutcomeEnum.CAPTURED, PaymentOutcomeEnum.FAILED}
    ),
    PaymentOutcomeEnum.CAPTURED: frozenset(),
    PaymentOutcomeEnum.FAILED: frozenset(),
}

TERMINAL_PAYMENT_OUTCOMES = frozenset(
    {PaymentOutcomeEnum.CAPTURED, PaymentOutcomeEnum.FAILED}
)


def allowed_payment_sources(target: PaymentOutcomeEnum) -> list[PaymentOutcomeEnum]:
    return [
        source for source, targets in PAYMENT_TRANSITIONS.items() if target in targets
    ]
