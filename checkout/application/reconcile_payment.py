import logging
from datetime import timedelta

from pydantic import BaseModel, model_validator

from checkout.application.payment_orchestrator import PaymentOrchestrator
from checkout.core.exceptions import PaymentNotReconcilable
from checkout.core.models import PaymentAttempt, PaymentOutcomeEnum, utcnow
from checkout.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class ReconciliationDTO(BaseModel):
    captured: bool
    gateway_reference: str | None = None
    reason: str | None = None

    @model_validator(mode="after")
    def reference_for_captured(self) -> "ReconciliationDTO":
        if self.captured and not self.gateway_reference:
            raise ValueError("gateway_reference is required for a captured payment")
        return self


class ReconcilePaymentUseCase:
    """
    Settle a payment attempt whose outcome had to be looked up by hand.

    PENDING attempts are accepted once nothing has touched them for
    `stale_attempt_seconds`: the process that was charging them is gone.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        payment_orchestrator: PaymentOrchestrator,
        stale_attempt_seconds: float = 60,
    ):
        self._unit_of_work = unit_of_work
        self._payments = payment_orchestrator
        self._stale_after = timedelta(seconds=stale_attempt_seconds)

    async def __call__(
        self, attempt_id: str, reconciliation: ReconciliationDTO
    ) -> PaymentAttempt:
        async with self._unit_of_work() as uow:
            attempt = await uow.payments.get_by_id(attempt_id)

        if not self._is_reconcilable(attempt):
            raise PaymentNotReconcilable(
                f"Payment attempt {attempt_id} is {attempt.outcome}"
            )

        logger.info(
            f"Reconciling payment attempt {attempt_id}: "
            f"{'captured' if reconciliation.captured else 'not captured'}"
        )
        if reconciliation.captured:
            return await self._payments.settle_captured(
                attempt_id, reconciliation.gateway_reference
            )

        return await self._payments.settle_failed(
            attempt_id, reconciliation.reason or "RECONCILED_AS_FAILED"
        )

    def _is_reconcilable(self, attempt: PaymentAttempt) -> bool:
        if attempt.outcome in (PaymentOutcomeEnum.TIMED_OUT, PaymentOutcomeEnum.AUTHORIZED):
            return True

        return (
            attempt.outcome == PaymentOutcomeEnum.PENDING
            and attempt.updated_at + self._stale_after <= utcnow()
        )
