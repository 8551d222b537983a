import logging
from decimal import Decimal
from http import HTTPStatus

import httpx

from checkout.core.collaborators import ChargeResult, ChargeStatusEnum

logger = logging.getLogger(__name__)

# The charge may still be in flight or be retried by the gateway itself.
UNSETTLED_STATUS_CODES = frozenset(
    {
        HTTPStatus.REQUEST_TIMEOUT,
        HTTPStatus.CONFLICT,
        HTTPStatus.TOO_MANY_REQUESTS,
    }
)


class HttpPaymentGateway:
    """
    REST client for the payment provider.

    Anything that leaves the outcome of a charge unknown (connection errors,
    read timeouts, 5xx) is reported as TIMEOUT so the caller keeps treating
    the charge as possibly successful.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        supports_verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.supports_verify = supports_verify
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def charge(
        self, amount: Decimal, payment_method: str, idempotency_key: str
    ) -> ChargeResult:
        try:
            response = await self._client.post(
                "/charges",
                json={
                    "amount": str(amount),
                    "payment_method": payment_method,
                    "reference": idempotency_key,
                },
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.TransportError as e:
            logger.warning(f"Charge {idempotency_key} got no answer: {e!r}")
            return ChargeResult(status=ChargeStatusEnum.TIMEOUT)

        return self._interpret(response)

    async def verify(self, reference: str) -> ChargeResult:
        try:
            response = await self._client.get(f"/charges/{reference}")
        except httpx.TransportError as e:
            logger.warning(f"Verify {reference} got no answer: {e!r}")
            return ChargeResult(status=ChargeStatusEnum.TIMEOUT)

        if response.status_code == HTTPStatus.NOT_FOUND:
            return ChargeResult(status=ChargeStatusEnum.NOT_FOUND)

        return self._interpret(response)

    @staticmethod
    def _interpret(response: httpx.Response) -> ChargeResult:
        if (
            response.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR
            or response.status_code in UNSETTLED_STATUS_CODES
        ):
            return ChargeResult(status=ChargeStatusEnum.TIMEOUT)

        try:
            body = response.json()
        except ValueError:
            logger.warning(
                f"Gateway answered {response.status_code} with an unreadable body"
            )
            return ChargeResult(status=ChargeStatusEnum.TIMEOUT)
        if not isinstance(body, dict):
            body = {}

        if response.status_code == HTTPStatus.PAYMENT_REQUIRED:
            return ChargeResult(
                status=ChargeStatusEnum.DECLINED,
                reason=body.get("reason", "DECLINED"),
            )

        if response.status_code >= HTTPStatus.BAD_REQUEST:
            # The gateway refused the request, nothing was charged.
            return ChargeResult(
                status=ChargeStatusEnum.DECLINED,
                reason=body.get("reason") or f"GATEWAY_REJECTED_{response.status_code}",
            )

        if response.status_code >= HTTPStatus.MULTIPLE_CHOICES:
            return ChargeResult(status=ChargeStatusEnum.TIMEOUT)

        if body.get("status") in ("AUTHORIZED", "CAPTURED", "SUCCEEDED"):
            return ChargeResult(
                status=ChargeStatusEnum.AUTHORIZED, reference=body.get("id")
            )
        if body.get("status") in ("PENDING", "PROCESSING"):
            return ChargeResult(status=ChargeStatusEnum.TIMEOUT)

        return ChargeResult(
            status=ChargeStatusEnum.DECLINED,
            reason=body.get("reason") or body.get("status") or "DECLINED",
        )

    async def aclose(self) -> None:
        await self._client.aclose()
