import hashlib
import json
import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from checkout.core.exceptions import IdempotencyKeyReuse, RequestInProgress
from checkout.core.models import (
    IdempotencyCheck,
    IdempotencyRecord,
    IdempotencyRecordStatus,
    IdempotencyStateEnum,
    utcnow,
)
from checkout.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


def payload_fingerprint(payload: dict) -> str:
    payload_json = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(payload_json.encode()).hexdigest()


class IdempotencyLedger:
    """
    Records which client operation keys were already processed.

    Every key is first reserved as PENDING in its own committed transaction so
    that concurrent duplicates observe it. Records older than the retention
    window are treated as unseen, and a PENDING record older than
    `pending_ttl_seconds` is assumed to belong to a worker that died before
    committing anything and may be taken over.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        retention_seconds: float = 86400,
        pending_ttl_seconds: float = 60,
    ):
        self._unit_of_work = unit_of_work
        self._retention = timedelta(seconds=retention_seconds)
        self._pending_ttl = timedelta(seconds=pending_ttl_seconds)

    async def check_and_reserve(self, key: str, fingerprint: str) -> IdempotencyCheck:
        # A stale record removed, or a record gone between insert and read,
        # costs one more pass.
        for _ in range(3):
            if await self._try_reserve(key, fingerprint):
                return IdempotencyCheck(state=IdempotencyStateEnum.NOT_SEEN)

            async with self._unit_of_work() as uow:
                record = await uow.idempotency.get(key)
                if record is None:
                    continue

                if self._is_reclaimable(record):
                    logger.info(f"Reclaiming idempotency key {key} ({record.status})")
                    await uow.idempotency.delete(key, record.created_at)
                    await uow.commit()
                    continue

                if record.fingerprint != fingerprint:
                    raise IdempotencyKeyReuse(key)

                if record.status == IdempotencyRecordStatus.COMPLETED:
                    return IdempotencyCheck(
                        state=IdempotencyStateEnum.SEEN_COMPLETED, result=record.result
                    )

                return IdempotencyCheck(state=IdempotencyStateEnum.SEEN_PENDING)

        raise RequestInProgress(key)

    async def _try_reserve(self, key: str, fingerprint: str) -> bool:
        now = utcnow()
        try:
            async with self._unit_of_work() as uow:
                await uow.idempotency.create(
                    key=key,
                    fingerprint=fingerprint,
                    created_at=now,
                    expires_at=now + self._retention,
                )
                await uow.commit()
        except IntegrityError:
            return False

        return True

    def _is_reclaimable(self, record: IdempotencyRecord) -> bool:
        now = utcnow()
        if record.expires_at <= now:
            return True

        return (
            record.status == IdempotencyRecordStatus.PENDING
            and record.created_at + self._pending_ttl <= now
        )

    async def complete(self, key: str, result: dict) -> None:
        async with self._unit_of_work() as uow:
            await uow.idempotency.complete(key, result)
            await uow.commit()

    async def abandon(self, key: str) -> None:
        """Forget a reserved key whose request failed before any side effect."""
        async with self._unit_of_work() as uow:
            if await uow.idempotency.delete_pending(key):
                logger.info(f"Abandoned idempotency key {key}")
            await uow.commit()

    async def purge_expired(self) -> int:
        async with self._unit_of_work() as uow:
            purged = await uow.idempotency.purge_expired(utcnow())
            await uow.commit()
            return purged
