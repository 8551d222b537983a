from datetime import timedelta

import pytest

from checkout.application.container import ApplicationContainer
from checkout.application.idempotency_ledger import IdempotencyLedger, payload_fingerprint
from checkout.core.exceptions import IdempotencyKeyReuse
from checkout.core.models import IdempotencyRecordStatus, IdempotencyStateEnum, utcnow
from checkout.infrastructure.unit_of_work import UnitOfWork


@pytest.fixture
async def ledger(container: ApplicationContainer) -> IdempotencyLedger:
    return container.idempotency_ledger()


class TestPayloadFingerprint:
    def test_ignores_key_order(self):
        assert payload_fingerprint({"a": 1, "b": [1, 2]}) == payload_fingerprint(
            {"b": [1, 2], "a": 1}
        )

    def test_differs_for_different_payloads(self):
        assert payload_fingerprint({"a": 1}) != payload_fingerprint({"a": 2})


class TestIdempotencyLedger:
    @pytest.mark.asyncio
    async def test_first_check_reserves_the_key(
        self, ledger: IdempotencyLedger, unit_of_work: UnitOfWork
    ):
        # When
        check = await ledger.check_and_reserve("key-1", "fp")

        # Then
        assert check.state == IdempotencyStateEnum.NOT_SEEN
        async with unit_of_work() as uow:
            record = await uow.idempotency.get("key-1")
        assert record.status == IdempotencyRecordStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_check_sees_pending(self, ledger: IdempotencyLedger):
        # Given
        await ledger.check_and_reserve("key-1", "fp")

        # When
        check = await ledger.check_and_reserve("key-1", "fp")

        # Then
        assert check.state == IdempotencyStateEnum.SEEN_PENDING

    @pytest.mark.asyncio
    async def test_completed_result_is_replayed(self, ledger: IdempotencyLedger):
        # Given
        await ledger.check_and_reserve("key-1", "fp")
        await ledger.complete("key-1", {"order_id": "order-1"})

        # When
        check = await ledger.check_and_reserve("key-1", "fp")

        # Then
        assert check.state == IdempotencyStateEnum.SEEN_COMPLETED
        assert check.result == {"order_id": "order-1"}

    @pytest.mark.asyncio
    async def test_key_reused_with_other_payload_is_rejected(
        self, ledger: IdempotencyLedger
    ):
        # Given
        await ledger.check_and_reserve("key-1", "fp")

        # When / Then
        with pytest.raises(IdempotencyKeyReuse):
            await ledger.check_and_reserve("key-1", "other-fp")

    @pytest.mark.asyncio
    async def test_abandoned_key_can_be_used_again(self, ledger: IdempotencyLedger):
        # Given
        await ledger.check_and_reserve("key-1", "fp")

        # When
        await ledger.abandon("key-1")
        check = await ledger.check_and_reserve("key-1", "fp")

        # Then
        assert check.state == IdempotencyStateEnum.NOT_SEEN

    @pytest.mark.asyncio
    async def test_abandon_keeps_completed_results(self, ledger: IdempotencyLedger):
        # Given
        await ledger.check_and_reserve("key-1", "fp")
        await ledger.complete("key-1", {"order_id": "order-1"})

        # When
        await ledger.abandon("key-1")

        # Then
        check = await ledger.check_and_reserve("key-1", "fp")
        assert check.state == IdempotencyStateEnum.SEEN_COMPLETED

    @pytest.mark.asyncio
    async def test_expired_record_is_treated_as_unseen(
        self, ledger: IdempotencyLedger, unit_of_work: UnitOfWork
    ):
        # Given
        long_ago = utcnow() - timedelta(days=2)
        async with unit_of_work() as uow:
            await uow.idempotency.create(
                key="key-1",
                fingerprint="old-fp",
                created_at=long_ago,
                expires_at=long_ago + timedelta(days=1),
            )
            await uow.idempotency.complete("key-1", {"order_id": "old-order"})
            await uow.commit()

        # When
        check = await ledger.check_and_reserve("key-1", "new-fp")

        # Then
        assert check.state == IdempotencyStateEnum.NOT_SEEN

    @pytest.mark.asyncio
    async def test_stale_pending_record_is_reclaimed(
        self, unit_of_work: UnitOfWork
    ):
        # Given
        ledger = IdempotencyLedger(unit_of_work, pending_ttl_seconds=60)
        created_at = utcnow() - timedelta(minutes=5)
        async with unit_of_work() as uow:
            await uow.idempotency.create(
                key="key-1",
                fingerprint="fp",
                created_at=created_at,
                expires_at=created_at + timedelta(days=1),
            )
            await uow.commit()

        # When
        check = await ledger.check_and_reserve("key-1", "fp")

        # Then
        assert check.state == IdempotencyStateEnum.NOT_SEEN

    @pytest.mark.asyncio
    async def test_purge_expired(self, ledger: IdempotencyLedger, unit_of_work: UnitOfWork):
        # Given
        long_ago = utcnow() - timedelta(days=2)
        async with unit_of_work() as uow:
            await uow.idempotency.create(
                key="old",
                fingerprint="fp",
                created_at=long_ago,
                expires_at=long_ago + timedelta(days=1),
            )
            await uow.commit()
        await ledger.check_and_reserve("fresh", "fp")

        # When
        purged = await ledger.purge_expired()

        # Then
        assert purged == 1
        async with unit_of_work() as uow:
            assert await uow.idempotency.get("old") is None
            assert await uow.idempotency.get("fresh") is not None
