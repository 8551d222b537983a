import logging

from checkout.core.exceptions import InvalidStockLevel
from checkout.infrastructure.repositories import InboxRepository
from checkout.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class SyncStockUseCase:
    """Applies catalog stock updates, each bus message at most once."""

    def __init__(self, unit_of_work: UnitOfWork):
        self._unit_of_work = unit_of_work

    async def handle_stock_event(self, message_id: str, stock_data: dict) -> bool:
        async with self._unit_of_work() as uow:
            if await uow.inbox.exists(message_id):
                logger.info(f"Message {message_id} already processed")
                return False

            inbox_event = await uow.inbox.create(
                InboxRepository.CreateDTO(
                    message_id=message_id,
                    event_type="STOCK",
                    payload=stock_data,
                )
            )

            product_id = stock_data.get("productId")
            stock = stock_data.get("stock")

            if product_id is None or not isinstance(stock, int):
                logger.warning(f"Ignoring malformed stock message {message_id}")
            else:
                try:
                    level = await uow.inventory.set_stock(str(product_id), stock)
                except InvalidStockLevel as e:
                    logger.warning(f"Ignoring stock update {message_id}: {e}")
                else:
                    logger.info(
                        f"Stock of {level.product_id} set to {level.on_hand} "
                        f"({level.available} available)"
                    )

            await uow.inbox.mark_as_processed(inbox_event.id)
            await uow.commit()
            return True
