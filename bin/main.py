import asyncio
import logging

import uvicorn
from fastapi import FastAPI

from checkout.application.container import ApplicationContainer
from checkout.presentation import api
from checkout.presentation.api import router
from checkout.presentation.container import PresentationContainer
from checkout.presentation.event_consumer_worker import EventConsumerWorker
from checkout.presentation.outbox_worker import OutboxWorker
from checkout.presentation.sweeper_worker import SweeperWorker

CONFIG_PATH = "checkout/config.yaml"


def build_api(container: ApplicationContainer):
    app = FastAPI(title="checkout-service")
    app.include_router(router)
    container.wire(modules=[api])
    app.container = container
    return app


async def main():
    presentation_container = PresentationContainer()
    presentation_container.config.from_yaml(CONFIG_PATH, required=True)
    config = presentation_container.config

    logging.basicConfig(
        level=config.logging.level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = build_api(presentation_container.application)

    outbox_worker: OutboxWorker = presentation_container.outbox_worker()
    sweeper_worker: SweeperWorker = presentation_container.sweeper_worker()
    event_consumer: EventConsumerWorker = presentation_container.event_consumer_worker()

    api_task = asyncio.create_task(
        uvicorn.Server(
            uvicorn.Config(
                app,
                host=config.api.host(),
                port=config.api.port(),
                log_level=config.logging.level().lower(),
            )
        ).serve()
    )

    outbox_task = asyncio.create_task(outbox_worker.run())

    sweeper_task = asyncio.create_task(sweeper_worker.run())

    consumer_task = asyncio.create_task(event_consumer.run())

    await asyncio.gather(api_task, outbox_task, sweeper_task, consumer_task)


if __name__ == "__main__":
    asyncio.run(main())
