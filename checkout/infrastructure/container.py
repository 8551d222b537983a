from dependency_injector import containers, providers
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from checkout.infrastructure.catalog_client import HttpCatalogClient
from checkout.infrastructure.kafka_producer import KafkaProducer
from checkout.infrastructure.payment_gateway import HttpPaymentGateway
from checkout.infrastructure.unit_of_work import UnitOfWork


class InfrastructureContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    async_engine = providers.Singleton[AsyncEngine](
        create_async_engine,
        config.db.dsn,
        pool_size=config.db.pool_size,
        pool_recycle=config.db.pool_recycle,
    )
    session_factory = providers.Singleton(
        async_sessionmaker, async_engine, expire_on_commit=False, class_=AsyncSession
    )
    unit_of_work = providers.Singleton[UnitOfWork](
        UnitOfWork, session_factory=session_factory
    )
    kafka_producer = providers.Singleton[KafkaProducer](
        KafkaProducer,
        bootstrap_servers=config.kafka.bootstrap_servers,
        topic=config.kafka.topics.orders,
    )
    payment_gateway = providers.Singleton[HttpPaymentGateway](
        HttpPaymentGateway,
        base_url=config.gateway.base_url,
        timeout=config.gateway.timeout,
        supports_verify=config.gateway.supports_verify,
    )
    catalog_client = providers.Singleton[HttpCatalogClient](
        HttpCatalogClient,
        base_url=config.catalog.base_url,
        timeout=config.catalog.timeout,
    )
