"""
Process-wide collaborators, built once at startup.

The FastAPI app keeps a Services instance on ``app.state.services``;
request handlers and the queue worker receive it explicitly.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from crm_bridge.config import Settings
from crm_bridge.fanout import RealtimeHub
from crm_bridge.gateway_client import GatewayClient
from crm_bridge.queue import QueueBroker, QueueWorker, build_broker
from crm_bridge.resolver import ResolutionDefaults
from crm_bridge.retry import RetryPolicy
from crm_bridge.storage import create_db_engine, create_session_factory, init_db

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    hub: RealtimeHub
    broker: Optional[QueueBroker] = None
    gateway: Optional[GatewayClient] = None
    worker: Optional[QueueWorker] = None
    degraded: list[str] = field(default_factory=list)

    @property
    def defaults(self) -> ResolutionDefaults:
        return ResolutionDefaults(
            channel=self.settings.DEFAULT_CHANNEL,
            department_id=self.settings.DEFAULT_DEPARTMENT_ID,
        )

    @property
    def queue_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.QUEUE_MAX_RETRIES + 1,
            base_delay=self.settings.QUEUE_RETRY_BASE_DELAY,
            max_delay=self.settings.QUEUE_RETRY_MAX_DELAY,
        )


async def build_services(settings: Settings) -> Services:
    """Create the store, fanout hub, broker and gateway client."""
    engine = create_db_engine(settings.DATABASE_URL, timeout=settings.STORE_TIMEOUT_SECONDS)
    init_db(engine)

    services = Services(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine),
        hub=RealtimeHub(send_timeout=settings.FANOUT_SEND_TIMEOUT),
    )

    broker = build_broker(settings.QUEUE_BACKEND, settings.REDIS_URL, settings.QUEUE_NAME)
    if broker is not None:
        try:
            await broker.connect()
            services.broker = broker
        except Exception as e:
            logger.warning(f"Queue broker unreachable, ingesting synchronously (degraded mode): {e}")
            services.degraded.append("queue")
            await broker.close()
    elif settings.INGEST_MODE == "queue":
        logger.warning("INGEST_MODE=queue but no broker configured, ingesting synchronously (degraded mode)")
        services.degraded.append("queue")

    if not settings.WEBHOOK_SECRET:
        services.degraded.append("signature")

    if settings.GATEWAY_BASE_URL:
        services.gateway = GatewayClient(
            settings.GATEWAY_BASE_URL,
            api_key=settings.GATEWAY_API_KEY,
            timeout=settings.GATEWAY_TIMEOUT,
            retry_policy=RetryPolicy(max_attempts=settings.GATEWAY_MAX_RETRIES + 1),
        )

    return services


async def close_services(services: Services) -> None:
    if services.broker is not None:
        await services.broker.close()
    if services.gateway is not None:
        await services.gateway.close()
    await services.hub.drain()
    services.engine.dispose()
