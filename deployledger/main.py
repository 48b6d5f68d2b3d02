import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from pydantic import ValidationError

from deployledger.api.app import create_app
from deployledger.application.deployment_service import DeploymentService
from deployledger.application.payload_strategy import (
    ContentAddressedPayloadStrategy,
    EmbeddedPayloadStrategy,
)
from deployledger.domain.models import PayloadStrategyKind
from deployledger.infrastructure.config import Settings
from deployledger.infrastructure.database import PostgresDeploymentRepository
from deployledger.infrastructure.pinata_client import PinataPayloadStore

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    # Silence noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def build_app(settings: Settings) -> FastAPI:
    # Initialize the record store and, when content-addressed, the payload store
    db_repository = PostgresDeploymentRepository(db_url=settings.database_url)
    payload_store = None

    if settings.payload_strategy is PayloadStrategyKind.CONTENT_ADDRESSED:
        payload_store = PinataPayloadStore(
            api_key=settings.pinata_api_key,
            secret_api_key=settings.pinata_secret_api_key,
            api_url=settings.pinata_api_url,
            gateway_url=settings.pinata_gateway,
        )
        payload_strategy = ContentAddressedPayloadStrategy(payload_store)
    else:
        payload_strategy = EmbeddedPayloadStrategy()

    deployment_service = DeploymentService(
        record_store=db_repository,
        payload_strategy=payload_strategy,
        io_timeout=settings.io_timeout_seconds,
        max_conflict_attempts=settings.max_conflict_attempts,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db_repository.create_schema()
        if payload_store is not None and not await payload_store.test_authentication():
            logger.warning("Pinata credentials were rejected; payload uploads will fail.")
        logger.info(f"Service ready with {settings.payload_strategy.value} payload storage.")
        yield
        if payload_store is not None:
            await payload_store.close()
        await db_repository.dispose()

    return create_app(deployment_service, lifespan=lifespan)


def main():
    # Load environment variables from .env file
    load_dotenv()

    try:
        settings = Settings.from_env()
    except ValidationError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    configure_logging(settings.log_level)

    app = build_app(settings)

    try:
        uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    except KeyboardInterrupt:
        logger.info("Server interrupted by user. Exiting gracefully.")
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
