"""Application factory wiring settings, logging and the generation service."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
import structlog

from atelier.core.config import Settings, configure_logging
from atelier.services.generation_service import GenerationService

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(settings: Optional[Settings] = None) -> AsyncIterator[GenerationService]:
    """Service lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Load settings, configure logging, open the shared HTTP client
    - Shutdown: Cancel running jobs, close the HTTP client
    """
    settings = settings or Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        service = GenerationService.from_settings(settings, client=client)
        logger.info(
            "application.startup",
            app_env=settings.app_env,
            providers=sorted(service.providers),
            poll_interval_ms=settings.poll_interval_ms,
            poll_max_attempts=settings.poll_max_attempts,
        )
        try:
            yield service
        finally:
            await service.shutdown()
            logger.info("application.shutdown")
