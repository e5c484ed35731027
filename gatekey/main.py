#!/usr/bin/env python3
"""
Gatekey - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Initializes modules
3. Runs an API key protected FastAPI app with periodic housekeeping

All business logic is in the modules, following black box principles.
The relay routes themselves belong to the gateway that mounts Gatekey;
this app only exposes health and the authenticated identity.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request

from gatekey.config.provider import ConfigProvider, EnvConfigProvider
from gatekey.logging_config import configure_logging
from gatekey.modules.auth import ApiKeyService, AuthFactory
from gatekey.modules.config import get_config
from gatekey.modules.middleware import create_api_key_middleware
from gatekey.modules.storage import StorageModule

logger = logging.getLogger(__name__)


async def housekeeping_pass(service: ApiKeyService) -> None:
    """One round of expiry sweep and hash collision audit."""
    disabled = await service.cleanup_expired_keys()
    collisions = await service.detect_collisions()
    logger.info(
        f"Housekeeping complete: {disabled} expired keys disabled, "
        f"{len(collisions)} hash collisions"
    )


async def run_housekeeping(service: ApiKeyService, interval_seconds: float) -> None:
    """Run housekeeping forever; a failed round is logged and retried next interval."""
    while True:
        try:
            await housekeeping_pass(service)
        except Exception as e:
            logger.error(f"Housekeeping round failed: {e}")
        await asyncio.sleep(interval_seconds)


def create_app(config_provider: Optional[ConfigProvider] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        config_provider: Configuration provider (environment by default)

    Returns:
        FastAPI app with API key middleware and lifecycle wiring
    """
    config = get_config()
    config_provider = config_provider or EnvConfigProvider()
    storage = StorageModule.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Gatekey...")

        redis_client = await storage.connect()
        service = AuthFactory.build(config_provider, redis_client)
        await service.start()
        app.state.api_key_service = service

        housekeeping = asyncio.create_task(
            run_housekeeping(service, config.get("housekeeping_interval"))
        )
        logger.info("Gatekey started successfully")

        yield

        logger.info("Shutting down Gatekey...")
        housekeeping.cancel()
        await asyncio.gather(housekeeping, return_exceptions=True)
        await service.stop()
        await storage.disconnect()
        logger.info("Gatekey shutdown complete")

    app = FastAPI(
        title="Gatekey",
        description="Gatekey - API key authentication for LLM gateways",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def authenticate(request: Request, call_next):
        middleware = getattr(request.app.state, "auth_middleware", None)
        if middleware is None:
            middleware = create_api_key_middleware(request.app.state.api_key_service)
            request.app.state.auth_middleware = middleware
        return await middleware(request, call_next)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/whoami")
    async def whoami(request: Request):
        key = request.state.api_key
        return {"id": key.id, "name": key.name, "owner": key.owner}

    return app


def main() -> None:
    config = get_config()
    configure_logging(config.get("log_level"))
    uvicorn.run(create_app(), host="0.0.0.0", port=config.get("port"))


if __name__ == "__main__":
    main()
