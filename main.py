import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from webpush_dispatch.api import create_app
from webpush_dispatch.config_loader import load_settings
from webpush_dispatch.logger import configure_logging
from webpush_dispatch.service import WebPushDispatchService

# Configure logging level from environment
configure_logging(os.getenv("WPD_LOG_LEVEL", "INFO"))


def build_service(settings: dict[str, object]) -> WebPushDispatchService:
    return WebPushDispatchService(
        db_path=settings["db_path"],
        sender_settings=settings["sender"],
        publisher_settings=settings["publisher"],
        token_key=settings.get("token_key"),
    )


if __name__ == "__main__":
    settings = load_settings()
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
