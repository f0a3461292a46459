from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from campaign_dispatch.api import create_app
from campaign_dispatch.config import load_settings
from campaign_dispatch.core import DispatchCore
from campaign_dispatch.logger import configure_logging

configure_logging()


def build_app(settings: dict[str, object]) -> FastAPI:
    """Create the dispatch core and wrap it in the HTTP application."""
    service = DispatchCore.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    return create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)


if __name__ == "__main__":
    settings = load_settings()
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
